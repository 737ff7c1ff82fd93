from __future__ import annotations

import pytest
from pydantic import ValidationError

from formal_studio.schemas import (
    IDENTITY_LOCKED_REGIONS,
    ConditioningPayload,
    EditRegion,
    EditScopeConfig,
    GeometryRiskScores,
    NegativeConstraint,
    StudioType,
)
from formal_studio.services.constraints import (
    HAIR_EDGE_CONSTRAINT,
    apply_constraints_to_conditioning,
    auto_tighten_constraints,
    build_edit_scope,
    build_preserve_map,
    emphasis_for_weight,
    find_negative_constraint,
    global_negative_constraints,
    resolve_edit_scope,
    studio_negative_constraints,
)


@pytest.mark.parametrize("studio", list(StudioType))
def test_every_studio_scope_keeps_identity_locked(studio):
    scope = build_edit_scope(studio)

    assert not set(scope.allowed_regions) & set(scope.preserve_regions)
    assert set(IDENTITY_LOCKED_REGIONS) <= set(scope.preserve_regions)
    assert not set(IDENTITY_LOCKED_REGIONS) & set(scope.allowed_regions)


def test_preserve_wins_over_requested_regions():
    scope = build_edit_scope(
        StudioType.PORTRAIT,
        additional_allowed=[EditRegion.EYES, "hair"],
        additional_preserved=[EditRegion.NECK],
    )

    assert EditRegion.EYES not in scope.allowed_regions
    assert EditRegion.HAIR not in scope.allowed_regions
    assert EditRegion.NECK not in scope.allowed_regions
    assert EditRegion.NECK in scope.preserve_regions
    assert scope.boundary_feather_px == 4


def test_preserve_map_lists_identity_regions_first():
    preserve = build_preserve_map(StudioType.HAIR, [EditRegion.EARS])

    assert preserve[: len(IDENTITY_LOCKED_REGIONS)] == list(IDENTITY_LOCKED_REGIONS)
    assert preserve[-1] == EditRegion.EARS
    assert len(preserve) == len(set(preserve))


def test_resolve_edit_scope_always_adds_identity_regions():
    scope = resolve_edit_scope([EditRegion.BACKGROUND, EditRegion.LIPS], [])

    assert scope.allowed_regions == [EditRegion.BACKGROUND]
    assert set(IDENTITY_LOCKED_REGIONS) <= set(scope.preserve_regions)


def test_scope_model_rejects_overlap_and_missing_identity_regions():
    with pytest.raises(ValidationError):
        EditScopeConfig(
            allowed_regions=[EditRegion.HAIR],
            preserve_regions=[*IDENTITY_LOCKED_REGIONS, EditRegion.HAIR],
        )
    with pytest.raises(ValidationError):
        EditScopeConfig(allowed_regions=[EditRegion.HAIR], preserve_regions=[EditRegion.EYES])


def test_constraint_catalogs():
    ids = [constraint.id for constraint in global_negative_constraints()]

    assert "no_face_reshape" in ids
    assert len(ids) == 8
    assert [c.id for c in studio_negative_constraints("background")][0] == "no_hair_halo"
    assert find_negative_constraint("no_unrealistic_fabric").weight == pytest.approx(0.90)
    assert find_negative_constraint(HAIR_EDGE_CONSTRAINT.id) == HAIR_EDGE_CONSTRAINT
    assert find_negative_constraint("does_not_exist") is None


@pytest.mark.parametrize(
    ("weight", "expected"),
    [(1.0, 1.5), (0.9, 1.5), (0.89, 1.2), (0.7, 1.2), (0.69, 1.0), (0.1, 1.0)],
)
def test_emphasis_for_weight(weight, expected):
    assert emphasis_for_weight(weight) == expected


def test_conditioning_gets_scope_prefix_and_weighted_tokens():
    scope = build_edit_scope(StudioType.PORTRAIT)
    constraints = [
        NegativeConstraint(id="a", description="keep A", weight=0.95),
        NegativeConstraint(id="b", description="keep B", weight=0.75),
        NegativeConstraint(id="c", description="keep C", weight=0.5),
        NegativeConstraint(id="d", description="disabled", weight=0.0),
    ]

    payload = apply_constraints_to_conditioning(
        ConditioningPayload(structured_prompt="Navy suit."), scope, constraints, identity_weight=0.8
    )

    assert payload.negative_tokens == [
        "(keep A:1.5)",
        "(keep B:1.2)",
        "(keep C:1.0)",
        "(change face shape:1.2)",
        "(alter facial features:1.2)",
        "(modify eye shape:1.2)",
        "(change skin color:1.0)",
    ]
    assert payload.structured_prompt == (
        "Only modify: clothing, collar_area, lapel_area, tie_area, shoulders, torso, neck. "
        "Preserve exactly: eyes, eyebrows, nose, lips, jaw, face_skin, hair, background. "
        "Navy suit."
    )


def test_conditioning_skips_identity_tokens_and_empty_whitelist():
    scope = resolve_edit_scope([], [])

    payload = apply_constraints_to_conditioning(ConditioningPayload(), scope, [], identity_weight=0.7)

    assert payload.negative_tokens == []
    assert payload.structured_prompt.startswith("Preserve exactly: ")
    assert "Only modify" not in payload.structured_prompt


def test_high_warp_risk_removes_neck_and_boosts_identity():
    scope = build_edit_scope(StudioType.PORTRAIT)

    tightened = auto_tighten_constraints(
        scope,
        global_negative_constraints(),
        GeometryRiskScores(warp_risk=0.45, edge_risk=0.1),
        identity_weight=0.85,
    )

    assert EditRegion.NECK not in tightened.edit_scope.allowed_regions
    assert tightened.identity_weight == pytest.approx(0.95)
    assert tightened.actions == ["remove_neck_region", "boost_identity_weight"]
    assert all(c.id != HAIR_EDGE_CONSTRAINT.id for c in tightened.negative_constraints)


def test_high_edge_risk_boosts_edge_constraints_once():
    scope = build_edit_scope(StudioType.HAIR)
    constraints = [*global_negative_constraints(), *studio_negative_constraints(StudioType.HAIR)]
    risk = GeometryRiskScores(warp_risk=0.0, edge_risk=0.4)

    first = auto_tighten_constraints(scope, constraints, risk, identity_weight=0.9)
    second = auto_tighten_constraints(first.edit_scope, first.negative_constraints, risk, identity_weight=0.9)

    by_id = {c.id: c.weight for c in first.negative_constraints}
    assert by_id["no_halo_artifacts"] == pytest.approx(1.0)
    assert by_id["no_helmet_hair"] == pytest.approx(1.0)
    assert by_id["no_face_reshape"] == 1.0
    assert by_id["no_skin_over_smoothing"] == pytest.approx(0.95)
    assert [c.id for c in second.negative_constraints].count(HAIR_EDGE_CONSTRAINT.id) == 1
    assert first.identity_weight == 0.9


def test_low_risk_leaves_everything_untouched():
    scope = build_edit_scope(StudioType.PORTRAIT)
    constraints = global_negative_constraints()

    tightened = auto_tighten_constraints(scope, constraints, GeometryRiskScores(), identity_weight=0.85)

    assert tightened.edit_scope.allowed_regions == scope.allowed_regions
    assert tightened.negative_constraints == constraints
    assert tightened.actions == []
