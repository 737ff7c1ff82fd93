from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from formal_studio.config import get_studio_profile, load_studio_settings
from formal_studio.schemas import (
    IDENTITY_LOCKED_REGIONS,
    ConditioningPayload,
    EditRegion,
    EditScopeConfig,
    GeometryRiskScores,
    NegativeConstraint,
    StudioType,
)

LOG = logging.getLogger("formal_studio.constraints")

HAIR_EDGE_CONSTRAINT = NegativeConstraint(
    id="auto_preserve_hair_edges",
    description="Strictly preserve hair strand edges and boundary integrity",
    weight=0.95,
)
EDGE_SENSITIVE_MARKERS = ("halo", "hair", "edge", "ear")


@dataclass
class TightenedConstraints:
    edit_scope: EditScopeConfig
    negative_constraints: list[NegativeConstraint]
    identity_weight: float
    actions: list[str] = field(default_factory=list)


def _ordered_unique(regions: Iterable[EditRegion | str]) -> list[EditRegion]:
    seen: list[EditRegion] = []
    for region in regions:
        value = EditRegion(region)
        if value not in seen:
            seen.append(value)
    return seen


def build_preserve_map(
    studio_type: StudioType | str,
    additional_preserve: Iterable[EditRegion | str] = (),
) -> list[EditRegion]:
    profile = get_studio_profile(studio_type)
    return _ordered_unique([*IDENTITY_LOCKED_REGIONS, *profile.preserve_regions, *additional_preserve])


def resolve_edit_scope(
    whitelist: Iterable[EditRegion | str],
    preserve: Iterable[EditRegion | str],
    boundary_feather_px: int | None = None,
) -> EditScopeConfig:
    """Subtract the preserve set from a whitelist. Preserve always wins."""
    preserve_regions = _ordered_unique([*IDENTITY_LOCKED_REGIONS, *preserve])
    allowed = [region for region in _ordered_unique(whitelist) if region not in preserve_regions]
    return EditScopeConfig(
        allowed_regions=allowed,
        preserve_regions=preserve_regions,
        boundary_feather_px=boundary_feather_px,
    )


def build_edit_scope(
    studio_type: StudioType | str,
    additional_allowed: Iterable[EditRegion | str] = (),
    additional_preserved: Iterable[EditRegion | str] = (),
    boundary_feather_px: int | None = None,
) -> EditScopeConfig:
    profile = get_studio_profile(studio_type)
    preserve = build_preserve_map(studio_type, additional_preserved)
    feather = boundary_feather_px if boundary_feather_px is not None else profile.boundary_feather_px
    return resolve_edit_scope([*profile.allowed_regions, *additional_allowed], preserve, feather)


def global_negative_constraints() -> list[NegativeConstraint]:
    return list(load_studio_settings().global_negative_constraints)


def studio_negative_constraints(studio_type: StudioType | str) -> list[NegativeConstraint]:
    return list(get_studio_profile(studio_type).negative_constraints)


def find_negative_constraint(constraint_id: str) -> NegativeConstraint | None:
    settings = load_studio_settings()
    catalog = [*settings.global_negative_constraints, HAIR_EDGE_CONSTRAINT]
    for profile in settings.studios.values():
        catalog.extend(profile.negative_constraints)
    for constraint in catalog:
        if constraint.id == constraint_id:
            return constraint
    return None


def emphasis_for_weight(weight: float) -> float:
    if weight >= 0.9:
        return 1.5
    if weight >= 0.7:
        return 1.2
    return 1.0


def apply_constraints_to_conditioning(
    conditioning: ConditioningPayload,
    edit_scope: EditScopeConfig,
    negative_constraints: list[NegativeConstraint],
    identity_weight: float,
) -> ConditioningPayload:
    """Fold the edit scope and weighted negatives into a conditioning payload."""
    tokens = list(conditioning.negative_tokens)
    for constraint in negative_constraints:
        if constraint.weight <= 0:
            continue
        tokens.append(f"({constraint.description}:{emphasis_for_weight(constraint.weight):.1f})")

    if identity_weight > 0.7:
        strong = identity_weight * 1.5
        tokens.extend(
            [
                f"(change face shape:{strong:.1f})",
                f"(alter facial features:{strong:.1f})",
                f"(modify eye shape:{strong:.1f})",
                f"(change skin color:{identity_weight * 1.3:.1f})",
            ]
        )

    prefix = ""
    if edit_scope.allowed_regions:
        prefix += "Only modify: " + ", ".join(region.value for region in edit_scope.allowed_regions) + ". "
    prefix += "Preserve exactly: " + ", ".join(region.value for region in edit_scope.preserve_regions) + ". "

    return conditioning.model_copy(
        update={
            "structured_prompt": prefix + conditioning.structured_prompt,
            "negative_tokens": tokens,
        }
    )


def auto_tighten_constraints(
    edit_scope: EditScopeConfig,
    negative_constraints: list[NegativeConstraint],
    geometry_risk: GeometryRiskScores,
    identity_weight: float,
) -> TightenedConstraints:
    tolerances = load_studio_settings().tolerances
    allowed = list(edit_scope.allowed_regions)
    constraints = list(negative_constraints)
    actions: list[str] = []

    if geometry_risk.warp_risk > tolerances.warp_risk_threshold:
        identity_weight = min(1.0, identity_weight + tolerances.warp_identity_boost)
        if EditRegion.NECK in allowed:
            allowed.remove(EditRegion.NECK)
            actions.append("remove_neck_region")
        actions.append("boost_identity_weight")

    if geometry_risk.edge_risk > tolerances.edge_risk_threshold:
        boosted: list[NegativeConstraint] = []
        for constraint in constraints:
            if any(marker in constraint.id for marker in EDGE_SENSITIVE_MARKERS):
                constraint = constraint.model_copy(
                    update={"weight": min(1.0, constraint.weight + tolerances.edge_constraint_boost)}
                )
            boosted.append(constraint)
        constraints = boosted
        if not any(constraint.id == HAIR_EDGE_CONSTRAINT.id for constraint in constraints):
            constraints.append(HAIR_EDGE_CONSTRAINT)
        actions.append("boost_edge_constraints")

    if actions:
        LOG.debug(
            "auto_tighten warp_risk=%.2f edge_risk=%.2f identity_weight=%.2f actions=%s",
            geometry_risk.warp_risk,
            geometry_risk.edge_risk,
            identity_weight,
            ",".join(actions),
        )
    scope = edit_scope.model_copy(update={"allowed_regions": allowed})
    return TightenedConstraints(
        edit_scope=scope,
        negative_constraints=constraints,
        identity_weight=identity_weight,
        actions=actions,
    )
