from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from formal_studio.config import RetryPolicy, load_studio_settings
from formal_studio.schemas import (
    AttemptRecord,
    EditRegion,
    GenerationRequest,
    PerceptionOutput,
    QualityEvaluation,
    QualityMetric,
    RetryAdjustment,
    RetryDecision,
    ValidationResult,
)
from formal_studio.services.constraints import find_negative_constraint
from formal_studio.services.quality import (
    GarmentGeometry,
    compute_artifact_penalty,
    compute_edge_fidelity,
    compute_geometry_alignment,
    compute_identity_stability,
    compute_lighting_coherence,
    compute_pose_stability,
    evaluate_quality,
)

LOG = logging.getLogger("formal_studio.validation")

FABRIC_ARTIFACTS = ("fabric_discontinuity", "collar_break", "texture_repetition")

GUIDANCE_BY_METRIC = {
    "identity_stability": (
        "The face in the output differed too much from the original. "
        "Try uploading a clearer, front-facing photo with good lighting."
    ),
    "edge_fidelity": (
        "Hair edges were difficult to process cleanly. "
        "A photo with a simpler background or well-defined hairline works better."
    ),
    "lighting_coherence": (
        "The lighting in the photo made it hard to match with the chosen style. "
        "Try a photo with more even, front-facing lighting."
    ),
    "geometry_alignment": (
        "Garment alignment was difficult due to the pose. "
        "A straight-on or slight three-quarter pose works best."
    ),
}
FALLBACK_GUIDANCE = (
    "The AI was unable to achieve the desired quality level. "
    "Please try a different photo or simpler style options."
)


@dataclass
class RetryContext:
    attempt: int
    max_retries: int
    previous_evaluations: list[QualityEvaluation] = field(default_factory=list)
    best_score: float = 0.0
    best_output_ref: str | None = None
    accumulated_adjustments: list[RetryAdjustment] = field(default_factory=list)


def _failure(metric: QualityMetric) -> str:
    return f"{metric.name}: {metric.detail}"


def validate_output(
    original: PerceptionOutput,
    output: PerceptionOutput,
    geometry: GarmentGeometry | None = None,
) -> ValidationResult:
    """Score an output against its input and attach check-specific adjustments."""
    identity = compute_identity_stability(original, output)
    pose = compute_pose_stability(original, output)
    geometry_metric = compute_geometry_alignment(geometry or GarmentGeometry())
    edge = compute_edge_fidelity(output.edge_measurements)
    lighting = compute_lighting_coherence(original, output)
    artifact = compute_artifact_penalty(output.artifacts)
    quality = evaluate_quality([identity, pose, geometry_metric, edge, lighting, artifact])

    failures: list[str] = []
    adjustments: list[RetryAdjustment] = []

    if not identity.passed:
        failures.append(_failure(identity))
        adjustments.append(RetryAdjustment(action="increase_preserve_weight", target="identity_regions", suggested_value=0.10))
        adjustments.append(RetryAdjustment(action="tighten_negative_constraints", target="no_face_reshape", suggested_value=1.0))

    if not pose.passed:
        failures.append(_failure(pose))
        adjustments.append(RetryAdjustment(action="increase_preserve_weight", target="head_pose", suggested_value=0.10))
        adjustments.append(RetryAdjustment(action="lower_creativity", target="global", suggested_value=0.15))

    if not edge.passed:
        failures.append(_failure(edge))
        adjustments.append(RetryAdjustment(action="tighten_negative_constraints", target="no_hair_halo", suggested_value=1.0))
        adjustments.append(RetryAdjustment(action="switch_inpainting_only", target="hair_boundary", suggested_value=1.0))

    fabric = [a for a in output.artifacts if a.type in FABRIC_ARTIFACTS]
    fabric_score = compute_artifact_penalty(fabric)
    if not fabric_score.passed:
        adjustments.append(RetryAdjustment(action="lower_creativity", target="fabric_generation", suggested_value=0.20))
        adjustments.append(RetryAdjustment(action="tighten_negative_constraints", target="no_unrealistic_fabric", suggested_value=1.0))

    for metric in (geometry_metric, lighting, artifact):
        if not metric.passed:
            failures.append(_failure(metric))

    return ValidationResult(quality=quality, failures=failures, retry_adjustments=adjustments)


def deduplicate_adjustments(adjustments: Iterable[RetryAdjustment]) -> list[RetryAdjustment]:
    """Collapse adjustments sharing (action, target), keeping the larger value."""
    merged: dict[tuple[str, str], RetryAdjustment] = {}
    for adjustment in adjustments:
        key = (adjustment.action, adjustment.target)
        current = merged.get(key)
        if current is None or adjustment.suggested_value > current.suggested_value:
            merged[key] = adjustment
    return list(merged.values())


def compute_retry_adjustments(
    validation: ValidationResult,
    attempt: int,
    policy: RetryPolicy | None = None,
) -> list[RetryAdjustment]:
    policy = policy or load_studio_settings().retry
    adjustments = list(validation.retry_adjustments)

    adjustments.append(
        RetryAdjustment(
            action="increase_preserve_weight",
            target="global",
            suggested_value=min(policy.preserve_weight_cap, policy.preserve_weight_step * (attempt + 1)),
        )
    )
    adjustments.append(
        RetryAdjustment(
            action="lower_creativity",
            target="global",
            suggested_value=min(policy.creativity_cap, policy.creativity_step * (attempt + 1)),
        )
    )

    if attempt >= policy.inpainting_from_attempt:
        for failure in validation.failures:
            region = failure.split(":", 1)[0].strip()
            adjustments.append(RetryAdjustment(action="switch_inpainting_only", target=region, suggested_value=1.0))
    else:
        adjustments = [a for a in adjustments if a.action != "switch_inpainting_only"]

    if not validation.quality.identity_stability.passed:
        adjustments.append(
            RetryAdjustment(action="reduce_edit_scope", target=EditRegion.NECK.value, suggested_value=1.0)
        )

    return deduplicate_adjustments(adjustments)


def apply_retry_adjustments(
    request: GenerationRequest,
    adjustments: Iterable[RetryAdjustment],
    policy: RetryPolicy | None = None,
) -> GenerationRequest:
    """Return a copy of ``request`` with the retry adjustments folded in.

    Preserve-weight and creativity changes are summed and capped relative to the
    request's own weights, so the same adjustment history can be re-applied to a
    freshly built request on every attempt.
    """
    policy = policy or load_studio_settings().retry
    adjustments = deduplicate_adjustments(adjustments)

    preserve_boost = sum(a.suggested_value for a in adjustments if a.action == "increase_preserve_weight")
    creativity_drop = sum(a.suggested_value for a in adjustments if a.action == "lower_creativity")
    identity_weight = min(1.0, request.identity_weight + min(policy.preserve_weight_cap, preserve_boost))
    creativity = max(policy.min_creativity, request.creativity_level - min(policy.creativity_cap, creativity_drop))

    allowed = list(request.edit_scope.allowed_regions)
    for adjustment in adjustments:
        if adjustment.action != "reduce_edit_scope":
            continue
        try:
            allowed.remove(EditRegion(adjustment.target))
        except ValueError:
            continue

    constraints = list(request.negative_constraints)
    for adjustment in adjustments:
        if adjustment.action != "tighten_negative_constraints":
            continue
        weight = min(1.0, adjustment.suggested_value)
        index = next((i for i, c in enumerate(constraints) if c.id == adjustment.target), None)
        if index is not None:
            constraints[index] = constraints[index].model_copy(update={"weight": max(weight, constraints[index].weight)})
            continue
        known = find_negative_constraint(adjustment.target)
        if known is None:
            LOG.warning("unknown_constraint target=%s", adjustment.target)
            continue
        constraints.append(known.model_copy(update={"weight": weight}))

    inpainting = list(request.inpainting_only_regions)
    for adjustment in adjustments:
        if adjustment.action == "switch_inpainting_only" and adjustment.target not in inpainting:
            inpainting.append(adjustment.target)

    return request.model_copy(
        update={
            "identity_weight": identity_weight,
            "creativity_level": creativity,
            "edit_scope": request.edit_scope.model_copy(update={"allowed_regions": allowed}),
            "negative_constraints": constraints,
            "inpainting_only_regions": inpainting,
        }
    )


def select_best_attempt(attempts: Iterable[AttemptRecord]) -> AttemptRecord | None:
    best: AttemptRecord | None = None
    for record in attempts:
        if best is None or record.composite_score > best.composite_score:
            best = record
    return best


def generate_user_guidance(quality: QualityEvaluation, attempts: int) -> str:
    failed = {metric.name for metric in quality.failed_metrics()}
    sentences = [text for name, text in GUIDANCE_BY_METRIC.items() if name in failed]
    body = " ".join(sentences) if sentences else FALLBACK_GUIDANCE
    noun = "attempt" if attempts == 1 else "attempts"
    return f"We couldn't achieve the quality standard after {attempts} {noun}. {body}"


def compute_retry_decision(validation: ValidationResult, context: RetryContext) -> RetryDecision:
    if validation.passed:
        return RetryDecision(should_retry=False)

    if context.attempt >= context.max_retries:
        best_quality = validation.quality
        for evaluation in context.previous_evaluations:
            if evaluation.composite_score > best_quality.composite_score:
                best_quality = evaluation
        use_best_previous = best_quality is not validation.quality
        return RetryDecision(
            should_retry=False,
            user_guidance=generate_user_guidance(best_quality, context.attempt + 1),
            use_best_previous=use_best_previous,
        )

    adjustments = deduplicate_adjustments(
        [*context.accumulated_adjustments, *compute_retry_adjustments(validation, context.attempt)]
    )
    return RetryDecision(should_retry=True, adjustments=adjustments)
