from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping

from pydantic import BaseModel

from formal_studio.config import StudioProfile, get_studio_profile
from formal_studio.schemas import (
    ConditioningPayload,
    EditScopeConfig,
    GenderMode,
    GenerationRequest,
    NegativeConstraint,
    PerceptionOutput,
    RetryAdjustment,
    StudioType,
    ValidationResult,
)
from formal_studio.services.constraints import (
    apply_constraints_to_conditioning,
    auto_tighten_constraints,
    build_edit_scope,
    global_negative_constraints,
    studio_negative_constraints,
)
from formal_studio.services.quality import METRIC_THRESHOLDS, measure_garment_geometry
from formal_studio.services.validation import apply_retry_adjustments, validate_output

LOG = logging.getLogger("formal_studio.studios")


@dataclass
class PromptParts:
    text: str
    control_maps: dict[str, str] = field(default_factory=dict)
    reference_images: list[str] = field(default_factory=list)


PromptBuilder = Callable[[Any, PerceptionOutput, GenderMode], PromptParts]
ScopeBuilder = Callable[[PerceptionOutput, Any], EditScopeConfig]
NegativesBuilder = Callable[[Any], list[NegativeConstraint]]
SafetyCheck = Callable[[Any], str | None]
AdvisoryCheck = Callable[[PerceptionOutput, PerceptionOutput, Any], list[str]]


@dataclass(frozen=True)
class StudioVariant:
    """The per-studio behaviour plugged into :class:`StudioController`."""

    studio_type: StudioType
    params_model: type[BaseModel]
    build_prompt: PromptBuilder
    compute_scope: ScopeBuilder | None = None
    extra_negatives: NegativesBuilder | None = None
    check_safety: SafetyCheck | None = None
    advisories: AdvisoryCheck | None = None


class StudioController:
    def __init__(self, variant: StudioVariant) -> None:
        self.variant = variant

    @property
    def studio_type(self) -> StudioType:
        return self.variant.studio_type

    @property
    def profile(self) -> StudioProfile:
        return get_studio_profile(self.studio_type)

    def parse_params(self, params: BaseModel | Mapping[str, Any] | None = None) -> BaseModel:
        model = self.variant.params_model
        if params is None:
            return model()
        if isinstance(params, model):
            return params
        if isinstance(params, BaseModel):
            params = params.model_dump()
        return model(**params)

    def check_safety(self, params: BaseModel | Mapping[str, Any] | None = None) -> str | None:
        """Rejection reason when the request must never reach generation."""
        if self.variant.check_safety is None:
            return None
        return self.variant.check_safety(self.parse_params(params))

    def compute_edit_scope(
        self,
        perception: PerceptionOutput,
        params: BaseModel | Mapping[str, Any] | None = None,
    ) -> EditScopeConfig:
        if self.variant.compute_scope is not None:
            return self.variant.compute_scope(perception, self.parse_params(params))
        return build_edit_scope(self.studio_type)

    def get_negative_constraints(self, params: BaseModel | Mapping[str, Any] | None = None) -> list[NegativeConstraint]:
        constraints = [*global_negative_constraints(), *studio_negative_constraints(self.studio_type)]
        if self.variant.extra_negatives is not None:
            constraints.extend(self.variant.extra_negatives(self.parse_params(params)))
        return constraints

    def get_quality_thresholds(self) -> dict[str, float]:
        return {**METRIC_THRESHOLDS, **self.profile.quality_thresholds}

    def identity_weight_for(self, params: BaseModel) -> float:
        return float(getattr(params, "identity_strength", self.profile.default_identity_weight))

    def creativity_for(self, params: BaseModel) -> float:
        return float(getattr(params, "creativity", self.profile.default_creativity))

    def build_conditioning(
        self,
        params: BaseModel | Mapping[str, Any] | None,
        perception: PerceptionOutput,
        gender_mode: GenderMode = "Gentlemen",
        *,
        edit_scope: EditScopeConfig | None = None,
        negative_constraints: list[NegativeConstraint] | None = None,
        identity_weight: float | None = None,
    ) -> ConditioningPayload:
        parsed = self.parse_params(params)
        if edit_scope is None:
            edit_scope = self.compute_edit_scope(perception, parsed)
        if negative_constraints is None:
            negative_constraints = self.get_negative_constraints(parsed)
        if identity_weight is None:
            identity_weight = self.identity_weight_for(parsed)

        parts = self.variant.build_prompt(parsed, perception, gender_mode)
        control_maps = {
            "identity_mask": perception.identity_mask_ref,
            "clothing_mask": perception.segmentation.clothing,
            "hair_mask": perception.segmentation.hair,
            "background_mask": perception.segmentation.background,
            **parts.control_maps,
        }
        base = ConditioningPayload(
            structured_prompt=parts.text,
            reference_images=list(parts.reference_images),
            control_maps=control_maps,
        )
        return apply_constraints_to_conditioning(base, edit_scope, negative_constraints, identity_weight)

    def build_generation_request(
        self,
        input_image_ref: str,
        params: BaseModel | Mapping[str, Any] | None,
        perception: PerceptionOutput,
        gender_mode: GenderMode = "Gentlemen",
        retry_attempt: int = 0,
        adjustments: Iterable[RetryAdjustment] = (),
        auto_tighten: bool = True,
    ) -> GenerationRequest:
        parsed = self.parse_params(params)
        scope = self.compute_edit_scope(perception, parsed)
        constraints = self.get_negative_constraints(parsed)
        identity_weight = self.identity_weight_for(parsed)

        if auto_tighten:
            tightened = auto_tighten_constraints(scope, constraints, perception.geometry_risk, identity_weight)
            scope = tightened.edit_scope
            constraints = tightened.negative_constraints
            identity_weight = tightened.identity_weight

        request = GenerationRequest(
            studio_type=self.studio_type,
            input_image_ref=input_image_ref,
            perception=perception,
            edit_scope=scope,
            negative_constraints=constraints,
            identity_weight=identity_weight,
            creativity_level=self.creativity_for(parsed),
            retry_attempt=retry_attempt,
        )
        adjustments = list(adjustments)
        if adjustments:
            request = apply_retry_adjustments(request, adjustments)

        conditioning = self.build_conditioning(
            parsed,
            perception,
            gender_mode,
            edit_scope=request.edit_scope,
            negative_constraints=request.negative_constraints,
            identity_weight=request.identity_weight,
        )
        if request.inpainting_only_regions:
            conditioning.control_maps["inpainting_only"] = ",".join(request.inpainting_only_regions)
        return request.model_copy(update={"conditioning": conditioning})

    def validate_output(
        self,
        output_perception: PerceptionOutput,
        original_perception: PerceptionOutput,
        params: BaseModel | Mapping[str, Any] | None = None,
    ) -> ValidationResult:
        geometry = None
        if self.profile.measures_garment_geometry:
            geometry = measure_garment_geometry(original_perception, output_perception)
        result = validate_output(original_perception, output_perception, geometry)

        advisories = self._threshold_advisories(result)
        if self.variant.advisories is not None:
            advisories.extend(self.variant.advisories(output_perception, original_perception, self.parse_params(params)))
        if advisories:
            result = result.model_copy(update={"advisories": advisories})
        return result

    def _threshold_advisories(self, result: ValidationResult) -> list[str]:
        studio_thresholds = self.profile.quality_thresholds
        advisories: list[str] = []
        for metric in result.quality.metrics():
            threshold = studio_thresholds.get(metric.name)
            if threshold is not None and metric.passed and metric.score < threshold:
                advisories.append(
                    f"{metric.name}: {metric.score:.3f} is below the {self.studio_type.value} studio threshold {threshold:.2f}"
                )
        composite_threshold = studio_thresholds.get("composite")
        if composite_threshold is not None and result.quality.composite_score < composite_threshold:
            advisories.append(
                f"composite: {result.quality.composite_score:.3f} is below the "
                f"{self.studio_type.value} studio threshold {composite_threshold:.2f}"
            )
        return advisories
