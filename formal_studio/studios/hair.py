from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from formal_studio.config import get_studio_profile
from formal_studio.schemas import EditRegion, EditScopeConfig, GenderMode, PerceptionOutput, Point2D, StudioType
from formal_studio.services.constraints import build_edit_scope
from formal_studio.studios.base import PromptParts, StudioVariant

EarContact = Literal["covered", "partially_visible", "fully_visible"]

MIN_HAIRLINE_CONFIDENCE = 0.7
MIN_BOUNDARY_CONFIDENCE = 0.5
COVERED_EAR_COVERAGE = 0.35


class HairParams(BaseModel):
    style: Literal[
        "professional_crop",
        "textured_layers",
        "slicked_back",
        "soft_waves",
        "corporate_bob",
        "natural_curls",
        "low_fade",
        "pompadour",
        "braided_updo",
    ] = "professional_crop"
    length: Literal["buzz", "short", "medium", "long", "very_long"] = "short"
    texture: Literal["straight", "wavy", "curly", "coily", "kinky"] = "straight"
    color: Literal[
        "natural", "black", "dark_brown", "medium_brown", "light_brown", "blonde", "auburn", "gray", "silver"
    ] = "natural"
    parting: Literal["none", "center", "side", "deep_side"] = "side"
    identity_strength: float = Field(default=0.90, ge=0.5, le=1.0)


class HairlineBoundary(BaseModel):
    polyline_points: list[Point2D] = Field(default_factory=list)
    feather_width_px: int
    detection_confidence: float


class EarState(BaseModel):
    visible: bool
    contact_type: EarContact


class EarHairContact(BaseModel):
    left_ear: EarState
    right_ear: EarState


class HairEdgeQuality(BaseModel):
    halo_intensity: float
    edge_jaggedness: float
    boundary_bleed: float
    composite_score: float


def compute_hair_edge_quality(halo_intensity: float, edge_jaggedness: float, boundary_bleed: float) -> HairEdgeQuality:
    score = max(0.0, 1.0 - (0.40 * halo_intensity + 0.35 * edge_jaggedness + 0.25 * boundary_bleed))
    return HairEdgeQuality(
        halo_intensity=halo_intensity,
        edge_jaggedness=edge_jaggedness,
        boundary_bleed=boundary_bleed,
        composite_score=score,
    )


def extract_hairline_boundary(perception: PerceptionOutput) -> HairlineBoundary:
    confidence = perception.segmentation.hair_confidence
    if confidence < MIN_BOUNDARY_CONFIDENCE:
        return HairlineBoundary(feather_width_px=4, detection_confidence=0.0)
    points = list(perception.hair_analysis.hairline_points) if perception.hair_analysis else []
    return HairlineBoundary(
        polyline_points=points,
        feather_width_px=3 if confidence > 0.8 else 5,
        detection_confidence=confidence,
    )


def analyze_ear_contact(perception: PerceptionOutput) -> EarHairContact:
    hair = perception.hair_analysis
    if hair is None:
        visible = EarState(visible=True, contact_type="fully_visible")
        return EarHairContact(left_ear=visible, right_ear=visible)

    def classify(ear: Point2D) -> EarState:
        if not hair.hair_bbox.contains(ear):
            return EarState(visible=True, contact_type="fully_visible")
        if hair.coverage_ratio > COVERED_EAR_COVERAGE:
            return EarState(visible=False, contact_type="covered")
        return EarState(visible=True, contact_type="partially_visible")

    return EarHairContact(
        left_ear=classify(perception.landmarks.left_ear),
        right_ear=classify(perception.landmarks.right_ear),
    )


def compute_scope(perception: PerceptionOutput, params: HairParams) -> EditScopeConfig:
    boundary = extract_hairline_boundary(perception)
    scope = build_edit_scope(StudioType.HAIR, boundary_feather_px=boundary.feather_width_px)
    if perception.segmentation.hair_confidence < MIN_HAIRLINE_CONFIDENCE:
        allowed = [region for region in scope.allowed_regions if region != EditRegion.HAIRLINE]
        scope = scope.model_copy(update={"allowed_regions": allowed})
    return scope


def build_prompt(params: HairParams, perception: PerceptionOutput, gender_mode: GenderMode) -> PromptParts:
    hint = "women's " if gender_mode == "Ladies" else "men's "
    parting = f" with {params.parting.replace('_', ' ')} parting" if params.parting != "none" else ""
    text = " ".join(
        [
            f"Professional portrait with {hint}{params.length.replace('_', ' ')} hairstyle.",
            f"Style: {params.style.replace('_', ' ')}{parting}.",
            f"Texture: {params.texture}. Color: {params.color.replace('_', ' ')}.",
            "Maintain exact facial features, forehead shape, and face proportions.",
            "Hairline must follow natural boundary.",
            "Hair strands must have clean, artifact-free edges.",
            "No halo effects around hair boundary.",
        ]
    )
    boundary = extract_hairline_boundary(perception)
    direction = perception.hair_analysis.dominant_direction_deg if perception.hair_analysis else 0.0
    return PromptParts(
        text=text,
        control_maps={
            "hairline_boundary": boundary.model_dump_json(),
            "ear_contact": analyze_ear_contact(perception).model_dump_json(),
            "hair_direction": str(direction),
            "feather_width": str(boundary.feather_width_px),
        },
    )


def strand_edge_advisories(output: PerceptionOutput, original: PerceptionOutput, params: HairParams) -> list[str]:
    edges = output.edge_measurements
    quality = compute_hair_edge_quality(edges.halo_intensity, edges.edge_jaggedness, edges.boundary_bleed)
    threshold = get_studio_profile(StudioType.HAIR).quality_thresholds.get("strand_edge_quality")
    if threshold is not None and quality.composite_score < threshold:
        return [f"strand_edge_quality: {quality.composite_score:.3f} is below {threshold:.2f}"]
    return []


VARIANT = StudioVariant(
    studio_type=StudioType.HAIR,
    params_model=HairParams,
    build_prompt=build_prompt,
    compute_scope=compute_scope,
    advisories=strand_edge_advisories,
)
