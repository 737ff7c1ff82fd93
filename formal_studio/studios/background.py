from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from formal_studio.schemas import GenderMode, PerceptionOutput, StudioType
from formal_studio.services.quality import clamp01
from formal_studio.studios.base import PromptParts, StudioVariant

MATTE_QUALITY_THRESHOLD = 0.88


class BackgroundParams(BaseModel):
    style: Literal[
        "studio_gradient",
        "solid_color",
        "office_interior",
        "outdoor_urban",
        "outdoor_nature",
        "abstract_texture",
        "corporate_lobby",
        "library",
        "window_light",
    ] = "studio_gradient"
    dominant_color: Literal[
        "auto", "neutral_gray", "warm_beige", "cool_blue", "dark_charcoal", "white", "navy"
    ] = "auto"
    blur_intensity: Literal["sharp", "soft", "strong_bokeh"] = "soft"
    environment_lighting: Literal[
        "match_subject", "studio", "natural_window", "overcast", "golden_hour"
    ] = "match_subject"
    identity_strength: float = Field(default=0.90, ge=0.5, le=1.0)


class MatteQuality(BaseModel):
    alpha_precision: float
    hair_strand_preservation: float
    edge_smoothness: float
    residual_halo: float
    color_spill: float
    composite_score: float


class DepthOfFieldSpec(BaseModel):
    subject_distance: float
    background_blur_radius_px: int
    bokeh_shape: Literal["circular", "hexagonal", "swirl"] = "circular"
    match_original_dof: bool = True


class LightingMatchSpec(BaseModel):
    target_color_temp_k: float
    light_direction_deg: float
    ambient_fill_ratio: float
    ground_shadow_opacity: float
    ground_shadow_blur_px: int


def compute_matte_quality(
    alpha_precision: float,
    hair_strand_preservation: float,
    edge_smoothness: float,
    residual_halo: float,
    color_spill: float,
) -> MatteQuality:
    score = clamp01(
        0.25 * alpha_precision
        + 0.25 * hair_strand_preservation
        + 0.20 * edge_smoothness
        + 0.15 * (1.0 - residual_halo)
        + 0.15 * (1.0 - color_spill)
    )
    return MatteQuality(
        alpha_precision=alpha_precision,
        hair_strand_preservation=hair_strand_preservation,
        edge_smoothness=edge_smoothness,
        residual_halo=residual_halo,
        color_spill=color_spill,
        composite_score=score,
    )


def estimate_depth_of_field(perception: PerceptionOutput) -> DepthOfFieldSpec:
    area = perception.face_bounding_box.area
    return DepthOfFieldSpec(
        subject_distance=max(0.2, 1.0 - area * 2.0),
        background_blur_radius_px=round(area * 30 + 3),
    )


def compute_lighting_match(perception: PerceptionOutput) -> LightingMatchSpec:
    light = perception.photometrics
    return LightingMatchSpec(
        target_color_temp_k=light.color_temperature_k,
        light_direction_deg=light.light_angle_deg,
        ambient_fill_ratio=light.diffuse_ratio,
        ground_shadow_opacity=min(0.5, 1.0 - light.diffuse_ratio),
        ground_shadow_blur_px=round(light.diffuse_ratio * 20 + 5),
    )


def build_prompt(params: BackgroundParams, perception: PerceptionOutput, gender_mode: GenderMode) -> PromptParts:
    lighting = compute_lighting_match(perception)
    color = f" in {params.dominant_color.replace('_', ' ')} tones" if params.dominant_color != "auto" else ""
    blur = {"sharp": "crisp", "soft": "softly blurred", "strong_bokeh": "strong bokeh"}[params.blur_intensity]
    text = " ".join(
        [
            f"Professional portrait with {params.style.replace('_', ' ')} background{color}.",
            f"Background: {blur}. Lighting: {lighting.target_color_temp_k:.0f}K, "
            f"direction {lighting.light_direction_deg:.0f} degrees.",
            "Preserve hair strand detail. No halo artifacts. Natural ground shadow.",
            "Maintain exact facial features and body position.",
        ]
    )
    return PromptParts(
        text=text,
        control_maps={
            "depth_of_field": estimate_depth_of_field(perception).model_dump_json(),
            "lighting_match": lighting.model_dump_json(),
            "background_environment": params.style,
            "blur_intensity": params.blur_intensity,
            "environment_lighting": params.environment_lighting,
        },
    )


def matte_advisories(output: PerceptionOutput, original: PerceptionOutput, params: BackgroundParams) -> list[str]:
    edges = output.edge_measurements
    input_cct = original.photometrics.color_temperature_k
    spill = abs(output.photometrics.color_temperature_k - input_cct) / input_cct if input_cct > 0 else 0.0
    matte = compute_matte_quality(
        alpha_precision=1.0 - edges.boundary_bleed,
        hair_strand_preservation=1.0 - edges.halo_intensity,
        edge_smoothness=1.0 - edges.edge_jaggedness,
        residual_halo=edges.halo_intensity,
        color_spill=clamp01(spill / 0.2),
    )
    if matte.composite_score < MATTE_QUALITY_THRESHOLD:
        return [f"matte_quality: {matte.composite_score:.3f} is below {MATTE_QUALITY_THRESHOLD:.2f}"]
    return []


VARIANT = StudioVariant(
    studio_type=StudioType.BACKGROUND,
    params_model=BackgroundParams,
    build_prompt=build_prompt,
    advisories=matte_advisories,
)
