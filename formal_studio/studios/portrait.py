from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from formal_studio.schemas import EditRegion, GenderMode, PerceptionOutput, Point2D, StudioType
from formal_studio.studios.base import PromptParts, StudioVariant


class PortraitParams(BaseModel):
    suit_style: Literal["single-breasted", "double-breasted", "tuxedo"] = "single-breasted"
    fit: Literal["slim", "tailored", "relaxed"] = "tailored"
    lapel_width: Literal["narrow", "standard", "wide"] = "standard"
    shirt_collar: Literal["classic", "spread", "cutaway", "button-down", "mandarin", "wing"] = "spread"
    tie: Literal["none", "tie", "bowtie"] = "tie"
    lighting_mood: Literal[
        "neutral_studio", "soft_window", "corporate_office", "warm_editorial", "cool_editorial"
    ] = "neutral_studio"
    identity_strength: float = Field(default=0.85, ge=0.5, le=1.0)


class PointPair(BaseModel):
    left: Point2D
    right: Point2D


class Segment(BaseModel):
    top: Point2D
    bottom: Point2D


class GarmentAnchorPoints(BaseModel):
    neck_centerline: Segment
    collar_tips: PointPair
    shoulder_seams: PointPair
    torso_midline: Segment
    tie_knot_anchor: Point2D
    lapel_notches: PointPair
    button_line_axis: list[Point2D]


class GenerationPass(BaseModel):
    description: str
    regions: list[EditRegion]
    objectives: list[str]


class TwoPassPlan(BaseModel):
    structure: GenerationPass
    texture: GenerationPass


def compute_anchor_points(perception: PerceptionOutput) -> GarmentAnchorPoints:
    body = perception.body_keypoints
    center_x = (body.left_shoulder.x + body.right_shoulder.x) / 2
    hip_y = (body.left_hip.y + body.right_hip.y) / 2
    neck_top = Point2D(x=center_x, y=body.neck.y)

    return GarmentAnchorPoints(
        neck_centerline=Segment(top=neck_top, bottom=Point2D(x=center_x, y=body.chest_center.y)),
        collar_tips=PointPair(
            left=body.neck.lerp(body.left_shoulder, 0.3),
            right=body.neck.lerp(body.right_shoulder, 0.3),
        ),
        shoulder_seams=PointPair(left=body.left_shoulder, right=body.right_shoulder),
        torso_midline=Segment(top=neck_top, bottom=Point2D(x=center_x, y=hip_y)),
        tie_knot_anchor=Point2D(x=center_x, y=body.neck.y + (body.chest_center.y - body.neck.y) * 0.15),
        lapel_notches=PointPair(
            left=body.neck.lerp(body.left_shoulder, 0.45),
            right=body.neck.lerp(body.right_shoulder, 0.45),
        ),
        button_line_axis=[
            Point2D(x=center_x, y=body.chest_center.y),
            Point2D(x=center_x, y=body.chest_center.y + (hip_y - body.chest_center.y) * 0.5),
        ],
    )


def build_two_pass_plan() -> TwoPassPlan:
    return TwoPassPlan(
        structure=GenerationPass(
            description="Structural garment layout",
            regions=[
                EditRegion.CLOTHING,
                EditRegion.COLLAR_AREA,
                EditRegion.LAPEL_AREA,
                EditRegion.SHOULDERS,
                EditRegion.TORSO,
            ],
            objectives=[
                "Generate correctly-positioned suit structure",
                "Align collar contact line with neck contour",
                "Match jacket shoulder seam to natural shoulder slope",
                "Center lapel notches symmetrically",
                "Position button line on torso midline axis",
            ],
        ),
        texture=GenerationPass(
            description="Texture and realism refinement",
            regions=[EditRegion.CLOTHING, EditRegion.COLLAR_AREA, EditRegion.LAPEL_AREA, EditRegion.TIE_AREA],
            objectives=[
                "Apply fabric texture with realistic grain direction",
                "Add natural fold lines following body contours",
                "Add collar shadow and contact shading",
                "Refine fabric-skin boundary at neck",
            ],
        ),
    )


def build_prompt(params: PortraitParams, perception: PerceptionOutput, gender_mode: GenderMode) -> PromptParts:
    prefix = "professional women's " if gender_mode == "Ladies" else ""
    tie = "no tie" if params.tie == "none" else params.tie
    text = " ".join(
        [
            "Professional portrait photograph.",
            f"Subject wearing {prefix}{params.fit} fit {params.suit_style} suit with {params.lapel_width} lapels.",
            f"{params.shirt_collar} collar shirt underneath, {tie}.",
            f"{params.lighting_mood.replace('_', ' ')} lighting.",
            "Maintain exact facial features and skin tone.",
            "Collar must align with neck contour.",
            "Jacket shoulders must match natural shoulder slope.",
            "Fabric must have realistic texture with natural folds.",
        ]
    )
    return PromptParts(
        text=text,
        control_maps={
            "garment_blueprint": build_two_pass_plan().model_dump_json(),
            "anchor_points": compute_anchor_points(perception).model_dump_json(),
            "shoulder_slope": str(perception.torso_orientation.shoulder_slope_angle_deg),
        },
    )


VARIANT = StudioVariant(
    studio_type=StudioType.PORTRAIT,
    params_model=PortraitParams,
    build_prompt=build_prompt,
)
