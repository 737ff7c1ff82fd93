from __future__ import annotations

import math
from typing import Literal

import numpy as np
from pydantic import BaseModel, Field

from formal_studio.schemas import GenderMode, PerceptionOutput, Point2D, StudioType
from formal_studio.studios.base import PromptParts, StudioVariant
from formal_studio.studios.hair import analyze_ear_contact

AccessoryType = Literal["glasses", "earrings", "necklace", "watch"]


class AccessoriesParams(BaseModel):
    glasses: Literal["none", "rimless", "thin_metal", "thick_frame", "aviator", "round_wire"] = "none"
    earring_style: Literal["none", "studs", "small_hoops", "drop", "chandelier"] = "none"
    necklace: Literal["none", "thin_chain", "pendant", "pearl_strand", "statement"] = "none"
    watch: Literal["none", "dress_watch", "sports_watch", "smart_watch"] = "none"
    jewelry_level: Literal["minimal", "subtle", "moderate", "statement"] = "subtle"
    identity_strength: float = Field(default=0.92, ge=0.5, le=1.0)

    def active_types(self) -> list[AccessoryType]:
        active: list[AccessoryType] = []
        if self.glasses != "none":
            active.append("glasses")
        if self.earring_style != "none":
            active.append("earrings")
        if self.necklace != "none":
            active.append("necklace")
        if self.watch != "none":
            active.append("watch")
        return active


class GlassesAnchors(BaseModel):
    nose_bridge: Point2D
    left_temple: Point2D
    right_temple: Point2D
    bridge_angle_deg: float
    inter_pupillary_distance: float


class EarringAnchors(BaseModel):
    left_earlobe: Point2D | None
    right_earlobe: Point2D | None
    left_ear_visible: bool
    right_ear_visible: bool


class NecklaceAnchors(BaseModel):
    neck_contour: list[Point2D]
    left_clavicle: Point2D
    right_clavicle: Point2D
    drape_center: Point2D


class WatchAnchor(BaseModel):
    wrist_anchor: Point2D | None
    visible: bool


class AccessoryAnchorMap(BaseModel):
    glasses: GlassesAnchors
    earrings: EarringAnchors
    necklace: NecklaceAnchors
    watch: WatchAnchor


class AccessoryShadowSpec(BaseModel):
    shadow_angle_deg: float
    shadow_softness: float
    shadow_opacity: float
    nose_pad_shadow: bool
    earring_shadow_on_neck: bool


def _centroid(points: tuple[Point2D, ...], fallback: Point2D) -> Point2D:
    if not points:
        return fallback
    coords = np.array([(pt.x, pt.y) for pt in points], dtype=np.float64)
    center = coords.mean(axis=0)
    return Point2D(x=float(center[0]), y=float(center[1]))


def _nearest(points: tuple[Point2D, ...], target: Point2D, fallback: Point2D) -> Point2D:
    if not points:
        return fallback
    return min(points, key=lambda pt: pt.distance_to(target))


def compute_anchor_map(perception: PerceptionOutput) -> AccessoryAnchorMap:
    landmarks = perception.landmarks
    body = perception.body_keypoints

    left_eye = _centroid(landmarks.left_eye, landmarks.left_ear)
    right_eye = _centroid(landmarks.right_eye, landmarks.right_ear)
    midpoint = left_eye.lerp(right_eye, 0.5)
    left_inner = _nearest(landmarks.left_eye, midpoint, left_eye)
    right_inner = _nearest(landmarks.right_eye, midpoint, right_eye)
    chin = max(landmarks.jawline, key=lambda pt: pt.y) if landmarks.jawline else body.neck

    left_clavicle = Point2D(
        x=body.left_shoulder.x + (body.neck.x - body.left_shoulder.x) * 0.3,
        y=body.left_shoulder.y,
    )
    right_clavicle = Point2D(
        x=body.right_shoulder.x + (body.neck.x - body.right_shoulder.x) * 0.3,
        y=body.right_shoulder.y,
    )
    ears = analyze_ear_contact(perception)
    wrist = body.left_wrist or body.right_wrist

    return AccessoryAnchorMap(
        glasses=GlassesAnchors(
            nose_bridge=left_inner.lerp(right_inner, 0.5),
            left_temple=landmarks.left_ear,
            right_temple=landmarks.right_ear,
            bridge_angle_deg=math.degrees(math.atan2(right_eye.y - left_eye.y, right_eye.x - left_eye.x)),
            inter_pupillary_distance=left_eye.distance_to(right_eye),
        ),
        earrings=EarringAnchors(
            left_earlobe=landmarks.left_ear if ears.left_ear.visible else None,
            right_earlobe=landmarks.right_ear if ears.right_ear.visible else None,
            left_ear_visible=ears.left_ear.visible,
            right_ear_visible=ears.right_ear.visible,
        ),
        necklace=NecklaceAnchors(
            neck_contour=[chin, chin.lerp(body.neck, 0.5), body.neck],
            left_clavicle=left_clavicle,
            right_clavicle=right_clavicle,
            drape_center=Point2D(
                x=(left_clavicle.x + right_clavicle.x) / 2,
                y=max(left_clavicle.y, right_clavicle.y) + 0.02,
            ),
        ),
        watch=WatchAnchor(wrist_anchor=wrist, visible=wrist is not None),
    )


def compute_shadow_spec(perception: PerceptionOutput, accessory_types: list[AccessoryType]) -> AccessoryShadowSpec:
    light = perception.photometrics
    return AccessoryShadowSpec(
        shadow_angle_deg=(light.light_angle_deg + 180.0) % 360.0,
        shadow_softness=light.diffuse_ratio,
        shadow_opacity=min(0.6, 1.0 - light.diffuse_ratio) * 0.8,
        nose_pad_shadow="glasses" in accessory_types,
        earring_shadow_on_neck="earrings" in accessory_types,
    )


def build_prompt(params: AccessoriesParams, perception: PerceptionOutput, gender_mode: GenderMode) -> PromptParts:
    descriptions: list[str] = []
    if params.glasses != "none":
        descriptions.append(f"wearing {params.glasses.replace('_', ' ')} glasses")
    if params.earring_style != "none":
        hint = "elegant " if gender_mode == "Ladies" else ""
        descriptions.append(f"{hint}{params.earring_style.replace('_', ' ')} earrings")
    if params.necklace != "none":
        descriptions.append(f"{params.necklace.replace('_', ' ')} necklace")
    if params.watch != "none":
        descriptions.append(f"{params.watch.replace('_', ' ')} watch")
    accessories = ", ".join(descriptions) if descriptions else "no additional accessories"

    text = " ".join(
        [
            "Professional portrait photograph.",
            f"Subject {accessories}.",
            f"Level of jewelry: {params.jewelry_level}.",
            "Accessories must sit naturally on anatomy.",
            "Glasses must align with nose bridge and ear temples.",
            "Maintain exact facial features and skin tone.",
            "Accessory shadows must be physically correct.",
        ]
    )
    active = params.active_types()
    return PromptParts(
        text=text,
        control_maps={
            "accessory_anchors": compute_anchor_map(perception).model_dump_json(),
            "shadow_spec": compute_shadow_spec(perception, active).model_dump_json(),
            "active_accessories": ",".join(active),
        },
    )


VARIANT = StudioVariant(
    studio_type=StudioType.ACCESSORIES,
    params_model=AccessoriesParams,
    build_prompt=build_prompt,
)
