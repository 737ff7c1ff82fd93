from __future__ import annotations

import asyncio
from typing import Iterable

import pytest

from formal_studio.schemas import (
    AngleTriple,
    ArtifactDetection,
    BodyKeypoints,
    BoundingBox,
    EdgeMeasurements,
    FaceLandmarks2D,
    GenerationRequest,
    GeometryRiskScores,
    HairAnalysis,
    HeadPoseEstimate,
    PerceptionOutput,
    PhotometricEstimate,
    Point2D,
    SegmentationMasks,
    TorsoOrientation,
    Vector3,
)
from formal_studio.services.perception import GenerationError, PerceptionError

# Face box is 0.3 x 0.4, so its diagonal is exactly 0.5.
FACE_BOX = BoundingBox(top_left=Point2D(x=0.35, y=0.2), bottom_right=Point2D(x=0.65, y=0.6))


def _points(coords: Iterable[tuple[float, float]], dx: float, dy: float) -> tuple[Point2D, ...]:
    return tuple(Point2D(x=x + dx, y=y + dy) for x, y in coords)


def make_landmarks(dx: float = 0.0, dy: float = 0.0) -> FaceLandmarks2D:
    return FaceLandmarks2D(
        left_eye=_points([(0.42, 0.33), (0.45, 0.32), (0.48, 0.33)], dx, dy),
        right_eye=_points([(0.52, 0.33), (0.55, 0.32), (0.58, 0.33)], dx, dy),
        left_brow=_points([(0.41, 0.29), (0.47, 0.28)], dx, dy),
        right_brow=_points([(0.53, 0.28), (0.59, 0.29)], dx, dy),
        nose_ridge=_points([(0.50, 0.34), (0.50, 0.40)], dx, dy),
        nostrils=_points([(0.48, 0.42), (0.52, 0.42)], dx, dy),
        lips_outer=_points([(0.45, 0.48), (0.50, 0.47), (0.55, 0.48), (0.50, 0.50)], dx, dy),
        lips_inner=_points([(0.47, 0.48), (0.53, 0.48)], dx, dy),
        jawline=_points([(0.38, 0.45), (0.44, 0.54), (0.50, 0.57), (0.56, 0.54), (0.62, 0.45)], dx, dy),
        left_ear=Point2D(x=0.36 + dx, y=0.36 + dy),
        right_ear=Point2D(x=0.64 + dx, y=0.36 + dy),
    )


def make_masks(hair_confidence: float = 0.9, garment_labels: tuple[str, ...] = ()) -> SegmentationMasks:
    names = [
        "hair",
        "face_skin",
        "eyebrows",
        "eyes",
        "lips",
        "ears",
        "neck",
        "torso",
        "hands",
        "clothing",
        "tie_area",
        "lapel_area",
        "collar_area",
        "accessory_zones",
        "background",
        "hair_alpha_matte",
    ]
    return SegmentationMasks(
        **{name: f"mask://{name}" for name in names},
        hair_confidence=hair_confidence,
        garment_labels=garment_labels,
    )


def make_perception(
    *,
    dx: float = 0.0,
    yaw: float = 0.0,
    warp_risk: float = 0.1,
    edge_risk: float = 0.1,
    color_temperature_k: float = 5500.0,
    light: tuple[float, float, float] = (0.0, -1.0, 1.0),
    shoulder_slope: float = 0.0,
    edges: EdgeMeasurements | None = None,
    artifacts: tuple[ArtifactDetection, ...] = (),
    hair_confidence: float = 0.9,
    hair_analysis: HairAnalysis | None = None,
    garment_labels: tuple[str, ...] = (),
    face_box: BoundingBox = FACE_BOX,
) -> PerceptionOutput:
    return PerceptionOutput(
        landmarks=make_landmarks(dx),
        head_pose=HeadPoseEstimate(angles=AngleTriple(yaw=yaw)),
        body_keypoints=BodyKeypoints(
            neck=Point2D(x=0.5, y=0.65),
            left_shoulder=Point2D(x=0.3, y=0.72),
            right_shoulder=Point2D(x=0.7, y=0.72),
            left_elbow=Point2D(x=0.25, y=0.9),
            right_elbow=Point2D(x=0.75, y=0.9),
            left_wrist=Point2D(x=0.27, y=0.98),
            chest_center=Point2D(x=0.5, y=0.8),
            left_hip=Point2D(x=0.38, y=1.0),
            right_hip=Point2D(x=0.62, y=1.0),
        ),
        torso_orientation=TorsoOrientation(shoulder_slope_angle_deg=shoulder_slope),
        segmentation=make_masks(hair_confidence, garment_labels),
        photometrics=PhotometricEstimate(
            dominant_light_direction=Vector3(x=light[0], y=light[1], z=light[2]),
            color_temperature_k=color_temperature_k,
            diffuse_ratio=0.6,
        ),
        geometry_risk=GeometryRiskScores(warp_risk=warp_risk, edge_risk=edge_risk),
        face_bounding_box=face_box,
        identity_mask_ref="mask://identity",
        hair_analysis=hair_analysis,
        edge_measurements=edges or EdgeMeasurements(),
        artifacts=artifacts,
    )


class FakePerception:
    def __init__(
        self,
        by_ref: dict[str, PerceptionOutput],
        errors: dict[str, PerceptionError] | None = None,
        delay_s: float = 0.0,
    ) -> None:
        self.by_ref = by_ref
        self.errors = errors or {}
        self.delay_s = delay_s
        self.calls: list[str] = []

    async def run(self, image_ref: str) -> PerceptionOutput:
        self.calls.append(image_ref)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if image_ref in self.errors:
            raise self.errors[image_ref]
        return self.by_ref[image_ref]


class FakeGeneration:
    def __init__(
        self,
        outputs: list[str],
        error: GenerationError | None = None,
        delay_s: float = 0.0,
    ) -> None:
        self.outputs = list(outputs)
        self.error = error
        self.delay_s = delay_s
        self.requests: list[GenerationRequest] = []

    async def generate(self, request: GenerationRequest) -> str:
        self.requests.append(request)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        return self.outputs[min(len(self.requests), len(self.outputs)) - 1]


@pytest.fixture
def perception() -> PerceptionOutput:
    return make_perception()
