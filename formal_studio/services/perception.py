from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Protocol

import numpy as np

from formal_studio.config import load_studio_settings
from formal_studio.schemas import (
    AngleTriple,
    BodyKeypoints,
    BoundingBox,
    FaceLandmarks2D,
    GeometryRiskScores,
    HairAnalysis,
    HeadPoseEstimate,
    PerceptionOutput,
    PhotometricEstimate,
    SegmentationMasks,
    TorsoOrientation,
)

LOG = logging.getLogger("formal_studio.perception")


class BackendError(Exception):
    """Base class for failures reported by an external inference backend."""


class PerceptionError(BackendError):
    def __init__(self, message: str, module: str, code: str, warnings: list[str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.module = module
        self.code = code
        self.warnings = list(warnings or [])

    def __str__(self) -> str:
        return f"{self.module}/{self.code}: {self.message}"


class GenerationError(BackendError):
    pass


class PerceptionService(Protocol):
    async def run(self, image_ref: str) -> PerceptionOutput: ...


# Sub-module contracts used by CompositePerceptionService.


@dataclass
class FaceResult:
    landmarks: FaceLandmarks2D
    head_pose: HeadPoseEstimate
    face_bounding_box: BoundingBox
    identity_mask_ref: str
    confidence: float
    warnings: list[str] = field(default_factory=list)


@dataclass
class BodyResult:
    keypoints: BodyKeypoints
    torso: TorsoOrientation
    warnings: list[str] = field(default_factory=list)


@dataclass
class SegmentationResult:
    masks: SegmentationMasks
    hair_analysis: HairAnalysis | None = None
    warnings: list[str] = field(default_factory=list)


class FaceModule(Protocol):
    async def estimate(self, image_ref: str) -> FaceResult: ...


class BodyModule(Protocol):
    async def estimate(self, image_ref: str) -> BodyResult: ...


class SegmentationModule(Protocol):
    async def segment(self, image_ref: str, face: FaceResult, body: BodyResult) -> SegmentationResult: ...


class PhotometricModule(Protocol):
    async def estimate(self, image_ref: str, face_skin_mask: str, torso_mask: str) -> PhotometricEstimate: ...


class GeometryRiskModule(Protocol):
    async def assess(
        self,
        face: FaceResult,
        body: BodyResult,
        segmentation: SegmentationResult,
        photometrics: PhotometricEstimate,
    ) -> GeometryRiskScores: ...


# ---------------------------------------------------------------------------
# Drift and delta formulas used by the quality evaluator
# ---------------------------------------------------------------------------


def _landmark_array(landmarks: FaceLandmarks2D) -> np.ndarray:
    points = landmarks.flatten()
    return np.array([(pt.x, pt.y) for pt in points], dtype=np.float64).reshape(-1, 2)


def compute_landmark_drift(original: FaceLandmarks2D, output: FaceLandmarks2D, face_box: BoundingBox) -> float:
    """Mean landmark displacement normalized by the face-box diagonal.

    Returns 1.0 (maximal drift) when the landmark sets are empty, differ in size,
    or the face box is degenerate.
    """
    src = _landmark_array(original)
    dst = _landmark_array(output)
    diagonal = face_box.diagonal
    if len(src) == 0 or len(src) != len(dst) or diagonal <= 0:
        return 1.0
    displacement = np.linalg.norm(dst - src, axis=1)
    return float(np.mean(displacement) / diagonal)


def compute_pose_delta(original: AngleTriple, output: AngleTriple) -> float:
    return max(
        abs(original.yaw - output.yaw),
        abs(original.pitch - output.pitch),
        abs(original.roll - output.roll),
    )


def compute_warp_risk(landmark_confidence: float, pose_extremity: float, face_area_ratio: float) -> float:
    raw = 0.40 * (1.0 - landmark_confidence) + 0.35 * pose_extremity + 0.25 * (1.0 - face_area_ratio)
    return float(np.clip(raw, 0.0, 1.0))


def compute_edge_risk(hair_complexity: float, ear_occlusion: float, background_contrast: float) -> float:
    raw = 0.45 * hair_complexity + 0.30 * ear_occlusion + 0.25 * (1.0 - background_contrast)
    return float(np.clip(raw, 0.0, 1.0))


# ---------------------------------------------------------------------------
# Composite perception runner
# ---------------------------------------------------------------------------


class CompositePerceptionService:
    """Runs the perception sub-modules with the required ordering.

    Face and body estimation run concurrently; segmentation, photometrics and
    geometry risk run in sequence after both have joined. A face result with an
    empty box or no eye or jaw landmarks aborts with ``no_face``.
    """

    def __init__(
        self,
        face: FaceModule,
        body: BodyModule,
        segmentation: SegmentationModule,
        photometrics: PhotometricModule,
        geometry_risk: GeometryRiskModule,
    ) -> None:
        self.face = face
        self.body = body
        self.segmentation = segmentation
        self.photometrics = photometrics
        self.geometry_risk = geometry_risk
        self.tolerances = load_studio_settings().tolerances

    async def run(self, image_ref: str) -> PerceptionOutput:
        face, body = await asyncio.gather(self.face.estimate(image_ref), self.body.estimate(image_ref))

        landmarks = face.landmarks
        if face.face_bounding_box.area <= 0 or not (landmarks.left_eye or landmarks.right_eye or landmarks.jawline):
            raise PerceptionError(
                "No face was detected in the image",
                module="face",
                code="no_face",
                warnings=face.warnings,
            )
        if face.confidence < self.tolerances.min_face_confidence:
            raise PerceptionError(
                f"Face confidence {face.confidence:.2f} is below {self.tolerances.min_face_confidence:.2f}",
                module="face",
                code="low_confidence",
                warnings=face.warnings,
            )
        if body.keypoints.confidence < self.tolerances.min_body_confidence:
            raise PerceptionError(
                "Subject is not visible from the waist up",
                module="body",
                code="insufficient_body",
                warnings=body.warnings,
            )

        segmentation = await self.segmentation.segment(image_ref, face, body)
        photometrics = await self.photometrics.estimate(
            image_ref,
            segmentation.masks.face_skin,
            segmentation.masks.torso,
        )
        risk = await self.geometry_risk.assess(face, body, segmentation, photometrics)

        warnings = [*face.warnings, *body.warnings, *segmentation.warnings]
        if warnings:
            LOG.info("perception_warnings image=%s warnings=%s", image_ref, ",".join(warnings))
        return PerceptionOutput(
            landmarks=face.landmarks,
            head_pose=face.head_pose,
            body_keypoints=body.keypoints,
            torso_orientation=body.torso,
            segmentation=segmentation.masks,
            photometrics=photometrics,
            geometry_risk=risk,
            face_bounding_box=face.face_bounding_box,
            identity_mask_ref=face.identity_mask_ref,
            hair_analysis=segmentation.hair_analysis,
            warnings=tuple(warnings),
        )
