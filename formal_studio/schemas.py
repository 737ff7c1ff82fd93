from __future__ import annotations

import math
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class EditRegion(str, Enum):
    FACE_SKIN = "face_skin"
    EYES = "eyes"
    EYEBROWS = "eyebrows"
    NOSE = "nose"
    LIPS = "lips"
    EARS = "ears"
    JAW = "jaw"
    HAIRLINE = "hairline"
    HAIR = "hair"
    NECK = "neck"
    SHOULDERS = "shoulders"
    TORSO = "torso"
    ARMS = "arms"
    HANDS = "hands"
    CLOTHING = "clothing"
    TIE_AREA = "tie_area"
    LAPEL_AREA = "lapel_area"
    COLLAR_AREA = "collar_area"
    ACCESSORY_ZONE = "accessory_zone"
    ACCESSORIES = "accessories"
    GLASSES = "glasses"
    EARRINGS = "earrings"
    NECKLACE = "necklace"
    BACKGROUND = "background"


# Biometric zones that no studio may ever edit.
IDENTITY_LOCKED_REGIONS: tuple[EditRegion, ...] = (
    EditRegion.EYES,
    EditRegion.EYEBROWS,
    EditRegion.NOSE,
    EditRegion.LIPS,
    EditRegion.JAW,
    EditRegion.FACE_SKIN,
)


class StudioType(str, Enum):
    PORTRAIT = "portrait"
    HAIR = "hair"
    ACCESSORIES = "accessories"
    BACKGROUND = "background"
    MAGIC_PROMPT = "magic_prompt"
    DESIGNER = "designer"


GenderMode = Literal["Gentlemen", "Ladies"]
PipelineStatus = Literal[
    "idle",
    "perceiving",
    "constraining",
    "generating",
    "evaluating",
    "validating",
    "retrying",
    "complete",
    "failed",
    "blocked",
]
RetryAction = Literal[
    "increase_preserve_weight",
    "tighten_negative_constraints",
    "reduce_edit_scope",
    "lower_creativity",
    "switch_inpainting_only",
]
ArtifactType = Literal[
    "hand_distortion",
    "hair_banding",
    "collar_break",
    "fabric_discontinuity",
    "unrealistic_specular",
    "plastic_skin",
    "texture_repetition",
    "edge_artifact",
]
MetricName = Literal[
    "identity_stability",
    "pose_stability",
    "geometry_alignment",
    "edge_fidelity",
    "lighting_coherence",
    "artifact_penalty",
]


# ---------------------------------------------------------------------------
# Perception contract. Coordinates are normalized to the [0, 1] image frame.
# ---------------------------------------------------------------------------


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class Point2D(_Frozen):
    x: float
    y: float

    def distance_to(self, other: Point2D) -> float:
        return math.hypot(self.x - other.x, self.y - other.y)

    def lerp(self, other: Point2D, t: float) -> Point2D:
        return Point2D(x=self.x + (other.x - self.x) * t, y=self.y + (other.y - self.y) * t)


class Vector3(_Frozen):
    x: float
    y: float
    z: float


class BoundingBox(_Frozen):
    top_left: Point2D
    bottom_right: Point2D

    @property
    def width(self) -> float:
        return self.bottom_right.x - self.top_left.x

    @property
    def height(self) -> float:
        return self.bottom_right.y - self.top_left.y

    @property
    def diagonal(self) -> float:
        return math.hypot(self.width, self.height)

    @property
    def area(self) -> float:
        return max(0.0, self.width) * max(0.0, self.height)

    def contains(self, point: Point2D) -> bool:
        return (
            self.top_left.x <= point.x <= self.bottom_right.x
            and self.top_left.y <= point.y <= self.bottom_right.y
        )


class AngleTriple(_Frozen):
    yaw: float = 0.0
    pitch: float = 0.0
    roll: float = 0.0


class FaceLandmarks2D(_Frozen):
    left_eye: tuple[Point2D, ...] = ()
    right_eye: tuple[Point2D, ...] = ()
    left_brow: tuple[Point2D, ...] = ()
    right_brow: tuple[Point2D, ...] = ()
    nose_ridge: tuple[Point2D, ...] = ()
    nostrils: tuple[Point2D, ...] = ()
    lips_outer: tuple[Point2D, ...] = ()
    lips_inner: tuple[Point2D, ...] = ()
    jawline: tuple[Point2D, ...] = ()
    left_ear: Point2D
    right_ear: Point2D

    def flatten(self) -> list[Point2D]:
        """All landmark points in a fixed order, ears last."""
        return [
            *self.left_eye,
            *self.right_eye,
            *self.left_brow,
            *self.right_brow,
            *self.nose_ridge,
            *self.nostrils,
            *self.lips_outer,
            *self.lips_inner,
            *self.jawline,
            self.left_ear,
            self.right_ear,
        ]


class HeadPoseEstimate(_Frozen):
    angles: AngleTriple = Field(default_factory=AngleTriple)
    focal_length_proxy: float = 0.0
    face_to_distance_proxy: float = 0.0


class BodyKeypoints(_Frozen):
    neck: Point2D
    left_shoulder: Point2D
    right_shoulder: Point2D
    left_elbow: Point2D
    right_elbow: Point2D
    left_wrist: Point2D | None = None
    right_wrist: Point2D | None = None
    chest_center: Point2D
    left_hip: Point2D
    right_hip: Point2D
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class TorsoOrientation(_Frozen):
    angles: AngleTriple = Field(default_factory=AngleTriple)
    shoulder_slope_angle_deg: float = 0.0
    shoulder_symmetry_score: float = Field(default=1.0, ge=0.0, le=1.0)


class SegmentationMasks(_Frozen):
    hair: str
    face_skin: str
    eyebrows: str
    eyes: str
    lips: str
    ears: str
    neck: str
    torso: str
    hands: str
    clothing: str
    tie_area: str
    lapel_area: str
    collar_area: str
    accessory_zones: str
    background: str
    hair_alpha_matte: str
    hair_confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    garment_labels: tuple[str, ...] = ()


class PhotometricEstimate(_Frozen):
    dominant_light_direction: Vector3
    color_temperature_k: float = Field(ge=2500.0, le=10000.0)
    exposure_map_ref: str = ""
    shadow_map_ref: str = ""
    shadow_hardness: float = Field(default=0.5, ge=0.0, le=1.0)
    diffuse_ratio: float = Field(default=0.5, ge=0.0, le=1.0)
    skin_tone_sample_region: BoundingBox | None = None

    @property
    def light_angle_deg(self) -> float:
        direction = self.dominant_light_direction
        return math.degrees(math.atan2(direction.y, direction.x))


class GeometryRiskScores(_Frozen):
    warp_risk: float = Field(default=0.0, ge=0.0, le=1.0)
    edge_risk: float = Field(default=0.0, ge=0.0, le=1.0)


class HairAnalysis(_Frozen):
    hair_bbox: BoundingBox
    coverage_ratio: float = Field(ge=0.0, le=1.0)
    dominant_direction_deg: float = 0.0
    avg_strand_thickness: float = 0.0
    boundary_complexity: float = Field(default=0.0, ge=0.0, le=1.0)
    hairline_points: tuple[Point2D, ...] = ()


class EdgeMeasurements(_Frozen):
    halo_intensity: float = Field(default=0.0, ge=0.0, le=1.0)
    edge_jaggedness: float = Field(default=0.0, ge=0.0, le=1.0)
    boundary_bleed: float = Field(default=0.0, ge=0.0, le=1.0)


class ArtifactDetection(_Frozen):
    type: ArtifactType
    severity: float = Field(ge=0.0, le=1.0)
    region: str = ""


class PerceptionOutput(_Frozen):
    landmarks: FaceLandmarks2D
    head_pose: HeadPoseEstimate
    body_keypoints: BodyKeypoints
    torso_orientation: TorsoOrientation
    segmentation: SegmentationMasks
    photometrics: PhotometricEstimate
    geometry_risk: GeometryRiskScores
    face_bounding_box: BoundingBox
    identity_mask_ref: str
    hair_analysis: HairAnalysis | None = None
    edge_measurements: EdgeMeasurements = Field(default_factory=EdgeMeasurements)
    artifacts: tuple[ArtifactDetection, ...] = ()
    warnings: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Constraints and generation requests
# ---------------------------------------------------------------------------


class EditScopeConfig(BaseModel):
    allowed_regions: list[EditRegion] = Field(default_factory=list)
    preserve_regions: list[EditRegion] = Field(default_factory=list)
    boundary_feather_px: int | None = None

    @model_validator(mode="after")
    def _preserve_wins(self) -> EditScopeConfig:
        overlap = set(self.allowed_regions) & set(self.preserve_regions)
        if overlap:
            names = ", ".join(sorted(region.value for region in overlap))
            raise ValueError(f"regions cannot be both allowed and preserved: {names}")
        missing = set(IDENTITY_LOCKED_REGIONS) - set(self.preserve_regions)
        if missing:
            names = ", ".join(sorted(region.value for region in missing))
            raise ValueError(f"identity-locked regions must be preserved: {names}")
        return self


class NegativeConstraint(_Frozen):
    id: str
    description: str
    weight: float = Field(ge=0.0, le=1.0)


class ConditioningPayload(BaseModel):
    structured_prompt: str = ""
    reference_images: list[str] = Field(default_factory=list)
    control_maps: dict[str, str] = Field(default_factory=dict)
    negative_tokens: list[str] = Field(default_factory=list)


class GenerationRequest(BaseModel):
    studio_type: StudioType
    input_image_ref: str
    perception: PerceptionOutput
    edit_scope: EditScopeConfig
    conditioning: ConditioningPayload = Field(default_factory=ConditioningPayload)
    negative_constraints: list[NegativeConstraint] = Field(default_factory=list)
    identity_weight: float = Field(ge=0.0, le=1.0)
    creativity_level: float = Field(ge=0.0, le=1.0)
    retry_attempt: int = Field(default=0, ge=0)
    inpainting_only_regions: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Evaluation, validation and results
# ---------------------------------------------------------------------------


class QualityMetric(BaseModel):
    name: MetricName
    score: float = Field(ge=0.0, le=1.0)
    threshold: float
    passed: bool
    detail: str = ""


class QualityEvaluation(BaseModel):
    identity_stability: QualityMetric
    pose_stability: QualityMetric
    geometry_alignment: QualityMetric
    edge_fidelity: QualityMetric
    lighting_coherence: QualityMetric
    artifact_penalty: QualityMetric
    composite_score: float
    passed: bool

    def metrics(self) -> list[QualityMetric]:
        return [
            self.identity_stability,
            self.pose_stability,
            self.geometry_alignment,
            self.edge_fidelity,
            self.lighting_coherence,
            self.artifact_penalty,
        ]

    def failed_metrics(self) -> list[QualityMetric]:
        return [metric for metric in self.metrics() if not metric.passed]


class RetryAdjustment(_Frozen):
    action: RetryAction
    target: str
    suggested_value: float


class ValidationResult(BaseModel):
    quality: QualityEvaluation
    failures: list[str] = Field(default_factory=list)
    retry_adjustments: list[RetryAdjustment] = Field(default_factory=list)
    advisories: list[str] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.quality.passed


class RetryDecision(BaseModel):
    should_retry: bool
    adjustments: list[RetryAdjustment] = Field(default_factory=list)
    user_guidance: str | None = None
    use_best_previous: bool = False


class AttemptRecord(BaseModel):
    attempt: int
    output_image_ref: str
    validation: ValidationResult | None = None
    identity_weight: float
    creativity_level: float

    @property
    def composite_score(self) -> float:
        if self.validation is None:
            return 0.0
        return self.validation.quality.composite_score


class PipelineResult(BaseModel):
    run_id: str
    studio_type: StudioType
    status: PipelineStatus
    accepted: bool = False
    output_image_ref: str | None = None
    validation: ValidationResult | None = None
    retry_attempts: int = 0
    max_retries: int
    execution_time_ms: float = 0.0
    step_timings: dict[str, float] = Field(default_factory=dict)
    error: str | None = None
    rejection_reason: str | None = None
    user_guidance: str | None = None
    attempts: list[AttemptRecord] = Field(default_factory=list)
    status_history: list[PipelineStatus] = Field(default_factory=list)
