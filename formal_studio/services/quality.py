from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from formal_studio.schemas import (
    ArtifactDetection,
    EdgeMeasurements,
    PerceptionOutput,
    QualityEvaluation,
    QualityMetric,
    Vector3,
)
from formal_studio.services.perception import compute_landmark_drift, compute_pose_delta

METRIC_THRESHOLDS: dict[str, float] = {
    "identity_stability": 0.92,
    "pose_stability": 0.90,
    "geometry_alignment": 0.85,
    "edge_fidelity": 0.88,
    "lighting_coherence": 0.82,
    "artifact_penalty": 0.90,
}
METRIC_WEIGHTS: dict[str, float] = {
    "identity_stability": 0.30,
    "pose_stability": 0.15,
    "geometry_alignment": 0.15,
    "edge_fidelity": 0.15,
    "lighting_coherence": 0.10,
    "artifact_penalty": 0.15,
}
COMPOSITE_PASS_THRESHOLD = 0.87
CATASTROPHIC_FLOOR = 0.70

LANDMARK_DRIFT_TOLERANCE = 0.015
POSE_DELTA_TOLERANCE_DEG = 3.0
COLLAR_ERROR_BOUND = 0.05
LAPEL_ASYMMETRY_BOUND = 0.15
TIE_OFFSET_BOUND = 0.04
SHOULDER_SLOPE_BOUND_DEG = 5.0
LIGHT_ANGLE_BOUND_DEG = 30.0
CCT_RELATIVE_BOUND = 0.20


@dataclass
class GarmentGeometry:
    collar_error: float = 0.0
    lapel_asymmetry: float = 0.0
    tie_offset: float = 0.0
    shoulder_slope_delta: float = 0.0


def clamp01(value: float) -> float:
    return float(np.clip(value, 0.0, 1.0))


def vector_angle_deg(a: Vector3, b: Vector3) -> float:
    """Angle between two vectors in degrees; 90 when either has zero length."""
    va = np.array([a.x, a.y, a.z], dtype=np.float64)
    vb = np.array([b.x, b.y, b.z], dtype=np.float64)
    mag_a = float(np.linalg.norm(va))
    mag_b = float(np.linalg.norm(vb))
    if mag_a == 0 or mag_b == 0:
        return 90.0
    cos_angle = float(np.clip(np.dot(va, vb) / (mag_a * mag_b), -1.0, 1.0))
    return math.degrees(math.acos(cos_angle))


def _metric(name: str, score: float, detail: str) -> QualityMetric:
    threshold = METRIC_THRESHOLDS[name]
    score = clamp01(score)
    return QualityMetric(name=name, score=score, threshold=threshold, passed=score >= threshold, detail=detail)


def compute_identity_stability(original: PerceptionOutput, output: PerceptionOutput) -> QualityMetric:
    drift = compute_landmark_drift(original.landmarks, output.landmarks, original.face_bounding_box)
    score = 1.0 - clamp01(drift / LANDMARK_DRIFT_TOLERANCE)
    return _metric(
        "identity_stability",
        score,
        f"Landmark drift {drift:.4f} (tolerance {LANDMARK_DRIFT_TOLERANCE})",
    )


def compute_pose_stability(original: PerceptionOutput, output: PerceptionOutput) -> QualityMetric:
    delta = compute_pose_delta(original.head_pose.angles, output.head_pose.angles)
    score = 1.0 - clamp01(delta / POSE_DELTA_TOLERANCE_DEG)
    return _metric("pose_stability", score, f"Head pose delta {delta:.2f} deg (tolerance {POSE_DELTA_TOLERANCE_DEG})")


def compute_geometry_alignment(geometry: GarmentGeometry) -> QualityMetric:
    collar = 1.0 - clamp01(geometry.collar_error / COLLAR_ERROR_BOUND)
    lapel = 1.0 - clamp01(geometry.lapel_asymmetry / LAPEL_ASYMMETRY_BOUND)
    tie = 1.0 - clamp01(geometry.tie_offset / TIE_OFFSET_BOUND)
    shoulder = 1.0 - clamp01(geometry.shoulder_slope_delta / SHOULDER_SLOPE_BOUND_DEG)
    score = 0.30 * collar + 0.25 * lapel + 0.20 * tie + 0.25 * shoulder
    return _metric(
        "geometry_alignment",
        score,
        f"collar={collar:.2f} lapel={lapel:.2f} tie={tie:.2f} shoulder={shoulder:.2f}",
    )


def compute_edge_fidelity(edges: EdgeMeasurements) -> QualityMetric:
    score = 1.0 - (edges.halo_intensity + edges.edge_jaggedness + edges.boundary_bleed) / 3.0
    return _metric(
        "edge_fidelity",
        score,
        f"halo={edges.halo_intensity:.2f} jaggedness={edges.edge_jaggedness:.2f} bleed={edges.boundary_bleed:.2f}",
    )


def compute_lighting_coherence(original: PerceptionOutput, output: PerceptionOutput) -> QualityMetric:
    angle = vector_angle_deg(
        original.photometrics.dominant_light_direction,
        output.photometrics.dominant_light_direction,
    )
    input_cct = original.photometrics.color_temperature_k
    output_cct = output.photometrics.color_temperature_k
    cct_delta = abs(output_cct - input_cct) / input_cct if input_cct > 0 else 0.0
    score = 1.0 - 0.6 * clamp01(angle / LIGHT_ANGLE_BOUND_DEG) - 0.4 * clamp01(cct_delta / CCT_RELATIVE_BOUND)
    return _metric(
        "lighting_coherence",
        score,
        f"Light direction delta {angle:.1f} deg, colour temperature delta {cct_delta:.1%}",
    )


def compute_artifact_penalty(artifacts: Sequence[ArtifactDetection]) -> QualityMetric:
    if not artifacts:
        return _metric("artifact_penalty", 1.0, "No artifacts detected")
    mean_severity = float(np.mean([artifact.severity for artifact in artifacts]))
    notable = sorted((a for a in artifacts if a.severity > 0.1), key=lambda a: a.severity, reverse=True)[:3]
    if notable:
        detail = "Detected: " + ", ".join(f"{a.type} ({a.severity:.2f})" for a in notable)
    else:
        detail = "Minor artifacts only"
    return _metric("artifact_penalty", 1.0 - mean_severity, detail)


def evaluate_quality(metrics: Sequence[QualityMetric]) -> QualityEvaluation:
    """Combine the six metrics into a weighted composite with the pass gate.

    Metrics may be supplied in any order; each name must appear exactly once.
    """
    by_name = {metric.name: metric for metric in metrics}
    if len(by_name) != len(metrics) or set(by_name) != set(METRIC_WEIGHTS):
        raise ValueError(f"expected one metric each of: {', '.join(METRIC_WEIGHTS)}")

    composite = sum(METRIC_WEIGHTS[name] * by_name[name].score for name in METRIC_WEIGHTS)
    catastrophic = any(metric.score < CATASTROPHIC_FLOOR for metric in metrics)
    passed = (
        composite >= COMPOSITE_PASS_THRESHOLD
        and by_name["identity_stability"].score >= METRIC_THRESHOLDS["identity_stability"]
        and not catastrophic
    )
    return QualityEvaluation(
        identity_stability=by_name["identity_stability"],
        pose_stability=by_name["pose_stability"],
        geometry_alignment=by_name["geometry_alignment"],
        edge_fidelity=by_name["edge_fidelity"],
        lighting_coherence=by_name["lighting_coherence"],
        artifact_penalty=by_name["artifact_penalty"],
        composite_score=composite,
        passed=passed,
    )


def measure_garment_geometry(original: PerceptionOutput, output: PerceptionOutput) -> GarmentGeometry:
    """Garment alignment errors of the output relative to the input body pose."""
    face_box = original.face_bounding_box
    src = original.body_keypoints
    dst = output.body_keypoints

    def shoulder_drop(body) -> float:
        return (body.left_shoulder.y - body.neck.y) - (body.right_shoulder.y - body.neck.y)

    def lapel_skew(body) -> float:
        left = math.atan2(body.left_shoulder.y - body.neck.y, body.left_shoulder.x - body.neck.x)
        right = math.atan2(body.right_shoulder.y - body.neck.y, body.right_shoulder.x - body.neck.x)
        return abs(left) - abs(right)

    def tie_drift(body) -> float:
        return abs(body.chest_center.x - body.neck.x)

    collar_error = abs(shoulder_drop(dst) - shoulder_drop(src)) / face_box.height if face_box.height > 0 else 0.0
    tie_offset = (
        max(0.0, tie_drift(dst) - tie_drift(src)) / face_box.width if face_box.width > 0 else 0.0
    )
    return GarmentGeometry(
        collar_error=collar_error,
        lapel_asymmetry=abs(lapel_skew(dst) - lapel_skew(src)),
        tie_offset=tie_offset,
        shoulder_slope_delta=abs(
            output.torso_orientation.shoulder_slope_angle_deg - original.torso_orientation.shoulder_slope_angle_deg
        ),
    )


def compute_hair_integrity_score(boundary_roughness: float, halo_strength: float, edge_bleed: float) -> float:
    return clamp01(1.0 - 0.40 * boundary_roughness - 0.30 * halo_strength - 0.30 * edge_bleed)


def compute_accessory_realism_score(
    scale_ratio: float,
    perspective_angle_delta: float,
    occlusion_correct: bool,
    shadow_angle_delta: float,
) -> float:
    scale_accuracy = clamp01(1.0 - abs(scale_ratio - 1.0))
    perspective_match = clamp01(1.0 - perspective_angle_delta / 15.0)
    occlusion = 1.0 if occlusion_correct else 0.0
    shadow_consistency = clamp01(1.0 - shadow_angle_delta / 20.0)
    return 0.25 * (scale_accuracy + perspective_match + occlusion + shadow_consistency)
