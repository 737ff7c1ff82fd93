from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

from formal_studio.schemas import IDENTITY_LOCKED_REGIONS, EditRegion, NegativeConstraint, StudioType

BASE_DIR = Path(__file__).resolve().parents[1]
STUDIO_CONFIG_PATH = BASE_DIR / "formal_studio" / "config" / "studios.yaml"


class StudioProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    allowed_regions: tuple[EditRegion, ...] = ()
    preserve_regions: tuple[EditRegion, ...] = ()
    default_identity_weight: float = Field(ge=0.0, le=1.0)
    default_creativity: float = Field(ge=0.0, le=1.0)
    boundary_feather_px: int | None = None
    measures_garment_geometry: bool = False
    negative_constraints: tuple[NegativeConstraint, ...] = ()
    quality_thresholds: dict[str, float] = Field(default_factory=dict)


class RiskTolerances(BaseModel):
    model_config = ConfigDict(frozen=True)

    warp_risk_threshold: float = 0.30
    edge_risk_threshold: float = 0.25
    warp_identity_boost: float = 0.10
    edge_constraint_boost: float = 0.10
    min_face_confidence: float = 0.70
    min_body_confidence: float = 0.60


class RetryPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    preserve_weight_step: float = 0.10
    preserve_weight_cap: float = 0.30
    creativity_step: float = 0.15
    creativity_cap: float = 0.45
    min_creativity: float = 0.05
    inpainting_from_attempt: int = 2


class PipelineSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=0)
    step_timeout_s: float = Field(default=30.0, gt=0.0)
    total_timeout_s: float = Field(default=120.0, gt=0.0)
    auto_tighten: bool = True
    enable_output_perception: bool = True


class StudioSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    global_negative_constraints: tuple[NegativeConstraint, ...]
    tolerances: RiskTolerances = Field(default_factory=RiskTolerances)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    studios: dict[StudioType, StudioProfile]

    @model_validator(mode="after")
    def _check_studios(self) -> StudioSettings:
        missing = [studio.value for studio in StudioType if studio not in self.studios]
        if missing:
            raise ValueError(f"missing studio profiles: {', '.join(missing)}")
        for studio, profile in self.studios.items():
            locked = set(profile.allowed_regions) & set(IDENTITY_LOCKED_REGIONS)
            if locked:
                names = ", ".join(sorted(region.value for region in locked))
                raise ValueError(f"studio {studio.value} whitelists identity-locked regions: {names}")
        return self


@lru_cache(maxsize=1)
def load_studio_settings() -> StudioSettings:
    with STUDIO_CONFIG_PATH.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle)
    return StudioSettings(**raw)


def get_studio_profile(studio_type: StudioType | str) -> StudioProfile:
    settings = load_studio_settings()
    return settings.studios[StudioType(studio_type)]


def list_studio_profiles() -> dict[StudioType, StudioProfile]:
    return dict(load_studio_settings().studios)


def load_pipeline_settings() -> PipelineSettings:
    """Pipeline settings from YAML with environment overrides applied."""
    base = load_studio_settings().pipeline
    max_retries = max(0, int(os.getenv("FORMAL_STUDIO_MAX_RETRIES", str(base.max_retries))))
    step_timeout_s = max(0.1, float(os.getenv("FORMAL_STUDIO_STEP_TIMEOUT_S", str(base.step_timeout_s))))
    total_timeout_s = max(step_timeout_s, float(os.getenv("FORMAL_STUDIO_TOTAL_TIMEOUT_S", str(base.total_timeout_s))))
    return base.model_copy(
        update={
            "max_retries": max_retries,
            "step_timeout_s": step_timeout_s,
            "total_timeout_s": total_timeout_s,
        }
    )
