from __future__ import annotations

from typing import Literal, Sequence

from pydantic import BaseModel, Field

from formal_studio.schemas import GenderMode, NegativeConstraint, PerceptionOutput, StudioType
from formal_studio.studios.base import PromptParts, StudioVariant

DressCodeLevel = Literal["casual", "business_casual", "formal", "executive"]

HEX_COLOR = r"^#[0-9a-fA-F]{6}$"

DRESS_CODE_RULES: dict[str, dict[str, tuple[str, ...]]] = {
    "casual": {"required": ("collared_shirt",), "prohibited": ()},
    "business_casual": {"required": ("collared_shirt", "trousers"), "prohibited": ("jeans", "sneakers")},
    "formal": {"required": ("suit_jacket", "dress_shirt", "tie"), "prohibited": ("polo", "sneakers", "jeans")},
    "executive": {
        "required": ("suit_jacket", "dress_shirt", "tie", "pocket_square"),
        "prohibited": ("polo", "sneakers", "jeans", "casual_watch"),
    },
}

BRAND_CONSTRAINTS = [
    NegativeConstraint(
        id="designer_no_off_brand_colors",
        description="Do not generate garment colors outside the brand palette",
        weight=0.90,
    ),
    NegativeConstraint(
        id="designer_no_casual_elements",
        description="Do not introduce casual clothing elements in formal dress codes",
        weight=0.85,
    ),
]


class BrandIdentity(BaseModel):
    primary_color: str = Field(default="#1a1a2e", pattern=HEX_COLOR)
    secondary_color: str = Field(default="#16213e", pattern=HEX_COLOR)
    accent_color: str = Field(default="#0f3460", pattern=HEX_COLOR)
    brand_name: str = ""
    logo_placement: Literal["none", "breast_pocket", "lapel_pin", "tie_clip", "cufflink"] = "none"
    dress_code_level: DressCodeLevel = "formal"


class DesignerParams(BaseModel):
    suit_style: Literal["single-breasted", "double-breasted", "tuxedo"] = "single-breasted"
    fit: Literal["slim", "tailored", "relaxed"] = "tailored"
    brand_identity: BrandIdentity = Field(default_factory=BrandIdentity)
    identity_strength: float = Field(default=0.88, ge=0.5, le=1.0)


class DressCodeCompliance(BaseModel):
    meets_requirements: bool
    issues: list[str] = Field(default_factory=list)
    score: float


def build_brand_overlay(brand: BrandIdentity) -> str:
    overlay = (
        f"Brand colors: primary {brand.primary_color}, secondary {brand.secondary_color}, "
        f"accent {brand.accent_color}."
    )
    if brand.logo_placement != "none":
        overlay += f" Subtle brand logo/monogram on {brand.logo_placement.replace('_', ' ')}."
    overlay += f" Dress code: {brand.dress_code_level.replace('_', ' ')}."
    return overlay


def _label_has_item(label: str, item: str) -> bool:
    """Whole-token match, so ``silk_tie`` carries ``tie`` but ``bowtie`` does not."""
    tokens = "_" + "_".join(label.lower().replace("-", " ").split()) + "_"
    return f"_{item}_" in tokens


def validate_dress_code(level: str, detected_garments: Sequence[str]) -> DressCodeCompliance:
    rules = DRESS_CODE_RULES.get(level, DRESS_CODE_RULES["formal"])
    issues: list[str] = []
    for item in rules["required"]:
        if not any(_label_has_item(garment, item) for garment in detected_garments):
            issues.append(f"Missing required item: {item.replace('_', ' ')}")
    for item in rules["prohibited"]:
        if any(_label_has_item(garment, item) for garment in detected_garments):
            issues.append(f"Prohibited item detected: {item.replace('_', ' ')}")
    return DressCodeCompliance(
        meets_requirements=not issues,
        issues=issues,
        score=max(0.0, 1.0 - 0.2 * len(issues)),
    )


def build_prompt(params: DesignerParams, perception: PerceptionOutput, gender_mode: GenderMode) -> PromptParts:
    brand = params.brand_identity
    prefix = "professional women's " if gender_mode == "Ladies" else ""
    text = " ".join(
        [
            "Professional corporate portrait.",
            f"Subject wearing {prefix}{params.fit} fit {params.suit_style} suit.",
            build_brand_overlay(brand),
            "Garment colors must stay within the brand palette.",
            "Maintain exact facial features and skin tone.",
            "Corporate, polished, premium finish.",
        ]
    )
    return PromptParts(
        text=text,
        control_maps={
            "brand_identity": brand.model_dump_json(),
            "dress_code_level": brand.dress_code_level,
            "primary_color": brand.primary_color,
            "secondary_color": brand.secondary_color,
        },
    )


def brand_constraints(params: DesignerParams) -> list[NegativeConstraint]:
    return list(BRAND_CONSTRAINTS)


def dress_code_advisories(output: PerceptionOutput, original: PerceptionOutput, params: DesignerParams) -> list[str]:
    garments = output.segmentation.garment_labels
    if not garments:
        return []
    compliance = validate_dress_code(params.brand_identity.dress_code_level, garments)
    return [f"dress_code: {issue}" for issue in compliance.issues]


VARIANT = StudioVariant(
    studio_type=StudioType.DESIGNER,
    params_model=DesignerParams,
    build_prompt=build_prompt,
    extra_negatives=brand_constraints,
    advisories=dress_code_advisories,
)
