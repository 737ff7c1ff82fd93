from __future__ import annotations

import logging
import re
from typing import Literal

from pydantic import BaseModel, Field

from formal_studio.schemas import (
    IDENTITY_LOCKED_REGIONS,
    EditRegion,
    EditScopeConfig,
    GenderMode,
    NegativeConstraint,
    PerceptionOutput,
    StudioType,
)
from formal_studio.services.constraints import resolve_edit_scope
from formal_studio.studios.base import PromptParts, StudioVariant

LOG = logging.getLogger("formal_studio.studios")

PromptIntent = Literal[
    "clothing_change",
    "hair_change",
    "background_change",
    "accessory_add",
    "accessory_remove",
    "lighting_change",
    "composite",
    "unknown",
]
ProhibitedIntent = Literal[
    "face_reshape",
    "ethnicity_change",
    "age_change",
    "body_reshape",
    "skin_color_change",
    "biometric_alter",
]

MAGIC_FEATHER_PX = 4

_DET = r"(?:(?:the|my|his|her|their|your|our|its)\s+)?"
_FEATURE = r"(?:face|facial|jaw|jawline|chin|nose|cheeks?|cheekbones?)"
_SIZE = r"(?:slimmer|smaller|thinner|narrower|wider|bigger|larger|sharper|shorter|longer)"
# Up to a few filler words between the parts of a phrase.
_GAP = r"(?:[\w'-]+\s+){0,4}?"

PROHIBITED_PATTERNS: list[tuple[ProhibitedIntent, re.Pattern[str]]] = [
    (
        "face_reshape",
        re.compile(
            rf"\b(?:reshape|change|alter|modify|slim|narrow|widen|shrink|enlarge)\s+{_DET}{_FEATURE}\b"
            rf"|\b(?:make|give)\s+{_GAP}{_FEATURE}\s+{_GAP}{_SIZE}\b"
            rf"|\b{_SIZE}\s+{_FEATURE}\b",
            re.IGNORECASE,
        ),
    ),
    (
        "ethnicity_change",
        re.compile(rf"\b(change|alter|modify)\s+{_DET}(ethnicity|race|racial)", re.IGNORECASE),
    ),
    (
        "age_change",
        re.compile(rf"\b(?:make|look|appear)\s+{_GAP}(?:younger|older|aged?)\b", re.IGNORECASE),
    ),
    (
        "body_reshape",
        re.compile(rf"\b(slim|thin|fat|muscular|reshape)\s+{_DET}(body|figure|torso|waist)\b", re.IGNORECASE),
    ),
    (
        "skin_color_change",
        re.compile(
            rf"\b(?:lighten|darken|whiten|change)\s+{_DET}(?:skin(?:\s*tone)?|complexion)\b"
            r"|\b(?:lighter|darker|whiter|fairer|paler|tanner)\s+(?:skin(?:\s*tone)?|complexion)\b",
            re.IGNORECASE,
        ),
    ),
    ("biometric_alter", re.compile(r"\b(fingerprints?|iris|retinas?|biometrics?)\b", re.IGNORECASE)),
]

CLOTHING_PATTERN = re.compile(
    r"\b(suits?|shirts?|dress|blazers?|jackets?|clothing|clothes|outfits?|wear(?:ing)?|tuxedos?|collars?|ties?|bowties?)\b",
    re.IGNORECASE,
)
HAIR_PATTERN = re.compile(
    r"\b(hair|hairstyle|haircut|curly|straight|wavy|bald|ponytail|braids?|bob)\b",
    re.IGNORECASE,
)
BACKGROUND_PATTERN = re.compile(
    r"\b(background|backdrop|scene|setting|studio|outdoors?|office|nature)\b",
    re.IGNORECASE,
)
ACCESSORY_PATTERN = re.compile(
    r"\b(glasses|earrings?|necklaces?|watch(?:es)?|jewelry|jewellery|accessory|accessories|piercings?)\b",
    re.IGNORECASE,
)
REMOVAL_PATTERN = re.compile(r"\b(remove|take\s+off|without)\b", re.IGNORECASE)
LIGHTING_PATTERN = re.compile(
    r"\b(lighting|light|bright(?:er)?|dim|warm(?:er)?|cool(?:er)?|shadows?|dramatic)\b",
    re.IGNORECASE,
)

INTENT_REGIONS: dict[str, tuple[EditRegion, ...]] = {
    "clothing_change": (
        EditRegion.CLOTHING,
        EditRegion.COLLAR_AREA,
        EditRegion.LAPEL_AREA,
        EditRegion.TIE_AREA,
        EditRegion.SHOULDERS,
        EditRegion.TORSO,
    ),
    "hair_change": (EditRegion.HAIR, EditRegion.HAIRLINE),
    "background_change": (EditRegion.BACKGROUND,),
    "accessory_add": (EditRegion.ACCESSORIES, EditRegion.GLASSES, EditRegion.EARRINGS, EditRegion.NECKLACE),
    "accessory_remove": (EditRegion.ACCESSORIES, EditRegion.GLASSES, EditRegion.EARRINGS, EditRegion.NECKLACE),
    "lighting_change": (),
    "composite": (),
    "unknown": (),
}

MAGIC_CONSTRAINTS = [
    NegativeConstraint(
        id="magic_no_unintended_edits",
        description="Do not modify any region outside the inferred edit scope",
        weight=0.95,
    ),
    NegativeConstraint(
        id="magic_no_style_bleed",
        description="Do not let style changes bleed into facial features",
        weight=0.90,
    ),
]
HAIRLINE_CONSTRAINT = NegativeConstraint(
    id="magic_preserve_hairline",
    description="Preserve natural hairline boundary and forehead shape",
    weight=0.9,
)
BODY_PROPORTION_CONSTRAINT = NegativeConstraint(
    id="magic_preserve_body_proportions",
    description="Do not alter body proportions or posture",
    weight=0.95,
)


class MagicPromptParams(BaseModel):
    prompt: str = Field(default="", max_length=1000)
    creativity: float = Field(default=0.6, ge=0.1, le=0.9)
    identity_strength: float = Field(default=0.88, ge=0.5, le=1.0)


class PromptAnalysis(BaseModel):
    raw_prompt: str
    detected_intents: list[PromptIntent] = Field(default_factory=list)
    inferred_edit_regions: list[EditRegion] = Field(default_factory=list)
    inferred_preserve_regions: list[EditRegion] = Field(default_factory=list)
    prohibited_intents: list[ProhibitedIntent] = Field(default_factory=list)
    classification_confidence: float
    is_safe: bool
    rejection_reason: str | None = None
    additional_negatives: list[NegativeConstraint] = Field(default_factory=list)


def detect_prohibited_intents(prompt: str) -> list[ProhibitedIntent]:
    return [intent for intent, pattern in PROHIBITED_PATTERNS if pattern.search(prompt)]


def detect_intents(prompt: str) -> list[PromptIntent]:
    intents: list[PromptIntent] = []
    if CLOTHING_PATTERN.search(prompt):
        intents.append("clothing_change")
    if HAIR_PATTERN.search(prompt):
        intents.append("hair_change")
    if BACKGROUND_PATTERN.search(prompt):
        intents.append("background_change")
    if ACCESSORY_PATTERN.search(prompt):
        intents.append("accessory_remove" if REMOVAL_PATTERN.search(prompt) else "accessory_add")
    if LIGHTING_PATTERN.search(prompt):
        intents.append("lighting_change")

    if not intents:
        intents.append("unknown")
    elif len(intents) > 1:
        intents.append("composite")
    return intents


def analyze_prompt(prompt: str) -> PromptAnalysis:
    """Classify a freeform instruction and infer the regions it may touch.

    The safety screen runs first and short-circuits: a prompt carrying any
    prohibited intent gets no region inference and preserves everything.
    """
    prohibited = detect_prohibited_intents(prompt)
    if prohibited:
        return PromptAnalysis(
            raw_prompt=prompt,
            inferred_preserve_regions=list(EditRegion),
            prohibited_intents=prohibited,
            classification_confidence=0.95,
            is_safe=False,
            rejection_reason=(
                f"Prompt contains prohibited intent(s): {', '.join(prohibited)}. "
                "These modifications violate identity preservation rules."
            ),
        )

    intents = detect_intents(prompt)
    edit_regions: list[EditRegion] = []
    for intent in intents:
        for region in INTENT_REGIONS[intent]:
            if region not in edit_regions:
                edit_regions.append(region)
    preserve = list(IDENTITY_LOCKED_REGIONS)
    preserve.extend(region for region in EditRegion if region not in edit_regions and region not in preserve)

    negatives: list[NegativeConstraint] = []
    if "hair_change" in intents:
        negatives.append(HAIRLINE_CONSTRAINT)
    if "clothing_change" in intents:
        negatives.append(BODY_PROPORTION_CONSTRAINT)

    return PromptAnalysis(
        raw_prompt=prompt,
        detected_intents=intents,
        inferred_edit_regions=edit_regions,
        inferred_preserve_regions=preserve,
        classification_confidence=0.75,
        is_safe=True,
        additional_negatives=negatives,
    )


def check_safety(params: MagicPromptParams) -> str | None:
    analysis = analyze_prompt(params.prompt)
    if analysis.is_safe:
        return None
    LOG.warning("prompt_blocked intents=%s", ",".join(analysis.prohibited_intents))
    return analysis.rejection_reason


def compute_scope(perception: PerceptionOutput, params: MagicPromptParams) -> EditScopeConfig:
    analysis = analyze_prompt(params.prompt)
    return resolve_edit_scope(
        analysis.inferred_edit_regions,
        analysis.inferred_preserve_regions,
        boundary_feather_px=MAGIC_FEATHER_PX,
    )


def prompt_constraints(params: MagicPromptParams) -> list[NegativeConstraint]:
    return [*MAGIC_CONSTRAINTS, *analyze_prompt(params.prompt).additional_negatives]


def build_prompt(params: MagicPromptParams, perception: PerceptionOutput, gender_mode: GenderMode) -> PromptParts:
    analysis = analyze_prompt(params.prompt)
    if not analysis.is_safe:
        return PromptParts(
            text=f"BLOCKED: {analysis.rejection_reason}",
            control_maps={"blocked": "true", "reason": analysis.rejection_reason or ""},
        )
    instruction = params.prompt.strip().rstrip(".")
    return PromptParts(
        text=f"{instruction}. Maintain exact facial features and skin tone.",
        control_maps={
            "detected_intents": ",".join(analysis.detected_intents),
            "creativity_level": str(params.creativity),
        },
    )


VARIANT = StudioVariant(
    studio_type=StudioType.MAGIC_PROMPT,
    params_model=MagicPromptParams,
    build_prompt=build_prompt,
    compute_scope=compute_scope,
    extra_negatives=prompt_constraints,
    check_safety=check_safety,
)
