from __future__ import annotations

from formal_studio.schemas import StudioType
from formal_studio.studios import accessories, background, designer, hair, magic_prompt, portrait
from formal_studio.studios.base import StudioController

STUDIO_CONTROLLERS: dict[StudioType, StudioController] = {
    module.VARIANT.studio_type: StudioController(module.VARIANT)
    for module in (portrait, hair, accessories, background, magic_prompt, designer)
}

_missing = set(StudioType) - set(STUDIO_CONTROLLERS)
if _missing:
    raise RuntimeError(f"no controller registered for: {', '.join(sorted(s.value for s in _missing))}")


def get_controller(studio_type: StudioType | str) -> StudioController:
    return STUDIO_CONTROLLERS[StudioType(studio_type)]
