from __future__ import annotations

import logging
import os
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from formal_studio.schemas import GenerationRequest, PerceptionOutput
from formal_studio.services.perception import GenerationError, PerceptionError

LOG = logging.getLogger("formal_studio.backends")

DEFAULT_PERCEPTION_URL = "http://127.0.0.1:8101"
DEFAULT_GENERATION_URL = "http://127.0.0.1:8102"


class GenerationService(Protocol):
    async def generate(self, request: GenerationRequest) -> str: ...


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"detail": response.text[:500]}
    return body if isinstance(body, dict) else {"detail": body}


class _RemoteClient:
    def __init__(self, base_url: str, timeout_s: float, client: httpx.AsyncClient | None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._client = client

    async def _post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(f"{self.base_url}{path}", json=payload, timeout=self.timeout_s)
        async with httpx.AsyncClient(timeout=self.timeout_s, trust_env=False) as client:
            return await client.post(f"{self.base_url}{path}", json=payload)


class RemotePerceptionClient(_RemoteClient):
    """Perception service reached over HTTP.

    ``POST /perception`` with ``{"image_ref": ...}`` answers with a serialized
    :class:`PerceptionOutput`, or with 422 and ``{module, code, warnings, detail}``
    when the image cannot be analysed.
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout_s: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(base_url or os.getenv("FORMAL_STUDIO_PERCEPTION_URL", DEFAULT_PERCEPTION_URL), timeout_s, client)

    async def run(self, image_ref: str) -> PerceptionOutput:
        try:
            response = await self._post("/perception", {"image_ref": image_ref})
        except httpx.RequestError as exc:
            LOG.warning("perception_unreachable url=%s error=%s", self.base_url, exc)
            raise PerceptionError(str(exc), module="transport", code="service_unavailable") from exc

        if response.status_code == 422:
            body = _json_body(response)
            raise PerceptionError(
                str(body.get("detail", "perception rejected the image")),
                module=str(body.get("module", "unknown")),
                code=str(body.get("code", "rejected")),
                warnings=list(body.get("warnings", [])),
            )
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            LOG.warning("perception_http_error status=%s", response.status_code)
            raise PerceptionError(
                f"perception service returned {response.status_code}",
                module="transport",
                code="service_error",
            ) from exc

        try:
            return PerceptionOutput.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise PerceptionError("malformed perception payload", module="transport", code="bad_payload") from exc


class RemoteGenerationClient(_RemoteClient):
    """Generation service reached over HTTP; answers ``{"output_image_ref": ...}``."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout_s: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(base_url or os.getenv("FORMAL_STUDIO_GENERATION_URL", DEFAULT_GENERATION_URL), timeout_s, client)

    async def generate(self, request: GenerationRequest) -> str:
        try:
            response = await self._post("/generate", request.model_dump(mode="json"))
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = _json_body(exc.response).get("detail", "")
            LOG.warning("generation_http_error status=%s detail=%s", exc.response.status_code, detail)
            raise GenerationError(f"generation service returned {exc.response.status_code}: {detail}") from exc
        except httpx.RequestError as exc:
            LOG.warning("generation_unreachable url=%s error=%s", self.base_url, exc)
            raise GenerationError(f"generation service unreachable: {exc}") from exc

        body = _json_body(response)
        output_ref = body.get("output_image_ref")
        if not isinstance(output_ref, str) or not output_ref:
            raise GenerationError("generation response is missing output_image_ref")
        return output_ref
