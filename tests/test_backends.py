from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from conftest import make_perception

from formal_studio.schemas import StudioType
from formal_studio.services.backends import RemoteGenerationClient, RemotePerceptionClient
from formal_studio.services.perception import GenerationError, PerceptionError
from formal_studio.studios.registry import get_controller


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _perceive(handler):
    async def scenario():
        async with _client(handler) as client:
            return await RemotePerceptionClient("http://perception.test/", client=client).run("in.jpg")

    return asyncio.run(scenario())


def _generate(handler, request):
    async def scenario():
        async with _client(handler) as client:
            return await RemoteGenerationClient("http://generation.test", client=client).generate(request)

    return asyncio.run(scenario())


def _request():
    return get_controller(StudioType.PORTRAIT).build_generation_request("in.jpg", None, make_perception())


def test_perception_client_parses_output():
    expected = make_perception(yaw=4.0)
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=expected.model_dump(mode="json"))

    output = _perceive(handler)

    assert output == expected
    assert seen == {"url": "http://perception.test/perception", "body": {"image_ref": "in.jpg"}}


def test_perception_rejection_maps_to_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            422,
            json={"module": "body", "code": "insufficient_body", "detail": "waist not visible", "warnings": ["crop"]},
        )

    with pytest.raises(PerceptionError) as excinfo:
        _perceive(handler)

    assert excinfo.value.module == "body"
    assert excinfo.value.code == "insufficient_body"
    assert excinfo.value.message == "waist not visible"
    assert excinfo.value.warnings == ["crop"]


@pytest.mark.parametrize(
    ("handler", "code"),
    [
        (lambda request: httpx.Response(503, text="busy"), "service_error"),
        (lambda request: httpx.Response(200, json={"landmarks": {}}), "bad_payload"),
        (lambda request: httpx.Response(200, text="not json"), "bad_payload"),
    ],
)
def test_perception_transport_failures(handler, code):
    with pytest.raises(PerceptionError) as excinfo:
        _perceive(handler)

    assert excinfo.value.module == "transport"
    assert excinfo.value.code == code


def test_perception_unreachable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(PerceptionError) as excinfo:
        _perceive(handler)

    assert excinfo.value.code == "service_unavailable"


def test_generation_client_posts_request():
    request = _request()
    seen = {}

    def handler(http_request: httpx.Request) -> httpx.Response:
        seen["path"] = http_request.url.path
        seen["body"] = json.loads(http_request.content)
        return httpx.Response(200, json={"output_image_ref": "out.png"})

    assert _generate(handler, request) == "out.png"
    assert seen["path"] == "/generate"
    assert seen["body"]["studio_type"] == "portrait"
    assert seen["body"]["identity_weight"] == pytest.approx(request.identity_weight)
    assert "eyes" in seen["body"]["edit_scope"]["preserve_regions"]


@pytest.mark.parametrize(
    "handler",
    [
        lambda request: httpx.Response(500, json={"detail": "out of memory"}),
        lambda request: httpx.Response(200, json={"status": "ok"}),
    ],
)
def test_generation_failures(handler):
    with pytest.raises(GenerationError):
        _generate(handler, _request())


def test_generation_unreachable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(GenerationError, match="unreachable"):
        _generate(handler, _request())
