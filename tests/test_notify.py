from __future__ import annotations

import json

import allure
import httpx
import pytest

from media_relay.media.notify import (
    HostedLink,
    NotifyClient,
    NotifyError,
    NotifyPayload,
    build_notify_handler,
)
from media_relay.media.payloads import PayloadError

pytestmark = [
    allure.epic("Media Uploads"),
    allure.feature("Upload Notifications"),
]

ENDPOINT = "https://cms.example.com/api/uploads"

PAYLOAD = NotifyPayload(
    tmdb_id=70523,
    title="Dark",
    media_type="series",
    links=(
        HostedLink(
            hoster="voe",
            link="https://voe.example/e/abc",
            file_code="abc",
            season=1,
            episode=2,
        ),
    ),
)


def _client(handler) -> NotifyClient:
    return NotifyClient(ENDPOINT, client=httpx.Client(transport=httpx.MockTransport(handler)))


def test_notify_posts_camel_case_json() -> None:
    captured: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(201)

    _client(_handler).notify_upload(PAYLOAD)

    assert len(captured) == 1
    request = captured[0]
    assert request.method == "POST"
    assert str(request.url) == ENDPOINT
    assert json.loads(request.content) == {
        "tmdbId": 70523,
        "title": "Dark",
        "type": "series",
        "links": [
            {
                "hoster": "voe",
                "link": "https://voe.example/e/abc",
                "fileCode": "abc",
                "season": 1,
                "episode": 2,
            },
        ],
    }


def test_notify_raises_on_error_status() -> None:
    client = _client(lambda _: httpx.Response(503))

    with pytest.raises(NotifyError, match="HTTP 503"):
        client.notify_upload(PAYLOAD)


def test_notify_wraps_transport_errors() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(NotifyError, match="failed"):
        _client(_handler).notify_upload(PAYLOAD)


def test_handler_decodes_task_payload_and_notifies() -> None:
    bodies: list[dict] = []

    def _transport(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200)

    handle = build_notify_handler(_client(_transport))
    handle(PAYLOAD.to_bytes())

    assert bodies == [PAYLOAD.to_json()]


def test_handler_rejects_malformed_payload() -> None:
    handle = build_notify_handler(_client(lambda _: httpx.Response(200)))

    with pytest.raises(PayloadError):
        handle(b'{"title": "missing id"}')


def test_movie_links_omit_episode_fields() -> None:
    link = HostedLink(hoster="doodstream", link="https://dood.example/d/x", file_code="x")

    assert link.to_json() == {
        "hoster": "doodstream",
        "link": "https://dood.example/d/x",
        "fileCode": "x",
    }
