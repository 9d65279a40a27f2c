import json

import httpx
import pytest

from delivery_engine.domain.models import MediaType, OutboundMessage
from delivery_engine.services.telegram_client import (
    TelegramAPIError,
    TelegramBotClient,
    TelegramNetworkError,
)


def _client(handler) -> tuple[TelegramBotClient, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    client = TelegramBotClient(
        token="123:abc",
        base_url="https://api.telegram.test",
        transport=httpx.MockTransport(record),
    )
    return client, requests


def test_missing_token_rejected(monkeypatch):
    monkeypatch.setattr(
        "delivery_engine.services.telegram_client.settings.TELEGRAM_BOT_TOKEN", None
    )
    with pytest.raises(ValueError):
        TelegramBotClient()


@pytest.mark.asyncio
async def test_send_text_message():
    client, requests = _client(
        lambda request: httpx.Response(200, json={"ok": True, "result": {"message_id": 77}})
    )

    message_id = await client.send("-100111", OutboundMessage(text="<b>hi</b>"))

    assert message_id == "77"
    assert requests[0].url.path == "/bot123:abc/sendMessage"
    body = json.loads(requests[0].content)
    assert body == {"chat_id": "-100111", "parse_mode": "HTML", "text": "<b>hi</b>"}
    await client.close()


@pytest.mark.asyncio
async def test_send_photo_uses_caption():
    client, requests = _client(
        lambda request: httpx.Response(200, json={"ok": True, "result": {"message_id": 1}})
    )
    message = OutboundMessage(
        text="caption", media_type=MediaType.IMAGE, media_url="https://cdn.test/a.jpg"
    )

    await client.send("-1", message)

    assert requests[0].url.path.endswith("/sendPhoto")
    body = json.loads(requests[0].content)
    assert body["photo"] == "https://cdn.test/a.jpg"
    assert body["caption"] == "caption"
    await client.close()


@pytest.mark.asyncio
async def test_delete_sends_integer_message_id():
    client, requests = _client(
        lambda request: httpx.Response(200, json={"ok": True, "result": True})
    )

    await client.delete("-1", "55")

    assert requests[0].url.path.endswith("/deleteMessage")
    assert json.loads(requests[0].content) == {"chat_id": "-1", "message_id": 55}
    await client.close()


@pytest.mark.asyncio
async def test_api_error_carries_code_and_retry_after():
    client, _ = _client(
        lambda request: httpx.Response(
            429,
            json={
                "ok": False,
                "error_code": 429,
                "description": "Too Many Requests: retry after 3",
                "parameters": {"retry_after": 3},
            },
        )
    )

    with pytest.raises(TelegramAPIError) as exc_info:
        await client.send("-1", OutboundMessage(text="x"))

    assert exc_info.value.error_code == 429
    assert exc_info.value.retry_after == 3
    assert "Too Many Requests" in exc_info.value.description
    await client.close()


@pytest.mark.asyncio
async def test_non_json_response_is_api_error():
    client, _ = _client(lambda request: httpx.Response(502, text="<html>bad gateway</html>"))

    with pytest.raises(TelegramAPIError) as exc_info:
        await client.send("-1", OutboundMessage(text="x"))

    assert exc_info.value.error_code == 502
    await client.close()


@pytest.mark.asyncio
async def test_transport_failure_is_network_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client, _ = _client(handler)

    with pytest.raises(TelegramNetworkError) as exc_info:
        await client.send("-1", OutboundMessage(text="x"))

    assert exc_info.value.request_sent is False
    await client.close()


@pytest.mark.asyncio
async def test_read_failure_may_have_reached_the_api():
    def handler(request):
        raise httpx.ReadTimeout("no response", request=request)

    client, _ = _client(handler)

    with pytest.raises(TelegramNetworkError) as exc_info:
        await client.send("-1", OutboundMessage(text="x"))

    assert exc_info.value.request_sent is True
    await client.close()


@pytest.mark.asyncio
async def test_media_without_url_is_sent_as_text():
    client, requests = _client(
        lambda request: httpx.Response(200, json={"ok": True, "result": {"message_id": 5}})
    )

    await client.send("-1", OutboundMessage(text="caption only", media_type=MediaType.VIDEO))

    assert requests[0].url.path == "/bot123:abc/sendMessage"
    assert json.loads(requests[0].content)["text"] == "caption only"
    await client.close()
