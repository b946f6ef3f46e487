"""Tests for signaltrader.telegram.source — getUpdates polling with mocked HTTP."""

import httpx
import pytest

from signaltrader.config import Config
from signaltrader.telegram.source import TelegramSource, parse_update


def _make_config(**overrides) -> Config:
    values = dict(
        telegram_bot_token="123:abc",
        telegram_api_url="https://api.telegram.org",
        telegram_channel_ids=(),
        telegram_poll_interval=0.0,
        llm_api_key="sk-test",
        llm_api_url="https://llm.example.com/v1/chat/completions",
        llm_model="gpt-4o-mini",
        llm_timeout_seconds=5.0,
        llm_max_retries=3,
        llm_retry_delay=0.0,
        account_balance=1000.0,
        worker_count=2,
        db_path=":memory:",
        log_level="INFO",
        api_port=8080,
        channels_path="channels.json",
    )
    values.update(overrides)
    return Config(**values)


MOCK_UPDATES_RESPONSE = {
    "ok": True,
    "result": [
        {
            "update_id": 500,
            "channel_post": {
                "message_id": 11,
                "chat": {"id": -100123, "type": "channel", "title": "VIP Signals"},
                "date": 1736500000,
                "text": "EUR/USD CALL 5m",
            },
        },
        {
            "update_id": 501,
            "channel_post": {
                "message_id": 12,
                "chat": {"id": -100999, "type": "channel", "title": "Other"},
                "date": 1736500005,
                "text": "GBP/USD PUT 1m",
            },
        },
        {
            "update_id": 502,
            "channel_post": {
                "message_id": 13,
                "chat": {"id": -100123, "type": "channel"},
                "date": 1736500010,
                "photo": [{"file_id": "abc"}],
            },
        },
    ],
}


# ── parse_update ─────────────────────────────────────────────────────────


class TestParseUpdate:
    def test_channel_post(self):
        message = parse_update(MOCK_UPDATES_RESPONSE["result"][0])
        assert message.channel_id == "-100123"
        assert message.text == "EUR/USD CALL 5m"
        assert message.timestamp == 1736500000 * 1000
        assert message.message_id == 11

    def test_caption_used_when_no_text(self):
        update = {"update_id": 1, "message": {
            "message_id": 2, "chat": {"id": 42}, "date": 1, "caption": "BTC/USD buy",
        }}
        assert parse_update(update).text == "BTC/USD buy"

    def test_update_without_text(self):
        assert parse_update(MOCK_UPDATES_RESPONSE["result"][2]) is None
        assert parse_update({"update_id": 3, "edited_channel_post": {}}) is None


# ── Polling ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_poll_filters_channels_and_advances_offset(monkeypatch):
    source = TelegramSource(_make_config(telegram_channel_ids=("-100123",)))
    captured = {}

    async def _mock_get(self, url, *, params=None, timeout=None):
        captured.update(url=url, params=params)
        return httpx.Response(200, json=MOCK_UPDATES_RESPONSE, request=httpx.Request("GET", url))

    monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get)

    messages = await source.poll()
    assert [m.text for m in messages] == ["EUR/USD CALL 5m"]
    assert source.offset == 503
    assert captured["url"] == "https://api.telegram.org/bot123:abc/getUpdates"
    assert "offset" not in captured["params"]

    await source.poll()
    assert captured["params"]["offset"] == 503


@pytest.mark.asyncio
async def test_poll_without_filter_accepts_all(monkeypatch):
    source = TelegramSource(_make_config())

    async def _mock_get(self, url, *, params=None, timeout=None):
        return httpx.Response(200, json=MOCK_UPDATES_RESPONSE, request=httpx.Request("GET", url))

    monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get)
    messages = await source.poll()
    assert {m.channel_id for m in messages} == {"-100123", "-100999"}


@pytest.mark.asyncio
async def test_poll_api_error(monkeypatch):
    source = TelegramSource(_make_config())

    async def _mock_get(self, url, *, params=None, timeout=None):
        body = {"ok": False, "description": "Unauthorized"}
        return httpx.Response(200, json=body, request=httpx.Request("GET", url))

    monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get)
    with pytest.raises(httpx.HTTPStatusError, match="Unauthorized"):
        await source.poll()


@pytest.mark.asyncio
async def test_stream_recovers_from_transport_error(monkeypatch):
    source = TelegramSource(_make_config())
    calls = {"n": 0}

    async def _mock_get(self, url, *, params=None, timeout=None):
        calls["n"] += 1
        if calls["n"] == 1:
            raise httpx.ConnectError("network down")
        return httpx.Response(200, json=MOCK_UPDATES_RESPONSE, request=httpx.Request("GET", url))

    async def _no_sleep(delay):
        return None

    monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get)
    monkeypatch.setattr("signaltrader.telegram.source.asyncio.sleep", _no_sleep)

    received = []
    async for message in source.stream():
        received.append(message)
        if len(received) == 2:
            source.stop()

    assert calls["n"] == 2
    assert [m.message_id for m in received] == [11, 12]
