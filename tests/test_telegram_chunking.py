from __future__ import annotations

import json

import httpx
import pytest

from fleet_guard.telegram import (
    TELEGRAM_MAX_MESSAGE_LEN,
    TelegramConfig,
    TelegramNotifier,
    redact_telegram_response,
    split_telegram_message,
)


def test_split_telegram_message_respects_max_len() -> None:
    text = ("line\n" * 2000).strip()
    parts = split_telegram_message(text, max_len=500)
    assert len(parts) > 1
    assert all(0 < len(p) <= 500 for p in parts)


def test_split_telegram_message_default_limit() -> None:
    text = "a" * (TELEGRAM_MAX_MESSAGE_LEN + 10)
    parts = split_telegram_message(text)
    assert len(parts) == 2
    assert all(len(p) <= TELEGRAM_MAX_MESSAGE_LEN for p in parts)


def test_redact_keeps_only_safe_fields() -> None:
    raw = {"ok": False, "description": "chat not found", "result": {"message_id": 7, "chat": {"id": 1}}}
    assert json.loads(redact_telegram_response(raw)) == {
        "ok": False,
        "result": {"message_id": 7},
        "description": "chat not found",
    }


@pytest.mark.asyncio
async def test_notifier_sends_each_chunk() -> None:
    sent: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/botbot-token/sendMessage"
        sent.append(json.loads(request.content))
        return httpx.Response(200, json={"ok": True, "result": {"message_id": len(sent)}})

    config = TelegramConfig(bot_token="bot-token", chat_id="42", api_base_url="https://telegram.test")
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        ok = await TelegramNotifier(client, config).send("x" * (TELEGRAM_MAX_MESSAGE_LEN + 1))

    assert ok is True
    assert len(sent) == 2
    assert all(p["chat_id"] == "42" for p in sent)


@pytest.mark.asyncio
async def test_notifier_reports_api_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"ok": False, "description": "Bad Request: chat not found"})

    config = TelegramConfig(bot_token="bot-token", chat_id="42", api_base_url="https://telegram.test")
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        assert await TelegramNotifier(client, config).send("hello") is False


@pytest.mark.asyncio
async def test_unconfigured_notifier_does_not_call_api() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        notifier = TelegramNotifier(client, TelegramConfig(bot_token="", chat_id="42"))
        assert notifier.configured is False
        assert await notifier.send("hello") is False
