from __future__ import annotations

import json
from dataclasses import dataclass

import httpx
import structlog


logger = structlog.get_logger(__name__)

TELEGRAM_MAX_MESSAGE_LEN = 3900
TELEGRAM_TIMEOUT_SECONDS = 15.0


@dataclass(frozen=True)
class TelegramConfig:
    bot_token: str
    chat_id: str
    api_base_url: str = "https://api.telegram.org"
    timeout_seconds: float = TELEGRAM_TIMEOUT_SECONDS

    @property
    def configured(self) -> bool:
        return bool(self.bot_token.strip() and self.chat_id.strip())


def _cut_point(s: str, max_len: int) -> int:
    """Prefer a paragraph break, then a line break, within the last 40% of the window."""
    floor = int(max_len * 0.6)
    for sep in ("\n\n", "\n"):
        idx = s.rfind(sep, 0, max_len + 1)
        if idx >= floor:
            return idx
    return max_len


def split_telegram_message(text: str, *, max_len: int = TELEGRAM_MAX_MESSAGE_LEN) -> list[str]:
    remaining = (text or "").strip()
    if not remaining:
        return [""]

    max_len = max(1, int(max_len))
    chunks: list[str] = []
    while len(remaining) > max_len:
        cut = _cut_point(remaining, max_len)
        chunks.append(remaining[:cut].rstrip())
        remaining = remaining[cut:].lstrip()
    if remaining:
        chunks.append(remaining)
    return chunks


def redact_telegram_response(data: dict) -> str:
    safe = {"ok": data.get("ok")}
    if isinstance(data.get("result"), dict):
        safe["result"] = {"message_id": data["result"].get("message_id")}
    if data.get("error"):
        safe["error"] = data.get("error")
    if data.get("description"):
        safe["description"] = data.get("description")
    return json.dumps(safe, ensure_ascii=False)


async def send_telegram_message(
    client: httpx.AsyncClient, config: TelegramConfig, text: str
) -> tuple[bool, dict]:
    url = f"{config.api_base_url.rstrip('/')}/bot{config.bot_token}/sendMessage"
    payload = {"chat_id": config.chat_id, "text": text}
    try:
        resp = await client.post(url, json=payload, timeout=config.timeout_seconds)
        data = resp.json()
        if not isinstance(data, dict):
            return False, {"ok": False, "error": f"unexpected response: HTTP {resp.status_code}"}
        return bool(data.get("ok")), data
    except (httpx.HTTPError, ValueError) as e:
        msg = f"{type(e).__name__}: {e}"
        if config.bot_token:
            msg = msg.replace(config.bot_token, "<redacted>")
        return False, {"ok": False, "error": msg}


async def send_telegram_message_chunked(
    client: httpx.AsyncClient,
    config: TelegramConfig,
    text: str,
    *,
    max_len: int = TELEGRAM_MAX_MESSAGE_LEN,
) -> tuple[bool, list[dict]]:
    """Send ``text`` in order; stops at the first chunk Telegram rejects."""
    responses: list[dict] = []
    for chunk in split_telegram_message(text, max_len=max_len):
        ok, resp = await send_telegram_message(client, config, chunk)
        responses.append(resp)
        if not ok:
            return False, responses
    return True, responses


class TelegramNotifier:
    """Operator notification channel backed by the Telegram Bot API."""

    def __init__(self, client: httpx.AsyncClient, config: TelegramConfig):
        self.client = client
        self.config = config

    @property
    def configured(self) -> bool:
        return self.config.configured

    async def send(self, text: str) -> bool:
        if not self.configured:
            logger.warning("Telegram not configured, skipping notification")
            return False
        ok, responses = await send_telegram_message_chunked(self.client, self.config, text)
        if not ok:
            logger.error(
                "Failed to send Telegram notification",
                telegram=redact_telegram_response(responses[-1] if responses else {}),
            )
        return ok
