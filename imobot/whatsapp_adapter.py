"""Evolution API WhatsApp gateway adapter."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from imobot.models import normalize_phone

LOGGER = logging.getLogger(__name__)


class EvolutionGateway:
    """Sends WhatsApp text and images through an Evolution API server."""

    def __init__(self, base_url: str, token: str, timeout_seconds: float = 30.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout_seconds = timeout_seconds

    async def send_text(self, instance: str, number: str, text: str) -> None:
        """Send a text message to ``number`` from ``instance``."""

        await self._post(f"/message/sendText/{instance}", {"number": normalize_phone(number), "text": text})

    async def send_image(self, instance: str, number: str, image_url: str, caption: str | None = None) -> None:
        """Send an image by URL, optionally captioned."""

        payload: dict[str, Any] = {
            "number": normalize_phone(number),
            "mediatype": "image",
            "media": image_url,
        }
        if caption:
            payload["caption"] = caption
        await self._post(f"/message/sendMedia/{instance}", payload)

    async def _post(self, path: str, payload: dict[str, Any]) -> None:
        async with httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout_seconds) as client:
            response = await client.post(
                path,
                headers={"apikey": self._token, "Content-Type": "application/json"},
                json=payload,
            )
        if response.status_code >= 400:
            raise RuntimeError(f"Evolution API send failed (HTTP {response.status_code}): {response.text[:200]}")
        LOGGER.info("Sent %s to %s", path.split("/")[2], payload["number"])
