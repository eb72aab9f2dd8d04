"""Per-conversation debounce of inbound WhatsApp messages.

Users often split one thought across several messages ("bom dia", "tudo bem",
"quero alugar"). Text messages are held per conversation until a quiet window
passes with no new arrival, then flushed as one event whose text is the
buffered texts joined by newlines. Media and unparseable events skip the
buffer.

A key is pending while its entry sits in the map with one live timer. A new
arrival while pending cancels and replaces the timer. Flushing detaches the
entry first, so the map never holds an entry that is flushing. Nothing awaits
between reading and writing an entry, so no lock is needed under a single
event loop.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from imobot.events import extract_instance_id, extract_message_id, extract_phone, extract_text, is_media, with_text
from imobot.models import ConversationKey, normalize_phone

LOGGER = logging.getLogger(__name__)

AGGREGATION_DELAY_SECONDS = 15.0

OnFlush = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass(slots=True)
class PendingMessage:
    event: dict[str, Any]
    text: str
    received_at: datetime
    message_id: str


@dataclass(slots=True)
class BufferEntry:
    key: ConversationKey
    messages: list[PendingMessage] = field(default_factory=list)
    timer: asyncio.Task[None] | None = None


class MessageAggregator:
    """Debounces text messages per (instance, phone) before dispatch."""

    def __init__(self, delay_seconds: float = AGGREGATION_DELAY_SECONDS) -> None:
        self._delay_seconds = delay_seconds
        self._buffers: dict[ConversationKey, BufferEntry] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    async def submit(self, event: dict[str, Any], on_flush: OnFlush) -> bool:
        """Buffer ``event`` or dispatch it immediately.

        Returns:
            True if the event was buffered, False if ``on_flush`` already ran.
        """

        phone = extract_phone(event)
        instance_id = extract_instance_id(event)
        if not phone or not instance_id:
            LOGGER.warning("Could not extract phone or instance id, dispatching immediately")
            await self._dispatch(event, on_flush, "unkeyed")
            return False

        key = ConversationKey(instance_id=instance_id, phone=normalize_phone(phone))
        if is_media(event):
            LOGGER.info("Media message from %s, dispatching immediately", key)
            await self._dispatch(event, on_flush, str(key))
            return False

        text = extract_text(event)
        if not text.strip():
            LOGGER.info("Message without text from %s, dispatching immediately", key)
            await self._dispatch(event, on_flush, str(key))
            return False

        pending = PendingMessage(
            event=event,
            text=text,
            received_at=datetime.now(timezone.utc),
            message_id=extract_message_id(event) or uuid.uuid4().hex[:9],
        )
        entry = self._buffers.get(key)
        if entry is None:
            entry = BufferEntry(key=key)
            self._buffers[key] = entry
            LOGGER.info("New buffer for %s", key)
        elif entry.timer is not None:
            entry.timer.cancel()
            LOGGER.info("Timer replaced for %s", key)
        entry.messages.append(pending)
        entry.timer = self._start_timer(entry, on_flush)
        LOGGER.info(
            "Buffered message %s for %s (%d pending, flush in %.1fs)",
            pending.message_id,
            key,
            len(entry.messages),
            self._delay_seconds,
        )
        return True

    def stats(self) -> dict[str, int]:
        return {
            "active_buffers": len(self._buffers),
            "total_pending_messages": sum(len(entry.messages) for entry in self._buffers.values()),
        }

    def pending_keys(self) -> list[ConversationKey]:
        return list(self._buffers)

    async def drain(self) -> None:
        """Wait until every pending buffer has flushed and its callback returned."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def clear_all(self) -> None:
        """Drop every pending buffer without flushing (process shutdown)."""

        for entry in self._buffers.values():
            if entry.timer is not None:
                entry.timer.cancel()
        dropped = len(self._buffers)
        self._buffers.clear()
        LOGGER.info("Cleared %d pending buffers", dropped)

    def _start_timer(self, entry: BufferEntry, on_flush: OnFlush) -> asyncio.Task[None]:
        task = asyncio.create_task(self._flush_after_delay(entry, on_flush), name=f"aggregator-{entry.key}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _flush_after_delay(self, entry: BufferEntry, on_flush: OnFlush) -> None:
        await asyncio.sleep(self._delay_seconds)
        if self._buffers.get(entry.key) is not entry:
            return
        # Detach before dispatch so later arrivals open a fresh entry.
        del self._buffers[entry.key]
        entry.timer = None

        merged = self._merge(entry)
        LOGGER.info("Flushing %d messages for %s", len(entry.messages), entry.key)
        await self._dispatch(merged, on_flush, str(entry.key))

    @staticmethod
    def _merge(entry: BufferEntry) -> dict[str, Any]:
        combined = "\n".join(message.text for message in entry.messages)
        return with_text(entry.messages[-1].event, combined)

    @staticmethod
    async def _dispatch(event: dict[str, Any], on_flush: OnFlush, label: str) -> None:
        try:
            await on_flush(event)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Processing failed for %s", label)
