"""From a flushed webhook event to persisted and delivered replies."""

from __future__ import annotations

import logging
from typing import Any

from imobot.events import (
    MessageKind,
    extract_instance_id,
    extract_media,
    extract_phone,
    extract_push_name,
    extract_text,
    is_from_me,
    message_kind,
)
from imobot.memory import ConversationMemory
from imobot.models import AgentResponse, TurnContext, normalize_phone
from imobot.orchestrator import TurnOrchestrator
from imobot.prompts import SHOW_MORE_HINT, VISIT_INVITATION_TEXT
from imobot.whatsapp_adapter import EvolutionGateway

LOGGER = logging.getLogger(__name__)


class InboundPipeline:
    """The aggregator's ``on_flush`` callback."""

    def __init__(self, orchestrator: TurnOrchestrator, memory: ConversationMemory, gateway: EvolutionGateway) -> None:
        self._orchestrator = orchestrator
        self._memory = memory
        self._gateway = gateway

    async def handle_event(self, event: dict[str, Any]) -> None:
        if is_from_me(event):
            return
        raw_phone = extract_phone(event)
        instance_id = extract_instance_id(event)
        if not raw_phone or not instance_id:
            LOGGER.warning("Dropping event without sender or instance: %s", event.get("event"))
            return

        kind = message_kind(event)
        media = extract_media(event)
        text = extract_text(event)
        if kind is MessageKind.OTHER or (not text.strip() and media is None):
            LOGGER.info("Nothing to answer in %s event from %s", kind.value, raw_phone)
            return

        context = TurnContext(
            phone=normalize_phone(raw_phone),
            message=text,
            instance_id=instance_id,
            media=media,
            message_type=kind.value,
            push_name=extract_push_name(event),
        )
        response = await self._orchestrator.handle_turn(context)
        if response is None:
            LOGGER.info("No response for %s on %s", context.phone, instance_id)
            return

        self._memory.save_turn(
            instance_id,
            context.phone,
            context.message or f"[{kind.value}]",
            response.text,
            agent_id=response.active_agent_id,
            push_name=context.push_name,
            message_type=kind.value,
            property_codes=[card.code for card in response.properties],
        )
        await self._deliver(context.instance_name or instance_id, context.phone, response)

    async def _deliver(self, instance: str, phone: str, response: AgentResponse) -> None:
        """Send the reply, then each property's photos and description."""

        if response.text:
            await self._gateway.send_text(instance, phone, response.text)
        for card in response.properties:
            for image_url in card.images:
                try:
                    await self._gateway.send_image(instance, phone, image_url)
                except Exception:  # noqa: BLE001
                    LOGGER.exception("Image delivery failed for %s (%s)", card.code, image_url)
            await self._gateway.send_text(instance, phone, card.description)
        if response.properties:
            invitation = VISIT_INVITATION_TEXT
            if response.has_more_properties:
                invitation = f"{SHOW_MORE_HINT}\n\n{VISIT_INVITATION_TEXT}"
            await self._gateway.send_text(instance, phone, invitation)
