"""Turn orchestration: prompt, completion, tool round-trip, response."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Callable
from zoneinfo import ZoneInfo

from imobot.db import Database
from imobot.intent import IntentClassifier, fold
from imobot.llm.base import LLMProvider
from imobot.memory import ConversationMemory
from imobot.models import AgentResponse, AIAgent, AIConfiguration, LLMResponse, MediaPayload, TurnContext
from imobot.prompts import (
    APOLOGY_TEXT,
    AUDIO_FAILURE_TEXT,
    IMAGE_CAPTION_PREFIX,
    SEARCH_FOLLOWUP_INSTRUCTION,
    build_system_prompt,
)
from imobot.tools.registry import ToolRegistry

LOGGER = logging.getLogger(__name__)

SEARCH_TOOL_NAME = "busca_imoveis"
FOLLOWUP_TEMPERATURE = 0.5

LLMFactory = Callable[[AIConfiguration], LLMProvider]


class TurnOrchestrator:
    """Runs one conversational turn for a WhatsApp contact."""

    def __init__(
        self,
        db: Database,
        llm_factory: LLMFactory,
        tool_registry: ToolRegistry,
        classifier: IntentClassifier,
        memory: ConversationMemory,
        timezone: ZoneInfo,
        request_timeout_seconds: float = 60.0,
        followup_max_tokens: int = 100,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._llm_factory = llm_factory
        self._tool_registry = tool_registry
        self._classifier = classifier
        self._memory = memory
        self._timezone = timezone
        self._request_timeout_seconds = request_timeout_seconds
        self._followup_max_tokens = followup_max_tokens
        self._now = now or (lambda: datetime.now(self._timezone))

    async def handle_turn(self, context: TurnContext) -> AgentResponse | None:
        """Produce the reply for one (possibly merged) inbound message.

        Returns None when the instance, its agent or the AI configuration is
        missing; the caller must not deliver anything in that case. Any other
        failure becomes the fixed apology reply.
        """

        turn_id = uuid.uuid4().hex[:8]
        LOGGER.info(
            "[turn %s] instance=%s phone=%s length=%d", turn_id, context.instance_id, context.phone, len(context.message)
        )
        try:
            resolved = self._resolve_configuration(turn_id, context)
            if resolved is None:
                return None
            main_agent, config = resolved
            agent, delegated = self._select_agent(turn_id, main_agent, context.message)
            response = await self._run_turn(turn_id, context, agent, config)
            response.active_agent_id = agent.id
            response.active_agent_name = agent.name
            response.active_agent_type = agent.agent_type
            response.delegated = delegated
            return response
        except Exception:  # noqa: BLE001
            LOGGER.exception(
                "[turn %s] failed (message length=%d, instance=%s, phone=%s)",
                turn_id,
                len(context.message),
                context.instance_id,
                context.phone,
            )
            return AgentResponse(text=APOLOGY_TEXT)

    def _resolve_configuration(self, turn_id: str, context: TurnContext) -> tuple[AIAgent, AIConfiguration] | None:
        instance = self._db.get_instance(context.instance_id)
        if instance is None:
            LOGGER.warning("[turn %s] unknown instance %s", turn_id, context.instance_id)
            return None
        agent = self._db.get_agent(instance.ai_agent_id) if instance.ai_agent_id else None
        if agent is None:
            LOGGER.warning("[turn %s] no agent linked to instance %s", turn_id, instance.name)
            return None
        config = self._db.get_ai_configuration()
        if config is None or not config.api_key:
            LOGGER.warning("[turn %s] global AI configuration missing or without API key", turn_id)
            return None
        context.company_id = instance.company_id
        context.instance_name = instance.name
        return agent, config

    def _select_agent(self, turn_id: str, main_agent: AIAgent, message: str) -> tuple[AIAgent, bool]:
        """Hand the turn to the first secondary agent whose keyword appears in the message."""

        folded = fold(message)
        for secondary in self._db.list_secondary_agents(main_agent.id):
            if any(keyword and fold(keyword) in folded for keyword in secondary.delegation_keywords):
                LOGGER.info("[turn %s] delegating from %s to %s", turn_id, main_agent.name, secondary.name)
                return secondary, True
        return main_agent, False

    async def _run_turn(
        self, turn_id: str, context: TurnContext, agent: AIAgent, config: AIConfiguration
    ) -> AgentResponse:
        if context.history is None:
            context.history = self._memory.load_history(context.instance_id, context.phone)
        if context.conversation_id is None:
            context.conversation_id = self._memory.find_conversation_id(context.instance_id, context.phone)

        llm = self._llm_factory(config)
        if context.message_type == "audio" and context.media is not None:
            context.message = await self._transcribe(turn_id, llm, context.media)

        context.intent = self._classifier.classify(context.message, context.history)
        force_search = context.intent.is_property_search or context.intent.is_show_more
        LOGGER.info("[turn %s] intent=%s", turn_id, context.intent)

        messages: list[dict[str, Any]] = [
            {"role": "system", "content": build_system_prompt(agent, context, self._now())},
            *context.history,
            {"role": "user", "content": self._user_content(context)},
        ]
        tool_choice: str | dict[str, Any] = "auto"
        if force_search:
            LOGGER.info("[turn %s] forcing %s", turn_id, SEARCH_TOOL_NAME)
            tool_choice = {"type": "function", "function": {"name": SEARCH_TOOL_NAME}}

        first = await self._generate(
            llm,
            messages,
            tools=self._tool_registry.list_tool_specs(),
            tool_choice=tool_choice,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
        )
        if not first.tool_calls:
            return AgentResponse(text=first.content.strip())

        tool_call = first.tool_calls[0]
        if len(first.tool_calls) > 1:
            LOGGER.warning(
                "[turn %s] ignoring %d extra tool calls: %s",
                turn_id,
                len(first.tool_calls) - 1,
                [extra.name for extra in first.tool_calls[1:]],
            )
        LOGGER.info("[turn %s] tool call %s(%s)", turn_id, tool_call.name, tool_call.arguments)
        outcome = await self._tool_registry.execute(context, tool_call.name, tool_call.arguments)

        if outcome.final_text is not None:
            return AgentResponse(text=outcome.final_text, has_more_properties=outcome.has_more)

        call_id = tool_call.call_id or f"call_{turn_id}"
        messages.append(
            {
                "role": "assistant",
                "content": first.content or None,
                "tool_calls": [
                    {
                        "id": call_id,
                        "type": "function",
                        "function": {
                            "name": tool_call.name,
                            "arguments": json.dumps(tool_call.arguments, ensure_ascii=False),
                        },
                    }
                ],
            }
        )
        messages.append(
            {"role": "tool", "tool_call_id": call_id, "content": json.dumps(outcome.data, ensure_ascii=False, default=str)}
        )
        messages.append({"role": "system", "content": outcome.followup_instruction or SEARCH_FOLLOWUP_INSTRUCTION})

        second = await self._generate(
            llm,
            messages,
            max_tokens=outcome.followup_max_tokens or self._followup_max_tokens,
            temperature=FOLLOWUP_TEMPERATURE,
        )
        text = second.content.strip() or str(outcome.data.get("mensagem") or "")
        return AgentResponse(text=text, properties=outcome.properties, has_more_properties=outcome.has_more)

    async def _generate(self, llm: LLMProvider, messages: list[dict[str, Any]], **kwargs: Any) -> LLMResponse:
        return await asyncio.wait_for(llm.generate(messages, **kwargs), timeout=self._request_timeout_seconds)

    async def _transcribe(self, turn_id: str, llm: LLMProvider, media: MediaPayload) -> str:
        try:
            audio = base64.b64decode(media.data_base64)
            transcript = await asyncio.wait_for(
                llm.transcribe(audio, media.mime_type), timeout=self._request_timeout_seconds
            )
        except Exception:  # noqa: BLE001
            LOGGER.exception("[turn %s] audio transcription failed", turn_id)
            return AUDIO_FAILURE_TEXT
        LOGGER.info("[turn %s] transcribed %d audio bytes", turn_id, len(audio))
        return transcript or AUDIO_FAILURE_TEXT

    @staticmethod
    def _user_content(context: TurnContext) -> str | list[dict[str, Any]]:
        if context.message_type != "image" or context.media is None:
            return context.message
        text = context.message
        caption = context.media.caption
        if caption and fold(caption).strip() != fold(text).strip():
            text = f"{text}\n\n{IMAGE_CAPTION_PREFIX} {caption}" if text else f"{IMAGE_CAPTION_PREFIX} {caption}"
        return [
            {"type": "text", "text": text or IMAGE_CAPTION_PREFIX},
            {
                "type": "image_url",
                "image_url": {"url": f"data:{context.media.mime_type};base64,{context.media.data_base64}"},
            },
        ]
