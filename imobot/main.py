"""Application entrypoint."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any, AsyncIterator, TextIO
from zoneinfo import ZoneInfo

from imobot.aggregator import MessageAggregator
from imobot.config import Settings, load_settings
from imobot.db import Database
from imobot.intent import IntentClassifier
from imobot.llm.openai_compat import OpenAICompatibleProvider
from imobot.memory import ConversationMemory
from imobot.models import AIConfiguration
from imobot.orchestrator import TurnOrchestrator
from imobot.pipeline import InboundPipeline
from imobot.tools.property_search_tool import PropertySearchTool
from imobot.tools.registry import ToolRegistry
from imobot.tools.schedule_visit_tool import ScheduleVisitTool
from imobot.whatsapp_adapter import EvolutionGateway

LOGGER = logging.getLogger(__name__)


async def read_events(stream: TextIO) -> AsyncIterator[dict[str, Any]]:
    """Yield webhook payloads from newline-delimited JSON, skipping malformed lines."""

    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, stream.readline)
        if not line:
            return
        line = line.strip()
        if not line:
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            LOGGER.warning("Skipping malformed event line: %r", line[:200])
            continue
        if isinstance(payload, dict):
            yield payload


def build_pipeline(settings: Settings, db: Database) -> InboundPipeline:
    """Wire the turn pipeline from settings."""

    timezone = ZoneInfo(settings.timezone)
    classifier = IntentClassifier()
    gateway = EvolutionGateway(settings.evolution_api_url, settings.evolution_api_token)

    tools = ToolRegistry(db)
    tools.register(PropertySearchTool(db, classifier, page_size=settings.search_page_size))
    tools.register(ScheduleVisitTool(db, gateway, timezone))

    def llm_factory(config: AIConfiguration) -> OpenAICompatibleProvider:
        return OpenAICompatibleProvider(
            api_key=config.api_key or "",
            model=config.model,
            base_url=settings.openai_base_url,
            timeout_seconds=settings.request_timeout_seconds,
        )

    memory = ConversationMemory(db, classifier, history_window=settings.history_window_messages)
    orchestrator = TurnOrchestrator(
        db=db,
        llm_factory=llm_factory,
        tool_registry=tools,
        classifier=classifier,
        memory=memory,
        timezone=timezone,
        request_timeout_seconds=settings.request_timeout_seconds,
        followup_max_tokens=settings.followup_max_tokens,
    )
    return InboundPipeline(orchestrator, memory, gateway)


async def run(stream: TextIO = sys.stdin) -> None:
    """Initialize app layers and feed webhook events through the aggregator."""

    settings = load_settings()
    logging.basicConfig(level=settings.log_level.upper())

    db = Database(settings.database_path)
    db.initialize()

    pipeline = build_pipeline(settings, db)
    aggregator = MessageAggregator(delay_seconds=settings.aggregation_delay_seconds)

    try:
        async for event in read_events(stream):
            await aggregator.submit(event, pipeline.handle_event)
        # Input closed: let buffered conversations flush before exiting.
        await aggregator.drain()
    finally:
        aggregator.clear_all()
        LOGGER.info("imobot shutdown complete")


def main() -> None:
    """Synchronous wrapper for asyncio entrypoint."""

    asyncio.run(run())


if __name__ == "__main__":
    main()
