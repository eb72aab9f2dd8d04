"""Core domain models used across layers."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(raw: str) -> str:
    """Reduce a WhatsApp jid or formatted number to its bare digits."""

    return _NON_DIGITS.sub("", raw.split("@", 1)[0])


@dataclass(frozen=True, slots=True)
class ConversationKey:
    """Identifies one debounce buffer and one conversation thread."""

    instance_id: str
    phone: str

    def __str__(self) -> str:
        return f"{self.instance_id}:{self.phone}"


@dataclass(slots=True)
class MediaPayload:
    """Inline media received with a message."""

    data_base64: str
    mime_type: str
    caption: str | None = None


@dataclass(slots=True)
class Intent:
    """Classifier flags and extracted search parameters for one turn."""

    is_greeting: bool = False
    is_property_search: bool = False
    is_show_more: bool = False
    city: str | None = None
    property_type: str | None = None
    transaction_type: str | None = None


@dataclass(slots=True)
class TurnContext:
    """Everything one orchestrator invocation knows about the inbound turn."""

    phone: str
    message: str
    instance_id: str
    history: list[dict[str, Any]] | None = None
    media: MediaPayload | None = None
    message_type: str = "text"
    push_name: str | None = None
    intent: Intent = field(default_factory=Intent)
    # Resolved by the orchestrator from the instance record.
    company_id: str | None = None
    instance_name: str | None = None
    conversation_id: str | None = None

    @property
    def is_first_message(self) -> bool:
        return not self.history


@dataclass(slots=True)
class LLMToolCall:
    """Tool invocation returned by an LLM provider."""

    name: str
    arguments: dict[str, Any]
    call_id: str | None = None


@dataclass(slots=True)
class LLMResponse:
    """Result from an LLM generation request."""

    content: str
    tool_calls: list[LLMToolCall] = field(default_factory=list)
    raw: dict[str, Any] | None = None


@dataclass(slots=True)
class PropertyCard:
    """Property rendered for sequential media delivery."""

    code: str
    name: str
    address: str
    description: str
    images: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ToolOutcome:
    """What a tool execution hands back to the orchestrator.

    ``data`` is serialized into the tool message for the model. When
    ``final_text`` is set the turn ends with it and no follow-up completion is
    requested.
    """

    data: dict[str, Any]
    properties: list[PropertyCard] = field(default_factory=list)
    has_more: bool | None = None
    final_text: str | None = None
    followup_instruction: str | None = None
    followup_max_tokens: int | None = None


@dataclass(slots=True)
class AgentResponse:
    """Final product of a turn, ready for persistence and delivery."""

    text: str
    active_agent_id: str | None = None
    active_agent_name: str | None = None
    active_agent_type: str = "main"
    delegated: bool = False
    properties: list[PropertyCard] = field(default_factory=list)
    has_more_properties: bool | None = None


@dataclass(slots=True)
class WhatsappInstance:
    id: str
    company_id: str
    name: str
    evolution_instance_id: str | None = None
    ai_agent_id: str | None = None


@dataclass(slots=True)
class AIAgent:
    id: str
    company_id: str
    name: str
    prompt: str | None = None
    agent_type: str = "main"
    parent_agent_id: str | None = None
    delegation_keywords: list[str] = field(default_factory=list)
    training_content: str | None = None


@dataclass(slots=True)
class AIConfiguration:
    """Admin-level model settings shared by every tenant."""

    api_key: str | None
    model: str = "gpt-4o"
    temperature: float = 0.7
    max_tokens: int = 1000


@dataclass(slots=True)
class Property:
    id: str
    company_id: str
    code: str | None
    name: str | None
    city: str | None = None
    transaction_type: str | None = None
    property_type: str | None = None
    street: str | None = None
    number: str | None = None
    neighborhood: str | None = None
    state: str | None = None
    bedrooms: int | None = None
    bathrooms: int | None = None
    parking_spaces: int | None = None
    private_area: float | None = None
    price: float | None = None
    description: str | None = None
    amenities: list[str] = field(default_factory=list)
    images: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Broker:
    id: str
    company_id: str
    name: str
    whatsapp: str | None = None


@dataclass(slots=True)
class Appointment:
    id: str
    company_id: str
    broker_id: str | None
    client_name: str
    client_phone: str
    property_interest: str
    scheduled_at: datetime | None
    status: str
    notes: str | None
    source: str
    conversation_id: str | None
    created_at: datetime


@dataclass(slots=True)
class Lead:
    id: str
    company_id: str
    name: str
    phone: str
    source: str
    status: str
    interested_city: str | None = None
    interested_property_type: str | None = None


@dataclass(slots=True)
class SearchCursor:
    """Filters and next offset of the last property search in a conversation."""

    instance_id: str
    phone: str
    city: str | None
    transaction_type: str | None
    property_type: str | None
    next_offset: int
    total: int
