"""Conversation memory backed by the database."""

from __future__ import annotations

import logging
from typing import Any

from imobot.db import Database
from imobot.intent import IntentClassifier
from imobot.models import normalize_phone

LOGGER = logging.getLogger(__name__)


class ConversationMemory:
    """Maps stored conversations to role-tagged history and records finished turns."""

    def __init__(self, db: Database, classifier: IntentClassifier, history_window: int = 50) -> None:
        self._db = db
        self._classifier = classifier
        self._history_window = history_window

    def load_history(self, instance_ref: str, phone: str) -> list[dict[str, Any]]:
        """Return the last messages of the conversation, oldest first."""

        instance = self._db.get_instance(instance_ref)
        if instance is None:
            LOGGER.warning("No instance %s while loading history", instance_ref)
            return []
        conversation = self._db.find_conversation(instance.id, normalize_phone(phone))
        if conversation is None:
            return []
        history = self._db.get_recent_messages(conversation["id"], self._history_window)
        LOGGER.info("Loaded %d history messages for %s", len(history), conversation["id"])
        return history

    def find_conversation_id(self, instance_ref: str, phone: str) -> str | None:
        instance = self._db.get_instance(instance_ref)
        if instance is None:
            return None
        conversation = self._db.find_conversation(instance.id, normalize_phone(phone))
        return conversation["id"] if conversation else None

    def save_turn(
        self,
        instance_ref: str,
        phone: str,
        user_text: str,
        reply_text: str,
        agent_id: str | None = None,
        push_name: str | None = None,
        message_type: str = "text",
        property_codes: list[str] | None = None,
    ) -> str | None:
        """Persist both sides of a turn and keep the contact's lead current.

        The stored reply lists the property codes that were delivered so later
        turns can see what the customer has already been shown.
        """

        instance = self._db.get_instance(instance_ref)
        if instance is None:
            LOGGER.warning("No instance %s while saving turn", instance_ref)
            return None

        digits = normalize_phone(phone)
        conversation, created = self._db.get_or_create_conversation(instance.id, digits, push_name)
        if created:
            LOGGER.info("New conversation %s for %s", conversation["id"], digits)

        stored_reply = reply_text
        if property_codes:
            stored_reply = f"{reply_text}\n\nImóveis enviados: {', '.join(property_codes)}"
        self._db.add_message(conversation["id"], "user", user_text, message_type=message_type)
        self._db.add_message(conversation["id"], "assistant", stored_reply, agent_id=agent_id)
        self._db.update_conversation(conversation["id"], contact_name=push_name, last_message=stored_reply)

        lead = self._db.get_lead_by_phone(digits, instance.company_id)
        if lead is None:
            lead = self._db.create_lead(
                instance.company_id,
                name=push_name or digits,
                phone=digits,
                notes=f"Primeira mensagem: {user_text[:200]}",
            )
            LOGGER.info("Created lead %s for %s", lead.id, digits)

        city = self._classifier.extract_city(user_text)
        property_type = self._classifier.extract_property_type(user_text)
        if city or property_type:
            self._db.update_lead_interest(lead.id, city=city, property_type=property_type)
        return conversation["id"]
