"""SQLite persistence layer."""

from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from imobot.intent import fold
from imobot.models import (
    AIAgent,
    AIConfiguration,
    Appointment,
    Broker,
    Lead,
    Property,
    SearchCursor,
    WhatsappInstance,
    normalize_phone,
)

SCHEMA_VERSION = 1


class Database:
    """Small SQLite wrapper with explicit schema management."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create or migrate schema."""

        with self._connect() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                self._create_schema(conn)
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            elif row["version"] != SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {row['version']} (expected {SCHEMA_VERSION})"
                )

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS whatsapp_instances (
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL,
                name TEXT NOT NULL,
                evolution_instance_id TEXT,
                ai_agent_id TEXT
            );

            CREATE TABLE IF NOT EXISTS ai_agents (
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL,
                name TEXT NOT NULL,
                prompt TEXT,
                agent_type TEXT NOT NULL,
                parent_agent_id TEXT,
                delegation_keywords_json TEXT NOT NULL,
                training_content TEXT,
                position INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS ai_configuration (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                api_key TEXT,
                model TEXT NOT NULL,
                temperature REAL NOT NULL,
                max_tokens INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                instance_id TEXT NOT NULL,
                contact_phone TEXT NOT NULL,
                contact_name TEXT,
                last_message TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(instance_id) REFERENCES whatsapp_instances(id)
            );

            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL,
                sender TEXT NOT NULL,
                content TEXT NOT NULL,
                message_type TEXT NOT NULL,
                agent_id TEXT,
                caption TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY(conversation_id) REFERENCES conversations(id)
            );

            CREATE TABLE IF NOT EXISTS properties (
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL,
                code TEXT,
                name TEXT,
                city TEXT,
                transaction_type TEXT,
                property_type TEXT,
                street TEXT,
                number TEXT,
                neighborhood TEXT,
                state TEXT,
                bedrooms INTEGER,
                bathrooms INTEGER,
                parking_spaces INTEGER,
                private_area REAL,
                price REAL,
                description TEXT,
                amenities_json TEXT NOT NULL,
                images_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS amenities (
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL,
                name TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS brokers (
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL,
                name TEXT NOT NULL,
                whatsapp TEXT
            );

            CREATE TABLE IF NOT EXISTS appointments (
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL,
                broker_id TEXT,
                client_name TEXT NOT NULL,
                client_phone TEXT NOT NULL,
                property_interest TEXT NOT NULL,
                scheduled_at TEXT,
                status TEXT NOT NULL,
                notes TEXT,
                source TEXT NOT NULL,
                conversation_id TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS leads (
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL,
                name TEXT NOT NULL,
                phone TEXT NOT NULL,
                source TEXT NOT NULL,
                status TEXT NOT NULL,
                interested_city TEXT,
                interested_property_type TEXT,
                notes TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS search_cursors (
                instance_id TEXT NOT NULL,
                phone TEXT NOT NULL,
                city TEXT,
                transaction_type TEXT,
                property_type TEXT,
                next_offset INTEGER NOT NULL,
                total INTEGER NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY(instance_id, phone)
            );

            CREATE TABLE IF NOT EXISTS tool_executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_key TEXT NOT NULL,
                tool_name TEXT NOT NULL,
                input_json TEXT NOT NULL,
                output_json TEXT NOT NULL,
                succeeded INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );
            """
        )

    # Instances, agents and AI configuration

    def add_instance(self, instance: WhatsappInstance) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO whatsapp_instances(id, company_id, name, evolution_instance_id, ai_agent_id)
                VALUES (?, ?, ?, ?, ?)
                """,
                (instance.id, instance.company_id, instance.name, instance.evolution_instance_id, instance.ai_agent_id),
            )

    def get_instance(self, ref: str) -> WhatsappInstance | None:
        """Find an instance by gateway id, name or database id."""

        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM whatsapp_instances
                WHERE evolution_instance_id = ? OR name = ? OR id = ?
                ORDER BY (evolution_instance_id = ?) DESC
                LIMIT 1
                """,
                (ref, ref, ref, ref),
            ).fetchone()
        if row is None:
            return None
        return WhatsappInstance(
            id=row["id"],
            company_id=row["company_id"],
            name=row["name"],
            evolution_instance_id=row["evolution_instance_id"],
            ai_agent_id=row["ai_agent_id"],
        )

    def add_agent(self, agent: AIAgent) -> None:
        with self._connect() as conn:
            position = conn.execute("SELECT COUNT(*) AS n FROM ai_agents").fetchone()["n"]
            conn.execute(
                """
                INSERT INTO ai_agents(
                    id, company_id, name, prompt, agent_type, parent_agent_id,
                    delegation_keywords_json, training_content, position
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    agent.id,
                    agent.company_id,
                    agent.name,
                    agent.prompt,
                    agent.agent_type,
                    agent.parent_agent_id,
                    json.dumps(agent.delegation_keywords),
                    agent.training_content,
                    position,
                ),
            )

    def get_agent(self, agent_id: str) -> AIAgent | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM ai_agents WHERE id = ?", (agent_id,)).fetchone()
        return _row_to_agent(row) if row else None

    def list_secondary_agents(self, parent_agent_id: str) -> list[AIAgent]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM ai_agents WHERE parent_agent_id = ? ORDER BY position ASC",
                (parent_agent_id,),
            ).fetchall()
        return [_row_to_agent(row) for row in rows]

    def save_ai_configuration(self, config: AIConfiguration) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO ai_configuration(id, api_key, model, temperature, max_tokens)
                VALUES (1, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    api_key=excluded.api_key,
                    model=excluded.model,
                    temperature=excluded.temperature,
                    max_tokens=excluded.max_tokens
                """,
                (config.api_key, config.model, config.temperature, config.max_tokens),
            )

    def get_ai_configuration(self) -> AIConfiguration | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM ai_configuration WHERE id = 1").fetchone()
        if row is None:
            return None
        return AIConfiguration(
            api_key=row["api_key"],
            model=row["model"],
            temperature=row["temperature"],
            max_tokens=row["max_tokens"],
        )

    # Conversations and messages

    def find_conversation(self, instance_id: str, phone: str) -> dict[str, Any] | None:
        """Return the conversation whose contact phone matches exactly or by digits."""

        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM conversations WHERE instance_id = ? ORDER BY created_at ASC",
                (instance_id,),
            ).fetchall()
        conversations = [dict(row) for row in rows]
        for conversation in conversations:
            if conversation["contact_phone"] == phone:
                return conversation
        digits = normalize_phone(phone)
        for conversation in conversations:
            if normalize_phone(conversation["contact_phone"]) == digits:
                return conversation
        return None

    def get_or_create_conversation(
        self, instance_id: str, phone: str, contact_name: str | None = None
    ) -> tuple[dict[str, Any], bool]:
        existing = self.find_conversation(instance_id, phone)
        if existing is not None:
            return existing, False
        now = _utc_now_iso()
        conversation = {
            "id": str(uuid.uuid4()),
            "instance_id": instance_id,
            "contact_phone": phone,
            "contact_name": contact_name,
            "last_message": None,
            "created_at": now,
            "updated_at": now,
        }
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO conversations(id, instance_id, contact_phone, contact_name, last_message, created_at, updated_at)
                VALUES (:id, :instance_id, :contact_phone, :contact_name, :last_message, :created_at, :updated_at)
                """,
                conversation,
            )
        return conversation, True

    def update_conversation(
        self, conversation_id: str, contact_name: str | None = None, last_message: str | None = None
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE conversations SET
                    contact_name = COALESCE(?, contact_name),
                    last_message = COALESCE(?, last_message),
                    updated_at = ?
                WHERE id = ?
                """,
                (contact_name, last_message, _utc_now_iso(), conversation_id),
            )

    def add_message(
        self,
        conversation_id: str,
        sender: str,
        content: str,
        message_type: str = "text",
        agent_id: str | None = None,
        caption: str | None = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO messages(conversation_id, sender, content, message_type, agent_id, caption, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (conversation_id, sender, content, message_type, agent_id, caption, _utc_now_iso()),
            )

    def get_recent_messages(self, conversation_id: str, limit: int) -> list[dict[str, str]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT sender, content
                FROM messages
                WHERE conversation_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (conversation_id, limit),
            ).fetchall()
        ordered = list(reversed(rows))
        return [
            {"role": "user" if row["sender"] == "user" else "assistant", "content": row["content"]}
            for row in ordered
        ]

    # Properties and amenities

    def add_property(self, prop: Property) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO properties(
                    id, company_id, code, name, city, transaction_type, property_type, street, number,
                    neighborhood, state, bedrooms, bathrooms, parking_spaces, private_area, price,
                    description, amenities_json, images_json, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    prop.id,
                    prop.company_id,
                    prop.code,
                    prop.name,
                    prop.city,
                    prop.transaction_type,
                    prop.property_type,
                    prop.street,
                    prop.number,
                    prop.neighborhood,
                    prop.state,
                    prop.bedrooms,
                    prop.bathrooms,
                    prop.parking_spaces,
                    prop.private_area,
                    prop.price,
                    prop.description,
                    json.dumps(prop.amenities),
                    json.dumps(prop.images),
                    _utc_now_iso(),
                ),
            )

    def search_properties(
        self,
        company_id: str,
        city: str | None = None,
        transaction_type: str | None = None,
        property_type: str | None = None,
    ) -> list[Property]:
        """Return company properties matching every given filter.

        Filters compare accent- and case-insensitively; absent filters match all.
        """

        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM properties WHERE company_id = ? ORDER BY created_at ASC, rowid ASC",
                (company_id,),
            ).fetchall()
        wanted = {
            "city": city,
            "transaction_type": transaction_type,
            "property_type": property_type,
        }
        matches = []
        for row in rows:
            if all(
                value is None or fold(row[column] or "").strip() == fold(value).strip()
                for column, value in wanted.items()
            ):
                matches.append(_row_to_property(row))
        return matches

    def get_property_by_code(self, code: str, company_id: str) -> Property | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM properties WHERE company_id = ? AND UPPER(code) = UPPER(?) LIMIT 1",
                (company_id, code),
            ).fetchone()
        return _row_to_property(row) if row else None

    def add_amenity(self, amenity_id: str, company_id: str, name: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO amenities(id, company_id, name) VALUES (?, ?, ?)",
                (amenity_id, company_id, name),
            )

    def get_amenities(self, company_id: str) -> dict[str, str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT id, name FROM amenities WHERE company_id = ?", (company_id,)).fetchall()
        return {row["id"]: row["name"] for row in rows}

    # Brokers and appointments

    def add_broker(self, broker: Broker) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO brokers(id, company_id, name, whatsapp) VALUES (?, ?, ?, ?)",
                (broker.id, broker.company_id, broker.name, broker.whatsapp),
            )

    def list_brokers(self, company_id: str) -> list[Broker]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM brokers WHERE company_id = ?", (company_id,)).fetchall()
        return [Broker(id=r["id"], company_id=r["company_id"], name=r["name"], whatsapp=r["whatsapp"]) for r in rows]

    def get_broker(self, broker_id: str) -> Broker | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM brokers WHERE id = ?", (broker_id,)).fetchone()
        if row is None:
            return None
        return Broker(id=row["id"], company_id=row["company_id"], name=row["name"], whatsapp=row["whatsapp"])

    def create_appointment(
        self,
        company_id: str,
        broker_id: str | None,
        client_name: str,
        client_phone: str,
        property_interest: str,
        scheduled_at: datetime | None,
        notes: str | None,
        conversation_id: str | None,
        status: str = "confirmado",
        source: str = "whatsapp",
        created_at: datetime | None = None,
    ) -> Appointment:
        appointment = Appointment(
            id=str(uuid.uuid4()),
            company_id=company_id,
            broker_id=broker_id,
            client_name=client_name,
            client_phone=client_phone,
            property_interest=property_interest,
            scheduled_at=scheduled_at,
            status=status,
            notes=notes,
            source=source,
            conversation_id=conversation_id,
            created_at=created_at or datetime.now(timezone.utc),
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO appointments(
                    id, company_id, broker_id, client_name, client_phone, property_interest,
                    scheduled_at, status, notes, source, conversation_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    appointment.id,
                    company_id,
                    broker_id,
                    client_name,
                    client_phone,
                    property_interest,
                    scheduled_at.isoformat() if scheduled_at else None,
                    status,
                    notes,
                    source,
                    conversation_id,
                    appointment.created_at.astimezone(timezone.utc).isoformat(),
                ),
            )
        return appointment

    def get_last_appointment_with_broker(
        self, company_id: str, start: datetime, end: datetime
    ) -> Appointment | None:
        """Return the newest broker-assigned appointment created in [start, end)."""

        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM appointments
                WHERE company_id = ? AND broker_id IS NOT NULL
                  AND created_at >= ? AND created_at < ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT 1
                """,
                (
                    company_id,
                    start.astimezone(timezone.utc).isoformat(),
                    end.astimezone(timezone.utc).isoformat(),
                ),
            ).fetchone()
        return _row_to_appointment(row) if row else None

    def list_appointments(self, company_id: str) -> list[Appointment]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM appointments WHERE company_id = ? ORDER BY created_at ASC, rowid ASC",
                (company_id,),
            ).fetchall()
        return [_row_to_appointment(row) for row in rows]

    # Leads

    def get_lead_by_phone(self, phone: str, company_id: str) -> Lead | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM leads WHERE company_id = ? AND phone = ? LIMIT 1",
                (company_id, phone),
            ).fetchone()
        return _row_to_lead(row) if row else None

    def create_lead(self, company_id: str, name: str, phone: str, notes: str | None = None) -> Lead:
        lead = Lead(id=str(uuid.uuid4()), company_id=company_id, name=name, phone=phone, source="WhatsApp", status="new")
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO leads(id, company_id, name, phone, source, status, notes, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (lead.id, company_id, name, phone, lead.source, lead.status, notes, _utc_now_iso()),
            )
        return lead

    def update_lead_interest(
        self, lead_id: str, city: str | None = None, property_type: str | None = None
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE leads SET
                    interested_city = COALESCE(?, interested_city),
                    interested_property_type = COALESCE(?, interested_property_type)
                WHERE id = ?
                """,
                (city, property_type, lead_id),
            )

    # Search cursors

    def get_search_cursor(self, instance_id: str, phone: str) -> SearchCursor | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM search_cursors WHERE instance_id = ? AND phone = ?",
                (instance_id, phone),
            ).fetchone()
        if row is None:
            return None
        return SearchCursor(
            instance_id=row["instance_id"],
            phone=row["phone"],
            city=row["city"],
            transaction_type=row["transaction_type"],
            property_type=row["property_type"],
            next_offset=row["next_offset"],
            total=row["total"],
        )

    def save_search_cursor(self, cursor: SearchCursor) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO search_cursors(
                    instance_id, phone, city, transaction_type, property_type, next_offset, total, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(instance_id, phone) DO UPDATE SET
                    city=excluded.city,
                    transaction_type=excluded.transaction_type,
                    property_type=excluded.property_type,
                    next_offset=excluded.next_offset,
                    total=excluded.total,
                    updated_at=excluded.updated_at
                """,
                (
                    cursor.instance_id,
                    cursor.phone,
                    cursor.city,
                    cursor.transaction_type,
                    cursor.property_type,
                    cursor.next_offset,
                    cursor.total,
                    _utc_now_iso(),
                ),
            )

    # Tool executions

    def log_tool_execution(
        self,
        conversation_key: str,
        tool_name: str,
        tool_input: dict[str, Any],
        tool_output: Any,
        succeeded: bool,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tool_executions(conversation_key, tool_name, input_json, output_json, succeeded, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation_key,
                    tool_name,
                    json.dumps(tool_input, ensure_ascii=False),
                    json.dumps(tool_output, ensure_ascii=False, default=str),
                    int(succeeded),
                    _utc_now_iso(),
                ),
            )

    def list_tool_executions(self, conversation_key: str) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM tool_executions WHERE conversation_key = ? ORDER BY id ASC",
                (conversation_key,),
            ).fetchall()
        return [dict(row) for row in rows]


def _row_to_agent(row: sqlite3.Row) -> AIAgent:
    return AIAgent(
        id=row["id"],
        company_id=row["company_id"],
        name=row["name"],
        prompt=row["prompt"],
        agent_type=row["agent_type"],
        parent_agent_id=row["parent_agent_id"],
        delegation_keywords=json.loads(row["delegation_keywords_json"]),
        training_content=row["training_content"],
    )


def _row_to_property(row: sqlite3.Row) -> Property:
    return Property(
        id=row["id"],
        company_id=row["company_id"],
        code=row["code"],
        name=row["name"],
        city=row["city"],
        transaction_type=row["transaction_type"],
        property_type=row["property_type"],
        street=row["street"],
        number=row["number"],
        neighborhood=row["neighborhood"],
        state=row["state"],
        bedrooms=row["bedrooms"],
        bathrooms=row["bathrooms"],
        parking_spaces=row["parking_spaces"],
        private_area=row["private_area"],
        price=row["price"],
        description=row["description"],
        amenities=json.loads(row["amenities_json"]),
        images=json.loads(row["images_json"]),
    )


def _row_to_appointment(row: sqlite3.Row) -> Appointment:
    return Appointment(
        id=row["id"],
        company_id=row["company_id"],
        broker_id=row["broker_id"],
        client_name=row["client_name"],
        client_phone=row["client_phone"],
        property_interest=row["property_interest"],
        scheduled_at=datetime.fromisoformat(row["scheduled_at"]) if row["scheduled_at"] else None,
        status=row["status"],
        notes=row["notes"],
        source=row["source"],
        conversation_id=row["conversation_id"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_lead(row: sqlite3.Row) -> Lead:
    return Lead(
        id=row["id"],
        company_id=row["company_id"],
        name=row["name"],
        phone=row["phone"],
        source=row["source"],
        status=row["status"],
        interested_city=row["interested_city"],
        interested_property_type=row["interested_property_type"],
    )


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
