"""Visit scheduling tool with round-robin broker assignment."""

from __future__ import annotations

import logging
import random
import re
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Any, Callable
from zoneinfo import ZoneInfo

from imobot.db import Database
from imobot.models import Broker, ToolOutcome, TurnContext, normalize_phone
from imobot.tools.base import Tool
from imobot.whatsapp_adapter import EvolutionGateway

LOGGER = logging.getLogger(__name__)

DEFAULT_VISIT_HOUR = 9
SCHEDULING_FOLLOWUP_MAX_TOKENS = 200

_DATE_PATTERN = re.compile(r"(\d{1,2})/(\d{1,2})/(\d{4})")
_HOUR_PATTERN = re.compile(r"(\d{1,2})\s*h(\d{2})?", re.IGNORECASE)
_PROPERTY_CODE_PATTERN = re.compile(r"[A-Za-z]*\d+")


@dataclass(slots=True)
class ParsedVisitDate:
    """Outcome of best-effort date parsing; ``scheduled_at`` is set only when parsed."""

    raw: str
    scheduled_at: datetime | None = None

    @property
    def parsed(self) -> bool:
        return self.scheduled_at is not None


def parse_visit_date(raw: str, tz: ZoneInfo) -> ParsedVisitDate:
    """Read ``DD/MM/YYYY`` plus an optional ``<hour>h`` out of free text."""

    date_match = _DATE_PATTERN.search(raw)
    if date_match is None:
        return ParsedVisitDate(raw=raw)
    day, month, year = (int(part) for part in date_match.groups())
    hour, minute = DEFAULT_VISIT_HOUR, 0
    hour_match = _HOUR_PATTERN.search(raw[date_match.end() :])
    if hour_match is not None:
        hour = int(hour_match.group(1))
        minute = int(hour_match.group(2) or 0)
    try:
        scheduled_at = datetime(year, month, day, hour, minute, tzinfo=tz)
    except ValueError:
        return ParsedVisitDate(raw=raw)
    return ParsedVisitDate(raw=raw, scheduled_at=scheduled_at)


def assign_broker(brokers: list[Broker], last_broker_id: str | None, rng: random.Random) -> Broker | None:
    """Pick the next broker in id order, or a random one for the first visit of the day."""

    if not brokers:
        return None
    ordered = sorted(brokers, key=lambda broker: broker.id)
    if last_broker_id is None:
        return rng.choice(ordered)
    ids = [broker.id for broker in ordered]
    if last_broker_id not in ids:
        return ordered[0]
    return ordered[(ids.index(last_broker_id) + 1) % len(ordered)]


def whatsapp_link(phone: str) -> str | None:
    """Return a wa.me link for a Brazilian number, or None when the digit count is off."""

    digits = normalize_phone(phone)
    if len(digits) in (10, 11):
        return f"https://wa.me/55{digits}"
    if len(digits) in (12, 13) and digits.startswith("55"):
        return f"https://wa.me/{digits}"
    return None


class ScheduleVisitTool(Tool):
    """Book a property visit and notify the assigned broker."""

    name = "agendar_visita"
    description = (
        "Agenda uma visita a um imóvel. Chame SOMENTE depois que o cliente escolheu o imóvel e confirmou "
        "um dos horários oferecidos. Nunca invente dados: se faltar alguma informação, pergunte antes."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "nome_cliente": {"type": "string", "description": "Nome completo do cliente."},
            "telefone_cliente": {"type": "string", "description": "Telefone do cliente com DDD."},
            "imovel_interesse": {
                "type": "string",
                "description": "Código ou nome do imóvel escolhido pelo cliente (ex: A1001).",
            },
            "data_visita": {
                "type": "string",
                "description": "Data e hora confirmadas, no formato 'dia DD/MM/YYYY às 9h'.",
            },
            "observacoes": {"type": "string", "description": "Observações adicionais do cliente."},
        },
        "required": ["imovel_interesse", "data_visita"],
    }

    def __init__(
        self,
        db: Database,
        gateway: EvolutionGateway | None,
        timezone: ZoneInfo,
        rng: random.Random | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._gateway = gateway
        self._timezone = timezone
        self._rng = rng or random.Random()
        self._now = now or (lambda: datetime.now(self._timezone))

    async def run(self, context: TurnContext, **kwargs: Any) -> ToolOutcome:
        if not context.company_id:
            raise RuntimeError("Scheduling requires a company-scoped context")

        client_name = (kwargs.get("nome_cliente") or context.push_name or "").strip()
        client_phone = (kwargs.get("telefone_cliente") or context.phone or "").strip()
        missing = [
            field
            for field, value in (("nome_cliente", client_name), ("telefone_cliente", client_phone))
            if not value
        ]
        if missing:
            return self.incomplete(missing)
        property_interest = kwargs["imovel_interesse"].strip()
        visit_date = parse_visit_date(kwargs["data_visita"].strip(), self._timezone)
        observations = (kwargs.get("observacoes") or "").strip()

        brokers = self._db.list_brokers(context.company_id)
        now = self._now()
        day_start = datetime.combine(now.date(), time.min, tzinfo=self._timezone)
        last = self._db.get_last_appointment_with_broker(context.company_id, day_start, day_start + timedelta(days=1))
        broker = assign_broker(brokers, last.broker_id if last else None, self._rng)
        LOGGER.info(
            "Assigning visit for %s to broker %s (previous: %s)",
            context.phone,
            broker.name if broker else None,
            last.broker_id if last else None,
        )

        notes = f"Visita agendada para: {visit_date.raw}"
        if observations:
            notes += f" | {observations}"
        appointment = self._db.create_appointment(
            company_id=context.company_id,
            broker_id=broker.id if broker else None,
            client_name=client_name,
            client_phone=client_phone,
            property_interest=property_interest,
            scheduled_at=visit_date.scheduled_at,
            notes=notes,
            conversation_id=context.conversation_id,
            created_at=now,
        )

        if broker is not None:
            await self._notify_broker(context, broker, client_name, client_phone, property_interest, visit_date, observations)

        broker_label = f"O corretor {broker.name}" if broker else "Nossa equipe"
        return ToolOutcome(
            data={
                "sucesso": True,
                "agendamento_id": appointment.id,
                "corretor": broker.name if broker else None,
                "data_interpretada": visit_date.parsed,
                "mensagem": (
                    f"Perfeito! Sua visita ao imóvel {property_interest} está agendada para {visit_date.raw}. "
                    f"{broker_label} estará aguardando você no local. Até lá!"
                ),
            },
            followup_instruction=(
                "INSTRUÇÃO: A visita foi agendada com sucesso. Confirme ao cliente em uma mensagem curta e "
                "cordial com o imóvel, a data e o nome do corretor. Não ofereça novos horários."
            ),
            followup_max_tokens=SCHEDULING_FOLLOWUP_MAX_TOKENS,
        )

    async def _notify_broker(
        self,
        context: TurnContext,
        broker: Broker,
        client_name: str,
        client_phone: str,
        property_interest: str,
        visit_date: ParsedVisitDate,
        observations: str,
    ) -> None:
        if self._gateway is None or not broker.whatsapp or not context.instance_name:
            LOGGER.info("Skipping broker notification for %s", broker.id)
            return
        try:
            property_line = property_interest
            code_match = _PROPERTY_CODE_PATTERN.search(property_interest)
            if code_match is not None and context.company_id:
                prop = self._db.get_property_by_code(code_match.group(0), context.company_id)
                if prop is not None:
                    property_line = f"{prop.code} - {prop.name or ''}".strip(" -")
            link = whatsapp_link(client_phone)
            lines = [
                "🏠 *NOVO AGENDAMENTO DE VISITA*",
                "",
                f"👤 *Cliente:* {client_name}",
                f"📱 *Telefone:* {client_phone}",
                f"🏡 *Imóvel:* {property_line}",
                f"📅 *Data:* {visit_date.raw}",
            ]
            if observations:
                lines.append(f"📝 *Observações:* {observations}")
            lines.extend(["", f"💬 Falar com o cliente: {link or '(Número não disponível para link direto)'}"])
            await self._gateway.send_text(context.instance_name, broker.whatsapp, "\n".join(lines))
        except Exception:  # noqa: BLE001
            LOGGER.exception("Broker notification failed for %s", broker.id)
