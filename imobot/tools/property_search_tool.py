"""Paginated property search tool."""

from __future__ import annotations

import logging
from typing import Any

from imobot.db import Database
from imobot.intent import IntentClassifier, fold
from imobot.models import ConversationKey, Property, PropertyCard, SearchCursor, ToolOutcome, TurnContext
from imobot.tools.base import Tool

LOGGER = logging.getLogger(__name__)

PAGE_SIZE = 3
MAX_IMAGES_PER_PROPERTY = 5

NO_RESULTS_TEXT = (
    "Não encontrei imóveis com essas características no momento. 😔\n\n"
    "Posso ajudar você a buscar de outra forma? Tente mudar a cidade, o tipo de imóvel ou o tipo de transação."
)
EXHAUSTED_TEXT = (
    "Esses são todos os imóveis disponíveis! 🏠\n\n"
    "Qual deles você mais gostou? Me diga o código (ex: A1001) que eu agendo uma visita "
    "sem compromisso para você conhecer de perto! 📅"
)

# Store codes for transaction types.
_STORE_TRANSACTION = {"aluguel": "locacao", "venda": "venda"}


def format_brl(value: float | None) -> str:
    if value is None:
        return "Valor sob consulta"
    grouped = f"{value:,.2f}"
    return "R$ " + grouped.replace(",", "_").replace(".", ",").replace("_", ".")


def format_address(prop: Property) -> str:
    return (
        f"{prop.street or ''}, {prop.number or ''} - {prop.neighborhood or ''}, "
        f"{prop.city or ''} - {prop.state or ''}"
    )


def build_card(prop: Property, amenity_names: dict[str, str]) -> PropertyCard:
    """Render one property for sequential delivery."""

    address = format_address(prop)
    transaction_label = "Aluguel" if prop.transaction_type == "locacao" else "Venda"
    lines = [
        f"Código: {prop.code or 'N/A'}",
        prop.name or "Imóvel sem nome",
        f"📍 {address}",
        f"🛏️ {prop.bedrooms or 0} quartos | 🚿 {prop.bathrooms or 0} banheiros | 🚗 {prop.parking_spaces or 0} vagas",
    ]
    if prop.private_area:
        lines.append(f"📐 {prop.private_area:g}m²")
    lines.append(f"💰 {transaction_label}: {format_brl(prop.price)}")
    names = [amenity_names[amenity_id] for amenity_id in prop.amenities if amenity_id in amenity_names]
    if names:
        lines.append(f"✨ {', '.join(names)}")
    if prop.description:
        lines.extend(["", prop.description])
    return PropertyCard(
        code=prop.code or "SEM-CÓDIGO",
        name=prop.name or "Imóvel sem nome",
        address=address,
        description="\n".join(lines),
        images=list(prop.images[:MAX_IMAGES_PER_PROPERTY]),
    )


class PropertySearchTool(Tool):
    """Search the company's listings, three at a time."""

    name = "busca_imoveis"
    description = (
        "OBRIGATÓRIO: use sempre que o usuário mencionar qualquer tipo de imóvel (apartamento, casa, sala, "
        "terreno, sobrado, chácara, ap, apto) ou uma cidade. Não faça perguntas, chame a função imediatamente. "
        "Busca os imóveis cadastrados da empresa e retorna 3 por vez. Se o usuário pedir 'mais', chame de novo "
        "para os próximos 3. Passe todos os parâmetros que conseguir identificar na mensagem atual e no histórico."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "cidade": {
                "type": "string",
                "description": "Cidade onde o usuário procura imóvel. Ex: Joaçaba, Campinas, São Paulo.",
            },
            "tipo_transacao": {
                "type": "string",
                "enum": ["venda", "aluguel", "locacao"],
                "description": "'venda' para comprar, 'aluguel' ou 'locacao' para alugar.",
            },
            "tipo_imovel": {
                "type": "string",
                "enum": ["apartamento", "casa", "sala", "terreno", "sobrado", "chácara"],
                "description": "Tipo do imóvel. 'ap' e 'apto' equivalem a 'apartamento'.",
            },
            "limite": {
                "type": "integer",
                "description": "Máximo de imóveis a retornar. Padrão: 3.",
            },
        },
        "required": [],
    }

    def __init__(self, db: Database, classifier: IntentClassifier, page_size: int = PAGE_SIZE) -> None:
        self._db = db
        self._classifier = classifier
        self._page_size = page_size

    async def run(self, context: TurnContext, **kwargs: Any) -> ToolOutcome:
        if not context.company_id:
            raise RuntimeError("Search requires a company-scoped context")

        history = context.history or []
        derived_city, derived_type, derived_transaction = self._classifier.extract_parameters(context.message, history)
        requested_city = kwargs.get("cidade")
        city = (self._classifier.extract_city(requested_city) or requested_city.strip()) if requested_city else derived_city
        property_type = self._classifier.normalize_property_type(kwargs.get("tipo_imovel") or derived_type)
        transaction = self._classifier.normalize_transaction_type(kwargs.get("tipo_transacao") or derived_transaction)
        limit = max(1, min(int(kwargs.get("limite") or self._page_size), self._page_size))

        key = ConversationKey(context.instance_id, context.phone)
        offset = 0
        if context.intent.is_show_more:
            cursor = self._db.get_search_cursor(key.instance_id, key.phone)
            if cursor is None:
                offset = self._page_size * self._announcement_count(history)
            elif not self._names_new_filters(context.message, cursor):
                city, transaction, property_type = cursor.city, cursor.transaction_type, cursor.property_type
                offset = cursor.next_offset

        LOGGER.info(
            "Property search for %s: city=%r type=%r transaction=%r offset=%d limit=%d",
            key,
            city,
            property_type,
            transaction,
            offset,
            limit,
        )
        matches = self._db.search_properties(
            context.company_id,
            city=city,
            transaction_type=_STORE_TRANSACTION.get(transaction or "", transaction),
            property_type=property_type,
        )
        total = len(matches)
        page = matches[offset : offset + limit]
        remaining = max(total - (offset + len(page)), 0)
        self._db.save_search_cursor(
            SearchCursor(
                instance_id=key.instance_id,
                phone=key.phone,
                city=city,
                transaction_type=transaction,
                property_type=property_type,
                next_offset=offset + len(page),
                total=total,
            )
        )

        filters = {"cidade": city, "tipo_imovel": property_type, "tipo_transacao": transaction}
        if not page:
            exhausted = offset > 0
            return ToolOutcome(
                data={"total": total, "total_retornado": 0, "offset": offset, "filtros": filters},
                final_text=EXHAUSTED_TEXT if exhausted else NO_RESULTS_TEXT,
                has_more=False,
            )

        amenity_names = self._db.get_amenities(context.company_id)
        cards = [build_card(prop, amenity_names) for prop in page]
        codes = ", ".join(card.code for card in cards)
        intro = (
            f"Encontrei {total} imóveis. Mostrando os primeiros {len(page)}."
            if offset == 0
            else f"Mostrando mais {len(page)} imóveis."
        )
        if remaining > 0:
            summary = f"{intro} Ainda há mais {remaining} imóveis. O usuário pode pedir \"mais\" para ver os próximos."
        else:
            summary = f"{intro} Esses são todos os imóveis disponíveis."
        return ToolOutcome(
            data={
                "total": total,
                "total_retornado": len(page),
                "offset": offset,
                "limite_aplicado": limit,
                "tem_mais_resultados": remaining > 0,
                "total_restante": remaining,
                "codigos_mostrados": codes,
                "filtros": filters,
                "mensagem": f"{summary} O sistema enviará cada imóvel automaticamente com suas fotos.",
            },
            properties=cards,
            has_more=remaining > 0,
            followup_instruction=(
                f"INSTRUÇÃO: Os imóveis com códigos [{codes}] estão sendo enviados ao usuário com fotos. "
                "Sua resposta deve ser MUITO CURTA, apenas uma breve introdução (1-2 frases). "
                "Não liste imóveis, endereços, preços ou características. "
                "Não pergunte sobre agendamento, essa pergunta será enviada automaticamente. "
                'Exemplo: "Encontrei ótimas opções para você! Veja:"'
            ),
        )

    def _announcement_count(self, history: list[dict[str, Any]]) -> int:
        return sum(
            1
            for item in history
            if item.get("role") == "assistant"
            and isinstance(item.get("content"), str)
            and "encontrei" in item["content"].lower()
        )

    def _names_new_filters(self, message: str, cursor: SearchCursor) -> bool:
        city = self._classifier.extract_city(message)
        property_type = self._classifier.extract_property_type(message)
        return (city is not None and fold(city) != fold(cursor.city or "")) or (
            property_type is not None and fold(property_type) != fold(cursor.property_type or "")
        )
