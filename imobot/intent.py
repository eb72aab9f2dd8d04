"""Rule-based intent detection for property conversations.

Everything here is pure: decisions depend only on the current message, the
role-tagged history and a closed vocabulary. Matching runs on accent-folded,
lower-cased text with word boundaries, so "Joaçaba" and "joacaba" are the same
city and the alias "ap" never matches inside "apartamento".
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from imobot.models import Intent

CITY_ALIASES: dict[str, str] = {
    "joaçaba": "Joaçaba",
    "campinas": "Campinas",
    "são paulo": "São Paulo",
    "curitiba": "Curitiba",
    "florianópolis": "Florianópolis",
    "joinville": "Joinville",
    "blumenau": "Blumenau",
    "chapecó": "Chapecó",
    "lages": "Lages",
    "criciúma": "Criciúma",
    "itajaí": "Itajaí",
    "jaraguá": "Jaraguá do Sul",
    "jaraguá do sul": "Jaraguá do Sul",
    "balneário camboriú": "Balneário Camboriú",
    "balneário": "Balneário Camboriú",
    "herval": "Herval d'Oeste",
    "herval d'oeste": "Herval d'Oeste",
    "herval do oeste": "Herval d'Oeste",
    "catanduvas": "Catanduvas",
    "ibicaré": "Ibicaré",
    "treze tílias": "Treze Tílias",
    "água doce": "Água Doce",
    "lacerdópolis": "Lacerdópolis",
    "ouro": "Ouro",
    "capinzal": "Capinzal",
    "erval velho": "Erval Velho",
    "vargem bonita": "Vargem Bonita",
    "tangará": "Tangará",
    "piratuba": "Piratuba",
    "ipira": "Ipira",
    "peritiba": "Peritiba",
    "presidente castelo branco": "Presidente Castelo Branco",
    "jaborá": "Jaborá",
    "concórdia": "Concórdia",
    "videira": "Videira",
    "fraiburgo": "Fraiburgo",
    "caçador": "Caçador",
}

# Alias -> canonical type accepted by the search tool.
PROPERTY_TYPE_ALIASES: dict[str, str] = {
    "apartamento": "apartamento",
    "apartamentos": "apartamento",
    "apto": "apartamento",
    "aptos": "apartamento",
    "ap": "apartamento",
    "casa": "casa",
    "casas": "casa",
    "sobrado": "sobrado",
    "sobrados": "sobrado",
    "sala": "sala",
    "salas": "sala",
    "sala comercial": "sala",
    "salas comerciais": "sala",
    "terreno": "terreno",
    "terrenos": "terreno",
    "lote": "terreno",
    "lotes": "terreno",
    "chácara": "chácara",
    "chácaras": "chácara",
    "sítio": "chácara",
}

# Terms that signal interest in real estate without naming a searchable type.
GENERIC_PROPERTY_TERMS: tuple[str, ...] = (
    "imóvel",
    "imóveis",
    "kitnet",
    "kitnets",
    "kitinete",
    "kitinetes",
    "cobertura",
    "coberturas",
    "galpão",
    "galpões",
    "barracão",
    "barracões",
)

TRANSACTION_ALIASES: dict[str, str] = {
    "alugar": "aluguel",
    "aluguel": "aluguel",
    "locação": "aluguel",
    "venda": "venda",
    "vender": "venda",
    "comprar": "venda",
    "compra": "venda",
}

GREETINGS: tuple[str, ...] = ("oi", "olá", "bom dia", "boa tarde", "boa noite", "hey", "hello", "opa")

SHOW_MORE_PHRASES: tuple[str, ...] = (
    "mais",
    "quero ver mais",
    "mostre mais",
    "tem mais",
    "próximos",
    "outros",
    "outras opções",
)

SEARCH_PHRASES: tuple[str, ...] = (
    "buscar imóveis",
    "procurar imóveis",
    "procuro",
    "procurando",
    "quais imóveis",
    "tem imóveis",
    "imóveis disponíveis",
    "quero alugar",
    "quero comprar",
    "para alugar",
    "pra alugar",
    "para comprar",
    "pra comprar",
    "para locação",
    "à venda",
)

RESULT_MARKER = "encontrei"
_PROPERTY_CODE = re.compile(r"\b[A-Z]\d{3,4}\b")


def fold(text: str) -> str:
    """Lower-case ``text`` and strip diacritics."""

    decomposed = unicodedata.normalize("NFD", text.lower())
    return "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")


def _term_pattern(term: str) -> re.Pattern[str]:
    body = r"\s+".join(re.escape(part) for part in fold(term).split())
    return re.compile(rf"(?<!\w){body}(?!\w)")


def _ordered_aliases(aliases: dict[str, str]) -> list[tuple[re.Pattern[str], str]]:
    # Longest alias first so "apartamento" wins over "ap" and "jaraguá do sul" over "jaraguá".
    folded: dict[str, str] = {}
    for alias, canonical in aliases.items():
        folded.setdefault(fold(alias), canonical)
    return [(_term_pattern(alias), folded[alias]) for alias in sorted(folded, key=len, reverse=True)]


def _history_texts(history: Iterable[dict[str, Any]] | None, role: str | None = None) -> list[str]:
    texts = []
    for item in history or []:
        if role is not None and item.get("role") != role:
            continue
        content = item.get("content")
        if isinstance(content, str):
            texts.append(content)
    return texts


@dataclass
class Vocabulary:
    """Closed vocabulary the classifier recognises."""

    cities: dict[str, str] = field(default_factory=lambda: dict(CITY_ALIASES))
    property_types: dict[str, str] = field(default_factory=lambda: dict(PROPERTY_TYPE_ALIASES))
    generic_property_terms: tuple[str, ...] = GENERIC_PROPERTY_TERMS
    transactions: dict[str, str] = field(default_factory=lambda: dict(TRANSACTION_ALIASES))
    greetings: tuple[str, ...] = GREETINGS
    show_more_phrases: tuple[str, ...] = SHOW_MORE_PHRASES
    search_phrases: tuple[str, ...] = SEARCH_PHRASES


class IntentClassifier:
    """Greeting, search and "show more" detection plus parameter extraction."""

    def __init__(self, vocabulary: Vocabulary | None = None) -> None:
        vocab = vocabulary or Vocabulary()
        self._cities = _ordered_aliases(vocab.cities)
        self._property_types = _ordered_aliases(vocab.property_types)
        self._generic_terms = [_term_pattern(term) for term in vocab.generic_property_terms]
        self._transactions = _ordered_aliases(vocab.transactions)
        self._show_more = [_term_pattern(phrase) for phrase in vocab.show_more_phrases]
        self._search_phrases = [_term_pattern(phrase) for phrase in vocab.search_phrases]
        greetings = "|".join(
            r"\s+".join(re.escape(part) for part in fold(g).split())
            for g in sorted(vocab.greetings, key=len, reverse=True)
        )
        self._greeting = re.compile(rf"^(?:{greetings})(?!\w)")
        self._canonical_types = {fold(alias): canonical for alias, canonical in vocab.property_types.items()}

    def classify(self, message: str, history: list[dict[str, Any]] | None = None) -> Intent:
        city, property_type, transaction_type = self.extract_parameters(message, history)
        return Intent(
            is_greeting=self.is_greeting(message),
            is_property_search=self.is_property_search(message, history),
            is_show_more=self.is_show_more(message, history),
            city=city,
            property_type=property_type,
            transaction_type=transaction_type,
        )

    def is_greeting(self, text: str) -> bool:
        return bool(self._greeting.match(fold(text).strip()))

    def is_bare_greeting(self, text: str) -> bool:
        """True for a greeting that carries no search term of its own."""

        return self.is_greeting(text) and not self.has_property_type(text) and not self.has_city(text)

    def has_city(self, text: str) -> bool:
        return self.extract_city(text) is not None

    def has_property_type(self, text: str) -> bool:
        folded = fold(text)
        if any(pattern.search(folded) for pattern, _ in self._property_types):
            return True
        return any(pattern.search(folded) for pattern in self._generic_terms)

    def has_search_keywords(self, text: str) -> bool:
        folded = fold(text)
        return any(pattern.search(folded) for pattern in self._search_phrases)

    def is_property_search(self, message: str, history: list[dict[str, Any]] | None = None) -> bool:
        """Decide whether this turn must force the property search tool.

        A bare greeting never triggers it, whatever the history holds. A
        message naming only a city or only a property type is completed by
        any earlier turn, even after results were shown. A message naming
        neither (a code, a name, a visit time) only counts history since the
        last announced result, so the visit flow is not pushed back into
        searching.
        """

        if self.is_bare_greeting(message):
            return False
        if self.has_search_keywords(message):
            return True

        earlier = " ".join(_history_texts(history))
        if self.has_city(message) and self.has_property_type(f"{earlier} {message}"):
            return True
        if self.has_property_type(message) and self.has_city(f"{earlier} {message}"):
            return True

        open_search = " ".join(_history_texts(self._since_last_result(history)))
        return self.has_property_type(open_search) and self.has_city(open_search)

    def is_show_more(self, message: str, history: list[dict[str, Any]] | None = None) -> bool:
        folded = fold(message)
        if not any(pattern.search(folded) for pattern in self._show_more):
            return False
        return any(self.announces_results(text) for text in _history_texts(history, role="assistant"))

    @staticmethod
    def announces_results(text: str) -> bool:
        return RESULT_MARKER in fold(text) or bool(_PROPERTY_CODE.search(text))

    def extract_city(self, text: str) -> str | None:
        return self._first_match(self._cities, text)

    def extract_property_type(self, text: str) -> str | None:
        return self._first_match(self._property_types, text)

    def extract_transaction_type(self, text: str) -> str | None:
        return self._first_match(self._transactions, text)

    def extract_parameters(
        self, message: str, history: list[dict[str, Any]] | None = None
    ) -> tuple[str | None, str | None, str | None]:
        """Return (city, property_type, transaction_type); most recent mention wins."""

        texts = [message, *reversed(_history_texts(history))]
        return (
            self._first_in(texts, self.extract_city),
            self._first_in(texts, self.extract_property_type),
            self._first_in(texts, self.extract_transaction_type),
        )

    def normalize_property_type(self, value: str | None) -> str | None:
        if not value:
            return None
        folded = fold(value).strip()
        return self._canonical_types.get(folded) or self.extract_property_type(value) or value.strip().lower()

    def normalize_transaction_type(self, value: str | None) -> str | None:
        if not value:
            return None
        folded = fold(value).strip()
        if folded in ("locacao", "aluguel"):
            return "aluguel"
        return self.extract_transaction_type(value) or folded

    def _since_last_result(self, history: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
        items = list(history or [])
        for index in range(len(items) - 1, -1, -1):
            item = items[index]
            content = item.get("content")
            if item.get("role") == "assistant" and isinstance(content, str) and self.announces_results(content):
                return items[index + 1 :]
        return items

    @staticmethod
    def _first_match(patterns: list[tuple[re.Pattern[str], str]], text: str) -> str | None:
        folded = fold(text)
        for pattern, canonical in patterns:
            if pattern.search(folded):
                return canonical
        return None

    @staticmethod
    def _first_in(texts: list[str], extractor: Callable[[str], str | None]) -> str | None:
        for text in texts:
            value = extractor(text)
            if value is not None:
                return value
        return None
