"""Tool contracts."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from imobot.models import ToolOutcome, TurnContext


class Tool(ABC):
    """Base class for tools the completion service may invoke."""

    name: str
    description: str
    parameters_schema: dict[str, Any]

    @abstractmethod
    async def run(self, context: TurnContext, **kwargs: Any) -> ToolOutcome:
        """Execute tool with validated arguments."""

    def incomplete(self, missing: list[str]) -> ToolOutcome:
        """Outcome returned instead of running when required arguments are blank."""

        return ToolOutcome(
            data={"sucesso": False, "erro": "campos_obrigatorios_ausentes", "campos_ausentes": missing},
            followup_instruction=(
                "INSTRUÇÃO: A função não foi executada porque faltam dados: "
                f"{', '.join(missing)}. Peça ao cliente, de forma curta e natural, "
                "apenas o primeiro dado que falta."
            ),
        )
