"""Tool registration, argument validation and execution log."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError, create_model

from imobot.db import Database
from imobot.models import ConversationKey, ToolOutcome, TurnContext
from imobot.tools.base import Tool

LOGGER = logging.getLogger(__name__)


class ToolRegistry:
    """Explicit registry of the tools offered to the completion service."""

    def __init__(self, db: Database) -> None:
        self._db = db
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def list_tool_specs(self) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters_schema,
                },
            }
            for tool in self._tools.values()
        ]

    async def execute(self, context: TurnContext, tool_name: str, arguments: dict[str, Any]) -> ToolOutcome:
        tool = self._tools.get(tool_name)
        if tool is None:
            raise KeyError(f"Unknown tool: {tool_name}")

        key = str(ConversationKey(context.instance_id, context.phone))
        validated, missing = _validate_json_schema(tool.parameters_schema, arguments)
        if missing:
            LOGGER.warning("Tool %s called without %s for %s", tool_name, missing, key)
            outcome = tool.incomplete(missing)
            self._db.log_tool_execution(key, tool_name, validated, outcome.data, succeeded=False)
            return outcome
        try:
            outcome = await tool.run(context, **validated)
            self._db.log_tool_execution(key, tool_name, validated, outcome.data, succeeded=True)
            return outcome
        except Exception as exc:  # noqa: BLE001
            self._db.log_tool_execution(key, tool_name, validated, {"error": str(exc)}, succeeded=False)
            raise


def _validate_json_schema(schema: dict[str, Any], payload: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
    """Type-check ``payload`` and report required fields that are absent or blank.

    Required fields are reported rather than rejected so the model can be asked
    to collect them.
    """

    props = schema.get("properties", {})
    fields: dict[str, tuple[Any, Any]] = {}
    for name, config in props.items():
        typ = _python_type(config.get("type", "string"))
        fields[name] = (typ | None, None)

    model = create_model("ToolInputModel", **fields)
    try:
        value = model(**payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid input for tool: {exc}") from exc
    validated = value.model_dump(exclude_none=True)
    missing = [name for name in schema.get("required", []) if not str(validated.get(name, "")).strip()]
    return validated, missing


def _python_type(schema_type: str) -> type[Any]:
    mapping: dict[str, type[Any]] = {
        "string": str,
        "integer": int,
        "number": float,
        "boolean": bool,
        "object": dict,
        "array": list,
    }
    return mapping.get(schema_type, str)
