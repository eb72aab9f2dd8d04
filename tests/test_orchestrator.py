from datetime import datetime
from unittest.mock import AsyncMock, MagicMock
from zoneinfo import ZoneInfo

import pytest

from imobot.db import Database
from imobot.intent import IntentClassifier
from imobot.memory import ConversationMemory
from imobot.models import (
    AIAgent,
    AIConfiguration,
    LLMResponse,
    LLMToolCall,
    MediaPayload,
    Property,
    TurnContext,
    WhatsappInstance,
)
from imobot.orchestrator import TurnOrchestrator
from imobot.prompts import APOLOGY_TEXT, AUDIO_FAILURE_TEXT
from imobot.tools.property_search_tool import NO_RESULTS_TEXT, PropertySearchTool
from imobot.tools.registry import ToolRegistry
from imobot.tools.schedule_visit_tool import ScheduleVisitTool

TZ = ZoneInfo("America/Sao_Paulo")


def _db(tmp_path, with_config: bool = True, apartments: int = 4) -> Database:
    db = Database(tmp_path / "imobot.db")
    db.initialize()
    db.add_instance(WhatsappInstance(id="i1", company_id="c1", name="deploy2", evolution_instance_id="inst-1", ai_agent_id="ag1"))
    db.add_agent(AIAgent(id="ag1", company_id="c1", name="Sofia", prompt="Você é Sofia, corretora virtual."))
    if with_config:
        db.save_ai_configuration(AIConfiguration(api_key="sk-test", model="gpt-4o", temperature=0.7, max_tokens=800))
    for index in range(apartments):
        db.add_property(
            Property(
                id=f"p{index}",
                company_id="c1",
                code=f"A{1001 + index}",
                name=f"Apartamento {index + 1}",
                city="Curitiba",
                transaction_type="locacao",
                property_type="apartamento",
                images=["https://img/1.jpg"],
            )
        )
    return db


def _llm(*responses: LLMResponse) -> MagicMock:
    llm = MagicMock()
    llm.generate = AsyncMock(side_effect=list(responses))
    llm.transcribe = AsyncMock(return_value="")
    return llm


def _orchestrator(db: Database, llm: MagicMock) -> TurnOrchestrator:
    classifier = IntentClassifier()
    registry = ToolRegistry(db)
    registry.register(PropertySearchTool(db, classifier))
    registry.register(ScheduleVisitTool(db, None, TZ))
    return TurnOrchestrator(
        db=db,
        llm_factory=lambda config: llm,
        tool_registry=registry,
        classifier=classifier,
        memory=ConversationMemory(db, classifier),
        timezone=TZ,
        request_timeout_seconds=5,
        followup_max_tokens=100,
        now=lambda: datetime(2026, 10, 19, 10, 0, tzinfo=TZ),
    )


def _context(message: str, history: list | None = None, **kwargs) -> TurnContext:
    return TurnContext(
        phone="5547999990000",
        message=message,
        instance_id="inst-1",
        history=history if history is not None else [],
        push_name=kwargs.pop("push_name", "Ana"),
        **kwargs,
    )


def _search_call(**arguments) -> LLMResponse:
    return LLMResponse(content="", tool_calls=[LLMToolCall(name="busca_imoveis", arguments=arguments, call_id="call_1")])


@pytest.mark.asyncio
async def test_plain_text_reply(tmp_path):
    db = _db(tmp_path)
    llm = _llm(LLMResponse(content="Olá Ana! Como posso ajudar?"))

    response = await _orchestrator(db, llm).handle_turn(_context("qual o horário de atendimento?"))

    assert response.text == "Olá Ana! Como posso ajudar?"
    assert response.active_agent_id == "ag1"
    assert response.active_agent_type == "main"
    assert response.delegated is False
    kwargs = llm.generate.await_args.kwargs
    assert kwargs["tool_choice"] == "auto"
    assert kwargs["max_tokens"] == 800
    assert {spec["function"]["name"] for spec in kwargs["tools"]} == {"busca_imoveis", "agendar_visita"}


@pytest.mark.asyncio
async def test_search_intent_forces_search_tool(tmp_path):
    db = _db(tmp_path)
    llm = _llm(_search_call(cidade="Curitiba", tipo_imovel="apartamento"), LLMResponse(content="Veja:"))

    await _orchestrator(db, llm).handle_turn(_context("quero um apartamento em Curitiba"))

    first_call = llm.generate.await_args_list[0]
    assert first_call.kwargs["tool_choice"] == {"type": "function", "function": {"name": "busca_imoveis"}}


@pytest.mark.asyncio
async def test_greeting_with_search_history_is_not_forced(tmp_path):
    db = _db(tmp_path)
    llm = _llm(LLMResponse(content="Bom dia!"))
    history = [{"role": "user", "content": "procuro casa"}, {"role": "user", "content": "em Curitiba"}]

    await _orchestrator(db, llm).handle_turn(_context("bom dia", history))

    assert llm.generate.await_args.kwargs["tool_choice"] == "auto"
    system_prompt = llm.generate.await_args.args[0][0]["content"]
    assert "CONTEXTO DA CONVERSA" not in system_prompt


@pytest.mark.asyncio
async def test_search_round_trip_returns_cards(tmp_path):
    db = _db(tmp_path)
    llm = _llm(
        _search_call(cidade="Curitiba", tipo_imovel="apartamento", tipo_transacao="aluguel"),
        LLMResponse(content="Encontrei ótimas opções para você! Veja:"),
    )

    response = await _orchestrator(db, llm).handle_turn(_context("apartamento em Curitiba pra alugar"))

    assert response.text == "Encontrei ótimas opções para você! Veja:"
    assert [card.code for card in response.properties] == ["A1001", "A1002", "A1003"]
    assert response.has_more_properties is True

    second = llm.generate.await_args_list[1]
    messages = second.args[0]
    assert messages[-3]["role"] == "assistant"
    assert messages[-3]["tool_calls"][0]["function"]["name"] == "busca_imoveis"
    assert messages[-2]["role"] == "tool"
    assert messages[-2]["tool_call_id"] == "call_1"
    assert messages[-1]["role"] == "system"
    assert "A1001, A1002, A1003" in messages[-1]["content"]
    assert "tools" not in second.kwargs
    assert second.kwargs["max_tokens"] == 100


@pytest.mark.asyncio
async def test_canned_tool_text_skips_second_completion(tmp_path):
    db = _db(tmp_path, apartments=0)
    llm = _llm(_search_call(cidade="Lages", tipo_imovel="casa"))

    response = await _orchestrator(db, llm).handle_turn(_context("casa em Lages"))

    assert response.text == NO_RESULTS_TEXT
    assert response.properties == []
    assert llm.generate.await_count == 1


@pytest.mark.asyncio
async def test_only_first_tool_call_is_executed(tmp_path):
    db = _db(tmp_path)
    llm = _llm(
        LLMResponse(
            content="",
            tool_calls=[
                LLMToolCall(name="busca_imoveis", arguments={"cidade": "Curitiba"}, call_id="call_1"),
                LLMToolCall(
                    name="agendar_visita",
                    arguments={"imovel_interesse": "A1001", "data_visita": "22/10/2026 às 9h"},
                    call_id="call_2",
                ),
            ],
        ),
        LLMResponse(content="Veja:"),
    )

    await _orchestrator(db, llm).handle_turn(_context("apartamento em Curitiba"))

    assert db.list_appointments("c1") == []
    assert [row["tool_name"] for row in db.list_tool_executions("inst-1:5547999990000")] == ["busca_imoveis"]


@pytest.mark.asyncio
async def test_incomplete_scheduling_asks_model_to_collect_fields(tmp_path):
    db = _db(tmp_path)
    llm = _llm(
        LLMResponse(content="", tool_calls=[LLMToolCall(name="agendar_visita", arguments={"imovel_interesse": "A1001"})]),
        LLMResponse(content="Claro! Qual dia e horário prefere?"),
    )

    response = await _orchestrator(db, llm).handle_turn(_context("quero visitar o A1001"))

    assert response.text == "Claro! Qual dia e horário prefere?"
    assert db.list_appointments("c1") == []
    instruction = llm.generate.await_args_list[1].args[0][-1]["content"]
    assert "data_visita" in instruction


@pytest.mark.asyncio
async def test_missing_ai_configuration_returns_none(tmp_path):
    db = _db(tmp_path, with_config=False)
    llm = _llm()

    assert await _orchestrator(db, llm).handle_turn(_context("oi")) is None
    llm.generate.assert_not_awaited()


@pytest.mark.asyncio
async def test_unknown_instance_returns_none(tmp_path):
    db = _db(tmp_path)
    context = _context("oi")
    context.instance_id = "unknown"

    assert await _orchestrator(db, _llm()).handle_turn(context) is None


@pytest.mark.asyncio
async def test_completion_failure_returns_apology(tmp_path):
    db = _db(tmp_path)
    llm = MagicMock()
    llm.generate = AsyncMock(side_effect=RuntimeError("provider down"))

    response = await _orchestrator(db, llm).handle_turn(_context("oi"))

    assert response.text == APOLOGY_TEXT
    assert response.properties == []


@pytest.mark.asyncio
async def test_delegates_to_first_matching_secondary_agent(tmp_path):
    db = _db(tmp_path)
    db.add_agent(
        AIAgent(
            id="ag2",
            company_id="c1",
            name="Financeiro",
            prompt="Você cuida de financiamentos.",
            agent_type="secondary",
            parent_agent_id="ag1",
            delegation_keywords=["financiamento", "FGTS"],
        )
    )
    db.add_agent(
        AIAgent(
            id="ag3",
            company_id="c1",
            name="Outro",
            agent_type="secondary",
            parent_agent_id="ag1",
            delegation_keywords=["fgts"],
        )
    )
    llm = _llm(LLMResponse(content="Posso simular seu financiamento."))

    response = await _orchestrator(db, llm).handle_turn(_context("posso usar meu fgts?"))

    assert response.active_agent_id == "ag2"
    assert response.active_agent_type == "secondary"
    assert response.delegated is True
    system_prompt = llm.generate.await_args.args[0][0]["content"]
    assert system_prompt.startswith("Você cuida de financiamentos.")


@pytest.mark.asyncio
async def test_delegation_keywords_ignore_accents(tmp_path):
    db = _db(tmp_path)
    db.add_agent(
        AIAgent(
            id="ag2",
            company_id="c1",
            name="Financeiro",
            agent_type="secondary",
            parent_agent_id="ag1",
            delegation_keywords=["simulação"],
        )
    )
    llm = _llm(LLMResponse(content="Vamos simular!"))

    response = await _orchestrator(db, llm).handle_turn(_context("quero uma simulacao"))

    assert response.active_agent_id == "ag2"
    assert response.delegated is True


@pytest.mark.asyncio
async def test_first_message_prompt_greets_by_name(tmp_path):
    db = _db(tmp_path)
    llm = _llm(LLMResponse(content="Oi Ana!"), LLMResponse(content="Tudo bem!"))
    orchestrator = _orchestrator(db, llm)

    await orchestrator.handle_turn(_context("oi"))
    first_prompt = llm.generate.await_args_list[0].args[0][0]["content"]
    assert "PRIMEIRA mensagem" in first_prompt
    assert 'pelo nome "Ana"' in first_prompt
    assert "Segunda-feira, 19/10/2026" in first_prompt

    await orchestrator.handle_turn(_context("tudo bem?", [{"role": "user", "content": "oi"}]))
    second_prompt = llm.generate.await_args_list[1].args[0][0]["content"]
    assert "PRIMEIRA mensagem" not in second_prompt


@pytest.mark.asyncio
async def test_history_is_loaded_when_not_supplied(tmp_path):
    db = _db(tmp_path)
    conversation, _ = db.get_or_create_conversation("i1", "5547999990000")
    db.add_message(conversation["id"], "user", "procuro casa")
    db.add_message(conversation["id"], "assistant", "Em qual cidade?")
    llm = _llm(LLMResponse(content="Certo!"))

    context = _context("oi", history=None)
    context.history = None
    await _orchestrator(db, llm).handle_turn(context)

    messages = llm.generate.await_args.args[0]
    assert [m["content"] for m in messages[1:]] == ["procuro casa", "Em qual cidade?", "oi"]
    assert context.conversation_id == conversation["id"]


@pytest.mark.asyncio
async def test_audio_is_transcribed_before_classification(tmp_path):
    db = _db(tmp_path)
    llm = _llm(_search_call(), LLMResponse(content="Veja:"))
    llm.transcribe = AsyncMock(return_value="quero um apartamento em Curitiba")
    context = _context("", message_type="audio", media=MediaPayload(data_base64="aGVsbG8=", mime_type="audio/ogg"))

    response = await _orchestrator(db, llm).handle_turn(context)

    llm.transcribe.assert_awaited_once_with(b"hello", "audio/ogg")
    assert context.message == "quero um apartamento em Curitiba"
    assert llm.generate.await_args_list[0].kwargs["tool_choice"]["function"]["name"] == "busca_imoveis"
    assert len(response.properties) == 3


@pytest.mark.asyncio
async def test_audio_failure_uses_fallback_text(tmp_path):
    db = _db(tmp_path)
    llm = _llm(LLMResponse(content="Pode escrever, por favor?"))
    llm.transcribe = AsyncMock(side_effect=RuntimeError("whisper down"))
    context = _context("", message_type="audio", media=MediaPayload(data_base64="aGVsbG8=", mime_type="audio/ogg"))

    response = await _orchestrator(db, llm).handle_turn(context)

    assert context.message == AUDIO_FAILURE_TEXT
    assert response.text == "Pode escrever, por favor?"


@pytest.mark.asyncio
async def test_image_is_sent_as_multimodal_content(tmp_path):
    db = _db(tmp_path)
    llm = _llm(LLMResponse(content="Que linda sala!"))
    context = _context(
        "o que acha?",
        message_type="image",
        media=MediaPayload(data_base64="aW1n", mime_type="image/png", caption="minha sala"),
    )

    await _orchestrator(db, llm).handle_turn(context)

    content = llm.generate.await_args.args[0][-1]["content"]
    assert content[0] == {"type": "text", "text": "o que acha?\n\nDescrição da imagem: minha sala"}
    assert content[1]["image_url"]["url"] == "data:image/png;base64,aW1n"
