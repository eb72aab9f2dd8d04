from datetime import datetime
from zoneinfo import ZoneInfo

from imobot.models import AIAgent, Intent, TurnContext
from imobot.prompts import build_system_prompt, context_hint, date_block, user_block

NOW = datetime(2026, 10, 19, 10, 30, tzinfo=ZoneInfo("America/Sao_Paulo"))


def test_date_block_names_weekday_and_month():
    block = date_block(NOW)
    assert "HOJE É: Segunda-feira, 19/10/2026" in block
    assert "Hora atual: 10:30" in block
    assert "Mês atual: Outubro (10)" in block


def test_user_block_variants():
    assert "PRIMEIRA mensagem" in user_block(None, True)
    assert user_block(None, False) == ""
    returning = user_block("Ana", False)
    assert 'Use o nome "Ana"' in returning
    assert "PRIMEIRA" not in returning


def test_user_block_warns_against_template_placeholder():
    # The model must not echo mustache-style placeholders back to the user.
    for block in (user_block("Ana", True), user_block("Ana", False)):
        assert "NÃO use placeholders como {{contact_name}}." in block
        assert "Ana" in block


def test_context_hint_urges_search_only_for_search_turns():
    searching = context_hint(Intent(is_property_search=True, city="Lages", property_type="casa"))
    chatting = context_hint(Intent(city="Lages", property_type="casa"))

    assert "IMEDIATAMENTE" in searching
    assert '"casa" em "Lages"' in chatting
    assert "IMEDIATAMENTE" not in chatting


def test_context_hint_is_suppressed_for_greetings():
    assert context_hint(Intent(is_greeting=True, city="Lages")) == ""
    assert context_hint(Intent(city="Lages")) == 'CONTEXTO DA CONVERSA: O usuário já informou a cidade "Lages".'
    assert context_hint(Intent()) == ""


def test_system_prompt_sections_in_order():
    agent = AIAgent(
        id="ag1",
        company_id="c1",
        name="Sofia",
        prompt="Você é Sofia.",
        training_content="Atendemos de segunda a sexta.",
    )
    context = TurnContext(phone="5547", message="oi", instance_id="inst-1", history=[], push_name="Ana")

    prompt = build_system_prompt(agent, context, NOW)

    positions = [
        prompt.index("Você é Sofia."),
        prompt.index("=== DATA E HORA ATUAL ==="),
        prompt.index("Nome do usuário: Ana"),
        prompt.index("Atendemos de segunda a sexta."),
        prompt.index("REGRA CRÍTICA SOBRE BUSCA"),
        prompt.index("IMPORTANTE: Siga sempre"),
    ]
    assert positions == sorted(positions)


def test_agent_without_prompt_gets_default_persona():
    agent = AIAgent(id="ag1", company_id="c1", name="Sofia", agent_type="secondary")
    context = TurnContext(phone="5547", message="oi", instance_id="inst-1", history=[{"role": "user", "content": "x"}])

    prompt = build_system_prompt(agent, context, NOW)

    assert prompt.startswith("Você é Sofia, um assistente de IA especializado.")
    assert "Você é um agente especializado." in prompt
