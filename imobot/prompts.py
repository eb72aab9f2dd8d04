"""System prompt assembly for the sales agent."""

from __future__ import annotations

from datetime import datetime

from imobot.models import AIAgent, Intent, TurnContext

WEEKDAYS = ["Segunda-feira", "Terça-feira", "Quarta-feira", "Quinta-feira", "Sexta-feira", "Sábado", "Domingo"]
MONTHS = [
    "Janeiro",
    "Fevereiro",
    "Março",
    "Abril",
    "Maio",
    "Junho",
    "Julho",
    "Agosto",
    "Setembro",
    "Outubro",
    "Novembro",
    "Dezembro",
]

APOLOGY_TEXT = "Desculpe, ocorreu um erro ao processar sua mensagem. Tente novamente em alguns instantes."
AUDIO_FAILURE_TEXT = "Desculpe, não consegui processar o áudio enviado."
IMAGE_CAPTION_PREFIX = "Descrição da imagem:"
VISIT_INVITATION_TEXT = (
    "Gostou de algum desses imóveis? 🏡\n\n"
    "Me diga o código (ex: A1001) que eu agendo uma visita sem compromisso para você!"
)
SHOW_MORE_HINT = "Quer ver mais opções? É só digitar *mais*."
SEARCH_FOLLOWUP_INSTRUCTION = (
    "INSTRUÇÃO: Responda com uma única frase curta de introdução. "
    "Não repita os dados retornados pela função."
)

TOOL_RULES = """⚠️ REGRA CRÍTICA SOBRE BUSCA DE IMÓVEIS ⚠️

🏠 QUANDO USAR A FUNÇÃO busca_imoveis:
Você DEVE chamar a função busca_imoveis sempre que o usuário:
- Mencionar tipos de imóvel: "apartamento", "casa", "sala", "terreno", "sobrado", "chácara", "ap", "apto"
- Perguntar sobre imóveis disponíveis
- Mencionar cidades ou localizações para buscar imóveis
- Demonstrar interesse em alugar ou comprar
Você NÃO tem acesso aos imóveis sem usar a função busca_imoveis.

🔍 PARÂMETROS:
- Passe todos os parâmetros que conseguir identificar na mensagem atual e no histórico
- Tipo de imóvel mencionado em qualquer mensagem ⇒ passe tipo_imovel
- Cidade mencionada ⇒ passe cidade
- "alugar", "locação", "venda", "comprar" ⇒ passe tipo_transacao

📣 DEPOIS DA BUSCA:
- Responda apenas uma introdução curta, como "Encontrei 5 apartamentos! Vou te mostrar:"
- Não liste imóveis, endereços, quartos, preços ou links de imagens
- O sistema envia cada imóvel com suas fotos automaticamente

🔄 MAIS IMÓVEIS:
Quando o usuário pedir "mais", "próximos" ou "outros", chame busca_imoveis novamente com os mesmos
parâmetros. O sistema mostra os próximos 3 imóveis.

Se o usuário mencionou qualquer tipo de imóvel ou cidade, chame busca_imoveis imediatamente, sem fazer
perguntas adicionais.

📅 REGRAS DE AGENDAMENTO DE VISITAS:
1. Após mostrar os imóveis, pergunte qual imóvel o cliente gostou mais
2. Com o código do imóvel, pergunte o nome completo
3. Com o nome, pergunte o telefone com DDD
4. Com o telefone, ofereça 3 opções de horário
5. Somente com os 4 dados (código, nome, telefone e horário escolhido) chame agendar_visita

OFERTA DE HORÁRIOS:
- Use dias úteis nos próximos 7 dias, nunca a data de hoje
- Horários comerciais variados: 9h, 10h, 14h, 15h, 16h
- Formato obrigatório com dia, mês e ano: "Quinta dia 02/01/2026 às 9h"
- Passe a data completa com ano em data_visita, por exemplo "Sexta dia 02/01/2026 às 16h"
- Pergunte nome e telefone ao cliente, não use os dados do WhatsApp

Responda sempre em português brasileiro, de forma natural."""


def build_system_prompt(agent: AIAgent, context: TurnContext, now: datetime) -> str:
    """Assemble the system message for one turn."""

    prompt = agent.prompt or f"Você é {agent.name}, um assistente de IA especializado."
    sections = [prompt, date_block(now)]
    name_block = user_block(context.push_name, context.is_first_message)
    if name_block:
        sections.append(name_block)
    if agent.training_content and agent.training_content.strip():
        sections.append(
            f"=== CONHECIMENTO BASE ===\n{agent.training_content.strip()}\n=== FIM CONHECIMENTO BASE ===\n"
            "Use as informações do CONHECIMENTO BASE acima para responder de forma precisa."
        )
    if agent.agent_type == "secondary":
        sections.append("Você é um agente especializado. Responda com base em sua especialização.")
    sections.append(TOOL_RULES)
    sections.append(
        "IMPORTANTE: Siga sempre o prompt e a personalidade definidos no início desta mensagem."
    )
    hint = context_hint(context.intent)
    if hint:
        sections.append(hint)
    return "\n\n".join(sections)


def date_block(now: datetime) -> str:
    formatted = f"{WEEKDAYS[now.weekday()]}, {now:%d/%m/%Y}"
    return (
        "=== DATA E HORA ATUAL ===\n"
        f"HOJE É: {formatted}\n"
        f"Hora atual: {now:%H:%M}\n"
        f"Ano atual: {now.year}\n"
        f"Mês atual: {MONTHS[now.month - 1]} ({now.month})\n"
        "IMPORTANTE: Use esta data como referência para calcular datas FUTURAS de agendamentos!\n"
        "=== FIM DATA ATUAL ==="
    )


def user_block(push_name: str | None, is_first_message: bool) -> str:
    if not push_name:
        if is_first_message:
            return (
                "IMPORTANTE: Esta é a PRIMEIRA mensagem do usuário. Cumprimente-o de forma calorosa e "
                "amigável e mostre que está à disposição para ajudar."
            )
        return ""
    block = f"=== INFORMAÇÃO DO USUÁRIO ===\nNome do usuário: {push_name}\n=== FIM INFORMAÇÃO DO USUÁRIO ===\n"
    if is_first_message:
        return block + (
            f'IMPORTANTE: Esta é a PRIMEIRA mensagem do usuário. Cumprimente-o diretamente pelo nome "{push_name}" '
            "de forma calorosa. Use o nome real, NÃO use placeholders como {{contact_name}}."
        )
    return block + (
        f'Use o nome "{push_name}" de forma natural ao falar com o usuário. '
        "NÃO use placeholders como {{contact_name}}."
    )


def context_hint(intent: Intent) -> str:
    """Plain-language summary of search parameters already known for this conversation."""

    if intent.is_greeting and not intent.is_property_search and not intent.is_show_more:
        return ""
    property_type, city = intent.property_type, intent.city
    if property_type and city:
        hint = f'CONTEXTO DA CONVERSA: O usuário já informou que procura "{property_type}" em "{city}".'
        if intent.is_property_search:
            hint += " Use a função busca_imoveis com esses parâmetros IMEDIATAMENTE, sem fazer mais perguntas."
        return hint
    if city:
        return f'CONTEXTO DA CONVERSA: O usuário já informou a cidade "{city}".'
    if property_type:
        return f'CONTEXTO DA CONVERSA: O usuário já informou que procura "{property_type}".'
    return ""
