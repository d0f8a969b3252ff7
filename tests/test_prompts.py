"""Tests for :class:`atendebot.agents.prompts.SystemPromptBuilder`."""

from datetime import datetime, timezone

from atendebot.agents.prompts import SystemPromptBuilder
from atendebot.agents.schemas import AgentPersona

from conftest import COMPANY_ID

# 2026-03-16 is a Monday; 13:30 UTC is 10:30 in São Paulo.
NOW = datetime(2026, 3, 16, 13, 30, tzinfo=timezone.utc)


def _persona(**kwargs):
    values = {"company_id": COMPANY_ID, "name": "Ana", "personality": "Simpática e objetiva.", "tone": "amigável"}
    values.update(kwargs)
    return AgentPersona(**values)


def test_identity_time_and_personality(company):
    prompt = SystemPromptBuilder().build(company, _persona(), now=NOW)

    assert 'Você é Ana, atendente da empresa "Loja Demo".' in prompt
    assert "Sobre a empresa: Roupas femininas" in prompt
    assert "DATA E HORA ATUAL: segunda-feira, 16/03/2026 10:30" in prompt
    assert "Segmento: moda feminina" in prompt
    assert "=== SUA PERSONALIDADE ===\nSimpática e objetiva." in prompt
    assert "Responda sempre com um tom amigável." in prompt
    assert "ENCERRAMENTO" not in prompt


def test_behaviour_flags_shape_the_rules(company):
    builder = SystemPromptBuilder()

    seller = builder.build(
        company,
        _persona(can_sell=True, can_negotiate=True),
        available_functions=["buscarProduto", "processarVenda", "transferirParaHumano"],
        now=NOW,
    )
    helper = builder.build(company, _persona(transfer_to_human=False), available_functions=["buscarProduto"], now=NOW)

    assert "use processarVenda" in seller
    assert "Você pode negociar" in seller
    assert "chame a função transferirParaHumano" in seller
    assert "Você não fecha vendas" in helper
    assert "Não ofereça descontos" in helper
    assert "transferirParaHumano" not in helper


def test_customer_memory_language_and_context(company):
    prompt = SystemPromptBuilder().build(
        company,
        _persona(),
        context_block="\n\n=== RESUMO DA CONVERSA ANTERIOR ===\nQuer um vestido.",
        memory_block="Conversas anteriores: 2",
        customer_name="Maria",
        language="es",
        now=NOW,
    )

    assert "O nome deste cliente é Maria." in prompt
    assert "=== HISTÓRICO DESTE CLIENTE ===\nConversas anteriores: 2" in prompt
    assert "O cliente escreveu em 'es'." in prompt
    assert prompt.endswith("=== RESUMO DA CONVERSA ANTERIOR ===\nQuer um vestido.")


def test_knowledge_block_follows_the_rules(company):
    builder = SystemPromptBuilder()

    prompt = builder.build(company, _persona(), knowledge_block="Entrega: 3 dias úteis.", now=NOW)

    assert "=== BASE DE CONHECIMENTO ===\nEntrega: 3 dias úteis." in prompt
    assert prompt.index("=== REGRAS ===") < prompt.index("=== BASE DE CONHECIMENTO ===")
    assert "BASE DE CONHECIMENTO" not in builder.build(company, _persona(), now=NOW)


def test_generic_customer_name_and_portuguese_are_omitted(company):
    prompt = SystemPromptBuilder().build(company, _persona(), customer_name="Cliente", language="pt", now=NOW)

    assert "CLIENTE ATUAL" not in prompt
    assert "escreveu em" not in prompt


def test_farewell_adds_closing_section(company):
    prompt = SystemPromptBuilder().build(company, _persona(), farewell_type="THANKING", now=NOW)

    assert "=== ENCERRAMENTO ===\nO cliente está agradecendo." in prompt


def test_other_timezone():
    builder = SystemPromptBuilder(timezone="UTC")

    assert builder._now_label(NOW) == "segunda-feira, 16/03/2026 13:30"
