"""System prompt assembly for customer-facing AI personas."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime
from zoneinfo import ZoneInfo

from ..companies import CompanyContext
from .schemas import AgentPersona

_WEEKDAYS = (
    "segunda-feira",
    "terça-feira",
    "quarta-feira",
    "quinta-feira",
    "sexta-feira",
    "sábado",
    "domingo",
)

_DEFAULT_TONE = "simpático e profissional"
_DEFAULT_DESCRIPTION = "Empresa com atendimento via WhatsApp."


class SystemPromptBuilder:
    """Render the system prompt for one AI turn.

    The prompt carries company identity, persona personality and tone, the
    behavioural flags of the persona, the agent's training knowledge and the
    optional long-history summary and customer memory blocks. When the customer
    is saying goodbye a closing instruction replaces the usual sales nudges.
    """

    _CLOSING_TONES: Mapping[str, str] = {
        "THANKING": "O cliente está agradecendo. Agradeça de volta de forma calorosa e encerre.",
        "GOODBYE": "O cliente está se despedindo. Despeça-se de forma breve e simpática.",
        "CONFIRMATION": "O cliente indicou que não precisa de mais nada. Confirme e encerre cordialmente.",
        "BRIEF": "O cliente respondeu de forma breve para encerrar. Responda curto e deixe a porta aberta.",
    }

    def __init__(self, timezone: str = "America/Sao_Paulo") -> None:
        self._timezone = ZoneInfo(timezone)

    def _now_label(self, now: datetime | None) -> str:
        current = (now or datetime.now(self._timezone)).astimezone(self._timezone)
        return f"{_WEEKDAYS[current.weekday()]}, {current:%d/%m/%Y %H:%M}"

    def build(
        self,
        company: CompanyContext,
        persona: AgentPersona,
        *,
        context_block: str = "",
        memory_block: str = "",
        knowledge_block: str = "",
        customer_name: str | None = None,
        farewell_type: str | None = None,
        language: str | None = None,
        available_functions: Sequence[str] = (),
        now: datetime | None = None,
    ) -> str:
        description = company.description or _DEFAULT_DESCRIPTION
        tone = persona.tone or _DEFAULT_TONE
        sections = [
            f'Você é {persona.name}, atendente da empresa "{company.name}".\n'
            f"Sobre a empresa: {description}",
            f"DATA E HORA ATUAL: {self._now_label(now)}",
        ]
        if company.niche:
            sections.append(f"Segmento: {company.niche}")
        if persona.personality:
            sections.append(f"=== SUA PERSONALIDADE ===\n{persona.personality}")
        sections.append(f"=== SEU TOM DE VOZ ===\nResponda sempre com um tom {tone}.")

        rules = [
            "Nunca diga que é uma IA, bot ou sistema.",
            "Nunca invente preços, prazos ou políticas: consulte as ferramentas disponíveis.",
            "Se não souber algo, diga que vai verificar e retorna.",
        ]
        if persona.can_sell:
            rules.append("Você pode fechar vendas: confirme itens e use processarVenda para gerar o pedido.")
        else:
            rules.append("Você não fecha vendas; encaminhe pedidos de compra para um atendente.")
        if persona.can_negotiate:
            rules.append("Você pode negociar condições dentro do razoável.")
        else:
            rules.append("Não ofereça descontos nem negocie preços.")
        if persona.transfer_to_human and "transferirParaHumano" in available_functions:
            rules.append(
                "Para transferir o cliente para um atendente humano, chame a função "
                "transferirParaHumano. Nunca diga que transferiu sem chamar a função."
            )
        sections.append("=== REGRAS ===\n" + "\n".join(f"- {rule}" for rule in rules))
        if knowledge_block:
            sections.append(
                f"=== BASE DE CONHECIMENTO ===\n{knowledge_block}\n"
                "Responda com base nessas informações. Se a resposta não estiver aqui, não invente."
            )

        if available_functions:
            sections.append("Ferramentas disponíveis: " + ", ".join(available_functions))
        if language and language != "pt":
            sections.append(f"O cliente escreveu em '{language}'. Responda no mesmo idioma.")
        if customer_name and customer_name != "Cliente":
            sections.append(
                f"=== CLIENTE ATUAL ===\nO nome deste cliente é {customer_name}. "
                "Use o nome quando for natural."
            )
        if memory_block:
            sections.append(
                f"=== HISTÓRICO DESTE CLIENTE ===\n{memory_block}\n"
                "Use essas informações para personalizar o atendimento."
            )
        if farewell_type and farewell_type in self._CLOSING_TONES:
            sections.append(f"=== ENCERRAMENTO ===\n{self._CLOSING_TONES[farewell_type]}")

        prompt = "\n\n".join(sections)
        if context_block:
            prompt += context_block
        return prompt
