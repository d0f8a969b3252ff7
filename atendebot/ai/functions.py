"""Functions the model may call, parsed into a closed set of actions.

The model names a function and passes JSON arguments. ``parse_action`` turns
that into one of the action dataclasses below; anything unexpected (an unknown
name, a function not offered to this persona) becomes :class:`UnknownAction`,
which executes as a no-op and never shows up in ``functions_called``.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from .. import audit as audit_actions
from ..agents.repository import AgentRepository
from ..agents.schemas import AgentPersona
from ..audit import AuditEvent, AuditSink, audit
from ..catalog import CatalogRepository, Product
from ..conversations.memory import CustomerMemoryService
from ..nlp import normalize_text
from ..orders import Order, OrderRepository

logger = logging.getLogger(__name__)

SEARCH_PRODUCT = "buscarProduto"
TRANSFER_TO_HUMAN = "transferirParaHumano"
REGISTER_INTEREST = "registrarInteresse"
PROCESS_SALE = "processarVenda"
SEND_DOCUMENT = "enviarDocumento"
END_CONVERSATION = "finalizarConversa"


# ---------------------------------------------------------------------------
# Actions


@dataclass(frozen=True)
class SearchProduct:
    term: str
    color: str | None = None
    name: str = field(default=SEARCH_PRODUCT, init=False)


@dataclass(frozen=True)
class ProcessSale:
    product: str
    price: float | None = None
    quantity: int = 1
    size: str | None = None
    color: str | None = None
    name: str = field(default=PROCESS_SALE, init=False)


@dataclass(frozen=True)
class TransferToHuman:
    reason: str | None = None
    summary: str | None = None
    name: str = field(default=TRANSFER_TO_HUMAN, init=False)


@dataclass(frozen=True)
class RegisterInterest:
    product: str
    details: str | None = None
    name: str = field(default=REGISTER_INTEREST, init=False)


@dataclass(frozen=True)
class SendDocument:
    document_type: str
    reason: str | None = None
    name: str = field(default=SEND_DOCUMENT, init=False)


@dataclass(frozen=True)
class EndConversation:
    summary: str | None = None
    customer_name: str | None = None
    name: str = field(default=END_CONVERSATION, init=False)


@dataclass(frozen=True)
class UnknownAction:
    name: str
    raw_arguments: str = ""


Action = Union[
    SearchProduct,
    ProcessSale,
    TransferToHuman,
    RegisterInterest,
    SendDocument,
    EndConversation,
    UnknownAction,
]


def _text(args: Mapping[str, Any], key: str) -> str | None:
    value = args.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _number(args: Mapping[str, Any], key: str) -> float | None:
    value = args.get(key)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.replace("R$", "").replace(",", ".").strip())
        except ValueError:
            return None
    return None


def _build(name: str, args: Mapping[str, Any]) -> Optional[Action]:
    if name == SEARCH_PRODUCT:
        term = _text(args, "termo")
        return SearchProduct(term=term, color=_text(args, "cor")) if term else None
    if name == PROCESS_SALE:
        product = _text(args, "produto")
        if not product:
            return None
        quantity = _number(args, "quantidade")
        return ProcessSale(
            product=product,
            price=_number(args, "preco"),
            quantity=max(1, int(quantity)) if quantity else 1,
            size=_text(args, "tamanho"),
            color=_text(args, "cor"),
        )
    if name == TRANSFER_TO_HUMAN:
        return TransferToHuman(reason=_text(args, "motivo"), summary=_text(args, "resumo"))
    if name == REGISTER_INTEREST:
        product = _text(args, "produto")
        return RegisterInterest(product=product, details=_text(args, "detalhes")) if product else None
    if name == SEND_DOCUMENT:
        return SendDocument(
            document_type=_text(args, "tipoDocumento") or "", reason=_text(args, "motivoEnvio")
        )
    if name == END_CONVERSATION:
        return EndConversation(
            summary=_text(args, "resumoConversa"), customer_name=_text(args, "nomeCliente")
        )
    return None


def parse_action(name: str, arguments: str | None, allowed: Sequence[str]) -> Action:
    """Map one model tool call onto an action; malformed input never raises."""

    raw = arguments or ""
    if name not in allowed:
        return UnknownAction(name=name, raw_arguments=raw)
    try:
        args = json.loads(raw) if raw.strip() else {}
    except ValueError:
        args = {}
    if not isinstance(args, dict):
        args = {}
    action = _build(name, args)
    return action if action is not None else UnknownAction(name=name, raw_arguments=raw)


# ---------------------------------------------------------------------------
# Tool specifications sent to the model

_TOOL_SPECS: Dict[str, Dict[str, Any]] = {
    SEARCH_PRODUCT: {
        "description": (
            "Busca produtos no catálogo da empresa (preço, descrição, cores) e envia a foto "
            "automaticamente. Use sempre que o cliente perguntar por um produto ou preço."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "termo": {"type": "string", "description": "Nome ou tipo do produto"},
                "cor": {"type": "string", "description": "Cor pedida pelo cliente, se houver"},
            },
            "required": ["termo"],
        },
    },
    TRANSFER_TO_HUMAN: {
        "description": (
            "Transfere o atendimento para um humano: pedido explícito do cliente, "
            "reclamação, problema com pedido ou situação que você não resolve."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "motivo": {
                    "type": "string",
                    "enum": ["SOLICITADO_CLIENTE", "RECLAMACAO", "TROCA_DEVOLUCAO", "PROBLEMA_PEDIDO"],
                },
                "resumo": {"type": "string", "description": "O que o cliente precisa"},
            },
            "required": ["motivo", "resumo"],
        },
    },
    REGISTER_INTEREST: {
        "description": "Registra o interesse do cliente em um produto específico.",
        "parameters": {
            "type": "object",
            "properties": {
                "produto": {"type": "string"},
                "detalhes": {"type": "string", "description": "Tamanho, cor ou observações"},
            },
            "required": ["produto"],
        },
    },
    PROCESS_SALE: {
        "description": (
            "Registra o pedido quando o cliente confirma a compra. Consulte o preço com "
            "buscarProduto antes se não souber."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "produto": {"type": "string"},
                "preco": {"type": "number", "description": "Preço unitário em reais"},
                "quantidade": {"type": "number"},
                "tamanho": {"type": "string"},
                "cor": {"type": "string"},
            },
            "required": ["produto"],
        },
    },
    SEND_DOCUMENT: {
        "description": "Envia um documento (catálogo, tabela de preços) como anexo.",
        "parameters": {
            "type": "object",
            "properties": {
                "tipoDocumento": {"type": "string", "description": "Ex.: catalogo, tabela_precos"},
                "motivoEnvio": {"type": "string"},
            },
            "required": ["tipoDocumento", "motivoEnvio"],
        },
    },
    END_CONVERSATION: {
        "description": "Encerra a conversa com uma despedida personalizada.",
        "parameters": {
            "type": "object",
            "properties": {
                "nomeCliente": {"type": "string"},
                "resumoConversa": {"type": "string"},
            },
            "required": ["resumoConversa"],
        },
    },
}


def available_functions(persona: AgentPersona) -> List[str]:
    """Functions offered to ``persona``, gated by its behavioural flags."""

    names = [SEARCH_PRODUCT, REGISTER_INTEREST, SEND_DOCUMENT, END_CONVERSATION]
    if persona.can_sell:
        names.append(PROCESS_SALE)
    if persona.transfer_to_human:
        names.append(TRANSFER_TO_HUMAN)
    return names


def tool_specs(names: Sequence[str]) -> List[Dict[str, Any]]:
    return [
        {"type": "function", "function": {"name": name, **_TOOL_SPECS[name]}}
        for name in names
        if name in _TOOL_SPECS
    ]


# ---------------------------------------------------------------------------
# Execution


@dataclass(frozen=True)
class FileToSend:
    url: str
    file_name: str
    title: str


@dataclass(frozen=True)
class FunctionContext:
    company_id: str
    conversation_id: str
    agent_id: str
    customer_phone: str
    turn_id: str | None = None


@dataclass
class FunctionResult:
    success: bool
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    file_to_send: FileToSend | None = None
    transferred: bool = False

    def for_model(self) -> str:
        """JSON payload for the follow-up call; file URLs are never included."""

        return json.dumps(
            {"success": self.success, "message": self.message, "data": self.data},
            ensure_ascii=False,
            default=str,
        )


UNAVAILABLE = FunctionResult(success=False, message="Função não disponível.")


def format_brl(value: float) -> str:
    formatted = f"{value:,.2f}"
    return "R$ " + formatted.replace(",", "_").replace(".", ",").replace("_", ".")


def _file_name_for(product: Product) -> str:
    stem = re.sub(r"[^a-zA-Z0-9]+", "_", normalize_text(product.name)).strip("_") or "produto"
    return f"{stem}.jpg"


def _order_placed(order: Order) -> FunctionResult:
    quantity = sum(int(item.get("quantity", 1)) for item in order.items)
    product = ", ".join(str(item.get("product", "")) for item in order.items)
    return FunctionResult(
        success=True,
        message=(
            f"Pedido #{order.short_code} registrado: {quantity}x {product} - "
            f"total {format_brl(order.total)}. Aguardando pagamento; peça o comprovante."
        ),
        data={"orderCode": order.short_code, "total": order.total},
    )


class ActionExecutor:
    """Carry out parsed actions against the catalog, orders and customer memory."""

    def __init__(
        self,
        catalog: CatalogRepository,
        orders: OrderRepository,
        memory: CustomerMemoryService,
        agents: AgentRepository,
        audit_sink: AuditSink | None = None,
    ) -> None:
        self._catalog = catalog
        self._orders = orders
        self._memory = memory
        self._agents = agents
        self._audit_sink = audit_sink
        self._handlers: Dict[type, Callable[[Any, FunctionContext], FunctionResult]] = {
            SearchProduct: self._search_product,
            ProcessSale: self._process_sale,
            TransferToHuman: self._transfer,
            RegisterInterest: self._register_interest,
            SendDocument: self._send_document,
            EndConversation: self._end_conversation,
        }

    def execute(self, action: Action, context: FunctionContext) -> FunctionResult:
        handler = self._handlers.get(type(action))
        if handler is None:
            logger.warning("Ignoring unknown function %s", action.name)
            return UNAVAILABLE
        try:
            return handler(action, context)
        except Exception:
            logger.exception("Function %s failed for conversation %s", action.name, context.conversation_id)
            return FunctionResult(success=False, message="Erro ao executar a função.")

    def _search_product(self, action: SearchProduct, context: FunctionContext) -> FunctionResult:
        products = self._catalog.search_products(context.company_id, action.term)
        if action.color:
            wanted = normalize_text(action.color)
            by_color = [p for p in products if any(wanted in normalize_text(c) for c in p.colors)]
            products = by_color or products
        if not products:
            return FunctionResult(
                success=True,
                message=(
                    f"Nenhum produto encontrado para '{action.term}'. Diga ao cliente que vai "
                    "verificar e não invente informações."
                ),
                data={"searchTerm": action.term, "found": False},
            )
        listed = [
            {
                "name": product.name,
                "price": format_brl(product.price),
                "description": product.description,
                "colors": list(product.colors),
            }
            for product in products[:3]
        ]
        best = products[0]
        file_to_send = None
        message = "Produtos encontrados: " + "; ".join(f"{p['name']} - {p['price']}" for p in listed)
        if best.image_url:
            file_to_send = FileToSend(url=best.image_url, file_name=_file_name_for(best), title=best.name)
            message += "\n\n[A imagem do produto está sendo enviada automaticamente - NÃO inclua links na resposta]"
        return FunctionResult(
            success=True,
            message=message,
            data={"searchTerm": action.term, "found": True, "products": listed},
            file_to_send=file_to_send,
        )

    def _process_sale(self, action: ProcessSale, context: FunctionContext) -> FunctionResult:
        price = action.price
        if price is None:
            matches = self._catalog.search_products(context.company_id, action.product, limit=1)
            price = matches[0].price if matches else None
        if price is None:
            return FunctionResult(
                success=False,
                message="Preço não encontrado. Use buscarProduto antes de registrar o pedido.",
            )
        if context.turn_id is not None:
            placed = self._orders.find_by_turn(context.conversation_id, context.turn_id)
            if placed is not None:
                logger.info("Order %s already placed for turn %s", placed.id, context.turn_id)
                return _order_placed(placed)
        item = {
            "product": action.product,
            "quantity": action.quantity,
            "unit_price": price,
            "size": action.size,
            "color": action.color,
        }
        order = self._orders.create(
            Order(
                conversation_id=context.conversation_id,
                company_id=context.company_id,
                items=[item],
                total=round(price * action.quantity, 2),
                turn_id=context.turn_id,
            )
        )
        audit(
            self._audit_sink,
            AuditEvent(
                action=audit_actions.ORDER_CREATED,
                entity="Order",
                entity_id=order.id,
                company_id=context.company_id,
                details={"conversationId": context.conversation_id, "total": order.total},
            ),
        )
        return _order_placed(order)

    def _transfer(self, action: TransferToHuman, context: FunctionContext) -> FunctionResult:
        return FunctionResult(
            success=True,
            message="Transferência registrada. Avise o cliente que um atendente vai continuar o atendimento.",
            data={"reason": action.reason},
            transferred=True,
        )

    def _register_interest(self, action: RegisterInterest, context: FunctionContext) -> FunctionResult:
        label = f"{action.product} ({action.details})" if action.details else action.product
        stored = self._memory.register_interest(context.company_id, context.customer_phone, label)
        if not stored:
            return FunctionResult(success=False, message="Não foi possível registrar o interesse.")
        return FunctionResult(success=True, message=f"Interesse em {label} registrado.")

    def _send_document(self, action: SendDocument, context: FunctionContext) -> FunctionResult:
        document = self._agents.find_document(context.agent_id, action.document_type)
        if document is None:
            return FunctionResult(
                success=False,
                message="Documento não disponível. Diga ao cliente que vai verificar.",
            )
        return FunctionResult(
            success=True,
            message=(
                f'Documento "{document.title}" está sendo enviado como anexo. NÃO inclua links '
                "ou URLs na sua resposta."
            ),
            data={"sendFile": True, "documentTitle": document.title},
            file_to_send=FileToSend(url=document.file_url, file_name=document.file_name, title=document.title),
        )

    def _end_conversation(self, action: EndConversation, context: FunctionContext) -> FunctionResult:
        return FunctionResult(
            success=True,
            message="Despeça-se do cliente de forma calorosa e convide-o a voltar.",
            data={"customerName": action.customer_name},
        )
