"""Tests for function parsing and execution in :mod:`atendebot.ai.functions`."""

import json

import pytest

from atendebot import audit as audit_actions
from atendebot.agents.repository import InMemoryAgentRepository
from atendebot.agents.schemas import AgentDocument, AgentPersona
from atendebot.ai.functions import (
    PROCESS_SALE,
    SEARCH_PRODUCT,
    TRANSFER_TO_HUMAN,
    ActionExecutor,
    EndConversation,
    FunctionContext,
    ProcessSale,
    SearchProduct,
    SendDocument,
    UnknownAction,
    available_functions,
    format_brl,
    parse_action,
    tool_specs,
)
from atendebot.audit import InMemoryAuditSink
from atendebot.catalog import InMemoryCatalogRepository, Product
from atendebot.conversations.memory import CustomerMemoryService, InMemoryCustomerMemoryRepository
from atendebot.orders import InMemoryOrderRepository, OrderStatus

from conftest import COMPANY_ID, PHONE

ALLOWED = [SEARCH_PRODUCT, PROCESS_SALE, TRANSFER_TO_HUMAN, "enviarDocumento", "finalizarConversa"]


@pytest.fixture
def executor_parts():
    catalog = InMemoryCatalogRepository()
    orders = InMemoryOrderRepository()
    agents = InMemoryAgentRepository()
    audit_sink = InMemoryAuditSink()
    memory_repo = InMemoryCustomerMemoryRepository()
    executor = ActionExecutor(catalog, orders, CustomerMemoryService(memory_repo), agents, audit_sink)
    return executor, catalog, orders, agents, audit_sink


def _context(agent_id: str = "agent-1", turn_id: str | None = None) -> FunctionContext:
    return FunctionContext(
        company_id=COMPANY_ID,
        conversation_id="conversation-1",
        agent_id=agent_id,
        customer_phone=PHONE,
        turn_id=turn_id,
    )


# ---------------------------------------------------------------------------
# Parsing


def test_parse_search_product():
    action = parse_action(SEARCH_PRODUCT, json.dumps({"termo": " vestido ", "cor": "azul"}), ALLOWED)

    assert action == SearchProduct(term="vestido", color="azul")
    assert action.name == SEARCH_PRODUCT


def test_parse_sale_accepts_brazilian_price_strings():
    action = parse_action(
        PROCESS_SALE,
        json.dumps({"produto": "Camisa", "preco": "R$ 149,90", "quantidade": "2", "tamanho": "M"}),
        ALLOWED,
    )

    assert isinstance(action, ProcessSale)
    assert action.price == pytest.approx(149.9)
    assert action.quantity == 2
    assert action.size == "M"


def test_parse_function_not_offered_is_unknown():
    action = parse_action("registrarInteresse", json.dumps({"produto": "x"}), ALLOWED)

    assert isinstance(action, UnknownAction)
    assert action.name == "registrarInteresse"


@pytest.mark.parametrize("arguments", ["", "not json", "[1, 2]", json.dumps({"cor": "azul"})])
def test_parse_bad_search_arguments(arguments):
    assert isinstance(parse_action(SEARCH_PRODUCT, arguments, ALLOWED), UnknownAction)


def test_parse_end_conversation_without_arguments():
    assert parse_action("finalizarConversa", None, ALLOWED) == EndConversation()


def test_available_functions_follow_persona_flags():
    seller = AgentPersona(company_id=COMPANY_ID, name="Bruno", can_sell=True, transfer_to_human=False)
    helper = AgentPersona(company_id=COMPANY_ID, name="Ana")

    assert PROCESS_SALE in available_functions(seller)
    assert TRANSFER_TO_HUMAN not in available_functions(seller)
    assert PROCESS_SALE not in available_functions(helper)
    assert TRANSFER_TO_HUMAN in available_functions(helper)


def test_tool_specs_skip_unknown_names():
    specs = tool_specs([SEARCH_PRODUCT, "naoExiste"])

    assert [spec["function"]["name"] for spec in specs] == [SEARCH_PRODUCT]
    assert specs[0]["type"] == "function"
    assert specs[0]["function"]["parameters"]["required"] == ["termo"]


def test_format_brl():
    assert format_brl(1234.5) == "R$ 1.234,50"
    assert format_brl(9.9) == "R$ 9,90"


# ---------------------------------------------------------------------------
# Execution


def test_search_product_returns_image_without_exposing_url(executor_parts):
    executor, catalog, _, _, _ = executor_parts
    catalog.add_product(
        Product(
            company_id=COMPANY_ID,
            name="Vestido Floral Verão",
            price=189.9,
            image_url="https://cdn.loja.test/p/1.jpg",
            colors=("azul",),
        )
    )
    catalog.add_product(Product(company_id=COMPANY_ID, name="Camisa Linho", price=149.0))

    result = executor.execute(SearchProduct(term="vestido"), _context())

    assert result.success is True
    assert result.data["found"] is True
    assert result.data["products"][0]["price"] == "R$ 189,90"
    assert result.file_to_send.url == "https://cdn.loja.test/p/1.jpg"
    assert result.file_to_send.file_name == "vestido_floral_verao.jpg"
    assert "cdn.loja.test" not in result.for_model()


def test_search_product_prefers_requested_color(executor_parts):
    executor, catalog, _, _, _ = executor_parts
    catalog.add_product(Product(company_id=COMPANY_ID, name="Vestido Azul", price=100.0, colors=("azul",)))
    catalog.add_product(Product(company_id=COMPANY_ID, name="Vestido Rosa", price=110.0, colors=("rosa",)))

    result = executor.execute(SearchProduct(term="vestido", color="Rosa"), _context())

    assert [p["name"] for p in result.data["products"]] == ["Vestido Rosa"]


def test_search_product_not_found(executor_parts):
    executor, _, _, _, _ = executor_parts

    result = executor.execute(SearchProduct(term="sapato"), _context())

    assert result.success is True
    assert result.data["found"] is False
    assert result.file_to_send is None


def test_process_sale_creates_order_and_audits(executor_parts):
    executor, _, orders, _, audit_sink = executor_parts

    result = executor.execute(ProcessSale(product="Camisa", price=149.0, quantity=2), _context())

    (order,) = orders.all()
    assert result.success is True
    assert order.total == 298.0
    assert order.status == OrderStatus.AWAITING_PAYMENT
    assert order.items[0]["product"] == "Camisa"
    assert result.data["orderCode"] == order.short_code
    assert audit_sink.actions() == [audit_actions.ORDER_CREATED]


def test_process_sale_is_placed_once_per_turn(executor_parts):
    executor, _, orders, _, audit_sink = executor_parts
    sale = ProcessSale(product="Camisa", price=149.0)

    first = executor.execute(sale, _context(turn_id="wamid-1"))
    repeated = executor.execute(sale, _context(turn_id="wamid-1"))
    executor.execute(sale, _context(turn_id="wamid-2"))

    assert repeated.success is True
    assert repeated.data == first.data
    assert repeated.message == first.message
    assert [order.turn_id for order in orders.all()] == ["wamid-1", "wamid-2"]
    assert audit_sink.actions() == [audit_actions.ORDER_CREATED, audit_actions.ORDER_CREATED]


def test_process_sale_without_price_or_catalog_match_fails(executor_parts):
    executor, _, orders, _, _ = executor_parts

    result = executor.execute(ProcessSale(product="Produto misterioso"), _context())

    assert result.success is False
    assert orders.all() == []


def test_send_document(executor_parts):
    executor, _, _, agents, _ = executor_parts
    agents.add_document(
        AgentDocument(
            agent_id="agent-1",
            title="Catálogo Verão",
            file_url="https://cdn.loja.test/catalogo.pdf",
            file_name="catalogo-verao.pdf",
        )
    )

    result = executor.execute(SendDocument(document_type="catalogo"), _context())

    assert result.success is True
    assert result.file_to_send.file_name == "catalogo-verao.pdf"
    assert "cdn.loja.test" not in result.for_model()


def test_send_document_missing(executor_parts):
    executor, _, _, _, _ = executor_parts

    result = executor.execute(SendDocument(document_type="tabela"), _context())

    assert result.success is False
    assert result.file_to_send is None


def test_unknown_action_is_a_noop(executor_parts):
    executor, _, orders, _, audit_sink = executor_parts

    result = executor.execute(UnknownAction(name="apagarTudo"), _context())

    assert result.success is False
    assert orders.all() == []
    assert audit_sink.events == []


def test_handler_errors_become_failed_results(executor_parts, monkeypatch):
    executor, catalog, _, _, _ = executor_parts

    def _boom(*args, **kwargs):
        raise RuntimeError("catalog offline")

    monkeypatch.setattr(catalog, "search_products", _boom)

    result = executor.execute(SearchProduct(term="vestido"), _context())

    assert result.success is False
