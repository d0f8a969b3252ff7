"""Orders created by the AI sales flow and their payment-proof handling."""
from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from .companies import as_utc
from .models import OrderRecord


class OrderStatus(str, Enum):
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PROOF_SENT = "PROOF_SENT"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class Order:
    conversation_id: str
    company_id: str
    items: List[Dict[str, Any]] = field(default_factory=list)
    total: float = 0.0
    status: OrderStatus = OrderStatus.AWAITING_PAYMENT
    payment_proof_url: str | None = None
    turn_id: str | None = None
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def short_code(self) -> str:
        return self.id.replace("-", "")[-6:].upper()


class OrderRepository(Protocol):
    def create(self, order: Order) -> Order: ...

    def find_pending(self, conversation_id: str) -> Optional[Order]: ...

    def find_by_turn(self, conversation_id: str, turn_id: str) -> Optional[Order]: ...

    def attach_payment_proof(self, order_id: str, proof_url: str) -> Optional[Order]: ...


def _order_from_record(record: OrderRecord) -> Order:
    return Order(
        id=record.id,
        conversation_id=record.conversation_id,
        company_id=record.company_id,
        items=list(record.items or []),
        total=record.total,
        status=OrderStatus(record.status),
        payment_proof_url=record.payment_proof_url,
        turn_id=record.turn_id,
        created_at=as_utc(record.created_at),
    )


class SqlOrderRepository:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def create(self, order: Order) -> Order:
        with self._session_factory.begin() as session:
            session.add(
                OrderRecord(
                    id=order.id,
                    conversation_id=order.conversation_id,
                    company_id=order.company_id,
                    items=list(order.items),
                    total=order.total,
                    status=order.status.value,
                    payment_proof_url=order.payment_proof_url,
                    turn_id=order.turn_id,
                    created_at=order.created_at,
                )
            )
        return order

    def find_pending(self, conversation_id: str) -> Optional[Order]:
        with self._session_factory() as session:
            record = session.scalar(
                select(OrderRecord)
                .where(
                    OrderRecord.conversation_id == conversation_id,
                    OrderRecord.status == OrderStatus.AWAITING_PAYMENT.value,
                )
                .order_by(OrderRecord.created_at.desc())
                .limit(1)
            )
            return _order_from_record(record) if record else None

    def find_by_turn(self, conversation_id: str, turn_id: str) -> Optional[Order]:
        with self._session_factory() as session:
            record = session.scalar(
                select(OrderRecord).where(
                    OrderRecord.conversation_id == conversation_id,
                    OrderRecord.turn_id == turn_id,
                )
            )
            return _order_from_record(record) if record else None

    def attach_payment_proof(self, order_id: str, proof_url: str) -> Optional[Order]:
        """Move an AWAITING_PAYMENT order to PROOF_SENT; ``None`` if it already moved."""

        with self._session_factory.begin() as session:
            result = session.execute(
                update(OrderRecord)
                .where(
                    OrderRecord.id == order_id,
                    OrderRecord.status == OrderStatus.AWAITING_PAYMENT.value,
                )
                .values(status=OrderStatus.PROOF_SENT.value, payment_proof_url=proof_url)
            )
            if result.rowcount != 1:
                return None
        with self._session_factory() as session:
            record = session.get(OrderRecord, order_id)
            return _order_from_record(record) if record else None


class InMemoryOrderRepository:
    def __init__(self) -> None:
        self._orders: Dict[str, Order] = {}
        self._lock = threading.Lock()

    def create(self, order: Order) -> Order:
        with self._lock:
            self._orders[order.id] = order
        return order

    def find_pending(self, conversation_id: str) -> Optional[Order]:
        pending = [
            order
            for order in self._orders.values()
            if order.conversation_id == conversation_id
            and order.status == OrderStatus.AWAITING_PAYMENT
        ]
        pending.sort(key=lambda order: order.created_at, reverse=True)
        return pending[0] if pending else None

    def find_by_turn(self, conversation_id: str, turn_id: str) -> Optional[Order]:
        with self._lock:
            for order in self._orders.values():
                if order.conversation_id == conversation_id and order.turn_id == turn_id:
                    return order
        return None

    def attach_payment_proof(self, order_id: str, proof_url: str) -> Optional[Order]:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.status != OrderStatus.AWAITING_PAYMENT:
                return None
            updated = replace(order, status=OrderStatus.PROOF_SENT, payment_proof_url=proof_url)
            self._orders[order_id] = updated
            return updated

    def all(self) -> List[Order]:
        return list(self._orders.values())


def payment_proof_message(order: Order) -> str:
    return (
        "📸 *Comprovante recebido!*\n\n"
        f"Pedido *#{order.short_code}*\n\n"
        "Estamos verificando o pagamento e em breve confirmaremos seu pedido! ✅"
    )
