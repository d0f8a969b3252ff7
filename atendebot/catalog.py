"""Product catalog lookups used by the ``buscarProduto`` function."""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, List, Protocol, Tuple
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .models import ProductRecord
from .nlp import normalize_text


@dataclass(frozen=True)
class Product:
    company_id: str
    name: str
    price: float
    description: str | None = None
    image_url: str | None = None
    colors: Tuple[str, ...] = field(default_factory=tuple)
    is_active: bool = True
    id: str = field(default_factory=lambda: str(uuid4()))


class CatalogRepository(Protocol):
    def search_products(self, company_id: str, query: str, limit: int = 5) -> List[Product]: ...


def _score(product: Product, terms: List[str]) -> int:
    haystack = normalize_text(f"{product.name} {product.description or ''}")
    return sum(1 for term in terms if term in haystack)


def rank_products(products: List[Product], query: str, limit: int) -> List[Product]:
    """Products matching any query term, best match first."""

    terms = [term for term in normalize_text(query).split() if len(term) > 1]
    if not terms:
        return []
    scored = [(_score(product, terms), product) for product in products if product.is_active]
    scored = [item for item in scored if item[0] > 0]
    scored.sort(key=lambda item: (-item[0], normalize_text(item[1].name)))
    return [product for _, product in scored[:limit]]


class SqlCatalogRepository:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def search_products(self, company_id: str, query: str, limit: int = 5) -> List[Product]:
        with self._session_factory() as session:
            records = session.scalars(
                select(ProductRecord).where(
                    ProductRecord.company_id == company_id,
                    ProductRecord.is_active.is_(True),
                )
            )
            products = [
                Product(
                    id=record.id,
                    company_id=record.company_id,
                    name=record.name,
                    price=record.price,
                    description=record.description,
                    image_url=record.image_url,
                    colors=tuple(record.colors or ()),
                    is_active=record.is_active,
                )
                for record in records
            ]
        return rank_products(products, query, limit)


class InMemoryCatalogRepository:
    def __init__(self) -> None:
        self._products: Dict[str, List[Product]] = {}
        self._lock = threading.Lock()

    def add_product(self, product: Product) -> Product:
        with self._lock:
            self._products.setdefault(product.company_id, []).append(product)
        return product

    def search_products(self, company_id: str, query: str, limit: int = 5) -> List[Product]:
        return rank_products(list(self._products.get(company_id, [])), query, limit)
