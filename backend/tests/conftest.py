"""
Shared fixtures: in-memory SQLite store, fake catalog, fixed clock.

DATABASE_URL is forced to SQLite before anything imports app.db.session so the module-level
engine never needs a PostgreSQL driver.
"""
from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401  (registers tables on Base.metadata)
from app.core.errors import NotFound, Upstream
from app.db.base import Base
from app.models.drop import Drop
from app.services.catalog.types import CatalogCollection, CatalogProduct, ShopKey, ShopSession, to_gid
from app.services.publisher import KeyPublisher

SHOP = "test-shop.myshopify.com"
TOKEN = "shpat_test_token"
EPOCH = datetime(2025, 1, 1, 10, 0, 0, tzinfo=timezone.utc)
COLLECTION = "gid://shopify/Collection/100"
OWNER_ID = "gid://shopify/Shop/1"


def product(n: int, title: str) -> CatalogProduct:
    return CatalogProduct(id=f"gid://shopify/Product/{n}", title=title, image_url=f"https://cdn.test/{n}.png")


P1 = product(1, "A")
P2 = product(2, "B")
P3 = product(3, "C")


class FakeClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, now: datetime = EPOCH) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeCatalog:
    """In-memory CatalogGateway: collections of products, handles, and one shop metafield."""

    def __init__(self) -> None:
        self.collections: dict[str, list[CatalogProduct]] = {}
        self.collection_titles: dict[str, str] = {}
        self.handles: dict[str, str] = {}
        self.valid_tokens = {TOKEN}
        self.key_value: str | None = None
        self.key_id: str | None = None
        self.writes: list[str] = []
        self.fail_writes = False
        self.get_key_calls = 0
        self.verify_calls = 0
        self._lock = threading.Lock()

    def add_collection(self, gid: str, title: str, products: list[CatalogProduct]) -> None:
        self.collections[gid] = list(products)
        self.collection_titles[gid] = title
        for p in products:
            self.handles.setdefault(p.id, f"handle-{p.title.lower()}")

    def verify_session(self, session: ShopSession) -> bool:
        self.verify_calls += 1
        return session.access_token in self.valid_tokens

    def list_collections(self, session: ShopSession) -> list[CatalogCollection]:
        rows = [CatalogCollection(id=gid, title=t) for gid, t in self.collection_titles.items()]
        return sorted(rows, key=lambda c: c.title.lower())

    def list_active_products(self, session: ShopSession, collection_id: str, limit: int = 250) -> list[CatalogProduct]:
        gid = to_gid("Collection", collection_id)
        if gid not in self.collections:
            raise NotFound(f"Collection with ID {gid} not found or access denied.")
        return self.collections[gid][:limit]

    def resolve_handle(self, session: ShopSession, product_id: str) -> str | None:
        return self.handles.get(product_id)

    def get_shop_key(self, session: ShopSession, namespace: str, key: str) -> ShopKey:
        self.get_key_calls += 1
        return ShopKey(owner_id=OWNER_ID, instance_id=self.key_id, value=self.key_value)

    def set_shop_key(self, session: ShopSession, owner_id: str, namespace: str, key: str, value: str) -> str | None:
        if self.fail_writes:
            raise Upstream("metafieldsSet userErrors: [{'message': 'boom'}]")
        with self._lock:
            self.writes.append(value)
            self.key_value = value
            self.key_id = self.key_id or "gid://shopify/Metafield/1"
        return self.key_id


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def catalog():
    cat = FakeCatalog()
    cat.add_collection(COLLECTION, "Spring Drops", [P1, P2, P3])
    return cat


@pytest.fixture
def shop_session():
    return ShopSession(SHOP, TOKEN)


@pytest.fixture
def publisher(catalog, session_factory):
    return KeyPublisher(SHOP, catalog, session_factory)


def drops_by_title(session_factory, shop: str = SHOP) -> dict[str, Drop]:
    """Fresh read of every drop of the shop keyed by title."""
    s = session_factory()
    try:
        return {d.title: d for d in s.query(Drop).filter(Drop.shop == shop).all()}
    finally:
        s.close()
