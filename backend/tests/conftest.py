"""Pytest configuration and fixtures."""

import os

# Point the application engine at an in-memory database before it is created
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from decimal import Decimal
from typing import Generator

from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from stocksync.db.base import Base
from stocksync.db.session import get_db
from stocksync.main import app
# Import all models to ensure they're registered with Base.metadata
from stocksync.models import *
from stocksync.models.inventory import InventoryItem
from stocksync.models.recipe import Recipe, RecipeIngredient
from stocksync.models.store import Product, Store

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Create a test database session."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """Create a test client with database override."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    # Disable rate limiters during tests to avoid flaky failures
    from stocksync.core.rate_limit import limiter as global_limiter
    from stocksync.core.rate_limit import terminal_limiter
    global_limiter.enabled = False
    terminal_limiter.enabled = False
    # Don't raise server exceptions so we can test error status codes
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    global_limiter.enabled = True
    terminal_limiter.enabled = True
    app.dependency_overrides.clear()


@pytest.fixture
def store(db_session: Session) -> Store:
    """Create the store most tests sell from."""
    store = Store(name="Downtown Kiosk", code="DT01", active=True)
    db_session.add(store)
    db_session.commit()
    db_session.refresh(store)
    return store


@pytest.fixture
def other_store(db_session: Session) -> Store:
    """A second store, for cross-store mapping cases."""
    store = Store(name="Mall Kiosk", code="ML01", active=True)
    db_session.add(store)
    db_session.commit()
    db_session.refresh(store)
    return store


@pytest.fixture
def croffle_setup(db_session: Session, store: Store):
    """Create a store with stock and a 'Classic Croffle' recipe.

    Classic Croffle = 1 croissant + 1 serving whipped cream + 15 ml chocolate syrup
    """
    croissant = InventoryItem(
        store_id=store.id, name="Regular Croissant", unit="pieces",
        quantity=Decimal("10"), minimum_threshold=Decimal("2"),
    )
    cream = InventoryItem(
        store_id=store.id, name="Whipped Cream", unit="serving",
        quantity=Decimal("10"), minimum_threshold=Decimal("2"),
    )
    syrup = InventoryItem(
        store_id=store.id, name="Chocolate Syrup", unit="ml",
        quantity=Decimal("500"), minimum_threshold=Decimal("100"),
    )
    db_session.add_all([croissant, cream, syrup])

    product = Product(store_id=store.id, name="Classic Croffle", active=True)
    db_session.add(product)
    db_session.flush()

    recipe = Recipe(store_id=store.id, product_id=product.id, name="Classic Croffle", active=True)
    recipe.ingredients = [
        RecipeIngredient(
            ingredient_name="Croissant", required_quantity=Decimal("1"),
            unit="pieces", inventory_item_id=croissant.id,
        ),
        RecipeIngredient(
            ingredient_name="Whipped Cream", required_quantity=Decimal("1"),
            unit="serving", inventory_item_id=cream.id,
        ),
        RecipeIngredient(
            ingredient_name="Chocolate Syrup", required_quantity=Decimal("15"),
            unit="ml", inventory_item_id=syrup.id,
        ),
    ]
    db_session.add(recipe)
    db_session.commit()

    return {
        "store": store,
        "croissant": croissant,
        "cream": cream,
        "syrup": syrup,
        "product": product,
        "recipe": recipe,
        "db": db_session,
    }
