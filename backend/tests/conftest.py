"""
Pytest configuration and fixtures for backend tests.
"""

import itertools

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from allergen_sync.domain.vocabulary import AllergenVocabulary, CustomAllergenSlot
from allergen_sync.models import Base
from allergen_sync.repositories.sql_store import SqlDeclarationStore
from tests.helpers import InMemoryHost, master_ingredient


# ID counter for values that only need to be unique within a test run
_id_counter = itertools.count(1000)


def next_id() -> str:
    """Get next unique recipe/line id."""
    return f"id-{next(_id_counter)}"


# SQLite in-memory database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db_session():
    """
    Create a fresh database session for each test.
    Uses SQLite in-memory for isolation.
    """
    Base.metadata.create_all(bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def store(db_session):
    """SQL declaration store with outbox events enabled."""
    return SqlDeclarationStore(db_session, publish_events=True)


@pytest.fixture
def vocabulary():
    """Vocabulary with one active and one inactive custom kind."""
    return AllergenVocabulary([
        CustomAllergenSlot(slot=1, name="Lupin"),
        CustomAllergenSlot(slot=2, name="Quinoa", active=False),
    ])


@pytest.fixture
def catalog():
    """Master-ingredient catalog used across the engine tests."""
    return {
        "mi-peanut-butter": master_ingredient("Peanut butter", contains=["peanut"], may_contain=["treenut"]),
        "mi-tahini": master_ingredient("Tahini", may_contain=["sesame"]),
        "mi-milk": master_ingredient("Whole milk", contains=["milk"]),
        "mi-chocolate": master_ingredient("Dark chocolate", may_contain=["milk", "soy"]),
        "mi-flour": master_ingredient("Wheat flour", contains=["wheat", "gluten"]),
        "mi-salt": master_ingredient("Salt"),
    }


@pytest.fixture
def host(catalog):
    """In-memory recipe store seeded with the shared catalog."""
    return InMemoryHost(master_ingredients=catalog)
