# tests/conftest.py
"""
Pytest configuration and shared fixtures.

Every test gets a fresh in-memory SQLite database with the standard rank
ladder loaded; users, packages and requests are built with the factory
fixtures below.

Run:
    pytest tests/ -v
"""
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import Config
from core.db import enable_sqlite_savepoints
from models import Base, User, Rank, Package, PackageRequest
from models.package_request import STATUS_PENDING
from models.listeners import register_all_listeners
from referral_engine.config.ranks import load_rank_ladder
from referral_engine.events.event_bus import eventBus

# =============================================================================
# CONSTANTS
# =============================================================================

RANKS = [
    ("Consultant", 0),
    ("Manager", 1000),
    ("Sapphire Manager", 2000),
    ("Diamond", 8000),
    ("Sapphire Diamond", 24000),
]

DEFAULT_PACKAGE = {
    "package_name": "Gold",
    "package_amount": Decimal("5000"),
    "package_direct_commission": Decimal("500"),
    "package_indirect_commission": Decimal("200"),
    "package_points": 50,
}


# =============================================================================
# SESSION-WIDE SETUP
# =============================================================================

@pytest.fixture(scope="session", autouse=True)
def setup_listeners():
    """Register listeners once at test session start."""
    register_all_listeners()


@pytest.fixture(autouse=True)
def clean_state():
    """Fresh config and event bus for every test."""
    Config.reset()
    eventBus.clear()
    yield
    Config.reset()
    eventBus.clear()


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture
def engine():
    """In-memory database shared by every connection of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    """Create database session for each test."""
    Session = sessionmaker(bind=engine)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def ranks(session):
    """Standard rank ladder rows, keyed by title."""
    rows = {}
    for title, points in RANKS:
        rank = Rank(title=title, required_points=points)
        session.add(rank)
        rows[title] = rank
    session.commit()
    return rows


@pytest.fixture
def ladder(session, ranks):
    return load_rank_ladder(session)


# =============================================================================
# FACTORY FIXTURES
# =============================================================================

@pytest.fixture
def make_user(session, ranks):
    """
    Create a user.

    make_user("bob", referredBy="alice", rank="Manager")
    Rank defaults to the one matching `points`.
    """

    def _make(username, referredBy=None, rank=None, points=0, balance="0", **fields):
        if rank is None:
            rank = next(title for title, threshold in reversed(RANKS) if threshold <= points)
        user = User(
            username=username,
            referredBy=referredBy,
            points=points,
            balance=Decimal(balance),
            totalEarnings=Decimal(fields.pop("totalEarnings", balance)),
            rankID=ranks[rank].rankID if rank else None,
            **fields
        )
        session.add(user)
        session.commit()
        return user

    return _make


@pytest.fixture
def make_package(session):
    def _make(**overrides):
        package = Package(**dict(DEFAULT_PACKAGE, **overrides))
        session.add(package)
        session.commit()
        return package

    return _make


@pytest.fixture
def package(make_package):
    """direct=500, indirect=200, points=50."""
    return make_package()


@pytest.fixture
def make_request(session, package):
    def _make(user, pkg=None, status=STATUS_PENDING, userID=None):
        request = PackageRequest(
            userID=userID if userID is not None else user.userID,
            packageID=(pkg or package).packageID,
            status=status,
            transactionId="TX-TEST",
        )
        session.add(request)
        session.commit()
        return request

    return _make


@pytest.fixture
def captured_events():
    """Subscribe a recorder to the given events; returns the shared list."""
    received = []

    def _subscribe(*events):
        for event in events:
            eventBus.subscribe(event, received.append)
        return received

    return _subscribe
