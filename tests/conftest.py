"""Pytest configuration and fixtures."""
from __future__ import annotations

import os
import sys
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Deque, Generator, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

# Set test environment
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("RETRY_MIN_WAIT_SECONDS", "0")
os.environ.setdefault("RETRY_MAX_WAIT_SECONDS", "0")
os.environ.setdefault("REALTIME_RECONNECT_BASE_SECONDS", "0")
os.environ.setdefault("REALTIME_RECONNECT_MAX_SECONDS", "0")

from attribution.registry import AttributionModelRegistry
from core.db import Base
from core import models  # noqa: F401
from domain.conversion import ConversionService, EngineContext
from services.cache import ResultCache
from services.store import SqlConversionStore

# Fixed evaluation time so day-based rules are reproducible
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class SleepRecorder:
    """Stands in for time.sleep in retry loops and records requested waits."""

    def __init__(self) -> None:
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeTransport:
    """
    In-memory realtime transport.

    ``fail_connects`` makes the next N connect calls raise ConnectionError.
    Incoming messages are queued with ``push``.
    """

    def __init__(self, fail_connects: int = 0):
        self.fail_connects = fail_connects
        self.connect_calls = 0
        self.sent: List[str] = []
        self.inbox: Deque[str] = deque()
        self._open = False
        self.fail_sends = 0

    def connect(self, url: str) -> None:
        self.connect_calls += 1
        if self.fail_connects > 0:
            self.fail_connects -= 1
            raise ConnectionError("connection refused")
        self._open = True

    def send(self, text: str) -> None:
        if not self._open:
            raise ConnectionError("transport closed")
        if self.fail_sends > 0:
            self.fail_sends -= 1
            raise ConnectionError("broken pipe")
        self.sent.append(text)

    def receive(self, timeout: float) -> Optional[str]:
        if self.inbox:
            return self.inbox.popleft()
        return None

    def close(self) -> None:
        self._open = False

    def drop(self) -> None:
        """Simulate the server dropping the connection."""
        self._open = False

    def push(self, text: str) -> None:
        self.inbox.append(text)

    @property
    def is_open(self) -> bool:
        return self._open


class Clock:
    """Mutable clock for code that takes a ``clock`` callable."""

    def __init__(self, start: datetime = NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def engine():
    """Create a fresh in-memory database per test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    """Session context manager factory bound to the test engine."""
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    @contextmanager
    def _session() -> Generator[Session, None, None]:
        session = factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return _session


@pytest.fixture
def store(session_factory) -> SqlConversionStore:
    return SqlConversionStore(session_factory)


@pytest.fixture
def cache() -> ResultCache:
    return ResultCache(default_ttl_seconds=1800)


@pytest.fixture
def registry() -> AttributionModelRegistry:
    return AttributionModelRegistry()


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def context(store, cache, registry, sleeps, clock) -> EngineContext:
    """A fully wired engine context on the test database."""
    return EngineContext.create(
        store=store,
        cache=cache,
        registry=registry,
        sleep=sleeps,
        clock=clock,
    )


@pytest.fixture
def service(context) -> ConversionService:
    return ConversionService(context)
