"""
Supervisor Continuity - Test Fixtures
=====================================

Shared pytest fixtures for all tests.

Each test gets its own SQLite file so concurrent sessions behave like
separate connections, plus a controllable clock and fake agent
executor / verifier so the fix loop never spawns a real agent.
"""

import asyncio
import os
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional, Union

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("HEARTBEAT_MONITOR_ENABLED", "false")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from continuity.api.main import create_app
from continuity.core import models  # noqa: F401
from continuity.core.database import Base, create_engine, create_session_factory
from continuity.core.fixing.executor import ExecutionResult, FixTask
from continuity.core.fixing.rca import FailureReport
from continuity.core.fixing.verification import VerificationResult
from continuity.core.services import Services, build_services
from continuity.core.session.event_store import EventStore
from continuity.core.session.registry import InstanceRegistry


# ==========================================================================
# Test Doubles
# ==========================================================================

class FakeClock:
    """Clock frozen until advanced."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FakeExecutor:
    """
    Records every task; succeeds (or not) after an optional delay.

    hang=True blocks until cancelled, for timeout and cancel tests.
    """

    def __init__(
        self,
        success: bool = True,
        delay: float = 0.0,
        hang: bool = False,
        cost_usd: str = "0.010000",
        tokens_used: int = 1200,
    ):
        self.success = success
        self.delay = delay
        self.hang = hang
        self.cost_usd = Decimal(cost_usd)
        self.tokens_used = tokens_used
        self.tasks: list[FixTask] = []
        self.started = asyncio.Event()
        self.cancelled = 0

    async def execute(self, task: FixTask) -> ExecutionResult:
        self.tasks.append(task)
        self.started.set()
        try:
            if self.hang:
                await asyncio.Event().wait()
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise

        return ExecutionResult(
            success=self.success,
            output=f"applied {task.strategy.value} with {task.tier.value}",
            cost_usd=self.cost_usd,
            tokens_used=self.tokens_used,
            error=None if self.success else "agent could not apply the fix",
        )


class FakeVerifier:
    """
    Passes according to a bool or a zero-argument predicate.

    hang=True blocks until cancelled.
    """

    def __init__(self, passes: Union[bool, Callable[[], bool]] = True, hang: bool = False):
        self.passes = passes
        self.hang = hang
        self.calls: list[FailureReport] = []
        self.cancelled = 0

    async def verify(self, failure: FailureReport) -> VerificationResult:
        self.calls.append(failure)
        if self.hang:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled += 1
                raise
        passed = self.passes() if callable(self.passes) else self.passes
        return VerificationResult(passed=passed, output="1 passed" if passed else "1 failed")


# ==========================================================================
# Database Fixtures
# ==========================================================================

@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """
    Fresh SQLite file per test.

    Creates all tables before the test, disposes the engine after.
    """
    test_engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'continuity.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ==========================================================================
# Component Fixtures
# ==========================================================================

@pytest.fixture
def registry(session_factory, clock) -> InstanceRegistry:
    return InstanceRegistry(session_factory, clock=clock)


@pytest.fixture
def event_store(session_factory, clock) -> EventStore:
    """Store with no listeners; `services` wires the checkpoint listener."""
    return EventStore(session_factory, clock=clock)


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def handoff_dir(tmp_path):
    return tmp_path / "handoffs"


@pytest.fixture
def services(session_factory, clock, executor, verifier, handoff_dir) -> Services:
    return build_services(
        session_factory,
        clock=clock,
        executor=executor,
        verifier=verifier,
        handoff_dir=handoff_dir,
        cancel_fixes_on_stale=False,
    )


@pytest_asyncio.fixture
async def registered(registry: InstanceRegistry) -> str:
    """A registered PS instance id."""
    view = await registry.register("odin", "PS", host="test-host")
    return view.instance_id


# ==========================================================================
# HTTP Client
# ==========================================================================

@pytest_asyncio.fixture(scope="function")
async def client(services: Services) -> AsyncGenerator[AsyncClient, None]:
    """
    Provide test HTTP client bound to the per-test service graph.
    """
    app = create_app(services=services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await services.fix_agent.shutdown()
