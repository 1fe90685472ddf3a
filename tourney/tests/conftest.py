"""
Shared fixtures: a throwaway SQLite database per test, in-memory wallet
and notifier doubles, and a controllable clock.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

from tourney.config.settings import EngineSettings
from tourney.database import create_engine_for, create_session_factory, init_db
from tourney.engine import build_engine
from tourney.errors import ErrorCode, PolicyError
from tourney.orm.tournament import TournamentFormat


# =============================================================================
# Doubles
# =============================================================================

class FakeWallet:
    """Records every movement; set a user's balance to make debits fail."""

    def __init__(self):
        self.debits: List[tuple] = []
        self.credits: List[tuple] = []
        self.balances: Dict[int, Decimal] = {}

    async def debit(self, user_id: int, amount: Decimal, reference: str) -> None:
        if user_id in self.balances and self.balances[user_id] < amount:
            raise PolicyError("Insufficient wallet balance", code=ErrorCode.INSUFFICIENT_FUNDS)
        self.debits.append((user_id, amount, reference))

    async def credit(self, user_id: int, amount: Decimal, reference: str) -> None:
        self.credits.append((user_id, amount, reference))

    def credited(self, user_id: int) -> Decimal:
        return sum((a for u, a, _ in self.credits if u == user_id), Decimal(0))


class RecordingNotifier:

    def __init__(self):
        self.events: List[tuple] = []

    async def emit(self, event: str, payload: Dict[str, Any]) -> None:
        self.events.append((event, payload))

    def names(self) -> List[str]:
        return [name for name, _ in self.events]

    def of(self, event: str) -> List[Dict[str, Any]]:
        return [payload for name, payload in self.events if name == event]


class FakeClock:

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def settings():
    return EngineSettings(
        scheduler_enabled=False,
        wallet_api_url=None,
        grace_window_hours=24,
        warning_fraction=0.75,
        no_report_window_hours=48,
        live_report_window_minutes=60,
        default_expiry_policy="no_contest",
        default_bracket_reset=False,
        jwt_secret_key="test-secret",
    )


@pytest.fixture
async def db_engine(tmp_path):
    bind = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'tourney_test.db'}")
    await init_db(bind)
    yield bind
    await bind.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def wallet():
    return FakeWallet()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(wallet, notifier, settings, clock):
    return build_engine(wallet=wallet, notifier=notifier, settings=settings, clock=clock)


# =============================================================================
# Scenario helpers
# =============================================================================

@pytest.fixture
def build_tournament(engine, db):
    """
    Create, fill, lock and start a tournament.

    Users are numbered 1..players and tagged p1..pN. Returns
    (tournament, participants in seed order, matches).
    """
    async def _build(players: int = 4, format=TournamentFormat.SINGLE_ELIMINATION,
                     entry_fee=Decimal("10"), prizes=(), seed_users: Optional[List[int]] = None,
                     **options):
        tournament = await engine.orchestrator.create_tournament(
            db, name="Weekend Cup", format=format, total_slots=players,
            entry_fee=entry_fee, prizes=list(prizes), **options
        )
        by_user = {}
        for user_id in range(1, players + 1):
            participant = await engine.orchestrator.join(db, tournament.id, user_id, f"p{user_id}")
            by_user[user_id] = participant
        await engine.orchestrator.lock(db, tournament.id)

        order = seed_users or list(range(1, players + 1))
        matches = await engine.orchestrator.start(
            db, tournament.id, seed_order=[by_user[u].id for u in order]
        )
        tournament = await engine.orchestrator.get_tournament(db, tournament.id)
        return tournament, [by_user[u] for u in order], matches

    return _build
