"""
External collaborators the engine talks to.

Wallet moves money, Notifier delivers events. Both are protocols so the
engine never depends on a concrete implementation; the shipped ones are
an httpx wallet client and a notifier that only writes to the log.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import httpx

from tourney.errors import ErrorCode, PolicyError
from tourney.orm.base import utcnow

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def system_clock() -> datetime:
    return utcnow()


# =============================================================================
# Protocols
# =============================================================================

class Wallet(Protocol):
    async def debit(self, user_id: int, amount: Decimal, reference: str) -> None:
        ...

    async def credit(self, user_id: int, amount: Decimal, reference: str) -> None:
        ...


class Notifier(Protocol):
    async def emit(self, event: str, payload: Dict[str, Any]) -> None:
        ...


def entry_reference(tournament_id: int, user_id: int) -> str:
    return f"tournament:{tournament_id}:entry:{user_id}"


def refund_reference(tournament_id: int, user_id: int) -> str:
    return f"tournament:{tournament_id}:refund:{user_id}"


def prize_reference(tournament_id: int, position: int) -> str:
    return f"tournament:{tournament_id}:prize:{position}"


# =============================================================================
# Implementations
# =============================================================================

class LoggingNotifier:
    """Notifier that records every event in the application log."""

    async def emit(self, event: str, payload: Dict[str, Any]) -> None:
        logger.info(f"event {event}: {payload}")


class LoggingWallet:
    """
    Wallet used when no WALLET_API_URL is configured.

    Accepts every movement and logs it; suitable for local runs only.
    """

    async def debit(self, user_id: int, amount: Decimal, reference: str) -> None:
        logger.info(f"wallet debit user={user_id} amount={amount} ref={reference}")

    async def credit(self, user_id: int, amount: Decimal, reference: str) -> None:
        logger.info(f"wallet credit user={user_id} amount={amount} ref={reference}")


class HttpWalletClient:
    """
    Wallet backed by the ledger service's HTTP API.

    POST {base_url}/debit and /credit with {user_id, amount, reference}.
    The ledger deduplicates on reference, so retries are safe.
    A 402 response means insufficient funds and becomes a PolicyError;
    any other failure propagates so the caller's transaction rolls back.
    """

    def __init__(self, base_url: str, timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _post(self, action: str, user_id: int, amount: Decimal, reference: str) -> None:
        payload = {"user_id": user_id, "amount": str(amount), "reference": reference}
        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self._transport
        ) as client:
            response = await client.post(f"/{action}", json=payload)

        if response.status_code == httpx.codes.PAYMENT_REQUIRED:
            raise PolicyError(
                "Insufficient wallet balance",
                code=ErrorCode.INSUFFICIENT_FUNDS,
                details={"user_id": user_id, "amount": str(amount)}
            )
        response.raise_for_status()
        logger.info(f"wallet {action} ok user={user_id} amount={amount} ref={reference}")

    async def debit(self, user_id: int, amount: Decimal, reference: str) -> None:
        await self._post("debit", user_id, amount, reference)

    async def credit(self, user_id: int, amount: Decimal, reference: str) -> None:
        await self._post("credit", user_id, amount, reference)


# =============================================================================
# Outbox
# =============================================================================

class EventOutbox:
    """
    Events collected during one transaction.

    Nothing is delivered until dispatch() is called after commit, so a
    rolled-back transition never produces a notification.
    """

    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def add(self, event: str, payload: Dict[str, Any]) -> None:
        self.events.append((event, payload))

    def clear(self) -> None:
        self.events.clear()

    async def dispatch(self, notifier: Notifier) -> int:
        """Deliver buffered events; delivery failures are logged, never raised."""
        delivered = 0
        events, self.events = self.events, []
        for event, payload in events:
            try:
                await notifier.emit(event, payload)
                delivered += 1
            except Exception as e:
                logger.warning(f"Notification {event} failed: {type(e).__name__}: {e}")
        return delivered
