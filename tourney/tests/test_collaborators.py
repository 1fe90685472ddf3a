"""
Collaborator Test Suite

Wallet HTTP client against a mocked ledger, and outbox delivery.
"""
import json
from decimal import Decimal

import httpx
import pytest

from tourney.config.settings import EngineSettings
from tourney.engine import build_engine
from tourney.errors import ErrorCode, PolicyError
from tourney.services.collaborators import (
    EventOutbox, HttpWalletClient, LoggingWallet, entry_reference, prize_reference,
)


def ledger(status_code: int = 200, seen: list = None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append((request.url.path, json.loads(request.content)))
        return httpx.Response(status_code, json={})
    return httpx.MockTransport(handler)

class TestHttpWalletClient:

    async def test_debit_posts_reference(self):
        seen = []
        wallet = HttpWalletClient("http://ledger/api/", transport=ledger(seen=seen))
        await wallet.debit(7, Decimal("10.00"), entry_reference(3, 7))
        assert seen == [("/api/debit", {"user_id": 7, "amount": "10.00", "reference": "tournament:3:entry:7"})]

    async def test_credit(self):
        seen = []
        wallet = HttpWalletClient("http://ledger", transport=ledger(seen=seen))
        await wallet.credit(7, Decimal("28.00"), prize_reference(3, 1))
        assert seen[0][0] == "/credit"

    async def test_payment_required_is_policy_error(self):
        wallet = HttpWalletClient("http://ledger", transport=ledger(402))
        with pytest.raises(PolicyError) as exc:
            await wallet.debit(7, Decimal("10"), entry_reference(3, 7))
        assert exc.value.code == ErrorCode.INSUFFICIENT_FUNDS

    async def test_server_error_propagates(self):
        wallet = HttpWalletClient("http://ledger", transport=ledger(503))
        with pytest.raises(httpx.HTTPStatusError):
            await wallet.credit(7, Decimal("1"), prize_reference(3, 1))

class TestEventOutbox:

    async def test_dispatch_drains(self, notifier):
        outbox = EventOutbox()
        outbox.add("match.reported", {"match_id": 1})
        outbox.add("match.confirmed", {"match_id": 1})

        assert await outbox.dispatch(notifier) == 2
        assert notifier.names() == ["match.reported", "match.confirmed"]
        assert outbox.events == []
        assert await outbox.dispatch(notifier) == 0

    async def test_failed_delivery_is_logged_not_raised(self, notifier, caplog):
        emit = notifier.emit

        async def flaky_emit(event, payload):
            if event == "boom":
                raise ConnectionError("socket closed")
            await emit(event, payload)

        notifier.emit = flaky_emit
        outbox = EventOutbox()
        outbox.add("boom", {})
        outbox.add("match.confirmed", {"match_id": 2})

        assert await outbox.dispatch(notifier) == 1
        assert notifier.names() == ["match.confirmed"]
        assert "Notification boom failed" in caplog.text

class TestBuildEngine:

    def test_wallet_selection(self):
        assert isinstance(build_engine(settings=EngineSettings(wallet_api_url=None)).orchestrator.wallet, LoggingWallet)
        engine = build_engine(settings=EngineSettings(wallet_api_url="http://ledger"))
        assert isinstance(engine.orchestrator.wallet, HttpWalletClient)

    def test_unknown_setting_rejected(self):
        with pytest.raises(AttributeError):
            EngineSettings(no_such_setting=1)
