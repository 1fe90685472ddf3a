"""
tourney/engine.py
Wires the engine components together.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from tourney.config.settings import EngineSettings, settings as default_settings
from tourney.services.advancement_engine import AdvancementEngine
from tourney.services.collaborators import (
    Clock, HttpWalletClient, LoggingNotifier, LoggingWallet, Notifier, Wallet, system_clock
)
from tourney.services.dispute_service import DisputeService
from tourney.services.match_lifecycle import MatchLifecycle
from tourney.services.series_tracker import SeriesTracker
from tourney.services.tournament_orchestrator import TournamentOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class TournamentEngine:
    settings: EngineSettings
    orchestrator: TournamentOrchestrator
    series: SeriesTracker
    advancement: AdvancementEngine
    lifecycle: MatchLifecycle
    disputes: DisputeService


def build_engine(
    wallet: Optional[Wallet] = None,
    notifier: Optional[Notifier] = None,
    settings: Optional[EngineSettings] = None,
    clock: Clock = system_clock,
) -> TournamentEngine:
    settings = settings or default_settings
    if wallet is None:
        if settings.wallet_api_url:
            wallet = HttpWalletClient(settings.wallet_api_url)
        else:
            logger.warning("WALLET_API_URL not set, wallet movements are only logged")
            wallet = LoggingWallet()
    notifier = notifier or LoggingNotifier()

    series = SeriesTracker(settings)
    orchestrator = TournamentOrchestrator(wallet, notifier, series, settings, clock)
    advancement = AdvancementEngine(series, orchestrator, settings, clock)
    lifecycle = MatchLifecycle(advancement, notifier, settings, clock)
    disputes = DisputeService(lifecycle, notifier)

    return TournamentEngine(
        settings=settings,
        orchestrator=orchestrator,
        series=series,
        advancement=advancement,
        lifecycle=lifecycle,
        disputes=disputes,
    )
