"""Entry point for a local polyflux deployment.

Wires the ledger, oracle, collateral token and derivatives engine together
and runs the keeper against the live Polymarket API. Attestation runs
in-process (LocalAttestationPipeline), so the oracle's verifier and the
keeper share one round-root registry.

Handles SIGINT/SIGTERM for graceful shutdown.

Component wiring order (in _build_components):
1. Ledger (wall clock)
2. RoundRootRegistry + MerkleAttestationVerifier
3. MarketOracle
4. CollateralToken
5. DerivativesEngine
6. PolymarketClient
7. LocalAttestationPipeline
8. Keeper
"""

import asyncio
import signal
from typing import Any

from polyflux.config import AppSettings
from polyflux.derivatives import DerivativesEngine
from polyflux.keeper import Keeper, LocalAttestationPipeline, PolymarketClient
from polyflux.ledger import CollateralToken, Ledger
from polyflux.logging import get_logger, setup_logging
from polyflux.oracle import MarketOracle, MerkleAttestationVerifier, RoundRootRegistry


def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Build the full dependency graph from settings.

    Args:
        settings: Application-wide settings.

    Returns:
        Dict mapping component names to instances.
    """
    ledger = Ledger()
    registry = RoundRootRegistry()
    oracle = MarketOracle(
        ledger, MerkleAttestationVerifier(registry), settings.owner_address, settings.oracle
    )
    token = CollateralToken(ledger)
    engine = DerivativesEngine(
        ledger, oracle, token, settings.owner_address, settings.derivatives
    )
    client = PolymarketClient(settings.keeper)
    pipeline = LocalAttestationPipeline(settings.keeper, client, registry)
    keeper = Keeper(oracle, pipeline, client, settings.keeper)

    return {
        "ledger": ledger,
        "registry": registry,
        "oracle": oracle,
        "token": token,
        "engine": engine,
        "client": client,
        "pipeline": pipeline,
        "keeper": keeper,
    }


def _setup_signal_handlers(stop_event: asyncio.Event) -> None:
    """SIGINT/SIGTERM set ``stop_event``. Must run inside the event loop."""
    logger = get_logger("polyflux.main")
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)


async def run() -> None:
    """Run the keeper until a shutdown signal arrives."""
    settings = AppSettings()
    setup_logging(settings.log_level)
    logger = get_logger("polyflux.main")

    components = _build_components(settings)
    stop_event = asyncio.Event()
    _setup_signal_handlers(stop_event)

    logger.info(
        "polyflux_starting",
        owner=settings.owner_address,
        engine=components["engine"].address,
        update_interval=settings.keeper.update_interval_seconds,
        max_leverage=settings.derivatives.max_leverage,
    )

    keeper: Keeper = components["keeper"]
    try:
        await keeper.start()
        await stop_event.wait()
    finally:
        await keeper.stop()
        await components["client"].close()
        logger.info(
            "polyflux_stopped",
            markets=components["oracle"].get_market_count(),
            events=len(components["ledger"].events()),
        )


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
