"""Permissionless keeper -- keeps the MarketOracle fed with attested data.

Anyone can run a keeper; the oracle trusts proofs, not the keeper. Each cycle:
  Phase 1: resolve markets that closed on Polymarket but not on the oracle
  Phase 2: refresh active markets whose oracle data is stale or missing

Recovery policy:
- Network and attestation steps are retried with exponential backoff
  (retry_base_delay * 2**attempt).
- A market that still fails is logged and skipped; the cycle continues.
- Oracle rejections (validation, state conflict, bad proof) are final for
  the cycle and are not retried.
- Errors escaping a cycle are logged and the loop keeps running.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import httpx

from polyflux.config import KeeperSettings
from polyflux.exceptions import KeeperError, PolyfluxError
from polyflux.keeper.attestation import AttestationPipeline
from polyflux.keeper.polymarket import PolymarketClient
from polyflux.keeper.transform import is_resolved_on_source, target_from_market
from polyflux.logging import bound_context, get_logger
from polyflux.models import MarketRecord, MarketTarget
from polyflux.oracle.market_oracle import MarketOracle

logger = get_logger(__name__)

T = TypeVar("T")

_RETRYABLE = (KeeperError, httpx.HTTPError)


@dataclass
class CycleReport:
    """Outcome of one keeper cycle."""

    resolved: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)  # slug -> error

    @property
    def attempted(self) -> int:
        return len(self.resolved) + len(self.updated) + len(self.failed)


class Keeper:
    """Polls Polymarket and pushes attested updates into the oracle.

    Args:
        oracle: Oracle to read freshness/resolution from and write proofs to.
        pipeline: Attestation provider producing proofs for a market.
        client: Polymarket CLOB client.
        settings: Keeper settings (limits, intervals, retry policy).
    """

    def __init__(
        self,
        oracle: MarketOracle,
        pipeline: AttestationPipeline,
        client: PolymarketClient,
        settings: KeeperSettings | None = None,
    ) -> None:
        self._oracle = oracle
        self._pipeline = pipeline
        self._client = client
        self._settings = settings or KeeperSettings()
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self.last_report: CycleReport | None = None

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Run cycles in the background every update_interval_seconds."""
        if self._running:
            logger.warning("keeper_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "keeper_started",
            update_interval=self._settings.update_interval_seconds,
            max_markets_per_cycle=self._settings.max_markets_per_cycle,
        )

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("keeper_stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _run_loop(self) -> None:
        while self._running:
            try:
                self.last_report = await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("keeper_cycle_error", exc_info=True)
            if self._running:
                await asyncio.sleep(self._settings.update_interval_seconds)

    # -- Cycle -----------------------------------------------------------------

    async def run_cycle(self) -> CycleReport:
        """Run both phases once and report what happened."""
        report = CycleReport()
        limit = self._settings.max_markets_per_cycle

        to_resolve = await self.markets_needing_resolution()
        logger.info("resolution_candidates", count=len(to_resolve))
        for target in to_resolve[:limit]:
            await self._process(target, self.resolve_market, report.resolved, report)

        to_update = await self.markets_needing_update()
        logger.info("update_candidates", count=len(to_update))
        for target in to_update[:limit]:
            await self._process(target, self.update_market, report.updated, report)

        logger.info(
            "keeper_cycle_complete",
            resolved=len(report.resolved),
            updated=len(report.updated),
            failed=len(report.failed),
        )
        return report

    async def _process(
        self,
        target: MarketTarget,
        action: Callable[[MarketTarget], Awaitable[MarketRecord]],
        done: list[str],
        report: CycleReport,
    ) -> None:
        with bound_context(market_id=target.slug):
            try:
                await action(target)
                done.append(target.slug)
            except (PolyfluxError, httpx.HTTPError) as exc:
                report.failed[target.slug] = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "market_skipped",
                    action=action.__name__,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        # Rate limiting between markets
        await asyncio.sleep(self._settings.request_delay_seconds)

    # -- Candidate selection ---------------------------------------------------

    async def markets_needing_resolution(self) -> list[MarketTarget]:
        """Closed-and-decided markets the oracle knows but has not resolved.

        Markets the oracle has never seen are skipped: there is no position
        to settle against them.
        """
        markets = await self._fetch_candidates(
            self._client.fetch_markets, self._settings.resolution_scan_limit
        )
        threshold = self._oracle.settings.resolution_threshold_bps
        known = set(self._oracle.get_all_market_ids())
        targets: list[MarketTarget] = []
        for raw in markets:
            target = target_from_market(raw)
            if target is None or not is_resolved_on_source(raw, threshold):
                continue
            if target.slug in known and not self._oracle.is_market_resolved(target.slug):
                targets.append(target)
        return targets

    async def markets_needing_update(self) -> list[MarketTarget]:
        """Active markets whose oracle data is stale or missing."""
        markets = await self._fetch_candidates(
            self._client.fetch_sampling_markets, self._settings.max_markets_per_cycle
        )
        targets: list[MarketTarget] = []
        for raw in markets:
            target = target_from_market(raw)
            if target is None or not raw.get("active") or raw.get("closed"):
                continue
            if self._oracle.is_market_resolved(target.slug):
                continue
            if not self._oracle.is_market_data_fresh(
                target.slug, self._settings.max_staleness_seconds
            ):
                targets.append(target)
        return targets

    async def _fetch_candidates(
        self, fetch: Callable[[int], Awaitable[list[dict[str, Any]]]], limit: int
    ) -> list[dict[str, Any]]:
        try:
            return await self._with_retry(fetch, limit)
        except _RETRYABLE as exc:
            logger.error(
                "candidate_fetch_failed",
                source=getattr(fetch, "__name__", repr(fetch)),
                error=str(exc),
            )
            return []

    # -- Per-market actions ----------------------------------------------------

    async def update_market(self, target: MarketTarget) -> MarketRecord:
        """Attest current data for a market and submit it to the oracle."""
        proof = await self._with_retry(self._pipeline.attest, target)
        record = self._oracle.update_market_data(proof, self._settings.keeper_address)
        logger.info(
            "market_updated",
            market_id=record.market_id,
            yes_price=record.yes_price,
            no_price=record.no_price,
            voting_round=record.voting_round,
        )
        return record

    async def resolve_market(self, target: MarketTarget) -> MarketRecord:
        """Attest final data for a market and resolve it on the oracle."""
        proof = await self._with_retry(self._pipeline.attest, target)
        record = self._oracle.resolve_market_with_proof(proof, self._settings.keeper_address)
        logger.info(
            "market_resolved",
            market_id=record.market_id,
            outcome="YES" if record.outcome else "NO",
            voting_round=record.resolution_round,
        )
        return record

    async def _with_retry(self, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Call ``fn`` with exponential backoff on transient failures.

        Delays: base, 2*base, 4*base, ... Re-raises on the final attempt.
        """
        max_retries = max(1, self._settings.max_retries)
        base_delay = self._settings.retry_base_delay

        for attempt in range(max_retries):
            try:
                return await fn(*args)
            except _RETRYABLE as exc:
                if attempt == max_retries - 1:
                    logger.error(
                        "keeper_step_failed_permanently",
                        step=getattr(fn, "__name__", repr(fn)),
                        attempts=max_retries,
                        error=str(exc),
                    )
                    raise
                delay = base_delay * (2**attempt)
                logger.warning(
                    "keeper_step_retry",
                    step=getattr(fn, "__name__", repr(fn)),
                    attempt=attempt + 1,
                    max_retries=max_retries,
                    delay=delay,
                    error=str(exc),
                )
                await asyncio.sleep(delay)

        raise AssertionError("unreachable")
