"""Attested prediction-market oracle.

Ingests Polymarket data delivered inside attestation proofs, validates it,
and exposes a read surface with freshness and resolution semantics.

Per-market state machine::

    Unknown --update--> Active --resolve--> Resolved (terminal)

Writes are permissionless: trust comes from the proof, never from the caller.
The owner has two deliberate centralization points, both logged loudly:
emergency resolution (bypasses proofs when the attestation pipeline is down)
and direct seeding for test deployments.
"""

from dataclasses import replace

from polyflux.config import OracleSettings
from polyflux.constants import MAX_PRICE_BPS
from polyflux.exceptions import (
    InvalidProof,
    InvalidPrices,
    InvalidUrl,
    MarketAlreadyResolved,
    MarketNotFound,
    MarketNotResolved,
    MarketNotWhitelisted,
    NotOwner,
)
from polyflux.ledger.runtime import (
    Ledger,
    Snapshotable,
    require_address,
    synchronized,
    transactional,
)
from polyflux.logging import get_logger
from polyflux.models import AttestationProof, MarketPayload, MarketRecord
from polyflux.oracle.validation import (
    resolution_outcome,
    validate_payload,
    validate_resolution_payload,
)
from polyflux.oracle.verifier import AttestationVerifier

logger = get_logger(__name__)


class MarketOracle(Snapshotable):
    """Canonical store of per-market prices, liquidity and resolution.

    Args:
        ledger: Shared transactional runtime (clock, writer lock, events).
        verifier: Attestation proof verifier.
        owner: Address allowed to run administrative operations.
        settings: Validation bounds.
    """

    _state_attrs = ("_markets", "_market_ids", "_known_ids", "_whitelist", "owner")

    def __init__(
        self,
        ledger: Ledger,
        verifier: AttestationVerifier,
        owner: str,
        settings: OracleSettings | None = None,
    ) -> None:
        self._ledger = ledger
        self._verifier = verifier
        self._settings = settings or OracleSettings()
        self.owner = require_address(owner)
        self._markets: dict[str, MarketRecord] = {}
        self._market_ids: list[str] = []
        self._known_ids: set[str] = set()
        self._whitelist: set[str] = set()
        ledger.register(self)

    @property
    def settings(self) -> OracleSettings:
        return self._settings

    # -- Attested writes -----------------------------------------------------

    @transactional
    def update_market_data(self, proof: AttestationProof, caller: str) -> MarketRecord:
        """Upsert a market from an attested price snapshot.

        Raises:
            InvalidProof: The verifier rejected the proof.
            InvalidUrl: The attested URL is not the expected data source.
            InvalidMarketId, InvalidQuestion, InvalidPrices, InsufficientLiquidity:
                Payload failed validation.
            MarketNotWhitelisted: Allow-list enforced and market not on it.
            MarketAlreadyResolved: Resolved markets no longer take price updates.
        """
        payload = self._check_proof(proof)
        record = self._apply_update(payload, caller)
        record.voting_round = proof.voting_round
        record.source_timestamp = proof.source_timestamp
        return replace(record)

    @transactional
    def resolve_market_with_proof(self, proof: AttestationProof, caller: str) -> MarketRecord:
        """Resolve a market whose attested price shows one side at >= 99%.

        Raises:
            InvalidProof, InvalidUrl: Proof pipeline failures.
            MarketNotFound: The market was never updated.
            MarketAlreadyResolved: Resolution already happened.
            InvalidPrices: Prices out of bounds, or neither side clears the
                resolution threshold.
        """
        payload = self._check_proof(proof)
        record = self._require_market(payload.market_id)
        if record.resolved:
            raise MarketAlreadyResolved(f"Market {payload.market_id} already resolved")

        validate_resolution_payload(payload, self._settings)
        outcome = resolution_outcome(payload, self._settings.resolution_threshold_bps)
        if outcome is None:
            raise InvalidPrices(
                f"Market {payload.market_id} not resolved on source: "
                f"yes={payload.yes_price} no={payload.no_price}"
            )
        self._resolve(record, outcome, caller, resolution_round=proof.voting_round)
        return replace(record)

    # -- Owner-only ---------------------------------------------------------

    @transactional
    def emergency_resolve_market(self, market_id: str, outcome: bool, caller: str) -> MarketRecord:
        """Resolve without a proof. Trust assumption: the owner is honest.

        Only intended for when the attestation pipeline is unavailable.
        """
        self._only_owner(caller)
        record = self._require_market(market_id)
        if record.resolved:
            raise MarketAlreadyResolved(f"Market {market_id} already resolved")
        logger.warning("emergency_resolution", market_id=market_id, outcome=outcome, caller=caller)
        self._resolve(record, outcome, caller, resolution_round=0)
        return replace(record)

    @transactional
    def set_market_data_for_testing(
        self,
        market_id: str,
        question: str,
        yes_price: int,
        no_price: int,
        volume: int,
        liquidity: int,
        caller: str,
    ) -> MarketRecord:
        """Seed a market without a proof (test deployments). Same validation applies."""
        self._only_owner(caller)
        payload = MarketPayload(
            market_id=market_id,
            question=question,
            yes_price=yes_price,
            no_price=no_price,
            volume=volume,
            liquidity=liquidity,
        )
        logger.warning("market_seeded_without_proof", market_id=market_id, caller=caller)
        return replace(self._apply_update(payload, caller))

    @transactional
    def whitelist_market(self, market_id: str, caller: str) -> None:
        self._only_owner(caller)
        self._whitelist.add(market_id)
        self._ledger.emit("MarketWhitelisted", market_id=market_id)

    @transactional
    def delist_market(self, market_id: str, caller: str) -> None:
        self._only_owner(caller)
        self._whitelist.discard(market_id)
        self._ledger.emit("MarketDelisted", market_id=market_id)

    @transactional
    def transfer_ownership(self, new_owner: str, caller: str) -> None:
        self._only_owner(caller)
        require_address(new_owner)
        previous, self.owner = self.owner, new_owner
        self._ledger.emit("OwnershipTransferred", previous_owner=previous, new_owner=new_owner)

    # -- Reads --------------------------------------------------------------

    @synchronized
    def get_market_data(self, market_id: str) -> MarketRecord:
        """Return a copy of the stored record.

        Raises:
            MarketNotFound: If the market does not exist.
        """
        return replace(self._require_market(market_id))

    @synchronized
    def get_latest_price(self, market_id: str) -> tuple[int, int, int]:
        """Return (yes_price, no_price, timestamp)."""
        record = self._require_market(market_id)
        return record.yes_price, record.no_price, record.timestamp

    @synchronized
    def is_market_data_fresh(self, market_id: str, max_age: int) -> bool:
        """True if the market exists and was written within ``max_age`` seconds."""
        record = self._markets.get(market_id)
        if record is None or not record.exists:
            return False
        return self._ledger.now - record.timestamp <= max_age

    @synchronized
    def is_market_resolved(self, market_id: str) -> bool:
        record = self._markets.get(market_id)
        return record is not None and record.resolved

    @synchronized
    def get_market_outcome(self, market_id: str) -> bool:
        """Winning side (True = yes).

        Raises:
            MarketNotFound: If the market does not exist.
            MarketNotResolved: If the market has not been resolved yet.
        """
        record = self._require_market(market_id)
        if not record.resolved:
            raise MarketNotResolved(f"Market {market_id} not resolved")
        return record.outcome

    @synchronized
    def get_all_market_ids(self) -> list[str]:
        return list(self._market_ids)

    @synchronized
    def get_market_count(self) -> int:
        return len(self._market_ids)

    @synchronized
    def is_whitelisted(self, market_id: str) -> bool:
        return market_id in self._whitelist

    # -- Internals ----------------------------------------------------------

    def _check_proof(self, proof: AttestationProof) -> MarketPayload:
        if not self._verifier.verify(proof):
            raise InvalidProof(f"Attestation rejected for round {proof.voting_round}")
        if not proof.request.url.startswith(self._settings.expected_url_prefix):
            raise InvalidUrl(f"Unexpected source URL: {proof.request.url}")
        return proof.response

    def _apply_update(self, payload: MarketPayload, caller: str) -> MarketRecord:
        validate_payload(payload, self._settings)
        if self._settings.require_whitelist and payload.market_id not in self._whitelist:
            raise MarketNotWhitelisted(f"Market {payload.market_id} is not whitelisted")

        record = self._markets.get(payload.market_id)
        if record is not None and record.resolved:
            raise MarketAlreadyResolved(f"Market {payload.market_id} already resolved")
        if record is None:
            record = MarketRecord(market_id=payload.market_id)
            self._markets[payload.market_id] = record

        record.question = payload.question
        record.yes_price = payload.yes_price
        record.no_price = payload.no_price
        record.volume = payload.volume
        record.liquidity = payload.liquidity
        record.timestamp = self._ledger.now
        record.updated_by = caller

        if payload.market_id not in self._known_ids:
            self._known_ids.add(payload.market_id)
            self._market_ids.append(payload.market_id)

        self._ledger.emit(
            "MarketDataUpdated",
            market_id=payload.market_id,
            yes_price=payload.yes_price,
            no_price=payload.no_price,
            volume=payload.volume,
            liquidity=payload.liquidity,
            updated_by=caller,
        )
        return record

    def _resolve(self, record: MarketRecord, outcome: bool, caller: str, resolution_round: int) -> None:
        record.resolved = True
        record.outcome = outcome
        record.yes_price = MAX_PRICE_BPS if outcome else 0
        record.no_price = 0 if outcome else MAX_PRICE_BPS
        record.timestamp = self._ledger.now
        record.updated_by = caller
        record.resolution_round = resolution_round
        self._ledger.emit(
            "MarketResolved",
            market_id=record.market_id,
            outcome=outcome,
            resolution_round=resolution_round,
            resolved_by=caller,
        )

    def _require_market(self, market_id: str) -> MarketRecord:
        record = self._markets.get(market_id)
        if record is None or not record.exists:
            raise MarketNotFound(f"Market not found: {market_id!r}")
        return record

    def _only_owner(self, caller: str) -> None:
        if caller != self.owner:
            raise NotOwner("Only owner")
