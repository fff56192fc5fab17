"""Shared test fixtures for the polyflux oracle, engine and keeper."""

import itertools
from collections.abc import Callable

import pytest

from polyflux.config import AppSettings, DerivativesSettings, KeeperSettings, OracleSettings
from polyflux.constants import EXPECTED_URL_PREFIX, USD
from polyflux.derivatives.engine import DerivativesEngine
from polyflux.ledger import CollateralToken, Ledger, ManualClock
from polyflux.models import AttestationProof, AttestationRequest, MarketPayload
from polyflux.oracle import MarketOracle, MerkleAttestationVerifier, RoundRootRegistry
from polyflux.oracle.verifier import build_merkle_tree, leaf_hash

OWNER = "0x00000000000000000000000000000000000000a1"
ALICE = "0x00000000000000000000000000000000000000a2"
BOB = "0x00000000000000000000000000000000000000a3"
LIQUIDATOR = "0x00000000000000000000000000000000000000a4"

INITIAL_BALANCE = 10_000 * USD
MARKET = "will-it-rain-tomorrow"

ProofFactory = Callable[..., AttestationProof]


def make_payload(
    market_id: str = MARKET,
    yes_price: int = 6500,
    no_price: int = 3500,
    question: str = "Will it rain tomorrow?",
    volume: int = 50_000 * USD,
    liquidity: int = 5_000 * USD,
) -> MarketPayload:
    return MarketPayload(
        market_id=market_id,
        question=question,
        yes_price=yes_price,
        no_price=no_price,
        volume=volume,
        liquidity=liquidity,
    )


@pytest.fixture
def mock_settings() -> AppSettings:
    """Return AppSettings with test defaults (fast keeper timings)."""
    return AppSettings(
        log_level="DEBUG",
        oracle=OracleSettings(),
        derivatives=DerivativesSettings(),
        keeper=KeeperSettings(
            request_delay_seconds=0,
            retry_base_delay=0,
            round_poll_interval=0,
            proof_initial_delay=0,
            proof_poll_interval=0,
            update_interval_seconds=0.01,
        ),
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(start=1_700_000_000)


@pytest.fixture
def ledger(clock: ManualClock) -> Ledger:
    return Ledger(clock)


@pytest.fixture
def registry() -> RoundRootRegistry:
    return RoundRootRegistry()


@pytest.fixture
def oracle(ledger: Ledger, registry: RoundRootRegistry, mock_settings: AppSettings) -> MarketOracle:
    return MarketOracle(ledger, MerkleAttestationVerifier(registry), OWNER, mock_settings.oracle)


@pytest.fixture
def token(ledger: Ledger) -> CollateralToken:
    return CollateralToken(ledger)


@pytest.fixture
def engine(
    ledger: Ledger,
    oracle: MarketOracle,
    token: CollateralToken,
    mock_settings: AppSettings,
) -> DerivativesEngine:
    """Engine with ALICE and BOB funded and approved for INITIAL_BALANCE."""
    engine = DerivativesEngine(ledger, oracle, token, OWNER, mock_settings.derivatives)
    for user in (ALICE, BOB):
        token.mint(user, INITIAL_BALANCE)
        token.approve(user, engine.address, INITIAL_BALANCE)
    return engine


@pytest.fixture
def seed_market(oracle: MarketOracle) -> Callable[..., None]:
    """Write market data through the owner-only seeding path."""

    def _seed(market_id: str = MARKET, yes_price: int = 6500, no_price: int = 3500) -> None:
        payload = make_payload(market_id, yes_price, no_price)
        oracle.set_market_data_for_testing(
            payload.market_id,
            payload.question,
            payload.yes_price,
            payload.no_price,
            payload.volume,
            payload.liquidity,
            OWNER,
        )

    return _seed


@pytest.fixture
def attest(registry: RoundRootRegistry) -> ProofFactory:
    """Build a proof for a payload and finalize its round in the registry.

    Extra payloads become sibling leaves of the same round, so proofs carry
    real Merkle paths.
    """
    rounds = itertools.count(100)

    def _attest(
        payload: MarketPayload,
        url: str | None = None,
        others: tuple[MarketPayload, ...] = (),
        source_timestamp: int = 1_699_999_990,
    ) -> AttestationProof:
        voting_round = next(rounds)
        bodies = [payload, *others]
        unsigned = [
            AttestationProof(
                merkle_proof=(),
                request=AttestationRequest(url=url or f"{EXPECTED_URL_PREFIX}0xcond-{i}"),
                response=body,
                voting_round=voting_round,
                source_timestamp=source_timestamp,
            )
            for i, body in enumerate(bodies)
        ]
        root, paths = build_merkle_tree([leaf_hash(p) for p in unsigned])
        registry.publish(voting_round, root)
        first = unsigned[0]
        return AttestationProof(
            merkle_proof=paths[0],
            request=first.request,
            response=first.response,
            voting_round=voting_round,
            source_timestamp=source_timestamp,
        )

    return _attest
