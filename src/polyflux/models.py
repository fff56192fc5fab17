"""Shared data models for the polyflux oracle and derivatives engine.

CRITICAL: On-ledger values are plain ints in fixed point (bps for prices,
1e6 for amounts). Never use float for prices, collateral or PnL; the keeper
converts source floats through Decimal before anything reaches the ledger.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from polyflux.constants import BPS


class Direction(int, Enum):
    """Position direction. Values match the original ABI ordinals."""

    LONG_YES = 0
    LONG_NO = 1
    SHORT_YES = 2
    SHORT_NO = 3

    @property
    def is_long(self) -> bool:
        return self in (Direction.LONG_YES, Direction.LONG_NO)

    @property
    def tracks_yes(self) -> bool:
        """True when the position is valued off the yes price."""
        return self in (Direction.LONG_YES, Direction.SHORT_NO)


@dataclass(frozen=True)
class MarketPayload:
    """Decoded attestation response body (fixed schema)."""

    market_id: str
    question: str
    yes_price: int
    no_price: int
    volume: int
    liquidity: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "marketId": self.market_id,
            "question": self.question,
            "yesPrice": self.yes_price,
            "noPrice": self.no_price,
            "volume": self.volume,
            "liquidity": self.liquidity,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MarketPayload":
        return cls(
            market_id=str(data["marketId"]),
            question=str(data["question"]),
            yes_price=int(data["yesPrice"]),
            no_price=int(data["noPrice"]),
            volume=int(data["volume"]),
            liquidity=int(data["liquidity"]),
        )


@dataclass(frozen=True)
class AttestationRequest:
    """The original HTTP request the attestation was produced for."""

    url: str
    http_method: str = "GET"
    post_process_jq: str = ""
    abi_signature: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "httpMethod": self.http_method,
            "postProcessJq": self.post_process_jq,
            "abiSignature": self.abi_signature,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AttestationRequest":
        return cls(
            url=str(data["url"]),
            http_method=str(data.get("httpMethod", "GET")),
            post_process_jq=str(data.get("postProcessJq", "")),
            abi_signature=str(data.get("abiSignature", "")),
        )


@dataclass(frozen=True)
class AttestationProof:
    """Proof envelope submitted to the oracle.

    merkle_proof is the authenticity envelope checked by the verifier;
    request and response are what the envelope vouches for.
    """

    merkle_proof: tuple[str, ...]
    request: AttestationRequest
    response: MarketPayload
    voting_round: int = 0
    source_timestamp: int = 0  # lowest timestamp the attestors used

    def attested_body(self) -> dict[str, Any]:
        """The part of the proof covered by the Merkle leaf."""
        return {
            "votingRound": self.voting_round,
            "sourceTimestamp": self.source_timestamp,
            "request": self.request.to_dict(),
            "response": self.response.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AttestationProof":
        body = data["data"]
        return cls(
            merkle_proof=tuple(data.get("merkleProof", ())),
            request=AttestationRequest.from_dict(body["request"]),
            response=MarketPayload.from_dict(body["response"]),
            voting_round=int(body.get("votingRound", 0)),
            source_timestamp=int(body.get("sourceTimestamp", 0)),
        )


@dataclass
class MarketRecord:
    """Canonical per-market state owned by the MarketOracle.

    A record with timestamp == 0 does not exist.
    """

    market_id: str
    question: str = ""
    yes_price: int = 0
    no_price: int = 0
    volume: int = 0
    liquidity: int = 0
    timestamp: int = 0
    resolved: bool = False
    outcome: bool = False  # meaningful only once resolved; True = yes won
    # Provenance, audit only
    updated_by: str = ""
    voting_round: int = 0
    source_timestamp: int = 0
    resolution_round: int = 0

    @property
    def exists(self) -> bool:
        return self.timestamp > 0


@dataclass
class Position:
    """A leveraged position on one side of a prediction market."""

    id: int
    owner: str
    market_id: str
    direction: Direction
    collateral: int  # net of the protocol fee
    leverage: int  # bps, 10000 = 1x
    entry_price: int  # directional price at open, bps, > 0
    open_timestamp: int
    is_open: bool = True
    settled: bool = False

    @property
    def size(self) -> int:
        """Leveraged notional, always derived from collateral and leverage."""
        return self.collateral * self.leverage // BPS


@dataclass(frozen=True)
class LedgerEvent:
    """A committed event, the ledger's equivalent of a contract log."""

    name: str
    block_time: int
    args: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class MarketTarget:
    """A market the keeper intends to attest.

    slug is the oracle market id; condition_id addresses the source API.
    """

    slug: str
    condition_id: str
