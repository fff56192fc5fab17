"""Pure validation of market payloads and records.

Kept free of proof handling and ledger state so that it can be exercised
directly (and fuzzed) without an attestation backend. Every external write
is treated as attacker-controlled: bounds are re-checked here even though
the payload arrived inside a valid attestation.
"""

from polyflux.config import OracleSettings
from polyflux.constants import MAX_PRICE_BPS
from polyflux.exceptions import (
    InsufficientLiquidity,
    InvalidMarketId,
    InvalidPrices,
    InvalidQuestion,
)
from polyflux.ledger.runtime import require_amount
from polyflux.models import MarketPayload, MarketRecord


def validate_prices(yes_price: int, no_price: int, settings: OracleSettings) -> None:
    """Check both prices are within [0, 10000] and their sum within the band.

    Raises:
        InvalidPrices: If either check fails.
    """
    for price in (yes_price, no_price):
        if not 0 <= price <= MAX_PRICE_BPS:
            raise InvalidPrices(
                f"Price outside [0, {MAX_PRICE_BPS}] bps: yes={yes_price} no={no_price}"
            )
    total = yes_price + no_price
    if not settings.min_price_sum <= total <= settings.max_price_sum:
        raise InvalidPrices(
            f"Price sum {total} outside [{settings.min_price_sum}, {settings.max_price_sum}]"
        )


def validate_payload(payload: MarketPayload, settings: OracleSettings) -> None:
    """Validate a decoded payload for a routine (non-resolution) update.

    Check order: market id, question, amounts, prices, liquidity.

    Raises:
        InvalidMarketId, InvalidQuestion, InvalidAmount, InvalidPrices,
        InsufficientLiquidity.
    """
    if not payload.market_id:
        raise InvalidMarketId("Market id must not be empty")
    if len(payload.question) > settings.max_question_length:
        raise InvalidQuestion(
            f"Question is {len(payload.question)} chars, cap is {settings.max_question_length}"
        )
    require_amount(payload.volume, "volume")
    require_amount(payload.liquidity, "liquidity")
    validate_prices(payload.yes_price, payload.no_price, settings)
    if payload.liquidity < settings.min_liquidity:
        raise InsufficientLiquidity(
            f"Liquidity {payload.liquidity} below floor {settings.min_liquidity}"
        )


def validate_resolution_payload(payload: MarketPayload, settings: OracleSettings) -> None:
    """Bounds check for a resolution payload.

    Same market id and price rules as a routine update. Liquidity is not
    checked: closed markets report thin books.

    Raises:
        InvalidMarketId, InvalidPrices.
    """
    if not payload.market_id:
        raise InvalidMarketId("Market id must not be empty")
    validate_prices(payload.yes_price, payload.no_price, settings)


def resolution_outcome(payload: MarketPayload, threshold_bps: int) -> bool | None:
    """Winning side implied by a payload, or None if neither side clears the threshold.

    Yes is checked first; with a threshold above 5000 both sides cannot clear it
    under a valid price sum.
    """
    if payload.yes_price >= threshold_bps:
        return True
    if payload.no_price >= threshold_bps:
        return False
    return None


def check_record_invariants(record: MarketRecord, settings: OracleSettings) -> list[str]:
    """Return the list of invariant violations for a stored record (empty if none).

    Used by the invariant-checking test harness.
    """
    problems: list[str] = []
    if not record.exists:
        return problems
    if record.resolved:
        if {record.yes_price, record.no_price} != {MAX_PRICE_BPS, 0}:
            problems.append("resolved prices not pinned to 10000/0")
        if record.outcome != (record.yes_price == MAX_PRICE_BPS):
            problems.append("outcome does not match pinned prices")
    else:
        if record.yes_price > MAX_PRICE_BPS or record.no_price > MAX_PRICE_BPS:
            problems.append("price above 10000 bps")
        total = record.yes_price + record.no_price
        if not settings.min_price_sum <= total <= settings.max_price_sum:
            problems.append(f"price sum {total} out of band")
    return problems
