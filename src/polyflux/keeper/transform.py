"""Deterministic transform from Polymarket CLOB market JSON to the oracle payload.

Independent attestors fetch the same URL at slightly different times, so the
transform must be a pure function of the response and must round prices
coarsely enough that small ticks between fetches do not break consensus.
The local transform and the jq filter sent to the Web2Json verifier
implement the same mapping:

  marketId  <- market_slug
  question  <- question, truncated to the oracle cap
  yesPrice  <- tokens[0].price * 10000, rounded half-up to a multiple of rounding_bps
  noPrice   <- tokens[1].price * 10000, same rounding
  volume    <- volume * 1e6 (0 if absent)
  liquidity <- liquidity * 1e6 (0 if absent)

Prices are converted through Decimal(str(x)), never float arithmetic.
"""

import json
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from eth_abi import decode

from polyflux.constants import BPS, MAX_PRICE_BPS, MAX_QUESTION_LENGTH, RESOLUTION_THRESHOLD_BPS, USD
from polyflux.exceptions import MarketFetchError
from polyflux.models import MarketPayload, MarketTarget

MARKET_DTO_ABI_TYPE = "(string,string,uint256,uint256,uint256,uint256)"

MARKET_DTO_ABI_SIGNATURE = json.dumps(
    {
        "components": [
            {"internalType": "string", "name": "marketId", "type": "string"},
            {"internalType": "string", "name": "question", "type": "string"},
            {"internalType": "uint256", "name": "yesPrice", "type": "uint256"},
            {"internalType": "uint256", "name": "noPrice", "type": "uint256"},
            {"internalType": "uint256", "name": "volume", "type": "uint256"},
            {"internalType": "uint256", "name": "liquidity", "type": "uint256"},
        ],
        "name": "MarketDTO",
        "type": "tuple",
    },
    separators=(",", ":"),
)


def market_url(api_base: str, condition_id: str) -> str:
    """Single-market CLOB endpoint; this is the URL the oracle expects in proofs."""
    return f"{api_base.rstrip('/')}/markets/{condition_id}"


def _decimal(value: Any, field: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise MarketFetchError(f"Non-numeric {field}: {value!r}") from exc


def price_to_bps(price: Any, rounding_bps: int = 1) -> int:
    """Convert a [0, 1] probability to bps, rounded half-up to ``rounding_bps``.

    Examples (rounding_bps=100): 0.654 -> 6500, 0.655 -> 6600, 0.9951 -> 10000.
    """
    if rounding_bps <= 0:
        raise ValueError("rounding_bps must be positive")
    step = Decimal(rounding_bps)
    scaled = _decimal(price, "price") * BPS
    rounded = (scaled / step).quantize(Decimal(1), rounding=ROUND_HALF_UP) * step
    return max(0, min(MAX_PRICE_BPS, int(rounded)))


def usd_to_units(amount: Any) -> int:
    """Dollar amount to 1e6-scaled units (floor, never negative)."""
    if amount is None or amount == "":
        return 0
    units = (_decimal(amount, "amount") * USD).to_integral_value(rounding=ROUND_DOWN)
    return max(0, int(units))


def _outcome_prices(raw: dict[str, Any]) -> tuple[Any, Any]:
    tokens = raw.get("tokens") or []
    if len(tokens) < 2:
        raise MarketFetchError(f"Market {raw.get('market_slug')!r} has fewer than two tokens")
    return tokens[0].get("price"), tokens[1].get("price")


def to_payload(
    raw: dict[str, Any],
    rounding_bps: int = 100,
    max_question_length: int = MAX_QUESTION_LENGTH,
) -> MarketPayload:
    """Map a CLOB market object to the payload the oracle validates.

    Raises:
        MarketFetchError: If the object lacks a slug, tokens or numeric prices.
    """
    slug = raw.get("market_slug")
    if not slug:
        raise MarketFetchError("Market object has no market_slug")
    yes_raw, no_raw = _outcome_prices(raw)
    return MarketPayload(
        market_id=str(slug),
        question=str(raw.get("question") or "")[:max_question_length],
        yes_price=price_to_bps(yes_raw, rounding_bps),
        no_price=price_to_bps(no_raw, rounding_bps),
        volume=usd_to_units(raw.get("volume")),
        liquidity=usd_to_units(raw.get("liquidity")),
    )


def is_resolved_on_source(raw: dict[str, Any], threshold_bps: int = RESOLUTION_THRESHOLD_BPS) -> bool:
    """True if the market is closed and one side trades at or above the threshold."""
    if not raw.get("closed"):
        return False
    try:
        yes_raw, no_raw = _outcome_prices(raw)
        return price_to_bps(yes_raw) >= threshold_bps or price_to_bps(no_raw) >= threshold_bps
    except MarketFetchError:
        return False


def target_from_market(raw: dict[str, Any]) -> MarketTarget | None:
    """Build a keeper target, or None if the object is unusable."""
    slug = raw.get("market_slug")
    condition_id = raw.get("condition_id")
    tokens = raw.get("tokens") or []
    if not slug or not condition_id or len(tokens) < 2:
        return None
    return MarketTarget(slug=str(slug), condition_id=str(condition_id))


def build_post_process_jq(
    rounding_bps: int = 100,
    max_question_length: int = MAX_QUESTION_LENGTH,
) -> str:
    """jq filter equivalent to ``to_payload``, evaluated by the attestors.

    The verifier's jq lacks floor/tonumber, so ``. - (. % 1)`` truncates.
    """

    def price(index: int) -> str:
        return (
            f"((.tokens[{index}].price * {BPS} / {rounding_bps} + 0.5 | . - (. % 1))"
            f" * {rounding_bps})"
        )

    def amount(field: str) -> str:
        return f"((.{field} // 0) * {USD} | . - (. % 1))"

    return (
        "{marketId: .market_slug, "
        f"question: .question[0:{max_question_length}], "
        f"yesPrice: {price(0)}, "
        f"noPrice: {price(1)}, "
        f"volume: {amount('volume')}, "
        f"liquidity: {amount('liquidity')}}}"
    )


def decode_market_dto(data: str | bytes) -> MarketPayload:
    """Decode the ABI-encoded MarketDTO tuple carried in a Web2Json response."""
    if isinstance(data, str):
        data = bytes.fromhex(data[2:] if data.startswith("0x") else data)
    ((market_id, question, yes_price, no_price, volume, liquidity),) = decode(
        [MARKET_DTO_ABI_TYPE], data
    )
    return MarketPayload(
        market_id=market_id,
        question=question,
        yes_price=yes_price,
        no_price=no_price,
        volume=volume,
        liquidity=liquidity,
    )
