"""Custom exceptions for the polyflux oracle, derivatives engine and keeper.

Every ledger entrypoint aborts with exactly one of the leaf classes below.
The intermediate classes group them by kind so callers (front-ends, the
keeper) can react per category rather than per condition. All exceptions
live here to avoid circular imports between modules.
"""


class PolyfluxError(Exception):
    """Base exception for all polyflux errors."""


# -- Kinds --------------------------------------------------------------


class AuthorizationError(PolyfluxError):
    """Caller is not allowed to perform an owner-only operation."""


class NotFoundError(PolyfluxError):
    """A market or position does not exist."""


class ValidationError(PolyfluxError):
    """An input is out of bounds (price, liquidity, collateral, leverage, ...)."""


class StateConflictError(PolyfluxError):
    """The target is in the wrong lifecycle state for the operation."""


class StalenessError(PolyfluxError):
    """Oracle data is too old to act on."""


class ProofError(PolyfluxError):
    """The attestation proof is invalid or attests to an unexpected source."""


class InsufficientBalanceError(PolyfluxError):
    """A transfer would overdraw an account."""


class KeeperError(PolyfluxError):
    """Off-ledger failure inside the keeper service."""


# -- Authorization ------------------------------------------------------


class NotOwner(AuthorizationError):
    """Raised when a non-owner calls an owner-only operation."""


# -- Not found ----------------------------------------------------------


class MarketNotFound(NotFoundError):
    """Raised when no record exists for a market id."""


class PositionNotFound(NotFoundError):
    """Raised when no position exists for a position id."""


# -- Validation ---------------------------------------------------------


class InvalidPrices(ValidationError):
    """Raised when a price exceeds 10000 bps or the yes/no sum is out of range."""


class InsufficientLiquidity(ValidationError):
    """Raised when reported liquidity is below the oracle floor."""


class InvalidQuestion(ValidationError):
    """Raised when the market question exceeds the length cap."""


class InvalidMarketId(ValidationError):
    """Raised when the market id is empty."""


class MarketNotWhitelisted(ValidationError):
    """Raised when the allow-list is enforced and the market is not on it."""


class CollateralTooLow(ValidationError):
    """Raised when collateral is below the engine minimum."""


class LeverageTooLow(ValidationError):
    """Raised when leverage is below 1x."""


class LeverageTooHigh(ValidationError):
    """Raised when leverage exceeds the engine maximum."""


class InvalidOraclePrice(ValidationError):
    """Raised when the directional entry price is zero."""


class InvalidDirection(ValidationError):
    """Raised when a position direction is not one of the four known values."""


class InvalidAddress(ValidationError):
    """Raised when an address argument is empty or the zero address."""


class InvalidAmount(ValidationError):
    """Raised when an amount is negative or does not fit in 256 bits."""


# -- State conflicts ----------------------------------------------------


class MarketAlreadyResolved(StateConflictError):
    """Raised when updating or resolving a market that is already resolved."""


class MarketResolved(StateConflictError):
    """Raised when opening a position on a resolved market."""


class MarketNotResolved(StateConflictError):
    """Raised when settling against, or reading the outcome of, an open market."""


class PositionNotOpen(StateConflictError):
    """Raised when acting on a position that has already been closed."""


class NotLiquidatable(StateConflictError):
    """Raised when liquidating a position whose equity is above the threshold."""


class ReentrantCall(StateConflictError):
    """Raised when a guarded entrypoint is re-entered mid-call."""


# -- Staleness / proofs / balances ---------------------------------------


class OracleStale(StalenessError):
    """Raised when the market's last update is older than the allowed age."""


class InvalidProof(ProofError):
    """Raised when the attestation verifier rejects a proof."""


class InvalidUrl(ProofError):
    """Raised when the attested request URL is not the expected data source."""


class InsufficientAllowance(InsufficientBalanceError):
    """Raised when a spender has not been approved for the requested amount."""


# -- Keeper -------------------------------------------------------------


class MarketFetchError(KeeperError):
    """Raised when the market data source cannot be read."""


class AttestationError(KeeperError):
    """Raised when the attestation pipeline fails to produce a proof."""
