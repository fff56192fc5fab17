"""Configuration system using pydantic-settings with environment variable loading."""

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from polyflux import constants


class OracleSettings(BaseSettings):
    """Validation bounds applied to every attested market payload."""

    model_config = SettingsConfigDict(env_prefix="ORACLE_")

    expected_url_prefix: str = constants.EXPECTED_URL_PREFIX
    min_liquidity: int = constants.MIN_LIQUIDITY  # $1000 scaled by 1e6
    min_price_sum: int = constants.MIN_PRICE_SUM_BPS
    max_price_sum: int = constants.MAX_PRICE_SUM_BPS
    resolution_threshold_bps: int = constants.RESOLUTION_THRESHOLD_BPS
    max_question_length: int = constants.MAX_QUESTION_LENGTH
    require_whitelist: bool = False  # enforce the owner allow-list on updates

    @model_validator(mode="after")
    def _check_bounds(self) -> "OracleSettings":
        if self.min_price_sum > self.max_price_sum:
            raise ValueError("min_price_sum must not exceed max_price_sum")
        if not 0 < self.resolution_threshold_bps <= constants.MAX_PRICE_BPS:
            raise ValueError("resolution_threshold_bps must be in (0, 10000]")
        return self


class DerivativesSettings(BaseSettings):
    """Leverage, collateral and fee parameters for the position engine."""

    model_config = SettingsConfigDict(env_prefix="DERIVATIVES_")

    min_collateral: int = constants.MIN_COLLATERAL  # $10 scaled by 1e6
    min_leverage: int = constants.MIN_LEVERAGE  # 1x
    max_leverage: int = constants.MAX_LEVERAGE  # 5x
    liquidation_threshold_bps: int = constants.LIQUIDATION_THRESHOLD_BPS
    liquidation_reward_bps: int = constants.LIQUIDATION_REWARD_BPS
    protocol_fee_bps: int = constants.PROTOCOL_FEE_BPS  # 0.1%
    max_oracle_staleness: int = constants.MAX_ORACLE_STALENESS  # seconds

    @model_validator(mode="after")
    def _check_bounds(self) -> "DerivativesSettings":
        if self.min_leverage <= 0 or self.min_leverage > self.max_leverage:
            raise ValueError("require 0 < min_leverage <= max_leverage")
        for name in ("liquidation_threshold_bps", "liquidation_reward_bps", "protocol_fee_bps"):
            if not 0 <= getattr(self, name) <= constants.BPS:
                raise ValueError(f"{name} must be within [0, {constants.BPS}]")
        return self


class KeeperSettings(BaseSettings):
    """Off-chain keeper: data source, attestation endpoints and timing.

    All fields configurable via KEEPER_ environment variable prefix.
    """

    model_config = SettingsConfigDict(env_prefix="KEEPER_")

    # Data source
    polymarket_api: str = constants.POLYMARKET_CLOB_API
    http_timeout_seconds: float = 15.0

    # Attestation endpoints
    verifier_url: str = "https://fdc-verifiers-testnet.flare.network/verifier/web2/"
    da_layer_url: str = "https://ctn2-data-availability.flare.network/"
    verifier_api_key: SecretStr = SecretStr("00000000-0000-0000-0000-000000000000")
    attestation_type: str = "Web2Json"
    source_id: str = "PublicWeb2"

    # Scheduling
    update_interval_seconds: float = 600.0  # 10 min between cycles
    max_staleness_seconds: int = 3_600
    max_markets_per_cycle: int = 10
    request_delay_seconds: float = 2.0  # rate limiting between markets
    resolution_scan_limit: int = 50  # closed markets inspected per cycle
    keeper_address: str = "0x00000000000000000000000000000000000be3e7"  # recorded as updated_by

    # Transform
    price_rounding_bps: int = 100  # coarse rounding so independent attestors agree

    # Retry / polling
    max_retries: int = 3
    retry_base_delay: float = 1.0
    round_poll_interval: float = 30.0
    proof_initial_delay: float = 10.0
    proof_poll_attempts: int = 20
    proof_poll_interval: float = 5.0


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    owner_address: str = "0x0000000000000000000000000000000000000a11"  # deployer of oracle and engine
    oracle: OracleSettings = OracleSettings()
    derivatives: DerivativesSettings = DerivativesSettings()
    keeper: KeeperSettings = KeeperSettings()
