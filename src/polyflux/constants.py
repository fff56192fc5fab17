"""Protocol constants shared by the oracle, the derivatives engine and the keeper.

All prices are integer basis points, all amounts integers scaled by 1e6
(the collateral token has 6 decimals). Settings classes use these as defaults.
"""

BPS = 10_000
USD = 10**6  # fixed-point scale for volume, liquidity and collateral
UINT256_MAX = 2**256 - 1

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Oracle
MAX_PRICE_BPS = 10_000
MIN_PRICE_SUM_BPS = 9_500
MAX_PRICE_SUM_BPS = 10_500
RESOLUTION_THRESHOLD_BPS = 9_900
MIN_LIQUIDITY = 1_000 * USD
MAX_QUESTION_LENGTH = 100
POLYMARKET_CLOB_API = "https://clob.polymarket.com"
EXPECTED_URL_PREFIX = f"{POLYMARKET_CLOB_API}/markets/"

# Derivatives
MIN_LEVERAGE = 10_000  # 1x
MAX_LEVERAGE = 50_000  # 5x
MIN_COLLATERAL = 10 * USD
LIQUIDATION_THRESHOLD_BPS = 8_000  # 80% of collateral lost
LIQUIDATION_REWARD_BPS = 500  # 5% of collateral to the liquidator
PROTOCOL_FEE_BPS = 10  # 0.1% of deposited collateral
MAX_ORACLE_STALENESS = 3_600  # seconds
