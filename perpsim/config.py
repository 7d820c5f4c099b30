"""
Configuration constants for the perpsim simulation engine.

Defines fee rates, margin assumptions, indicator lookbacks, regime
thresholds and timing defaults. Values here are the fallbacks; runtime
overrides come from environment variables via perpsim.settings.
"""

from typing import Dict

# =============================================================================
# FEES
# =============================================================================

# Flat taker commission, charged on notional at entry and again at exit
TAKER_FEE_RATE: float = 0.00055  # 0.055%

# =============================================================================
# MARGIN AND LEVERAGE
# =============================================================================

# Isolated-margin liquidation distance is 1/leverage minus this buffer.
# 0.0 reproduces entry * (1 -/+ 1/leverage) exactly.
MAINTENANCE_MARGIN_BUFFER: float = 0.0

# Hard leverage ceiling accepted by BacktestConfig
ABSOLUTE_MAX_LEVERAGE: float = 125.0

# Largest share of available margin a single OPEN may commit
MAX_POSITION_FRACTION: float = 0.95

# Smallest notional an OPEN intent may request
MIN_ORDER_NOTIONAL: float = 1.0

# =============================================================================
# SNAPSHOT / INDICATORS
# =============================================================================

# Bars before a snapshot is complete: ADX needs 2 x ADX_PERIOD, which also
# covers the MACD slow EMA (26). ema_50 and ema_200 stay optional.
MIN_SNAPSHOT_BARS: int = 28

# Candles handed to SnapshotBuilder per instrument per step
SNAPSHOT_WINDOW: int = 200

EMA_PERIODS = (20, 50, 200)
MACD_FAST: int = 12
MACD_SLOW: int = 26
MACD_SIGNAL: int = 9
RSI_PERIODS = (7, 14)
ATR_PERIODS = (3, 14)
ADX_PERIOD: int = 14
ZSCORE_PERIOD: int = 20
VOLUME_RATIO_PERIOD: int = 20

# =============================================================================
# REGIME THRESHOLDS
# =============================================================================

ADX_TRENDING: float = 22.0  # >= strong trend
ADX_WEAK: float = 18.0  # < no trend
ATR_PCT_HIGH: float = 5.0  # >= high volatility
ATR_PCT_LOW: float = 1.5  # <= compressed volatility
EMA_ENTANGLED_PCT: float = 0.005  # |ema20 - ema50| / price
ZSCORE_NEUTRAL: float = 1.0
RSI_NEUTRAL_LOW: float = 40.0
RSI_NEUTRAL_HIGH: float = 60.0

# =============================================================================
# DECISION PORT
# =============================================================================

DECISION_TIMEOUT_SECONDS: float = 30.0

# Closed trades passed back to the decision function as recent history
RECENT_HISTORY_SIZE: int = 20

# =============================================================================
# TIMING
# =============================================================================

SECONDS_PER_YEAR: int = 365 * 24 * 60 * 60

INTERVAL_SECONDS: Dict[str, int] = {
    "1m": 60,
    "3m": 180,
    "5m": 300,
    "15m": 900,
    "30m": 1800,
    "1h": 3600,
    "2h": 7200,
    "4h": 14400,
    "6h": 21600,
    "12h": 43200,
    "1d": 86400,
}

# Default live-mode tick period
LIVE_TICK_SECONDS: float = 60.0

# Unread StepEvents kept by LiveRunner; the oldest is dropped when full
LIVE_EVENT_QUEUE_SIZE: int = 1000

# =============================================================================
# LOGGING
# =============================================================================

LOG_LEVEL: str = "INFO"
LOG_FORMAT: str = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOG_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"
