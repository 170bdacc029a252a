"""Locked defaults for the POLIS market collective.

Every tunable the engine reads lives here. Runtime overrides go through
PolisConfig (polis.config); evaluator bands are fixed.
"""

from __future__ import annotations

# ── Scheduler ─────────────────────────────────────────────────────────────────
CYCLE_INTERVAL_SEC = 12.0
ORACLE_TIMEOUT_SEC = 8.0
SETTLEMENT_TIMEOUT_SEC = 15.0
SYNTHETIC_EVERY_N_CYCLES = 2

# ── Conviction consensus ─────────────────────────────────────────────────────
CONSENSUS_THRESHOLD = 60.0
CONSENSUS_QUORUM = 4
SCORE_MIN = 0
SCORE_MAX = 100
CONSENSUS_HISTORY_MAX = 500

# ── Oracle feeds ─────────────────────────────────────────────────────────────
FEED_SYMBOLS = (
    "FLR/USD",
    "BTC/USD",
    "ETH/USD",
    "XRP/USD",
    "DOGE/USD",
    "ADA/USD",
    "AVAX/USD",
    "SOL/USD",
)

SIMULATED_BASE_PRICES = {
    "FLR/USD": 0.0098,
    "BTC/USD": 70500.0,
    "ETH/USD": 2050.0,
    "XRP/USD": 1.47,
    "DOGE/USD": 0.099,
    "ADA/USD": 0.277,
    "AVAX/USD": 9.30,
    "SOL/USD": 88.0,
}

SIMULATED_WALK_PCT = 0.01
PRICE_HISTORY_MAX = 10
SCOUT_HISTORY_MAX = 100

# ── Market ledger (AMM) ──────────────────────────────────────────────────────
DEFAULT_LIQUIDITY_UNITS = 10_000_000
DEFAULT_FEE_BPS = 50
RESOLUTION_GRACE_SEC = 60
RESOLUTION_MAX_WAIT_SEC = 3600
INITIAL_ODDS_MIN = 20
INITIAL_ODDS_MAX = 80
INITIAL_ODDS_SENSITIVITY = 500

# ── Risk guard ───────────────────────────────────────────────────────────────
RATE_WINDOW_SEC = 3600
RATE_HIGH_PER_HOUR = 10
RATE_MED_PER_HOUR = 5
CONCENTRATION_WINDOW_SEC = 900
CONCENTRATION_MAX_RECENT = 3
RISK_LOG_MAX = 100
CIRCUIT_BREAKER_RATIONALE = "circuit breaker active"

# ── Evaluator bands ──────────────────────────────────────────────────────────
DURATION_IDEAL_MIN = 30
DURATION_IDEAL_MAX = 90
DURATION_OK_MIN = 15
DURATION_OK_MAX = 180
DURATION_FEE_CAPTURE_MIN = 30
DURATION_FEE_CAPTURE_MAX = 120
DURATION_RISK_SHORT_MIN = 10
DURATION_RISK_LONG_MIN = 360
SHORT_MARKET_MIN = 30

FRESH_DATA_SEC = 30
ACCEPTABLE_DATA_SEC = 120
SHORT_MARKET_MAX_DATA_AGE_SEC = 60

VOLATILITY_SAMPLE = 3
VOLATILITY_LOW = 0.001
VOLATILITY_MED = 0.005

STRIKE_NEAR_PCT = 0.02
STRIKE_MODERATE_PCT = 0.05
STRIKE_FAR_PCT = 0.20
STRIKE_TRIVIAL_PCT = 0.001

DENSITY_HIGH = 15
DENSITY_MED = 8
CONCENTRATION_MAX_ACTIVE = 3

QUESTION_MIN_CHARS = 20
QUESTION_GOOD_CHARS = 50
QUESTION_OK_CHARS = 30

# ── Event bus ────────────────────────────────────────────────────────────────
EVENT_HISTORY_MAX = 200

# ── Candidate discovery ──────────────────────────────────────────────────────
CANDIDATES_PER_MIN_MAX = 20
PER_ASSET_CANDIDATES_PER_MIN_MAX = 4
ROUND_NUMBER_MIN_PCT = 0.001
ROUND_NUMBER_MAX_PCT = 0.05
MOMENTUM_SAMPLE = 5
MOMENTUM_MIN_PCT = 0.003
