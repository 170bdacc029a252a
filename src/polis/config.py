"""Runtime configuration.

Defaults come from polis.constants. Every field can be overridden through
a POLIS_* environment variable (see PolisConfig.from_env).
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Mapping, Optional, Tuple

from polis.constants import (
    CONSENSUS_QUORUM,
    CONSENSUS_THRESHOLD,
    CYCLE_INTERVAL_SEC,
    DEFAULT_FEE_BPS,
    DEFAULT_LIQUIDITY_UNITS,
    FEED_SYMBOLS,
    ORACLE_TIMEOUT_SEC,
    SCORE_MAX,
    SETTLEMENT_TIMEOUT_SEC,
)
from polis.errors import ValidationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "POLIS_"


class PolisConfig:
    """Validated runtime settings for one deployment."""

    def __init__(
        self,
        interval_sec: float = CYCLE_INTERVAL_SEC,
        quorum: int = CONSENSUS_QUORUM,
        threshold: float = CONSENSUS_THRESHOLD,
        liquidity_units: int = DEFAULT_LIQUIDITY_UNITS,
        fee_bps: int = DEFAULT_FEE_BPS,
        symbols: Tuple[str, ...] = FEED_SYMBOLS,
        oracle_url: Optional[str] = None,
        settlement_url: Optional[str] = None,
        oracle_timeout_sec: float = ORACLE_TIMEOUT_SEC,
        settlement_timeout_sec: float = SETTLEMENT_TIMEOUT_SEC,
    ) -> None:
        if interval_sec <= 0:
            raise ValidationError("interval_sec must be > 0, got {}".format(interval_sec))
        if quorum < 1:
            raise ValidationError("quorum must be >= 1, got {}".format(quorum))
        if not 0 <= threshold <= SCORE_MAX:
            raise ValidationError("threshold must be in [0, {}], got {}".format(SCORE_MAX, threshold))
        if liquidity_units <= 0:
            raise ValidationError("liquidity_units must be > 0, got {}".format(liquidity_units))
        if not 0 <= fee_bps < 10000:
            raise ValidationError("fee_bps must be in [0, 10000), got {}".format(fee_bps))
        if not symbols:
            raise ValidationError("at least one feed symbol is required")

        self.interval_sec = float(interval_sec)
        self.quorum = int(quorum)
        self.threshold = float(threshold)
        self.liquidity_units = int(liquidity_units)
        self.fee_bps = int(fee_bps)
        self.symbols = tuple(symbols)
        self.oracle_url = oracle_url or None
        self.settlement_url = settlement_url or None
        self.oracle_timeout_sec = float(oracle_timeout_sec)
        self.settlement_timeout_sec = float(settlement_timeout_sec)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "PolisConfig":
        """Build a config from POLIS_* environment variables.

        Unset variables keep their defaults. Unparseable values raise
        ValidationError naming the variable.
        """
        env = os.environ if environ is None else environ
        kwargs = {}  # type: Dict[str, Any]

        casts = (
            ("interval_sec", float),
            ("quorum", int),
            ("threshold", float),
            ("liquidity_units", int),
            ("fee_bps", int),
            ("oracle_timeout_sec", float),
            ("settlement_timeout_sec", float),
        )
        for field, cast in casts:
            raw = env.get(ENV_PREFIX + field.upper())
            if raw is None or raw.strip() == "":
                continue
            try:
                kwargs[field] = cast(raw)
            except ValueError:
                raise ValidationError(
                    "{}{} is not a valid {}: {!r}".format(ENV_PREFIX, field.upper(), cast.__name__, raw)
                )

        symbols = env.get(ENV_PREFIX + "SYMBOLS")
        if symbols:
            kwargs["symbols"] = tuple(s.strip() for s in symbols.split(",") if s.strip())

        kwargs["oracle_url"] = env.get(ENV_PREFIX + "ORACLE_URL")
        kwargs["settlement_url"] = env.get(ENV_PREFIX + "SETTLEMENT_URL")

        config = cls(**kwargs)
        logger.debug("Config loaded from env: %s", config.to_dict())
        return config

    def to_dict(self) -> Dict[str, Any]:
        return {
            "interval_sec": self.interval_sec,
            "quorum": self.quorum,
            "threshold": self.threshold,
            "liquidity_units": self.liquidity_units,
            "fee_bps": self.fee_bps,
            "symbols": list(self.symbols),
            "oracle_url": self.oracle_url,
            "settlement_url": self.settlement_url,
            "oracle_timeout_sec": self.oracle_timeout_sec,
            "settlement_timeout_sec": self.settlement_timeout_sec,
        }
