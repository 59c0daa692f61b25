"""TrendPilot — application configuration.

Loads .env variables into a typed config object.
Validates required variables and numeric ranges on startup.
"""

import math
import os
from dataclasses import dataclass

from dotenv import load_dotenv


_REQUIRED_VARS = [
    "INSTRUMENTS",
]

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables.

    Defaults match the production strategy parameters, so tests can build a
    ``Config`` with only the fields they care about.
    """

    instruments: tuple[str, ...] = ()
    feed_provider: str = "jupiter"  # "jupiter", "coingecko", "binance" or "aggregate"
    feed_sources: tuple[str, ...] = ("binance", "coingecko")
    # (instrument, source, venue symbol) triples for the aggregated feed
    feed_symbols: tuple[tuple[str, str, str], ...] = ()
    feed_push: bool = False
    test_mode: bool = False

    # Market data
    update_interval_seconds: float = 60.0
    history_length: int = 1440
    max_consecutive_errors: int = 3

    # Trend analysis
    trend_threshold_pct: float = 5.0
    reversal_threshold_pct: float = 10.0
    price_weight: float = 0.7
    volume_weight: float = 0.3

    # Strategy / risk
    min_confidence: float = 50.0
    min_trend_strength: float = 3.0
    stop_loss_pct: float = 1.0
    take_profit_pct: float = 2.0
    max_positions: int = 3
    position_size: float = 0.3
    min_volume: float = 50_000.0
    consecutive_loss_limit: int = 5
    initial_capital: float = 20.0
    min_capital_floor: float = 5.0
    max_volatility_pct: float = 2.0

    # Feed access
    feed_retry_attempts: int = 3
    feed_retry_delay_seconds: float = 1.0
    min_request_interval_seconds: float = 1.0
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 10.0
    cache_ttl_seconds: float = 5.0

    # Process
    db_path: str = "data/trendpilot.db"
    log_level: str = "INFO"
    health_port: int = 8080

    def __post_init__(self) -> None:
        validate_config(self)


def validate_config(config: Config) -> None:
    """Raise ``ValueError`` when a setting is outside its allowed range."""
    if config.update_interval_seconds <= 0:
        raise ValueError(
            f"update_interval_seconds must be positive, got {config.update_interval_seconds}"
        )
    if config.history_length < 2:
        raise ValueError(
            f"history_length must be at least 2, got {config.history_length}"
        )
    if not math.isclose(config.price_weight + config.volume_weight, 1.0):
        raise ValueError(
            "price_weight and volume_weight must sum to 1, "
            f"got {config.price_weight} + {config.volume_weight}"
        )
    if not 0 < config.position_size <= 1:
        raise ValueError(
            f"position_size must be in (0, 1], got {config.position_size}"
        )
    if config.trend_threshold_pct <= 0:
        raise ValueError(
            f"trend_threshold_pct must be positive, got {config.trend_threshold_pct}"
        )
    if config.max_positions < 1:
        raise ValueError(f"max_positions must be >= 1, got {config.max_positions}")
    if config.feed_retry_attempts < 1:
        raise ValueError(
            f"feed_retry_attempts must be >= 1, got {config.feed_retry_attempts}"
        )
    if config.initial_capital <= 0:
        raise ValueError(
            f"initial_capital must be positive, got {config.initial_capital}"
        )
    if config.feed_provider == "aggregate" and not config.feed_sources:
        raise ValueError("feed_sources must name at least one source for the aggregate feed")


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _parse_instruments(raw: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _parse_symbols(raw: str) -> tuple[tuple[str, str, str], ...]:
    """Parse ``SOL:binance=SOLUSDT,SOL:coingecko=solana`` into triples."""
    symbols = []
    for entry in _parse_instruments(raw):
        key, sep, symbol = entry.partition("=")
        instrument, colon, source = key.partition(":")
        if not (sep and colon and instrument.strip() and source.strip() and symbol.strip()):
            raise ValueError(
                f"FEED_SYMBOLS entry must look like instrument:source=symbol, got '{entry}'"
            )
        symbols.append((instrument.strip(), source.strip().lower(), symbol.strip()))
    return tuple(symbols)


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` with a message naming the missing variable when a
    required variable is absent.  ``TEST_MODE`` shortens the default update
    interval to 10 seconds and the default history to 10 points.
    """
    load_dotenv(dotenv_path=env_path)

    missing = [v for v in _REQUIRED_VARS if not os.environ.get(v)]
    if missing:
        raise ValueError(
            f"Missing required environment variable(s): {', '.join(missing)}"
        )

    instruments = _parse_instruments(os.environ["INSTRUMENTS"])
    if not instruments:
        raise ValueError("INSTRUMENTS must list at least one instrument id")

    test_mode = _env_bool("TEST_MODE")
    default_interval = "10" if test_mode else "60"
    default_history = "10" if test_mode else "1440"

    return Config(
        instruments=instruments,
        feed_provider=os.environ.get("FEED_PROVIDER", "jupiter").lower(),
        feed_sources=tuple(
            s.lower() for s in _parse_instruments(os.environ.get("FEED_SOURCES", "binance,coingecko"))
        ),
        feed_symbols=_parse_symbols(os.environ.get("FEED_SYMBOLS", "")),
        feed_push=_env_bool("FEED_PUSH"),
        test_mode=test_mode,
        update_interval_seconds=float(
            os.environ.get("UPDATE_INTERVAL_SECONDS", default_interval)
        ),
        history_length=int(os.environ.get("HISTORY_LENGTH", default_history)),
        max_consecutive_errors=int(os.environ.get("MAX_CONSECUTIVE_ERRORS", "3")),
        trend_threshold_pct=float(os.environ.get("TREND_THRESHOLD_PCT", "5")),
        reversal_threshold_pct=float(os.environ.get("REVERSAL_THRESHOLD_PCT", "10")),
        price_weight=float(os.environ.get("PRICE_WEIGHT", "0.7")),
        volume_weight=float(os.environ.get("VOLUME_WEIGHT", "0.3")),
        min_confidence=float(os.environ.get("MIN_CONFIDENCE", "50")),
        min_trend_strength=float(os.environ.get("MIN_TREND_STRENGTH", "3")),
        stop_loss_pct=float(os.environ.get("STOP_LOSS_PCT", "1")),
        take_profit_pct=float(os.environ.get("TAKE_PROFIT_PCT", "2")),
        max_positions=int(os.environ.get("MAX_POSITIONS", "3")),
        position_size=float(os.environ.get("POSITION_SIZE", "0.3")),
        min_volume=float(os.environ.get("MIN_VOLUME", "50000")),
        consecutive_loss_limit=int(os.environ.get("CONSECUTIVE_LOSS_LIMIT", "5")),
        initial_capital=float(os.environ.get("INITIAL_CAPITAL", "20")),
        min_capital_floor=float(os.environ.get("MIN_CAPITAL_FLOOR", "5")),
        max_volatility_pct=float(os.environ.get("MAX_VOLATILITY_PCT", "2")),
        feed_retry_attempts=int(os.environ.get("FEED_RETRY_ATTEMPTS", "3")),
        feed_retry_delay_seconds=float(
            os.environ.get("FEED_RETRY_DELAY_SECONDS", "1.0")
        ),
        min_request_interval_seconds=float(
            os.environ.get("MIN_REQUEST_INTERVAL_SECONDS", "1.0")
        ),
        backoff_base_seconds=float(os.environ.get("BACKOFF_BASE_SECONDS", "1.0")),
        backoff_cap_seconds=float(os.environ.get("BACKOFF_CAP_SECONDS", "10.0")),
        cache_ttl_seconds=float(os.environ.get("CACHE_TTL_SECONDS", "5.0")),
        db_path=os.environ.get("DB_PATH", "data/trendpilot.db"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        health_port=int(os.environ.get("HEALTH_PORT", "8080")),
    )
