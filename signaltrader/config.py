"""signaltrader — application configuration.

Loads .env variables into typed config objects.
Validates required variables and trading limits on startup.
"""

import json
import os
import pathlib
from dataclasses import dataclass, field, replace

from dotenv import load_dotenv


_REQUIRED_VARS = [
    "TELEGRAM_BOT_TOKEN",
]

DEFAULT_ASSETS = (
    "EUR/USD", "GBP/USD", "USD/JPY", "USD/CHF",
    "BTC/USD", "ETH/USD", "LTC/USD", "XRP/USD",
)
DEFAULT_TIMEFRAMES = ("1m", "5m", "15m", "30m", "1h", "4h", "1d")
DEFAULT_BROKERS = ("pocket_option", "quotex", "binomo", "iq_option")
DEFAULT_SIGNAL_KEYWORDS = (
    "call", "put", "buy", "sell", "entry", "trade",
    "up", "down", "high", "low", "strike",
)


class ConfigurationError(ValueError):
    """Raised when configuration is missing or invalid.  Fatal at startup."""


@dataclass(frozen=True)
class BrokerLimits:
    """Stake and expiration bounds declared by a broker."""

    min_amount: float
    max_amount: float
    min_expiration: int  # seconds
    max_expiration: int  # seconds


DEFAULT_BROKER_LIMITS: dict[str, BrokerLimits] = {
    "pocket_option": BrokerLimits(1.0, 1000.0, 30, 86400),
    "quotex": BrokerLimits(1.0, 1000.0, 60, 86400),
    "binomo": BrokerLimits(1.0, 500.0, 60, 86400),
    "iq_option": BrokerLimits(1.0, 5000.0, 60, 86400),
}


@dataclass(frozen=True)
class MartingaleConfig:
    """Loss-recovery staking settings."""

    enabled: bool = False
    max_levels: int = 5
    multipliers: tuple[float, ...] = (2.0,) * 9


@dataclass(frozen=True)
class TradingConfig:
    """Signal scoring and risk limits.

    Percentages are expressed as 0–100 (e.g. ``2.0`` for 2 %).
    """

    confidence_threshold: float = 70.0
    min_historical_signals: int = 10
    assets: tuple[str, ...] = DEFAULT_ASSETS
    timeframes: tuple[str, ...] = DEFAULT_TIMEFRAMES
    brokers: tuple[str, ...] = DEFAULT_BROKERS
    default_broker: str = "pocket_option"
    broker_limits: dict[str, BrokerLimits] = field(
        default_factory=lambda: dict(DEFAULT_BROKER_LIMITS)
    )
    signal_keywords: tuple[str, ...] = DEFAULT_SIGNAL_KEYWORDS
    max_trade_amount: float = 50.0
    max_risk_per_trade_pct: float = 2.0
    account_risk_limit_pct: float = 10.0
    max_daily_loss_pct: float = 50.0
    max_concurrent_trades: int = 5
    max_daily_trades: int = 50
    cache_ttl_seconds: float = 300.0
    cache_max_entries: int = 1000
    martingale: MartingaleConfig = field(default_factory=MartingaleConfig)

    def limits_for(self, broker: str) -> BrokerLimits:
        """Return the declared limits for *broker*.

        Raises ``ConfigurationError`` when no limits are configured.
        """
        try:
            return self.broker_limits[broker]
        except KeyError:
            raise ConfigurationError(
                f"broker_limits: no limits configured for broker '{broker}'"
            ) from None


@dataclass(frozen=True)
class ChannelSettings:
    """A pre-registered Telegram channel (one entry of ``channels.json``)."""

    channel_id: str
    name: str = ""
    broker: str | None = None
    min_confidence: float = 70.0
    martingale_enabled: bool = False


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    telegram_bot_token: str
    telegram_api_url: str
    telegram_channel_ids: tuple[str, ...]
    telegram_poll_interval: float
    llm_api_key: str
    llm_api_url: str
    llm_model: str
    llm_timeout_seconds: float
    llm_max_retries: int
    llm_retry_delay: float
    account_balance: float
    worker_count: int
    db_path: str
    log_level: str
    api_port: int
    channels_path: str
    trading: TradingConfig = field(default_factory=TradingConfig)

    @property
    def llm_enabled(self) -> bool:
        """``True`` when an API key for the language model is configured."""
        return bool(self.llm_api_key)


# ── Validation ───────────────────────────────────────────────────────────


def _check(condition: bool, key: str, message: str) -> None:
    if not condition:
        raise ConfigurationError(f"{key}: {message}")


def validate_trading_config(cfg: TradingConfig) -> TradingConfig:
    """Validate trading limits and enumerations.

    Raises ``ConfigurationError`` naming the first invalid key.  Returns
    *cfg* unchanged so calls can be chained.
    """
    _check(0 <= cfg.confidence_threshold <= 100, "confidence_threshold",
           f"must be between 0 and 100, got {cfg.confidence_threshold}")
    _check(cfg.min_historical_signals >= 0, "min_historical_signals",
           f"must be >= 0, got {cfg.min_historical_signals}")
    _check(len(cfg.assets) > 0, "assets", "at least one asset is required")
    _check(len(cfg.timeframes) > 0, "timeframes", "at least one timeframe is required")
    _check(len(cfg.brokers) > 0, "brokers", "at least one broker is required")
    _check(len(cfg.signal_keywords) > 0, "signal_keywords",
           "at least one keyword is required")
    _check(cfg.default_broker in cfg.brokers, "default_broker",
           f"'{cfg.default_broker}' is not one of {', '.join(cfg.brokers)}")

    for broker in cfg.brokers:
        limits = cfg.broker_limits.get(broker)
        _check(limits is not None, "broker_limits",
               f"no limits configured for broker '{broker}'")
        _check(0 < limits.min_amount <= limits.max_amount, "broker_limits",
               f"'{broker}' amount bounds invalid "
               f"({limits.min_amount}..{limits.max_amount})")
        _check(0 < limits.min_expiration <= limits.max_expiration, "broker_limits",
               f"'{broker}' expiration bounds invalid "
               f"({limits.min_expiration}..{limits.max_expiration})")

    _check(cfg.max_trade_amount > 0, "max_trade_amount",
           f"must be positive, got {cfg.max_trade_amount}")
    for key in ("max_risk_per_trade_pct", "account_risk_limit_pct", "max_daily_loss_pct"):
        value = getattr(cfg, key)
        _check(0 < value <= 100, key, f"must be in (0, 100], got {value}")
    _check(cfg.max_concurrent_trades >= 1, "max_concurrent_trades",
           f"must be >= 1, got {cfg.max_concurrent_trades}")
    _check(cfg.max_daily_trades >= 1, "max_daily_trades",
           f"must be >= 1, got {cfg.max_daily_trades}")
    _check(cfg.cache_ttl_seconds > 0, "cache_ttl_seconds",
           f"must be positive, got {cfg.cache_ttl_seconds}")
    _check(cfg.cache_max_entries >= 1, "cache_max_entries",
           f"must be >= 1, got {cfg.cache_max_entries}")

    mg = cfg.martingale
    _check(mg.max_levels >= 1, "martingale.max_levels",
           f"must be >= 1, got {mg.max_levels}")
    _check(len(mg.multipliers) > 0, "martingale.multipliers",
           "at least one multiplier is required")
    _check(all(m > 0 for m in mg.multipliers), "martingale.multipliers",
           "all multipliers must be positive")
    return cfg


_FLOAT_SETTINGS = (
    "confidence_threshold", "max_trade_amount", "max_risk_per_trade_pct",
    "account_risk_limit_pct", "max_daily_loss_pct", "cache_ttl_seconds",
)
_INT_SETTINGS = (
    "min_historical_signals", "max_concurrent_trades", "max_daily_trades",
    "cache_max_entries",
)
_LIST_SETTINGS = ("assets", "timeframes", "brokers", "signal_keywords")


def _as_float(key: str, value) -> float:
    if isinstance(value, bool):
        raise ConfigurationError(f"{key}: expected a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{key}: expected a number, got {value!r}") from None


def _as_int(key: str, value) -> int:
    number = _as_float(key, value)
    if not number.is_integer():
        raise ConfigurationError(f"{key}: expected an integer, got {value!r}")
    return int(number)


def _as_bool(key: str, value) -> bool:
    if not isinstance(value, bool):
        raise ConfigurationError(f"{key}: expected true or false, got {value!r}")
    return value


def _as_str(key: str, value) -> str:
    if not isinstance(value, str):
        raise ConfigurationError(f"{key}: expected a string, got {value!r}")
    return value


def _as_list(key: str, value, item) -> tuple:
    # A bare string is a sequence of characters, never a list of values.
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
        raise ConfigurationError(f"{key}: expected a list, got {value!r}")
    return tuple(item(f"{key}[{i}]", v) for i, v in enumerate(value))


def _coerce_martingale(current: MartingaleConfig, value) -> MartingaleConfig:
    if isinstance(value, MartingaleConfig):
        return value
    if not isinstance(value, dict):
        raise ConfigurationError(f"martingale: expected an object, got {value!r}")
    unknown = sorted(set(value) - set(MartingaleConfig.__dataclass_fields__))
    if unknown:
        raise ConfigurationError(f"Unknown martingale setting(s): {', '.join(unknown)}")
    changes = {}
    if "enabled" in value:
        changes["enabled"] = _as_bool("martingale.enabled", value["enabled"])
    if "max_levels" in value:
        changes["max_levels"] = _as_int("martingale.max_levels", value["max_levels"])
    if "multipliers" in value:
        changes["multipliers"] = _as_list(
            "martingale.multipliers", value["multipliers"], _as_float
        )
    return replace(current, **changes)


def _coerce_broker_limits(value) -> dict[str, BrokerLimits]:
    if not isinstance(value, dict):
        raise ConfigurationError(f"broker_limits: expected an object, got {value!r}")
    limits: dict[str, BrokerLimits] = {}
    for name, entry in value.items():
        if isinstance(entry, BrokerLimits):
            limits[name] = entry
            continue
        key = f"broker_limits.{name}"
        if not isinstance(entry, dict):
            raise ConfigurationError(f"{key}: expected an object, got {entry!r}")
        missing = sorted(set(BrokerLimits.__dataclass_fields__) - set(entry))
        if missing:
            raise ConfigurationError(f"{key}: missing {', '.join(missing)}")
        limits[name] = BrokerLimits(
            min_amount=_as_float(f"{key}.min_amount", entry["min_amount"]),
            max_amount=_as_float(f"{key}.max_amount", entry["max_amount"]),
            min_expiration=_as_int(f"{key}.min_expiration", entry["min_expiration"]),
            max_expiration=_as_int(f"{key}.max_expiration", entry["max_expiration"]),
        )
    return limits


def update_trading_config(cfg: TradingConfig, **changes) -> TradingConfig:
    """Return a validated copy of *cfg* with *changes* applied.

    Values arrive untyped from the settings API and are coerced to the
    field's type first.  Nested martingale settings may be passed as a dict
    under ``martingale``.  Unknown keys and wrongly typed values raise
    ``ConfigurationError``.
    """
    known = set(TradingConfig.__dataclass_fields__)
    unknown = sorted(set(changes) - known)
    if unknown:
        raise ConfigurationError(f"Unknown setting(s): {', '.join(unknown)}")

    typed: dict = {}
    for key, value in changes.items():
        if key in _FLOAT_SETTINGS:
            typed[key] = _as_float(key, value)
        elif key in _INT_SETTINGS:
            typed[key] = _as_int(key, value)
        elif key in _LIST_SETTINGS:
            typed[key] = _as_list(key, value, _as_str)
        elif key == "default_broker":
            typed[key] = _as_str(key, value)
        elif key == "martingale":
            typed[key] = _coerce_martingale(cfg.martingale, value)
        elif key == "broker_limits":
            typed[key] = _coerce_broker_limits(value)

    try:
        return validate_trading_config(replace(cfg, **typed))
    except TypeError as exc:
        raise ConfigurationError(f"Invalid setting value: {exc}") from None


_CHANNEL_SETTINGS = ("name", "broker", "min_confidence", "martingale_enabled")


def validate_channel_changes(changes: dict, trading: TradingConfig) -> dict:
    """Coerce and check channel settings, returning the typed values.

    Accepts any subset of ``name``, ``broker`` (a supported broker or
    ``None``), ``min_confidence`` (0–100) and ``martingale_enabled``.
    Raises ``ConfigurationError`` naming the first invalid key.
    """
    unknown = sorted(set(changes) - set(_CHANNEL_SETTINGS))
    if unknown:
        raise ConfigurationError(f"Unknown channel setting(s): {', '.join(unknown)}")

    typed: dict = {}
    if "name" in changes:
        typed["name"] = _as_str("name", changes["name"])
    if "broker" in changes:
        broker = changes["broker"]
        if broker is not None and broker not in trading.brokers:
            raise ConfigurationError(f"broker: unsupported broker {broker!r}")
        typed["broker"] = broker
    if "min_confidence" in changes:
        value = _as_float("min_confidence", changes["min_confidence"])
        _check(0 <= value <= 100, "min_confidence",
               f"must be between 0 and 100, got {value}")
        typed["min_confidence"] = value
    if "martingale_enabled" in changes:
        typed["martingale_enabled"] = _as_bool(
            "martingale_enabled", changes["martingale_enabled"]
        )
    return typed


# ── Loading ──────────────────────────────────────────────────────────────


def _split_list(raw: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_float(name: str, default: str) -> float:
    raw = os.environ.get(name, default)
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name}: expected a number, got '{raw}'") from None


def _env_int(name: str, default: str) -> int:
    raw = os.environ.get(name, default)
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name}: expected an integer, got '{raw}'") from None


def load_trading_config() -> TradingConfig:
    """Build a ``TradingConfig`` from environment variables and validate it."""
    defaults = TradingConfig()
    multipliers_raw = os.environ.get("MARTINGALE_MULTIPLIERS")
    if multipliers_raw:
        try:
            multipliers = tuple(float(m) for m in _split_list(multipliers_raw))
        except ValueError:
            raise ConfigurationError(
                f"MARTINGALE_MULTIPLIERS: expected comma-separated numbers, "
                f"got '{multipliers_raw}'"
            ) from None
    else:
        multipliers = defaults.martingale.multipliers

    cfg = TradingConfig(
        confidence_threshold=_env_float("CONFIDENCE_THRESHOLD", "70"),
        min_historical_signals=_env_int("MIN_HISTORICAL_SIGNALS", "10"),
        assets=_split_list(os.environ.get("SUPPORTED_ASSETS", ",".join(DEFAULT_ASSETS))),
        timeframes=_split_list(
            os.environ.get("SUPPORTED_TIMEFRAMES", ",".join(DEFAULT_TIMEFRAMES))
        ),
        brokers=_split_list(os.environ.get("SUPPORTED_BROKERS", ",".join(DEFAULT_BROKERS))),
        default_broker=os.environ.get("DEFAULT_BROKER", "pocket_option"),
        max_trade_amount=_env_float("MAX_TRADE_AMOUNT", "50"),
        max_risk_per_trade_pct=_env_float("MAX_RISK_PER_TRADE_PCT", "2"),
        account_risk_limit_pct=_env_float("ACCOUNT_RISK_LIMIT_PCT", "10"),
        max_daily_loss_pct=_env_float("MAX_DAILY_LOSS_PCT", "50"),
        max_concurrent_trades=_env_int("MAX_CONCURRENT_TRADES", "5"),
        max_daily_trades=_env_int("MAX_DAILY_TRADES", "50"),
        cache_ttl_seconds=_env_float("CACHE_TTL_SECONDS", "300"),
        martingale=MartingaleConfig(
            enabled=os.environ.get("MARTINGALE_ENABLED", "false").lower() in ("1", "true", "yes"),
            max_levels=_env_int("MARTINGALE_MAX_LEVELS", "5"),
            multipliers=multipliers,
        ),
    )
    return validate_trading_config(cfg)


def load_config(
    env_path: str | None = None,
    require_telegram: bool = True,
) -> Config:
    """Load configuration from environment variables.

    Raises ``ConfigurationError`` with a message naming the missing variable
    when a required variable is absent.  With *require_telegram* off (replay
    runs) the bot token is optional and defaults to an empty string.
    """
    load_dotenv(dotenv_path=env_path)

    required = _REQUIRED_VARS if require_telegram else []
    missing = [v for v in required if not os.environ.get(v)]
    if missing:
        raise ConfigurationError(
            f"Missing required environment variable(s): {', '.join(missing)}"
        )

    return Config(
        telegram_bot_token=os.environ.get("TELEGRAM_BOT_TOKEN", ""),
        telegram_api_url=os.environ.get("TELEGRAM_API_URL", "https://api.telegram.org"),
        telegram_channel_ids=_split_list(os.environ.get("TELEGRAM_CHANNEL_IDS", "")),
        telegram_poll_interval=_env_float("TELEGRAM_POLL_INTERVAL", "2"),
        llm_api_key=os.environ.get("LLM_API_KEY", ""),
        llm_api_url=os.environ.get(
            "LLM_API_URL", "https://api.openai.com/v1/chat/completions"
        ),
        llm_model=os.environ.get("LLM_MODEL", "gpt-4o-mini"),
        llm_timeout_seconds=_env_float("LLM_TIMEOUT_SECONDS", "10"),
        llm_max_retries=_env_int("LLM_MAX_RETRIES", "3"),
        llm_retry_delay=_env_float("LLM_RETRY_DELAY", "1.0"),
        account_balance=_env_float("ACCOUNT_BALANCE", "1000"),
        worker_count=_env_int("WORKER_COUNT", "2"),
        db_path=os.environ.get("DB_PATH", "data/signaltrader.db"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        api_port=_env_int("API_PORT", "8080"),
        channels_path=os.environ.get("CHANNELS_PATH", "channels.json"),
        trading=load_trading_config(),
    )


def load_channels(
    path: str | pathlib.Path,
    trading: TradingConfig | None = None,
) -> list[ChannelSettings]:
    """Load pre-registered channels from a JSON file.

    The file holds ``{"channels": [{"channel_id": ..., ...}, ...]}``.
    A missing file yields an empty list.
    """
    path = pathlib.Path(path)
    if not path.is_file():
        return []

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"{path}: invalid JSON ({exc})") from exc

    trading = trading or TradingConfig()
    channels: list[ChannelSettings] = []
    for entry in data.get("channels", []):
        if "channel_id" not in entry:
            raise ConfigurationError(f"{path}: channel entry missing 'channel_id'")
        channel_id = str(entry["channel_id"])
        settings = {k: v for k, v in entry.items() if k != "channel_id"}
        try:
            typed = validate_channel_changes(settings, trading)
        except ConfigurationError as exc:
            raise ConfigurationError(f"channels.{channel_id}.{exc}") from None
        channels.append(ChannelSettings(channel_id=channel_id, **typed))
    return channels
