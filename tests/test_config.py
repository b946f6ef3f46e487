"""Tests for signaltrader.config — environment loading and validation."""

import json

import pytest

from signaltrader.config import (
    BrokerLimits,
    ConfigurationError,
    TradingConfig,
    load_channels,
    load_config,
    update_trading_config,
    validate_channel_changes,
    validate_trading_config,
)


_ENV_VARS = [
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_CHANNEL_IDS",
    "LLM_API_KEY",
    "LLM_MODEL",
    "ACCOUNT_BALANCE",
    "WORKER_COUNT",
    "DB_PATH",
    "CONFIDENCE_THRESHOLD",
    "MAX_TRADE_AMOUNT",
    "DEFAULT_BROKER",
    "SUPPORTED_BROKERS",
    "MARTINGALE_ENABLED",
    "MARTINGALE_MULTIPLIERS",
    "MAX_DAILY_LOSS_PCT",
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Ensure signaltrader env vars are cleared between tests.

    setenv first so monkeypatch restores the original state even for
    variables that load_dotenv writes straight into os.environ.
    """
    for var in _ENV_VARS:
        monkeypatch.setenv(var, "")
        monkeypatch.delenv(var)


def _missing_env(tmp_path) -> str:
    # Non-existent path so load_dotenv doesn't pick up a real .env file
    return str(tmp_path / "nonexistent.env")


class TestLoadConfig:
    def test_loads_required_vars(self, monkeypatch, tmp_path):
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")
        cfg = load_config(env_path=_missing_env(tmp_path))
        assert cfg.telegram_bot_token == "123:abc"

    def test_defaults(self, monkeypatch, tmp_path):
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")
        cfg = load_config(env_path=_missing_env(tmp_path))
        assert cfg.telegram_channel_ids == ()
        assert cfg.llm_model == "gpt-4o-mini"
        assert cfg.llm_enabled is False
        assert cfg.account_balance == 1000.0
        assert cfg.worker_count == 2
        assert cfg.db_path == "data/signaltrader.db"
        assert cfg.trading.confidence_threshold == 70.0
        assert cfg.trading.max_trade_amount == 50.0
        assert cfg.trading.max_daily_trades == 50
        assert cfg.trading.martingale.enabled is False

    def test_missing_token(self, tmp_path):
        with pytest.raises(ConfigurationError, match="TELEGRAM_BOT_TOKEN"):
            load_config(env_path=_missing_env(tmp_path))

    def test_replay_runs_without_token(self, tmp_path):
        cfg = load_config(env_path=_missing_env(tmp_path), require_telegram=False)
        assert cfg.telegram_bot_token == ""
        assert cfg.trading.confidence_threshold == 70.0

    def test_reads_env_file(self, tmp_path):
        env = tmp_path / ".env"
        env.write_text("TELEGRAM_BOT_TOKEN=from-file\nLLM_API_KEY=sk-test\n")
        cfg = load_config(env_path=str(env))
        assert cfg.telegram_bot_token == "from-file"
        assert cfg.llm_enabled is True

    def test_channel_ids_split(self, monkeypatch, tmp_path):
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "t")
        monkeypatch.setenv("TELEGRAM_CHANNEL_IDS", "-100111, -100222 ,")
        cfg = load_config(env_path=_missing_env(tmp_path))
        assert cfg.telegram_channel_ids == ("-100111", "-100222")

    def test_martingale_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "t")
        monkeypatch.setenv("MARTINGALE_ENABLED", "true")
        monkeypatch.setenv("MARTINGALE_MULTIPLIERS", "2, 2.5, 3")
        cfg = load_config(env_path=_missing_env(tmp_path))
        assert cfg.trading.martingale.enabled is True
        assert cfg.trading.martingale.multipliers == (2.0, 2.5, 3.0)

    def test_non_numeric_value(self, monkeypatch, tmp_path):
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "t")
        monkeypatch.setenv("MAX_TRADE_AMOUNT", "lots")
        with pytest.raises(ConfigurationError, match="MAX_TRADE_AMOUNT"):
            load_config(env_path=_missing_env(tmp_path))

    def test_invalid_limit_rejected_at_startup(self, monkeypatch, tmp_path):
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "t")
        monkeypatch.setenv("MAX_DAILY_LOSS_PCT", "150")
        with pytest.raises(ConfigurationError, match="max_daily_loss_pct"):
            load_config(env_path=_missing_env(tmp_path))

    def test_default_broker_must_be_supported(self, monkeypatch, tmp_path):
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "t")
        monkeypatch.setenv("DEFAULT_BROKER", "olymp_trade")
        with pytest.raises(ConfigurationError, match="default_broker"):
            load_config(env_path=_missing_env(tmp_path))


class TestValidation:
    def test_defaults_are_valid(self):
        cfg = TradingConfig()
        assert validate_trading_config(cfg) is cfg

    def test_threshold_out_of_range(self):
        with pytest.raises(ConfigurationError, match="confidence_threshold"):
            validate_trading_config(TradingConfig(confidence_threshold=120))

    def test_broker_without_limits(self):
        cfg = TradingConfig(brokers=("pocket_option", "olymp_trade"))
        with pytest.raises(ConfigurationError, match="olymp_trade"):
            validate_trading_config(cfg)

    def test_limits_for_unknown_broker(self):
        with pytest.raises(ConfigurationError, match="nowhere"):
            TradingConfig().limits_for("nowhere")


class TestUpdateTradingConfig:
    def test_returns_new_copy(self):
        cfg = TradingConfig()
        updated = update_trading_config(cfg, max_trade_amount=25)
        assert updated.max_trade_amount == 25
        assert cfg.max_trade_amount == 50.0

    def test_nested_martingale(self):
        updated = update_trading_config(
            TradingConfig(), martingale={"enabled": True, "multipliers": [2, 3]}
        )
        assert updated.martingale.enabled is True
        assert updated.martingale.multipliers == (2.0, 3.0)
        assert updated.martingale.max_levels == 5

    def test_broker_limits_from_dicts(self):
        limits = {
            name: {"min_amount": 1, "max_amount": 20, "min_expiration": 60,
                   "max_expiration": 3600}
            for name in TradingConfig().brokers
        }
        updated = update_trading_config(TradingConfig(), broker_limits=limits)
        assert updated.limits_for("quotex") == BrokerLimits(1, 20, 60, 3600)

    def test_unknown_key(self):
        with pytest.raises(ConfigurationError, match="leverage"):
            update_trading_config(TradingConfig(), leverage=30)

    def test_invalid_value(self):
        with pytest.raises(ConfigurationError, match="max_concurrent_trades"):
            update_trading_config(TradingConfig(), max_concurrent_trades=0)

    def test_numeric_strings_are_coerced(self):
        updated = update_trading_config(
            TradingConfig(), max_trade_amount="25", max_daily_trades="10"
        )
        assert updated.max_trade_amount == 25.0
        assert updated.max_daily_trades == 10

    @pytest.mark.parametrize("changes,key", [
        ({"max_trade_amount": "lots"}, "max_trade_amount"),
        ({"max_trade_amount": None}, "max_trade_amount"),
        ({"confidence_threshold": True}, "confidence_threshold"),
        ({"max_daily_trades": 2.5}, "max_daily_trades"),
        ({"cache_max_entries": [10]}, "cache_max_entries"),
        ({"assets": "EUR/USD"}, "assets"),
        ({"assets": ["EUR/USD", 3]}, "assets"),
        ({"brokers": {"quotex": 1}}, "brokers"),
        ({"default_broker": 5}, "default_broker"),
        ({"martingale": "on"}, "martingale"),
        ({"martingale": {"enabled": "yes"}}, "martingale.enabled"),
        ({"martingale": {"multipliers": "2,3"}}, "martingale.multipliers"),
        ({"martingale": {"max_levels": "many"}}, "martingale.max_levels"),
        ({"martingale": {"depth": 3}}, "depth"),
        ({"broker_limits": [1, 2]}, "broker_limits"),
        ({"broker_limits": {"quotex": {"min_amount": 1}}}, "broker_limits.quotex"),
        ({"broker_limits": {"quotex": {"min_amount": "x", "max_amount": 20,
                                       "min_expiration": 60, "max_expiration": 3600}}},
         "broker_limits.quotex.min_amount"),
    ])
    def test_wrong_types_rejected(self, changes, key):
        with pytest.raises(ConfigurationError, match=key):
            update_trading_config(TradingConfig(), **changes)

    def test_list_settings_become_tuples(self):
        updated = update_trading_config(TradingConfig(), assets=["EUR/USD", "GBP/USD"])
        assert updated.assets == ("EUR/USD", "GBP/USD")


class TestChannelChanges:
    def test_typed_values(self):
        typed = validate_channel_changes(
            {"name": "VIP", "broker": "quotex", "min_confidence": "75",
             "martingale_enabled": False},
            TradingConfig(),
        )
        assert typed == {"name": "VIP", "broker": "quotex", "min_confidence": 75.0,
                         "martingale_enabled": False}

    @pytest.mark.parametrize("changes,key", [
        ({"min_confidence": "high"}, "min_confidence"),
        ({"min_confidence": 101}, "min_confidence"),
        ({"martingale_enabled": "false"}, "martingale_enabled"),
        ({"broker": "olymp"}, "broker"),
        ({"name": None}, "name"),
        ({"total_count": 3}, "total_count"),
    ])
    def test_invalid_values(self, changes, key):
        with pytest.raises(ConfigurationError, match=key):
            validate_channel_changes(changes, TradingConfig())


class TestLoadChannels:
    def test_missing_file(self, tmp_path):
        assert load_channels(tmp_path / "channels.json") == []

    def test_loads_entries(self, tmp_path):
        path = tmp_path / "channels.json"
        path.write_text(json.dumps({
            "channels": [
                {"channel_id": -100123, "name": "VIP", "broker": "quotex",
                 "min_confidence": 80, "martingale_enabled": True},
                {"channel_id": "-100456"},
            ]
        }))
        channels = load_channels(path)
        assert len(channels) == 2
        assert channels[0].channel_id == "-100123"
        assert channels[0].broker == "quotex"
        assert channels[0].min_confidence == 80.0
        assert channels[0].martingale_enabled is True
        assert channels[1].broker is None
        assert channels[1].min_confidence == 70.0

    def test_unsupported_broker(self, tmp_path):
        path = tmp_path / "channels.json"
        path.write_text(json.dumps({"channels": [{"channel_id": "1", "broker": "nope"}]}))
        with pytest.raises(ConfigurationError, match="nope"):
            load_channels(path)

    def test_bad_channel_value(self, tmp_path):
        path = tmp_path / "channels.json"
        path.write_text(json.dumps({"channels": [{"channel_id": "1", "min_confidence": "high"}]}))
        with pytest.raises(ConfigurationError, match="channels.1.min_confidence"):
            load_channels(path)

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "channels.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError, match="invalid JSON"):
            load_channels(path)
