"""Contract tests run against every backend."""

import asyncio

import pytest

from trader_config.defaults import DEFAULT_COINS
from trader_config.exceptions import (
    BetaCodeUnavailableError,
    DuplicateError,
    NotFoundError,
    StoreTimeoutError,
)
from trader_config.models import TraderRecord, User
from trader_config.vault import ENVELOPE_PREFIX


async def make_trader(store, trader_id="t1", user_id="u1", **overrides):
    model_id = await store.upsert_ai_model(user_id, "deepseek", True, api_key="sk-deep")
    exchange_id = await store.upsert_exchange(
        user_id, "binance", True, api_key="bn-key", secret_key="bn-secret"
    )
    trader = TraderRecord(
        id=trader_id,
        user_id=user_id,
        name=f"Trader {trader_id}",
        ai_model_id=model_id,
        exchange_id=exchange_id,
        initial_balance=1000.0,
        **overrides,
    )
    await store.create_trader(trader)
    return trader


# ──────────────────────────────────────────────
# Users
# ──────────────────────────────────────────────


class TestUsers:
    @pytest.mark.asyncio
    async def test_create_and_lookup(self, store):
        await store.create_user(User(id="u1", email="u1@example.com", password_hash="h1"))

        by_email = await store.get_user_by_email("u1@example.com")
        by_id = await store.get_user_by_id("u1")
        assert by_email.id == "u1"
        assert by_id.email == "u1@example.com"
        assert by_id.created_at is not None
        assert await store.list_user_ids() == ["u1"]

    @pytest.mark.asyncio
    async def test_duplicate_email_rejected(self, store):
        await store.create_user(User(id="u1", email="same@example.com"))
        with pytest.raises(DuplicateError):
            await store.create_user(User(id="u2", email="same@example.com"))

    @pytest.mark.asyncio
    async def test_missing_user(self, store):
        with pytest.raises(NotFoundError):
            await store.get_user_by_email("nobody@example.com")
        with pytest.raises(NotFoundError):
            await store.set_user_otp_verified("nobody", True)

    @pytest.mark.asyncio
    async def test_otp_and_password_updates(self, store):
        await store.create_user(User(id="u1", email="u1@example.com", password_hash="old"))

        await store.set_user_otp_verified("u1", True)
        await store.update_user_password("u1", "new")

        user = await store.get_user_by_id("u1")
        assert user.otp_verified is True
        assert user.password_hash == "new"

    @pytest.mark.asyncio
    async def test_ensure_admin_user_once(self, store):
        assert await store.ensure_admin_user() is True
        assert await store.ensure_admin_user() is False
        admin = await store.get_user_by_id("admin")
        assert admin.otp_verified is True


# ──────────────────────────────────────────────
# AI models and exchanges
# ──────────────────────────────────────────────


class TestAIModels:
    @pytest.mark.asyncio
    async def test_upsert_creates_user_scoped_row(self, store):
        model_id = await store.upsert_ai_model("u1", "deepseek", True, api_key="sk-1")

        models = await store.list_ai_models("u1")
        assert len(models) == 1
        model = models[0]
        assert model.id == model_id
        assert model.model_id == "u1_deepseek"
        assert model.provider == "deepseek"
        assert model.name == "DeepSeek"
        assert model.api_key == "sk-1"
        assert model.enabled is True

    @pytest.mark.asyncio
    async def test_upsert_matches_legacy_provider_key(self, store):
        first = await store.upsert_ai_model("u1", "deepseek", True, api_key="sk-1")
        second = await store.upsert_ai_model("u1", "deepseek", False)

        assert first == second
        models = await store.list_ai_models("u1")
        assert len(models) == 1
        assert models[0].enabled is False
        assert models[0].api_key == "sk-1"

    @pytest.mark.asyncio
    async def test_upsert_unknown_provider_uses_default_name(self, store):
        await store.upsert_ai_model("u1", "u1_kimi", True, custom_model_name="kimi-k2")

        model = (await store.list_ai_models("u1"))[0]
        assert model.provider == "kimi"
        assert model.model_id == "u1_kimi"
        assert model.name == "kimi AI"
        assert model.custom_model_name == "kimi-k2"

    @pytest.mark.asyncio
    async def test_create_duplicate_rejected(self, store):
        await store.create_ai_model("u1", "custom", "Custom", "custom")
        with pytest.raises(DuplicateError):
            await store.create_ai_model("u1", "custom", "Custom", "custom")

    @pytest.mark.asyncio
    async def test_ids_are_distinct_across_users(self, store):
        a = await store.upsert_ai_model("u1", "qwen", True)
        b = await store.upsert_ai_model("u2", "qwen", True)
        seeded = {m.id for m in await store.list_ai_models("default")}

        assert a != b
        assert not {a, b} & seeded


class TestExchanges:
    @pytest.mark.asyncio
    async def test_selective_secret_update(self, store, vault):
        store.set_credential_vault(vault)
        await store.upsert_exchange("u1", "binance", True, api_key="k1", secret_key="s1")

        await store.upsert_exchange("u1", "binance", False, api_key="", secret_key="s2")

        exchange = (await store.list_exchanges("u1"))[0]
        assert exchange.api_key == "k1"
        assert exchange.secret_key == "s2"
        assert exchange.enabled is False

    @pytest.mark.asyncio
    async def test_secrets_encrypted_at_rest(self, store, vault):
        store.set_credential_vault(vault)
        await store.upsert_exchange(
            "u1", "aster", True, aster_user="0xuser", aster_signer="0xsigner",
            aster_private_key="pk",
        )

        raw = await store._find_exchange("u1", "aster")
        assert raw.aster_private_key.startswith(ENVELOPE_PREFIX)
        assert raw.aster_user == "0xuser"

        exchange = (await store.list_exchanges("u1"))[0]
        assert exchange.aster_private_key == "pk"
        assert exchange.type == "dex"
        assert exchange.name == "Aster DEX"

    @pytest.mark.asyncio
    async def test_plaintext_rows_readable_after_enabling_vault(self, store, vault):
        await store.upsert_exchange("u1", "binance", True, api_key="plain")
        store.set_credential_vault(vault)

        assert (await store.list_exchanges("u1"))[0].api_key == "plain"

    @pytest.mark.asyncio
    async def test_unknown_exchange_fallback(self, store):
        await store.upsert_exchange("u1", "okx", True)
        exchange = (await store.list_exchanges("u1"))[0]
        assert exchange.name == "okx Exchange"
        assert exchange.type == "cex"


# ──────────────────────────────────────────────
# Traders
# ──────────────────────────────────────────────


class TestTraders:
    @pytest.mark.asyncio
    async def test_read_time_defaults(self, store):
        await make_trader(store)

        trader = (await store.list_traders("u1"))[0]
        assert trader.btc_eth_leverage == 5
        assert trader.altcoin_leverage == 5
        assert trader.order_strategy == "conservative_hybrid"
        assert trader.taker_fee_rate == 0.0004
        assert trader.limit_timeout_seconds == 60
        assert trader.timeframes == "4h"
        assert trader.system_prompt_template == "default"

    @pytest.mark.asyncio
    async def test_full_config_decrypts(self, store, vault):
        store.set_credential_vault(vault)
        await make_trader(store)

        full = await store.get_trader_full_config("u1", "t1")
        assert full.trader.id == "t1"
        assert full.ai_model.api_key == "sk-deep"
        assert full.exchange.api_key == "bn-key"
        assert full.exchange.secret_key == "bn-secret"

    @pytest.mark.asyncio
    async def test_full_config_missing_trader(self, store):
        with pytest.raises(NotFoundError):
            await store.get_trader_full_config("u1", "missing")

    @pytest.mark.asyncio
    async def test_full_config_missing_exchange(self, store):
        model_id = await store.upsert_ai_model("u1", "deepseek", True)
        await store.create_trader(
            TraderRecord(id="t1", user_id="u1", name="T", ai_model_id=model_id, exchange_id=999)
        )
        with pytest.raises(NotFoundError):
            await store.get_trader_full_config("u1", "t1")

    @pytest.mark.asyncio
    async def test_updates(self, store):
        trader = await make_trader(store)

        trader.name = "Renamed"
        trader.btc_eth_leverage = 10
        trader.trading_symbols = "BTCUSDT,ETHUSDT"
        await store.update_trader(trader)
        await store.set_trader_running("u1", "t1", True)
        await store.set_trader_custom_prompt("u1", "t1", "be careful", True)
        await store.set_trader_initial_balance("u1", "t1", 1234.5)

        updated = await store.get_trader("u1", "t1")
        assert updated.is_running is True
        assert updated.custom_prompt == "be careful"
        assert updated.override_base_prompt is True
        assert updated.initial_balance == 1234.5
        assert updated.name == "Renamed"
        assert updated.btc_eth_leverage == 10
        assert updated.symbols == ["BTCUSDT", "ETHUSDT"]

    @pytest.mark.asyncio
    async def test_updates_scoped_to_owner(self, store):
        await make_trader(store)
        with pytest.raises(NotFoundError):
            await store.set_trader_running("someone_else", "t1", True)

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await make_trader(store)
        await store.delete_trader("u1", "t1")

        assert await store.list_traders("u1") == []
        with pytest.raises(NotFoundError):
            await store.delete_trader("u1", "t1")

    @pytest.mark.asyncio
    async def test_duplicate_trader_rejected(self, store):
        trader = await make_trader(store)
        with pytest.raises(DuplicateError):
            await store.create_trader(trader)


class TestAggregates:
    @pytest.mark.asyncio
    async def test_custom_coins_default_setting(self, store):
        assert await store.list_custom_coins() == DEFAULT_COINS

    @pytest.mark.asyncio
    async def test_custom_coins_fallback_on_bad_setting(self, store):
        await store.set_system_config("default_coins", "not json")
        assert await store.list_custom_coins() == ["BTCUSDT", "ETHUSDT", "SOLUSDT", "BNBUSDT"]

    @pytest.mark.asyncio
    async def test_custom_coins_from_traders(self, store):
        await make_trader(store, "t1", trading_symbols="btc, ethusdt")
        await make_trader(store, "t2", trading_symbols="ETHUSDT,sol")

        assert await store.list_custom_coins() == ["BTCUSDT", "ETHUSDT", "SOLUSDT"]

    @pytest.mark.asyncio
    async def test_active_timeframes(self, store):
        assert await store.list_active_timeframes() == ["15m", "1h", "4h"]

        await make_trader(store, "t1", timeframes="5m,1h")
        await make_trader(store, "t2", timeframes="1h,1d")
        await make_trader(store, "t3", timeframes="30m")
        await store.set_trader_running("u1", "t1", True)
        await store.set_trader_running("u1", "t2", True)

        assert await store.list_active_timeframes() == ["1d", "1h", "5m"]


# ──────────────────────────────────────────────
# System config, signal sources, beta codes, decision logs
# ──────────────────────────────────────────────


class TestSystemConfig:
    @pytest.mark.asyncio
    async def test_absent_key_returns_default(self, store):
        assert await store.get_system_config("does_not_exist") == ""
        assert await store.get_system_config("does_not_exist", "x") == "x"

    @pytest.mark.asyncio
    async def test_set_overwrites(self, store):
        await store.set_system_config("beta_mode", "true")
        assert await store.get_system_config("beta_mode") == "true"

        entry = await store.get_system_config_entry("beta_mode")
        assert entry.key == "beta_mode"
        assert entry.value == "true"
        assert entry.updated_at is not None
        assert await store.get_system_config_entry("does_not_exist") is None

    @pytest.mark.asyncio
    async def test_ensure_does_not_overwrite(self, store):
        await store.set_system_config("custom", "1")
        assert await store.ensure_system_config("custom", "2") is False
        assert await store.get_system_config("custom") == "1"


class TestSignalSources:
    @pytest.mark.asyncio
    async def test_upsert(self, store):
        with pytest.raises(NotFoundError):
            await store.get_signal_source("u1")

        await store.create_or_update_signal_source("u1", "http://pool", "http://oi")
        await store.create_or_update_signal_source("u1", "http://pool2", "")

        source = await store.get_signal_source("u1")
        assert source.coin_pool_url == "http://pool2"
        assert source.oi_top_url == ""


class TestBetaCodes:
    @pytest.mark.asyncio
    async def test_load_and_claim_once(self, store):
        loaded = await store.load_beta_codes(["# invite list", "", " ABC123 ", "ABC123", "XYZ789"])
        assert loaded == 2

        assert await store.validate_beta_code("ABC123") is True
        await store.claim_beta_code("ABC123", "u1@example.com")
        assert await store.validate_beta_code("ABC123") is False

        claimed = await store.get_beta_code("ABC123")
        assert claimed.used is True
        assert claimed.used_by == "u1@example.com"
        assert claimed.used_at is not None
        assert (await store.get_beta_code("XYZ789")).available

        with pytest.raises(BetaCodeUnavailableError):
            await store.claim_beta_code("ABC123", "u2@example.com")
        assert (await store.get_beta_code("ABC123")).used_by == "u1@example.com"

        stats = await store.beta_code_stats()
        assert (stats.total, stats.used, stats.available) == (2, 1, 1)

    @pytest.mark.asyncio
    async def test_unknown_code(self, store):
        assert await store.get_beta_code("NOPE") is None
        assert await store.validate_beta_code("NOPE") is False
        with pytest.raises(BetaCodeUnavailableError):
            await store.claim_beta_code("NOPE", "u1@example.com")

    @pytest.mark.asyncio
    async def test_concurrent_claims_single_winner(self, store):
        await store.load_beta_codes(["RACE"])

        results = await asyncio.gather(
            *(store.claim_beta_code("RACE", f"u{i}@example.com") for i in range(5)),
            return_exceptions=True,
        )

        assert sum(1 for r in results if r is None) == 1
        assert all(isinstance(r, BetaCodeUnavailableError) for r in results if r is not None)

    @pytest.mark.asyncio
    async def test_load_from_file(self, store, tmp_path):
        codes = tmp_path / "codes.txt"
        codes.write_text("A1\nB2\n\n# comment\nA1\n")
        assert await store.load_beta_codes_from_file(codes) == 2
        assert await store.load_beta_codes_from_file(codes) == 0


class TestDecisionLogs:
    @pytest.mark.asyncio
    async def test_latest_n_oldest_first(self, store):
        for cycle in range(5):
            await store.save_decision_log("u1", "t1", {"cycle": cycle, "action": "hold"})
        await store.save_decision_log("u1", "other", {"cycle": 99})

        logs = await store.get_decision_logs("u1", "t1", limit=3)
        assert [entry.record["cycle"] for entry in logs] == [2, 3, 4]
        assert all(entry.trader_id == "t1" and entry.user_id == "u1" for entry in logs)
        assert logs[0].created_at is not None


# ──────────────────────────────────────────────
# Timeouts
# ──────────────────────────────────────────────


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_slow_backend_call_times_out(self, store, monkeypatch):
        async def slow_get_trader(user_id, trader_id):
            await asyncio.sleep(1)

        monkeypatch.setattr(store, "_get_trader", slow_get_trader)
        store.operation_timeout = 0.05

        with pytest.raises(StoreTimeoutError):
            await store.get_trader_full_config("u1", "t1")
