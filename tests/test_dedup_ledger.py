import json

import pytest

from app.services.dedup_ledger import (
    DedupLedger,
    DedupTier,
    LedgerConfig,
    build_dedup_keys,
    content_fingerprint,
)


@pytest.fixture
def ledger(store, clock):
    return DedupLedger(store, LedgerConfig(), clock=clock)


class TestKeyDerivation:
    def test_full_key_set(self, make_event, make_rule):
        keys = build_dedup_keys(make_event(), make_rule(), reply_text="Hi!")

        assert keys == {
            "trigger:c1",
            "actor_rule:U1:rule-1",
            f"content:U1:{content_fingerprint('Hi!')}",
            "global:c1:U1",
        }

    def test_continuation_uses_trigger_keys_only(self, make_event, make_rule):
        keys = build_dedup_keys(make_event(), make_rule(), reply_text="Hi!", continuation=True)
        assert keys == {"trigger:c1", "global:c1:U1"}

    def test_fingerprint_uses_first_50_normalized_chars(self):
        base = "A" * 50
        assert content_fingerprint(base + " tail one") == content_fingerprint(base.lower() + " tail two")
        assert content_fingerprint("Hello   world") == content_fingerprint("hello world")
        assert content_fingerprint("hello") != content_fingerprint("goodbye")
        assert len(content_fingerprint("x")) == 16


class TestGate:
    @pytest.mark.asyncio
    async def test_unknown_keys_may_proceed(self, ledger):
        assert await ledger.may_proceed({"trigger:c1"}) is True

    @pytest.mark.asyncio
    async def test_marked_key_blocks_within_cooldown(self, ledger, clock):
        await ledger.mark_done({"trigger:c1"})
        clock.advance(5)
        assert await ledger.may_proceed({"trigger:c1"}) is False

    @pytest.mark.asyncio
    async def test_any_blocking_key_blocks(self, ledger):
        await ledger.mark_done({"global:c1:U1"})
        assert await ledger.may_proceed({"trigger:c2", "global:c1:U1"}) is False

    @pytest.mark.asyncio
    async def test_tier_cooldowns_differ(self, ledger, clock):
        await ledger.mark_done({"trigger:c1", "content:U1:abc"})
        clock.advance(31)
        assert await ledger.may_proceed({"content:U1:abc"}) is True
        assert await ledger.may_proceed({"trigger:c1"}) is False
        clock.advance(30)
        assert await ledger.may_proceed({"trigger:c1"}) is True

    @pytest.mark.asyncio
    async def test_configured_cooldowns(self, store, clock):
        config = LedgerConfig(tier_cooldowns={DedupTier.SHORT: 5, DedupTier.CONTENT: 5, DedupTier.GLOBAL: 5})
        ledger = DedupLedger(store, config, clock=clock)
        await ledger.mark_done({"trigger:c1"})
        clock.advance(6)
        assert await ledger.may_proceed({"trigger:c1"}) is True

    @pytest.mark.asyncio
    async def test_corrupt_entry_is_ignored(self, ledger, store):
        await store.set("dedup:trigger:c1", "{not json")
        assert await ledger.may_proceed({"trigger:c1"}) is True


class TestIdempotentMark:
    @pytest.mark.asyncio
    async def test_marking_twice_does_not_extend_blocking(self, ledger, clock):
        keys = {"trigger:c1"}
        await ledger.mark_done(keys)
        clock.advance(40)
        await ledger.mark_done(keys)
        clock.advance(21)

        assert await ledger.may_proceed(keys) is True

    @pytest.mark.asyncio
    async def test_remark_bumps_hit_count(self, ledger, store, clock):
        await ledger.mark_done({"trigger:c1"})
        clock.advance(1)
        await ledger.mark_done({"trigger:c1"})

        entry = json.loads(await store.get("dedup:trigger:c1"))
        assert entry["hit_count"] == 2
        assert entry["timestamp"] == clock() - 1

    @pytest.mark.asyncio
    async def test_mark_after_cooldown_restarts_window(self, ledger, clock):
        await ledger.mark_done({"trigger:c1"})
        clock.advance(61)
        await ledger.mark_done({"trigger:c1"})
        clock.advance(30)
        assert await ledger.may_proceed({"trigger:c1"}) is False

    @pytest.mark.asyncio
    async def test_mark_accepts_generators(self, ledger):
        await ledger.mark_done(key for key in ["trigger:c1", "global:c1:U1"])
        assert await ledger.may_proceed({"global:c1:U1"}) is False


class TestKillSwitch:
    @pytest.mark.asyncio
    async def test_disabled_ledger_bypasses_gate(self, store, clock, caplog):
        ledger = DedupLedger(store, LedgerConfig(disabled=True), clock=clock)
        await ledger.mark_done({"trigger:c1"})

        with caplog.at_level("WARNING"):
            assert await ledger.may_proceed({"trigger:c1"}) is True
        assert any("bypassed" in record.getMessage() for record in caplog.records)

    def test_disabled_ledger_warns_on_construction(self, store, clock, caplog):
        with caplog.at_level("WARNING"):
            DedupLedger(store, LedgerConfig(disabled=True), clock=clock)
        assert any("DISABLED" in record.getMessage() for record in caplog.records)


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_stats(self, ledger, clock):
        await ledger.mark_done({"trigger:c1", "content:U1:abc"})
        clock.advance(40)

        stats = await ledger.stats()

        assert stats["disabled"] is False
        assert stats["cooldown"] == {"short": 60.0, "content": 30.0, "global": 30.0}
        assert stats["active"] == 1
        assert stats["active_keys"][0]["key"] == "trigger:c1"
        assert stats["active_keys"][0]["remaining_seconds"] == 20.0

    @pytest.mark.asyncio
    async def test_clear(self, ledger):
        await ledger.mark_done({"trigger:c1", "global:c1:U1"})

        assert await ledger.clear() == 2
        assert await ledger.may_proceed({"trigger:c1", "global:c1:U1"}) is True

    @pytest.mark.asyncio
    async def test_sweep_drops_elapsed_entries(self, store, clock):
        ledger = DedupLedger(store, LedgerConfig(), clock=clock)
        await ledger.mark_done({"trigger:c1"})
        # Entry stored without TTL so only the sweep can remove it.
        await store.set("dedup:global:c9:U9", json.dumps({"timestamp": clock() - 100, "hit_count": 1}))

        assert await ledger.sweep() == 1
        assert await store.get("dedup:global:c9:U9") is None
        assert await store.get("dedup:trigger:c1") is not None
