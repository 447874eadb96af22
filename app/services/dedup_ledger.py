"""Multi-key deduplication ledger guarding outbound replies.

A webhook may be redelivered, and one user action can arrive in slightly
different shapes, so no single key identifies "the same trigger". Every
dispatch derives several keys and is blocked while any of them is inside its
tier cooldown.

Check-then-mark is not atomic across processes: run a single worker process
against one ledger, or back the store with an atomic compare-and-set.
"""

from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from app.logging_config import get_logger
from app.schemas.events import InboundEvent
from app.services.automation_rules import AutomationRule
from app.services.kv_store import Clock, KeyValueStore

logger = get_logger("dedup_ledger")

CONTENT_PREFIX_CHARS = 50


class DedupTier(str, Enum):
    SHORT = "short"
    CONTENT = "content"
    GLOBAL = "global"


KEY_KIND_TIERS = {
    "trigger": DedupTier.SHORT,
    "actor_rule": DedupTier.SHORT,
    "content": DedupTier.CONTENT,
    "global": DedupTier.GLOBAL,
}

DEFAULT_TIER_COOLDOWNS = {
    DedupTier.SHORT: 60.0,
    DedupTier.CONTENT: 30.0,
    DedupTier.GLOBAL: 30.0,
}


@dataclass(frozen=True)
class LedgerConfig:
    disabled: bool = False
    tier_cooldowns: dict[DedupTier, float] = field(default_factory=lambda: dict(DEFAULT_TIER_COOLDOWNS))
    key_prefix: str = "dedup:"

    @classmethod
    def from_settings(cls, settings) -> "LedgerConfig":
        return cls(
            disabled=settings.dedup_disabled,
            tier_cooldowns={
                DedupTier.SHORT: settings.dedup_short_cooldown_seconds,
                DedupTier.CONTENT: settings.dedup_content_cooldown_seconds,
                DedupTier.GLOBAL: settings.dedup_global_cooldown_seconds,
            },
        )


def content_fingerprint(text: str) -> str:
    head = " ".join((text or "").split()).lower()[:CONTENT_PREFIX_CHARS]
    return hashlib.sha256(head.encode("utf-8")).hexdigest()[:16]


def build_dedup_keys(
    event: InboundEvent,
    rule: AutomationRule,
    *,
    reply_text: str,
    continuation: bool = False,
) -> set[str]:
    """Derive the ledger keys for dispatching `rule` in response to `event`.

    Conversation continuations only carry the exact-trigger keys; the per-rule
    and per-content keys would otherwise throttle a live chat.
    """
    keys = {
        f"trigger:{event.trigger_id}",
        f"global:{event.trigger_id}:{event.actor_id}",
    }
    if not continuation:
        keys.add(f"actor_rule:{event.actor_id}:{rule.id}")
        keys.add(f"content:{event.actor_id}:{content_fingerprint(reply_text)}")
    return keys


class DedupLedger:
    def __init__(self, store: KeyValueStore, config: Optional[LedgerConfig] = None, clock: Clock = time.time):
        self.store = store
        self.config = config or LedgerConfig()
        self.clock = clock
        if self.config.disabled:
            logger.warning(
                "DEDUP LEDGER DISABLED: duplicate replies will not be suppressed",
                extra={"context": {"disabled": True}},
            )

    def cooldown_for(self, key: str) -> float:
        kind = key.split(":", 1)[0]
        tier = KEY_KIND_TIERS.get(kind, DedupTier.SHORT)
        return self.config.tier_cooldowns.get(tier, DEFAULT_TIER_COOLDOWNS[tier])

    def _storage_key(self, key: str) -> str:
        return f"{self.config.key_prefix}{key}"

    async def _read_entry(self, storage_key: str) -> Optional[dict]:
        raw = await self.store.get(storage_key)
        if raw is None:
            return None
        try:
            entry = json.loads(raw)
            return {"timestamp": float(entry["timestamp"]), "hit_count": int(entry.get("hit_count", 1))}
        except (ValueError, KeyError, TypeError):
            logger.warning("Corrupt ledger entry ignored", extra={"context": {"key": storage_key}})
            return None

    async def may_proceed(self, keys: Iterable[str]) -> bool:
        keys = sorted(keys)
        if self.config.disabled:
            logger.warning("Dedup gate bypassed (ledger disabled)", extra={"context": {"keys": keys}})
            return True

        now = self.clock()
        for key in keys:
            entry = await self._read_entry(self._storage_key(key))
            if not entry:
                continue
            age = now - entry["timestamp"]
            cooldown = self.cooldown_for(key)
            if age < cooldown:
                logger.info(
                    "Dispatch blocked by dedup ledger",
                    extra={
                        "context": {
                            "key": key,
                            "age_seconds": round(age, 3),
                            "remaining_seconds": round(cooldown - age, 3),
                            "hit_count": entry["hit_count"],
                        }
                    },
                )
                return False
        return True

    async def mark_done(self, keys: Iterable[str]) -> None:
        """Stamp every key with the current time.

        A key still inside its cooldown keeps its original timestamp, so marking
        twice never extends how long it blocks.
        """
        keys = sorted(keys)
        now = self.clock()
        for key in keys:
            storage_key = self._storage_key(key)
            cooldown = self.cooldown_for(key)
            entry = await self._read_entry(storage_key)
            if entry and now - entry["timestamp"] < cooldown:
                entry["hit_count"] += 1
                remaining = cooldown - (now - entry["timestamp"])
            else:
                entry = {"timestamp": now, "hit_count": (entry["hit_count"] + 1) if entry else 1}
                remaining = cooldown
            await self.store.set(storage_key, json.dumps(entry), ttl_seconds=remaining)

        logger.info("Dedup keys marked", extra={"context": {"keys": keys}})

    async def stats(self) -> dict:
        now = self.clock()
        storage_keys = await self.store.scan(self.config.key_prefix)
        active = []
        for storage_key in sorted(storage_keys):
            entry = await self._read_entry(storage_key)
            if not entry:
                continue
            key = storage_key[len(self.config.key_prefix) :]
            age = now - entry["timestamp"]
            cooldown = self.cooldown_for(key)
            if age < cooldown:
                active.append(
                    {
                        "key": key,
                        "age_seconds": round(age, 3),
                        "remaining_seconds": round(cooldown - age, 3),
                        "hit_count": entry["hit_count"],
                    }
                )
        return {
            "size": len(storage_keys),
            "active": len(active),
            "active_keys": active,
            "cooldown": {tier.value: seconds for tier, seconds in self.config.tier_cooldowns.items()},
            "disabled": self.config.disabled,
        }

    async def clear(self) -> int:
        storage_keys = await self.store.scan(self.config.key_prefix)
        removed = await self.store.delete(*storage_keys) if storage_keys else 0
        logger.warning("Dedup ledger cleared", extra={"context": {"removed": removed}})
        return removed

    async def sweep(self) -> int:
        """Drop entries whose cooldown has elapsed."""
        now = self.clock()
        stale = []
        for storage_key in await self.store.scan(self.config.key_prefix):
            entry = await self._read_entry(storage_key)
            key = storage_key[len(self.config.key_prefix) :]
            if entry is None or now - entry["timestamp"] >= self.cooldown_for(key):
                stale.append(storage_key)
        if stale:
            await self.store.delete(*stale)
            logger.info("Dedup ledger swept", extra={"context": {"pruned": len(stale)}})
        return len(stale)
