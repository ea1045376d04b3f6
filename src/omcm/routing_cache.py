"""In-memory LRU + TTL cache of routing decisions.

Purely a speed optimization: clearing it never changes a decision, only
whether the decision is recomputed.
"""

from __future__ import annotations

import copy
import json
import time
from collections import OrderedDict
from typing import Any, Callable

DEFAULT_MAX_ENTRIES = 100
DEFAULT_TTL_SECONDS = 30.0


class LRUCache:
    """Bounded LRU map whose entries expire ``ttl`` seconds after being set."""

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_entries = max(1, max_entries)
        self.ttl = ttl
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, stored_at: float) -> bool:
        return self._clock() - stored_at > self.ttl

    def get(self, key: str) -> Any | None:
        item = self._entries.get(key)
        if item is None:
            return None
        stored_at, value = item
        if self._expired(stored_at):
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return value

    def set(self, key: str, value: Any) -> None:
        if key in self._entries:
            del self._entries[key]
        while len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)
        self._entries[key] = (self._clock(), value)

    def has(self, key: str) -> bool:
        item = self._entries.get(key)
        if item is None:
            return False
        if self._expired(item[0]):
            del self._entries[key]
            return False
        return True

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def keys(self) -> list[str]:
        return list(self._entries)

    def prune(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        expired = [key for key, (stored_at, _) in self._entries.items() if self._expired(stored_at)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def stats(self) -> dict[str, Any]:
        return {
            "size": len(self._entries),
            "max": self.max_entries,
            "ttl": self.ttl,
            "utilization": len(self._entries) / self.max_entries * 100,
        }


def _usage(value: Any) -> float:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return 0
    return value


def context_key(agent_type: str, context: dict | None) -> str:
    """Cache key from the routing-relevant subset of ``context``.

    Usage percentages are keyed exactly. The free-text prompt is never
    part of the key, only whether it counts as a large task.
    """
    context = context or {}
    usage = context.get("usage") or {}
    mode = context.get("mode") or {}
    task = context.get("task") or {}
    relevant = {
        "usage5h": _usage(usage.get("fiveHour")),
        "usageWk": _usage(usage.get("weekly")),
        "sessionLevel": usage.get("sessionLevel") or 1,
        "sessionThreshold": bool(usage.get("sessionThresholdReached")),
        "ecomode": bool(mode.get("ecomode")),
        "ralph": bool(mode.get("ralph")),
        "fusionMode": mode.get("fusion"),
        "fusionEnabled": mode.get("fusionEnabled"),
        "fallbackActive": bool(mode.get("fallbackActive")),
        "fusionDefault": bool(mode.get("fusionDefault")),
        "delegationDeferred": bool(mode.get("delegationDeferred")),
        "taskComplexity": task.get("complexity") or "medium",
        "largeTask": bool(task.get("large")),
    }
    return f"{agent_type}:{json.dumps(relevant, sort_keys=True)}"


class RoutingCache:
    """Routing decisions cached by agent type and routing context."""

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._lru = LRUCache(max_entries=max_entries, ttl=ttl, clock=clock)
        self.hits = 0
        self.misses = 0

    def get(self, agent_type: str, context: dict | None) -> dict | None:
        decision = self._lru.get(context_key(agent_type, context))
        if decision is None:
            self.misses += 1
            return None
        self.hits += 1
        return copy.deepcopy(decision)

    def set(self, agent_type: str, context: dict | None, decision: dict) -> None:
        entry = copy.deepcopy(decision)
        entry["cachedAt"] = int(time.time() * 1000)
        self._lru.set(context_key(agent_type, context), entry)

    def invalidate_agent(self, agent_type: str) -> int:
        prefix = f"{agent_type}:"
        keys = [key for key in self._lru.keys() if key.startswith(prefix)]
        for key in keys:
            self._lru.delete(key)
        return len(keys)

    def invalidate_all(self) -> None:
        self._lru.clear()
        self.hits = 0
        self.misses = 0

    def prune(self) -> int:
        return self._lru.prune()

    def stats(self) -> dict[str, Any]:
        total = self.hits + self.misses
        return {
            **self._lru.stats(),
            "hits": self.hits,
            "misses": self.misses,
            "hitRate": self.hits / total * 100 if total else 0,
        }
