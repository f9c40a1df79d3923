from __future__ import annotations

import logging
import threading
import time
from collections.abc import Mapping
from typing import Any

from .keys import context_fingerprint

logger = logging.getLogger("rulecraft.rules.cache")


class EvaluationCache:
    """Memoizes condition results per (rule id, rule revision, context fingerprint).

    The cache is an optimization only. Overflow clears every entry at once
    instead of evicting selectively; TTL-expired entries are dropped lazily on
    read and eagerly on ``sweep``.
    """

    def __init__(self, max_entries: int = 1000, default_ttl_s: int = 300) -> None:
        self.max_entries = max(1, int(max_entries))
        self.default_ttl_s = max(1, int(default_ttl_s))
        self._data: dict[str, dict[str, tuple[float, object]]] = {}
        self._size = 0
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return self._size

    def get(
        self,
        rule_id: str,
        data: Mapping[str, Any],
        variables: Mapping[str, Any],
        revision: int = 0,
    ) -> object | None:
        key = context_fingerprint(rule_id, data, variables, revision)
        now = time.monotonic()
        with self._lock:
            bucket = self._data.get(rule_id)
            entry = bucket.get(key) if bucket else None
            if entry is None:
                self.misses += 1
                return None
            expires_at, value = entry
            if expires_at <= now:
                self._drop(rule_id, key)
                self.misses += 1
                return None
            self.hits += 1
            return value

    def put(
        self,
        rule_id: str,
        data: Mapping[str, Any],
        variables: Mapping[str, Any],
        value: object,
        ttl_s: int | None = None,
        revision: int = 0,
    ) -> None:
        key = context_fingerprint(rule_id, data, variables, revision)
        ttl_value = self.default_ttl_s if ttl_s is None else max(1, int(ttl_s))
        expires_at = time.monotonic() + ttl_value
        with self._lock:
            bucket = self._data.setdefault(rule_id, {})
            if key not in bucket:
                if self._size >= self.max_entries:
                    self._data.clear()
                    self._size = 0
                    bucket = self._data.setdefault(rule_id, {})
                    logger.debug("evaluation_cache_cleared", extra={"extra_fields": {"reason": "overflow"}})
                self._size += 1
            bucket[key] = (expires_at, value)

    def invalidate(self, rule_id: str) -> int:
        with self._lock:
            bucket = self._data.pop(rule_id, None)
            removed = len(bucket) if bucket else 0
            self._size -= removed
            return removed

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
            self._size = 0

    def sweep(self) -> int:
        """Drop expired entries; clear everything if still above the size threshold."""
        now = time.monotonic()
        removed = 0
        with self._lock:
            for rule_id in list(self._data):
                bucket = self._data[rule_id]
                for key in [key for key, (expires_at, _) in bucket.items() if expires_at <= now]:
                    del bucket[key]
                    removed += 1
                if not bucket:
                    del self._data[rule_id]
            self._size -= removed
            if self._size > self.max_entries:
                removed += self._size
                self._data.clear()
                self._size = 0
        if removed:
            logger.debug("evaluation_cache_swept", extra={"extra_fields": {"removed": removed}})
        return removed

    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def _drop(self, rule_id: str, key: str) -> None:
        bucket = self._data.get(rule_id)
        if bucket and bucket.pop(key, None) is not None:
            self._size -= 1
            if not bucket:
                del self._data[rule_id]
