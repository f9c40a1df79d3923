from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from typing import Any


def canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=_fallback)


def _fallback(value: Any) -> str:
    pattern = getattr(value, "pattern", None)
    if isinstance(pattern, str):
        return f"re:{pattern}"
    return f"{type(value).__name__}:{value!r}"


def _stable_hash(parts: list[str]) -> str:
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def context_fingerprint(
    rule_id: str,
    data: Mapping[str, Any],
    variables: Mapping[str, Any],
    revision: int = 0,
) -> str:
    payload = canonical_json({"data": dict(data), "variables": dict(variables)})
    return _stable_hash(["rule_eval", rule_id, str(revision), payload])
