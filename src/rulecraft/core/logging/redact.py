from __future__ import annotations

import re
from collections.abc import Mapping

_SECRET_KEY_RE = re.compile(r"(TOKEN|KEY|SECRET|PASSWORD|AUTHORIZATION|COOKIE)", re.IGNORECASE)
_SECRET_VALUE_RE = re.compile(r"(?i)(token|key|secret|password)(\s*[=:]\s*)([^\s,;]+)")
_BEARER_RE = re.compile(r"(?i)(bearer\s+)([^\s]+)")


def redact_string(s: str) -> str:
    redacted = _SECRET_VALUE_RE.sub(lambda m: f"{m.group(1)}{m.group(2)}***", s)
    redacted = _BEARER_RE.sub(lambda m: f"{m.group(1)}***", redacted)
    return redacted


def redact_headers(headers: Mapping[str, object] | None) -> dict[str, object]:
    output: dict[str, object] = {}
    for key, value in (headers or {}).items():
        output[key] = "***" if _SECRET_KEY_RE.search(str(key)) else value
    return output
