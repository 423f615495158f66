import os
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, List, Mapping

from sandbox_orchestrator.domain.connections import REDACTED_PLACEHOLDER

DEFAULT_REPLACEMENT = "REDACTED"
SENSITIVE_KEY_PATTERN = re.compile(r"api[_-]?key|token|secret|password|credential|auth", re.IGNORECASE)
_DEFAULT_PATTERNS = (
    (r"sk-[A-Za-z0-9_-]{10,}", "sk-REDACTED"),
    (r"e2b_[A-Za-z0-9]{16,}", "e2b_REDACTED"),
    (r"gh[pousr]_[A-Za-z0-9]{20,}", "gh-REDACTED"),
    (r"(?i)\bBearer\s+[A-Za-z0-9\-._~+/]+=*\b", "Bearer REDACTED"),
    (
        r"(?i)\b([A-Z0-9_]*(?:api[_-]?key|token|secret|password|credential|auth))\b\s*[:=]\s*([^\s,;]+)",
        r"\1=REDACTED",
    ),
)
_EXTRA_PATTERNS_ENV = "REDACTION_EXTRA_PATTERNS"


@dataclass(frozen=True)
class RedactionResult:
    text: str
    redacted: bool
    replacements: int


def redact(text: str) -> str:
    return redact_with_audit(text).text


def redact_with_audit(text: str) -> RedactionResult:
    value = text or ""
    total = 0
    for regex, replacement in _compiled_patterns():
        value, count = regex.subn(replacement, value)
        total += count
    return RedactionResult(text=value, redacted=total > 0, replacements=total)


def redact_values(text: str, secrets: Mapping[str, str]) -> str:
    """Replace literal credential values in ``text``, then apply pattern redaction."""
    value = text or ""
    for secret in sorted((s for s in secrets.values() if s), key=len, reverse=True):
        if len(secret) >= 4:
            value = value.replace(secret, DEFAULT_REPLACEMENT)
    return redact(value)


def is_sensitive_key(key: str) -> bool:
    return bool(SENSITIVE_KEY_PATTERN.search(str(key or "")))


def redact_credentials(credentials: Mapping[str, Any]) -> Dict[str, str]:
    return {str(k): REDACTED_PLACEHOLDER for k in (credentials or {})}


def scrub_mapping(fields: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in (fields or {}).items():
        if is_sensitive_key(key):
            out[key] = REDACTED_PLACEHOLDER
        elif isinstance(value, Mapping):
            out[key] = scrub_mapping(value)
        else:
            out[key] = value
    return out


@lru_cache(maxsize=2)
def _compiled_patterns() -> List[tuple[re.Pattern[str], str]]:
    items: List[tuple[re.Pattern[str], str]] = [
        (re.compile(pattern), replacement) for pattern, replacement in _DEFAULT_PATTERNS
    ]
    extra_raw = (os.environ.get(_EXTRA_PATTERNS_ENV) or "").strip()
    if not extra_raw:
        return items
    for token in extra_raw.split(";;"):
        pattern = token.strip()
        if not pattern:
            continue
        try:
            items.append((re.compile(pattern), DEFAULT_REPLACEMENT))
        except re.error:
            continue
    return items
