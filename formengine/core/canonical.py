from __future__ import annotations

import hashlib
import json
import re
import unicodedata
from typing import Any, Final, Iterable, Mapping, Optional


# Collapse multiple spaces.
_MULTI_SPACE: Final[re.Pattern[str]] = re.compile(r"\s+")

# Dummy / placeholder values that must be treated as EMPTY (canonicalized forms)
PLACEHOLDER_VALUES: Final[frozenset[str]] = frozenset(
    {
        "SELECT OR ENTER MANUALLY",
        "SELECT FROM LIST",
    }
)


def _strip_diacritics(text: str) -> str:
    """
    Remove diacritics from unicode text.
    Example: 'Bülent' -> 'Bulent'
    """
    normalized = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in normalized if not unicodedata.combining(ch))


def canonical_text(text: object) -> str:
    """
    Canonical text used for emptiness checks.

    - ASCII-only uppercase
    - Normalize whitespace
    - Trim
    """
    if text is None:
        return ""

    s = str(text).strip()
    if not s:
        return ""

    s = _strip_diacritics(s).upper()
    return _MULTI_SPACE.sub(" ", s).strip()


def is_blank(value: Any) -> bool:
    """
    True for None, empty/whitespace strings, placeholder values and empty
    collections. Zero and False are NOT blank.
    """
    if value is None:
        return True
    if isinstance(value, str):
        s = canonical_text(value)
        return s == "" or s in PLACEHOLDER_VALUES
    if isinstance(value, (list, tuple, set, frozenset, dict)):
        return len(value) == 0
    return False


def _default(obj: Any) -> Any:
    # Deterministic fallbacks for values json cannot encode natively.
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=repr)
    if isinstance(obj, bytes):
        return obj.hex()
    return repr(obj)


def canonical_json(value: Any) -> str:
    """
    Stable JSON text: sorted keys, no whitespace. Equal values always give
    equal text, which makes it usable inside cache keys.
    """
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=_default)


def stable_hash(*parts: Any) -> str:
    """SHA-256 hex digest of the canonical JSON of `parts`."""
    return hashlib.sha256(canonical_json(list(parts)).encode("utf-8")).hexdigest()


def context_signature(
    form_values: Mapping[str, Any],
    fields: Optional[Iterable[str]],
    *,
    exclude: Optional[str] = None,
) -> str:
    """
    Signature of the form values a rule reads.

    fields=None means the rule may read the whole form; every value except
    `exclude` (the field's own value, already part of the key) is included.
    """
    if fields is None:
        picked = {k: v for k, v in form_values.items() if k != exclude}
    else:
        picked = {f: form_values.get(f) for f in sorted(set(fields))}
    return canonical_json(picked)
