"""Deterministic cache key derivation.

Two logically identical queries must map to the same key regardless of
parameter order or call-site-only flags.
"""

import hashlib
import json
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable, Mapping

TENANT_FIELD = "__tenant__"


def _normalize_value(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            str(k): _normalize_value(v)
            for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))
            if v is not None
        }
    if isinstance(value, (set, frozenset)):
        items = [_normalize_value(v) for v in value]
        return sorted(items, key=lambda v: json.dumps(v, sort_keys=True, default=str))
    if isinstance(value, (list, tuple)):
        return [_normalize_value(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def normalize_query(
    query: Mapping[str, Any],
    ignored_fields: Iterable[str] = (),
) -> dict[str, Any]:
    """Strip call-site-only fields and canonicalize a query descriptor.

    Top-level fields named in ``ignored_fields`` and ``None`` values are
    dropped, mapping keys are sorted recursively and sets become sorted
    lists. Sequence order is preserved.
    """
    ignored = set(ignored_fields)
    stripped = {k: v for k, v in query.items() if k not in ignored}
    return _normalize_value(stripped)


def derive_cache_key(
    query: Mapping[str, Any],
    namespace: str = "query",
    tenant: str = "default",
    ignored_fields: Iterable[str] = (),
) -> str:
    """Hash a normalized query plus tenant discriminator into a cache key.

    Returns:
        Key in the format ``{namespace}:{sha256 hex}``
    """
    normalized = normalize_query(query, ignored_fields)
    normalized[TENANT_FIELD] = tenant
    encoded = json.dumps(
        normalized,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    digest = hashlib.sha256(encoded.encode("utf-8")).hexdigest()
    return f"{namespace}:{digest}"
