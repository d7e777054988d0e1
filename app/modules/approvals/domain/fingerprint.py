from __future__ import annotations

import hashlib
import json
from enum import Enum
from typing import Any, Mapping, Sequence


def _json_default(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Unsupported type for canonical json: {type(value)}")


def canonical_json(value: Any) -> str:
    """
    Stable serialisation: object keys sorted at every depth, arrays keep
    their order, no insignificant whitespace, non-ASCII emitted verbatim.
    """
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_json_default,
    )


def compute_request_hash(
    action_type: str | Enum,
    endpoint: str,
    method: str,
    target_ids: Sequence[str],
    payload: Mapping[str, Any] | None = None,
) -> str:
    """
    SHA-256 binding an approval to one exact action.

    ``target_ids`` is sorted first so callers may supply targets in any order;
    the method is compared case-insensitively.
    """
    action_value = action_type.value if isinstance(action_type, Enum) else str(action_type)
    canonical = {
        "actionType": action_value,
        "endpoint": endpoint,
        "method": method.upper(),
        "targetIds": sorted(target_ids),
        "payload": dict(payload or {}),
    }
    return hashlib.sha256(canonical_json(canonical).encode("utf-8")).hexdigest()
