"""
mykeys_core.utils
-----------------
Lightweight helpers for ids, timestamps, base64, identifier normalization and
canonical JSON serialization.
Canonical JSON keeps stored records byte-stable so conditional writes can
compare them exactly.
"""

from __future__ import annotations
import base64, json, time, uuid, re
from typing import Any, Dict, Optional

def b64e(b: bytes) -> str:
    return base64.b64encode(b).decode("ascii")

def b64d(s: str) -> bytes:
    return base64.b64decode(s.encode("ascii"))

def now_ts() -> str:
    # RFC3339 / ISO 8601 in UTC, second precision
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())

def new_id() -> str:
    return uuid.uuid4().hex

def canonical_json(obj: Dict[str, Any]) -> str:
    # Deterministic, minimal JSON for stored records
    return json.dumps(obj, separators=(",", ":"), sort_keys=True, ensure_ascii=False)

def normalize_identifier(identifier: Optional[str]) -> str:
    """Identifiers (emails, agent ids) compare case-insensitively."""
    return (identifier or "").strip().lower()

def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
