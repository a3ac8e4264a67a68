"""
MyKeys Core Package
===================
Access-control and secret-organization core for the MyKeys key manager.

Provides:
- Rings (isolated tenant spaces) with an always-present admin
- Per-key visibility (shared / private) with creator-only grants
- Privacy Vault: per-user encrypted overlays (HKDF + AES-GCM)
- Progressive personas and verified-human agent delegation
- A single read-only access decision per request
- Pluggable key-value storage with conditional writes (SQLite default)
"""

from .access import AccessDecisionFunction, AccessContext, Allow, Deny, Operation, Target
from .config import Settings
from .errors import MyKeysError
from .persona import Persona
from .service import KeyringService, build_service

__all__ = [
    "AccessDecisionFunction",
    "AccessContext",
    "Allow",
    "Deny",
    "Operation",
    "Target",
    "Settings",
    "MyKeysError",
    "Persona",
    "KeyringService",
    "build_service",
]
