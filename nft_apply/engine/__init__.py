"""
System collaborators of the guarded apply: the nftables packet filter,
the systemd service manager, and the session-owned ruleset files.
"""

from .nftables import NftablesEngine, NftablesError, NftablesTimeout
from .ruleset import (
    FLUSH_DIRECTIVE,
    CandidateFile,
    RulesetSnapshot,
    ensure_flush_directive,
    has_flush_directive,
    persist_ruleset,
)
from .services import ServiceError, SuspensionRecord, SystemdServiceManager, suspended_service

__all__ = [
    "NftablesEngine",
    "NftablesError",
    "NftablesTimeout",
    "FLUSH_DIRECTIVE",
    "CandidateFile",
    "RulesetSnapshot",
    "ensure_flush_directive",
    "has_flush_directive",
    "persist_ruleset",
    "ServiceError",
    "SuspensionRecord",
    "SystemdServiceManager",
    "suspended_service",
]
