"""
Guarded Apply Module - snapshot, confirm and roll back nftables rulesets

This module applies a candidate ruleset to the live firewall and keeps it
only if the operator proves they can still reach the machine.

SECURITY WARNING: This module modifies the live firewall of the host it runs
on. Keep a console session open when changing rules on a remote machine.
"""

from .confirmation import ConfirmationAnswer, ConfirmationPrompt
from .exceptions import (
    ApplyFailed,
    ApplyTimeout,
    GuardedApplyError,
    InvalidRuleset,
    OperatorDeclined,
    PermissionDenied,
    RollbackFailed,
    UnreadableDestination,
    UnreadableSource,
)
from .exit_codes import NftApplyExitCodes
from .guarded import (
    ApplyOptions,
    ApplyResult,
    ApplySession,
    GuardedApplier,
    SessionError,
    SessionOutcome,
    SessionState,
)
from .signals import SessionInterrupted, SignalGuard

__all__ = [
    # Core applier components
    "GuardedApplier",
    "ApplySession",
    "ApplyOptions",
    "ConfirmationPrompt",
    "SignalGuard",
    # Result classes
    "ApplyResult",
    "SessionState",
    "SessionOutcome",
    "ConfirmationAnswer",
    # Exit code system
    "NftApplyExitCodes",
    # Exception classes
    "GuardedApplyError",
    "PermissionDenied",
    "UnreadableDestination",
    "UnreadableSource",
    "InvalidRuleset",
    "ApplyTimeout",
    "ApplyFailed",
    "OperatorDeclined",
    "RollbackFailed",
    "SessionError",
    "SessionInterrupted",
]
