"""
Guarded apply error taxonomy.

Each error carries the exit code reported to the operator. Errors raised
before the candidate is loaded leave the live ruleset untouched; errors
raised after it trigger restoration of the snapshot.
"""

from nft_apply.utils.error_handling import ErrorSeverity, NftApplyError

from .exit_codes import NftApplyExitCodes


class GuardedApplyError(NftApplyError):
    """Base class for guarded apply failures"""

    exit_code = NftApplyExitCodes.GENERAL_ERROR


class PermissionDenied(GuardedApplyError):
    exit_code = NftApplyExitCodes.NOT_ROOT

    def __init__(self, message: str = "Please run as root"):
        super().__init__(message, guidance="Re-run with sudo or as the root user")


class UnreadableDestination(GuardedApplyError):
    exit_code = NftApplyExitCodes.DESTINATION_UNREADABLE

    def __init__(self, path, reason: str = "cannot be read"):
        self.path = path
        super().__init__(
            f"Destination {path} {reason}",
            guidance="The destination must already exist; create it with "
                     "'nft list ruleset > <destination>' first",
        )


class UnreadableSource(GuardedApplyError):
    exit_code = NftApplyExitCodes.SOURCE_UNREADABLE

    def __init__(self, path, reason: str = "cannot be read"):
        self.path = path
        super().__init__(f"Candidate {path} {reason}",
                         guidance="Check the --source path and its permissions")


class InvalidRuleset(GuardedApplyError):
    exit_code = NftApplyExitCodes.INVALID_RULESET

    def __init__(self, path, details: str = ""):
        self.path = path
        super().__init__(
            f"Candidate {path} failed validation, nothing was changed",
            guidance="Run 'nft -c -f <source>' to see the full error",
            technical_details=details or None,
        )


class ApplyTimeout(GuardedApplyError):
    exit_code = NftApplyExitCodes.APPLY_TIMEOUT

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Loading the candidate took longer than {timeout}s, previous ruleset restored",
            severity=ErrorSeverity.WARNING,
        )


class ApplyFailed(GuardedApplyError):
    exit_code = NftApplyExitCodes.APPLY_FAILED

    def __init__(self, details: str = ""):
        super().__init__(
            "Loading the candidate failed, previous ruleset restored",
            severity=ErrorSeverity.WARNING,
            technical_details=details or None,
        )


class OperatorDeclined(GuardedApplyError):
    exit_code = NftApplyExitCodes.OPERATOR_DECLINED

    def __init__(self, timed_out: bool):
        self.timed_out = timed_out
        reason = "No confirmation received in time" if timed_out else "Connectivity not confirmed"
        super().__init__(f"{reason}, previous ruleset restored", severity=ErrorSeverity.WARNING)


class RollbackFailed(GuardedApplyError):
    exit_code = NftApplyExitCodes.ROLLBACK_FAILED

    def __init__(self, details: str = ""):
        super().__init__(
            "Restoring the previous ruleset FAILED, the firewall state is unknown",
            severity=ErrorSeverity.FATAL,
            guidance="Inspect 'nft list ruleset' from the console and restore manually",
            technical_details=details or None,
        )
