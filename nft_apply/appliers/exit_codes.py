"""
nft-apply Exit Codes - Standardized Exit Codes for Operators and Automation

Every terminal state of a guarded apply session maps to a distinct exit code
so that wrapper scripts can tell a clean rollback from a rejected candidate.

IMPORTANT: Codes 3-8 are relied upon by existing wrapper scripts. Do not
renumber them.
"""

import logging
from enum import IntEnum
from typing import Optional


class NftApplyExitCodes(IntEnum):
    """
    Standardized exit codes for nft-apply

    Exit codes follow UNIX conventions:
    - 0: Success
    - 1-2: General/usage errors
    - 3-63: Application-specific errors
    - 128+: Signal termination
    """

    # Success
    SUCCESS = 0

    # General/Usage Errors (1-2)
    GENERAL_ERROR = 1
    INVALID_USAGE = 2

    # Pre-mutation failures, live ruleset untouched (3-6)
    NOT_ROOT = 3
    DESTINATION_UNREADABLE = 4
    SOURCE_UNREADABLE = 5
    INVALID_RULESET = 6

    # Post-mutation failures, snapshot restored (7-9)
    APPLY_TIMEOUT = 7
    OPERATOR_DECLINED = 8
    APPLY_FAILED = 9

    # Restoration itself failed, manual intervention needed
    ROLLBACK_FAILED = 10

    # Signal Termination (128+)
    SIGHUP_TERMINATION = 129   # SIGHUP = 1, 128+1
    SIGINT_TERMINATION = 130   # Ctrl+C (SIGINT = 2, 128+2)
    SIGTERM_TERMINATION = 143  # SIGTERM = 15, 128+15


EXIT_CODE_DESCRIPTIONS = {
    NftApplyExitCodes.SUCCESS: "Candidate ruleset applied and persisted",
    NftApplyExitCodes.GENERAL_ERROR: "General error occurred",
    NftApplyExitCodes.INVALID_USAGE: "Invalid command line usage or configuration",
    NftApplyExitCodes.NOT_ROOT: "Not running as root",
    NftApplyExitCodes.DESTINATION_UNREADABLE: "Destination ruleset file unreadable",
    NftApplyExitCodes.SOURCE_UNREADABLE: "Candidate ruleset file unreadable",
    NftApplyExitCodes.INVALID_RULESET: "Candidate ruleset failed validation",
    NftApplyExitCodes.APPLY_TIMEOUT: "Apply timed out, previous ruleset restored",
    NftApplyExitCodes.OPERATOR_DECLINED: "Not confirmed, previous ruleset restored",
    NftApplyExitCodes.APPLY_FAILED: "Apply failed, previous ruleset restored",
    NftApplyExitCodes.ROLLBACK_FAILED: "Restoring the previous ruleset failed",
    NftApplyExitCodes.SIGHUP_TERMINATION: "Terminal hung up",
    NftApplyExitCodes.SIGINT_TERMINATION: "Interrupted by user (Ctrl+C)",
    NftApplyExitCodes.SIGTERM_TERMINATION: "Terminated by system signal",
}


def get_exit_code_description(exit_code: NftApplyExitCodes) -> str:
    """
    Get human-readable description for exit code

    Args:
        exit_code: nft-apply exit code

    Returns:
        Description string
    """
    return EXIT_CODE_DESCRIPTIONS.get(exit_code, f"Unknown exit code: {int(exit_code)}")


def signal_exit_code(signum: int) -> int:
    """Standard Unix exit code for termination by signal"""
    return 128 + signum


def log_exit(exit_code: int, message: str = "", logger: Optional[logging.Logger] = None) -> int:
    """
    Log the final exit code with a level matching its class

    Returns:
        The exit code, for `return log_exit(...)` call sites
    """
    logger = logger or logging.getLogger("nft-apply.exit")
    try:
        description = get_exit_code_description(NftApplyExitCodes(exit_code))
    except ValueError:
        description = f"exit code {exit_code}"

    detail = f"{description}: {message}" if message else description

    if exit_code == NftApplyExitCodes.SUCCESS:
        logger.info(f"nft-apply completed successfully ({detail})")
    elif exit_code == NftApplyExitCodes.ROLLBACK_FAILED:
        logger.critical(f"nft-apply exit {exit_code}: {detail}")
    elif exit_code >= 128:
        logger.warning(f"nft-apply terminated by signal ({exit_code}): {detail}")
    else:
        logger.error(f"nft-apply exit {exit_code}: {detail}")

    return exit_code
