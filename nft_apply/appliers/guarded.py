"""
Guarded Configuration Apply

Applies a candidate nftables ruleset with an automatic way back:

    1. refuse to run without root
    2. refuse to run when the destination file cannot be read
    3. snapshot the live ruleset (the rollback target)
    4. refuse to run when the candidate cannot be read
    5. dry-run the candidate (`nft -c -f`), nothing changes when it fails
    6. normalize the candidate to start with `flush ruleset`
    7. suspend the intrusion-prevention service (resumed on every exit path)
    8. load the candidate, bounded by the timeout
    9. ask the operator to confirm a NEW connection works, bounded by the
       same timeout; no answer counts as "no"
   10. confirmed: copy the candidate over the destination
       otherwise: restore the snapshot
   11. restoration reloads the snapshot, which starts with `flush ruleset`,
       unconditionally

The live ruleset is always either exactly the pre-session ruleset or
exactly the candidate, because every load is a single nft transaction that
replaces the whole ruleset.
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List, Optional, Union

from nft_apply.engine.nftables import NftablesEngine, NftablesError, NftablesTimeout
from nft_apply.engine.ruleset import CandidateFile, RulesetSnapshot, persist_ruleset
from nft_apply.engine.services import SuspensionRecord, SystemdServiceManager, suspended_service
from nft_apply.utils.config import NftApplyConfig
from nft_apply.utils.error_handling import ParameterValidator
from nft_apply.utils.logging import StepReporter

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
from .signals import SignalGuard


class SessionState(Enum):
    """States of one apply session"""

    START = "start"
    VALIDATED = "validated"
    APPLIED = "applied"
    CONFIRMED = "confirmed"
    PERSISTED = "persisted"
    TIMED_OUT = "timed_out"
    DECLINED = "declined"
    ABORTED = "aborted"
    ROLLED_BACK = "rolled_back"
    # Early exits, live ruleset untouched
    PERMISSION_DENIED = "permission_denied"
    UNREADABLE_DESTINATION = "unreadable_destination"
    UNREADABLE_SOURCE = "unreadable_source"
    INVALID_RULESET = "invalid_ruleset"
    INTERRUPTED = "interrupted"
    FAILED = "failed"


class SessionOutcome(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.START: frozenset({
        SessionState.VALIDATED,
        SessionState.PERMISSION_DENIED,
        SessionState.UNREADABLE_DESTINATION,
        SessionState.UNREADABLE_SOURCE,
        SessionState.INVALID_RULESET,
        SessionState.INTERRUPTED,
        SessionState.FAILED,
    }),
    SessionState.VALIDATED: frozenset({
        SessionState.APPLIED,
        SessionState.TIMED_OUT,
        SessionState.ABORTED,
        SessionState.INTERRUPTED,
        SessionState.FAILED,
    }),
    SessionState.APPLIED: frozenset({
        SessionState.CONFIRMED,
        SessionState.TIMED_OUT,
        SessionState.DECLINED,
        SessionState.ABORTED,
    }),
    SessionState.CONFIRMED: frozenset({
        SessionState.PERSISTED,
        SessionState.ABORTED,
        SessionState.FAILED,
    }),
    SessionState.TIMED_OUT: frozenset({SessionState.ROLLED_BACK, SessionState.FAILED}),
    SessionState.DECLINED: frozenset({SessionState.ROLLED_BACK, SessionState.FAILED}),
    SessionState.ABORTED: frozenset({SessionState.ROLLED_BACK, SessionState.FAILED}),
}

# States that require the snapshot to be restored
_ROLLBACK_STATES = frozenset({SessionState.TIMED_OUT, SessionState.DECLINED, SessionState.ABORTED})

_OUTCOMES = {
    SessionState.PERSISTED: SessionOutcome.CONFIRMED,
    SessionState.ROLLED_BACK: SessionOutcome.ROLLED_BACK,
}


class SessionError(RuntimeError):
    """Raised on misuse of an ApplySession (second start, illegal transition)"""


@dataclass
class ApplySession:
    """Ephemeral state of one guarded apply, never persisted"""

    source: Path
    destination: Path
    timeout: int
    snapshot: Optional[RulesetSnapshot] = None
    candidate: Optional[CandidateFile] = None
    candidate_bytes: Optional[bytes] = None
    suspension: Optional[SuspensionRecord] = None
    state: SessionState = SessionState.START
    outcome: SessionOutcome = SessionOutcome.PENDING
    # Set just before the candidate load starts; from then on a restore is owed
    mutated: bool = False
    history: List[SessionState] = field(default_factory=list)
    started: bool = False

    def begin(self):
        if self.started:
            raise SessionError("Apply session already started, a session runs exactly once")
        self.started = True
        self.history.append(self.state)

    @property
    def terminal(self) -> bool:
        return self.state not in _TRANSITIONS

    def advance(self, new_state: SessionState):
        if not self.started:
            raise SessionError("Apply session not started")
        if new_state not in _TRANSITIONS.get(self.state, frozenset()):
            raise SessionError(f"Illegal transition {self.state.name} -> {new_state.name}")

        self.state = new_state
        self.history.append(new_state)
        if self.terminal:
            self.outcome = _OUTCOMES.get(new_state, SessionOutcome.FAILED)

    def release(self):
        """Delete the session's temp files"""
        for owned in (self.candidate, self.snapshot):
            if owned is not None:
                owned.release()


@dataclass
class ApplyOptions:
    """Explicit options for one run, built from configuration and CLI flags"""

    source: str
    destination: str
    timeout: int
    snapshot_dir: Optional[str] = None
    nft_path: str = "/usr/sbin/nft"
    ips_service: Optional[str] = "fail2ban"
    systemctl_path: str = "/usr/bin/systemctl"

    @classmethod
    def from_config(cls, config: NftApplyConfig) -> "ApplyOptions":
        ips = config.intrusion_prevention
        return cls(
            source=config.apply.source,
            destination=config.apply.destination,
            timeout=config.apply.timeout,
            snapshot_dir=config.apply.snapshot_dir,
            nft_path=config.nftables.nft_path,
            ips_service=ips.service if ips.suspend and ips.service else None,
            systemctl_path=ips.systemctl_path,
        )


@dataclass
class ApplyResult:
    """Result of a guarded apply"""

    state: SessionState
    outcome: SessionOutcome
    exit_code: int
    message: str
    error: Optional[GuardedApplyError] = None
    ips_resume_failed: bool = False
    history: List[SessionState] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.exit_code == NftApplyExitCodes.SUCCESS


def _describe_read_error(error: Exception) -> str:
    if isinstance(error, FileNotFoundError):
        return "does not exist"
    if isinstance(error, IsADirectoryError):
        return "is a directory"
    if isinstance(error, PermissionError):
        return "is not readable (permission denied)"
    if isinstance(error, UnicodeDecodeError):
        return "is not valid UTF-8 text"
    return f"cannot be read ({error})"


def _is_root() -> bool:
    return os.geteuid() == 0


class GuardedApplier:
    """
    Apply a candidate ruleset with snapshot, confirmation and rollback.

    Collaborators are injected so the protocol can run against fakes:
    `engine` needs list_ruleset/check_file/load_file, `services` needs
    is_active/is_enabled/start/stop, and `confirm` is called with the
    timeout and returns a ConfirmationAnswer.
    """

    def __init__(self, engine: NftablesEngine,
                 services: Optional[SystemdServiceManager] = None,
                 confirm: Optional[Callable[[float], ConfirmationAnswer]] = None,
                 reporter: Optional[StepReporter] = None,
                 signal_guard: Optional[SignalGuard] = None,
                 snapshot_dir: Optional[Union[str, Path]] = None,
                 ips_service: Optional[str] = "fail2ban",
                 is_privileged: Callable[[], bool] = _is_root,
                 logger: Optional[logging.Logger] = None):
        self.engine = engine
        self.services = services
        self.logger = logger or logging.getLogger(__name__)
        self.confirm = confirm or ConfirmationPrompt(logger=self.logger)
        self.reporter = reporter or StepReporter(logger=self.logger)
        self.signal_guard = signal_guard
        self.snapshot_dir = snapshot_dir
        self.ips_service = ips_service
        self.is_privileged = is_privileged

    @classmethod
    def from_options(cls, options: ApplyOptions, **kwargs) -> "GuardedApplier":
        """Build an applier talking to the real nft and systemctl binaries"""
        services = None
        if options.ips_service:
            services = SystemdServiceManager(options.systemctl_path)
        return cls(
            engine=NftablesEngine(options.nft_path),
            services=services,
            snapshot_dir=options.snapshot_dir,
            ips_service=options.ips_service,
            **kwargs,
        )

    def apply(self, source: Union[str, Path], destination: Union[str, Path],
              timeout: int) -> ApplyResult:
        """
        Run one guarded apply session.

        Taxonomy errors end the session and are reported on the result.
        KeyboardInterrupt (including SessionInterrupted from a termination
        signal) and unexpected errors propagate after the snapshot has been
        restored. A signal deferred during a critical step is raised once
        the session has finished, unless restoring the snapshot failed.
        """
        timeout = ParameterValidator.validate_timeout(timeout)
        session = ApplySession(Path(source), Path(destination), timeout)
        session.begin()
        self.logger.info(
            f"Guarded apply: {session.source} -> {session.destination} (timeout {timeout}s)"
        )

        guard = self.signal_guard or SignalGuard(self.logger)
        try:
            with guard:
                try:
                    self._run(session, guard)
                    result = self._result(session)
                except GuardedApplyError as e:
                    result = self._result(session, e)
                except KeyboardInterrupt:
                    if SessionState.INTERRUPTED in _TRANSITIONS.get(session.state, ()):
                        session.advance(SessionState.INTERRUPTED)
                    self.logger.warning(f"Session interrupted in state {session.state.name}")
                    raise

                if not isinstance(result.error, RollbackFailed):
                    guard.deliver_deferred()
            return result
        finally:
            session.release()

    def _fail(self, session: ApplySession, state: SessionState,
              error: GuardedApplyError) -> GuardedApplyError:
        session.advance(state)
        return error

    def _run(self, session: ApplySession, guard: SignalGuard):
        step = self.reporter.step

        with step("Checking for root privileges"):
            if not self.is_privileged():
                raise self._fail(session, SessionState.PERMISSION_DENIED, PermissionDenied())

        with step(f"Checking {session.destination}"):
            try:
                with open(session.destination, "rb"):
                    pass
            except OSError as e:
                raise self._fail(session, SessionState.UNREADABLE_DESTINATION,
                                 UnreadableDestination(session.destination, _describe_read_error(e)))

        with step("Saving current ruleset"):
            try:
                session.snapshot = RulesetSnapshot.capture(self.engine, self.snapshot_dir)
            except (NftablesError, OSError) as e:
                raise self._fail(session, SessionState.FAILED, GuardedApplyError(
                    "Could not save the current ruleset, nothing was changed",
                    technical_details=str(e),
                ))
        self.logger.info(f"Snapshot of live ruleset saved to {session.snapshot.path}")

        with step(f"Reading {session.source}"):
            try:
                session.candidate_bytes = session.source.read_bytes()
                candidate_text = session.candidate_bytes.decode()
            except (OSError, UnicodeDecodeError) as e:
                raise self._fail(session, SessionState.UNREADABLE_SOURCE,
                                 UnreadableSource(session.source, _describe_read_error(e)))

        with step("Validating candidate ruleset"):
            try:
                self.engine.check_file(session.source)
            except NftablesError as e:
                raise self._fail(session, SessionState.INVALID_RULESET,
                                 InvalidRuleset(session.source, e.stderr or str(e)))
        session.advance(SessionState.VALIDATED)

        with step("Preparing candidate ruleset"):
            try:
                session.candidate = CandidateFile(candidate_text, self.snapshot_dir)
            except OSError as e:
                raise self._fail(session, SessionState.FAILED, GuardedApplyError(
                    "Could not stage the candidate ruleset, nothing was changed",
                    technical_details=str(e),
                ))

        with suspended_service(self.services, self.ips_service, self.logger,
                               shield=guard.shielded) as suspension:
            session.suspension = suspension
            try:
                self._apply_candidate(session)
                self._await_confirmation(session)
                self._persist(session, guard)
            except BaseException as e:
                with guard.shielded():
                    # PERSISTED and FAILED are final, nothing left to undo
                    if session.mutated and not session.terminal:
                        self._restore(session, guard, e)
                raise

    def _apply_candidate(self, session: ApplySession):
        session.mutated = True
        try:
            with self.reporter.step("Applying candidate ruleset"):
                self.engine.load_file(session.candidate.path, timeout=session.timeout)
        except NftablesTimeout:
            raise self._fail(session, SessionState.TIMED_OUT, ApplyTimeout(session.timeout))
        except NftablesError as e:
            raise self._fail(session, SessionState.ABORTED, ApplyFailed(e.stderr or str(e)))
        session.advance(SessionState.APPLIED)
        self.logger.info("Candidate ruleset is live, awaiting confirmation")

    def _await_confirmation(self, session: ApplySession):
        answer = self.confirm(session.timeout)
        if answer is ConfirmationAnswer.YES:
            session.advance(SessionState.CONFIRMED)
            return

        timed_out = answer is ConfirmationAnswer.TIMEOUT
        raise self._fail(session,
                         SessionState.TIMED_OUT if timed_out else SessionState.DECLINED,
                         OperatorDeclined(timed_out))

    def _restore(self, session: ApplySession, guard: SignalGuard, cause: BaseException):
        """Reload the snapshot; signals are deferred until it finishes"""
        with guard.shielded():
            if session.state not in _ROLLBACK_STATES:
                session.advance(SessionState.ABORTED)
            self.logger.warning(f"Restoring previous ruleset ({type(cause).__name__})")
            try:
                with self.reporter.step("Restoring previous ruleset"):
                    self.engine.load_file(session.snapshot.path)
            except NftablesError as e:
                session.advance(SessionState.FAILED)
                self.logger.critical(
                    f"Restoring {session.snapshot.path} failed, live ruleset is unknown: {e}"
                )
                raise RollbackFailed(e.stderr or str(e)) from cause
            session.advance(SessionState.ROLLED_BACK)
        self.logger.info("Previous ruleset restored")

    def _persist(self, session: ApplySession, guard: SignalGuard):
        with guard.shielded():
            try:
                with self.reporter.step(f"Saving candidate to {session.destination}"):
                    persist_ruleset(session.candidate_bytes, session.destination)
            except OSError as e:
                raise self._fail(session, SessionState.FAILED, GuardedApplyError(
                    f"Candidate is live but could not be saved to {session.destination}",
                    guidance=f"Copy {session.source} to {session.destination} manually",
                    technical_details=str(e),
                ))
            session.advance(SessionState.PERSISTED)

    def _result(self, session: ApplySession,
                error: Optional[GuardedApplyError] = None) -> ApplyResult:
        ips_resume_failed = bool(
            session.suspension and session.suspension.suspended and not session.suspension.resumed
        )
        if error is None:
            exit_code = NftApplyExitCodes.SUCCESS
            message = f"{session.source} applied and saved to {session.destination}"
        else:
            exit_code = error.exit_code
            message = error.message

        return ApplyResult(
            state=session.state,
            outcome=session.outcome,
            exit_code=int(exit_code),
            message=message,
            error=error,
            ips_resume_failed=ips_resume_failed,
            history=list(session.history),
        )
