"""
Tests for the guarded apply protocol

Runs GuardedApplier against in-memory nft and systemctl doubles and checks
that the live ruleset only ever ends up as the original or the candidate.
"""

import errno
import os
import shutil
import signal
import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest.mock import Mock, patch

from nft_apply.appliers import (
    ApplySession,
    ConfirmationAnswer,
    GuardedApplier,
    NftApplyExitCodes,
    SessionError,
    SessionInterrupted,
    SessionOutcome,
    SessionState,
    SignalGuard,
)
from nft_apply.appliers.guarded import ApplyOptions
from nft_apply.engine.nftables import NftablesError, NftablesTimeout
from nft_apply.engine.ruleset import persist_ruleset
from nft_apply.utils.config import NftApplyConfig
from nft_apply.utils.error_handling import ValidationError
from nft_apply.utils.logging import StepReporter

from tests.fakes import (
    CANDIDATE_RULESET,
    INVALID_RULESET,
    ORIGINAL_RULESET,
    FakeNftables,
    FakeServices,
    effective_ruleset,
)


DESTINATION_CONTENT = "#!/usr/sbin/nft -f\nflush ruleset\n" + ORIGINAL_RULESET


class GuardedApplyTestCase(unittest.TestCase):
    """Shared fixtures: temp files, fakes and an applier factory"""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.snapshot_dir = self.temp_dir / "session"
        self.snapshot_dir.mkdir()

        self.source = self.temp_dir / "nftables-candidate.conf"
        self.source.write_text(CANDIDATE_RULESET)
        self.destination = self.temp_dir / "nftables.conf"
        self.destination.write_text(DESTINATION_CONTENT)

        self.events = []
        self.engine = FakeNftables(events=self.events)
        self.services = FakeServices(events=self.events)
        self.confirm = Mock(return_value=ConfirmationAnswer.YES)

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def make_applier(self, **overrides):
        kwargs = dict(
            engine=self.engine,
            services=self.services,
            confirm=self.confirm,
            reporter=StepReporter(quiet=True),
            signal_guard=SignalGuard(),
            snapshot_dir=self.snapshot_dir,
            ips_service="fail2ban",
            is_privileged=lambda: True,
        )
        kwargs.update(overrides)
        return GuardedApplier(**kwargs)

    def run_apply(self, timeout=15, **overrides):
        return self.make_applier(**overrides).apply(self.source, self.destination, timeout)

    def assertSessionFilesReleased(self):
        self.assertEqual(os.listdir(self.snapshot_dir), [])

    def assertLiveUnchanged(self):
        self.assertEqual(self.engine.live, ORIGINAL_RULESET)

    def assertDestinationUnchanged(self):
        self.assertEqual(self.destination.read_text(), DESTINATION_CONTENT)


class TestConfirmedApply(GuardedApplyTestCase):
    """Operator confirms within the window"""

    def test_candidate_persisted_on_yes(self):
        """Confirmed candidate becomes live and is copied over the destination"""
        result = self.run_apply()

        self.assertEqual(result.exit_code, NftApplyExitCodes.SUCCESS)
        self.assertTrue(result.success)
        self.assertEqual(result.state, SessionState.PERSISTED)
        self.assertEqual(result.outcome, SessionOutcome.CONFIRMED)
        self.assertEqual(self.engine.live, effective_ruleset(CANDIDATE_RULESET))
        self.assertEqual(self.destination.read_bytes(), self.source.read_bytes())
        self.assertSessionFilesReleased()

    def test_state_history(self):
        result = self.run_apply()

        self.assertEqual(result.history, [
            SessionState.START,
            SessionState.VALIDATED,
            SessionState.APPLIED,
            SessionState.CONFIRMED,
            SessionState.PERSISTED,
        ])

    def test_confirmation_uses_same_timeout(self):
        self.run_apply(timeout=42)

        self.confirm.assert_called_once_with(42)

    def test_destination_permissions_kept(self):
        os.chmod(self.destination, 0o640)

        self.run_apply()

        self.assertEqual(os.stat(self.destination).st_mode & 0o777, 0o640)

    def test_candidate_without_flush_is_normalized(self):
        """A flush directive is prepended so the candidate replaces the live ruleset"""
        bare_candidate = effective_ruleset(CANDIDATE_RULESET)
        self.source.write_text(bare_candidate)

        result = self.run_apply()

        self.assertEqual(result.exit_code, NftApplyExitCodes.SUCCESS)
        self.assertTrue(self.engine.loaded[0].startswith("flush ruleset\n"))
        # No hybrid of old and new rules
        self.assertEqual(self.engine.live, bare_candidate)
        # Source untouched, destination gets the candidate's bytes
        self.assertEqual(self.source.read_text(), bare_candidate)
        self.assertEqual(self.destination.read_text(), bare_candidate)

    def test_shebang_kept_first_when_normalizing(self):
        self.source.write_text("#!/usr/sbin/nft -f\ntable inet filter {\n}\n")

        self.run_apply()

        self.assertTrue(self.engine.loaded[0].startswith("#!/usr/sbin/nft -f\nflush ruleset\n"))

    def test_idempotent_apply(self):
        """Applying the same candidate twice leaves the same live ruleset as once"""
        first = self.run_apply()
        live_after_first = self.engine.live
        destination_after_first = self.destination.read_bytes()

        second = self.run_apply()

        self.assertEqual(first.exit_code, NftApplyExitCodes.SUCCESS)
        self.assertEqual(second.exit_code, NftApplyExitCodes.SUCCESS)
        self.assertEqual(self.engine.live, live_after_first)
        self.assertEqual(self.destination.read_bytes(), destination_after_first)

    def test_persist_failure_keeps_confirmed_candidate(self):
        with patch("nft_apply.appliers.guarded.persist_ruleset",
                   side_effect=OSError(errno.ENOSPC, "No space left on device")):
            result = self.run_apply()

        self.assertEqual(result.exit_code, NftApplyExitCodes.GENERAL_ERROR)
        self.assertEqual(result.state, SessionState.FAILED)
        self.assertEqual(len(self.engine.loaded), 1)
        self.assertEqual(self.engine.live, effective_ruleset(CANDIDATE_RULESET))
        self.assertDestinationUnchanged()
        self.assertTrue(self.services.active)

    def test_validation_runs_before_any_load(self):
        self.run_apply()

        self.assertEqual(len(self.engine.checked), 1)
        self.assertEqual(len(self.engine.loaded), 1)


class TestRollback(GuardedApplyTestCase):
    """Candidate loaded but not kept"""

    def test_no_answer_rolls_back(self):
        """No input within the timeout is treated as 'no'"""
        self.confirm.return_value = ConfirmationAnswer.TIMEOUT

        result = self.run_apply()

        self.assertEqual(result.exit_code, NftApplyExitCodes.OPERATOR_DECLINED)
        self.assertEqual(result.state, SessionState.ROLLED_BACK)
        self.assertEqual(result.outcome, SessionOutcome.ROLLED_BACK)
        self.assertIn(SessionState.TIMED_OUT, result.history)
        self.assertTrue(result.error.timed_out)
        self.assertLiveUnchanged()
        self.assertDestinationUnchanged()
        self.assertSessionFilesReleased()

    def test_explicit_no_rolls_back(self):
        self.confirm.return_value = ConfirmationAnswer.NO

        result = self.run_apply()

        self.assertEqual(result.exit_code, NftApplyExitCodes.OPERATOR_DECLINED)
        self.assertIn(SessionState.DECLINED, result.history)
        self.assertFalse(result.error.timed_out)
        self.assertLiveUnchanged()
        self.assertDestinationUnchanged()

    def test_restore_reloads_snapshot_with_flush(self):
        self.confirm.return_value = ConfirmationAnswer.NO

        self.run_apply()

        self.assertEqual(len(self.engine.loaded), 2)
        self.assertEqual(self.engine.loaded[1], "flush ruleset\n" + ORIGINAL_RULESET)

    def test_apply_timeout_rolls_back(self):
        """The load itself exceeding the timeout restores the snapshot"""
        self.engine.load_failures = [NftablesTimeout("Loading timed out after 15s")]

        result = self.run_apply()

        self.assertEqual(result.exit_code, NftApplyExitCodes.APPLY_TIMEOUT)
        self.assertEqual(result.state, SessionState.ROLLED_BACK)
        self.confirm.assert_not_called()
        self.assertLiveUnchanged()
        self.assertDestinationUnchanged()
        self.assertSessionFilesReleased()

    def test_ips_resumed_after_apply_timeout(self):
        self.engine.load_failures = [NftablesTimeout("Loading timed out after 15s")]

        self.run_apply()

        kinds = [event[0] for event in self.events]
        self.assertEqual(kinds, ["stop", "load", "load", "start"])
        self.assertTrue(self.services.active)

    def test_apply_failure_rolls_back(self):
        self.engine.load_failures = [NftablesError("Loading failed: Could not process rule")]

        result = self.run_apply()

        self.assertEqual(result.exit_code, NftApplyExitCodes.APPLY_FAILED)
        self.assertEqual(result.state, SessionState.ROLLED_BACK)
        self.assertIn(SessionState.ABORTED, result.history)
        self.confirm.assert_not_called()
        self.assertLiveUnchanged()

    def test_rollback_failure_is_fatal(self):
        self.confirm.return_value = ConfirmationAnswer.NO
        self.engine.load_failures = [None, NftablesError("Loading failed: netlink error")]

        result = self.run_apply()

        self.assertEqual(result.exit_code, NftApplyExitCodes.ROLLBACK_FAILED)
        self.assertEqual(result.state, SessionState.FAILED)
        self.assertEqual(result.outcome, SessionOutcome.FAILED)
        # IPS resumes even when the restore failed
        self.assertEqual(self.events[-1], ("start", "fail2ban"))
        self.assertSessionFilesReleased()

    def test_interrupt_restores_snapshot(self):
        """A dropped SSH session (SIGHUP) during confirmation rolls back, then propagates"""
        self.confirm.side_effect = SessionInterrupted(signal.SIGHUP)

        with self.assertRaises(SessionInterrupted) as ctx:
            self.run_apply()

        self.assertEqual(ctx.exception.signum, signal.SIGHUP)
        self.assertLiveUnchanged()
        self.assertDestinationUnchanged()
        self.assertTrue(self.services.active)
        self.assertSessionFilesReleased()

    def test_unreadable_terminal_rolls_back(self):
        """An I/O error while waiting for the answer still restores the snapshot"""
        self.confirm.side_effect = OSError(errno.EIO, "Input/output error")

        with self.assertRaises(OSError):
            self.run_apply()

        self.assertEqual(len(self.engine.loaded), 2)
        self.assertLiveUnchanged()
        self.assertDestinationUnchanged()
        self.assertTrue(self.services.active)
        self.assertSessionFilesReleased()

    def test_unexpected_engine_error_rolls_back(self):
        self.engine.load_failures = [RuntimeError("netlink socket closed")]

        with self.assertRaises(RuntimeError):
            self.run_apply()

        self.assertEqual(len(self.engine.loaded), 2)
        self.assertLiveUnchanged()
        self.confirm.assert_not_called()
        self.assertSessionFilesReleased()

    def test_ips_suspended_for_window(self):
        """The IPS is stopped before the load and started after the restore"""
        self.confirm.return_value = ConfirmationAnswer.NO

        self.run_apply()

        kinds = [event[0] for event in self.events]
        self.assertEqual(kinds, ["stop", "load", "load", "start"])


class TestEarlyFailures(GuardedApplyTestCase):
    """Failures before the candidate is loaded leave everything untouched"""

    def assertNothingMutated(self):
        self.assertEqual(self.engine.loaded, [])
        self.assertEqual(self.events, [])
        self.confirm.assert_not_called()
        self.assertLiveUnchanged()
        self.assertDestinationUnchanged()
        self.assertSessionFilesReleased()

    def test_not_root(self):
        result = self.run_apply(is_privileged=lambda: False)

        self.assertEqual(result.exit_code, NftApplyExitCodes.NOT_ROOT)
        self.assertEqual(result.state, SessionState.PERMISSION_DENIED)
        self.assertNothingMutated()

    def test_missing_destination(self):
        self.destination.unlink()

        result = self.run_apply()

        self.assertEqual(result.exit_code, NftApplyExitCodes.DESTINATION_UNREADABLE)
        self.assertEqual(result.state, SessionState.UNREADABLE_DESTINATION)
        self.assertIn("does not exist", result.message)
        self.assertEqual(self.engine.loaded, [])
        self.assertLiveUnchanged()
        self.assertFalse(self.destination.exists())

    def test_destination_is_directory(self):
        self.destination.unlink()
        self.destination.mkdir()

        result = self.run_apply()

        self.assertEqual(result.exit_code, NftApplyExitCodes.DESTINATION_UNREADABLE)

    def test_missing_source(self):
        self.source.unlink()

        result = self.run_apply()

        self.assertEqual(result.exit_code, NftApplyExitCodes.SOURCE_UNREADABLE)
        self.assertEqual(result.state, SessionState.UNREADABLE_SOURCE)
        self.assertNothingMutated()

    def test_invalid_candidate(self):
        """A rule jumping to an undefined chain fails validation, nothing changes"""
        self.source.write_text(INVALID_RULESET)

        result = self.run_apply()

        self.assertEqual(result.exit_code, NftApplyExitCodes.INVALID_RULESET)
        self.assertEqual(result.state, SessionState.INVALID_RULESET)
        self.assertIn("undefined_chain", self.engine.checked[0])
        self.assertNothingMutated()

    def test_snapshot_failure(self):
        self.engine.list_failure = NftablesError("Listing ruleset failed: Operation not permitted")

        result = self.run_apply()

        self.assertEqual(result.exit_code, NftApplyExitCodes.GENERAL_ERROR)
        self.assertEqual(result.state, SessionState.FAILED)
        self.assertNothingMutated()

    def test_invalid_timeout(self):
        with self.assertRaises(ValidationError):
            self.run_apply(timeout=0)
        self.assertNothingMutated()


class TestIntrusionPrevention(GuardedApplyTestCase):
    """Scoped suspension of the IPS service"""

    def test_inactive_service_left_alone(self):
        self.services.active = False

        result = self.run_apply()

        self.assertEqual(result.exit_code, NftApplyExitCodes.SUCCESS)
        self.assertEqual([e for e in self.events if e[0] != "load"], [])

    def test_suspension_disabled(self):
        result = self.run_apply(ips_service=None)

        self.assertEqual(result.exit_code, NftApplyExitCodes.SUCCESS)
        self.assertEqual([e for e in self.events if e[0] != "load"], [])

    def test_resume_failure_reported_not_masking(self):
        self.services.fail_start = True

        result = self.run_apply()

        self.assertEqual(result.exit_code, NftApplyExitCodes.SUCCESS)
        self.assertTrue(result.ips_resume_failed)


def _send_signal(signum):
    os.kill(os.getpid(), signum)
    # The Python-level handler runs between bytecodes
    time.sleep(0.01)


class SignallingServices(FakeServices):
    """systemctl double whose start is hit by a termination signal"""

    def __init__(self, signum, **kwargs):
        super().__init__(**kwargs)
        self.signum = signum

    def start(self, unit: str):
        _send_signal(self.signum)
        super().start(unit)


@unittest.skipUnless(threading.current_thread() is threading.main_thread(),
                     "signal handlers can only be installed from the main thread")
class TestDeferredSignals(GuardedApplyTestCase):
    """Signals arriving during restore, persist or IPS restart"""

    def test_hangup_during_ips_restart(self):
        self.services = SignallingServices(signal.SIGHUP, events=self.events)
        self.confirm.return_value = ConfirmationAnswer.NO

        with self.assertRaises(SessionInterrupted) as ctx:
            self.run_apply()

        self.assertEqual(ctx.exception.signum, signal.SIGHUP)
        self.assertTrue(self.services.active)
        self.assertEqual([event[0] for event in self.events], ["stop", "load", "load", "start"])
        self.assertLiveUnchanged()
        self.assertSessionFilesReleased()

    def test_terminate_during_persist(self):
        """The destination is still written, then the signal is delivered"""
        def persist_then_signal(data, destination):
            persist_ruleset(data, destination)
            _send_signal(signal.SIGTERM)

        with patch("nft_apply.appliers.guarded.persist_ruleset", side_effect=persist_then_signal):
            with self.assertRaises(SessionInterrupted) as ctx:
                self.run_apply()

        self.assertEqual(ctx.exception.signum, signal.SIGTERM)
        self.assertEqual(self.destination.read_bytes(), self.source.read_bytes())
        self.assertEqual(self.engine.live, effective_ruleset(CANDIDATE_RULESET))
        self.assertTrue(self.services.active)

    def test_terminate_during_restore(self):
        self.confirm.return_value = ConfirmationAnswer.NO
        engine_load = self.engine.load_file

        def load_then_signal(path, timeout=None):
            engine_load(path, timeout)
            if len(self.engine.loaded) == 2:
                _send_signal(signal.SIGTERM)

        self.engine.load_file = load_then_signal

        with self.assertRaises(SessionInterrupted) as ctx:
            self.run_apply()

        self.assertEqual(ctx.exception.signum, signal.SIGTERM)
        self.assertLiveUnchanged()
        self.assertTrue(self.services.active)

    def test_failed_restore_outranks_deferred_signal(self):
        self.confirm.return_value = ConfirmationAnswer.NO
        engine_load = self.engine.load_file

        def load_then_fail(path, timeout=None):
            if self.engine.loaded:
                _send_signal(signal.SIGTERM)
                raise NftablesError("Loading failed: netlink error")
            engine_load(path, timeout)

        self.engine.load_file = load_then_fail

        result = self.run_apply()

        self.assertEqual(result.exit_code, NftApplyExitCodes.ROLLBACK_FAILED)


class TestApplySession(unittest.TestCase):
    """Session lifecycle rules"""

    def setUp(self):
        self.session = ApplySession(Path("/tmp/candidate"), Path("/tmp/dest"), 15)

    def test_begin_once(self):
        self.session.begin()

        with self.assertRaises(SessionError):
            self.session.begin()

    def test_advance_requires_begin(self):
        with self.assertRaises(SessionError):
            self.session.advance(SessionState.VALIDATED)

    def test_illegal_transition(self):
        self.session.begin()

        with self.assertRaises(SessionError):
            self.session.advance(SessionState.PERSISTED)

    def test_terminal_states_are_final(self):
        self.session.begin()
        self.session.advance(SessionState.INVALID_RULESET)

        self.assertTrue(self.session.terminal)
        self.assertEqual(self.session.outcome, SessionOutcome.FAILED)
        with self.assertRaises(SessionError):
            self.session.advance(SessionState.VALIDATED)

    def test_rollback_path_outcome(self):
        self.session.begin()
        for state in (SessionState.VALIDATED, SessionState.APPLIED,
                      SessionState.DECLINED, SessionState.ROLLED_BACK):
            self.session.advance(state)

        self.assertEqual(self.session.outcome, SessionOutcome.ROLLED_BACK)


class TestApplyOptions(unittest.TestCase):

    def test_from_config(self):
        config = NftApplyConfig()
        config.apply.timeout = 30
        config.intrusion_prevention.service = "crowdsec"

        options = ApplyOptions.from_config(config)

        self.assertEqual(options.timeout, 30)
        self.assertEqual(options.ips_service, "crowdsec")

    def test_suspension_disabled_clears_service(self):
        config = NftApplyConfig()
        config.intrusion_prevention.suspend = False

        options = ApplyOptions.from_config(config)

        self.assertIsNone(options.ips_service)

    def test_from_options_builds_real_collaborators(self):
        options = ApplyOptions(source="/a", destination="/b", timeout=15, ips_service=None)

        applier = GuardedApplier.from_options(options)

        self.assertEqual(applier.engine.nft_path, "/usr/sbin/nft")
        self.assertIsNone(applier.services)


if __name__ == '__main__':
    unittest.main()
