"""
Termination signal handling for a guarded apply session.

SIGINT, SIGTERM and SIGHUP (the operator's SSH session dropping) are turned
into a SessionInterrupted exception raised in the main thread, so the
session's normal unwinding restores the snapshot. While the snapshot is
restored, the destination written or the IPS started again, the guard is
shielded: signals are recorded and deferred, then delivered once the
session has finished unwinding.
"""

import logging
import signal
import threading
from contextlib import contextmanager
from typing import Dict, List, Optional


class SessionInterrupted(KeyboardInterrupt):
    """Raised in the main thread when a termination signal arrives"""

    def __init__(self, signum: int):
        self.signum = signum
        try:
            self.signal_name = signal.Signals(signum).name
        except ValueError:
            self.signal_name = str(signum)
        super().__init__(f"Terminated by {self.signal_name}")


class SignalGuard:
    """
    Context manager installing termination handlers for one session

    Previous handlers are restored on exit.
    """

    SIGNALS = [signal.SIGINT, signal.SIGTERM, signal.SIGHUP]

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._previous: Dict[int, object] = {}
        self._shielded = False
        self._lock = threading.RLock()
        self.received: List[int] = []
        self.deferred: List[int] = []

    def __enter__(self) -> "SignalGuard":
        # signal.signal() only works from the main thread
        if threading.current_thread() is not threading.main_thread():
            self.logger.debug("Not in main thread, signal handlers not installed")
            return self

        for signum in self.SIGNALS:
            self._previous[signum] = signal.signal(signum, self._handler)
        self.logger.debug("Termination signal handlers installed")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for signum, previous in self._previous.items():
            signal.signal(signum, previous)
        self._previous.clear()
        return False

    def _handler(self, signum: int, frame):
        name = signal.Signals(signum).name
        with self._lock:
            self.received.append(signum)
            if self._shielded:
                self.deferred.append(signum)
                self.logger.warning(f"Received {name} during a critical step, deferred until it completes")
                return

        self.logger.warning(f"Received {name}, interrupting session")
        raise SessionInterrupted(signum)

    @contextmanager
    def shielded(self):
        """Defer signal delivery for the duration of the block"""
        with self._lock:
            previous = self._shielded
            self._shielded = True
        try:
            yield
        finally:
            with self._lock:
                self._shielded = previous

    def deliver_deferred(self):
        """Raise SessionInterrupted for the first signal deferred by a shield, if any"""
        with self._lock:
            if not self.deferred:
                return
            signum = self.deferred[0]
            self.deferred.clear()

        self.logger.warning(f"Delivering deferred {signal.Signals(signum).name}")
        raise SessionInterrupted(signum)

    @property
    def first_signal(self) -> Optional[int]:
        return self.received[0] if self.received else None
