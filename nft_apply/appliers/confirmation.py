"""
Operator confirmation window.

Reads a single character from the operator, bounded by a hard deadline.
No input before the deadline counts as "no response"; so does input that
only becomes readable at the deadline itself.
"""

import logging
import os
import select
import sys
import termios
import time
import tty
from enum import Enum
from typing import Optional, TextIO


DEFAULT_QUESTION = (
    "Can you establish NEW connections to the machine "
    "(e.g. open a second SSH session)? [y/N] "
)


class ConfirmationAnswer(Enum):
    """Outcome of the confirmation window"""

    YES = "yes"
    NO = "no"
    TIMEOUT = "timeout"


def read_single_char(timeout: float, stream: Optional[TextIO] = None) -> Optional[str]:
    """
    Read one character from `stream` within `timeout` seconds.

    The terminal is put into cbreak mode for the read when `stream` is a TTY,
    and pending type-ahead is discarded first so that keystrokes typed before
    the question cannot confirm it.

    Returns:
        The character, "" on end of input, or None when the deadline passed

    Raises:
        OSError, ValueError or termios.error when the stream cannot be read
    """
    stream = stream or sys.stdin
    if stream is None:
        raise ValueError("No input stream to read the answer from")
    fd = stream.fileno()
    deadline = time.monotonic() + timeout

    saved_attrs = None
    if os.isatty(fd):
        saved_attrs = termios.tcgetattr(fd)
        termios.tcflush(fd, termios.TCIFLUSH)
        tty.setcbreak(fd)

    try:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return None
        readable, _, _ = select.select([fd], [], [], remaining)
        if not readable or time.monotonic() >= deadline:
            return None
        data = os.read(fd, 1)
        if not data:
            return ""
        return data.decode(errors="replace")
    finally:
        if saved_attrs is not None:
            termios.tcsetattr(fd, termios.TCSADRAIN, saved_attrs)


class ConfirmationPrompt:
    """
    Yes/no question answered by a single key press within a deadline

    Only "y" or "Y" confirms. Any other key, end of input, or the deadline
    passing counts as not confirmed.
    """

    def __init__(self, question: str = DEFAULT_QUESTION,
                 input_stream: Optional[TextIO] = None,
                 output_stream: Optional[TextIO] = None,
                 logger: Optional[logging.Logger] = None):
        self.question = question
        self.input_stream = input_stream
        self.output_stream = output_stream
        self.logger = logger or logging.getLogger(__name__)

    def ask(self, timeout: float) -> ConfirmationAnswer:
        out = self.output_stream or sys.stderr
        out.write(f"\n{self.question}(auto-rollback in {timeout:g}s) ")
        out.flush()

        self.logger.debug(f"Confirmation window open for {timeout}s")
        try:
            char = read_single_char(timeout, self.input_stream)
        except (OSError, ValueError, termios.error) as e:
            # Terminal went away (hangup, closed stdin): nobody can answer
            self.logger.warning(f"Cannot read the operator's answer: {e}")
            char = None

        if char is None:
            out.write("\n")
            out.flush()
            self.logger.warning(f"No answer within {timeout}s")
            return ConfirmationAnswer.TIMEOUT

        out.write("\n")
        out.flush()
        if char in ("y", "Y"):
            self.logger.info("Operator confirmed connectivity")
            return ConfirmationAnswer.YES

        self.logger.info(f"Operator did not confirm (answer: {char!r})")
        return ConfirmationAnswer.NO

    __call__ = ask
