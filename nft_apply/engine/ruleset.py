"""
Ruleset text handling and session-owned ruleset files.

Both the candidate and the snapshot are loaded with a single `nft -f`, and
nft applies a file as one transaction. Starting every loaded file with
`flush ruleset` therefore makes each load replace the live ruleset
atomically: it is either the old ruleset or the new one, never a mix, and
loading the same file twice yields the same state as loading it once.
"""

import logging
import os
import re
import stat
import tempfile
from pathlib import Path
from typing import Optional, Union


FLUSH_DIRECTIVE = "flush ruleset"

_FLUSH_PATTERN = re.compile(r"^flush\s+ruleset\s*;?\s*$")

logger = logging.getLogger(__name__)


def _first_statement(text: str) -> Optional[str]:
    """First line that is neither blank nor a comment"""
    for line in text.splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith("#"):
            return stripped
    return None


def has_flush_directive(text: str) -> bool:
    """True when the ruleset text starts with a `flush ruleset` statement"""
    statement = _first_statement(text)
    return statement is not None and bool(_FLUSH_PATTERN.match(statement))


def ensure_flush_directive(text: str) -> str:
    """
    Return `text` guaranteed to begin with `flush ruleset`.

    Text that already starts with the directive is returned unchanged. A
    leading `#!` interpreter line stays first so the file remains executable
    with `#!/usr/sbin/nft -f`.
    """
    if has_flush_directive(text):
        return text

    if text.startswith("#!"):
        shebang, _, rest = text.partition("\n")
        return f"{shebang}\n{FLUSH_DIRECTIVE}\n{rest}"

    return f"{FLUSH_DIRECTIVE}\n{text}"


class SessionFile:
    """
    Private temporary file owned by one apply session.

    Created with mode 0600 and removed by release(), which is safe to call
    more than once. Use as a context manager to release on every exit path.
    """

    PREFIX = "nft-apply-"

    def __init__(self, content: str, directory: Optional[Union[str, Path]] = None):
        self.content = content
        fd, name = tempfile.mkstemp(prefix=self.PREFIX, suffix=".nft",
                                    dir=str(directory) if directory else None)
        self.path = Path(name)
        try:
            with os.fdopen(fd, "w") as f:
                f.write(content)
        except BaseException:
            self.path.unlink()
            raise
        self._released = False
        logger.debug(f"Created {self.path} ({len(content)} bytes)")

    @property
    def released(self) -> bool:
        return self._released

    def release(self):
        if self._released:
            return
        self._released = True
        try:
            self.path.unlink()
            logger.debug(f"Released {self.path}")
        except FileNotFoundError:
            pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


class RulesetSnapshot(SessionFile):
    """Copy of the live ruleset taken before mutation, the rollback target"""

    PREFIX = "nft-apply-snapshot-"

    def __init__(self, live_ruleset: str, directory: Optional[Union[str, Path]] = None):
        self.live_ruleset = live_ruleset
        super().__init__(ensure_flush_directive(live_ruleset), directory)

    @classmethod
    def capture(cls, engine, directory: Optional[Union[str, Path]] = None) -> "RulesetSnapshot":
        """Snapshot the ruleset currently loaded in `engine`"""
        return cls(engine.list_ruleset(), directory)


class CandidateFile(SessionFile):
    """Normalized copy of the candidate ruleset, the file actually loaded"""

    PREFIX = "nft-apply-candidate-"

    def __init__(self, candidate_text: str, directory: Optional[Union[str, Path]] = None):
        self.original = candidate_text
        self.normalized = ensure_flush_directive(candidate_text)
        if self.normalized != candidate_text:
            logger.info(f"Candidate does not start with '{FLUSH_DIRECTIVE}', prepending it")
        super().__init__(self.normalized, directory)


def persist_ruleset(data: bytes, destination: Union[str, Path]):
    """
    Replace `destination` with `data` atomically.

    The new content is written to a sibling temp file and renamed over the
    destination, so readers see either the old file or the new one. The
    destination's permission bits are kept.
    """
    destination = Path(destination)
    mode = stat.S_IMODE(destination.stat().st_mode) if destination.exists() else 0o644

    fd, name = tempfile.mkstemp(prefix=f".{destination.name}.", dir=str(destination.parent))
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(name, mode)
        os.replace(name, destination)
    except BaseException:
        try:
            os.unlink(name)
        except FileNotFoundError:
            pass
        raise

    logger.info(f"Persisted {len(data)} bytes to {destination}")
