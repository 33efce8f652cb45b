#!/usr/bin/env python3
"""
Centralized Logging Configuration for nft-apply

Provides standardized logging setup with:
- Console and file output
- Configurable log levels
- Structured log formatting
- Step reporting with OK/FAIL status
- systemd journal integration
"""

import logging
import logging.handlers
import os
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Optional, TextIO


class NftApplyFormatter(logging.Formatter):
    """Custom formatter for nft-apply with optional colors"""

    # Color codes for console output
    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True, include_module: bool = True):
        """
        Initialize formatter

        Args:
            use_colors: Use ANSI color codes for console output
            include_module: Include logger name in log output
        """
        self.use_colors = use_colors and sys.stderr.isatty()
        self.include_module = include_module

        if include_module:
            format_str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        else:
            format_str = "%(asctime)s - %(levelname)s - %(message)s"

        super().__init__(fmt=format_str, datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record):
        """Format log record with optional colors and duration"""
        formatted = super().format(record)

        if hasattr(record, "duration"):
            formatted = f"{formatted} [took {record.duration:.3f}s]"

        if self.use_colors and record.levelname in self.COLORS:
            color = self.COLORS[record.levelname]
            formatted = f"{color}{formatted}{self.RESET}"

        return formatted


def setup_logging(
    config_manager=None,
    level: str = None,
    log_to_file: bool = None,
    log_file: str = None,
    console_colors: bool = True,
    include_modules: bool = True,
) -> Dict[str, logging.Handler]:
    """
    Setup centralized logging for nft-apply

    Args:
        config_manager: Configuration manager instance
        level: Log level override
        log_to_file: Enable file logging override
        log_file: Log file path override
        console_colors: Use colors in console output
        include_modules: Include logger names in log format

    Returns:
        Dictionary of configured handlers
    """
    logging_config = None
    if config_manager is not None:
        logging_config = config_manager.get_config().logging

    # Use overrides or config values
    if level is None:
        level = logging_config.level if logging_config else "INFO"
    if log_file is None:
        log_file = logging_config.log_file if logging_config else None
    if log_to_file is None:
        log_to_file = (logging_config.log_to_file if logging_config else False) or bool(log_file)

    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handlers = {}

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(
        NftApplyFormatter(use_colors=console_colors, include_module=include_modules)
    )
    root_logger.addHandler(console_handler)
    handlers["console"] = console_handler

    if log_to_file and log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
        )
        # The file keeps the full trail even when the console is quiet
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(NftApplyFormatter(use_colors=False, include_module=True))
        root_logger.addHandler(file_handler)
        root_logger.setLevel(min(numeric_level, logging.DEBUG))
        handlers["file"] = file_handler

    # systemd journal handler (if available and running as service)
    try:
        from systemd import journal

        if journal and _is_running_as_service():
            journal_handler = journal.JournalHandler(SYSLOG_IDENTIFIER="nft-apply")
            journal_handler.setLevel(numeric_level)
            journal_handler.setFormatter(NftApplyFormatter(use_colors=False, include_module=True))
            root_logger.addHandler(journal_handler)
            handlers["journal"] = journal_handler
    except ImportError:
        # systemd bindings not installed
        pass

    logger = logging.getLogger("nft-apply.logging")
    logger.debug(f"Logging configured: level={level}, handlers={list(handlers.keys())}")

    return handlers


def _is_running_as_service() -> bool:
    """Check if running as a systemd service"""
    return os.getenv("INVOCATION_ID") is not None or os.getenv("JOURNAL_STREAM") is not None


def get_logger(name: str) -> logging.Logger:
    """
    Get nft-apply logger

    Args:
        name: Logger name (typically __name__ or an 'nft-apply.<area>' name)
    """
    return logging.getLogger(name)


def log_system_info():
    """Log system information for debugging"""
    import platform

    logger = logging.getLogger("nft-apply.system")

    logger.debug(f"nft-apply starting on {platform.system()} {platform.release()}")
    logger.debug(f"Python {sys.version.split()[0]}")
    logger.debug(f"Working directory: {Path.cwd()}")

    for var in ["NFT_APPLY_SOURCE", "NFT_APPLY_DESTINATION", "NFT_APPLY_TIMEOUT", "TRACE"]:
        value = os.getenv(var)
        if value:
            logger.debug(f"Environment: {var}={value}")
        else:
            logger.debug(f"Environment: {var} not set")


class StepReporter:
    """
    Operator-facing step reporter.

    Prints "<label> .... OK" or "<label> .... FAIL" for every protocol step
    and logs the step with its duration. Output is suppressed in quiet mode;
    logging is not.
    """

    LABEL_WIDTH = 50
    OK = "\033[0;32mOK\033[0m"
    FAIL = "\033[0;31mFAIL\033[0m"

    def __init__(self, quiet: bool = False, stream: Optional[TextIO] = None,
                 logger: Optional[logging.Logger] = None):
        self.quiet = quiet
        self.stream = stream or sys.stdout
        self.logger = logger or logging.getLogger("nft-apply.steps")

    def _status(self, ok: bool) -> str:
        colored = self.stream.isatty() if hasattr(self.stream, "isatty") else False
        if colored:
            return self.OK if ok else self.FAIL
        return "OK" if ok else "FAIL"

    @contextmanager
    def step(self, label: str):
        """Report a step; any exception marks it FAIL and propagates"""
        start_time = time.monotonic()
        self.logger.debug(f"Starting step: {label}")
        if not self.quiet:
            self.stream.write(f"{label:<{self.LABEL_WIDTH}}")
            self.stream.flush()

        try:
            yield
        except BaseException as e:
            duration = time.monotonic() - start_time
            if not self.quiet:
                self.stream.write(f" {self._status(False)}\n")
                self.stream.flush()
            self.logger.info(f"Step failed: {label}: {e}", extra={"duration": duration})
            raise

        duration = time.monotonic() - start_time
        if not self.quiet:
            self.stream.write(f" {self._status(True)}\n")
            self.stream.flush()
        self.logger.debug(f"Step done: {label}", extra={"duration": duration})

    def message(self, text: str):
        """Print a free-form line unless quiet"""
        if not self.quiet:
            self.stream.write(f"{text}\n")
            self.stream.flush()
