#!/usr/bin/env python3
"""
nft-apply Error Handling Utilities

Provides standardized error formatting, parameter validation, and user guidance
for consistent error reporting across nft-apply.

Error Format Standards:
- INFO: "✓ {message}"                    # Success messages
- WARNING: "⚠ {message}"                 # Warning messages
- ERROR: "✗ {message}"                   # Error messages
- FATAL: "✗ Fatal: {message}"            # Critical errors
- USAGE: "Usage: {usage_help}"           # Usage guidance
"""

import os
import sys
import logging
from functools import wraps
from pathlib import Path
from typing import Optional, Union


class ErrorSeverity:
    """Error severity levels for consistent classification"""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    FATAL = "fatal"
    USAGE = "usage"


class NftApplyError(Exception):
    """Base exception class for nft-apply with standardized error handling"""

    exit_code = 1

    def __init__(self, message: str, severity: str = ErrorSeverity.ERROR,
                 guidance: Optional[str] = None, technical_details: Optional[str] = None):
        self.message = message
        self.severity = severity
        self.guidance = guidance
        self.technical_details = technical_details
        super().__init__(message)


class ValidationError(NftApplyError):
    """Raised when parameter validation fails"""

    exit_code = 2

    def __init__(self, message: str, parameter: str = None, guidance: str = None):
        self.parameter = parameter
        super().__init__(message, ErrorSeverity.ERROR, guidance)


class ErrorFormatter:
    """Centralized error message formatting with consistent symbols and styles"""

    SYMBOLS = {
        ErrorSeverity.INFO: "✓",
        ErrorSeverity.WARNING: "⚠",
        ErrorSeverity.ERROR: "✗",
        ErrorSeverity.FATAL: "✗ Fatal:",
        ErrorSeverity.USAGE: "Usage:"
    }

    @classmethod
    def format_message(cls, message: str, severity: str = ErrorSeverity.ERROR,
                       guidance: Optional[str] = None) -> str:
        """Format a message with the appropriate symbol and structure"""
        symbol = cls.SYMBOLS.get(severity, "•")
        formatted = f"{symbol} {message}"

        if guidance:
            formatted += f"\n  Suggestion: {guidance}"

        return formatted

    @classmethod
    def format_error(cls, error: Union[Exception, NftApplyError],
                     hide_technical: bool = True) -> str:
        """Format an exception with appropriate level of detail"""
        if isinstance(error, NftApplyError):
            formatted = cls.format_message(error.message, error.severity, error.guidance)
            if not hide_technical and error.technical_details:
                formatted += f"\n  Technical: {error.technical_details}"
            return formatted

        error_type = type(error).__name__
        message = str(error)

        if isinstance(error, FileNotFoundError):
            guidance = "Check that the file path is correct and the file exists"
            return cls.format_message(f"File not found: {message}",
                                      ErrorSeverity.ERROR, guidance)
        elif isinstance(error, PermissionError):
            guidance = "Check file permissions or run as root"
            return cls.format_message(f"Permission denied: {message}",
                                      ErrorSeverity.ERROR, guidance)
        elif isinstance(error, ValueError):
            guidance = "Verify input parameters and try again"
            return cls.format_message(f"Invalid input: {message}",
                                      ErrorSeverity.ERROR, guidance)
        elif isinstance(error, KeyboardInterrupt):
            return cls.format_message("Operation interrupted by user", ErrorSeverity.WARNING)
        else:
            if hide_technical:
                return cls.format_message("Unexpected error occurred", ErrorSeverity.ERROR,
                                          "Check logs for details or run with --verbose")
            return cls.format_message(f"Unexpected {error_type}: {message}",
                                      ErrorSeverity.ERROR)


class ParameterValidator:
    """Parameter validation with range checks and user guidance"""

    @staticmethod
    def validate_timeout(timeout: int, parameter_name: str = "timeout") -> int:
        """Validate timeout values with reasonable ranges"""
        if timeout <= 0:
            raise ValidationError(
                f"Timeout must be positive (>0 seconds), got {timeout}",
                parameter_name,
                "Use a positive integer for timeout values (e.g., 15)"
            )

        if timeout > 600:
            logger = logging.getLogger('nft-apply.validation')
            logger.warning(f"Very long timeout ({timeout}s) - a broken ruleset stays live that long")

        return timeout

    @staticmethod
    def validate_file_readable(file_path: Union[str, Path], parameter_name: str = "file") -> Path:
        """Validate that a file exists and is readable"""
        path = Path(file_path)

        if not path.exists():
            raise ValidationError(
                f"File does not exist: {path}",
                parameter_name,
                "Check the file path and ensure the file exists"
            )

        if not path.is_file():
            raise ValidationError(
                f"Path is not a file: {path}",
                parameter_name,
                "Provide a path to a file, not a directory"
            )

        if not os.access(path, os.R_OK):
            raise ValidationError(
                f"Cannot read file: {path}",
                parameter_name,
                "Check file permissions or run as root"
            )

        return path


def handle_errors(logger_name: str = None, hide_technical: bool = True):
    """Decorator for standardized error handling in command functions"""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            logger = logging.getLogger(logger_name or f'nft-apply.{func.__name__}')

            try:
                return func(*args, **kwargs)
            except NftApplyError as e:
                logger.error(f"{e.severity.title()} in {func.__name__}: {e.message}")
                print_formatted(ErrorFormatter.format_error(e, hide_technical))
                return e.exit_code

            except Exception as e:
                logger.exception(f"Unexpected error in {func.__name__}: {e}")
                print_formatted(ErrorFormatter.format_error(e, hide_technical))
                return 1

        return wrapper
    return decorator


def print_formatted(text: str):
    """Write an operator message to stderr"""
    print(text, file=sys.stderr)


def print_success(message: str):
    """Print a success message with consistent formatting"""
    print(ErrorFormatter.format_message(message, ErrorSeverity.INFO))


def print_warning(message: str, guidance: str = None):
    """Print a warning message with consistent formatting"""
    print_formatted(ErrorFormatter.format_message(message, ErrorSeverity.WARNING, guidance))


def print_error(message: str, guidance: str = None):
    """Print an error message with consistent formatting"""
    print_formatted(ErrorFormatter.format_message(message, ErrorSeverity.ERROR, guidance))


__all__ = [
    'ErrorSeverity', 'NftApplyError', 'ValidationError',
    'ErrorFormatter', 'ParameterValidator', 'handle_errors',
    'print_success', 'print_warning', 'print_error', 'print_formatted'
]
