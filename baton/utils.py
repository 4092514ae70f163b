"""
Utility functions for baton.

Includes logging, duration parsing, and console output.
"""

import json
import logging
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler


# Global console for pretty output
console = Console()

_DURATION_PATTERN = re.compile(r"^(\d+)([smhdw])$")
_DURATION_UNITS = {
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "d": "days",
    "w": "weeks",
}


def setup_logging(
    log_file: Optional[Path] = None,
    log_level: str = "INFO",
    log_format: str = "structured",
    console_output: bool = True,
) -> logging.Logger:
    """
    Set up logging for baton.

    Args:
        log_file: Optional path to log file
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "structured" (JSON) or "pretty" (human-readable)
        console_output: Also log to console

    Returns:
        Configured logger
    """
    logger = logging.getLogger("baton")
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers = []  # Clear existing handlers

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        if log_format == "structured":
            file_handler.setFormatter(StructuredFormatter())
        else:
            file_handler.setFormatter(
                logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            )
        logger.addHandler(file_handler)

    if console_output:
        if log_format == "pretty":
            console_handler = RichHandler(rich_tracebacks=True, show_time=False)
        else:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(StructuredFormatter())

        logger.addHandler(console_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add extra fields if present
        for attr in ("event", "job_id", "stage", "metadata"):
            if hasattr(record, attr):
                log_data[attr] = getattr(record, attr)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def describe_exception(error: BaseException, max_length: int = 500) -> str:
    """
    Build the abort message recorded for an unhandled handler exception.

    Args:
        error: Exception raised by handler code
        max_length: Maximum message length

    Returns:
        "ExceptionType: message", truncated to max_length
    """
    text = str(error)
    message = f"{type(error).__name__}: {text}" if text else type(error).__name__

    if len(message) > max_length:
        message = message[:max_length] + "..."

    return message


def parse_duration(value: str | int | float | timedelta) -> timedelta:
    """
    Parse a duration into a timedelta.

    Args:
        value: A timedelta, a number of seconds, or a string like
               "45s", "30m", "12h", "3d", "2w"

    Returns:
        timedelta

    Raises:
        ValueError: If format is invalid or the duration is negative
    """
    if isinstance(value, timedelta):
        result = value
    elif isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    elif isinstance(value, (int, float)):
        result = timedelta(seconds=value)
    else:
        text = str(value).strip().lower()
        if text.isdigit():
            result = timedelta(seconds=int(text))
        else:
            match = _DURATION_PATTERN.match(text)
            if not match:
                raise ValueError(
                    f"Invalid duration format: '{value}'. "
                    "Expected format: <number><unit> (e.g., '45s', '30m', '12h', '3d', '2w')"
                )
            amount = int(match.group(1))
            result = timedelta(**{_DURATION_UNITS[match.group(2)]: amount})

    if result < timedelta(0):
        raise ValueError(f"Duration must not be negative: {value!r}")
    return result


def format_duration(seconds: float) -> str:
    """
    Format duration in seconds to human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (e.g., "1m 23s", "45s", "3d 0h")
    """
    if seconds < 60:
        return f"{int(seconds)}s"

    minutes = int(seconds // 60)
    remaining_seconds = int(seconds % 60)

    if minutes < 60:
        return f"{minutes}m {remaining_seconds}s"

    hours = minutes // 60
    remaining_minutes = minutes % 60

    if hours < 24:
        return f"{hours}h {remaining_minutes}m {remaining_seconds}s"

    days = hours // 24
    return f"{days}d {hours % 24}h"


def print_success(message: str) -> None:
    """Print success message to console."""
    console.print(f"[bold green]✓[/bold green] {message}")


def print_error(message: str) -> None:
    """Print error message to console."""
    console.print(f"[bold red]✗[/bold red] {message}")


def print_warning(message: str) -> None:
    """Print warning message to console."""
    console.print(f"[bold yellow]⚠[/bold yellow] {message}")
