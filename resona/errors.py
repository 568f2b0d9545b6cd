"""
Error Handling - Centralized error policies and custom exceptions.

This module defines how different error types are handled throughout the
embedding pipeline, so a failing batch or flush degrades gracefully and is
logged once, in one place.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import List, Optional

import requests


logger = logging.getLogger(__name__)

MAX_ERROR_SAMPLES = 5


class ErrorAction(Enum):
    """What to do when an error occurs."""
    SKIP = auto()           # Count the affected items as errors, continue
    DISCARD = auto()        # Drop the in-flight write buffer, continue
    ABORT = auto()          # Stop the entire pipeline


@dataclass
class ErrorPolicy:
    """Policy for handling a specific error type."""
    action: ErrorAction
    log_level: int
    message_template: str = "{item}: {error}"


class ResonaError(Exception):
    """Base exception for embedding and search errors."""
    pass


class ConfigurationError(ResonaError):
    """Invalid configuration, e.g. an unknown model without explicit dimensions."""
    pass


class BackendError(ResonaError):
    """Error returned by an embedding backend during a batch call."""
    pass


class StoreError(ResonaError):
    """Error reading from or maintaining the vector store."""
    pass


class StoreWriteError(StoreError):
    """A buffered flush to the vector store failed."""

    def __init__(self, message: str, record_count: int = 0):
        self.record_count = record_count
        super().__init__(message)


# Error type to policy mapping (first match wins, so subclasses come first)
ERROR_POLICIES: dict[type, ErrorPolicy] = {
    ConfigurationError: ErrorPolicy(
        action=ErrorAction.ABORT,
        log_level=logging.ERROR,
        message_template="Configuration error: {error}"
    ),
    StoreWriteError: ErrorPolicy(
        action=ErrorAction.DISCARD,
        log_level=logging.ERROR,
        message_template="Flush failed for {item}: {error}"
    ),
    StoreError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="Store error for {item}: {error}"
    ),
    asyncio.TimeoutError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="Deadline exceeded for {item}"
    ),
    requests.Timeout: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="Request timed out for {item}: {error}"
    ),
    BackendError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="Backend error for {item}: {error}"
    ),
    requests.RequestException: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="Request failed for {item}: {error}"
    ),
}


def handle_error(
    error: BaseException,
    item: Optional[str] = None,
    context: str = "",
    log: Optional[logging.Logger] = None,
) -> ErrorAction:
    """
    Handle an error according to the defined policies.

    Args:
        error: The exception that occurred
        item: Item, group or source being processed (if applicable)
        context: Additional context for logging
        log: Logger to report through (default: this module's logger)

    Returns:
        The action to take (SKIP, DISCARD, ABORT)
    """
    policy = None
    for error_type, p in ERROR_POLICIES.items():
        if isinstance(error, error_type):
            policy = p
            break

    # Default policy for unknown errors
    if policy is None:
        policy = ErrorPolicy(
            action=ErrorAction.SKIP,
            log_level=logging.ERROR,
            message_template="Unexpected error: {item} - {error}"
        )

    item_str = item if item else "<unknown>"
    message = policy.message_template.format(item=item_str, error=describe_error(error))
    if context:
        message = f"[{context}] {message}"

    (log or logger).log(policy.log_level, message)

    return policy.action


def describe_error(error: BaseException) -> str:
    """Short, non-empty description of an exception."""
    text = str(error)
    return text if text else type(error).__name__


@dataclass
class ErrorSamples:
    """Bounded list of error messages kept for diagnostics."""
    limit: int = MAX_ERROR_SAMPLES
    messages: List[str] = field(default_factory=list)

    def add(self, message: str) -> None:
        if len(self.messages) < self.limit:
            self.messages.append(message)
