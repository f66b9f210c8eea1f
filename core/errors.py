"""
Error taxonomy for the follow-up core.

Every component raises a subclass of FollowUpError. The `retryable` flag
tells the caller whether spending more of its local retry budget can help.
"""
from __future__ import annotations


class FollowUpError(Exception):
    """Base exception for all follow-up operations."""

    def __init__(self, message: str, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)


class ValidationError(FollowUpError):
    """Lead or task data is missing or unusable. The task is skipped, never retried."""

    def __init__(self, message: str):
        super().__init__(message, retryable=False)


class QuotaExceededError(FollowUpError):
    def __init__(self, account_id: str, current: int = 0, limit: int = 0):
        self.account_id = account_id
        self.current = current
        self.limit = limit
        super().__init__(
            f"Template quota exhausted for {account_id} ({current}/{limit})",
            retryable=False,
        )


class GenerationTimeoutError(FollowUpError):
    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"AI generation timed out after {timeout}s", retryable=True)


class ExternalServiceError(FollowUpError):
    def __init__(self, message: str, service: str = "", retryable: bool = True):
        self.service = service
        super().__init__(message, retryable=retryable)


class RegistryInconsistencyError(FollowUpError):
    """Local record and remote template registry disagree."""

    def __init__(self, template_id: str, message: str = ""):
        self.template_id = template_id
        super().__init__(
            message or f"Remote template registry out of sync for {template_id}",
            retryable=False,
        )


class PersistenceError(FollowUpError):
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message, retryable=retryable)
