"""
Error taxonomy of the reconciliation engine.

Only two kinds of exceptions leave a reconcile pass: :class:`RetryableError`
(the next pass starts from scratch) and :class:`TerminalError` (reported on the
resource until its inputs change). A deferral is not an exception at all.
The kopf handlers translate them to ``kopf.TemporaryError`` and
``kopf.PermanentError`` respectively.
"""
from __future__ import annotations

from typing import Optional

from ics_operator.models import FailureReason, TaskOperation, TASK_FAILURE_REASONS


class ICSError(Exception):
    """Base error, carrying the failed operation and the resource it was for."""

    def __init__(self, message: str, *, operation: Optional[str] = None, resource: Optional[object] = None):
        self.operation = operation
        self.resource = resource
        prefix = ""
        if operation and resource is not None:
            prefix = f"{operation} {resource}: "
        elif operation:
            prefix = f"{operation}: "
        super().__init__(f"{prefix}{message}")


class RetryableError(ICSError):
    """Connectivity, auth or repository failure; retried on the next pass."""


class TerminalError(ICSError):
    """Something is fundamentally wrong with the resource."""

    reason: str = "ReconcileFailed"

    def __init__(self, message: str, *, reason: Optional[str] = None, **kwargs):
        if reason is not None:
            self.reason = reason
        self.detail = message
        super().__init__(message, **kwargs)


class BootstrapDataMissing(TerminalError):
    reason = FailureReason.BOOTSTRAP_DATA_MISSING.value


class BootstrapDataUnreadable(RetryableError):
    """Bootstrap secret or its ``value`` key is not there (yet)."""


class PoweringOnFailed(TerminalError):
    reason = FailureReason.POWERING_ON_FAILED.value


class UnexpectedPowerState(TerminalError):
    reason = FailureReason.UNEXPECTED_POWER_STATE.value


class TaskFailed(TerminalError):
    """A previously issued platform task finished in the ERROR state."""

    def __init__(self, task_id: str, operation: Optional[TaskOperation], message: str, **kwargs):
        self.task_id = task_id
        self.task_operation = operation
        reason = TASK_FAILURE_REASONS[operation].value if operation else "TaskFailed"
        super().__init__(f"task {task_id} failed: {message}", reason=reason, **kwargs)
