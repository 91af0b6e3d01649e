"""Skip a VM while a remote operation issued by an earlier pass is still running."""
from __future__ import annotations

from ics_operator.context import VMContext
from ics_operator.errors import RetryableError, TaskFailed
from ics_operator.platform import PlatformError, PlatformNotFound


def reconcile_in_flight_task(ctx: VMContext) -> bool:
    """Return True if the stored task is still running and the pass must stop.

    A finished task is cleared from ``ctx.status`` before anything else is
    issued. A task that finished in ERROR raises :class:`TaskFailed` after
    being cleared, so the next pass starts clean.
    """
    task_ref = ctx.status.task_ref
    if not task_ref:
        return False

    try:
        task = ctx.platform.get_task(task_ref)
    except PlatformNotFound:
        ctx.logger.info("Task %s no longer exists, treating it as finished", task_ref)
        ctx.status.clear_task()
        return False
    except PlatformError as exc:
        raise RetryableError(str(exc), operation=f"get task {task_ref}", resource=ctx) from exc

    if not task.done:
        ctx.logger.info("Task %s (%s) is still %s, skipping this pass", task_ref, ctx.status.task_operation, task.state)
        return True

    operation = ctx.status.task_operation
    ctx.status.clear_task()
    if task.failed:
        ctx.logger.error("Task %s (%s) failed: %s", task_ref, operation, task.error)
        raise TaskFailed(task_ref, operation, task.error or "no error message", resource=ctx)

    ctx.logger.info("Task %s (%s) finished", task_ref, operation)
    return False
