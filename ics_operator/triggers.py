"""
Ask kopf for another reconcile of a resource.

kopf has no in-process "enqueue" call, so a trigger is a metadata patch: a
timestamp in :data:`~ics_operator.config.RECONCILE_REQUESTED_ANNOTATION` is a
change kopf delivers to the resource's update handler.
"""
from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Protocol

from ics_operator import config
from ics_operator.models import ObjectRef
from ics_operator.repository import RepositoryError, ResourceNotFound, ResourceRepository

logger = logging.getLogger(__name__)


class TriggerSink(Protocol):
    def trigger(self, ref: ObjectRef, reason: str) -> None: ...


class AnnotationTriggerSink:
    def __init__(self, repository: ResourceRepository):
        self._repository = repository

    def trigger(self, ref: ObjectRef, reason: str) -> None:
        stamp = datetime.now(UTC).isoformat()
        body = {"metadata": {"annotations": {config.RECONCILE_REQUESTED_ANNOTATION: f"{stamp} {reason}"}}}
        try:
            self._repository.patch(ref, body)
        except ResourceNotFound:
            logger.debug("Not triggering %s (%s): object is gone", ref, reason)
            return
        except RepositoryError as exc:
            logger.warning("Failed to trigger reconcile of %s (%s): %s", ref, reason, exc)
            return
        logger.info("Triggered reconcile of %s, reason=%s", ref, reason)
