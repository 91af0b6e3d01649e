"""Per-pass state for one ICSVM."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from ics_operator import config
from ics_operator.models import ICSVMSpec, ICSVMStatus, ObjectRef, icsvm_ref
from ics_operator.platform import ComputePlatform
from ics_operator.repository import ResourceRepository


class VMContext:
    """Everything a reconcile pass of one ICSVM needs.

    ``status`` is mutated in place during the pass and written back in one
    patch by :meth:`patch`.
    """

    def __init__(
        self,
        ref: ObjectRef,
        spec: ICSVMSpec,
        status: ICSVMStatus,
        platform: ComputePlatform,
        repository: ResourceRepository,
        labels: Optional[Dict[str, str]] = None,
        resource_version: Optional[str] = None,
        logger: Optional[logging.Logger | logging.LoggerAdapter] = None,
    ):
        self.ref = ref
        self.spec = spec
        self.status = status
        self.platform = platform
        self.repository = repository
        self.labels = labels or {}
        self.resource_version = resource_version
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_body(
        cls,
        body: Dict[str, Any],
        platform: ComputePlatform,
        repository: ResourceRepository,
        logger: Optional[logging.Logger | logging.LoggerAdapter] = None,
    ) -> "VMContext":
        meta = body.get("metadata", {})
        status = {k: v for k, v in (body.get("status") or {}).items() if k != "kopf"}
        return cls(
            ref=icsvm_ref(meta["namespace"], meta["name"]),
            spec=ICSVMSpec.model_validate(body.get("spec") or {}),
            status=ICSVMStatus.model_validate(status),
            platform=platform,
            repository=repository,
            labels=dict(meta.get("labels") or {}),
            resource_version=meta.get("resourceVersion"),
            logger=logger,
        )

    @property
    def name(self) -> str:
        return self.ref.name

    @property
    def namespace(self) -> str:
        return self.ref.namespace

    @property
    def cluster_name(self) -> Optional[str]:
        return self.labels.get(config.CLUSTER_NAME_LABEL)

    @property
    def is_control_plane(self) -> bool:
        return config.CONTROL_PLANE_LABEL in self.labels

    def patch(self) -> None:
        """Write the whole engine-owned status back in a single patch."""
        new_version = self.repository.update_status(self.ref, self.status.to_patch, self.resource_version)
        if new_version:
            self.resource_version = new_version

    def __str__(self) -> str:
        return str(self.ref)
