"""
Kubernetes-backed resource repository and secret reader.

Thin wrappers over ``CustomObjectsApi`` / ``CoreV1Api`` that turn
``ApiException`` into the small error vocabulary the engine understands and
implement the "re-read and retry on conflict" rule for status writes.
"""
from __future__ import annotations

import base64
import logging
from typing import Any, Callable, Dict, List, Optional

import kubernetes
from kubernetes.client import ApiException, ApiextensionsV1Api, CoreV1Api, CustomObjectsApi

from ics_operator import config
from ics_operator.models import ObjectRef

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """The Kubernetes API rejected or failed a request."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ResourceNotFound(RepositoryError):
    pass


class ResourceConflict(RepositoryError):
    pass


def _translate(exc: ApiException, what: str) -> RepositoryError:
    if exc.status in (404, 410):
        return ResourceNotFound(f"{what} not found", status=exc.status)
    if exc.status == 409:
        return ResourceConflict(f"{what}: conflict ({exc.reason})", status=exc.status)
    return RepositoryError(f"{what}: {exc.status} {exc.reason}", status=exc.status)


def init_kubernetes_clients() -> tuple[CoreV1Api, CustomObjectsApi, ApiextensionsV1Api]:
    """Return (core_v1, custom_objects, apiext) after loading config."""
    try:
        kubernetes.config.load_kube_config()
        logger.info("Loaded kube-config from local file")
    except kubernetes.config.config_exception.ConfigException:
        kubernetes.config.load_incluster_config()
        logger.info("Loaded in-cluster kube-config")
    return CoreV1Api(), CustomObjectsApi(), ApiextensionsV1Api()


class ResourceRepository:
    """Get, list and patch custom objects and read secrets."""

    def __init__(self, custom_api: CustomObjectsApi, core_api: CoreV1Api):
        self.custom_api = custom_api
        self.core_api = core_api

    # -- custom objects ----------------------------------------------------
    def get(self, ref: ObjectRef) -> Dict[str, Any]:
        try:
            return self.custom_api.get_namespaced_custom_object(
                group=ref.group, version=ref.version, namespace=ref.namespace, plural=ref.plural, name=ref.name
            )
        except ApiException as exc:
            raise _translate(exc, str(ref)) from exc

    def list(
        self,
        group: str,
        version: str,
        plural: str,
        namespace: str,
        label_selector: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        kwargs = {"label_selector": label_selector} if label_selector else {}
        try:
            objs = self.custom_api.list_namespaced_custom_object(group, version, namespace, plural, **kwargs)
        except ApiException as exc:
            raise _translate(exc, f"{plural} in {namespace}") from exc
        return objs.get("items", [])

    def patch(self, ref: ObjectRef, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return self.custom_api.patch_namespaced_custom_object(
                group=ref.group, version=ref.version, namespace=ref.namespace, plural=ref.plural, name=ref.name,
                body=body,
            )
        except ApiException as exc:
            raise _translate(exc, str(ref)) from exc

    def patch_status(self, ref: ObjectRef, status: Dict[str, Any], resource_version: Optional[str] = None) -> Dict[str, Any]:
        """Merge-patch ``status``; a ``resource_version`` makes it conditional."""
        body: Dict[str, Any] = {"status": status}
        if resource_version:
            body["metadata"] = {"resourceVersion": resource_version}
        try:
            return self.custom_api.patch_namespaced_custom_object_status(
                group=ref.group, version=ref.version, namespace=ref.namespace, plural=ref.plural, name=ref.name,
                body=body,
            )
        except ApiException as exc:
            raise _translate(exc, f"status of {ref}") from exc

    def update_status(
        self,
        ref: ObjectRef,
        status: Dict[str, Any] | Callable[[], Dict[str, Any]],
        resource_version: Optional[str] = None,
        retries: int = config.STATUS_CONFLICT_RETRIES,
    ) -> Optional[str]:
        """Write ``status`` in one patch, re-reading the object on conflict.

        Returns the new resourceVersion, or None if the object is gone.
        """
        attempt = 0
        while True:
            body = status() if callable(status) else status
            try:
                obj = self.patch_status(ref, body, resource_version)
                return (obj or {}).get("metadata", {}).get("resourceVersion")
            except ResourceNotFound:
                logger.info("%s disappeared before its status could be written", ref)
                return None
            except ResourceConflict:
                attempt += 1
                if attempt > retries:
                    raise
                logger.debug("Conflict writing status of %s, re-reading (attempt %d)", ref, attempt)
                resource_version = self.get(ref).get("metadata", {}).get("resourceVersion")

    # -- secrets -------------------------------------------------------------
    def get_secret(self, namespace: str, name: str) -> Dict[str, bytes]:
        """Return the secret's data with every value base64-decoded."""
        try:
            secret = self.core_api.read_namespaced_secret(name=name, namespace=namespace)
        except ApiException as exc:
            raise _translate(exc, f"secret {namespace}/{name}") from exc
        data = secret.data or {}
        return {key: base64.b64decode(value) for key, value in data.items()}
