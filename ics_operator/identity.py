"""Resolve iCenter credentials from ``clouds.yaml`` style secrets."""
from __future__ import annotations

import logging
import ssl
import threading
from typing import Dict, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ics_operator.models import IdentityReference
from ics_operator.platform import ICenterClient
from ics_operator.repository import RepositoryError, ResourceRepository

logger = logging.getLogger(__name__)

CLOUDS_SECRET_KEY = "clouds.yaml"
CA_SECRET_KEY = "cacert"
SECRET_KIND = "Secret"

# Shorter blobs are placeholders, not PEM bundles.
MIN_CA_CERT_BYTES = 256


class IdentityError(Exception):
    """The identity reference or its secret is unusable."""


class AuthInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    username: str = ""
    password: str = ""


class ICenter(BaseModel):
    """One cloud entry of a ``clouds.yaml`` document."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    icenter_url: str = Field(default="", alias="iCenterURL")
    auth: AuthInfo = Field(default_factory=AuthInfo)
    verify: bool = False
    ca_cert: Optional[str] = Field(default=None, alias="caCert")


def validate_inputs(identity_ref: Optional[IdentityReference]) -> None:
    if identity_ref is None:
        raise IdentityError("IdentityRef is required")


def is_secret_identity(identity_ref: Optional[IdentityReference]) -> bool:
    return identity_ref is not None and identity_ref.kind == SECRET_KIND


def get_cloud_from_secret(
    repository: ResourceRepository,
    namespace: str,
    secret_name: str,
    cloud_name: Optional[str],
) -> ICenter:
    """Extract the named cloud (and optional CA bundle) from ``namespace/secret_name``."""
    if not secret_name:
        return ICenter()
    if not cloud_name:
        raise IdentityError(
            f"secret name set to {secret_name} but no cloud was specified. Please set cloudName in your spec"
        )

    try:
        data = repository.get_secret(namespace, secret_name)
    except RepositoryError as exc:
        raise IdentityError(f"cannot read credentials secret {namespace}/{secret_name}: {exc}") from exc

    content = data.get(CLOUDS_SECRET_KEY)
    if content is None:
        raise IdentityError(f"ICS credentials secret {secret_name} did not contain key {CLOUDS_SECRET_KEY}")
    try:
        clouds = yaml.safe_load(content) or {}
    except yaml.YAMLError as exc:
        raise IdentityError(f"failed to unmarshal clouds credentials stored in secret {secret_name}: {exc}") from exc

    entry = (clouds.get("clouds") or {}).get(cloud_name)
    if entry is None:
        raise IdentityError(f"cloud {cloud_name!r} not found in secret {secret_name}")
    try:
        cloud = ICenter.model_validate(entry)
    except ValidationError as exc:
        raise IdentityError(f"cloud {cloud_name!r} in secret {secret_name} is malformed: {exc}") from exc

    ca_cert = data.get(CA_SECRET_KEY)
    if ca_cert is not None and len(ca_cert) > MIN_CA_CERT_BYTES:
        cloud.ca_cert = ca_cert.decode()
        cloud.verify = True
    return cloud


def new_client(cloud: ICenter) -> ICenterClient:
    verify: object = cloud.verify
    if cloud.ca_cert:
        verify = ssl.create_default_context(cadata=cloud.ca_cert)
    return ICenterClient(cloud.icenter_url, cloud.auth.username, cloud.auth.password, verify=verify)


class PlatformCache:
    """One iCenter client per (namespace, secret, cloud)."""

    def __init__(self, repository: ResourceRepository):
        self._repository = repository
        self._clients: Dict[Tuple[str, str, str], ICenterClient] = {}
        self._lock = threading.Lock()

    def get(self, namespace: str, identity_ref: Optional[IdentityReference], cloud_name: Optional[str]) -> ICenterClient:
        validate_inputs(identity_ref)
        if not is_secret_identity(identity_ref):
            raise IdentityError(f"unsupported identity kind {identity_ref.kind!r}")
        key = (namespace, identity_ref.name, cloud_name or "")
        with self._lock:
            cached = self._clients.get(key)
        if cached is not None:
            return cached

        client = new_client(get_cloud_from_secret(self._repository, namespace, identity_ref.name, cloud_name))
        with self._lock:
            existing = self._clients.setdefault(key, client)
        if existing is not client:
            client.close()
        return existing

    def close(self) -> None:
        with self._lock:
            clients, self._clients = list(self._clients.values()), {}
        for client in clients:
            client.close()
