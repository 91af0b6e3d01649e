"""CustomResourceDefinitions for ICSVM and ICSCluster, installable at startup."""
from __future__ import annotations

import logging
from typing import Dict, List

from kubernetes.client import ApiException, ApiextensionsV1Api

from ics_operator import config

logger = logging.getLogger(__name__)

_PRESERVE = {"type": "object", "x-kubernetes-preserve-unknown-fields": True}


def _crd(kind: str, plural: str, short_names: List[str], spec_properties: Dict[str, dict]) -> dict:
    return {
        "apiVersion": "apiextensions.k8s.io/v1",
        "kind": "CustomResourceDefinition",
        "metadata": {"name": f"{plural}.{config.ICS_GROUP}"},
        "spec": {
            "group": config.ICS_GROUP,
            "scope": "Namespaced",
            "names": {
                "plural": plural,
                "singular": kind.lower(),
                "kind": kind,
                "shortNames": short_names,
                "categories": ["cluster-api"],
            },
            "versions": [
                {
                    "name": config.ICS_VERSION,
                    "served": True,
                    "storage": True,
                    "schema": {
                        "openAPIV3Schema": {
                            "type": "object",
                            "properties": {
                                "spec": {
                                    "type": "object",
                                    "properties": spec_properties,
                                    "x-kubernetes-preserve-unknown-fields": True,
                                },
                                "status": _PRESERVE,
                            },
                        }
                    },
                    "subresources": {"status": {}},
                }
            ],
        },
    }


_REF = {"type": "object", "properties": {"namespace": {"type": "string"}, "name": {"type": "string"}}}
_IDENTITY_REF = {"type": "object", "properties": {"kind": {"type": "string"}, "name": {"type": "string"}}}

ICSVM_CRD_MANIFEST = _crd(
    "ICSVM",
    config.ICSVM_PLURAL,
    ["icsvm"],
    {
        "template": {"type": "string"},
        "datacenter": {"type": "string"},
        "cluster": {"type": "string"},
        "numCPUs": {"type": "integer", "minimum": 1},
        "memoryMiB": {"type": "integer", "minimum": 1},
        "diskGiB": {"type": "integer", "minimum": 1},
        "network": _PRESERVE,
        "bootstrapRef": _REF,
        "identityRef": _IDENTITY_REF,
        "cloudName": {"type": "string"},
    },
)

ICSCLUSTER_CRD_MANIFEST = _crd(
    "ICSCluster",
    config.ICSCLUSTER_PLURAL,
    ["icscluster"],
    {
        "cloudName": {"type": "string"},
        "identityRef": _IDENTITY_REF,
        "controlPlaneEndpoint": {
            "type": "object",
            "properties": {"host": {"type": "string"}, "port": {"type": "integer"}},
        },
    },
)


def install_crds(apiext: ApiextensionsV1Api) -> None:
    """Create the CRDs; ones that already exist are left alone."""
    for manifest in (ICSVM_CRD_MANIFEST, ICSCLUSTER_CRD_MANIFEST):
        name = manifest["metadata"]["name"]
        try:
            apiext.create_custom_resource_definition(body=manifest)
            logger.info("Successfully applied CRD %s", name)
        except ApiException as exc:
            if exc.status == 409:  # already present
                logger.debug("CRD %s already present", name)
            else:
                raise
