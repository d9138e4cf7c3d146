"""Defaulting of SriovNetworkNodePolicy objects by the admission webhook."""

from __future__ import annotations

import base64
import json
import logging
from typing import Any

from .model import DEFAULT_POLICY_NAME, LINK_TYPE_IB

log = logging.getLogger(__name__)

PATCH_TYPE_JSON_PATCH = "JSONPatch"

DEFAULT_PRIORITY_PATCH = {"op": "add", "path": "/spec/priority", "value": 99}
DEFAULT_DEVICE_TYPE_PATCH = {"op": "add", "path": "/spec/deviceType", "value": "netdevice"}
DEFAULT_IS_RDMA_PATCH = {"op": "add", "path": "/spec/isRdma", "value": False}
INFINIBAND_IS_RDMA_PATCH = {"op": "add", "path": "/spec/isRdma", "value": True}


def _mapping(cr: dict, key: str) -> dict:
    value = cr.get(key)
    if not isinstance(value, dict):
        raise ValueError(f"custom resource has no {key!r} object")
    return value


def mutate_sriov_network_node_policy(cr: dict) -> dict[str, Any]:
    """Return an admission response that fills in missing policy defaults.

    The patch is a base64-encoded JSON patch, as on the wire.
    """
    if not isinstance(cr, dict):
        raise ValueError("custom resource must be an object")
    response: dict[str, Any] = {"allowed": True}

    name = _mapping(cr, "metadata").get("name")
    if name == DEFAULT_POLICY_NAME:
        return response

    spec = _mapping(cr, "spec")
    patches = []
    if "priority" not in spec:
        log.debug("setting default priority for %s", name)
        patches.append(DEFAULT_PRIORITY_PATCH)
    if "deviceType" not in spec:
        log.debug("setting default deviceType for %s", name)
        patches.append(DEFAULT_DEVICE_TYPE_PATCH)
    if "isRdma" not in spec:
        log.debug("setting default isRdma for %s", name)
        patches.append(DEFAULT_IS_RDMA_PATCH)
    link_type = spec.get("linkType")
    # An InfiniBand link requires RDMA.
    if isinstance(link_type, str) and link_type.lower() == LINK_TYPE_IB.lower():
        patches.append(INFINIBAND_IS_RDMA_PATCH)

    encoded = json.dumps(patches, separators=(",", ":")).encode("utf-8")
    response["patch"] = base64.b64encode(encoded).decode("ascii")
    response["patchType"] = PATCH_TYPE_JSON_PATCH
    return response