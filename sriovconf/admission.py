"""Admission review handling for the SR-IOV custom resources."""

from __future__ import annotations

import json
import logging
from typing import Any

from .model import operator_config_from_dict, policy_from_dict
from .mutate import mutate_sriov_network_node_policy
from .validate import (
    ClusterView,
    Operation,
    ValidationError,
    validate_sriov_network_node_policy,
    validate_sriov_operator_config,
)

log = logging.getLogger(__name__)


def _error_response(err: Exception) -> dict[str, Any]:
    return {"allowed": False, "result": {"message": str(err)}}


def _decode_object(raw: Any) -> dict:
    if isinstance(raw, (bytes, bytearray, str)):
        raw = json.loads(raw)
    if not isinstance(raw, dict):
        raise ValueError("admission request object must be a JSON object")
    return raw


def _request(review: dict) -> dict:
    request = review.get("request") if isinstance(review, dict) else None
    if not isinstance(request, dict):
        raise ValueError("admission review has no request")
    return request


def mutate_custom_resource(review: dict) -> dict[str, Any]:
    """Return the admission response adding policy defaults."""
    try:
        cr = _decode_object(_request(review).get("object"))
        return mutate_sriov_network_node_policy(cr)
    except (ValueError, TypeError) as exc:
        log.error("mutation failed: %s", exc)
        return _error_response(exc)


def validate_custom_resource(review: dict, cluster: ClusterView | None = None) -> dict[str, Any]:
    """Return the admission response validating a policy or operator config."""
    response: dict[str, Any] = {"allowed": True}
    try:
        request = _request(review)
        operation = request.get("operation")
        raw = request.get("oldObject") if operation == Operation.DELETE else request.get("object")
        kind = (request.get("kind") or {}).get("kind")

        if kind == "SriovNetworkNodePolicy":
            obj = policy_from_dict(_decode_object(raw))

            def check():
                return validate_sriov_network_node_policy(obj, operation, cluster)

        elif kind == "SriovOperatorConfig":
            obj = operator_config_from_dict(_decode_object(raw))

            def check():
                return validate_sriov_operator_config(obj, operation)

        else:
            return response
    except (ValueError, TypeError) as exc:
        log.error("validation failed: %s", exc)
        return _error_response(exc)

    try:
        warnings = check()
    except ValidationError as exc:
        response["allowed"] = False
        warnings = exc.warnings
        response["result"] = {"reason": str(exc)}
    if warnings:
        response["warnings"] = warnings
    return response