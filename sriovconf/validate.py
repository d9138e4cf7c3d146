"""Validation of SR-IOV policies and operator configuration objects."""

from __future__ import annotations

import enum
import logging
import os
import re
from dataclasses import dataclass, field

from .model import (
    DEFAULT_CONFIG_NAME,
    DEFAULT_POLICY_NAME,
    LINK_TYPE_IB,
    InterfaceExt,
    NicSelector,
    Node,
    NodePolicy,
    NodeState,
    OperatorConfig,
    is_supported_device,
    is_supported_model,
    is_supported_vendor,
    is_vf_supported_model,
    parse_pf_name,
)

log = logging.getLogger(__name__)

INTEL_ID = "8086"
MELLANOX_ID = "15b3"
MLX_MAX_VFS = 128

# Platforms on which VFs are handed to virtual machines.
PLATFORM_NAMES = ("openstack",)

_RESOURCE_NAME = re.compile(r"[a-zA-Z0-9_]+")
_INTEGER = re.compile(r"[+-]?\d+")


class Operation(str, enum.Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CONNECT = "CONNECT"


class ValidationError(Exception):
    """An object was rejected; warnings collected so far travel with it."""

    def __init__(self, message: str, warnings: list[str] | None = None):
        super().__init__(message)
        self.warnings = list(warnings or [])


@dataclass
class ClusterView:
    """The cluster objects a policy is checked against."""

    nodes: list[Node] = field(default_factory=list)
    node_states: list[NodeState] = field(default_factory=list)
    policies: list[NodePolicy] = field(default_factory=list)


def _namespace() -> str:
    return os.environ.get("NAMESPACE", "")


def validate_sriov_operator_config(cr: OperatorConfig, operation) -> list[str]:
    """Accept only the default configuration; return warnings."""
    warnings: list[str] = []
    if cr.name == DEFAULT_CONFIG_NAME:
        if operation == Operation.DELETE:
            raise ValidationError("default SriovOperatorConfig shouldn't be deleted", warnings)
        if cr.disable_drain:
            warnings.append(
                "Node draining is disabled for applying SriovNetworkNodePolicy, "
                "it may result in workload interruption."
            )
        return warnings
    raise ValidationError("only default SriovOperatorConfig is used", warnings)


def validate_sriov_network_node_policy(
    cr: NodePolicy, operation, cluster: ClusterView | None = None
) -> list[str]:
    """Validate a policy for the given operation; return warnings."""
    warnings: list[str] = []
    namespace = _namespace()

    if cr.name == DEFAULT_POLICY_NAME and cr.namespace == namespace:
        if operation == Operation.DELETE:
            raise ValidationError("default SriovNetworkNodePolicy shouldn't be deleted", warnings)
        return warnings

    if cr.namespace != namespace:
        warnings.append(
            cr.name
            + f" is created or updated but not used. Only policy in {namespace} namespace is respected."
        )

    if operation == Operation.DELETE:
        return warnings

    try:
        static_validate_sriov_network_node_policy(cr)
        dynamic_validate_sriov_network_node_policy(cr, cluster or ClusterView())
    except ValidationError as exc:
        raise ValidationError(str(exc), warnings) from exc
    return warnings


def _atoi(text: str) -> int:
    if not _INTEGER.fullmatch(text):
        raise ValueError(text)
    return int(text)


def _check_pf_name(pf: str, num_vfs: int) -> None:
    if "#" not in pf:
        return
    fields = pf.split("#")
    if len(fields) != 2:
        raise ValidationError(
            f"failed to parse {pf} PF name in nicSelector, probably incorrect separator character usage"
        )
    bounds = fields[1].split("-")
    if len(bounds) != 2:
        raise ValidationError(
            f"failed to parse {pf} PF name nicSelector, probably incorrect range character usage"
        )
    try:
        start = _atoi(bounds[0])
    except ValueError:
        raise ValidationError(
            f"failed to parse {pf} PF name nicSelector, start range is incorrect"
        ) from None
    try:
        end = _atoi(bounds[1])
    except ValueError:
        raise ValidationError(
            f"failed to parse {pf} PF name nicSelector, end range is incorrect"
        ) from None
    if end < start:
        raise ValidationError(
            f"failed to parse {pf} PF name nicSelector, end range shall not be smaller than start range"
        )
    if not end < num_vfs:
        raise ValidationError(
            f"failed to parse {pf} PF name nicSelector, end range exceeds the maximum VF index "
        )


def static_validate_sriov_network_node_policy(cr: NodePolicy) -> bool:
    """Checks that need nothing but the policy itself."""
    if not _RESOURCE_NAME.fullmatch(cr.resource_name):
        raise ValidationError(
            f'resource name "{cr.resource_name}" contains invalid characters, the accepted '
            'syntax of the regular expressions is: "^[a-zA-Z0-9_]+$"'
        )

    nic = cr.nic_selector
    if not (nic.vendor or nic.device_id or nic.pf_names or nic.root_devices or nic.net_filter):
        raise ValidationError(
            "at least one of these parameters (vendor, deviceID, pfNames, rootDevices or "
            f"netFilter) has to be defined in nicSelector in CR {cr.name}"
        )

    dev_mode = os.environ.get("DEV_MODE") == "TRUE"
    if dev_mode:
        log.info("dev mode enabled - admitting not supported NICs")
    else:
        if nic.vendor:
            if not is_supported_vendor(nic.vendor):
                raise ValidationError(f"vendor {nic.vendor} is not supported")
            if nic.device_id and not is_supported_model(nic.vendor, nic.device_id):
                raise ValidationError(
                    f"vendor/device {nic.vendor}/{nic.device_id} is not supported"
                )
        elif nic.device_id and not is_supported_device(nic.device_id):
            raise ValidationError(f"device {nic.device_id} is not supported")

    for pf in nic.pf_names:
        _check_pf_name(pf, cr.num_vfs)

    # RoCE: netdevice with RDMA on bare metal, vfio-pci without RDMA in a VM.
    if cr.device_type == "vfio-pci" and cr.is_rdma:
        raise ValidationError(
            "'deviceType: vfio-pci' conflicts with 'isRdma: true'; Set 'deviceType' to "
            "(string)'netdevice' Or Set 'isRdma' to (bool)'false'"
        )
    if cr.link_type.lower() == LINK_TYPE_IB.lower() and not cr.is_rdma:
        raise ValidationError(
            "'linkType: ib or IB' requires 'isRdma: true'; Set 'isRdma' to (bool)'true'"
        )
    return True


def dynamic_validate_sriov_network_node_policy(cr: NodePolicy, cluster: ClusterView) -> bool:
    """Checks of the policy against the nodes, node states and other policies."""
    nodes_selected = False
    interface_selected = False

    for node in cluster.nodes:
        if not cr.selects(node):
            continue
        nodes_selected = True
        for state in cluster.node_states:
            if state.name == node.name and validate_policy_for_node_state(cr, state, node):
                interface_selected = True
        # Other policies may not have reached a node state yet.
        for other in cluster.policies:
            if other.name != cr.name and other.selects(node):
                validate_policy_for_node_policy(cr, other)

    if not nodes_selected:
        raise ValidationError(
            f"no matched node is selected by the nodeSelector in CR {cr.name}"
        )
    if not interface_selected:
        raise ValidationError(
            f"no supported NIC is selected by the nicSelector in CR {cr.name}"
        )
    return True


def validate_policy_for_node_state(policy: NodePolicy, state: NodeState, node: Node) -> bool:
    """Check the policy against a node's interfaces; return whether it selects any."""
    selected = False
    for iface in state.status_interfaces:
        if not validate_nic_model(policy.nic_selector, iface, node):
            continue
        selected = True
        num_vfs = policy.num_vfs
        if policy.name != DEFAULT_POLICY_NAME and num_vfs == 0:
            raise ValidationError(f"numVfs({num_vfs}) in CR {policy.name} is not allowed")
        if num_vfs > iface.total_vfs and iface.vendor == INTEL_ID:
            raise ValidationError(
                f"numVfs({num_vfs}) in CR {policy.name} exceed the maximum allowed value({iface.total_vfs})"
            )
        if num_vfs > MLX_MAX_VFS and iface.vendor == MELLANOX_ID:
            raise ValidationError(
                f"numVfs({num_vfs}) in CR {policy.name} exceed the maximum allowed value({MLX_MAX_VFS})"
            )
    return selected


def validate_policy_for_node_policy(current: NodePolicy, previous: NodePolicy) -> bool:
    """Reject a policy whose VF range on a PF overlaps that of another policy."""
    if current.name == previous.name:
        return True

    for cur_pf in current.nic_selector.pf_names:
        try:
            cur_name, cur_start, cur_end = parse_pf_name(cur_pf)
        except ValueError:
            raise ValidationError(f"invalid PF name: {cur_pf}") from None
        for pre_pf in previous.nic_selector.pf_names:
            try:
                pre_name, pre_start, pre_end = parse_pf_name(pre_pf)
            except ValueError:
                # Already validated when that policy was admitted.
                continue
            if cur_name == pre_name:
                if cur_end < pre_start or cur_start > pre_end:
                    return True
                raise ValidationError(
                    f"VF index range in {cur_pf} is overlapped with existing policy {previous.name}"
                )
    return True


def validate_nic_model(selector: NicSelector, iface: InterfaceExt, node: Node) -> bool:
    """True when the selector picks the interface and its model is supported."""
    if selector.vendor and selector.vendor != iface.vendor:
        return False
    if selector.device_id and selector.device_id != iface.device_id:
        return False
    if selector.root_devices and iface.pci_address not in selector.root_devices:
        return False
    if selector.pf_names:
        pf_names = [p.split("#")[0] for p in selector.pf_names]
        if iface.name not in pf_names:
            return False

    if is_supported_model(iface.vendor, iface.device_id):
        return True

    # On a virtual platform the interface is itself a VF.
    provider = node.provider_id.lower()
    return any(
        platform.lower() in provider
        and selector.net_filter != ""
        and selector.net_filter == iface.net_filter
        and is_vf_supported_model(iface.vendor, iface.device_id)
        for platform in PLATFORM_NAMES
    )