"""Node state, policy and configuration objects shared by the whole package."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field

DEFAULT_POLICY_NAME = "default"
DEFAULT_CONFIG_NAME = "default"
DEVICE_TYPE_NETDEVICE = "netdevice"
DEVICE_TYPE_VFIO_PCI = "vfio-pci"
LINK_TYPE_ETH = "ETH"
LINK_TYPE_IB = "IB"
ESWITCH_MODE_LEGACY = "legacy"
ESWITCH_MODE_SWITCHDEV = "switchdev"
OPENSTACK_NETWORK_ID = "openstack/NetworkID"
INVALID_VF_INDEX = -1


@dataclass
class VfGroup:
    """A range of VFs on one PF configured by a single policy."""

    resource_name: str = ""
    device_type: str = ""
    vf_range: str = ""
    policy_name: str = ""
    mtu: int = 0
    is_rdma: bool = False


@dataclass
class Interface:
    """Desired configuration of one physical function."""

    pci_address: str = ""
    num_vfs: int = 0
    mtu: int = 0
    name: str = ""
    link_type: str = ""
    eswitch_mode: str = ""
    vf_groups: list[VfGroup] = field(default_factory=list)


@dataclass
class VirtualFunction:
    """Observed state of one virtual function."""

    name: str = ""
    mac: str = ""
    assigned: str = ""
    driver: str = ""
    pci_address: str = ""
    vendor: str = ""
    device_id: str = ""
    vlan: int = 0
    mtu: int = 0
    vf_id: int = 0


@dataclass
class InterfaceExt:
    """Observed state of one physical function."""

    name: str = ""
    mac: str = ""
    driver: str = ""
    pci_address: str = ""
    vendor: str = ""
    device_id: str = ""
    net_filter: str = ""
    mtu: int = 0
    num_vfs: int = 0
    link_speed: str = ""
    link_type: str = ""
    eswitch_mode: str = ""
    total_vfs: int = 0
    vfs: list[VirtualFunction] = field(default_factory=list)


@dataclass
class NodeState:
    """Desired (spec) and observed (status) interfaces of a node."""

    name: str = ""
    namespace: str = ""
    spec_interfaces: list[Interface] = field(default_factory=list)
    status_interfaces: list[InterfaceExt] = field(default_factory=list)

    def interface_by_pci_address(self, pci_address: str) -> InterfaceExt | None:
        """Return the observed interface with this PCI address, if any."""
        return next(
            (i for i in self.status_interfaces if i.pci_address == pci_address), None
        )


@dataclass
class NicSelector:
    vendor: str = ""
    device_id: str = ""
    root_devices: list[str] = field(default_factory=list)
    pf_names: list[str] = field(default_factory=list)
    net_filter: str = ""


@dataclass
class Node:
    name: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    provider_id: str = ""


@dataclass
class NodePolicy:
    """A policy describing which NICs on which nodes get which VFs."""

    name: str = ""
    namespace: str = ""
    resource_name: str = ""
    node_selector: dict[str, str] = field(default_factory=dict)
    priority: int = 0
    mtu: int = 0
    num_vfs: int = 0
    nic_selector: NicSelector = field(default_factory=NicSelector)
    device_type: str = ""
    is_rdma: bool = False
    link_type: str = ""
    eswitch_mode: str = ""

    def selects(self, node: Node) -> bool:
        """True when every entry of the node selector matches a node label."""
        return all(
            key in node.labels and node.labels[key] == value
            for key, value in self.node_selector.items()
        )


@dataclass
class OperatorConfig:
    name: str = ""
    namespace: str = ""
    enable_injector: bool | None = None
    enable_operator_webhook: bool | None = None
    config_daemon_node_selector: dict[str, str] = field(default_factory=dict)
    log_level: int = 0
    disable_drain: bool = False


class VendorPlugin(abc.ABC):
    """A plugin that configures NICs when the node state changes."""

    name: str = ""
    spec: str = "1.0"

    @abc.abstractmethod
    def on_node_state_change(self, new_state: NodeState) -> tuple[bool, bool]:
        """Record the new state; return (need_drain, need_reboot)."""

    @abc.abstractmethod
    def apply(self) -> None:
        """Apply the recorded configuration."""


def index_in_range(index: int, vf_range: str) -> bool:
    """True when index lies within an inclusive "start-end" range."""
    bounds = vf_range.split("-")
    if len(bounds) != 2:
        return False
    try:
        start, end = int(bounds[0]), int(bounds[1])
    except ValueError:
        return False
    return start <= index <= end


def _parse_range(text: str) -> tuple[int, int]:
    bounds = text.split("-")
    if len(bounds) != 2:
        raise ValueError(f"invalid range: {text}")
    try:
        return int(bounds[0]), int(bounds[1])
    except ValueError as exc:
        raise ValueError(f"invalid range: {text}") from exc


def parse_pf_name(name: str) -> tuple[str, int, int]:
    """Split "pf#start-end" into (pf, start, end); no range gives -1, -1."""
    if "#" not in name:
        return name, INVALID_VF_INDEX, INVALID_VF_INDEX
    fields = name.split("#")
    start, end = _parse_range(fields[1])
    return fields[0], start, end


_nic_ids: list[tuple[str, str, str]] = []


def set_nic_id_map(entries) -> None:
    """Replace the supported NIC table with "vendor pf-device vf-device" entries."""
    parsed = []
    for entry in entries:
        fields = entry.split()
        if len(fields) != 3:
            raise ValueError(f"invalid NIC id entry: {entry!r}")
        parsed.append((fields[0], fields[1], fields[2]))
    _nic_ids[:] = parsed


def is_supported_vendor(vendor: str) -> bool:
    return any(v == vendor for v, _, _ in _nic_ids)


def is_supported_device(device_id: str) -> bool:
    return any(d == device_id for _, d, _ in _nic_ids)


def is_supported_model(vendor: str, device_id: str) -> bool:
    return any(v == vendor and d == device_id for v, d, _ in _nic_ids)


def is_vf_supported_model(vendor: str, device_id: str) -> bool:
    return any(v == vendor and vf == device_id for v, _, vf in _nic_ids)


def get_vf_device_id(device_id: str) -> str:
    """Return the VF device id for a PF device id, or "" when unknown."""
    return next((vf for _, d, vf in _nic_ids if d == device_id), "")


def _metadata(data: dict) -> tuple[str, str]:
    meta = data.get("metadata") or {}
    return meta.get("name", ""), meta.get("namespace", "")


def policy_from_dict(data: dict) -> NodePolicy:
    """Build a NodePolicy from its API object representation."""
    name, namespace = _metadata(data)
    spec = data.get("spec") or {}
    nic = spec.get("nicSelector") or {}
    return NodePolicy(
        name=name,
        namespace=namespace,
        resource_name=spec.get("resourceName", ""),
        node_selector=dict(spec.get("nodeSelector") or {}),
        priority=int(spec.get("priority", 0)),
        mtu=int(spec.get("mtu", 0)),
        num_vfs=int(spec.get("numVfs", 0)),
        nic_selector=NicSelector(
            vendor=nic.get("vendor", ""),
            device_id=nic.get("deviceID", ""),
            root_devices=list(nic.get("rootDevices") or []),
            pf_names=list(nic.get("pfNames") or []),
            net_filter=nic.get("netFilter", ""),
        ),
        device_type=spec.get("deviceType", ""),
        is_rdma=bool(spec.get("isRdma", False)),
        link_type=spec.get("linkType", ""),
        eswitch_mode=spec.get("eSwitchMode", ""),
    )


def operator_config_from_dict(data: dict) -> OperatorConfig:
    """Build an OperatorConfig from its API object representation."""
    name, namespace = _metadata(data)
    spec = data.get("spec") or {}
    return OperatorConfig(
        name=name,
        namespace=namespace,
        enable_injector=spec.get("enableInjector"),
        enable_operator_webhook=spec.get("enableOperatorWebhook"),
        config_daemon_node_selector=dict(spec.get("configDaemonNodeSelector") or {}),
        log_level=int(spec.get("logLevel", 0)),
        disable_drain=bool(spec.get("disableDrain", False)),
    )