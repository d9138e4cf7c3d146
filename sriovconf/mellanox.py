"""Plugin that sets SR-IOV firmware options of Mellanox NICs through mstconfig."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable

from .host import is_kernel_lockdown_mode, run_command
from .mlx import mst_config_read_data, parse_mstconfig_output
from .model import (
    LINK_TYPE_ETH,
    LINK_TYPE_IB,
    Interface,
    InterfaceExt,
    NodeState,
    VendorPlugin,
    get_vf_device_id,
)

log = logging.getLogger(__name__)

PRECONFIGURED_LINK_TYPE = "Preconfigured"
UNKNOWN_LINK_TYPE = "Uknown"
TOTAL_VFS = "NUM_OF_VFS"
ENABLE_SRIOV = "SRIOV_EN"
LINK_TYPE_P1 = "LINK_TYPE_P1"
LINK_TYPE_P2 = "LINK_TYPE_P2"
MELLANOX_VENDOR_ID = "15b3"

_FW_ATTRIBUTES = (TOTAL_VFS, ENABLE_SRIOV, LINK_TYPE_P1, LINK_TYPE_P2)
_INTEGER = re.compile(r"[+-]?\d+")
_BASE_ARG_COUNT = 4


@dataclass
class MlnxNic:
    """Firmware SR-IOV settings of a NIC; total_vfs -1 means unchanged."""

    enable_sriov: bool = False
    total_vfs: int = 0
    link_type_p1: str = ""
    link_type_p2: str = ""


def get_link_type(link_type: str) -> str:
    """Normalise a firmware link type value to ETH, IB, Uknown or Preconfigured."""
    if LINK_TYPE_ETH in link_type:
        return LINK_TYPE_ETH
    if LINK_TYPE_IB in link_type:
        return LINK_TYPE_IB
    if link_type:
        log.warning("link type %s is not one of [ETH, IB]", link_type)
        return UNKNOWN_LINK_TYPE
    log.warning("LINK_TYPE_P* attribute was not found")
    return PRECONFIGURED_LINK_TYPE


def mlnx_nic_from_map(mst_data: dict[str, str]) -> MlnxNic:
    """Build firmware settings from parsed mstconfig values."""
    total = mst_data.get(TOTAL_VFS, "")
    if not _INTEGER.fullmatch(total):
        raise ValueError(f"invalid {TOTAL_VFS} value: {total!r}")
    nic = MlnxNic(
        enable_sriov="True" in mst_data.get(ENABLE_SRIOV, ""),
        total_vfs=int(total),
        link_type_p1=get_link_type(mst_data.get(LINK_TYPE_P1, "")),
    )
    if LINK_TYPE_P2 in mst_data:
        nic.link_type_p2 = get_link_type(mst_data[LINK_TYPE_P2])
    return nic


def pci_address_prefix(pci_address: str) -> str:
    """The PCI address without its function digit, shared by both ports of a NIC."""
    return pci_address[:-1]


def handle_total_vfs(
    fw_current: MlnxNic,
    fw_next: MlnxNic,
    attrs: MlnxNic,
    iface_spec: Interface,
    total_vfs: int,
) -> tuple[bool, bool]:
    """Record a VF count change in attrs; return (need_reboot, change_without_reboot)."""
    if fw_current.total_vfs != total_vfs:
        log.debug(
            "%s: changing TotalVfs %d to %d, needs reboot",
            iface_spec.pci_address, fw_current.total_vfs, total_vfs,
        )
        attrs.total_vfs = total_vfs
        return True, False
    # The policy was removed and then applied again.
    if fw_next.total_vfs != total_vfs:
        log.debug("changing next boot TotalVfs to %d, no reboot needed", total_vfs)
        attrs.total_vfs = total_vfs
        return False, True
    return False, False


def handle_enable_sriov(
    total_vfs: int, fw_current: MlnxNic, fw_next: MlnxNic, attrs: MlnxNic
) -> tuple[bool, bool]:
    """Enable or disable SR-IOV per total_vfs; return (need_reboot, change_without_reboot)."""
    if total_vfs == 0 and fw_current.enable_sriov:
        attrs.enable_sriov = False
        return True, False
    if total_vfs > 0 and not fw_current.enable_sriov:
        attrs.enable_sriov = True
        return True, False
    if total_vfs > 0 and not fw_next.enable_sriov:
        attrs.enable_sriov = True
        return False, True
    return False, False


def is_link_type_require_change(
    iface: Interface, iface_status: InterfaceExt, fw_link_type: str
) -> bool:
    """True when the desired link type differs and the firmware can change it."""
    if not iface.link_type or iface_status.link_type.lower() == iface.link_type.lower():
        return False
    if iface.link_type.lower() not in (LINK_TYPE_ETH.lower(), LINK_TYPE_IB.lower()):
        raise ValueError(
            f"Not supported link type: {iface.link_type}, "
            "supported link types: [eth, ETH, ib, and IB]"
        )
    if fw_link_type == UNKNOWN_LINK_TYPE:
        raise ValueError(f"Unknown link type: {fw_link_type}")
    if fw_link_type == PRECONFIGURED_LINK_TYPE:
        raise ValueError(
            f"Network card {iface.pci_address} does not support link type change"
        )
    return True


def firmware_command_args(pci_addr: str, attrs: MlnxNic) -> list[str]:
    """Arguments of the mstconfig call that writes attrs to the device."""
    args = ["-d", pci_addr, "-y", "set"]
    if attrs.enable_sriov:
        args.append(f"{ENABLE_SRIOV}=True")
    elif attrs.total_vfs == 0:
        args.append(f"{ENABLE_SRIOV}=False")
    if attrs.total_vfs > -1:
        args.append(f"{TOTAL_VFS}={attrs.total_vfs}")
    if attrs.link_type_p1:
        args.append(f"{LINK_TYPE_P1}={attrs.link_type_p1}")
    if attrs.link_type_p2:
        args.append(f"{LINK_TYPE_P2}={attrs.link_type_p2}")
    return args


class MellanoxPlugin(VendorPlugin):
    """Adjusts Mellanox firmware VF count, SR-IOV switch and port link types."""

    name = "mellanox_plugin"
    spec = "1.0"

    def __init__(
        self,
        read_fw_data: Callable[[str], str] | None = None,
        lockdown: Callable[[], bool] | None = None,
        run: Callable[..., str] | None = None,
    ):
        self._read_fw_data = read_fw_data or mst_config_read_data
        self._lockdown = lockdown or (lambda: is_kernel_lockdown_mode(False))
        self._run = run or run_command
        self.nics_status: dict[str, dict[str, InterfaceExt]] = {}
        self.nics_spec: dict[str, Interface] = {}
        self.attributes_to_change: dict[str, MlnxNic] = {}

    def _fw_data(self, pci_address: str) -> tuple[MlnxNic, MlnxNic]:
        out = self._read_fw_data(pci_address)
        current, next_boot = parse_mstconfig_output(out, _FW_ATTRIBUTES)
        return mlnx_nic_from_map(current), mlnx_nic_from_map(next_boot)

    def _other_port_spec(self, pci_address: str) -> Interface:
        prefix = pci_address_prefix(pci_address)
        other = prefix + ("1" if pci_address[len(prefix):] == "0" else "0")
        return self.nics_spec.get(other, Interface())

    def _iface_status(self, pci_address: str) -> InterfaceExt:
        ports = self.nics_status.get(pci_address_prefix(pci_address), {})
        return ports.get(pci_address, InterfaceExt())

    def _handle_link_type(self, prefix: str, fw_data: MlnxNic, attrs: MlnxNic) -> bool:
        need_reboot = False
        for suffix, fw_link, field_name in (
            ("0", fw_data.link_type_p1, "link_type_p1"),
            ("1", fw_data.link_type_p2, "link_type_p2"),
        ):
            address = prefix + suffix
            port_spec = self.nics_spec.get(address)
            if port_spec is None:
                continue
            if is_link_type_require_change(port_spec, self._iface_status(address), fw_link):
                log.debug("changing link type of %s to %s, needs reboot", address, port_spec.link_type)
                setattr(attrs, field_name, port_spec.link_type)
                need_reboot = True
        return need_reboot

    def on_node_state_change(self, new_state: NodeState) -> tuple[bool, bool]:
        log.info("mellanox-plugin on_node_state_change()")
        self.attributes_to_change = {}
        self.nics_spec = {}
        processed: set[str] = set()

        # The NIC status is read once, on the first state.
        if not self.nics_status:
            for iface in new_state.status_interfaces:
                if iface.vendor != MELLANOX_VENDOR_ID:
                    continue
                prefix = pci_address_prefix(iface.pci_address)
                self.nics_status.setdefault(prefix, {})[iface.pci_address] = iface

        for iface in new_state.spec_interfaces:
            if pci_address_prefix(iface.pci_address) in self.nics_status:
                self.nics_spec[iface.pci_address] = iface

        if self._lockdown():
            if self.nics_spec:
                raise RuntimeError("mellanox device detected when in lockdown mode")
            log.info("lockdown mode detected, skipping mellanox nic processing")
            return False, False

        need_reboot = False
        for iface_spec in self.nics_spec.values():
            prefix = pci_address_prefix(iface_spec.pci_address)
            # Dual port NICs are handled once.
            if prefix in processed:
                continue
            processed.add(prefix)
            fw_current, fw_next = self._fw_data(iface_spec.pci_address)

            total_vfs = iface_spec.num_vfs
            if len(self.nics_status[prefix]) > 1:
                total_vfs = max(total_vfs, self._other_port_spec(iface_spec.pci_address).num_vfs)

            attrs = MlnxNic(total_vfs=-1)
            vfs_reboot, vfs_change = handle_total_vfs(
                fw_current, fw_next, attrs, iface_spec, total_vfs
            )
            sriov_reboot, sriov_change = handle_enable_sriov(
                total_vfs, fw_current, fw_next, attrs
            )
            link_reboot = self._handle_link_type(prefix, fw_current, attrs)

            nic_reboot = vfs_reboot or sriov_reboot or link_reboot
            if nic_reboot or vfs_change or sriov_change:
                self.attributes_to_change[iface_spec.pci_address] = attrs
            need_reboot = need_reboot or nic_reboot

        # NICs without a spec get their VFs removed.
        for prefix, ports in self.nics_status.items():
            if prefix in processed:
                continue
            processed.add(prefix)
            pci_address = prefix + "0"
            if get_vf_device_id(ports.get(pci_address, InterfaceExt()).device_id) == "":
                continue
            _, fw_next = self._fw_data(pci_address)
            if fw_next.total_vfs > 0 or fw_next.enable_sriov:
                self.attributes_to_change[pci_address] = MlnxNic(total_vfs=0)
                log.debug("changing TotalVfs %d to 0, no reboot needed", fw_next.total_vfs)

        log.debug("mellanox-plugin need_drain %s need_reboot %s", need_reboot, need_reboot)
        return need_reboot, need_reboot

    def apply(self) -> None:
        if self._lockdown():
            log.info("mellanox-plugin apply() skipped due to lockdown mode")
            return
        for pci_addr, attrs in self.attributes_to_change.items():
            args = firmware_command_args(pci_addr, attrs)
            if len(args) <= _BASE_ARG_COUNT:
                continue
            self._run("mstconfig", *args)