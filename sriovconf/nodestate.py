"""Bring a node's SR-IOV devices in line with the desired node state."""

from __future__ import annotations

import json
import logging
import os
import time

from .host import DPDK_DRIVERS, Sysfs, generate_random_guid, is_kernel_lockdown_mode, run_command
from .mlx import BlueFieldMode, mellanox_bluefield_mode
from .model import (
    DEVICE_TYPE_NETDEVICE,
    ESWITCH_MODE_SWITCHDEV,
    LINK_TYPE_ETH,
    LINK_TYPE_IB,
    Interface,
    InterfaceExt,
    NodeState,
    VfGroup,
    index_in_range,
)

log = logging.getLogger(__name__)

CLUSTER_TYPE_OPENSHIFT = "openshift"
CLUSTER_TYPE_KUBERNETES = "kubernetes"
VENDOR_MELLANOX = "15b3"
DEVICE_BF2 = "a2d6"
SWITCHDEV_CONF_PATH = "/host/etc/sriov_config.json"
DEFAULT_ETH_MTU = 1500
DEFAULT_IB_MTU = 2048


def _vf_group_needs_update(vf, group: VfGroup) -> bool:
    if group.device_type != DEVICE_TYPE_NETDEVICE:
        return group.device_type != vf.driver
    if vf.driver in DPDK_DRIVERS:
        return True
    return vf.mtu != 0 and group.mtu != 0 and vf.mtu != group.mtu


def need_update(iface: Interface, iface_status: InterfaceExt) -> bool:
    """True when the observed interface differs from its desired configuration."""
    if iface.mtu > 0 and iface.mtu != iface_status.mtu:
        log.debug("MTU needs update: desired=%d current=%d", iface.mtu, iface_status.mtu)
        return True
    if iface.num_vfs != iface_status.num_vfs:
        log.debug("NumVfs needs update: desired=%d current=%d", iface.num_vfs, iface_status.num_vfs)
        return True
    if iface.num_vfs > 0:
        for vf in iface_status.vfs:
            group = next(
                (g for g in iface.vf_groups if index_in_range(vf.vf_id, g.vf_range)), None
            )
            if group is not None:
                if _vf_group_needs_update(vf, group):
                    return True
            elif vf.driver in DPDK_DRIVERS:
                # A VF outside every group must return to its default driver.
                return True
    return False


def _skip_config_vf(iface: Interface, status: InterfaceExt, cluster_type: str) -> bool:
    if iface.eswitch_mode == ESWITCH_MODE_SWITCHDEV:
        return True
    if (
        cluster_type == CLUSTER_TYPE_OPENSHIFT
        and status.vendor == VENDOR_MELLANOX
        and status.device_id == DEVICE_BF2
    ):
        try:
            mode = mellanox_bluefield_mode(status.pci_address)
        except (RuntimeError, ValueError) as exc:
            raise RuntimeError(
                f"failed to read Mellanox Bluefield card mode for {status.pci_address},{exc}"
            ) from exc
        return mode != BlueFieldMode.CONNECTX
    return False


def get_pfs_to_skip(state: NodeState, cluster_type: str | None = None) -> dict[str, bool]:
    """Map PCI address to whether the PF is configured by systemd instead."""
    if cluster_type is None:
        cluster_type = os.environ.get("CLUSTER_TYPE", "")
    skip: dict[str, bool] = {}
    for status in state.status_interfaces:
        iface = next(
            (i for i in state.spec_interfaces if i.pci_address == status.pci_address), None
        )
        if iface is not None:
            skip[iface.pci_address] = _skip_config_vf(iface, status, cluster_type)
    return skip


def is_switchdev_mode_spec(interfaces) -> bool:
    """True when any desired interface is in switchdev mode."""
    return any(i.eswitch_mode == ESWITCH_MODE_SWITCHDEV for i in interfaces)


def _switchdev_entry(iface: Interface) -> dict:
    entry: dict = {"pciAddress": iface.pci_address}
    if iface.num_vfs:
        entry["numVfs"] = iface.num_vfs
    if iface.name:
        entry["name"] = iface.name
    if iface.eswitch_mode == ESWITCH_MODE_SWITCHDEV:
        entry["eSwitchMode"] = iface.eswitch_mode
    return entry


def write_switchdev_conf_file(
    state: NodeState,
    path: str = SWITCHDEV_CONF_PATH,
    pfs_to_skip: dict[str, bool] | None = None,
) -> bool:
    """Write the systemd-configured PFs to path; return True when it changed."""
    if pfs_to_skip is None:
        pfs_to_skip = get_pfs_to_skip(state)

    entries = []
    for iface in state.spec_interfaces:
        for status in state.status_interfaces:
            if iface.pci_address != status.pci_address:
                continue
            if not pfs_to_skip.get(iface.pci_address):
                continue
            if iface.num_vfs > 0:
                entries.append(_switchdev_entry(iface))

    if not os.path.exists(path):
        if not entries:
            return False
        open(path, "w", encoding="utf-8").close()

    with open(path, encoding="utf-8") as handle:
        old_content = handle.read()
    new_content = (
        json.dumps({"interfaces": entries}, separators=(",", ":")) if entries else ""
    )
    if new_content == old_content:
        return False

    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(new_content)
    return True


def has_mellanox_interfaces_in_spec(state: NodeState) -> bool:
    """True when a Mellanox PF appears in the desired interfaces."""
    spec_addresses = {i.pci_address for i in state.spec_interfaces}
    return any(
        s.vendor == VENDOR_MELLANOX and s.pci_address in spec_addresses
        for s in state.status_interfaces
    )


def reset_sriov_device(
    iface_status: InterfaceExt,
    sysfs: Sysfs | None = None,
    initial_state: NodeState | None = None,
) -> None:
    """Remove all VFs of a PF and restore its MTU."""
    sysfs = sysfs or Sysfs()
    sysfs.set_sriov_num_vfs(iface_status.pci_address, 0)
    if iface_status.link_type == LINK_TYPE_ETH:
        initial = (
            initial_state.interface_by_pci_address(iface_status.pci_address)
            if initial_state is not None
            else None
        )
        mtu = initial.mtu if initial is not None else DEFAULT_ETH_MTU
        sysfs.set_netdev_mtu(iface_status.pci_address, mtu)
    elif iface_status.link_type == LINK_TYPE_IB:
        sysfs.set_netdev_mtu(iface_status.pci_address, DEFAULT_IB_MTU)


def _link_exists(sysfs: Sysfs, name: str) -> bool:
    return bool(name) and os.path.isdir(os.path.join(sysfs.class_net, name))


def _oper_state(sysfs: Sysfs, name: str) -> str:
    try:
        with open(os.path.join(sysfs.class_net, name, "operstate"), encoding="utf-8") as handle:
            return handle.read().strip()
    except OSError:
        return ""


def _wait_vf_ready(addr: str, sysfs: Sysfs) -> str:
    for attempt in range(sysfs.retries + 1):
        if attempt:
            time.sleep(sysfs.retry_interval)
        name = sysfs.interface_name(addr)
        if _link_exists(sysfs, name):
            return name
        log.error("unable to get VF link for device %s", addr)
    raise TimeoutError(f"VF link is not ready for device {addr}")


def _vf_index(addr: str, sysfs: Sysfs) -> int:
    vf_id = sysfs.vf_id(addr)
    if vf_id < 0:
        raise ValueError(f"unable to get VF id for {addr}")
    return vf_id


def _set_vf_admin_mac(addr: str, pf_name: str, vf_name: str, sysfs: Sysfs) -> None:
    vf_id = _vf_index(addr, sysfs)
    mac = sysfs.netdev_mac(vf_name)
    run_command("ip", "link", "set", "dev", pf_name, "vf", str(vf_id), "mac", mac)


def _set_vf_guid(addr: str, pf_name: str, sysfs: Sysfs) -> None:
    vf_id = _vf_index(addr, sysfs)
    guid = ":".join(f"{b:02x}" for b in generate_random_guid())
    for kind in ("node_guid", "port_guid"):
        run_command("ip", "link", "set", "dev", pf_name, "vf", str(vf_id), kind, guid)
    sysfs.unbind(addr)


def _config_vf(addr: str, iface: Interface, status: InterfaceExt, sysfs: Sysfs) -> None:
    vf_id = sysfs.vf_id(addr)
    matched = next(
        (g for g in iface.vf_groups if index_in_range(vf_id, g.vf_range)), None
    )
    is_rdma = matched.is_rdma if matched else False
    dpdk_driver = matched.device_type if matched and matched.device_type in DPDK_DRIVERS else ""
    mtu_group = matched or (iface.vf_groups[-1] if iface.vf_groups else None)

    try:
        driver = sysfs.driver_name(addr)
    except OSError:
        driver = None
    # Addresses are only set while the VF is on a kernel driver.
    if driver is not None and driver not in DPDK_DRIVERS:
        link_type = iface.link_type or status.link_type
        if link_type.lower() == LINK_TYPE_IB.lower():
            _set_vf_guid(addr, iface.name, sysfs)
        else:
            try:
                vf_name = _wait_vf_ready(addr, sysfs)
            except TimeoutError:
                sysfs.rebind_vf_to_default_driver(addr)
                vf_name = _wait_vf_ready(addr, sysfs)
            _set_vf_admin_mac(addr, iface.name, vf_name, sysfs)

    if is_rdma:
        sysfs.unbind(addr)

    if not dpdk_driver:
        sysfs.bind_default_driver(addr)
        if mtu_group is not None and mtu_group.mtu > 0:
            sysfs.set_netdev_mtu(addr, mtu_group.mtu)
    else:
        sysfs.bind_dpdk_driver(addr, dpdk_driver)


def _config_sriov_device(iface: Interface, status: InterfaceExt, sysfs: Sysfs) -> None:
    if iface.num_vfs > status.total_vfs:
        raise ValueError(
            f"cannot config SRIOV device: NumVfs ({iface.num_vfs}) "
            f"is larger than TotalVfs ({status.total_vfs})"
        )
    if iface.num_vfs != status.num_vfs:
        sysfs.set_sriov_num_vfs(iface.pci_address, iface.num_vfs)
    if iface.mtu > 0 and iface.mtu != status.mtu:
        sysfs.set_netdev_mtu(iface.pci_address, iface.mtu)

    if iface.num_vfs > 0:
        try:
            vf_addrs = sysfs.vf_list(iface.pci_address)
        except OSError as exc:
            log.warning("unable to list VFs of %s: %s", iface.pci_address, exc)
            vf_addrs = []
        if not _link_exists(sysfs, iface.name):
            raise OSError(f"unable to get PF link {iface.name!r} for {iface.pci_address}")
        for addr in vf_addrs:
            _config_vf(addr, iface, status, sysfs)

    if not _link_exists(sysfs, status.name):
        raise OSError(f"link not found: {status.name!r}")
    if _oper_state(sysfs, status.name) != "up":
        run_command("ip", "link", "set", "dev", status.name, "up")


def sync_node_state(
    state: NodeState,
    pfs_to_skip: dict[str, bool],
    sysfs: Sysfs | None = None,
    initial_state: NodeState | None = None,
) -> None:
    """Configure or reset every observed PF to match the desired state."""
    sysfs = sysfs or Sysfs()
    if has_mellanox_interfaces_in_spec(state) and is_kernel_lockdown_mode(True):
        raise RuntimeError("cannot use mellanox devices when in kernel lockdown mode")

    for status in state.status_interfaces:
        iface = next(
            (i for i in state.spec_interfaces if i.pci_address == status.pci_address), None
        )
        if iface is not None:
            if pfs_to_skip.get(iface.pci_address):
                continue
            if not need_update(iface, status):
                log.debug("no need to update interface %s", iface.pci_address)
                continue
            try:
                _config_sriov_device(iface, status, sysfs)
            except Exception:
                log.error("failed to configure %s, resetting it", iface.pci_address)
                try:
                    reset_sriov_device(status, sysfs, initial_state)
                except Exception as reset_exc:  # noqa: BLE001
                    log.error("failed to reset %s: %s", iface.pci_address, reset_exc)
                raise
        elif status.num_vfs > 0 and not pfs_to_skip.get(status.pci_address):
            reset_sriov_device(status, sysfs, initial_state)