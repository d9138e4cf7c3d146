"""Vendor-independent plugin that configures VFs through sysfs."""

from __future__ import annotations

import copy
import enum
import logging
import subprocess

from .host import Sysfs, chroot, load_kernel_module
from .model import DEVICE_TYPE_VFIO_PCI, NodeState, VendorPlugin
from .nodestate import (
    SWITCHDEV_CONF_PATH,
    get_pfs_to_skip,
    need_update,
    sync_node_state,
    write_switchdev_conf_file,
)

log = logging.getLogger(__name__)

ENABLE_KARGS_SCRIPT = "bindata/scripts/enable-kargs.sh"
IOMMU_KERNEL_ARGS = ("intel_iommu=on", "iommu=pt")
_COMMAND_NOT_FOUND = 127


class VfioDriverState(enum.IntEnum):
    UNLOADED = 0
    LOADING = 1
    LOADED = 2


def need_vfio_driver(state: NodeState) -> bool:
    """True when any VF group of the desired state uses vfio-pci."""
    return any(
        group.device_type == DEVICE_TYPE_VFIO_PCI
        for iface in state.spec_interfaces
        for group in iface.vf_groups
    )


def need_drain_node(desired, current) -> bool:
    """True when a PF must be reconfigured or reset."""
    for status in current:
        configured = False
        for iface in desired:
            if iface.pci_address == status.pci_address:
                configured = True
                if need_update(iface, status):
                    log.debug("need drain, PF %s requests update", iface.pci_address)
                    return True
        if not configured and status.num_vfs > 0:
            log.debug("need drain, %s needs to be reset", status.pci_address)
            return True
    return False


def _try_enable_iommu_in_kernel_args() -> bool:
    """Run the kernel argument script; True when a reboot is needed."""
    try:
        result = subprocess.run(
            ["/bin/sh", ENABLE_KARGS_SCRIPT, *IOMMU_KERNEL_ARGS],
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError:
        log.error("shell not found; ensure kernel args %s are set", " ".join(IOMMU_KERNEL_ARGS))
        return False
    if result.returncode == _COMMAND_NOT_FOUND:
        log.error(
            "grubby command not found. Please ensure that kernel args %s are set",
            " ".join(IOMMU_KERNEL_ARGS),
        )
        return False
    if result.returncode != 0:
        raise subprocess.CalledProcessError(
            result.returncode, result.args, result.stdout, result.stderr
        )
    return int(result.stdout.strip()) > 0


class GenericPlugin(VendorPlugin):
    """Configures SR-IOV PFs and VFs on bare metal nodes."""

    name = "generic_plugin"
    spec = "1.0"

    def __init__(
        self,
        switchdev_conf_path: str = SWITCHDEV_CONF_PATH,
        cluster_type: str | None = None,
        sysfs: Sysfs | None = None,
        host_root: str = "/host",
    ):
        self.switchdev_conf_path = switchdev_conf_path
        self.cluster_type = cluster_type
        self.sysfs = sysfs
        self.host_root = host_root
        self.desire_state: NodeState | None = None
        self.last_state: NodeState | None = None
        self.load_vfio_driver = VfioDriverState.UNLOADED

    def on_node_state_change(self, new_state: NodeState) -> tuple[bool, bool]:
        log.info("generic-plugin on_node_state_change()")
        self.desire_state = new_state
        need_drain = need_drain_node(new_state.spec_interfaces, new_state.status_interfaces)
        need_reboot = self._need_reboot_node(new_state)
        if need_reboot:
            need_drain = True
        return need_drain, need_reboot

    def _need_reboot_node(self, state: NodeState) -> bool:
        need_reboot = False
        if self.load_vfio_driver != VfioDriverState.LOADED and need_vfio_driver(state):
            self.load_vfio_driver = VfioDriverState.LOADING
            try:
                update = _try_enable_iommu_in_kernel_args()
            except (OSError, ValueError, subprocess.CalledProcessError) as exc:
                log.error("fail to enable iommu in kernel args: %s", exc)
                update = False
            if update:
                log.debug("need reboot for enabling iommu kernel args")
            need_reboot = need_reboot or update

        try:
            pfs_to_skip = get_pfs_to_skip(state, self.cluster_type)
            update = write_switchdev_conf_file(state, self.switchdev_conf_path, pfs_to_skip)
        except (OSError, RuntimeError, ValueError) as exc:
            log.error("fail to write switchdev device config file: %s", exc)
            update = False
        if update:
            log.debug("need reboot for updating switchdev device configuration")
        return need_reboot or update

    def apply(self) -> None:
        if self.desire_state is None:
            raise RuntimeError("no desired node state to apply")
        if self.load_vfio_driver == VfioDriverState.LOADING:
            load_kernel_module("vfio_pci")
            self.load_vfio_driver = VfioDriverState.LOADED

        if (
            self.last_state is not None
            and self.last_state.spec_interfaces == self.desire_state.spec_interfaces
        ):
            log.info("generic-plugin apply(): nothing to apply")
            return

        # Decided before entering the host root: the firmware tools live here.
        pfs_to_skip = get_pfs_to_skip(self.desire_state, self.cluster_type)
        with chroot(self.host_root):
            sync_node_state(self.desire_state, pfs_to_skip, self.sysfs)
        self.last_state = copy.deepcopy(self.desire_state)