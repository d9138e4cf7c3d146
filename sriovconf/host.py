"""Access to PCI devices and network interfaces through sysfs, and host helpers."""

from __future__ import annotations

import contextlib
import logging
import os
import random
import re
import subprocess
import time
from typing import Iterator

log = logging.getLogger(__name__)

DPDK_DRIVERS = ("igb_uio", "vfio-pci", "uio_pci_generic")
LOAD_KMOD_SCRIPT = "bindata/scripts/load-kmod.sh"
LOCKDOWN_FILE = "/sys/kernel/security/lockdown"

_PF_PHYS_PORT_NAME = re.compile(r"p\d+")
_VIRTFN = re.compile(r"virtfn(\d+)")


def _write(path: str, text: str) -> None:
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(text)


def _read_stripped(path: str) -> str:
    with open(path, encoding="utf-8") as handle:
        return handle.read().strip()


class Sysfs:
    """PCI device and network interface operations below a sysfs root."""

    def __init__(self, root: str = "/", retry_interval: float = 1.0, retries: int = 10):
        self.root = root
        self.retry_interval = retry_interval
        self.retries = retries
        self.devices = os.path.join(root, "sys/bus/pci/devices")
        self.drivers = os.path.join(root, "sys/bus/pci/drivers")
        self.drivers_probe = os.path.join(root, "sys/bus/pci/drivers_probe")
        self.class_net = os.path.join(root, "sys/class/net")

    def _device(self, pci_addr: str, *parts: str) -> str:
        return os.path.join(self.devices, pci_addr, *parts)

    def driver_name(self, pci_addr: str) -> str:
        """Name of the driver bound to the device; OSError when none is bound."""
        return os.path.basename(os.readlink(self._device(pci_addr, "driver")))

    def _bound_driver(self, pci_addr: str) -> str | None:
        try:
            return self.driver_name(pci_addr)
        except OSError:
            log.debug("device %s has no driver", pci_addr)
            return None

    def net_names(self, pci_addr: str) -> list[str]:
        """Network interface names exposed by the device, sorted."""
        return sorted(os.listdir(self._device(pci_addr, "net")))

    def _virtfns(self, pci_addr: str) -> list[tuple[int, str]]:
        device = self._device(pci_addr)
        found = []
        for entry in os.listdir(device):
            match = _VIRTFN.fullmatch(entry)
            if match:
                target = os.readlink(os.path.join(device, entry))
                found.append((int(match.group(1)), os.path.basename(target)))
        return sorted(found)

    def vf_list(self, pci_addr: str) -> list[str]:
        """PCI addresses of the VFs of a PF, ordered by VF index."""
        return [addr for _, addr in self._virtfns(pci_addr)]

    def vf_id(self, pci_addr: str) -> int:
        """Index of a VF on its PF, or -1 when the device is not a VF."""
        physfn = self._device(pci_addr, "physfn")
        if not os.path.lexists(physfn):
            return -1
        pf = os.path.basename(os.readlink(physfn))
        return next((index for index, addr in self._virtfns(pf) if addr == pci_addr), -1)

    def unbind(self, pci_addr: str) -> None:
        """Unbind the device from its driver, if it has one."""
        driver = self._bound_driver(pci_addr)
        if driver is None:
            return
        _write(os.path.join(self.drivers, driver, "unbind"), pci_addr)

    def bind_dpdk_driver(self, pci_addr: str, driver: str) -> None:
        """Bind the device to the given userspace driver."""
        current = self._bound_driver(pci_addr)
        if current is not None:
            if current == driver:
                return
            self.unbind(pci_addr)

        override = self._device(pci_addr, "driver_override")
        _write(override, driver)
        try:
            _write(os.path.join(self.drivers, driver, "bind"), pci_addr)
        except OSError as exc:
            try:
                os.readlink(self._device(pci_addr, "iommu_group"))
            except OSError:
                raise RuntimeError(
                    f"cannot bind driver {driver} to {pci_addr}, "
                    "make sure IOMMU is enabled in BIOS"
                ) from exc
            raise
        _write(override, "")

    def bind_default_driver(self, pci_addr: str) -> None:
        """Bind the device back to its default kernel driver."""
        current = self._bound_driver(pci_addr)
        if current is not None:
            if current not in DPDK_DRIVERS:
                return
            self.unbind(pci_addr)
        _write(self._device(pci_addr, "driver_override"), "\x00")
        _write(self.drivers_probe, pci_addr)

    def rebind_vf_to_default_driver(self, vf_addr: str) -> None:
        """Unbind a VF and bind it to the default driver again."""
        self.unbind(vf_addr)
        self.bind_default_driver(vf_addr)
        log.warning("rebind workaround applied for VF %s", vf_addr)

    def phys_switch_id(self, name: str) -> str:
        return _read_stripped(os.path.join(self.class_net, name, "phys_switch_id"))

    def phys_port_name(self, name: str) -> str:
        return _read_stripped(os.path.join(self.class_net, name, "phys_port_name"))

    def is_switchdev(self, name: str) -> bool:
        try:
            return self.phys_switch_id(name) != ""
        except OSError:
            return False

    def interface_name(self, pci_addr: str) -> str:
        """Interface name of the device; for switchdev PFs the PF, not a representor."""
        try:
            names = self.net_names(pci_addr)
        except OSError:
            return ""
        if not names:
            return ""
        for name in names:
            if not self.is_switchdev(name):
                continue
            try:
                port_name = self.phys_port_name(name)
            except OSError:
                return name
            if _PF_PHYS_PORT_NAME.search(port_name):
                return name
        return names[0]

    def netdev_mtu(self, pci_addr: str) -> int:
        """MTU of the device's interface, or 0 when it cannot be read."""
        name = self.interface_name(pci_addr)
        if not name:
            return 0
        try:
            return int(_read_stripped(self._device(pci_addr, "net", name, "mtu")))
        except (OSError, ValueError):
            return 0

    def set_netdev_mtu(self, pci_addr: str, mtu: int) -> None:
        """Set the MTU of the device's interface, retrying while it appears."""
        if mtu <= 0:
            return
        last_error: OSError | None = None
        for attempt in range(self.retries + 1):
            if attempt:
                time.sleep(self.retry_interval)
            try:
                names = self.net_names(pci_addr)
                if not names:
                    raise OSError(f"interface name is empty for {pci_addr}")
                _write(self._device(pci_addr, "net", names[0], "mtu"), str(mtu))
                return
            except OSError as exc:
                last_error = exc
        assert last_error is not None
        raise last_error

    def set_sriov_num_vfs(self, pci_addr: str, num_vfs: int) -> None:
        """Reset the VF count to 0, then set it to num_vfs."""
        path = self._device(pci_addr, "sriov_numvfs")
        _write(path, "0")
        _write(path, str(num_vfs))

    def netdev_mac(self, name: str) -> str:
        try:
            return _read_stripped(os.path.join(self.class_net, name, "address"))
        except OSError:
            return ""

    def netdev_link_speed(self, name: str) -> str:
        try:
            speed = _read_stripped(os.path.join(self.class_net, name, "speed"))
        except OSError:
            return ""
        return f"{speed} Mb/s"


def run_command(command: str, *args: str) -> str:
    """Run a command and return its standard output; raise when it fails."""
    log.info("running %s %s", command, list(args))
    result = subprocess.run(
        [command, *args], capture_output=True, text=True, check=True
    )
    return result.stdout


def is_kernel_lockdown_mode(chroot: bool) -> bool:
    """True when kernel lockdown (integrity or confidentiality) is active."""
    path = LOCKDOWN_FILE if chroot else "/host" + LOCKDOWN_FILE
    try:
        with open(path, encoding="utf-8") as handle:
            content = handle.read()
    except OSError:
        return False
    return "[integrity]" in content or "[confidentiality]" in content


def load_kernel_module(name: str, *args: str) -> None:
    """Load a kernel module through the module loading script."""
    subprocess.run(["/bin/sh", LOAD_KMOD_SCRIPT, name, " ".join(args)], check=True)


@contextlib.contextmanager
def chroot(path: str) -> Iterator[None]:
    """Change the root directory for the duration of the block."""
    root_fd = os.open("/", os.O_RDONLY)
    try:
        os.chroot(path)
    except OSError:
        os.close(root_fd)
        raise
    try:
        yield
    finally:
        try:
            os.fchdir(root_fd)
            os.chroot(".")
        finally:
            os.close(root_fd)


def generate_random_guid() -> bytes:
    """Eight random bytes; the first is never 0x00 or 0xff."""
    return bytes([random.randint(1, 0xFE)] + [random.randint(0, 0xFF) for _ in range(7)])