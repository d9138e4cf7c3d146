"""Mellanox firmware configuration queries through mstconfig."""

from __future__ import annotations

import enum
import re
import subprocess

from .host import run_command

INTERNAL_CPU_PAGE_SUPPLIER = "INTERNAL_CPU_PAGE_SUPPLIER"
INTERNAL_CPU_ESWITCH_MANAGER = "INTERNAL_CPU_ESWITCH_MANAGER"
INTERNAL_CPU_IB_VPORT0 = "INTERNAL_CPU_IB_VPORT0"
INTERNAL_CPU_OFFLOAD_ENGINE = "INTERNAL_CPU_OFFLOAD_ENGINE"
INTERNAL_CPU_MODEL = "INTERNAL_CPU_MODEL"

_ECPF = "ECPF"
_EXT_HOST_PF = "EXT_HOST_PF"
_EMBEDDED_CPU = "EMBEDDED_CPU"
_DISABLED = "DISABLED"
_ENABLED = "ENABLED"

_LINE = re.compile(r"(?P<attribute>\w+)\s+(?P<default>\S+)\s+(?P<current>\S+)\s+(?P<next>\S+)")


class BlueFieldMode(enum.IntEnum):
    DPU = 0
    CONNECTX = 1


def mst_config_read_data(pci_address: str) -> str:
    """Query the firmware configuration of a device."""
    return run_command("mstconfig", "-e", "-d", pci_address, "q")


def parse_mstconfig_output(
    mst_output: str, attributes
) -> tuple[dict[str, str], dict[str, str]]:
    """Return (current, next boot) values of the requested attributes."""
    current: dict[str, str] = {}
    next_boot: dict[str, str] = {}
    lines = mst_output.split("\n")
    for attr in attributes:
        line = next((line for line in lines if attr in line), None)
        if line is None:
            continue
        match = _LINE.search(line)
        if match is None:
            raise ValueError(f"malformed mstconfig line for {attr}: {line!r}")
        current[attr] = match.group("current")
        next_boot[attr] = match.group("next")
    return current, next_boot


def bluefield_mode_from_output(pci_address: str, mst_output: str) -> BlueFieldMode:
    """Work out the BlueField card mode from mstconfig output."""
    attrs = (
        INTERNAL_CPU_PAGE_SUPPLIER,
        INTERNAL_CPU_ESWITCH_MANAGER,
        INTERNAL_CPU_IB_VPORT0,
        INTERNAL_CPU_OFFLOAD_ENGINE,
        INTERNAL_CPU_MODEL,
    )
    current, _ = parse_mstconfig_output(mst_output, attrs)
    for attr in attrs:
        if attr not in current:
            raise ValueError(f"failed to find {attr} in the mstconfig output command")

    page, eswitch, vport, offload, model = (current[a] for a in attrs)
    if (
        _ECPF in page
        and _ECPF in eswitch
        and _ECPF in vport
        and _ENABLED in offload
        and _EMBEDDED_CPU in model
    ):
        return BlueFieldMode.DPU
    if (
        _EXT_HOST_PF in page
        and _EXT_HOST_PF in eswitch
        and _EXT_HOST_PF in vport
        and _DISABLED in offload
        and _EMBEDDED_CPU in model
    ):
        return BlueFieldMode.CONNECTX
    raise ValueError(f"unknown card status for {pci_address}")


def mellanox_bluefield_mode(pci_address: str) -> BlueFieldMode:
    """Query the device firmware and return its BlueField mode."""
    try:
        out = mst_config_read_data(pci_address)
    except (OSError, subprocess.CalledProcessError) as exc:
        raise RuntimeError(f"failed to get mlx nic fw data {exc}") from exc
    return bluefield_mode_from_output(pci_address, out)