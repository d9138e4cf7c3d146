"""Plugins that leave the node untouched."""

from __future__ import annotations

import logging

from .model import NodeState, VendorPlugin

log = logging.getLogger(__name__)


class FakePlugin(VendorPlugin):
    """Plugin that never asks for a drain or reboot and applies nothing."""

    name = "fake_plugin"
    spec = "1.0"

    def on_node_state_change(self, new_state: NodeState) -> tuple[bool, bool]:
        return False, False

    def apply(self) -> None:
        return None


class IntelPlugin(VendorPlugin):
    """Plugin for Intel NICs; their VFs need no vendor-specific setup."""

    name = "intel_plugin"
    spec = "1.0"

    def __init__(self) -> None:
        self.desire_state: NodeState | None = None
        self.last_state: NodeState | None = None

    def on_node_state_change(self, new_state: NodeState) -> tuple[bool, bool]:
        log.info("intel-plugin on_node_state_change()")
        return False, False

    def apply(self) -> None:
        log.info("intel-plugin apply()")