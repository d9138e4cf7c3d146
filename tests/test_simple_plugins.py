from sriovconf.model import Interface, NodeState, VendorPlugin
from sriovconf.simple_plugins import FakePlugin, IntelPlugin


def _state():
    return NodeState(spec_interfaces=[Interface(pci_address="0000:00:00.0", num_vfs=1)])


def test_fake_plugin_identity():
    plugin = FakePlugin()
    assert isinstance(plugin, VendorPlugin)
    assert plugin.name == "fake_plugin"
    assert plugin.spec == "1.0"


def test_fake_plugin_never_drains_or_reboots():
    plugin = FakePlugin()
    assert plugin.on_node_state_change(_state()) == (False, False)
    assert plugin.apply() is None


def test_intel_plugin_identity():
    plugin = IntelPlugin()
    assert isinstance(plugin, VendorPlugin)
    assert plugin.name == "intel_plugin"
    assert plugin.spec == "1.0"


def test_intel_plugin_never_drains_or_reboots():
    plugin = IntelPlugin()
    assert plugin.on_node_state_change(_state()) == (False, False)
    assert plugin.apply() is None
    assert plugin.desire_state is None