import pytest

from sriovconf.mellanox import (
    ENABLE_SRIOV,
    LINK_TYPE_P1,
    PRECONFIGURED_LINK_TYPE,
    TOTAL_VFS,
    UNKNOWN_LINK_TYPE,
    MellanoxPlugin,
    MlnxNic,
    firmware_command_args,
    get_link_type,
    handle_enable_sriov,
    handle_total_vfs,
    is_link_type_require_change,
    mlnx_nic_from_map,
    pci_address_prefix,
)
from sriovconf.model import Interface, InterfaceExt, NodeState, set_nic_id_map


@pytest.fixture(autouse=True)
def nic_ids():
    set_nic_id_map(["8086 158b 154c", "15b3 1015 1016", "15b3 1017 1018"])
    yield
    set_nic_id_map([])


def mst_output(total_cur, total_next, en_cur, en_next, link="ETH(2)"):
    return "\n".join(
        [
            "Device #1:",
            f"         {TOTAL_VFS}          0          {total_cur}          {total_next}",
            f"         {ENABLE_SRIOV}          False(0)          {en_cur}          {en_next}",
            f"         LINK_TYPE_P1          ETH(2)          {link}          {link}",
            f"         LINK_TYPE_P2          ETH(2)          {link}          {link}",
        ]
    )


class FakeFirmware:
    def __init__(self, output):
        self.output = output
        self.queried = []

    def __call__(self, pci):
        self.queried.append(pci)
        return self.output


def mlx_state(spec):
    return NodeState(
        spec_interfaces=spec,
        status_interfaces=[
            InterfaceExt(pci_address="0000:3b:00.0", vendor="15b3", device_id="1015", link_type="ETH"),
            InterfaceExt(pci_address="0000:3b:00.1", vendor="15b3", device_id="1015", link_type="ETH"),
        ],
    )


def test_get_link_type():
    assert get_link_type("ETH(2)") == "ETH"
    assert get_link_type("IB(1)") == "IB"
    assert get_link_type("VPI(3)") == UNKNOWN_LINK_TYPE
    assert get_link_type("") == PRECONFIGURED_LINK_TYPE


def test_pci_address_prefix():
    assert pci_address_prefix("0000:86:00.1") == "0000:86:00."


def test_mlnx_nic_from_map():
    nic = mlnx_nic_from_map({TOTAL_VFS: "8", ENABLE_SRIOV: "True(1)", LINK_TYPE_P1: "ETH(2)"})
    assert nic == MlnxNic(enable_sriov=True, total_vfs=8, link_type_p1="ETH", link_type_p2="")


def test_mlnx_nic_from_map_requires_total_vfs():
    with pytest.raises(ValueError):
        mlnx_nic_from_map({ENABLE_SRIOV: "True(1)"})


def test_handle_total_vfs_needs_reboot():
    attrs = MlnxNic(total_vfs=-1)
    result = handle_total_vfs(MlnxNic(total_vfs=0), MlnxNic(total_vfs=0), attrs, Interface(), 8)
    assert result == (True, False)
    assert attrs.total_vfs == 8


def test_handle_total_vfs_next_boot_only():
    attrs = MlnxNic(total_vfs=-1)
    result = handle_total_vfs(MlnxNic(total_vfs=8), MlnxNic(total_vfs=0), attrs, Interface(), 8)
    assert result == (False, True)
    assert attrs.total_vfs == 8


def test_handle_total_vfs_unchanged():
    attrs = MlnxNic(total_vfs=-1)
    result = handle_total_vfs(MlnxNic(total_vfs=8), MlnxNic(total_vfs=8), attrs, Interface(), 8)
    assert result == (False, False)
    assert attrs.total_vfs == -1


def test_handle_enable_sriov_cases():
    attrs = MlnxNic(enable_sriov=True)
    assert handle_enable_sriov(0, MlnxNic(enable_sriov=True), MlnxNic(), attrs) == (True, False)
    assert attrs.enable_sriov is False

    attrs = MlnxNic()
    assert handle_enable_sriov(4, MlnxNic(), MlnxNic(), attrs) == (True, False)
    assert attrs.enable_sriov is True

    attrs = MlnxNic()
    assert handle_enable_sriov(4, MlnxNic(enable_sriov=True), MlnxNic(), attrs) == (False, True)
    assert attrs.enable_sriov is True

    attrs = MlnxNic()
    both = MlnxNic(enable_sriov=True)
    assert handle_enable_sriov(4, both, both, attrs) == (False, False)


def test_link_type_change():
    status = InterfaceExt(link_type="ETH")
    assert is_link_type_require_change(Interface(link_type="eth"), status, "ETH") is False
    assert is_link_type_require_change(Interface(), status, "ETH") is False
    assert is_link_type_require_change(Interface(link_type="IB"), status, "ETH") is True


@pytest.mark.parametrize(
    "link_type,fw",
    [("foo", "ETH"), ("IB", UNKNOWN_LINK_TYPE), ("IB", PRECONFIGURED_LINK_TYPE)],
)
def test_link_type_change_errors(link_type, fw):
    with pytest.raises(ValueError):
        is_link_type_require_change(Interface(link_type=link_type), InterfaceExt(link_type="ETH"), fw)


def test_firmware_command_args():
    assert firmware_command_args("0000:3b:00.0", MlnxNic(total_vfs=-1)) == [
        "-d", "0000:3b:00.0", "-y", "set",
    ]
    assert firmware_command_args("x", MlnxNic(enable_sriov=True, total_vfs=4))[4:] == [
        "SRIOV_EN=True", "NUM_OF_VFS=4",
    ]
    assert firmware_command_args("x", MlnxNic(total_vfs=0))[4:] == ["SRIOV_EN=False", "NUM_OF_VFS=0"]


def test_plugin_enables_sriov_with_reboot():
    firmware = FakeFirmware(mst_output(0, 0, "False(0)", "False(0)"))
    calls = []
    plugin = MellanoxPlugin(
        read_fw_data=firmware, lockdown=lambda: False, run=lambda *a: calls.append(a) or ""
    )
    state = mlx_state([Interface(pci_address="0000:3b:00.0", num_vfs=4)])
    assert plugin.on_node_state_change(state) == (True, True)
    plugin.apply()
    assert calls == [
        ("mstconfig", "-d", "0000:3b:00.0", "-y", "set", "SRIOV_EN=True", "NUM_OF_VFS=4")
    ]


def test_plugin_dual_port_uses_larger_vf_count():
    firmware = FakeFirmware(mst_output(0, 0, "False(0)", "False(0)"))
    plugin = MellanoxPlugin(read_fw_data=firmware, lockdown=lambda: False, run=lambda *a: "")
    state = mlx_state(
        [
            Interface(pci_address="0000:3b:00.0", num_vfs=2),
            Interface(pci_address="0000:3b:00.1", num_vfs=6),
        ]
    )
    plugin.on_node_state_change(state)
    assert len(firmware.queried) == 1
    assert list(plugin.attributes_to_change.values())[0].total_vfs == 6


def test_plugin_resets_nic_without_spec():
    firmware = FakeFirmware(mst_output(8, 8, "True(1)", "True(1)"))
    calls = []
    plugin = MellanoxPlugin(
        read_fw_data=firmware, lockdown=lambda: False, run=lambda *a: calls.append(a) or ""
    )
    assert plugin.on_node_state_change(mlx_state([])) == (False, False)
    plugin.apply()
    assert calls == [
        ("mstconfig", "-d", "0000:3b:00.0", "-y", "set", "SRIOV_EN=False", "NUM_OF_VFS=0")
    ]


def test_plugin_no_change_when_firmware_matches():
    firmware = FakeFirmware(mst_output(4, 4, "True(1)", "True(1)"))
    plugin = MellanoxPlugin(read_fw_data=firmware, lockdown=lambda: False, run=lambda *a: "")
    state = mlx_state([Interface(pci_address="0000:3b:00.0", num_vfs=4)])
    assert plugin.on_node_state_change(state) == (False, False)
    assert plugin.attributes_to_change == {}


def test_plugin_ignores_other_vendors():
    firmware = FakeFirmware(mst_output(0, 0, "False(0)", "False(0)"))
    plugin = MellanoxPlugin(read_fw_data=firmware, lockdown=lambda: False, run=lambda *a: "")
    state = NodeState(
        spec_interfaces=[Interface(pci_address="0000:86:00.0", num_vfs=4)],
        status_interfaces=[InterfaceExt(pci_address="0000:86:00.0", vendor="8086", device_id="158b")],
    )
    assert plugin.on_node_state_change(state) == (False, False)
    assert firmware.queried == []


def test_plugin_lockdown_with_mellanox_spec_raises():
    plugin = MellanoxPlugin(read_fw_data=FakeFirmware(""), lockdown=lambda: True, run=lambda *a: "")
    with pytest.raises(RuntimeError):
        plugin.on_node_state_change(mlx_state([Interface(pci_address="0000:3b:00.0", num_vfs=4)]))


def test_plugin_lockdown_without_spec_and_apply_skips():
    calls = []
    plugin = MellanoxPlugin(
        read_fw_data=FakeFirmware(""), lockdown=lambda: True, run=lambda *a: calls.append(a) or ""
    )
    assert plugin.on_node_state_change(mlx_state([])) == (False, False)
    plugin.attributes_to_change = {"0000:3b:00.0": MlnxNic(total_vfs=0)}
    plugin.apply()
    assert calls == []


def test_plugin_link_type_change_needs_reboot():
    firmware = FakeFirmware(mst_output(4, 4, "True(1)", "True(1)"))
    calls = []
    plugin = MellanoxPlugin(
        read_fw_data=firmware, lockdown=lambda: False, run=lambda *a: calls.append(a) or ""
    )
    state = mlx_state([Interface(pci_address="0000:3b:00.0", num_vfs=4, link_type="IB")])
    assert plugin.on_node_state_change(state) == (True, True)
    plugin.apply()
    assert calls[0][-1] == "LINK_TYPE_P1=IB"