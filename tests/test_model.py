import pytest

from sriovconf import model
from sriovconf.model import (
    InterfaceExt,
    Node,
    NodePolicy,
    NodeState,
    VendorPlugin,
    get_vf_device_id,
    index_in_range,
    is_supported_device,
    is_supported_model,
    is_supported_vendor,
    is_vf_supported_model,
    operator_config_from_dict,
    parse_pf_name,
    policy_from_dict,
    set_nic_id_map,
)

NIC_IDS = [
    "8086 158a 154c",
    "8086 158b 154c",
    "8086 1572 154c",
    "15b3 1013 1014",
    "15b3 1015 1016",
    "14e4 16d7 16dc",
]


@pytest.fixture(autouse=True)
def nic_map():
    set_nic_id_map(NIC_IDS)
    yield
    set_nic_id_map([])


def test_index_in_range():
    assert index_in_range(2, "0-3") is True
    assert index_in_range(0, "0-3") is True
    assert index_in_range(3, "0-3") is True
    assert index_in_range(4, "0-3") is False


def test_index_in_range_invalid_ranges():
    assert index_in_range(0, "") is False
    assert index_in_range(0, "a-b") is False
    assert index_in_range(1, "1") is False


def test_parse_pf_name_with_range():
    assert parse_pf_name("ens803f1#0-2") == ("ens803f1", 0, 2)


def test_parse_pf_name_without_range():
    assert parse_pf_name("ens803f0") == ("ens803f0", model.INVALID_VF_INDEX, model.INVALID_VF_INDEX)


@pytest.mark.parametrize("name", ["ens803f1#1", "ens803f1#a-2", "ens803f1#1-b"])
def test_parse_pf_name_invalid(name):
    with pytest.raises(ValueError):
        parse_pf_name(name)


def test_supported_vendor_and_device():
    assert is_supported_vendor("8086") is True
    assert is_supported_vendor("8087") is False
    assert is_supported_device("158b") is True
    assert is_supported_device("1234") is False


def test_supported_model():
    assert is_supported_model("8086", "158b") is True
    assert is_supported_model("8086", "1015") is False
    assert is_supported_model("15b3", "1015") is True


def test_vf_supported_model_and_vf_device_id():
    assert is_vf_supported_model("8086", "154c") is True
    assert is_vf_supported_model("8086", "158b") is False
    assert get_vf_device_id("1015") == "1016"
    assert get_vf_device_id("ffff") == ""


def test_set_nic_id_map_rejects_bad_entry():
    with pytest.raises(ValueError):
        set_nic_id_map(["8086 158b"])


def test_policy_selects_node():
    policy = NodePolicy(node_selector={"feature.node.kubernetes.io/network-sriov.capable": "true"})
    matching = Node(name="n1", labels={"feature.node.kubernetes.io/network-sriov.capable": "true", "x": "y"})
    other = Node(name="n2", labels={"feature.node.kubernetes.io/network-sriov.capable": "false"})
    assert policy.selects(matching) is True
    assert policy.selects(other) is False
    assert NodePolicy().selects(other) is True


def test_interface_by_pci_address():
    first = InterfaceExt(name="ens803f0", pci_address="0000:86:00.0")
    second = InterfaceExt(name="ens803f1", pci_address="0000:86:00.1")
    state = NodeState(status_interfaces=[first, second])
    assert state.interface_by_pci_address("0000:86:00.1") is second
    assert state.interface_by_pci_address("0000:86:00.9") is None


def test_policy_from_dict():
    data = {
        "metadata": {"name": "p1", "namespace": "openshift-sriov-network-operator"},
        "spec": {
            "resourceName": "p1",
            "nodeSelector": {"feature.node.kubernetes.io/network-sriov.capable": "true"},
            "priority": 99,
            "numVfs": 63,
            "deviceType": "netdevice",
            "isRdma": True,
            "linkType": "ETH",
            "nicSelector": {
                "vendor": "8086",
                "deviceID": "158b",
                "pfNames": ["ens803f1#0-2"],
                "rootDevices": ["0000:86:00.1"],
            },
        },
    }
    policy = policy_from_dict(data)
    assert policy.name == "p1"
    assert policy.namespace == "openshift-sriov-network-operator"
    assert policy.num_vfs == 63
    assert policy.priority == 99
    assert policy.is_rdma is True
    assert policy.nic_selector.pf_names == ["ens803f1#0-2"]
    assert policy.nic_selector.device_id == "158b"
    assert policy.nic_selector.net_filter == ""


def test_operator_config_from_dict():
    data = {
        "metadata": {"name": "default"},
        "spec": {"disableDrain": True, "enableInjector": True, "logLevel": 2},
    }
    config = operator_config_from_dict(data)
    assert config.name == "default"
    assert config.disable_drain is True
    assert config.enable_injector is True
    assert config.enable_operator_webhook is None
    assert config.log_level == 2


def test_vendor_plugin_is_abstract():
    with pytest.raises(TypeError):
        VendorPlugin()


def test_vendor_plugin_subclass():
    class Recorder(VendorPlugin):
        name = "recorder"

        def __init__(self):
            self.seen = None

        def on_node_state_change(self, new_state):
            self.seen = new_state
            return False, True

        def apply(self):
            return None

    plugin = Recorder()
    state = NodeState(name="node-a")
    assert plugin.on_node_state_change(state) == (False, True)
    assert plugin.seen is state
    assert plugin.spec == "1.0"