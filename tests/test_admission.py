import base64
import json

import pytest

from sriovconf.admission import mutate_custom_resource, validate_custom_resource
from sriovconf.model import Node, NodeState, InterfaceExt, set_nic_id_map
from sriovconf.validate import ClusterView

NAMESPACE = "openshift-sriov-network-operator"
LABEL = {"feature.node.kubernetes.io/network-sriov.capable": "true"}


@pytest.fixture(autouse=True)
def _environment(monkeypatch):
    set_nic_id_map(["8086 158b 154c", "15b3 1015 1016"])
    monkeypatch.setenv("NAMESPACE", NAMESPACE)
    monkeypatch.delenv("DEV_MODE", raising=False)


def _review(kind, operation="CREATE", obj=None, old=None):
    return {
        "request": {
            "kind": {"kind": kind},
            "operation": operation,
            "object": obj,
            "oldObject": old,
        }
    }


def _config(name="default", disable_drain=False):
    return {"metadata": {"name": name}, "spec": {"disableDrain": disable_drain}}


def test_mutate_custom_resource_adds_defaults():
    cr = {"metadata": {"name": "p1"}, "spec": {"priority": 5}}
    response = mutate_custom_resource(_review("SriovNetworkNodePolicy", obj=cr))
    patches = json.loads(base64.b64decode(response["patch"]))
    assert [p["path"] for p in patches] == ["/spec/deviceType", "/spec/isRdma"]
    assert response["allowed"] is True


def test_mutate_custom_resource_accepts_raw_json():
    raw = json.dumps({"metadata": {"name": "default"}, "spec": {}})
    assert mutate_custom_resource(_review("SriovNetworkNodePolicy", obj=raw)) == {"allowed": True}


def test_mutate_custom_resource_bad_json():
    response = mutate_custom_resource(_review("SriovNetworkNodePolicy", obj="{not json"))
    assert response["allowed"] is False
    assert response["result"]["message"]


def test_validate_default_config_update_warns():
    response = validate_custom_resource(
        _review("SriovOperatorConfig", "UPDATE", obj=_config(disable_drain=True))
    )
    assert response["allowed"] is True
    assert "Node draining is disabled" in response["warnings"][0]


def test_validate_non_default_config_rejected():
    response = validate_custom_resource(_review("SriovOperatorConfig", obj=_config("other")))
    assert response["allowed"] is False
    assert response["result"]["reason"] == "only default SriovOperatorConfig is used"


def test_validate_delete_uses_old_object():
    response = validate_custom_resource(
        _review("SriovOperatorConfig", "DELETE", obj=None, old=_config())
    )
    assert response["allowed"] is False
    assert response["result"]["reason"] == "default SriovOperatorConfig shouldn't be deleted"


def test_validate_unknown_kind_allowed():
    assert validate_custom_resource(_review("Pod", obj={})) == {"allowed": True}


def test_validate_policy_bad_object():
    response = validate_custom_resource(_review("SriovNetworkNodePolicy", obj="[1, 2]"))
    assert response["allowed"] is False
    assert "message" in response["result"]


def _policy(num_vfs):
    return {
        "metadata": {"name": "p0", "namespace": NAMESPACE},
        "spec": {
            "resourceName": "p0",
            "numVfs": num_vfs,
            "deviceType": "netdevice",
            "nodeSelector": dict(LABEL),
            "nicSelector": {"vendor": "8086", "pfNames": ["ens1"]},
        },
    }


def _cluster():
    state = NodeState(
        name="worker-0",
        status_interfaces=[
            InterfaceExt(name="ens1", pci_address="0000:3b:00.0", vendor="8086", device_id="158b", total_vfs=64)
        ],
    )
    return ClusterView(nodes=[Node(name="worker-0", labels=dict(LABEL))], node_states=[state])


def test_validate_policy_against_cluster_allowed():
    response = validate_custom_resource(_review("SriovNetworkNodePolicy", obj=_policy(8)), _cluster())
    assert response == {"allowed": True}


def test_validate_policy_against_cluster_rejected():
    response = validate_custom_resource(_review("SriovNetworkNodePolicy", obj=_policy(65)), _cluster())
    assert response["allowed"] is False
    assert "exceed the maximum allowed value(64)" in response["result"]["reason"]


def test_validate_policy_delete_of_default_rejected():
    old = {"metadata": {"name": "default", "namespace": NAMESPACE}, "spec": {}}
    response = validate_custom_resource(_review("SriovNetworkNodePolicy", "DELETE", old=old))
    assert response["allowed"] is False
    assert response["result"]["reason"] == "default SriovNetworkNodePolicy shouldn't be deleted"