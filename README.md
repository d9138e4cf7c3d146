# sriovconf

A library for configuring SR-IOV network devices on a Linux node and for
checking the policies that ask for that configuration.

## Modules

- `sriovconf.model`: the data model (`Interface`, `InterfaceExt`, `VfGroup`,
  `VirtualFunction`, `NodeState`, `NodePolicy`, `NicSelector`,
  `OperatorConfig`, `Node`), the abstract `VendorPlugin` base class, and
  helpers: `index_in_range`, `parse_pf_name`, `policy_from_dict`,
  `operator_config_from_dict`. The table of supported NICs is set with
  `set_nic_id_map(["vendor pf-device vf-device", ...])` and queried with
  `is_supported_vendor`, `is_supported_device`, `is_supported_model`,
  `is_vf_supported_model` and `get_vf_device_id`.
- `sriovconf.render`: renders manifest templates (YAML or JSON, possibly
  several documents per file) into dictionaries with `render_template` and
  `render_dir`. Failures raise `RenderError`.
- `sriovconf.service`: parses and writes systemd unit files
  (`deserialize_unit`, `serialize_unit`, `UnitOption`), compares and edits
  them (`compare_services`, `append_to_service`, `remove_from_service`), and
  reads service and script manifests (`read_service_manifest_file`,
  `read_service_injection_manifest_file`, `read_script_manifest_file`).
- `sriovconf.service_manager`: `ServiceManager` checks, reads and writes
  unit files below a root directory and enables them with `systemctl`
  inside that root.
- `sriovconf.host`: `Sysfs` reads and writes PCI and network interface
  entries below a sysfs root (driver binding, VF lists and counts, MTU, MAC,
  link speed); also `run_command`, `is_kernel_lockdown_mode`,
  `load_kernel_module`, the `chroot` context manager and
  `generate_random_guid`.
- `sriovconf.mlx`: `parse_mstconfig_output` and the BlueField mode
  (`BlueFieldMode`, `bluefield_mode_from_output`, `mellanox_bluefield_mode`).
- `sriovconf.nodestate`: `need_update`, `get_pfs_to_skip`,
  `is_switchdev_mode_spec`, `write_switchdev_conf_file`,
  `reset_sriov_device` and `sync_node_state`, which configures or resets
  every observed PF to match the desired spec.
- `sriovconf.validate`: `static_validate_sriov_network_node_policy`,
  `dynamic_validate_sriov_network_node_policy` (checked against a
  `ClusterView` of nodes, node states and policies),
  `validate_sriov_network_node_policy`, `validate_sriov_operator_config` and
  helpers. Rejections raise `ValidationError`, which carries any warnings.
- `sriovconf.mutate`: `mutate_sriov_network_node_policy` returns an
  admission response with a base64-encoded JSON patch adding default
  `priority`, `deviceType` and `isRdma`.
- `sriovconf.admission`: `mutate_custom_resource` and
  `validate_custom_resource` take an admission review dictionary and return
  an admission response dictionary.
- Plugins implementing `on_node_state_change(state)` (returning
  `(need_drain, need_reboot)`) and `apply()`: `sriovconf.generic.GenericPlugin`,
  `sriovconf.mellanox.MellanoxPlugin`, and `sriovconf.simple_plugins`
  (`FakePlugin`, `IntelPlugin`).

## Example: validating a policy

```python
from sriovconf.model import set_nic_id_map, policy_from_dict
from sriovconf.validate import ValidationError, static_validate_sriov_network_node_policy

set_nic_id_map(["8086 158b 154c"])

policy = policy_from_dict({
    "metadata": {"name": "p0"},
    "spec": {
        "resourceName": "p0",
        "numVfs": 8,
        "deviceType": "netdevice",
        "nicSelector": {"vendor": "8086", "deviceID": "158b"},
    },
})

try:
    static_validate_sriov_network_node_policy(policy)
except ValidationError as err:
    print("rejected:", err)
```

## Example: an admission review

```python
from sriovconf.admission import mutate_custom_resource

review = {
    "request": {
        "operation": "CREATE",
        "kind": {"kind": "SriovNetworkNodePolicy"},
        "object": {"metadata": {"name": "p0"}, "spec": {"resourceName": "p0"}},
    }
}
response = mutate_custom_resource(review)
# {"allowed": True, "patch": "<base64 JSON patch>", "patchType": "JSONPatch"}
```

`validate_custom_resource(review, cluster)` handles `SriovNetworkNodePolicy`
and `SriovOperatorConfig` objects; for `DELETE` it reads `oldObject`.

## Example: rendering manifests

```python
from sriovconf.render import make_render_data, render_dir

data = make_render_data()
data.data["Namespace"] = "sriov"
objects = render_dir("manifests", data)
```

Templates use Jinja2 syntax. Each data key is a template variable, and the
whole mapping is also available as `data`, so `{{ getOr(data, "Key", "x") }}`
works. `getOr`, `isSet` and any function added to `data.funcs` can be called
as functions or used as filters. A missing key or an unknown function is a
`RenderError`. Files that are not `.yml`, `.yaml` or `.json` are skipped by
`render_dir`.

## What it does not do

- There is no command-line program, daemon or HTTP server: the admission
  functions work on dictionaries and the plugins must be driven by the caller.
- It does not talk to a Kubernetes API server. The objects a policy is
  checked against are passed in as a `ClusterView`.
- It does not discover devices: the observed `InterfaceExt` entries of a
  `NodeState` are filled in by the caller.

## Running the tests

```
pip install -e .[test]
pytest
```