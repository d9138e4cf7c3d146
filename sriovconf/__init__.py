"""SR-IOV node configuration: policy validation, manifest rendering, systemd units, sysfs control and vendor plugins."""

__version__ = "0.1.0"