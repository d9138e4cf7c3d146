"""Systemd unit files and the service manifests that carry them."""

from __future__ import annotations

from dataclasses import dataclass

import yaml

SYSTEMD_DIR = "/usr/lib/systemd/system/"
ETC_SYSTEMD_DIR = "/etc/systemd/system/"


@dataclass
class Service:
    name: str
    path: str
    content: str


@dataclass(frozen=True)
class UnitOption:
    """One "Name=Value" entry of a unit file section."""

    section: str
    name: str
    value: str

    def matches(self, other: UnitOption) -> bool:
        return (self.section, self.name, self.value) == (
            other.section,
            other.name,
            other.value,
        )


@dataclass
class ScriptManifestFile:
    path: str
    contents: str


def deserialize_unit(text: str) -> list[UnitOption]:
    """Parse unit file text into its options, in file order."""
    options: list[UnitOption] = []
    section: str | None = None
    lines = iter(text.splitlines())
    for raw in lines:
        line = raw.strip()
        if not line or line[0] in "#;":
            continue
        if line.startswith("["):
            if not line.endswith("]") or len(line) < 3:
                raise ValueError(f"invalid section header: {raw!r}")
            section = line[1:-1]
            continue
        if section is None:
            raise ValueError(f"option found outside of a section: {raw!r}")
        if "=" not in line:
            raise ValueError(f"unable to find '=' in option line: {raw!r}")
        name, value = line.split("=", 1)
        value = value.strip()
        while value.endswith("\\"):
            value = value[:-1].rstrip()
            following = next(lines, "").strip()
            value = f"{value} {following}" if value else following
        options.append(UnitOption(section, name.strip(), value))
    return options


def serialize_unit(options) -> str:
    """Write options as unit file text, grouped by section in first-seen order."""
    sections: dict[str, list[UnitOption]] = {}
    for opt in options:
        sections.setdefault(opt.section, []).append(opt)
    blocks = [
        f"[{section}]\n" + "".join(f"{o.name}={o.value}\n" for o in opts)
        for section, opts in sections.items()
    ]
    return "\n".join(blocks)


def compare_services(service_a: Service, service_b: Service) -> bool:
    """True when service_b has an option that service_a lacks."""
    opts_a = deserialize_unit(service_a.content)
    opts_b = deserialize_unit(service_b.content)
    return any(not any(a.matches(b) for a in opts_a) for b in opts_b)


def remove_from_service(service: Service, *args: UnitOption) -> Service:
    """Return a copy of service without the given options."""
    kept = [
        opt
        for opt in deserialize_unit(service.content)
        if not any(opt.matches(remove) for remove in args)
    ]
    return Service(service.name, service.path, serialize_unit(kept))


def append_to_service(service: Service, *args: UnitOption) -> Service:
    """Return a copy of service with the given options added where missing."""
    options = deserialize_unit(service.content)
    for extra in args:
        if not any(opt.matches(extra) for opt in options):
            options.append(extra)
    return Service(service.name, service.path, serialize_unit(options))


def _load_mapping(path: str) -> dict:
    with open(path, encoding="utf-8") as handle:
        doc = yaml.safe_load(handle)
    if doc is None:
        return {}
    if not isinstance(doc, dict):
        raise ValueError(f"{path}: expected a mapping")
    return doc


def read_service_injection_manifest_file(path: str) -> Service:
    """Read a manifest that injects a drop-in into a system service."""
    doc = _load_mapping(path)
    dropins = doc.get("dropins") or []
    if not dropins:
        raise ValueError(f"{path}: no dropins in service injection manifest")
    name = doc.get("name") or ""
    return Service(name, SYSTEMD_DIR + name, (dropins[0] or {}).get("contents") or "")


def read_service_manifest_file(path: str) -> Service:
    """Read a manifest describing a whole service unit."""
    doc = _load_mapping(path)
    name = doc.get("name") or ""
    return Service(name, ETC_SYSTEMD_DIR + name, doc.get("contents") or "")


def read_script_manifest_file(path: str) -> ScriptManifestFile:
    """Read a manifest describing a script file and its inline contents."""
    doc = _load_mapping(path)
    contents = doc.get("contents") or {}
    return ScriptManifestFile(doc.get("path") or "", contents.get("inline") or "")