"""Read, write and enable systemd services below a root directory."""

from __future__ import annotations

import os
import subprocess

from .host import chroot
from .service import Service


class ServiceManager:
    """Manages systemd service files of the system rooted at chroot."""

    def __init__(self, chroot: str = ""):
        self.root = chroot or "/"

    def _host_path(self, service_path: str) -> str:
        return os.path.join(self.root, service_path.lstrip("/"))

    def is_service_exist(self, service_path: str) -> bool:
        """True when the service file exists."""
        try:
            os.stat(self._host_path(service_path))
        except FileNotFoundError:
            return False
        return True

    def read_service(self, service_path: str) -> Service:
        """Read the service file at service_path."""
        with open(self._host_path(service_path), encoding="utf-8") as handle:
            content = handle.read()
        return Service(os.path.basename(service_path), service_path, content)

    def enable_service(self, service: Service) -> None:
        """Write the service file and enable it with systemctl."""
        fd = os.open(
            self._host_path(service.path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644
        )
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(service.content)
        with chroot(self.root):
            subprocess.run(["systemctl", "enable", service.name], check=True)