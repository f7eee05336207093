"""Naming and directory layout conventions for instances."""

import re
from datetime import datetime
from pathlib import Path

_UNSAFE_NAME = re.compile(r"[^a-z0-9_]")

ID_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"

STATIC_SUBDIRS = ("qrcode", "senditems", "media")


def sanitize_name(name: str) -> str:
    """Lowercase, spaces to underscores, drop anything outside [a-z0-9_]."""
    safe = _UNSAFE_NAME.sub("", name.lower().replace(" ", "_"))
    return safe or "instance"


class InstanceNaming:
    """Centralized naming conventions for instance resources."""

    def __init__(self, base_path: Path, registry_file: str = "instances.json") -> None:
        self._base_path = Path(base_path)
        self._registry_file = registry_file

    @property
    def base_path(self) -> Path:
        return self._base_path

    @property
    def registry_path(self) -> Path:
        return self._base_path / self._registry_file

    def instance_id(self, name: str, now: datetime) -> str:
        return f"{sanitize_name(name)}_{now.strftime(ID_TIMESTAMP_FORMAT)}"

    def process_name(self, name: str) -> str:
        return f"worker-{name}"

    def working_dir(self, instance_id: str) -> Path:
        return self._base_path / instance_id

    def storage_dir(self, instance_id: str) -> Path:
        return self.working_dir(instance_id) / "storages"

    def static_dir(self, instance_id: str) -> Path:
        return self.working_dir(instance_id) / "statics"

    def log_dir(self, instance_id: str) -> Path:
        return self.working_dir(instance_id) / "logs"

    def config_path(self, instance_id: str) -> Path:
        return self.working_dir(instance_id) / "config.json"

    def log_path(self, instance_id: str) -> Path:
        return self.log_dir(instance_id) / "app.log"

    def layout(self, instance_id: str) -> list[Path]:
        """Directories created for a new instance."""
        static = self.static_dir(instance_id)
        return [
            self.storage_dir(instance_id),
            *(static / sub for sub in STATIC_SUBDIRS),
            self.log_dir(instance_id),
        ]
