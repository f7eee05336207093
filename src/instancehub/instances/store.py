"""On-disk persistence for the instance registry.

Two kinds of files:
- Registry file: {id: RegistryEntry} for every instance, rewritten wholesale
- Per-instance config.json: the InstanceConfig fields

Both are written to a temporary sibling first, then renamed over the target.
"""

import asyncio
import json
import logging
import os
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from instancehub.api.errors import PersistenceError
from instancehub.instances.models import Instance, InstanceConfig, InstanceStatus
from instancehub.logging_schema import LogEvent

logger = logging.getLogger(__name__)


class RegistryEntry(BaseModel):
    """Persisted subset of an Instance. Runtime state is not stored."""

    id: str
    name: str
    phone: str = ""
    port: int
    working_dir: str
    config_path: str
    log_path: str
    created_at: datetime
    metadata: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_instance(cls, instance: Instance) -> "RegistryEntry":
        return cls(
            id=instance.id,
            name=instance.name,
            phone=instance.phone,
            port=instance.port,
            working_dir=instance.working_dir,
            config_path=instance.config_path,
            log_path=instance.log_path,
            created_at=instance.created_at,
            metadata=dict(instance.metadata),
        )


def _write_atomic(path: Path, payload: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(payload, encoding="utf-8")
    os.replace(tmp, path)


class RegistryStore:
    """Reads and writes the registry file and per-instance config files."""

    def __init__(self, registry_path: Path) -> None:
        self._registry_path = Path(registry_path)

    @property
    def registry_path(self) -> Path:
        return self._registry_path

    async def save_config(self, config_path: str | Path, config: InstanceConfig) -> None:
        """Write one instance's config.json.

        Raises:
            PersistenceError: On I/O failure.
        """
        payload = config.model_dump_json(indent=2)
        try:
            await asyncio.to_thread(_write_atomic, Path(config_path), payload)
        except OSError as e:
            raise PersistenceError(f"Failed to write config {config_path}: {e}") from e

    async def save(self, instances: Iterable[Instance]) -> None:
        """Rewrite the registry file from the given instances.

        Raises:
            PersistenceError: On I/O failure.
        """
        data = {
            instance.id: RegistryEntry.from_instance(instance).model_dump(mode="json")
            for instance in instances
        }
        payload = json.dumps(data, indent=2)
        try:
            await asyncio.to_thread(_write_atomic, self._registry_path, payload)
        except OSError as e:
            logger.error(
                "Failed to persist registry",
                extra={"event": LogEvent.PERSISTENCE_FAILED, "path": str(self._registry_path), "error": str(e)},
            )
            raise PersistenceError(f"Failed to write registry {self._registry_path}: {e}") from e

    async def load(self) -> list[Instance]:
        """Read the registry file back as stopped instances.

        A missing registry file means an empty registry. Entries whose record
        or config file cannot be read are skipped with a warning.

        Raises:
            PersistenceError: If the registry file exists but is unreadable.
        """
        try:
            raw = await asyncio.to_thread(self._registry_path.read_text, encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as e:
            raise PersistenceError(f"Failed to read registry {self._registry_path}: {e}") from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Malformed registry {self._registry_path}: {e}") from e
        if not isinstance(data, dict):
            raise PersistenceError(f"Malformed registry {self._registry_path}: expected an object")

        instances = []
        for instance_id, record in data.items():
            try:
                entry = RegistryEntry.model_validate(record)
                config = await self._load_config(Path(entry.config_path))
            except (ValidationError, OSError, ValueError) as e:
                logger.warning(
                    "Skipping unreadable registry entry",
                    extra={"event": LogEvent.PERSISTENCE_FAILED, "instance_id": instance_id, "error": str(e)},
                )
                continue

            instances.append(
                Instance(
                    id=entry.id,
                    name=entry.name,
                    phone=entry.phone,
                    status=InstanceStatus.STOPPED,
                    port=entry.port,
                    working_dir=entry.working_dir,
                    config_path=entry.config_path,
                    log_path=entry.log_path,
                    created_at=entry.created_at,
                    config=config,
                    metadata=entry.metadata,
                )
            )
        return instances

    async def _load_config(self, path: Path) -> InstanceConfig:
        raw = await asyncio.to_thread(path.read_text, encoding="utf-8")
        return InstanceConfig.model_validate_json(raw)
