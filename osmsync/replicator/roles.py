"""
Replication roles and their on-disk footprint.

Each role runs as its own supervised process. The descriptor of a role
names where its cursor, PID lock and log file live; the PID lock is what
keeps a second process of the same role off the same directory.

Invariants:
    - Each role owns exactly one directory: the fetch role the diff directory,
      the apply role the database directory
    - Lock and log files live in the role's directory, next to its cursor
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .config import StorageConfig


@dataclass(frozen=True)
class RoleDescriptor:
    """Static description of a replication role.

    Attributes:
        name: Process name used in logs
        directory: Storage attribute holding the role's directory
        lock_name: PID lock file name inside that directory
        log_name: Log file name inside that directory
    """

    name: str
    directory: str
    lock_name: str
    log_name: str

    def base_dir(self, storage: StorageConfig) -> Path:
        return Path(getattr(storage, self.directory))

    def lock_path(self, storage: StorageConfig) -> Path:
        return self.base_dir(storage) / self.lock_name

    def log_path(self, storage: StorageConfig) -> Path:
        return self.base_dir(storage) / self.log_name


class Role(Enum):
    """The replication roles."""

    FETCH = RoleDescriptor(
        name="fetch_osc",
        directory="diff_dir",
        lock_name="fetch.pid",
        log_name="fetch_osc.log",
    )
    APPLY = RoleDescriptor(
        name="apply_osc",
        directory="db_dir",
        lock_name="apply.pid",
        log_name="apply_osc_to_db.log",
    )

    @property
    def descriptor(self) -> RoleDescriptor:
        return self.value

    @classmethod
    def parse(cls, name: str) -> Role:
        """Role from its CLI name (``fetch``/``apply``) or process name."""
        key = name.strip().lower()
        for role in cls:
            if key in (role.name.lower(), role.value.name):
                return role
        raise ValueError(f"Unknown role '{name}'. Must be one of: fetch, apply")
