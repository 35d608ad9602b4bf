"""
Configuration management for the osmsync replicator.

All configuration is done via environment variables - the supervisor
passes directory locations and start modes through the environment.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have defaults matching the reference deployment
    - Start modes are either "auto" or an explicit sequence ID
    - Timing values are in seconds

How to change safely:
    - Add new settings with defaults that keep existing deployments working
    - Keep timing defaults aligned with the producer's publishing cadence
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .store.cursor import CURSOR_FILENAME

logger = logging.getLogger(__name__)

AUTO_START = "auto"


class MetaMode(Enum):
    """Metadata handling mode of the apply tool."""

    ATTIC = "attic"
    YES = "yes"
    NO = "no"

    @property
    def tool_args(self) -> list[str]:
        """Flags passed to the apply tool for this mode."""
        if self is MetaMode.ATTIC:
            return ["--keep-attic"]
        if self is MetaMode.YES:
            return ["--meta"]
        return []


def parse_start(value: str | int | None) -> int | None:
    """Parse a start mode: None for auto, otherwise the explicit sequence ID.

    Raises:
        ValueError: If the value is neither "auto" nor a non-negative integer
    """
    if value is None:
        return None
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"Start ID must be non-negative, got {value}")
        return value

    text = value.strip().lower()
    if text in ("", AUTO_START):
        return None
    if not text.isdigit():
        raise ValueError(f"Invalid start '{value}'. Must be 'auto' or a sequence ID")
    return int(text)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class SourceConfig:
    """Replication source and HTTP transfer settings.

    Attributes:
        url: Base URL of the replication source
        connect_timeout: Connection timeout in seconds
        keepalive_seconds: How long idle pooled connections are kept
        download_retries: Attempts per artifact file transfer
        download_retry_delay: Delay between artifact transfer attempts
        state_retries: Attempts per state.txt request
        state_retry_delay: Delay between state.txt attempts
        outage_retry_delay: Delay between polls during a network outage
    """

    url: str = "https://planet.openstreetmap.org/replication/minute"
    connect_timeout: float = 30.0
    keepalive_seconds: float = 20.0
    download_retries: int = 20
    download_retry_delay: float = 15.0
    state_retries: int = 3
    state_retry_delay: float = 5.0
    outage_retry_delay: float = 60.0

    @classmethod
    def from_env(cls) -> SourceConfig:
        """Load configuration from environment variables."""
        return cls(
            url=os.getenv(
                "REPLICATION_SOURCE_URL", "https://planet.openstreetmap.org/replication/minute"
            ).rstrip("/"),
            connect_timeout=float(os.getenv("HTTP_CONNECT_TIMEOUT", "30")),
            keepalive_seconds=float(os.getenv("HTTP_KEEPALIVE_SECONDS", "20")),
            download_retries=int(os.getenv("HTTP_DOWNLOAD_RETRIES", "20")),
            download_retry_delay=float(os.getenv("HTTP_DOWNLOAD_RETRY_DELAY", "15")),
            state_retries=int(os.getenv("HTTP_STATE_RETRIES", "3")),
            state_retry_delay=float(os.getenv("HTTP_STATE_RETRY_DELAY", "5")),
            outage_retry_delay=float(os.getenv("OUTAGE_RETRY_DELAY", "60")),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Local directory layout.

    Attributes:
        diff_dir: Directory holding downloaded artifacts and the fetch cursor
        db_dir: Database directory holding the apply cursor
        work_dir: Parent directory for the Applier's scratch areas
    """

    diff_dir: str = "/opt/op/diff"
    db_dir: str = "/opt/op/db"
    work_dir: str = field(default_factory=tempfile.gettempdir)

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            diff_dir=os.getenv("DIFF_DIR", "/opt/op/diff"),
            db_dir=os.getenv("DB_DIR", "/opt/op/db"),
            work_dir=os.getenv("WORK_DIR", tempfile.gettempdir()),
        )

    @property
    def fetch_cursor_path(self) -> Path:
        return Path(self.diff_dir) / CURSOR_FILENAME

    @property
    def apply_cursor_path(self) -> Path:
        return Path(self.db_dir) / CURSOR_FILENAME


@dataclass(frozen=True)
class FetcherConfig:
    """Fetcher loop configuration.

    Attributes:
        start: Explicit start ID, or None to resume automatically
        max_batch_size: Maximum sequence IDs per download batch
        parallelism: Concurrent file transfers within a batch
        expected_interval: Producer cadence used to align polls
        initial_delay: Poll delay before the first successful batch
        quick_retry_delay: Delay between quick retries
        quick_retry_count: Quick retries before falling back to slow retries
        slow_retry_delay: Delay between slow retries
        batch_retry_delay: Delay after a failed batch
    """

    start: int | None = None
    max_batch_size: int = 360
    parallelism: int = 4
    expected_interval: float = 51.0
    initial_delay: float = 15.0
    quick_retry_delay: float = 1.0
    quick_retry_count: int = 10
    slow_retry_delay: float = 60.0
    batch_retry_delay: float = 60.0

    @classmethod
    def from_env(cls) -> FetcherConfig:
        """Load configuration from environment variables."""
        return cls(
            start=parse_start(os.getenv("FETCH_START", AUTO_START)),
            max_batch_size=int(os.getenv("FETCH_MAX_BATCH_SIZE", "360")),
            parallelism=int(os.getenv("FETCH_PARALLELISM", "4")),
            expected_interval=float(os.getenv("FETCH_EXPECTED_INTERVAL", "51")),
            initial_delay=float(os.getenv("FETCH_INITIAL_DELAY", "15")),
            quick_retry_delay=float(os.getenv("FETCH_QUICK_RETRY_DELAY", "1")),
            quick_retry_count=int(os.getenv("FETCH_QUICK_RETRY_COUNT", "10")),
            slow_retry_delay=float(os.getenv("FETCH_SLOW_RETRY_DELAY", "60")),
            batch_retry_delay=float(os.getenv("FETCH_BATCH_RETRY_DELAY", "60")),
        )


@dataclass(frozen=True)
class ApplierConfig:
    """Applier loop configuration.

    Attributes:
        start: Explicit start ID, or None to resume from the apply cursor
        meta_mode: Metadata handling mode passed to the apply tool
        max_batch_size: Maximum sequence IDs per applied batch
        expected_interval: Producer cadence used to align polls
        initial_delay: Poll delay before the first collected batch
        min_delay: Floor of the aligned poll delay
        max_retries: Apply tool attempts per batch
        retry_delay: Delay between apply tool attempts
        failure_delay: Pause before retrying a batch that failed
        version_wait_attempts: Attempts to read the batch version
        version_wait_delay: Delay between version read attempts
    """

    start: int | None = None
    meta_mode: MetaMode = MetaMode.ATTIC
    max_batch_size: int = 360
    expected_interval: float = 57.0
    initial_delay: float = 5.0
    min_delay: float = 1.0
    max_retries: int = 5
    retry_delay: float = 60.0
    failure_delay: float = 60.0
    version_wait_attempts: int = 10
    version_wait_delay: float = 1.0

    @classmethod
    def from_env(cls) -> ApplierConfig:
        """Load configuration from environment variables."""
        meta_str = os.getenv("APPLY_META_MODE", "attic").lower()
        try:
            meta_mode = MetaMode(meta_str)
        except ValueError:
            raise ValueError(
                f"Invalid APPLY_META_MODE '{meta_str}'. Must be one of: attic, yes, no"
            )

        return cls(
            start=parse_start(os.getenv("APPLY_START", AUTO_START)),
            meta_mode=meta_mode,
            max_batch_size=int(os.getenv("APPLY_MAX_BATCH_SIZE", "360")),
            expected_interval=float(os.getenv("APPLY_EXPECTED_INTERVAL", "57")),
            initial_delay=float(os.getenv("APPLY_INITIAL_DELAY", "5")),
            min_delay=float(os.getenv("APPLY_MIN_DELAY", "1")),
            max_retries=int(os.getenv("APPLY_MAX_RETRIES", "5")),
            retry_delay=float(os.getenv("APPLY_RETRY_DELAY", "60")),
            failure_delay=float(os.getenv("APPLY_FAILURE_DELAY", "60")),
            version_wait_attempts=int(os.getenv("APPLY_VERSION_WAIT_ATTEMPTS", "10")),
            version_wait_delay=float(os.getenv("APPLY_VERSION_WAIT_DELAY", "1")),
        )


@dataclass(frozen=True)
class ToolsConfig:
    """External database tools.

    Attributes:
        exec_dir: Directory holding the database binaries
        apply_tool: Apply tool executable (relative to exec_dir unless absolute)
        migration_tool: Migration tool executable
        terminate_grace_seconds: Wait after SIGTERM before killing a tool
    """

    exec_dir: str = "/opt/op/bin"
    apply_tool: str = "update_from_dir"
    migration_tool: str = "migrate_database"
    terminate_grace_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> ToolsConfig:
        """Load configuration from environment variables."""
        return cls(
            exec_dir=os.getenv("EXEC_DIR", "/opt/op/bin"),
            apply_tool=os.getenv("APPLY_TOOL", "update_from_dir"),
            migration_tool=os.getenv("MIGRATION_TOOL", "migrate_database"),
            terminate_grace_seconds=float(os.getenv("TOOL_TERMINATE_GRACE_SECONDS", "30")),
        )

    def resolve(self, executable: str) -> str:
        path = Path(executable)
        if path.is_absolute():
            return str(path)
        return str(Path(self.exec_dir) / path)


@dataclass(frozen=True)
class RetentionConfig:
    """Retention configuration.

    Attributes:
        keep_count: Applied sequence IDs to keep on disk behind the apply cursor
    """

    keep_count: int = 360

    @classmethod
    def from_env(cls) -> RetentionConfig:
        """Load configuration from environment variables."""
        return cls(keep_count=int(os.getenv("RETENTION_KEEP_COUNT", "360")))


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
        log_to_file: Also write the role's log file in its directory
    """

    log_level: str = "INFO"
    log_format: str = "json"
    log_to_file: bool = False

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
            log_to_file=_env_bool("LOG_TO_FILE", "false"),
        )


@dataclass
class ReplicatorConfig:
    """Complete replicator configuration.

    Attributes:
        source: Replication source configuration
        storage: Local directories
        fetcher: Fetcher configuration
        applier: Applier configuration
        tools: External tool configuration
        retention: Retention configuration
        observability: Logging configuration
    """

    source: SourceConfig = field(default_factory=SourceConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    fetcher: FetcherConfig = field(default_factory=FetcherConfig)
    applier: ApplierConfig = field(default_factory=ApplierConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ReplicatorConfig:
        """Load complete configuration from environment variables.

        Returns:
            ReplicatorConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        config = cls(
            source=SourceConfig.from_env(),
            storage=StorageConfig.from_env(),
            fetcher=FetcherConfig.from_env(),
            applier=ApplierConfig.from_env(),
            tools=ToolsConfig.from_env(),
            retention=RetentionConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.source.url.startswith(("http://", "https://")):
            raise ValueError(
                f"REPLICATION_SOURCE_URL must be an http(s) URL, got '{self.source.url}'"
            )

        for name, value in (
            ("FETCH_MAX_BATCH_SIZE", self.fetcher.max_batch_size),
            ("FETCH_PARALLELISM", self.fetcher.parallelism),
            ("APPLY_MAX_BATCH_SIZE", self.applier.max_batch_size),
            ("APPLY_MAX_RETRIES", self.applier.max_retries),
            ("HTTP_DOWNLOAD_RETRIES", self.source.download_retries),
            ("HTTP_STATE_RETRIES", self.source.state_retries),
        ):
            if value < 1:
                raise ValueError(f"{name} must be at least 1, got {value}")

        if self.retention.keep_count < 0:
            raise ValueError(
                f"RETENTION_KEEP_COUNT must be non-negative, got {self.retention.keep_count}"
            )

        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if not os.path.isdir(self.storage.diff_dir):
            logger.warning(
                f"Diff directory does not exist: {self.storage.diff_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Replicator configuration loaded",
            extra={
                "source_url": self.source.url,
                "diff_dir": self.storage.diff_dir,
                "db_dir": self.storage.db_dir,
                "fetch_start": self.fetcher.start if self.fetcher.start is not None else AUTO_START,
                "apply_start": self.applier.start if self.applier.start is not None else AUTO_START,
                "meta_mode": self.applier.meta_mode.value,
                "fetch_batch_size": self.fetcher.max_batch_size,
                "apply_batch_size": self.applier.max_batch_size,
                "parallelism": self.fetcher.parallelism,
                "keep_count": self.retention.keep_count,
                "log_level": self.observability.log_level,
            },
        )
