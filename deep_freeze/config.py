import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, FrozenSet, Iterable, List, Optional

import click

from .utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_HOME = "~/.deep-freeze"

# Environment variable -> dotted config key.
ENV_OVERRIDES = (
    ("AWS_REGION", "archive.region"),
    ("DEEP_FREEZE_BUCKET", "archive.bucket"),
    ("DEEP_FREEZE_BASE_FOLDER", "google_drive.base_folder_id"),
    ("DEEP_FREEZE_TEMP_DIR", "migration.temp_dir"),
    ("DEEP_FREEZE_DB_FILE", "migration.db_path"),
    ("GOOGLE_APPLICATION_CREDENTIALS", "google_drive.service_account_path"),
)


@dataclass
class GoogleDriveConfig:
    base_folder_id: str = ""
    credentials_path: str = f"{DEFAULT_HOME}/google_credentials.json"
    token_path: str = f"{DEFAULT_HOME}/google_token.json"
    service_account_path: str = ""


@dataclass
class ArchiveConfig:
    bucket: str = ""
    region: str = "us-east-1"
    storage_class: str = "DEEP_ARCHIVE"
    key_prefix: str = ""
    profile: str = ""


@dataclass
class MigrationConfig:
    db_path: str = f"{DEFAULT_HOME}/db.sqlite"
    temp_dir: str = f"{DEFAULT_HOME}/temp"
    concurrency: int = 1
    max_passes: int = 10
    retry_attempts: int = 3
    retry_delay_seconds: int = 5


@dataclass
class Config:
    google_drive: GoogleDriveConfig = field(default_factory=GoogleDriveConfig)
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
    migration: MigrationConfig = field(default_factory=MigrationConfig)

    def validate(self) -> None:
        errors: List[str] = []
        if self.migration.concurrency <= 0:
            errors.append("migration.concurrency must be > 0")
        if self.migration.max_passes <= 0:
            errors.append("migration.max_passes must be > 0")
        if self.migration.retry_attempts < 0:
            errors.append("migration.retry_attempts must be >= 0")
        if self.migration.retry_delay_seconds < 0:
            errors.append("migration.retry_delay_seconds must be >= 0")
        if not self.archive.storage_class:
            errors.append("archive.storage_class must not be empty")
        if errors:
            raise ConfigurationError(
                "Configuration validation failed:\n"
                + "\n".join(f"  - {e}" for e in errors)
            )


@dataclass(frozen=True)
class EngineSettings:
    """Everything the migration core needs, resolved once at startup."""

    base_folder_id: str
    bucket: str
    region: str
    db_path: Path
    temp_dir: Path
    storage_class: str = "DEEP_ARCHIVE"
    key_prefix: str = ""
    concurrency: int = 1
    max_passes: int = 10
    retry_attempts: int = 3
    retry_delay_seconds: float = 5
    check_only: bool = False
    skip_ids: FrozenSet[str] = frozenset()


def config_to_dict(config: Config) -> dict:
    return asdict(config)


def config_from_dict(data: dict) -> Config:
    gd_defaults = GoogleDriveConfig()
    gd_data = data.get("google_drive", {})
    google_drive = GoogleDriveConfig(
        base_folder_id=gd_data.get("base_folder_id", gd_defaults.base_folder_id),
        credentials_path=gd_data.get("credentials_path", gd_defaults.credentials_path),
        token_path=gd_data.get("token_path", gd_defaults.token_path),
        service_account_path=gd_data.get(
            "service_account_path", gd_defaults.service_account_path
        ),
    )

    archive_defaults = ArchiveConfig()
    archive_data = data.get("archive", {})
    archive = ArchiveConfig(
        bucket=archive_data.get("bucket", archive_defaults.bucket),
        region=archive_data.get("region", archive_defaults.region),
        storage_class=archive_data.get("storage_class", archive_defaults.storage_class),
        key_prefix=archive_data.get("key_prefix", archive_defaults.key_prefix),
        profile=archive_data.get("profile", archive_defaults.profile),
    )

    mig_defaults = MigrationConfig()
    mig_data = data.get("migration", {})
    migration = MigrationConfig(
        db_path=mig_data.get("db_path", mig_defaults.db_path),
        temp_dir=mig_data.get("temp_dir", mig_defaults.temp_dir),
        concurrency=mig_data.get("concurrency", mig_defaults.concurrency),
        max_passes=mig_data.get("max_passes", mig_defaults.max_passes),
        retry_attempts=mig_data.get("retry_attempts", mig_defaults.retry_attempts),
        retry_delay_seconds=mig_data.get(
            "retry_delay_seconds", mig_defaults.retry_delay_seconds
        ),
    )

    return Config(google_drive=google_drive, archive=archive, migration=migration)


def parse_skip_ids(values: Iterable[str]) -> FrozenSet[str]:
    """Flatten repeated and comma-separated ``--skip`` values."""
    return frozenset(
        part.strip() for value in values for part in value.split(",") if part.strip()
    )


def build_settings(
    config: Config,
    db_path: Optional[str] = None,
    temp_dir: Optional[str] = None,
    concurrency: Optional[int] = None,
    max_passes: Optional[int] = None,
    check_only: bool = False,
    skip_ids: Iterable[str] = (),
) -> EngineSettings:
    if not config.google_drive.base_folder_id:
        raise ConfigurationError(
            "google_drive.base_folder_id is not set",
            config_key="google_drive.base_folder_id",
        )
    if not config.archive.bucket:
        raise ConfigurationError(
            "archive.bucket is not set", config_key="archive.bucket"
        )

    settings = EngineSettings(
        base_folder_id=config.google_drive.base_folder_id,
        bucket=config.archive.bucket,
        region=config.archive.region,
        storage_class=config.archive.storage_class,
        key_prefix=config.archive.key_prefix,
        db_path=Path(db_path or config.migration.db_path).expanduser(),
        temp_dir=Path(temp_dir or config.migration.temp_dir).expanduser(),
        concurrency=concurrency or config.migration.concurrency,
        max_passes=max_passes or config.migration.max_passes,
        retry_attempts=config.migration.retry_attempts,
        retry_delay_seconds=config.migration.retry_delay_seconds,
        check_only=check_only,
        skip_ids=frozenset(skip_ids),
    )
    if settings.concurrency <= 0:
        raise ConfigurationError("concurrency must be > 0", config_key="concurrency")
    if settings.max_passes <= 0:
        raise ConfigurationError("max_passes must be > 0", config_key="max_passes")
    return settings


class ConfigManager:
    """Manages configuration loading, saving, and access for deep-freeze."""

    DEFAULT_CONFIG_DIR = Path(DEFAULT_HOME).expanduser()
    DEFAULT_CONFIG_FILE = "config.json"

    def __init__(self, config_path: Optional[Path] = None) -> None:
        self._config_path = config_path or (
            self.DEFAULT_CONFIG_DIR / self.DEFAULT_CONFIG_FILE
        )
        self._config: Optional[Config] = None

    @property
    def config_path(self) -> Path:
        return self._config_path

    @property
    def config(self) -> Config:
        if self._config is None:
            self._config = Config()
        return self._config

    def ensure_config_dir(self) -> None:
        self._config_path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Config:
        if not self._config_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self._config_path}\n"
                "Run 'deep-freeze config' to create one."
            )

        try:
            raw = self._config_path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Failed to read configuration file: {e}") from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigurationError(
                f"Invalid JSON in configuration file {self._config_path}: {e}"
            ) from e

        self._config = config_from_dict(data)
        self._apply_env_overrides()
        self._config.validate()
        logger.info("Configuration loaded from %s", self._config_path)
        return self._config

    def _apply_env_overrides(self) -> None:
        for env_name, key in ENV_OVERRIDES:
            value = os.environ.get(env_name)
            if value:
                self.set(key, value)
                logger.debug("Overriding %s from %s environment variable", key, env_name)

    def save(self) -> None:
        self.ensure_config_dir()
        if self._config is None:
            self._config = Config()
        data = config_to_dict(self._config)
        try:
            self._config_path.write_text(
                json.dumps(data, indent=2) + "\n", encoding="utf-8"
            )
        except OSError as e:
            raise ConfigurationError(f"Failed to write configuration file: {e}") from e
        logger.info("Configuration saved to %s", self._config_path)

    def get(self, key: str, default: Any = None) -> Any:
        if self._config is None:
            try:
                self.load()
            except ConfigurationError:
                self._config = Config()
        obj: Any = self._config
        for segment in key.split("."):
            if not hasattr(obj, segment):
                return default
            obj = getattr(obj, segment)
        return obj

    def set(self, key: str, value: Any) -> None:
        if self._config is None:
            self._config = Config()

        segments = key.split(".")
        obj: Any = self._config
        for segment in segments[:-1]:
            if not hasattr(obj, segment):
                raise ConfigurationError(
                    f"Invalid configuration key: {key} "
                    f"(unknown segment '{segment}')",
                    config_key=key,
                )
            obj = getattr(obj, segment)

        final = segments[-1]
        if not hasattr(obj, final):
            raise ConfigurationError(
                f"Invalid configuration key: {key} (unknown segment '{final}')",
                config_key=key,
            )
        current = getattr(obj, final)
        if isinstance(current, int) and not isinstance(current, bool):
            try:
                value = int(value)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(
                    f"Invalid integer for {key}: {value!r}", config_key=key
                ) from e
        setattr(obj, final, value)

    def get_or_prompt(self, key: str, prompt_text: str) -> str:
        existing = self.get(key)
        if existing not in (None, ""):
            value = click.prompt(prompt_text, default=existing)
        else:
            value = click.prompt(prompt_text, default="", show_default=False)
        self.set(key, value)
        return str(value)

    def exists(self) -> bool:
        return self._config_path.exists()
