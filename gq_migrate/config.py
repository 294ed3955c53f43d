import os
import tomllib
import uuid
from pathlib import Path
from typing import List, Literal, Optional
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from .database.migrations.keys import DEFAULT_NAMESPACE, KeyGenerator, get_key_generator

# Load environment variables from .env file
load_dotenv()

# --- Defaults ---
DEFAULT_CONFIG_PATH = Path(os.getenv("GQ_CONFIG", "config.toml"))
DEFAULT_DATABASE_PATH = Path("data") / "gq.db"
# --- End Defaults ---


class ConfigError(ValueError):
    """Configuration file missing, unreadable or invalid."""

    exit_code = 2


class DatabaseConfig(BaseModel):
    # Full SQLAlchemy URL; takes precedence over path/memory
    url: Optional[str] = None
    path: Optional[Path] = None
    memory: bool = False
    busy_timeout: float = Field(30.0, gt=0)

    def resolved_url(self) -> str:
        if self.url:
            return self.url
        if self.memory:
            return "sqlite://"
        return f"sqlite:///{self.path or DEFAULT_DATABASE_PATH}"


class MigrationsConfig(BaseModel):
    # None means the units bundled with the package
    directory: Optional[Path] = None
    lock_timeout: float = Field(30.0, ge=0)
    lock_poll_interval: float = Field(0.25, gt=0)
    id_strategy: Literal["random", "deterministic"] = "random"
    id_namespace: uuid.UUID = DEFAULT_NAMESPACE
    verify_checksums: bool = True


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: Literal["compact", "pretty"] = "compact"
    # "logger.name=LEVEL" directives
    filters: List[str] = Field(default_factory=list)

    @field_validator("level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @field_validator("filters")
    @classmethod
    def _check_filters(cls, value: List[str]) -> List[str]:
        for directive in value:
            name, sep, level = directive.partition("=")
            if not sep or not name.strip() or not level.strip():
                raise ValueError(f"Invalid logging filter '{directive}', expected 'logger=LEVEL'")
        return value


class Config(BaseModel):
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    migrations: MigrationsConfig = Field(default_factory=MigrationsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def _env_overrides(data: dict) -> dict:
    """Apply GQ_* / LOG_LEVEL environment variables on top of the file contents."""
    database = dict(data.get("database", {}))
    migrations = dict(data.get("migrations", {}))
    logging_section = dict(data.get("logging", {}))

    if url := os.getenv("GQ_DATABASE_URL"):
        database["url"] = url
    if directory := os.getenv("GQ_MIGRATIONS_DIR"):
        migrations["directory"] = directory
    if timeout := os.getenv("GQ_LOCK_TIMEOUT"):
        migrations["lock_timeout"] = timeout
    if strategy := os.getenv("GQ_ID_STRATEGY"):
        migrations["id_strategy"] = strategy
    if level := os.getenv("LOG_LEVEL"):
        logging_section["level"] = level

    return {**data, "database": database, "migrations": migrations, "logging": logging_section}


def load_config(path: Optional[Path] = None) -> Config:
    """
    Load configuration from a TOML file plus environment overrides.

    A missing file is only an error when ``path`` was given explicitly;
    otherwise the defaults are used.
    """
    explicit = path is not None
    path = Path(path) if explicit else DEFAULT_CONFIG_PATH

    data: dict = {}
    if path.exists():
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise ConfigError(f"Cannot read config file {path}: {e}") from e
    elif explicit:
        raise ConfigError(f"Config file not found: {path}")

    try:
        return Config.model_validate(_env_overrides(data))
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {path}:\n{e}") from e


def build_key_generator(config: Config) -> KeyGenerator:
    return get_key_generator(config.migrations.id_strategy, config.migrations.id_namespace)
