"""Configuration management for the schema-admin CLI."""

import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

import typer
import yaml

from schema_admin.config import Settings
from schema_admin.engine import Engine
from schema_admin.errors import SchemaAdminError

from .output import print_error

ENV_PREFIX = "SCHEMA_ADMIN_"
CONFIG_FILE = Path("schema-admin.yaml")


@dataclass
class CLIConfig:
    """CLI configuration."""

    role: str = "super_admin"
    actor: str | None = None
    grants: list[str] | None = None
    settings: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def load(cls, path: Path | None = None) -> "CLIConfig":
        """Load configuration from file and environment.

        Priority (highest to lowest):
        1. Environment variables (SCHEMA_ADMIN_ROLE, SCHEMA_ADMIN_TABLE_PREFIX, ...)
        2. Config file (./schema-admin.yaml or --config)
        3. Defaults
        """
        config = cls()
        path = Path(path) if path else CONFIG_FILE

        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise ValueError(f"Config file must contain a mapping: {path}")
            config.role = data.pop("role", config.role)
            config.actor = data.pop("actor", None)
            config.grants = data.pop("grants", None)
            config.settings = data

        if env_role := os.environ.get(f"{ENV_PREFIX}ROLE"):
            config.role = env_role
        if env_actor := os.environ.get(f"{ENV_PREFIX}ACTOR"):
            config.actor = env_actor

        return config

    def build_settings(self) -> Settings:
        """Settings from the file values, leaving fields set in the environment to pydantic."""
        overrides = {
            key: value
            for key, value in self.settings.items()
            if f"{ENV_PREFIX}{key.upper()}" not in os.environ
        }
        return Settings(**overrides)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for display."""
        return {
            "role": self.role,
            "actor": self.actor or self.role,
            "grants": self.grants,
            **self.settings,
        }


@contextmanager
def open_engine(config_path: Path | None = None, role: str | None = None) -> Iterator[Engine]:
    """Build an Engine for one command; engine errors exit with code 1."""
    try:
        config = CLIConfig.load(config_path)
        engine = Engine.from_settings(
            config.build_settings(),
            role=role or config.role,
            grants=config.grants,
            actor=config.actor,
        )
    except (SchemaAdminError, ValueError, yaml.YAMLError) as e:
        print_error(str(e))
        raise typer.Exit(1)

    try:
        yield engine
    except SchemaAdminError as e:
        print_error(str(e))
        raise typer.Exit(1)
    finally:
        engine.close()
