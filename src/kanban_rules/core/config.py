"""Configuration loading and validation."""

import json
import hashlib
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError
from .models import ActionRule, ColorRule, RuleSet, ValidationRule


class SchedulerConfig(BaseModel):
    """Periodic (on_stay) dispatch configuration."""
    tick_interval_seconds: float = Field(default=60.0, ge=1.0)
    max_workers: int = Field(default=4, ge=1, le=64)
    dispatch_timeout_seconds: float = Field(default=30.0, gt=0)
    shutdown_grace_seconds: float = Field(default=30.0, ge=0)
    due_batch_limit: int = Field(default=500, ge=1)


class ValidationSettings(BaseModel):
    """Limits applied when validation rules are created."""
    max_validations_per_column: int = Field(default=3, ge=1, le=50)


class StorageConfig(BaseModel):
    """SQLite storage location."""
    database_path: str = Field(default="./data/kanban_rules.db")


class EngineConfig(BaseModel):
    """Main engine configuration."""
    name: str = Field(default="kanban-rules")
    version: str = Field(default="0.1.0")

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    validation: ValidationSettings = Field(default_factory=ValidationSettings)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    # Rule files seeded into the store on startup
    rules_directory: str = Field(default="./config/rules")

    def config_hash(self) -> str:
        """Generate hash of config for change detection."""
        return hashlib.sha256(
            self.model_dump_json().encode()
        ).hexdigest()[:16]


class ConfigLoader:
    """Loads and validates YAML/JSON configurations."""

    def __init__(self, config_dir: str = "./config"):
        self.config_dir = Path(config_dir)
        self._hashes: dict[str, str] = {}

    def load_engine_config(self, path: Optional[str] = None) -> EngineConfig:
        """Load main engine configuration."""
        if path is None:
            path = self.config_dir / "engine.yaml"
        else:
            path = Path(path)

        data = self._load_file(path)
        try:
            return EngineConfig(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid engine config: {e}", config_path=str(path))

    def load_rules(self, directory: Optional[str] = None) -> RuleSet:
        """Load all rule definitions from directory."""
        if directory is None:
            directory = self.config_dir / "rules"
        else:
            directory = Path(directory)

        rule_set = RuleSet()
        if not directory.exists():
            return rule_set

        files = sorted(
            p for p in directory.glob("**/*")
            if p.suffix in (".yaml", ".yml", ".json")
        )
        for file_path in files:
            loaded = self._load_rules_file(file_path)
            rule_set.validations.extend(loaded.validations)
            rule_set.actions.extend(loaded.actions)
            rule_set.color_rules.extend(loaded.color_rules)

        return rule_set

    def has_config_changed(self, path: str) -> bool:
        """Check if a config file has changed since last load."""
        path = Path(path)
        current_hash = self._compute_file_hash(path)
        previous_hash = self._hashes.get(str(path))
        return current_hash != previous_hash

    def _load_file(self, path: Path) -> dict[str, Any]:
        """Load YAML or JSON file."""
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}", config_path=str(path))

        try:
            content = path.read_text()
            self._hashes[str(path)] = hashlib.sha256(content.encode()).hexdigest()[:16]

            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(content) or {}
            elif path.suffix == ".json":
                data = json.loads(content)
            else:
                raise ConfigError(
                    f"Unsupported config format: {path.suffix}",
                    config_path=str(path)
                )
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML: {e}", config_path=str(path))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON: {e}", config_path=str(path))

        if not isinstance(data, dict):
            raise ConfigError("Config root must be a mapping", config_path=str(path))
        return data

    def _load_rules_file(self, path: Path) -> RuleSet:
        """Load rules from a single file."""
        data = self._load_file(path)
        sections = (
            ("validations", ValidationRule),
            ("actions", ActionRule),
            ("color_rules", ColorRule),
        )

        loaded: dict[str, list] = {}
        for key, model in sections:
            entries = data.get(key) or []
            if not isinstance(entries, list):
                raise ConfigError(f"'{key}' must be a list", config_path=str(path))
            try:
                loaded[key] = [model(**entry) for entry in entries]
            except (ValidationError, TypeError) as e:
                raise ConfigError(
                    f"Invalid rule in '{key}': {e}",
                    config_path=str(path)
                )

        return RuleSet(
            validations=loaded["validations"],
            actions=loaded["actions"],
            color_rules=loaded["color_rules"],
        )

    def _compute_file_hash(self, path: Path) -> str:
        """Compute hash of file contents."""
        if not path.exists():
            return ""
        content = path.read_text()
        return hashlib.sha256(content.encode()).hexdigest()[:16]
