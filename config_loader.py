"""
Configuration File Loader
==========================

Reads and writes the engine's settings as YAML or JSON.

    application:
      name: Elite Explorer Journal Engine
    paths:
      journal_dir: ~/Saved Games/Frontier Developments/Elite Dangerous
      data_dir: ~/.elite_explorer        # checkpoints, database, logs
    monitoring:
      poll_slow_seconds: 0.25
      startup_file_count: 15

Paths not given explicitly derive from data_dir. Unknown monitoring keys are
rejected so typos do not silently fall back to defaults.
"""

# ============================================================================
# IMPORTS
# ============================================================================

import yaml
import json
from pathlib import Path
from typing import Optional, Dict, Any, List
from dataclasses import asdict, fields

from dependency_injection import (
    AppConfig,
    PathConfig,
    MonitoringConfig,
    default_data_dir,
    default_journal_dir,
)
from error_handling import ConfigurationError


CONFIG_FILENAME = "explorer_config"
CONFIG_SEARCH_DIRS = (Path.cwd, lambda: Path.home() / ".elite_explorer")
PATH_OVERRIDES = ('checkpoint_path', 'db_path', 'log_path', 'export_dir')


# ============================================================================
# FILE FORMATS
# ============================================================================

def _read_document(path: Path) -> Any:
    text = path.read_text(encoding='utf-8')
    if path.suffix == '.json':
        return json.loads(text)
    return yaml.safe_load(text)


def _write_document(path: Path, data: Dict[str, Any]):
    if path.suffix == '.json':
        text = json.dumps(data, indent=2)
    else:
        text = yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    path.write_text(text, encoding='utf-8')


# ============================================================================
# CLASSES
# ============================================================================

class ConfigLoader:
    """YAML/JSON <-> AppConfig"""

    SUPPORTED_FORMATS = ('.yaml', '.yml', '.json')

    @classmethod
    def load_from_file(cls, filepath: Path) -> AppConfig:
        """
        Raises:
            ConfigurationError: missing file, unknown suffix, unparsable
                content or values that do not fit the config classes
        """
        filepath = Path(filepath)
        where = {"filepath": str(filepath)}

        if not filepath.is_file():
            raise ConfigurationError(f"Configuration file not found: {filepath}", context=where)

        if filepath.suffix not in cls.SUPPORTED_FORMATS:
            raise ConfigurationError(
                f"Unsupported config format '{filepath.suffix}' "
                f"(use one of {', '.join(cls.SUPPORTED_FORMATS)})",
                context=where
            )

        try:
            data = _read_document(filepath)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot parse {filepath.name}: {e}", context=where)

        return cls._dict_to_config(data or {})

    @classmethod
    def _dict_to_config(cls, data: Dict[str, Any]) -> AppConfig:
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Config root must be a mapping, got {type(data).__name__}"
            )

        paths_section = data.get('paths') or {}
        monitoring_section = data.get('monitoring') or {}
        app_section = data.get('application') or {}

        if not all(isinstance(s, dict) for s in (paths_section, monitoring_section, app_section)):
            raise ConfigurationError("Config sections must be mappings")

        unknown = sorted(set(monitoring_section) - {f.name for f in fields(MonitoringConfig)})
        if unknown:
            raise ConfigurationError(
                f"Unknown monitoring settings: {', '.join(unknown)}",
                context={"keys": unknown}
            )

        def as_path(value, fallback) -> Path:
            return Path(value or fallback()).expanduser()

        try:
            paths = PathConfig.under(
                as_path(paths_section.get('data_dir'), default_data_dir),
                as_path(paths_section.get('journal_dir'), default_journal_dir),
            )
            for key in PATH_OVERRIDES:
                if paths_section.get(key):
                    setattr(paths, key, Path(paths_section[key]).expanduser())

            config = AppConfig.create_default()
            config.paths = paths
            config.monitoring = MonitoringConfig(**monitoring_section)
            config.app_name = app_section.get('name', config.app_name)
            config.version = str(app_section.get('version', config.version))
            return config
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid config values: {e}")

    @classmethod
    def save_to_file(cls, config: AppConfig, filepath: Path):
        """Write `config` as YAML, or JSON when the suffix is .json"""
        filepath = Path(filepath)
        try:
            filepath.parent.mkdir(parents=True, exist_ok=True)
            _write_document(filepath, cls._config_to_dict(config))
        except OSError as e:
            raise ConfigurationError(
                f"Cannot write config to {filepath}: {e}",
                context={"filepath": str(filepath)}
            )

    @classmethod
    def _config_to_dict(cls, config: AppConfig) -> Dict[str, Any]:
        return {
            'application': {'name': config.app_name, 'version': config.version},
            'paths': {key: str(value) for key, value in asdict(config.paths).items()},
            'monitoring': asdict(config.monitoring),
        }

    @classmethod
    def find_config_file(cls, search_paths: Optional[List[Path]] = None) -> Optional[Path]:
        """First explorer_config.{yaml,yml,json} in the search directories"""
        if search_paths is None:
            search_paths = [make() for make in CONFIG_SEARCH_DIRS]

        candidates = (
            Path(directory) / f"{CONFIG_FILENAME}{suffix}"
            for directory in search_paths
            for suffix in cls.SUPPORTED_FORMATS
        )
        return next((path for path in candidates if path.is_file()), None)

    @classmethod
    def load_or_default(cls, filepath: Optional[Path] = None) -> AppConfig:
        """Explicit file, else the first one found, else defaults"""
        filepath = filepath or cls.find_config_file()
        if filepath is None:
            return AppConfig.create_default()
        return cls.load_from_file(filepath)


class ConfigValidator:
    """Sanity checks that a loaded config can actually run"""

    POSITIVE_INTERVALS = (
        'poll_fast_seconds',
        'poll_slow_seconds',
        'rotation_check_seconds',
        'snapshot_poll_seconds',
    )

    @classmethod
    def validate(cls, config: AppConfig) -> List[str]:
        """Problems found, as readable strings (empty when valid)"""
        mon = config.monitoring
        problems = []

        if str(config.paths.journal_dir).strip() in ("", "."):
            problems.append("journal_dir must be set")

        problems.extend(
            f"{name} must be positive"
            for name in cls.POSITIVE_INTERVALS
            if getattr(mon, name) <= 0
        )
        if mon.poll_fast_seconds > mon.poll_slow_seconds:
            problems.append("poll_fast_seconds must not exceed poll_slow_seconds")

        for name in ('progress_interval', 'startup_file_count'):
            if getattr(mon, name) <= 0:
                problems.append(f"{name} must be positive")

        if not mon.journal_pattern.strip():
            problems.append("journal_pattern must not be empty")

        return problems
