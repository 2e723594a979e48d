"""YAML configuration loading for laj3."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Any, Dict, Iterator, List, Literal, Mapping, MutableMapping, Optional, Tuple

import yaml

from .sync.manifest import CHUNK_SIZE
from .sync.server import DEFAULT_MAX_CONNECTIONS, DEFAULT_PORT

DEFAULT_CONFIG_DIR = Path("~/.config/laj3")
CONFIG_DIR_ENV = "LAJ3_CONFIG_DIR"
CONFIG_SUFFIXES = (".yml", ".yaml")

DiagnosticLevel = Literal["info", "warning", "error"]
ConfigurationStatus = Literal["ready", "missing", "invalid"]


SchemaSpec = Dict[str, Any]

PROJECT_KEYS = ("name", "root", "dictionary")

# Value specs accept "min"/"max" (inclusive) and "positive" (strictly > 0).
CONFIG_SCHEMA: SchemaSpec = {
    "logging": {
        "type": dict,
        "schema": {
            "level": {"type": str, "default": "WARNING"},
            "directory": {"type": str, "default": ""},
            "structured": {"type": bool, "default": False},
        },
        "default": {},
    },
    "server": {
        "type": dict,
        "schema": {
            "host": {"type": str, "default": "127.0.0.1"},
            "port": {"type": int, "default": DEFAULT_PORT, "min": 0, "max": 65535},
            "idle_timeout": {"type": (int, float), "default": 60.0, "positive": True},
            "chunk_size": {"type": int, "default": CHUNK_SIZE, "min": 1},
            "max_connections": {"type": int, "default": DEFAULT_MAX_CONNECTIONS, "min": 1},
            "compress": {"type": bool, "default": True},
            "projects": {"type": list, "default_factory": list},
        },
        "default": {},
    },
    "client": {
        "type": dict,
        "schema": {
            "timeout": {"type": (int, float), "default": 30.0, "positive": True},
            "retries": {"type": int, "default": 3, "min": 0},
            "chunk_size": {"type": int, "default": CHUNK_SIZE, "min": 1},
            "delete_removed": {"type": bool, "default": False},
        },
        "default": {},
    },
}


@dataclass
class Diagnostic:
    """Represents a configuration validation or loading issue."""

    level: DiagnosticLevel
    message: str
    source: Optional[Path] = None


@dataclass
class ConfigurationBundle:
    """All configuration data laj3 needs at runtime."""

    status: ConfigurationStatus
    merged: Dict[str, Any] = field(default_factory=dict)
    files_loaded: List[Path] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)

    @property
    def errors(self) -> List[Diagnostic]:
        return [diag for diag in self.diagnostics if diag.level == "error"]


def resolve_config_dir(env: Optional[Mapping[str, str]] = None) -> Path:
    """Resolve the configuration directory from the environment."""

    env_source = os.environ if env is None else env
    raw = env_source.get(CONFIG_DIR_ENV)
    return Path(raw).expanduser() if raw else DEFAULT_CONFIG_DIR.expanduser()


def load_configuration(
    config_file: Optional[Path] = None,
    config_dir: Optional[Path] = None,
) -> ConfigurationBundle:
    """Load schema defaults, the config directory and an explicit config file.

    Later sources override earlier ones; an explicit file wins over the
    directory.
    """

    diagnostics: List[Diagnostic] = []
    merged: Dict[str, Any] = {}
    files_loaded: List[Path] = []
    status: ConfigurationStatus = "ready"

    sources = list(_iter_config_files(config_dir or resolve_config_dir(), diagnostics))
    if config_file is not None:
        if config_file.is_file():
            sources.append(config_file)
        else:
            diagnostics.append(
                Diagnostic(
                    level="error",
                    message=f"Configuration file '{config_file}' does not exist.",
                    source=config_file,
                )
            )
            status = "missing"

    for source in sources:
        content = _load_yaml_file(source, diagnostics)
        if content is not None:
            _deep_merge_dicts(merged, content)
            files_loaded.append(source)

    _validate_section(merged, CONFIG_SCHEMA, "config", diagnostics)
    _validate_projects(merged["server"], diagnostics)

    if status == "ready" and any(diag.level == "error" for diag in diagnostics):
        status = "invalid"

    return ConfigurationBundle(
        status=status,
        merged=merged,
        files_loaded=files_loaded,
        diagnostics=diagnostics,
    )


def _iter_config_files(directory: Path, diagnostics: List[Diagnostic]) -> Iterator[Path]:
    """Yield YAML files of the config directory, ``.yml`` before ``.yaml``."""

    if not directory.exists():
        diagnostics.append(
            Diagnostic(
                level="info",
                message=f"No configuration directory found at '{directory}'.",
                source=directory,
            )
        )
        return
    if not directory.is_dir():
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Configuration path '{directory}' is not a directory.",
                source=directory,
            )
        )
        return

    for suffix in CONFIG_SUFFIXES:
        yield from sorted(directory.glob(f"*{suffix}"))


def _load_yaml_file(yaml_file: Path, diagnostics: List[Diagnostic]) -> Optional[Dict[str, Any]]:
    try:
        content = yaml.safe_load(yaml_file.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Failed to parse '{yaml_file}': {exc}",
                source=yaml_file,
            )
        )
        return None

    if content is None:
        return {}
    if isinstance(content, MutableMapping):
        return dict(content)

    diagnostics.append(
        Diagnostic(
            level="warning",
            message=f"Ignoring '{yaml_file}' because it does not contain a mapping.",
            source=yaml_file,
        )
    )
    return None


def _deep_merge_dicts(dest: MutableMapping[str, Any], source: Mapping[str, Any]) -> None:
    """Recursively merge mapping values; lists and scalars are replaced."""

    for key, value in source.items():
        current = dest.get(key)
        if isinstance(current, MutableMapping) and isinstance(value, Mapping):
            _deep_merge_dicts(current, value)
        else:
            dest[key] = deepcopy(value)


def _default_from_spec(spec: SchemaSpec) -> Any:
    if "default_factory" in spec:
        return spec["default_factory"]()
    return deepcopy(spec.get("default"))


def _type_name(expected: Any) -> str:
    if expected is dict:
        return "a mapping"
    if expected is list:
        return "a list"
    if isinstance(expected, tuple):
        return "a number"
    return f"of type {expected.__name__}"


def _check_value(value: Any, spec: SchemaSpec) -> Optional[str]:
    """Return why ``value`` does not satisfy ``spec``, or ``None``."""

    expected = spec["type"]
    # bool is an int subclass; only accept it where a bool is asked for
    if not isinstance(value, expected) or (isinstance(value, bool) and expected is not bool):
        return f"must be {_type_name(expected)}"
    if "min" in spec and value < spec["min"]:
        return f"must be at least {spec['min']}"
    if "max" in spec and value > spec["max"]:
        return f"must be at most {spec['max']}"
    if spec.get("positive") and value <= 0:
        return "must be greater than 0"
    return None


def _validate_section(
    target: Dict[str, Any],
    schema: SchemaSpec,
    path: str,
    diagnostics: List[Diagnostic],
) -> None:
    """Fill defaults into ``target`` and replace invalid values with them."""

    for key in sorted(set(target) - set(schema), key=str):
        diagnostics.append(
            Diagnostic(
                level="warning",
                message=f"Unknown configuration key '{path}.{key}'.",
            )
        )

    for key, spec in schema.items():
        child_path = f"{path}.{key}"
        if key not in target:
            target[key] = _default_from_spec(spec)

        problem = _check_value(target[key], spec)
        if problem is not None:
            diagnostics.append(
                Diagnostic(
                    level="error",
                    message=f"'{child_path}' {problem}; using the default.",
                )
            )
            target[key] = _default_from_spec(spec)

        if spec["type"] is dict:
            _validate_section(target[key], spec["schema"], child_path, diagnostics)


def _validate_projects(server: Dict[str, Any], diagnostics: List[Diagnostic]) -> None:
    """Keep only projects that are mappings with string name, root and dictionary."""

    valid: List[Dict[str, Any]] = []
    for idx, project in enumerate(server["projects"]):
        where = f"'config.server.projects[{idx}]'"
        if not isinstance(project, dict):
            diagnostics.append(Diagnostic(level="error", message=f"{where} must be a mapping."))
            continue
        missing = [
            key for key in PROJECT_KEYS
            if not isinstance(project.get(key), str) or not project[key]
        ]
        if missing:
            diagnostics.append(
                Diagnostic(
                    level="error",
                    message=f"{where} needs string values for: {', '.join(missing)}.",
                )
            )
            continue
        valid.append(project)
    server["projects"] = valid


__all__ = [
    "ConfigurationBundle",
    "ConfigurationStatus",
    "CONFIG_DIR_ENV",
    "DEFAULT_CONFIG_DIR",
    "Diagnostic",
    "load_configuration",
    "resolve_config_dir",
]
