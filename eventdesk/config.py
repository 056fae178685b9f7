"""Global configuration for EventDesk.

Every option is read from three layers, lowest first: the built-in default,
``eventdesk.toml`` (or the file named by ``EVENTDESK_CONFIG``), and an
``EVENTDESK_<OPTION>`` environment variable.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, NamedTuple

ENV_PREFIX = "EVENTDESK_"


class Option(NamedTuple):
    default: Any
    cast: Callable[[Any], Any]
    minimum: float | None = None


OPTIONS: dict[str, Option] = {
    "registration_retry_attempts": Option(5, int, minimum=1),
    "registration_retry_backoff_seconds": Option(0.01, float, minimum=0),
    "bulk_checkin_limit": Option(500, int, minimum=1),
    "registrations_page_limit": Option(500, int, minimum=1),
    "public_search_limit": Option(100, int, minimum=1),
    "interactions_page_limit": Option(100, int, minimum=1),
    "principal_id_header": Option("X-User-Id", str),
    "principal_role_header": Option("X-User-Role", str),
    "seed_events": Option(4, int, minimum=0),
    "seed_participants_per_event": Option(8, int, minimum=0),
    "app_host": Option("0.0.0.0", str),
    "app_port": Option(8000, int, minimum=1),
}

DEFAULTS: dict[str, Any] = {key: option.default for key, option in OPTIONS.items()}


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    data_dir: Path
    database_path: Path
    config_path: Path
    registration_retry_attempts: int
    registration_retry_backoff_seconds: float
    bulk_checkin_limit: int
    registrations_page_limit: int
    public_search_limit: int
    interactions_page_limit: int
    principal_id_header: str
    principal_role_header: str
    seed_events: int
    seed_participants_per_event: int
    app_host: str
    app_port: int


def coerce_option(key: str, raw: Any) -> Any:
    """Cast ``raw`` to the type of option ``key`` and enforce its lower bound."""
    option = OPTIONS[key]
    try:
        value = option.cast(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid value for {key}: {raw!r}") from exc
    if option.minimum is not None and value < option.minimum:
        raise ValueError(f"{key} must be >= {option.minimum:g}")
    return value


def read_config_file(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    with path.open("rb") as handle:
        return tomllib.load(handle)


def _layered(key: str, file_values: dict[str, Any]) -> Any:
    env_value = os.environ.get(ENV_PREFIX + key.upper())
    if env_value is not None:
        return coerce_option(key, env_value)
    if key in file_values:
        return coerce_option(key, file_values[key])
    return OPTIONS[key].default


def _under(base: Path, value: str | Path | None, fallback: Path) -> Path:
    path = Path(value) if value else fallback
    return path if path.is_absolute() else base / path


def load_settings(config_override: Path | None = None) -> Settings:
    base_dir = Path(os.environ.get(f"{ENV_PREFIX}BASE_DIR") or Path.cwd())
    config_path = Path(
        config_override
        or os.environ.get(f"{ENV_PREFIX}CONFIG")
        or base_dir / "eventdesk.toml"
    )
    file_values = read_config_file(config_path)

    data_dir = _under(
        base_dir,
        os.environ.get(f"{ENV_PREFIX}DATA_DIR", file_values.get("data_dir")),
        Path("data"),
    )
    database_path = _under(
        base_dir,
        os.environ.get(f"{ENV_PREFIX}DB", file_values.get("database_path")),
        data_dir / "eventdesk.db",
    )

    loaded = Settings(
        base_dir=base_dir,
        data_dir=data_dir,
        database_path=database_path,
        config_path=config_path,
        **{key: _layered(key, file_values) for key in OPTIONS},
    )
    loaded.data_dir.mkdir(parents=True, exist_ok=True)
    return loaded


def settings_as_dict(current: Settings) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "base_dir": str(current.base_dir),
        "data_dir": str(current.data_dir),
        "database_path": str(current.database_path),
    }
    payload.update({key: getattr(current, key) for key in OPTIONS})
    return payload


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return repr(value)
    return '"' + str(value).replace("\\", "\\\\").replace('"', '\\"') + '"'


def write_config_file(values: dict[str, Any], *, path: Path) -> None:
    body = "".join(f"{key} = {_toml_value(values[key])}\n" for key in sorted(values))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("# EventDesk configuration\n" + body, encoding="utf-8")


def update_config_file(updates: dict[str, Any], *, path: Path | None = None) -> Settings:
    """Persist known options from ``updates`` and reload the module settings.

    Unknown keys are ignored; invalid values raise :class:`ValueError` before
    anything is written.
    """
    global settings
    target = path or settings.config_path
    values = read_config_file(target)
    values.update(
        {key: coerce_option(key, raw) for key, raw in updates.items() if key in OPTIONS}
    )
    write_config_file(values, path=target)
    settings = load_settings(target)
    return settings


settings = load_settings()
