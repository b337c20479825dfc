"""Global configuration for Happenings."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable

DEFAULTS: dict[str, Any] = {
    "timezone": "America/Denver",
    "expansion_window_days": 90,
    "max_occurrences_per_event": 40,
    "rsvp_offer_window_hours": 24,
    "default_slot_offer_window_minutes": 120,
    "default_slot_duration_minutes": 15,
    "code_expires_minutes": 15,
    "max_codes_per_email_per_hour": 3,
    "max_code_attempts": 5,
    "lockout_minutes": 30,
    "rsvp_cancel_token_days": 30,
    "max_invites_per_event": 200,
    "invite_expiry_days": 30,
    "offer_sweep_minutes": 15,
    "verification_retention_days": 7,
    "sqlite_vacuum_hours": 12,
    "enable_scheduler": True,
    "site_url": "http://localhost:8000",
    "token_secret": "",
    "smtp_host": "",
    "smtp_port": 587,
    "smtp_username": "",
    "smtp_password": "",
    "mail_from": "Happenings <no-reply@localhost>",
    "app_host": "0.0.0.0",
    "app_port": 8000,
    "seed_members": 12,
    "seed_events": 4,
}

TYPE_CASTERS: dict[str, Callable[[Any], Any]] = {
    "timezone": str,
    "expansion_window_days": int,
    "max_occurrences_per_event": int,
    "rsvp_offer_window_hours": int,
    "default_slot_offer_window_minutes": int,
    "default_slot_duration_minutes": int,
    "code_expires_minutes": int,
    "max_codes_per_email_per_hour": int,
    "max_code_attempts": int,
    "lockout_minutes": int,
    "rsvp_cancel_token_days": int,
    "max_invites_per_event": int,
    "invite_expiry_days": int,
    "offer_sweep_minutes": int,
    "verification_retention_days": int,
    "sqlite_vacuum_hours": int,
    "enable_scheduler": bool,
    "site_url": str,
    "token_secret": str,
    "smtp_host": str,
    "smtp_port": int,
    "smtp_username": str,
    "smtp_password": str,
    "mail_from": str,
    "app_host": str,
    "app_port": int,
    "seed_members": int,
    "seed_events": int,
}

# Values never echoed back by `happenings config --show`.
SECRET_KEYS = {"token_secret", "smtp_password"}


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    data_dir: Path
    database_path: Path
    config_path: Path
    root_token_key: str
    token_secret_key: str
    timezone: str
    expansion_window_days: int
    max_occurrences_per_event: int
    rsvp_offer_window_hours: int
    default_slot_offer_window_minutes: int
    default_slot_duration_minutes: int
    code_expires_minutes: int
    max_codes_per_email_per_hour: int
    max_code_attempts: int
    lockout_minutes: int
    rsvp_cancel_token_days: int
    max_invites_per_event: int
    invite_expiry_days: int
    offer_sweep_minutes: int
    verification_retention_days: int
    sqlite_vacuum_hours: int
    enable_scheduler: bool
    site_url: str
    token_secret: str
    smtp_host: str
    smtp_port: int
    smtp_username: str
    smtp_password: str
    mail_from: str
    app_host: str
    app_port: int
    seed_members: int
    seed_events: int

    @property
    def rsvp_offer_window(self) -> timedelta:
        return timedelta(hours=self.rsvp_offer_window_hours)

    @property
    def code_lifetime(self) -> timedelta:
        return timedelta(minutes=self.code_expires_minutes)

    @property
    def lockout(self) -> timedelta:
        return timedelta(minutes=self.lockout_minutes)

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host)


def _boolify(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"Cannot parse boolean value from {value!r}")


def _cast_value(key: str, value: Any) -> Any:
    if key not in TYPE_CASTERS:
        return value
    caster = TYPE_CASTERS[key]
    if caster is bool:
        return _boolify(value)
    return caster(value)


def _load_toml_config(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    with config_path.open("rb") as handle:
        return tomllib.load(handle)


def _config_layered_value(key: str, *, toml_config: dict[str, Any]) -> Any:
    env_key = f"HAPPENINGS_{key.upper()}"
    if env_key in os.environ:
        return _cast_value(key, os.environ[env_key])
    if key in toml_config:
        return _cast_value(key, toml_config[key])
    return DEFAULTS[key]


def _resolve_paths(
    *,
    base_dir: Path,
    data_dir: str | Path | None,
    database_path: str | Path | None,
):
    resolved_base = Path(base_dir)
    resolved_data = Path(data_dir) if data_dir else resolved_base / "data"
    if not resolved_data.is_absolute():
        resolved_data = resolved_base / resolved_data
    resolved_db = (
        Path(database_path) if database_path else resolved_data / "happenings.db"
    )
    if not resolved_db.is_absolute():
        resolved_db = resolved_base / resolved_db
    return resolved_base, resolved_data, resolved_db


def load_settings(config_override: Path | None = None) -> Settings:
    base_dir = Path(os.getenv("HAPPENINGS_BASE_DIR", Path.cwd()))
    env_config = os.getenv("HAPPENINGS_CONFIG")
    config_path = Path(config_override or env_config or base_dir / "happenings.toml")
    toml_config = _load_toml_config(config_path)

    base_dir_value, data_dir_value, database_path_value = _resolve_paths(
        base_dir=base_dir,
        data_dir=os.getenv("HAPPENINGS_DATA_DIR", toml_config.get("data_dir")),
        database_path=os.getenv("HAPPENINGS_DB", toml_config.get("database_path")),
    )

    layered = {
        key: _config_layered_value(key, toml_config=toml_config) for key in DEFAULTS
    }
    settings = Settings(
        base_dir=base_dir_value,
        data_dir=data_dir_value,
        database_path=database_path_value,
        config_path=config_path,
        root_token_key="root_admin_token",
        token_secret_key="token_secret",
        **layered,
    )
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    return settings


def settings_as_dict(settings: Settings, *, include_secrets: bool = False) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "base_dir": str(settings.base_dir),
        "data_dir": str(settings.data_dir),
        "database_path": str(settings.database_path),
    }
    for key in DEFAULTS:
        value = getattr(settings, key)
        if key in SECRET_KEYS and value and not include_secrets:
            value = "********"
        payload[key] = value
    return payload


def _toml_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def write_config_file(config: dict[str, Any], *, path: Path) -> None:
    lines = ["# Happenings configuration\n"]
    for key in sorted(config.keys()):
        lines.append(f"{key} = {_toml_literal(config[key])}\n")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(lines), encoding="utf-8")


def update_config_file(updates: dict[str, Any], *, path: Path | None = None) -> Settings:
    current_settings = settings if "settings" in globals() else load_settings()
    target_path = path or current_settings.config_path
    merged = {**_load_toml_config(target_path)}
    for key, value in updates.items():
        if key not in DEFAULTS:
            continue
        merged[key] = _cast_value(key, value)
    write_config_file(merged, path=target_path)
    new_settings = load_settings(target_path)
    globals()["settings"] = new_settings
    return new_settings


settings = load_settings()
