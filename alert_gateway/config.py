from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Mapping

from dotenv import dotenv_values

from .routing import DEFAULT_PREFERRED_INDEX, TeamPolicy

DEFAULT_TOKEN_BASE_DIR = "/apps/sysdig/data-save/scripts/.token"
DEFAULT_TEMPLATES_DIR = "templates"


class ConfigError(RuntimeError):
    pass


def uniq(items: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        out.append(item)
    return out


def normalize_tags(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        values = [raw]
    elif isinstance(raw, list):
        values = [str(v) for v in raw]
    else:
        values = [str(raw)]

    merged: list[str] = []
    for value in values:
        for token in value.split(","):
            normalized = token.strip()
            if normalized:
                merged.append(normalized)
    return uniq(merged)


def parse_int(raw: Any, fallback: int, field: str) -> int:
    if raw is None or not str(raw).strip():
        return fallback
    try:
        return int(str(raw).strip())
    except ValueError as exc:
        raise ConfigError(f"{field} must be an integer, got {raw!r}") from exc


def parse_positive_int(raw: Any, fallback: int, field: str) -> int:
    value = parse_int(raw, fallback, field)
    if value <= 0:
        raise ConfigError(f"{field} must be positive, got {value}")
    return value


def parse_positive_float(raw: Any, fallback: float, field: str) -> float:
    if raw is None or not str(raw).strip():
        return fallback
    try:
        value = float(str(raw).strip())
    except ValueError as exc:
        raise ConfigError(f"{field} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{field} must be positive, got {value}")
    return value


def parse_team_policy(raw: Any) -> TeamPolicy:
    value = str(raw or TeamPolicy.ENVIRONMENT.value).strip().lower()
    try:
        return TeamPolicy(value)
    except ValueError as exc:
        choices = "|".join(policy.value for policy in TeamPolicy)
        raise ConfigError(f"TEAM_POLICY must be one of {choices}, got {value!r}") from exc


def parse_apprise_urls(raw: Any) -> list[dict[str, Any]]:
    if not raw:
        return []

    if not isinstance(raw, str):
        raise ConfigError("APPRISE_URLS_JSON must be a JSON string")

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"APPRISE_URLS_JSON is invalid JSON: {exc}") from exc

    if not isinstance(data, list):
        raise ConfigError("APPRISE_URLS_JSON must decode to an array")

    results: list[dict[str, Any]] = []
    for entry in data:
        if not isinstance(entry, dict):
            continue
        url = str(entry.get("url") or "").strip()
        if not url:
            continue
        tags = normalize_tags(entry.get("tags"))
        results.append({"url": url, "tags": tags})

    return results


def load_export_file(path: str) -> dict[str, str]:
    """Read ``export KEY=VALUE`` lines from a shell variables file.

    Nothing is written to the process environment. Keys without a value are
    dropped.
    """
    if not os.path.isfile(path):
        raise ConfigError(f"cannot read VARS_FILE {path}: not a file")
    try:
        values = dotenv_values(path, interpolate=False, encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read VARS_FILE {path}: {exc.strerror or exc}") from exc

    return {key: value for key, value in values.items() if value is not None}


@dataclass(frozen=True)
class AppConfig:
    port: int
    sdc_url: str
    sdc_timeout_seconds: float
    token_base_dir: str
    templates_dir: str
    default_team_index: int
    team_policy: TeamPolicy
    preferred_team_index: int
    gateway_token: str
    apprise_urls: list[dict[str, Any]]
    log_level: str


def load_config_from_env(env: Mapping[str, str]) -> AppConfig:
    merged: dict[str, str] = dict(env)
    vars_file = (env.get("VARS_FILE") or "").strip()
    if vars_file:
        merged.update(load_export_file(vars_file))

    config = AppConfig(
        port=parse_positive_int(merged.get("PORT"), 8080, "PORT"),
        sdc_url=(merged.get("SDC_URL") or "").strip(),
        sdc_timeout_seconds=parse_positive_float(merged.get("SDC_TIMEOUT_SECONDS"), 25.0, "SDC_TIMEOUT_SECONDS"),
        token_base_dir=(merged.get("TOKEN_BASE_DIR") or "").strip() or DEFAULT_TOKEN_BASE_DIR,
        templates_dir=(merged.get("TEMPLATES_DIR") or "").strip() or DEFAULT_TEMPLATES_DIR,
        default_team_index=parse_int(merged.get("DEFAULT_TEAM_INDEX"), 0, "DEFAULT_TEAM_INDEX"),
        team_policy=parse_team_policy(merged.get("TEAM_POLICY")),
        preferred_team_index=parse_int(
            merged.get("PREFERRED_TEAM_INDEX"), DEFAULT_PREFERRED_INDEX, "PREFERRED_TEAM_INDEX"
        ),
        gateway_token=(merged.get("GATEWAY_TOKEN") or "").strip(),
        apprise_urls=parse_apprise_urls(merged.get("APPRISE_URLS_JSON")),
        log_level=(merged.get("LOG_LEVEL") or "INFO").strip().upper() or "INFO",
    )

    if not config.sdc_url:
        raise ConfigError("SDC_URL is required")

    if not os.path.isdir(config.token_base_dir):
        raise ConfigError(f"TOKEN_BASE_DIR is not a directory: {config.token_base_dir}")

    return config
