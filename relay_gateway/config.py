from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from relay_gateway.errors import ConfigError
from relay_gateway.topics import TopicRegistry, build_registry

VALID_DELIVERY_MODES = {"sync", "async"}
TRUE_WORDS = {"1", "true", "yes", "on"}
FALSE_WORDS = {"", "0", "false", "no", "off"}


def parse_positive(raw: Any, fallback: int | float, kind: type = int) -> Any:
    """Return raw as a positive ``kind``; unset, unparsable or non-positive values give fallback."""
    if raw is None:
        return fallback
    try:
        value = kind(str(raw).strip())
    except ValueError:
        return fallback
    return value if value > 0 else fallback


def parse_retry_schedule(raw: Any) -> list[int]:
    default = [1000, 2000, 4000]
    if not isinstance(raw, str):
        return default
    if raw.strip().lower() in {"0", "none"}:
        return []
    parsed = [parse_positive(item, 0) for item in raw.split(",")]
    return [delay for delay in parsed if delay] or default


def parse_delivery_mode(raw: Any) -> str:
    value = str(raw or "sync").strip().lower() or "sync"
    if value not in VALID_DELIVERY_MODES:
        raise ConfigError(f"DELIVERY_MODE must be one of sync|async, got {value!r}")
    return value


def parse_flag(raw: Any, name: str) -> bool:
    if raw is None or isinstance(raw, bool):
        return bool(raw)
    value = str(raw).strip().lower()
    if value in TRUE_WORDS:
        return True
    if value in FALSE_WORDS:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def _reject_duplicate_keys(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in pairs:
        if key in out:
            raise ConfigError(f"duplicate key {key!r} in TOPICS_JSON")
        out[key] = value
    return out


def parse_topics_json(raw: Any) -> Any:
    if not isinstance(raw, str):
        raise ConfigError("TOPICS_JSON must be a JSON string")
    try:
        return json.loads(raw, object_pairs_hook=_reject_duplicate_keys)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"TOPICS_JSON is invalid JSON: {exc}") from exc


def read_config_file(path: str | Path) -> dict[str, Any]:
    """Read the TOML document holding ``port``, ``secret`` and ``[topics.<name>]`` tables."""
    try:
        with open(path, "rb") as handle:
            return tomllib.load(handle)
    except OSError as exc:
        raise ConfigError(f"failed to read config file {str(path)!r}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"failed to parse config file {str(path)!r}: {exc}") from exc


@dataclass(frozen=True)
class AppConfig:
    port: int
    secret: str
    topics: TopicRegistry
    retry_schedule_ms: list[int]
    delivery_mode: str
    body_read_timeout_s: float
    max_body_bytes: int
    trust_forwarded_for: bool


def load_config_from_env(env: Mapping[str, str], config_path: str | None = None) -> AppConfig:
    """Assemble AppConfig from the environment and an optional TOML file.

    Environment values win over the file. Any problem raises ConfigError,
    which is meant to stop the process before it serves a request.
    """
    path = config_path or (env.get("GATEWAY_CONFIG") or "").strip()
    document: dict[str, Any] = read_config_file(path) if path else {}

    if env.get("TOPICS_JSON"):
        raw_topics = parse_topics_json(env.get("TOPICS_JSON"))
    elif "topics" in document:
        raw_topics = document["topics"]
    else:
        raise ConfigError("no topics configured: set GATEWAY_CONFIG or TOPICS_JSON")

    secret = (env.get("TG_BOT_TOKEN") or str(document.get("secret") or "")).strip()
    if not secret:
        raise ConfigError("TG_BOT_TOKEN is required")

    config = AppConfig(
        port=parse_positive(env.get("PORT") or document.get("port"), 8080),
        secret=secret,
        topics=build_registry(raw_topics),
        retry_schedule_ms=parse_retry_schedule(env.get("RETRY_SCHEDULE_MS")),
        delivery_mode=parse_delivery_mode(env.get("DELIVERY_MODE")),
        body_read_timeout_s=parse_positive(env.get("BODY_READ_TIMEOUT_S"), 30.0, kind=float),
        max_body_bytes=parse_positive(env.get("MAX_BODY_BYTES"), 50 * 1000 * 1000),
        trust_forwarded_for=parse_flag(env.get("TRUST_FORWARDED_FOR"), "TRUST_FORWARDED_FOR"),
    )

    if config.port > 65535:
        raise ConfigError(f"PORT is out of range: {config.port}")

    return config
