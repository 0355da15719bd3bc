from __future__ import annotations

import datetime as dt
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .utils import env_bool, env_int, load_yaml_file, validate_url

DEFAULT_BLOWOUT_THRESHOLD = 20
DEFAULT_CLOSE_THRESHOLD = 5
DEFAULT_BATCH_SIZE = 500


@dataclass(frozen=True)
class DetectionThresholds:
    blowout: int = DEFAULT_BLOWOUT_THRESHOLD
    close: int = DEFAULT_CLOSE_THRESHOLD


@dataclass
class DeliverySettings:
    batch_size: int = DEFAULT_BATCH_SIZE  # gateway ceiling per request
    max_workers: int = 2
    max_retries: int = 3
    backoff_seconds: float = 0.5
    batch_pause_seconds: float = 0.0


@dataclass
class GatewaySettings:
    url: str | None = None
    token: str | None = None
    timeout: float = 10.0
    headers: dict[str, str] = field(default_factory=dict)
    use_emoji: bool = False


@dataclass
class SourceSettings:
    base_url: str = "https://api.balldontlie.io/v1"
    api_key: str | None = None
    timeout: float = 10.0


@dataclass
class TemplateSettings:
    kind: str
    title: str
    body: str
    sport: str = "ALL"
    priority: int = 1
    id: str | None = None


@dataclass
class Settings:
    cache_dir: Path
    detection: DetectionThresholds = field(default_factory=DetectionThresholds)
    delivery: DeliverySettings = field(default_factory=DeliverySettings)
    gateway: GatewaySettings = field(default_factory=GatewaySettings)
    sources: dict[str, SourceSettings] = field(default_factory=dict)
    templates: list[TemplateSettings] = field(default_factory=list)

    @property
    def database_path(self) -> Path:
        return self.cache_dir / "scorewatch.db"


@dataclass
class AppConfig:
    settings: Settings


def parse_time_of_day(value: Any, *, field_name: str) -> dt.time:
    if value is None:
        return dt.time(hour=0, minute=0)
    if isinstance(value, dt.time):
        return value
    if not isinstance(value, str):
        raise ValueError(f"'{field_name}' must be provided as HH:MM or HH:MM:SS")

    parts = value.strip().split(":")
    if len(parts) not in {2, 3}:
        raise ValueError(f"'{field_name}' must be formatted as HH:MM or HH:MM:SS")

    try:
        hour = int(parts[0])
        minute = int(parts[1])
        second = int(parts[2]) if len(parts) == 3 else 0
    except ValueError as exc:  # noqa: PERF203
        raise ValueError(f"'{field_name}' components must be integers") from exc

    if not (0 <= hour <= 23 and 0 <= minute <= 59 and 0 <= second <= 59):
        raise ValueError(f"'{field_name}' contains out-of-range values")

    return dt.time(hour=hour, minute=minute, second=second)


def _positive_int(value: Any, *, field_name: str, minimum: int = 1) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"'{field_name}' must be an integer") from exc
    if parsed < minimum:
        raise ValueError(f"'{field_name}' must be greater than or equal to {minimum}")
    return parsed


def _non_negative_float(value: Any, *, field_name: str) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"'{field_name}' must be a number") from exc
    if parsed < 0:
        raise ValueError(f"'{field_name}' must be greater than or equal to 0")
    return parsed


def _secret_from(entry: dict[str, Any], key: str, env_key: str) -> str | None:
    value = entry.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    env_name = entry.get(env_key)
    if not env_name:
        return None
    raw = os.environ.get(str(env_name).strip())
    return raw.strip() if raw else None


def build_detection_thresholds(data: dict[str, Any] | None) -> DetectionThresholds:
    """Build thresholds from config, then apply EVENT_THRESHOLD_* overrides."""
    data = data or {}
    if not isinstance(data, dict):
        raise ValueError("'detection' must be provided as a mapping when specified")

    blowout = _positive_int(
        data.get("blowout_threshold", DEFAULT_BLOWOUT_THRESHOLD), field_name="detection.blowout_threshold"
    )
    close = _positive_int(
        data.get("close_threshold", DEFAULT_CLOSE_THRESHOLD), field_name="detection.close_threshold", minimum=0
    )

    env_blowout = env_int("EVENT_THRESHOLD_BLOWOUT")
    env_close = env_int("EVENT_THRESHOLD_CLOSE")
    if env_blowout is not None:
        blowout = env_blowout
    if env_close is not None:
        close = env_close

    if close >= blowout:
        raise ValueError("'detection.close_threshold' must be lower than 'detection.blowout_threshold'")
    return DetectionThresholds(blowout=blowout, close=close)


def _build_delivery_settings(data: dict[str, Any]) -> DeliverySettings:
    if not data:
        return DeliverySettings()
    if not isinstance(data, dict):
        raise ValueError("'delivery' must be provided as a mapping when specified")

    return DeliverySettings(
        batch_size=_positive_int(data.get("batch_size", DEFAULT_BATCH_SIZE), field_name="delivery.batch_size"),
        max_workers=_positive_int(data.get("max_workers", 2), field_name="delivery.max_workers"),
        max_retries=_positive_int(data.get("max_retries", 3), field_name="delivery.max_retries", minimum=0),
        backoff_seconds=_non_negative_float(data.get("backoff_seconds", 0.5), field_name="delivery.backoff_seconds"),
        batch_pause_seconds=_non_negative_float(
            data.get("batch_pause_seconds", 0.0), field_name="delivery.batch_pause_seconds"
        ),
    )


def _build_gateway_settings(data: dict[str, Any]) -> GatewaySettings:
    if not isinstance(data, dict):
        raise ValueError("'gateway' must be provided as a mapping when specified")

    url = data.get("url")
    if url is not None and not validate_url(url):
        raise ValueError(f"'gateway.url' is not a valid http(s) URL: {url}")

    headers_raw = data.get("headers", {}) or {}
    if not isinstance(headers_raw, dict):
        raise ValueError("'gateway.headers' must be provided as a mapping when specified")

    use_emoji = bool(data.get("use_emoji", False))
    env_emoji = env_bool("SCOREWATCH_USE_EMOJI")
    if env_emoji is not None:
        use_emoji = env_emoji

    return GatewaySettings(
        url=url,
        token=_secret_from(data, "token", "token_env"),
        timeout=_non_negative_float(data.get("timeout", 10.0), field_name="gateway.timeout"),
        headers={str(k): str(v) for k, v in headers_raw.items()},
        use_emoji=use_emoji,
    )


def _build_source_settings(data: dict[str, Any]) -> dict[str, SourceSettings]:
    if not isinstance(data, dict):
        raise ValueError("'sources' must be provided as a mapping of sport -> settings")

    sources: dict[str, SourceSettings] = {}
    for sport, entry in data.items():
        entry = entry or {}
        if not isinstance(entry, dict):
            raise ValueError(f"'sources.{sport}' must be a mapping")
        defaults = SourceSettings()
        base_url = entry.get("base_url", defaults.base_url)
        if not validate_url(base_url):
            raise ValueError(f"'sources.{sport}.base_url' is not a valid http(s) URL: {base_url}")
        sources[str(sport).strip().lower()] = SourceSettings(
            base_url=base_url,
            api_key=_secret_from(entry, "api_key", "api_key_env"),
            timeout=_non_negative_float(entry.get("timeout", defaults.timeout), field_name=f"sources.{sport}.timeout"),
        )
    return sources


def _build_templates(data: Any) -> list[TemplateSettings]:
    if not data:
        return []
    if not isinstance(data, list):
        raise ValueError("'templates' must be provided as a list when specified")

    templates: list[TemplateSettings] = []
    for index, entry in enumerate(data):
        if not isinstance(entry, dict):
            raise ValueError(f"'templates[{index}]' must be a mapping")
        for required in ("kind", "title", "body"):
            if not isinstance(entry.get(required), str):
                raise ValueError(f"'templates[{index}].{required}' must be a string")
        templates.append(
            TemplateSettings(
                kind=entry["kind"].strip().upper(),
                title=entry["title"],
                body=entry["body"],
                sport=str(entry.get("sport", "ALL")).strip().upper(),
                priority=int(entry.get("priority", 1)),
                id=entry.get("id"),
            )
        )
    return templates


def _build_settings(data: dict[str, Any]) -> Settings:
    if not isinstance(data, dict):
        raise ValueError("'settings' must be provided as a mapping")

    cache_dir = Path(data.get("cache_dir", "/data/scorewatch")).expanduser()
    return Settings(
        cache_dir=cache_dir,
        detection=build_detection_thresholds(data.get("detection")),
        delivery=_build_delivery_settings(data.get("delivery", {}) or {}),
        gateway=_build_gateway_settings(data.get("gateway", {}) or {}),
        sources=_build_source_settings(data.get("sources", {}) or {}),
        templates=_build_templates(data.get("templates")),
    )


def build_config(data: dict[str, Any]) -> AppConfig:
    settings = _build_settings(data.get("settings", {}) or {})
    return AppConfig(settings=settings)


def load_config(path: Path) -> AppConfig:
    return build_config(load_yaml_file(path))
