from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from jsonschema import Draft7Validator

from .models import EventKind
from .utils import validate_url


@dataclass(slots=True)
class ValidationIssue:
    """Represents a single validation problem."""

    severity: str
    path: str
    message: str
    code: str


@dataclass(slots=True)
class ValidationReport:
    """Aggregates validation warnings and errors."""

    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def error(self, path: str, message: str, code: str) -> None:
        self.errors.append(ValidationIssue("error", path, message, code))

    def warning(self, path: str, message: str, code: str) -> None:
        self.warnings.append(ValidationIssue("warning", path, message, code))


_EVENT_KINDS = [kind.value for kind in EventKind]
_POSITIVE_INT = {"type": "integer", "minimum": 1}
_NON_NEGATIVE_NUMBER = {"type": ["number", "integer"], "minimum": 0}

CONFIG_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "settings": {
            "type": "object",
            "properties": {
                "cache_dir": {"type": "string"},
                "detection": {
                    "type": "object",
                    "properties": {
                        "blowout_threshold": _POSITIVE_INT,
                        "close_threshold": {"type": "integer", "minimum": 0},
                    },
                    "additionalProperties": False,
                },
                "delivery": {
                    "type": "object",
                    "properties": {
                        "batch_size": {"type": "integer", "minimum": 1, "maximum": 500},
                        "max_workers": _POSITIVE_INT,
                        "max_retries": {"type": "integer", "minimum": 0},
                        "backoff_seconds": _NON_NEGATIVE_NUMBER,
                        "batch_pause_seconds": _NON_NEGATIVE_NUMBER,
                    },
                    "additionalProperties": False,
                },
                "gateway": {
                    "type": "object",
                    "properties": {
                        "url": {"type": "string"},
                        "token": {"type": "string"},
                        "token_env": {"type": "string"},
                        "timeout": _NON_NEGATIVE_NUMBER,
                        "headers": {"type": "object", "additionalProperties": {"type": "string"}},
                        "use_emoji": {"type": "boolean"},
                    },
                    "additionalProperties": False,
                },
                "sources": {
                    "type": "object",
                    "additionalProperties": {
                        "type": "object",
                        "properties": {
                            "base_url": {"type": "string"},
                            "api_key": {"type": "string"},
                            "api_key_env": {"type": "string"},
                            "timeout": _NON_NEGATIVE_NUMBER,
                        },
                        "additionalProperties": False,
                    },
                },
                "templates": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "required": ["kind", "title", "body"],
                        "properties": {
                            "id": {"type": "string"},
                            "kind": {"type": "string", "enum": _EVENT_KINDS},
                            "sport": {"type": "string"},
                            "title": {"type": "string"},
                            "body": {"type": "string"},
                            "priority": {"type": "integer"},
                        },
                        "additionalProperties": False,
                    },
                },
            },
            "additionalProperties": True,
        },
    },
    "required": ["settings"],
    "additionalProperties": True,
}


def _format_jsonschema_path(path: Sequence[Any]) -> str:
    if not path:
        return "<root>"
    tokens: List[str] = []
    for part in path:
        if isinstance(part, int):
            if tokens:
                tokens[-1] = f"{tokens[-1]}[{part}]"
            else:
                tokens.append(f"[{part}]")
        else:
            tokens.append(str(part))
    return ".".join(tokens) if tokens else "<root>"


def validate_config_data(data: Dict[str, Any]) -> ValidationReport:
    """Validate configuration data against the schema and semantic rules."""
    report = ValidationReport()
    validator = Draft7Validator(CONFIG_SCHEMA)

    errors = sorted(validator.iter_errors(data), key=lambda exc: [str(part) for part in exc.absolute_path])
    for error in errors:
        report.error(_format_jsonschema_path(list(error.absolute_path)), error.message, "schema")

    if report.is_valid:
        _validate_semantics(data, report)
    return report


def _validate_semantics(data: Dict[str, Any], report: ValidationReport) -> None:
    settings = data.get("settings") or {}

    detection = settings.get("detection") or {}
    blowout = detection.get("blowout_threshold", 20)
    close = detection.get("close_threshold", 5)
    if close >= blowout:
        report.error(
            "settings.detection.close_threshold",
            f"close threshold ({close}) must be lower than blowout threshold ({blowout})",
            "thresholds",
        )

    gateway = settings.get("gateway") or {}
    url = gateway.get("url")
    if url is None:
        report.warning("settings.gateway.url", "no push gateway configured; deliveries will only be recorded", "gateway")
    elif not validate_url(url):
        report.error("settings.gateway.url", f"'{url}' is not a valid http(s) URL", "gateway-url")
    _check_secret(report, "settings.gateway", gateway, "token", "token_env")

    for sport, entry in (settings.get("sources") or {}).items():
        base_url = entry.get("base_url")
        if base_url is not None and not validate_url(base_url):
            report.error(f"settings.sources.{sport}.base_url", f"'{base_url}' is not a valid http(s) URL", "source-url")
        _check_secret(report, f"settings.sources.{sport}", entry, "api_key", "api_key_env")

    seen_ids: Dict[str, int] = {}
    for index, template in enumerate(settings.get("templates") or []):
        template_id = template.get("id")
        if not template_id:
            continue
        if template_id in seen_ids:
            report.error(
                f"settings.templates[{index}].id",
                f"duplicate template id '{template_id}' (first defined at index {seen_ids[template_id]})",
                "duplicate-id",
            )
        else:
            seen_ids[template_id] = index


def _check_secret(
    report: ValidationReport,
    path: str,
    entry: Dict[str, Any],
    key: str,
    env_key: str,
) -> None:
    env_name: Optional[str] = entry.get(env_key)
    if env_name and not entry.get(key) and not os.environ.get(env_name):
        report.warning(f"{path}.{env_key}", f"environment variable '{env_name}' is not set", "missing-secret")
