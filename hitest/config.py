"""YAML configuration for load tests, variable files and -D definitions."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Iterable

import orjson
import yaml

from .exceptions import HitestConfigError
from .logging_config import get_logger
from .models import LoadTestOptions, LoadType, Status

logger = get_logger("config")

_DURATION_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ms|us|µs|ns|s|m|h|d)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
    "d": 86400.0,
}


def parse_duration(value: Any) -> float:
    """Duration in seconds from a number (seconds) or a string like "500ms", "2s", "1m30s".

    Raises ValueError for anything else.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"invalid duration {value!r}")
    s = value.strip()
    if not s:
        raise ValueError("empty duration")
    try:
        return float(s)
    except ValueError:
        pass
    sign = 1.0
    if s[0] in "+-":
        sign = -1.0 if s[0] == "-" else 1.0
        s = s[1:]
    total, pos = 0.0, 0
    for m in _DURATION_RE.finditer(s):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    if pos != len(s) or pos == 0:
        raise ValueError(f"invalid duration {value!r}")
    return sign * total


def _validate_options(c: LoadTestOptions) -> None:
    """Validate LoadTestOptions bounds. Raises HitestConfigError if invalid."""
    if c.type is LoadType.THROUGHPUT and c.rate <= 0:
        raise HitestConfigError("rate must be > 0 in throughput mode")
    if c.type is LoadType.CONCURRENCY and c.concurrency < 1:
        raise HitestConfigError("concurrency must be >= 1 in concurrency mode")
    if c.duration <= 0:
        raise HitestConfigError("duration must be > 0")
    if c.count < 0:
        raise HitestConfigError("count must be >= 0")
    if c.ramp < 0:
        raise HitestConfigError("ramp must be >= 0")
    if c.max_error_rate > 1:
        raise HitestConfigError("max_error_rate must be <= 1 (negative disables)")


def validate_options(options: LoadTestOptions) -> None:
    """Validate LoadTestOptions. Raises HitestConfigError if invalid."""
    _validate_options(options)


def options_from_dict(raw: dict[str, Any]) -> LoadTestOptions:
    """Build validated LoadTestOptions from a plain mapping (defaults for missing keys)."""
    type_str = str(raw.get("type") or LoadType.THROUGHPUT.value).strip().lower()
    try:
        load_type = LoadType(type_str)
    except ValueError:
        raise HitestConfigError(
            f"unknown load test type {type_str!r}",
            context={"allowed": [t.value for t in LoadType]},
        ) from None
    defaults = LoadTestOptions()
    try:
        options = LoadTestOptions(
            type=load_type,
            rate=float(raw.get("rate", defaults.rate)),
            concurrency=int(raw.get("concurrency", defaults.concurrency)),
            duration=parse_duration(raw.get("duration", defaults.duration)),
            count=int(raw.get("count", defaults.count)),
            ramp=parse_duration(raw.get("ramp", defaults.ramp)),
            uniform=bool(raw.get("uniform", defaults.uniform)),
            max_error_rate=float(raw.get("max_error_rate", defaults.max_error_rate)),
            collect_from=Status.parse(str(raw.get("collect_from", defaults.collect_from))),
        )
    except (TypeError, ValueError) as e:
        raise HitestConfigError(f"Invalid config value: {e}", original_error=e) from e
    _validate_options(options)
    return options


def _read_mapping(path: str | Path, what: str) -> dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise HitestConfigError(f"{what} file not found: {path}", context={"path": str(path)})
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        logger.exception("Failed to read %s file", what)
        raise HitestConfigError(
            f"Cannot read {what} file: {e}",
            context={"path": str(path)},
            original_error=e,
        ) from e
    try:
        if p.suffix.lower() == ".json":
            raw = orjson.loads(text)
        else:
            raw = yaml.safe_load(text)
    except (yaml.YAMLError, orjson.JSONDecodeError) as e:
        raise HitestConfigError(
            f"Invalid syntax in {what} file: {e}",
            context={"path": str(path)},
            original_error=e,
        ) from e
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise HitestConfigError(
            f"{what} must be a mapping",
            context={"path": str(path), "actual_type": type(raw).__name__},
        )
    return raw


def load_options(path: str | Path) -> LoadTestOptions:
    """Load load test options from a YAML file.

    Raises:
        HitestConfigError: If file not found, invalid YAML, or validation fails
    """
    raw = _read_mapping(path, "config")
    options = options_from_dict(raw)
    logger.debug("Loaded load options: %s", options)
    return options


def load_variables(path: str | Path) -> dict[str, str]:
    """Read a YAML or JSON mapping of variable names to values (all stringified)."""
    raw = _read_mapping(path, "variables")
    out: dict[str, str] = {}
    for k, v in raw.items():
        if isinstance(v, (dict, list)):
            raise HitestConfigError(f"variable {k!r} must be a scalar", context={"path": str(path)})
        out[str(k)] = "" if v is None else str(v)
    return out


def parse_definitions(defs: Iterable[str] | None) -> dict[str, str]:
    """Parse -D name=value definitions; a later definition of a name wins."""
    out: dict[str, str] = {}
    for s in defs or ():
        name, sep, value = s.partition("=")
        name = name.strip()
        if not sep or not name:
            raise HitestConfigError(f"bad variable definition {s!r}, want name=value")
        out[name] = value
    return out
