"""Helpers for reading configuration sections and coercing their values."""
from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any, Dict, List


def get_config_section(source: Any, section: str) -> Dict:
    """Return a plain dict section from a Config, a SectionProxy or a dict."""
    if source is None:
        return {}

    getter = getattr(source, 'get', None)
    if callable(getter):
        candidate = getter(section, {})
        if isinstance(candidate, Mapping):
            to_dict = getattr(candidate, 'to_dict', None)
            return dict(to_dict()) if callable(to_dict) else dict(candidate)
    return {}


def require_float(section: Dict, key: str, default: Any = None, *,
                  minimum: float = None, maximum: float = None, name: str = None) -> float:
    """Coerce a config value to float, raising RuntimeError when it cannot be used."""
    label = name or key
    raw = section.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise RuntimeError(f"Invalid configuration value for '{label}': {raw!r}") from exc
    if not math.isfinite(value):
        raise RuntimeError(f"Invalid configuration value for '{label}': {raw!r}")
    if minimum is not None and value < minimum:
        raise RuntimeError(f"Configuration value '{label}' must be >= {minimum}, got {value}")
    if maximum is not None and value > maximum:
        raise RuntimeError(f"Configuration value '{label}' must be <= {maximum}, got {value}")
    return value


def as_list(value: Any) -> List[str]:
    """Accept a YAML list or a comma separated env string."""
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(',') if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


def as_bool(value: Any, default: bool = False) -> bool:
    if value is None or value == '':
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')
