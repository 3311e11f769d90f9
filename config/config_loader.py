import os
import re
from pathlib import Path
from collections.abc import Mapping
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

load_dotenv()

_ENV_PATTERN = re.compile(r'^\$\{([A-Za-z_][A-Za-z0-9_]*)(?::(.*))?\}$')
DEFAULT_CONFIG_PATH = Path(__file__).parent / 'config.yaml'


def _wrap(value: Any) -> Any:
    return SectionProxy(value) if isinstance(value, dict) else value


def expand_env(node: Any) -> Any:
    """Replace ``${VAR}`` / ``${VAR:default}`` leaves with environment values.

    An unset variable without a default resolves to an empty string.
    """
    if isinstance(node, dict):
        return {key: expand_env(value) for key, value in node.items()}
    if isinstance(node, list):
        return [expand_env(item) for item in node]
    if isinstance(node, str):
        match = _ENV_PATTERN.match(node)
        if match:
            name, default = match.groups()
            return os.getenv(name, '' if default is None else default)
    return node


class SectionProxy(Mapping):
    """Read-only mapping view with attribute access to nested sections."""

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self._data = data or {}

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        try:
            return _wrap(self._data[name])
        except KeyError as exc:
            raise AttributeError(f"Config key '{name}' not found") from exc

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        return _wrap(self._data.get(key, default))

    def to_dict(self) -> Dict[str, Any]:
        return self._data


class Config(SectionProxy):
    """Top-level configuration read from YAML.

    The path comes from the argument, then ``SIGNAL_LEDGER_CONFIG``, then the
    bundled ``config.yaml``.
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path or os.getenv('SIGNAL_LEDGER_CONFIG') or DEFAULT_CONFIG_PATH)
        super().__init__(self._load())

    def _load(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise RuntimeError(f"Configuration file not found at {self.config_path}")
        try:
            raw = yaml.safe_load(self.config_path.read_text()) or {}
        except yaml.YAMLError as exc:
            raise RuntimeError(f"Error parsing YAML configuration: {exc}") from exc
        if not isinstance(raw, dict):
            raise RuntimeError(f"Configuration root must be a mapping: {self.config_path}")
        return expand_env(raw)


config = Config()
