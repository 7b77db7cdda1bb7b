"""
Configuration management and loading.

Handles scanner settings from a YAML file and environment variables.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import yaml

CONFIG_ENV_VAR = "AI_USAGE_SCANNER_CONFIG"
DEFAULT_STATE_PATH = os.path.join("~", ".ai-usage-scanner", "state.db")
DEFAULT_MAX_WORKERS = 4


@dataclass(frozen=True)
class PricingSourceConfig:
    """Where pricing overrides come from."""
    file: Optional[str] = None
    litellm_file: Optional[str] = None


@dataclass(frozen=True)
class ScannerConfig:
    """Complete scanner configuration."""
    state_path: str = DEFAULT_STATE_PATH
    home: Optional[str] = None
    max_workers: int = DEFAULT_MAX_WORKERS
    pricing: PricingSourceConfig = field(default_factory=PricingSourceConfig)

    def __post_init__(self):
        """Validate worker count is positive."""
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")

    @property
    def resolved_state_path(self) -> str:
        return str(Path(self.state_path).expanduser())


def default_config() -> ScannerConfig:
    """Configuration used when no config file is given.

    Honours the AI_USAGE_SCANNER_CONFIG environment variable.
    """
    path = os.environ.get(CONFIG_ENV_VAR)
    if path:
        return load_scanner_config(path)
    return ScannerConfig()


def load_scanner_config(path: str) -> ScannerConfig:
    """Load and validate scanner configuration from YAML file.

    Strict validation ensures no silent misconfiguration, such as a
    misspelled key pointing scans at the wrong state file.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated ScannerConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path).expanduser()
    if not config_path.exists():
        raise FileNotFoundError(f"Scanner config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return ScannerConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'state_path', 'home', 'max_workers', 'pricing'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    state_path = _optional_string(raw_config, 'state_path') or DEFAULT_STATE_PATH
    home = _optional_string(raw_config, 'home')

    max_workers = raw_config.get('max_workers', DEFAULT_MAX_WORKERS)
    if isinstance(max_workers, bool) or not isinstance(max_workers, int) or max_workers < 1:
        raise ValueError("'max_workers' must be an integer >= 1")

    pricing_data = raw_config.get('pricing') or {}
    if not isinstance(pricing_data, dict):
        raise ValueError("'pricing' must be a dictionary")
    pricing = _parse_pricing_sources(pricing_data, base_dir=config_path.parent)

    return ScannerConfig(
        state_path=state_path,
        home=home,
        max_workers=max_workers,
        pricing=pricing,
    )


def _parse_pricing_sources(data: Dict, base_dir: Path) -> PricingSourceConfig:
    """Parse and validate the ``pricing`` section.

    Relative paths are resolved against the config file's directory.
    """
    allowed_keys = {'file', 'litellm_file'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in pricing: {unknown_keys}")

    def _resolve(key: str) -> Optional[str]:
        value = _optional_string(data, key, section="pricing")
        if value is None:
            return None
        resolved = Path(value).expanduser()
        if not resolved.is_absolute():
            resolved = base_dir / resolved
        return str(resolved)

    return PricingSourceConfig(file=_resolve('file'), litellm_file=_resolve('litellm_file'))


def _optional_string(data: Dict, key: str, section: str = "configuration") -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{key}' in {section} must be a non-empty string")
    return value
