"""
Pricing table loading.

Builds PricingTable objects from a YAML rules file or a LiteLLM
``model_prices_and_context_window.json`` price sheet.
"""

import json
import logging
import urllib.error
import urllib.request
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ai_usage_scanner.core.pricing import (
    DEFAULT_PRICING_TABLE,
    TIERED_THRESHOLD,
    PricingRule,
    PricingTable,
    PricingTier,
)

from .loader import ScannerConfig

logger = logging.getLogger(__name__)

LITELLM_PRICES_URL = (
    "https://raw.githubusercontent.com/BerriAI/litellm/main/"
    "model_prices_and_context_window.json"
)

_RATE_KEYS = ('input_cost_per_1k', 'output_cost_per_1k', 'cache_read_cost_per_1k', 'cache_write_cost_per_1k')
_REQUIRED_RATE_KEYS = ('input_cost_per_1k', 'output_cost_per_1k')

# LiteLLM per-token field names for base and long-context rates
_LITELLM_KEYS = {
    'input_cost_per_1k': ('input_cost_per_token', 'input_cost_per_token_above_200k_tokens'),
    'output_cost_per_1k': ('output_cost_per_token', 'output_cost_per_token_above_200k_tokens'),
    'cache_read_cost_per_1k': ('cache_read_input_token_cost', 'cache_read_input_token_cost_above_200k_tokens'),
    'cache_write_cost_per_1k': ('cache_creation_input_token_cost', 'cache_creation_input_token_cost_above_200k_tokens'),
}


def load_pricing_file(path: str) -> PricingTable:
    """Load and validate pricing rules from a YAML file.

    Expected layout::

        models:
          claude-sonnet-4*:
            tiers:
              - threshold_tokens: 0
                input_cost_per_1k: 0.003
                output_cost_per_1k: 0.015
          my-model:
            input_cost_per_1k: 0.001
            output_cost_per_1k: 0.002

    A model entry is either a list of tiers or a single set of flat
    rates. Rates are USD per 1K tokens.

    Raises:
        FileNotFoundError: If the file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If a rule is invalid
    """
    pricing_path = Path(path)
    if not pricing_path.exists():
        raise FileNotFoundError(f"Pricing file not found: {path}")

    with open(pricing_path, 'r', encoding='utf-8') as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in pricing file {path}: {e}")

    if not isinstance(raw, dict):
        raise ValueError("Pricing file must be a dictionary")
    unknown_keys = set(raw.keys()) - {'models'}
    if unknown_keys:
        raise ValueError(f"Unknown pricing keys: {unknown_keys}")

    models = raw.get('models')
    if not isinstance(models, dict) or not models:
        raise ValueError("Pricing file needs a non-empty 'models' dictionary")

    rules = []
    for pattern, rule_data in models.items():
        if not isinstance(rule_data, dict):
            raise ValueError(f"Pricing for '{pattern}' must be a dictionary")
        rules.append(_parse_rule(str(pattern), rule_data))
    return PricingTable.from_rules(rules)


def _parse_rule(pattern: str, data: Dict) -> PricingRule:
    if 'tiers' in data:
        unknown_keys = set(data.keys()) - {'tiers'}
        if unknown_keys:
            raise ValueError(f"Unknown keys in models.{pattern}: {unknown_keys}")
        tiers_data = data['tiers']
        if not isinstance(tiers_data, list) or not tiers_data:
            raise ValueError(f"'tiers' in models.{pattern} must be a non-empty list")
        tiers = []
        for index, tier_data in enumerate(tiers_data):
            if not isinstance(tier_data, dict):
                raise ValueError(f"models.{pattern}.tiers[{index}] must be a dictionary")
            tiers.append(_parse_tier(tier_data, f"models.{pattern}.tiers[{index}]"))
        tiers.sort(key=lambda tier: tier.threshold_tokens)
    else:
        tiers = [_parse_tier(dict(data, threshold_tokens=0), f"models.{pattern}")]
    return PricingRule(pattern, tuple(tiers))


def _parse_tier(data: Dict, path: str) -> PricingTier:
    allowed_keys = set(_RATE_KEYS) | {'threshold_tokens'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    threshold = data.get('threshold_tokens', 0)
    if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 0:
        raise ValueError(f"'threshold_tokens' in {path} must be an integer >= 0")

    for key in _REQUIRED_RATE_KEYS:
        if key not in data:
            raise ValueError(f"Missing required '{key}' in {path}")

    rates = {key: _decimal(data.get(key, 0), key, path) for key in _RATE_KEYS}
    return PricingTier(threshold_tokens=threshold, **rates)


def _decimal(value: Any, key: str, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{key}' in {path} must be a number")
    try:
        # str() keeps floats like 0.003 exact
        rate = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{key}' in {path} must be a number")
    if not rate.is_finite() or rate < 0:
        raise ValueError(f"'{key}' in {path} must be >= 0")
    return rate


def parse_litellm_prices(data: Dict[str, Any]) -> PricingTable:
    """Convert a LiteLLM price sheet into a pricing table.

    Entries without an input or output price are skipped. When a model
    has ``*_above_200k_tokens`` prices a second tier starting at
    200,000 input tokens is added; any long-context rate the sheet omits
    keeps the base rate.
    """
    rules: List[PricingRule] = []
    for model, entry in data.items():
        if not isinstance(entry, dict):
            continue
        base = {name: _per_token_rate(entry.get(keys[0])) for name, keys in _LITELLM_KEYS.items()}
        if not base['input_cost_per_1k'] and not base['output_cost_per_1k']:
            continue
        above = {name: _per_token_rate(entry.get(keys[1])) for name, keys in _LITELLM_KEYS.items()}

        tiers = [PricingTier(threshold_tokens=0, **base)]
        if any(above.values()):
            tiers.append(PricingTier(
                threshold_tokens=TIERED_THRESHOLD,
                **{name: above[name] or base[name] for name in base}
            ))
        rules.append(PricingRule(model, tuple(tiers)))
    return PricingTable.from_rules(rules)


def _per_token_rate(value: Any) -> Decimal:
    """Per-token price from LiteLLM as a per-1K Decimal (0 when missing or invalid)."""
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return Decimal(0)
    try:
        rate = Decimal(str(value))
    except InvalidOperation:
        return Decimal(0)
    if not rate.is_finite() or rate < 0:
        return Decimal(0)
    return rate * 1000


def load_litellm_pricing(path: str) -> PricingTable:
    """Load a LiteLLM price sheet saved on disk."""
    with open(path, 'r', encoding='utf-8') as f:
        try:
            data = json.load(f)
        except ValueError as e:
            raise ValueError(f"Invalid JSON in LiteLLM price sheet {path}: {e}")
    if not isinstance(data, dict):
        raise ValueError(f"LiteLLM price sheet {path} must be a JSON object")
    return parse_litellm_prices(data)


def fetch_litellm_pricing(url: str = LITELLM_PRICES_URL, timeout: float = 10.0) -> Optional[PricingTable]:
    """Download the LiteLLM price sheet.

    Returns None (and logs a warning) when the download or decoding
    fails, so callers can fall back to the built-in table.
    """
    req = urllib.request.Request(url, headers={"User-Agent": "ai-usage-scanner/0.1"})
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            data = json.loads(resp.read().decode("utf-8"))
    except (urllib.error.URLError, OSError, ValueError) as e:
        logger.warning("Failed to fetch LiteLLM pricing: %s", e)
        return None
    if not isinstance(data, dict):
        logger.warning("Unexpected LiteLLM pricing payload from %s", url)
        return None
    return parse_litellm_prices(data)


def build_pricing_table(config: ScannerConfig) -> PricingTable:
    """Assemble the pricing table a scanner should use.

    Later sources override earlier ones: built-in defaults, then the
    LiteLLM sheet, then the YAML rules file.
    """
    table = DEFAULT_PRICING_TABLE
    if config.pricing.litellm_file:
        table = table.merged_with(load_litellm_pricing(config.pricing.litellm_file))
    if config.pricing.file:
        table = table.merged_with(load_pricing_file(config.pricing.file))
    return table
