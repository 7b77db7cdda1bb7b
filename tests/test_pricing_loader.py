"""
Unit tests for pricing table loading.

Tests the YAML rules file, LiteLLM price sheets and table assembly.
"""

import json
import urllib.error
from decimal import Decimal
from unittest.mock import patch

import pytest
import yaml

from ai_usage_scanner.config.loader import PricingSourceConfig, ScannerConfig
from ai_usage_scanner.config.pricing_loader import (
    build_pricing_table,
    fetch_litellm_pricing,
    load_litellm_pricing,
    load_pricing_file,
    parse_litellm_prices,
)
from ai_usage_scanner.core.pricing import DEFAULT_PRICING_TABLE, TIERED_THRESHOLD, calculate_cost
from ai_usage_scanner.core.token_counter import TokenUsage


def _write_yaml(path, data):
    path.write_text(data if isinstance(data, str) else yaml.dump(data), encoding="utf-8")
    return str(path)


class TestPricingFile:
    """Test YAML pricing rules."""

    def test_flat_rates(self, tmp_path):
        path = _write_yaml(tmp_path / "prices.yaml", {
            "models": {"my-model": {"input_cost_per_1k": 0.001, "output_cost_per_1k": 0.002}},
        })
        table = load_pricing_file(path)

        rule = table.find_rule("my-model")
        assert len(rule.tiers) == 1
        assert rule.tiers[0].input_cost_per_1k == Decimal("0.001")
        assert rule.tiers[0].output_cost_per_1k == Decimal("0.002")
        assert rule.tiers[0].cache_read_cost_per_1k == Decimal(0)

    def test_tiers_are_sorted(self, tmp_path):
        path = _write_yaml(tmp_path / "prices.yaml", {
            "models": {"big-*": {"tiers": [
                {"threshold_tokens": 200000, "input_cost_per_1k": 0.006, "output_cost_per_1k": 0.02},
                {"threshold_tokens": 0, "input_cost_per_1k": 0.003, "output_cost_per_1k": 0.01},
            ]}},
        })
        table = load_pricing_file(path)

        rule = table.find_rule("big-model")
        assert [tier.threshold_tokens for tier in rule.tiers] == [0, 200000]
        result = calculate_cost("big-model", TokenUsage(input_tokens=200000), table)
        assert result.cost == Decimal("1.2")

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_pricing_file(str(tmp_path / "nope.yaml"))

    def test_missing_models(self, tmp_path):
        with pytest.raises(ValueError, match="non-empty 'models'"):
            load_pricing_file(_write_yaml(tmp_path / "prices.yaml", {"models": {}}))

    def test_unknown_rate_key(self, tmp_path):
        path = _write_yaml(tmp_path / "prices.yaml", {
            "models": {"m": {"input_cost_per_1k": 1, "output_cost_per_1k": 1, "reasoning_cost_per_1k": 1}},
        })
        with pytest.raises(ValueError, match="Unknown keys in models.m"):
            load_pricing_file(path)

    def test_missing_required_rate(self, tmp_path):
        path = _write_yaml(tmp_path / "prices.yaml", {"models": {"m": {"input_cost_per_1k": 1}}})
        with pytest.raises(ValueError, match="Missing required 'output_cost_per_1k'"):
            load_pricing_file(path)

    def test_negative_rate(self, tmp_path):
        path = _write_yaml(tmp_path / "prices.yaml", {
            "models": {"m": {"input_cost_per_1k": -1, "output_cost_per_1k": 1}},
        })
        with pytest.raises(ValueError, match="must be >= 0"):
            load_pricing_file(path)

    def test_tiers_must_start_at_zero(self, tmp_path):
        path = _write_yaml(tmp_path / "prices.yaml", {
            "models": {"m": {"tiers": [
                {"threshold_tokens": 1000, "input_cost_per_1k": 1, "output_cost_per_1k": 1},
            ]}},
        })
        with pytest.raises(ValueError, match="must start at 0"):
            load_pricing_file(path)


class TestLiteLLMPrices:
    """Test conversion of LiteLLM per-token prices."""

    SHEET = {
        "sample_spec": {"input_cost_per_token": 0, "output_cost_per_token": 0},
        "claude-sonnet-4-20250514": {
            "input_cost_per_token": 3e-06,
            "output_cost_per_token": 1.5e-05,
            "cache_read_input_token_cost": 3e-07,
            "cache_creation_input_token_cost": 3.75e-06,
            "input_cost_per_token_above_200k_tokens": 6e-06,
            "output_cost_per_token_above_200k_tokens": 2.25e-05,
        },
        "gpt-5": {"input_cost_per_token": 1.25e-06, "output_cost_per_token": 1e-05},
        "embedding-only": {"mode": "embedding"},
        "broken": "not a dict",
    }

    def test_per_token_rates_become_per_1k(self):
        table = parse_litellm_prices(self.SHEET)

        tier = table.find_rule("gpt-5").tiers[0]
        assert tier.input_cost_per_1k == Decimal("0.00125")
        assert tier.output_cost_per_1k == Decimal("0.01")

    def test_unpriced_entries_are_skipped(self):
        table = parse_litellm_prices(self.SHEET)
        assert "sample_spec" not in table.rules
        assert "embedding-only" not in table.rules
        assert "broken" not in table.rules

    def test_long_context_tier(self):
        rule = parse_litellm_prices(self.SHEET).find_rule("claude-sonnet-4-20250514")

        base, upper = rule.tiers
        assert upper.threshold_tokens == TIERED_THRESHOLD
        assert upper.input_cost_per_1k == Decimal("0.006")
        assert upper.output_cost_per_1k == Decimal("0.0225")
        # Rates the sheet omits above 200k keep the base rate
        assert upper.cache_read_cost_per_1k == base.cache_read_cost_per_1k == Decimal("0.0003")
        assert upper.cache_write_cost_per_1k == Decimal("0.00375")

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "litellm.json"
        path.write_text(json.dumps(self.SHEET), encoding="utf-8")
        assert load_litellm_pricing(str(path)).find_rule("gpt-5") is not None

    def test_load_invalid_json(self, tmp_path):
        path = tmp_path / "litellm.json"
        path.write_text("{", encoding="utf-8")
        with pytest.raises(ValueError, match="Invalid JSON"):
            load_litellm_pricing(str(path))

    def test_fetch_failure_returns_none(self):
        with patch(
            "ai_usage_scanner.config.pricing_loader.urllib.request.urlopen",
            side_effect=urllib.error.URLError("offline"),
        ):
            assert fetch_litellm_pricing() is None

    def test_fetch_success(self):
        class _Response:
            def __init__(self, body):
                self._body = body

            def read(self):
                return self._body

            def __enter__(self):
                return self

            def __exit__(self, *args):
                return False

        body = json.dumps(self.SHEET).encode("utf-8")
        with patch(
            "ai_usage_scanner.config.pricing_loader.urllib.request.urlopen",
            return_value=_Response(body),
        ):
            table = fetch_litellm_pricing()
        assert table.find_rule("gpt-5") is not None


class TestBuildPricingTable:
    def test_defaults_only(self):
        assert build_pricing_table(ScannerConfig()) is DEFAULT_PRICING_TABLE

    def test_yaml_overrides_litellm_and_defaults(self, tmp_path):
        sheet = tmp_path / "litellm.json"
        sheet.write_text(json.dumps({
            "gpt-5": {"input_cost_per_token": 1e-06, "output_cost_per_token": 1e-06},
            "my-model": {"input_cost_per_token": 1e-06, "output_cost_per_token": 1e-06},
        }), encoding="utf-8")
        rules = _write_yaml(tmp_path / "prices.yaml", {
            "models": {"my-model": {"input_cost_per_1k": 5, "output_cost_per_1k": 5}},
        })
        config = ScannerConfig(pricing=PricingSourceConfig(file=rules, litellm_file=str(sheet)))

        table = build_pricing_table(config)

        assert table.find_rule("my-model").tiers[0].input_cost_per_1k == Decimal(5)
        assert table.find_rule("gpt-5").model == "gpt-5"
        assert table.find_rule("gpt-5").tiers[0].input_cost_per_1k == Decimal("0.001")
        assert table.find_rule("claude-opus-4-1-20250805").model == "claude-opus-4*"
