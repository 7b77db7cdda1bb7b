"""
Unit tests for pricing calculations.

Tests cost accuracy, tier selection, model lookup and unknown models.
"""

import pytest
from decimal import Decimal

from ai_usage_scanner.core.pricing import (
    DEFAULT_PRICING_TABLE,
    TIERED_THRESHOLD,
    PricingRule,
    PricingTable,
    PricingTier,
    calculate_cost,
)
from ai_usage_scanner.core.token_counter import TokenUsage


def _tier(threshold, input_rate, output_rate, cache_read="0", cache_write="0"):
    return PricingTier(
        threshold_tokens=threshold,
        input_cost_per_1k=Decimal(input_rate),
        output_cost_per_1k=Decimal(output_rate),
        cache_read_cost_per_1k=Decimal(cache_read),
        cache_write_cost_per_1k=Decimal(cache_write),
    )


TIERED_TABLE = PricingTable.from_rules([
    PricingRule("long-context-model", (
        _tier(0, "0.003", "0.015", "0.0003", "0.00375"),
        _tier(TIERED_THRESHOLD, "0.006", "0.0225", "0.0006", "0.0075"),
    )),
])

SIMPLE_TABLE = PricingTable.from_rules([
    PricingRule("m1", (_tier(0, "0.01", "0.02"),)),
])


class TestTokenUsage:
    """Test TokenUsage dataclass."""

    def test_total_tokens_calculation(self):
        """Verify total_tokens sums all four counters."""
        usage = TokenUsage(input_tokens=100, output_tokens=50, cache_read_tokens=10, cache_write_tokens=5)
        assert usage.total_tokens == 165

    def test_zero_tokens(self):
        """Verify zero token handling."""
        usage = TokenUsage()
        assert usage.total_tokens == 0

    def test_negative_tokens_rejected(self):
        with pytest.raises(ValueError, match="input_tokens must be >= 0"):
            TokenUsage(input_tokens=-1)


class TestPricingRule:
    """Test pricing rule validation and tier selection."""

    def test_tiers_must_ascend(self):
        with pytest.raises(ValueError, match="ascending"):
            PricingRule("m", (_tier(0, "1", "1"), _tier(500, "1", "1"), _tier(100, "1", "1")))

    def test_first_tier_starts_at_zero(self):
        with pytest.raises(ValueError, match="must start at 0"):
            PricingRule("m", (_tier(10, "1", "1"),))

    def test_rule_needs_tiers(self):
        with pytest.raises(ValueError, match="no tiers"):
            PricingRule("m", ())

    def test_tier_for_boundary(self):
        rule = TIERED_TABLE.rules["long-context-model"]
        assert rule.tier_for(0).threshold_tokens == 0
        assert rule.tier_for(199_999).threshold_tokens == 0
        assert rule.tier_for(200_000).threshold_tokens == TIERED_THRESHOLD
        assert rule.tier_for(5_000_000).threshold_tokens == TIERED_THRESHOLD


class TestPricingTable:
    """Test model lookup."""

    def test_exact_match_beats_family(self):
        table = PricingTable.from_rules([
            PricingRule("claude-sonnet-4*", (_tier(0, "1", "1"),)),
            PricingRule("claude-sonnet-4-20250514", (_tier(0, "2", "2"),)),
        ])
        assert table.find_rule("claude-sonnet-4-20250514").model == "claude-sonnet-4-20250514"

    def test_longest_family_prefix_wins(self):
        rule = DEFAULT_PRICING_TABLE.find_rule("claude-opus-4-5-20251101")
        assert rule.model == "claude-opus-4-5*"
        rule = DEFAULT_PRICING_TABLE.find_rule("claude-opus-4-1-20250805")
        assert rule.model == "claude-opus-4*"

    def test_provider_prefixed_key(self):
        table = PricingTable.from_rules([PricingRule("anthropic/claude-x", (_tier(0, "1", "1"),))])
        assert table.find_rule("claude-x").model == "anthropic/claude-x"

    def test_provider_prefixed_model(self):
        rule = DEFAULT_PRICING_TABLE.find_rule("anthropic/claude-sonnet-4-20250514")
        assert rule.model == "claude-sonnet-4*"

    def test_thinking_and_date_suffixes_are_stripped(self):
        table = PricingTable.from_rules([PricingRule("claude-x", (_tier(0, "1", "1"),))])
        assert table.find_rule("claude-x-thinking").model == "claude-x"
        assert table.find_rule("claude-x-20250918").model == "claude-x"
        assert table.find_rule("claude-x-thinking-20250918").model == "claude-x"
        assert table.find_rule("claude-x-20250918-thinking").model == "claude-x"

    def test_quality_suffix_is_stripped(self):
        table = PricingTable.from_rules([PricingRule("gemini-3-pro", (_tier(0, "1", "1"),))])
        assert table.find_rule("gemini-3-pro-high").model == "gemini-3-pro"

    def test_unknown_model(self):
        assert DEFAULT_PRICING_TABLE.find_rule("totally-unknown-model") is None

    def test_merged_with_overrides(self):
        override = PricingTable.from_rules([PricingRule("m1", (_tier(0, "5", "5"),))])
        merged = SIMPLE_TABLE.merged_with(override)
        assert merged.find_rule("m1").tiers[0].input_cost_per_1k == Decimal("5")
        # The original table is untouched
        assert SIMPLE_TABLE.find_rule("m1").tiers[0].input_cost_per_1k == Decimal("0.01")


class TestCostCalculation:
    """Test cost calculation accuracy."""

    def test_per_1k_example(self):
        """Two requests against a single-tier rule, aggregated upstream."""
        first = TokenUsage(input_tokens=100, output_tokens=50)
        second = TokenUsage(input_tokens=50, output_tokens=10)
        first_cost = calculate_cost("m1", first, SIMPLE_TABLE)
        second_cost = calculate_cost("m1", second, SIMPLE_TABLE)
        # 100/1000 * 0.01 + 50/1000 * 0.02 = 0.001 + 0.001
        assert first_cost.cost == Decimal("0.002")
        # 50/1000 * 0.01 + 10/1000 * 0.02 = 0.0005 + 0.0002
        assert second_cost.cost == Decimal("0.0007")
        assert first.input_tokens + second.input_tokens == 150
        assert first.output_tokens + second.output_tokens == 60

    def test_no_rounding(self):
        usage = TokenUsage(input_tokens=1)
        result = calculate_cost("long-context-model", usage, TIERED_TABLE)
        assert result.cost == Decimal("0.000003")

    def test_below_threshold_uses_base_tier(self):
        usage = TokenUsage(input_tokens=199_999)
        result = calculate_cost("long-context-model", usage, TIERED_TABLE)
        assert result.cost == Decimal("0.599997")
        assert result.tier.threshold_tokens == 0

    def test_threshold_switches_whole_request(self):
        """Exactly 200k input tokens bills the entire request at the higher tier."""
        usage = TokenUsage(input_tokens=200_000, output_tokens=1000)
        result = calculate_cost("long-context-model", usage, TIERED_TABLE)
        # (200000 * 0.006 + 1000 * 0.0225) / 1000
        assert result.cost == Decimal("1.2225")
        assert result.tier.threshold_tokens == TIERED_THRESHOLD

    def test_no_blending_above_threshold(self):
        usage = TokenUsage(input_tokens=250_000)
        result = calculate_cost("long-context-model", usage, TIERED_TABLE)
        # A marginal split would give 0.9; the whole request uses the upper rate
        assert result.cost == Decimal("1.5")

    def test_cache_tokens_follow_request_tier(self):
        usage = TokenUsage(input_tokens=200_000, cache_read_tokens=10_000, cache_write_tokens=1000)
        result = calculate_cost("long-context-model", usage, TIERED_TABLE)
        # (1200 + 10000 * 0.0006 + 1000 * 0.0075) / 1000
        assert result.cost == Decimal("1.2135")

    def test_cache_tokens_do_not_select_tier(self):
        usage = TokenUsage(input_tokens=10, cache_read_tokens=500_000)
        result = calculate_cost("long-context-model", usage, TIERED_TABLE)
        assert result.tier.threshold_tokens == 0

    def test_unknown_model_is_unpriced(self):
        """Unknown models cost nothing and are flagged, never an error."""
        usage = TokenUsage(input_tokens=100, output_tokens=50)
        result = calculate_cost("unknown-model", usage, SIMPLE_TABLE)
        assert result.cost == Decimal(0)
        assert result.priced is False
        assert result.rule is None

    def test_zero_tokens_cost(self):
        result = calculate_cost("m1", TokenUsage(), SIMPLE_TABLE)
        assert result.cost == 0
        assert result.priced is True

    def test_default_table(self):
        usage = TokenUsage(input_tokens=1000, output_tokens=1000)
        result = calculate_cost("claude-sonnet-4-5-20250929", usage)
        assert result.priced
        assert result.cost == Decimal("0.018")
