"""
Pricing calculations and rate management.

Handles tiered, per-model cost computations for agent usage records.
Rates are expressed per 1K tokens, the same way for all four counters.
"""

import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from .token_counter import TokenUsage

# Context size at which long-context pricing applies to the whole request
TIERED_THRESHOLD = 200_000

PROVIDER_PREFIXES = ("anthropic/", "openai/", "azure/", "google/", "vertex_ai/", "gemini/")
QUALITY_SUFFIXES = ("-high", "-low", "-medium")

_DATE_SUFFIX_RE = re.compile(r"-\d{8}$")
_THOUSAND = Decimal(1000)
_ZERO = Decimal(0)


@dataclass(frozen=True)
class PricingTier:
    """Rates applied once a request's input reaches ``threshold_tokens``."""
    threshold_tokens: int
    input_cost_per_1k: Decimal
    output_cost_per_1k: Decimal
    cache_read_cost_per_1k: Decimal = _ZERO
    cache_write_cost_per_1k: Decimal = _ZERO

    def __post_init__(self):
        """Validate tier values are non-negative."""
        if self.threshold_tokens < 0:
            raise ValueError("threshold_tokens must be >= 0")
        for name in ("input_cost_per_1k", "output_cost_per_1k",
                     "cache_read_cost_per_1k", "cache_write_cost_per_1k"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")


@dataclass(frozen=True)
class PricingRule:
    """Tiered pricing for one model name or model family.

    A ``model`` ending in ``*`` is a family pattern matched by prefix.
    """
    model: str
    tiers: Tuple[PricingTier, ...]

    def __post_init__(self):
        """Validate tiers are present, start at zero and ascend strictly."""
        if not self.model or self.model == "*":
            raise ValueError("model pattern cannot be empty")
        if not self.tiers:
            raise ValueError(f"Pricing rule for {self.model} has no tiers")
        if self.tiers[0].threshold_tokens != 0:
            raise ValueError(f"First tier for {self.model} must start at 0 tokens")
        thresholds = [tier.threshold_tokens for tier in self.tiers]
        if any(a >= b for a, b in zip(thresholds, thresholds[1:])):
            raise ValueError(f"Tiers for {self.model} must be sorted by ascending threshold")

    @property
    def is_family(self) -> bool:
        return self.model.endswith("*")

    @property
    def prefix(self) -> str:
        return self.model[:-1] if self.is_family else self.model

    def tier_for(self, input_tokens: int) -> PricingTier:
        """Return the highest tier whose threshold does not exceed ``input_tokens``."""
        active = self.tiers[0]
        for tier in self.tiers[1:]:
            if tier.threshold_tokens > input_tokens:
                break
            active = tier
        return active


@dataclass(frozen=True)
class CostResult:
    """Outcome of pricing one request."""
    cost: Decimal
    priced: bool
    rule: Optional[PricingRule] = None
    tier: Optional[PricingTier] = None


@dataclass(frozen=True)
class PricingTable:
    """Pricing rules keyed by model name or family pattern."""
    rules: Dict[str, PricingRule]
    _lookup_cache: Dict[str, Optional[PricingRule]] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    @classmethod
    def from_rules(cls, rules: Iterable[PricingRule]) -> "PricingTable":
        return cls({rule.model: rule for rule in rules})

    def merged_with(self, other: "PricingTable") -> "PricingTable":
        """Return a new table where rules from ``other`` override ours."""
        combined = dict(self.rules)
        combined.update(other.rules)
        return PricingTable(combined)

    def find_rule(self, model: str) -> Optional[PricingRule]:
        """Find the pricing rule for a model identifier.

        Exact names win over family patterns. Exact lookup also tries
        provider-prefixed keys and normalised variants of the name
        (without ``-thinking``, a date suffix or a quality suffix).
        Among family patterns the longest matching prefix wins.

        Args:
            model: Model identifier as reported by the source log

        Returns:
            The matching PricingRule, or None when the model is unknown
        """
        if model in self._lookup_cache:
            return self._lookup_cache[model]

        candidates = _candidate_names(model)
        rule = self._find_exact(candidates) or self._find_family(candidates)
        self._lookup_cache[model] = rule
        return rule

    def _find_exact(self, candidates: List[str]) -> Optional[PricingRule]:
        for name in candidates:
            for key in (name,) + tuple(prefix + name for prefix in PROVIDER_PREFIXES):
                rule = self.rules.get(key)
                if rule is not None and not rule.is_family:
                    return rule
        return None

    def _find_family(self, candidates: List[str]) -> Optional[PricingRule]:
        best = None
        for rule in self.rules.values():
            if not rule.is_family:
                continue
            if best is not None and len(rule.prefix) <= len(best.prefix):
                continue
            if any(name.startswith(rule.prefix) for name in candidates):
                best = rule
        return best


def _candidate_names(model: str) -> List[str]:
    """Model name followed by its normalised lookup variants, in priority order."""
    names = [model]
    for prefix in PROVIDER_PREFIXES:
        if model.startswith(prefix):
            names.append(model[len(prefix):])

    for name in list(names):
        if name.endswith("-thinking"):
            base = name[:-len("-thinking")]
            names.append(base)
            names.append(_DATE_SUFFIX_RE.sub("", base))
        no_date = _DATE_SUFFIX_RE.sub("", name)
        if no_date != name:
            names.append(no_date)
            if no_date.endswith("-thinking"):
                names.append(no_date[:-len("-thinking")])
        for suffix in QUALITY_SUFFIXES:
            if name.endswith(suffix):
                names.append(name[:-len(suffix)])

    unique = []
    for name in names:
        if name and name not in unique:
            unique.append(name)
    return unique


def _tier(threshold: int, input_rate: str, output_rate: str,
          cache_read_rate: str, cache_write_rate: str) -> PricingTier:
    return PricingTier(
        threshold_tokens=threshold,
        input_cost_per_1k=Decimal(input_rate),
        output_cost_per_1k=Decimal(output_rate),
        cache_read_cost_per_1k=Decimal(cache_read_rate),
        cache_write_cost_per_1k=Decimal(cache_write_rate),
    )


# Built-in rates in USD per 1K tokens; override with a pricing file
DEFAULT_PRICING_TABLE = PricingTable.from_rules([
    PricingRule("claude-sonnet-4*", (
        _tier(0, "0.003", "0.015", "0.0003", "0.00375"),
        _tier(TIERED_THRESHOLD, "0.006", "0.0225", "0.0006", "0.0075"),
    )),
    PricingRule("claude-opus-4*", (
        _tier(0, "0.015", "0.075", "0.0015", "0.01875"),
    )),
    PricingRule("claude-opus-4-5*", (
        _tier(0, "0.005", "0.025", "0.0005", "0.00625"),
    )),
    PricingRule("claude-haiku-4-5*", (
        _tier(0, "0.001", "0.005", "0.0001", "0.00125"),
    )),
    PricingRule("claude-3-5-haiku*", (
        _tier(0, "0.0008", "0.004", "0.00008", "0.001"),
    )),
    PricingRule("claude-3-7-sonnet*", (
        _tier(0, "0.003", "0.015", "0.0003", "0.00375"),
    )),
    PricingRule("gpt-5*", (
        _tier(0, "0.00125", "0.01", "0.000125", "0"),
    )),
    PricingRule("gpt-5-mini*", (
        _tier(0, "0.00025", "0.002", "0.000025", "0"),
    )),
    PricingRule("gpt-5-nano*", (
        _tier(0, "0.00005", "0.0004", "0.000005", "0"),
    )),
    PricingRule("gpt-4.1*", (
        _tier(0, "0.002", "0.008", "0.0005", "0"),
    )),
    PricingRule("o3*", (
        _tier(0, "0.002", "0.008", "0.0005", "0"),
    )),
    PricingRule("gemini-2.5-pro*", (
        _tier(0, "0.00125", "0.01", "0.00031", "0"),
        _tier(TIERED_THRESHOLD, "0.0025", "0.015", "0.000625", "0"),
    )),
    PricingRule("gemini-2.5-flash*", (
        _tier(0, "0.0003", "0.0025", "0.000075", "0"),
    )),
])


def calculate_cost(model: str, usage: TokenUsage,
                   table: Optional[PricingTable] = None) -> CostResult:
    """Calculate the cost of a single request.

    The tier is chosen from this request's own ``input_tokens``. Once a
    threshold is reached the whole request, including cache reads and
    writes, is billed at that tier's rates. No rounding is applied.

    Args:
        model: Model identifier
        usage: Token usage data
        table: Pricing table (defaults to DEFAULT_PRICING_TABLE)

    Returns:
        CostResult; unknown models yield cost 0 with ``priced=False``
    """
    table = table if table is not None else DEFAULT_PRICING_TABLE
    rule = table.find_rule(model)
    if rule is None:
        return CostResult(cost=_ZERO, priced=False)

    tier = rule.tier_for(usage.input_tokens)

    # Each component: (tokens / 1000) * cost_per_1k
    cost = (
        Decimal(usage.input_tokens) * tier.input_cost_per_1k
        + Decimal(usage.output_tokens) * tier.output_cost_per_1k
        + Decimal(usage.cache_read_tokens) * tier.cache_read_cost_per_1k
        + Decimal(usage.cache_write_tokens) * tier.cache_write_cost_per_1k
    ) / _THOUSAND

    return CostResult(cost=cost, priced=True, rule=rule, tier=tier)
