import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from scipy import stats as scipy_stats

DEFAULT_SIGNIFICANCE_THRESHOLD = 95.0
DEFAULT_MINIMUM_SAMPLE_SIZE = 100


@dataclass
class VariantData:
    variant_id: str
    visitors: int
    conversions: int
    is_control: bool = False

    @property
    def conversion_rate(self) -> float:
        if self.visitors == 0:
            return 0.0
        return self.conversions / self.visitors


@dataclass
class SignificanceResult:
    """Outcome of comparing one variant against the control."""

    control_variant_id: str
    variant_id: str
    control_conversion_rate: float  # Percentage
    variant_conversion_rate: float  # Percentage
    absolute_lift: float  # Percentage points
    relative_lift: float  # Percentage
    z_score: float
    p_value: float
    confidence_percent: float
    confidence_interval_lower: float
    confidence_interval_upper: float
    is_significant: bool
    sample_size_adequate: bool
    winner_variant_id: Optional[str] = None
    power: Optional[float] = None
    decision: str = "pending"
    decision_rationale: str = ""


@dataclass
class ExperimentEvaluation:
    """Pairwise comparisons of every variant against the control."""

    control_variant_id: str
    comparisons: List[SignificanceResult] = field(default_factory=list)
    winner_variant_id: Optional[str] = None

    @property
    def is_significant(self) -> bool:
        return self.winner_variant_id is not None

    @property
    def confidence_percent(self) -> float:
        if not self.comparisons:
            return 0.0
        return max(c.confidence_percent for c in self.comparisons)


def calculate_conversion_rate(conversions: int, visitors: int) -> float:
    if visitors == 0:
        return 0.0
    return (conversions / visitors) * 100


def calculate_lift(control_rate: float, variant_rate: float) -> Tuple[float, float]:
    # Absolute lift in percentage points
    absolute_lift = (variant_rate - control_rate) * 100

    # Relative lift as percentage improvement
    if control_rate == 0:
        relative_lift = float("inf") if variant_rate > 0 else 0.0
    else:
        relative_lift = ((variant_rate - control_rate) / control_rate) * 100

    return absolute_lift, relative_lift


def calculate_pooled_proportion(control: VariantData, variant: VariantData) -> float:
    total_conversions = control.conversions + variant.conversions
    total_visitors = control.visitors + variant.visitors

    if total_visitors == 0:
        return 0.0

    return total_conversions / total_visitors


def calculate_standard_error(
    control: VariantData, variant: VariantData, pooled: bool = True
) -> float:
    if control.visitors == 0 or variant.visitors == 0:
        return 0.0

    if pooled:
        p_pooled = calculate_pooled_proportion(control, variant)
        se = math.sqrt(p_pooled * (1 - p_pooled) * (1 / control.visitors + 1 / variant.visitors))
    else:
        # Unpooled SE for confidence intervals
        p1 = control.conversion_rate
        p2 = variant.conversion_rate
        se = math.sqrt((p1 * (1 - p1) / control.visitors) + (p2 * (1 - p2) / variant.visitors))

    return se


def run_proportion_z_test(control: VariantData, variant: VariantData) -> Tuple[float, float]:
    p1 = control.conversion_rate
    p2 = variant.conversion_rate

    se = calculate_standard_error(control, variant, pooled=True)

    if se == 0:
        return 0.0, 1.0

    z_score = (p2 - p1) / se

    # Two-tailed p-value
    p_value = 2 * (1 - scipy_stats.norm.cdf(abs(z_score)))

    return float(z_score), float(p_value)


def calculate_confidence_interval(
    control: VariantData, variant: VariantData, confidence_level: float = 0.95
) -> Tuple[float, float]:
    p1 = control.conversion_rate
    p2 = variant.conversion_rate
    diff = p2 - p1

    # Use unpooled SE for confidence intervals
    se = calculate_standard_error(control, variant, pooled=False)

    # Z critical value for the given confidence level
    alpha = 1 - confidence_level
    z_critical = scipy_stats.norm.ppf(1 - alpha / 2)

    margin_of_error = z_critical * se

    # Convert to percentage points
    lower = (diff - margin_of_error) * 100
    upper = (diff + margin_of_error) * 100

    return float(lower), float(upper)


def calculate_sample_size_requirement(
    baseline_rate: float, minimum_detectable_effect: float, alpha: float = 0.05, power: float = 0.80
) -> int:
    if baseline_rate <= 0 or baseline_rate >= 1:
        return 0

    # Convert MDE from percentage points to proportion
    mde = minimum_detectable_effect / 100
    p1 = baseline_rate
    p2 = min(baseline_rate + mde, 0.9999)

    # Z values
    z_alpha = scipy_stats.norm.ppf(1 - alpha / 2)
    z_beta = scipy_stats.norm.ppf(power)

    # Pooled proportion estimate
    p_pooled = (p1 + p2) / 2

    # Sample size formula
    numerator = (
        z_alpha * math.sqrt(2 * p_pooled * (1 - p_pooled))
        + z_beta * math.sqrt(p1 * (1 - p1) + p2 * (1 - p2))
    ) ** 2

    denominator = (p2 - p1) ** 2

    if denominator == 0:
        return 0

    n = numerator / denominator

    return math.ceil(n)


def calculate_statistical_power(
    control: VariantData, variant: VariantData, alpha: float = 0.05
) -> float:
    p1 = control.conversion_rate
    p2 = variant.conversion_rate

    if p1 == p2 or control.visitors == 0 or variant.visitors == 0:
        return alpha  # Power equals alpha when there's no effect

    # Effect size
    effect = abs(p2 - p1)

    # Pooled SE under null
    p_pooled = calculate_pooled_proportion(control, variant)
    se_null = math.sqrt(2 * p_pooled * (1 - p_pooled) / min(control.visitors, variant.visitors))

    # SE under alternative
    se_alt = math.sqrt((p1 * (1 - p1) / control.visitors) + (p2 * (1 - p2) / variant.visitors))

    if se_alt == 0:
        return 1.0 if effect > 0 else alpha

    # Z critical value
    z_alpha = scipy_stats.norm.ppf(1 - alpha / 2)

    # Calculate power
    z_power = (effect - z_alpha * se_null) / se_alt
    power = scipy_stats.norm.cdf(z_power)

    return float(min(max(power, 0), 1))


def make_decision(result: SignificanceResult, significance_threshold: float) -> Tuple[str, str]:
    if not result.sample_size_adequate:
        return (
            "inconclusive",
            "Insufficient sample size. The test may not have enough visitors per variant "
            "to detect the expected effect. Keep the experiment running to collect more data.",
        )

    if not result.is_significant:
        return (
            "inconclusive",
            f"The difference is not statistically significant "
            f"({result.confidence_percent:.1f}% < {significance_threshold:.0f}% confidence). "
            f"The observed {result.relative_lift:+.1f}% lift could be due to random chance.",
        )

    if result.relative_lift > 0:
        return (
            "ship_variant",
            f"Statistically significant positive effect detected "
            f"({result.confidence_percent:.1f}% confidence). "
            f"{result.variant_id} shows a {result.relative_lift:+.1f}% relative improvement "
            f"({result.absolute_lift:+.2f} percentage points). "
            f"CI: [{result.confidence_interval_lower:+.2f}, "
            f"{result.confidence_interval_upper:+.2f}] pp. Recommend shipping the variant.",
        )

    return (
        "keep_control",
        f"Statistically significant negative effect detected "
        f"({result.confidence_percent:.1f}% confidence). "
        f"{result.variant_id} shows a {result.relative_lift:.1f}% relative decrease "
        f"({result.absolute_lift:.2f} percentage points). Recommend keeping the control.",
    )


def evaluate(
    control: VariantData,
    variant: VariantData,
    significance_threshold: float = DEFAULT_SIGNIFICANCE_THRESHOLD,
    minimum_sample_size: int = DEFAULT_MINIMUM_SAMPLE_SIZE,
) -> SignificanceResult:
    """
    Two-proportion z-test of variant against control.

    Significance needs both gates: confidence at or above the threshold and
    at least minimum_sample_size visitors in each arm. The winner is the
    higher-rate arm of a significant pair; equal rates never produce one.
    """
    control_rate = control.conversion_rate
    variant_rate = variant.conversion_rate

    absolute_lift, relative_lift = calculate_lift(control_rate, variant_rate)
    z_score, p_value = run_proportion_z_test(control, variant)
    confidence_percent = (1 - p_value) * 100

    ci_lower, ci_upper = calculate_confidence_interval(
        control, variant, min(significance_threshold / 100, 0.9999)
    )
    power = calculate_statistical_power(
        control, variant, max(1 - significance_threshold / 100, 1e-6)
    )

    sample_size_adequate = min(control.visitors, variant.visitors) >= minimum_sample_size
    is_significant = sample_size_adequate and confidence_percent >= significance_threshold

    winner = None
    if is_significant and variant_rate != control_rate:
        winner = variant.variant_id if variant_rate > control_rate else control.variant_id

    result = SignificanceResult(
        control_variant_id=control.variant_id,
        variant_id=variant.variant_id,
        control_conversion_rate=control_rate * 100,
        variant_conversion_rate=variant_rate * 100,
        absolute_lift=absolute_lift,
        relative_lift=relative_lift,
        z_score=z_score,
        p_value=p_value,
        confidence_percent=confidence_percent,
        confidence_interval_lower=ci_lower,
        confidence_interval_upper=ci_upper,
        is_significant=bool(is_significant),
        sample_size_adequate=sample_size_adequate,
        winner_variant_id=winner,
        power=power,
    )

    result.decision, result.decision_rationale = make_decision(result, significance_threshold)
    return result


def evaluate_experiment(
    variants: Sequence[VariantData],
    significance_threshold: float = DEFAULT_SIGNIFICANCE_THRESHOLD,
    minimum_sample_size: int = DEFAULT_MINIMUM_SAMPLE_SIZE,
) -> ExperimentEvaluation:
    """Compare every variant with the first one (the control)."""
    if len(variants) < 2:
        raise ValueError("At least two variants are required for evaluation")

    control = variants[0]
    evaluation = ExperimentEvaluation(control_variant_id=control.variant_id)

    for variant in variants[1:]:
        evaluation.comparisons.append(
            evaluate(control, variant, significance_threshold, minimum_sample_size)
        )

    rates = {v.variant_id: v.conversion_rate for v in variants}
    candidates = {
        c.winner_variant_id for c in evaluation.comparisons if c.winner_variant_id is not None
    }
    if candidates:
        best_rate = max(rates[c] for c in candidates)
        best = [c for c in candidates if rates[c] == best_rate]
        # Identical rates leave the experiment without a winner
        if len(best) == 1:
            evaluation.winner_variant_id = best[0]

    return evaluation
