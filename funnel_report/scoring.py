from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from funnel_report.queries import (
    FunnelReport,
    ProductPerformance,
    SourcePerformance,
    StageTransition,
)


@dataclass
class Insight:
    """
    A single headline signal derived from the report.

    Fields:
        severity: "info" | "warning" | "critical"
        category: Human-readable grouping (e.g., "funnel", "products")
        message: Plain-English description
        context: Optional structured data behind the message
    """

    severity: str
    category: str
    message: str
    context: Optional[Dict[str, float]] = None


@dataclass
class SourceRecommendation:
    performance: SourcePerformance
    recommendation: str


@dataclass
class ProductAction:
    performance: ProductPerformance
    action_needed: str


@dataclass
class ReportScores:
    """
    Rule-based labels and insights derived from a FunnelReport.

    No learned model: every label is a fixed-threshold function of one
    aggregated row.
    """

    source_recommendations: List[SourceRecommendation]
    product_actions: List[ProductAction]
    biggest_drop_off: Optional[StageTransition]
    insights: List[Insight] = field(default_factory=list)
    scored_at_utc: str = ""


# Revenue-per-user thresholds for traffic sources
HIGH_PRIORITY_REVENUE_PER_USER = 20.0
MEDIUM_PRIORITY_REVENUE_PER_USER = 15.0

# Product thresholds, as ratios (not percentages)
LOW_CONVERSION_RATIO = 0.10  # purchases / views below this -> review pricing
HIGH_ABANDONMENT_RATIO = 0.50  # (carts - purchases) / carts above this -> review checkout

# Stage drop-off thresholds, as percentages
DROP_OFF_WARNING_PCT = 50.0
DROP_OFF_CRITICAL_PCT = 75.0

# Purchases / page views below this percentage is flagged
OVERALL_CONVERSION_WARNING_PCT = 1.0

HIGH_PRIORITY = "High Priority - Increase Budget"
MEDIUM_PRIORITY = "Medium Priority - Maintain"
LOW_PRIORITY = "Low Priority - Optimize"

REVIEW_PRICING = "Review product page & pricing"
REVIEW_CHECKOUT = "High cart abandonment - check checkout flow"
PERFORMING_WELL = "Performing well"


def source_recommendation(revenue_per_user: Optional[float]) -> str:
    """Budget priority for a traffic source; an undefined value is low priority."""
    if revenue_per_user is not None and revenue_per_user > HIGH_PRIORITY_REVENUE_PER_USER:
        return HIGH_PRIORITY
    if revenue_per_user is not None and revenue_per_user > MEDIUM_PRIORITY_REVENUE_PER_USER:
        return MEDIUM_PRIORITY
    return LOW_PRIORITY


def product_action(views: int, carts: int, purchases: int) -> str:
    """
    Action label for a product.

    Rules are checked in order and a rule with a zero denominator does not fire.
    """
    if views and purchases / views < LOW_CONVERSION_RATIO:
        return REVIEW_PRICING
    if carts and (carts - purchases) / carts > HIGH_ABANDONMENT_RATIO:
        return REVIEW_CHECKOUT
    return PERFORMING_WELL


def score(report: FunnelReport) -> ReportScores:
    """
    Attach recommendation labels and derive headline insights.

    Args:
        report: Extracted query results

    Returns:
        ReportScores with labelled source and product rows

    Failure modes:
        - An empty table yields no labels and a single info insight
    """
    insights: List[Insight] = []

    source_recommendations = [
        SourceRecommendation(performance=p, recommendation=source_recommendation(p.revenue_per_user))
        for p in report.source_performance
    ]
    product_actions = [
        ProductAction(performance=p, action_needed=product_action(p.views, p.carts, p.purchases))
        for p in report.product_performance
    ]

    if report.data_summary.total_records == 0:
        insights.append(
            Insight(
                severity="info",
                category="data",
                message="No events in user_events",
            )
        )

    defined = [t for t in report.funnel_drop_offs if t.drop_off_rate is not None]
    biggest_drop_off = max(defined, key=lambda t: t.drop_off_rate) if defined else None

    for transition in defined:
        if transition.drop_off_rate >= DROP_OFF_CRITICAL_PCT:
            severity = "critical"
            threshold = DROP_OFF_CRITICAL_PCT
        elif transition.drop_off_rate >= DROP_OFF_WARNING_PCT:
            severity = "warning"
            threshold = DROP_OFF_WARNING_PCT
        else:
            continue
        insights.append(
            Insight(
                severity=severity,
                category="funnel",
                message=f"{transition.funnel_stage}: {transition.drop_off_rate:.2f}% drop-off",
                context={
                    "drop_off_rate": transition.drop_off_rate,
                    "users_dropped": transition.users_dropped,
                    "threshold": threshold,
                },
            )
        )

    overall = report.funnel_summary.overall_conversion_rate
    if overall is not None and overall < OVERALL_CONVERSION_WARNING_PCT:
        insights.append(
            Insight(
                severity="warning",
                category="funnel",
                message=f"Overall conversion below {OVERALL_CONVERSION_WARNING_PCT:.0f}%: {overall:.2f}%",
                context={"overall_conversion_rate": overall, "threshold": OVERALL_CONVERSION_WARNING_PCT},
            )
        )

    flagged = [a for a in product_actions if a.action_needed != PERFORMING_WELL]
    if flagged:
        insights.append(
            Insight(
                severity="info",
                category="products",
                message=f"{len(flagged)} of {len(product_actions)} products need attention",
                context={"flagged": len(flagged), "total": len(product_actions)},
            )
        )

    return ReportScores(
        source_recommendations=source_recommendations,
        product_actions=product_actions,
        biggest_drop_off=biggest_drop_off,
        insights=insights,
        scored_at_utc=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    )
