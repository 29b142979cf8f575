from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

from jinja2 import Environment, FileSystemLoader

from funnel_report.queries import FunnelReport
from funnel_report.scoring import ReportScores


def _get_template_env(autoescape: bool = True) -> Environment:
    """Create Jinja2 environment with templates directory."""
    templates_dir = Path(__file__).parent / "templates"
    return Environment(
        loader=FileSystemLoader(str(templates_dir)),
        autoescape=autoescape,
        trim_blocks=True,
        lstrip_blocks=True,
    )


def format_money(amount: Optional[float]) -> str:
    """Format currency as $1,234.50; n/a when undefined."""
    if amount is None:
        return "n/a"
    return f"${amount:,.2f}"


def format_pct(pct: Optional[float]) -> str:
    """Format an already-scaled percentage (12.5 -> 12.50%)."""
    if pct is None:
        return "n/a"
    return f"{pct:.2f}%"


def _format_id(value: Optional[Any]) -> str:
    return "(none)" if value is None else str(value)


def _format_id_md(value: Optional[Any]) -> str:
    """Like _format_id, with "|" escaped so the value stays in one table cell."""
    return _format_id(value).replace("|", "\\|")


def _prepare_context(report: FunnelReport, scores: ReportScores, markdown: bool = False) -> Dict[str, Any]:
    """
    Prepare template context from report and scores.

    Returns dictionary suitable for passing to Jinja2 templates.
    """
    insights_by_severity = {"critical": [], "warning": [], "info": []}
    for insight in scores.insights:
        insights_by_severity[insight.severity].append(insight)

    funnel = report.funnel_summary

    return {
        "source_path": report.source_path,
        "extracted_at": report.extracted_at_utc,
        "scored_at": scores.scored_at_utc,

        "summary": report.data_summary,
        "funnel": funnel,
        "drop_offs": report.funnel_drop_offs,
        "biggest_drop_off": scores.biggest_drop_off,
        "revenue_by_source": report.revenue_by_source,
        "revenue_by_date": report.revenue_by_date,
        "revenue_by_product": report.revenue_by_product,
        "product_conversion": report.product_conversion,
        "cart_abandonment": report.cart_abandonment,
        "purchase_rate": report.purchase_rate,
        "customer_segments": report.customer_segments,
        "top_customers": report.top_customers,
        "cohorts": report.cohorts,
        "daily_activity": report.daily_activity,
        "hourly_activity": report.hourly_activity,
        "source_recommendations": scores.source_recommendations,
        "product_actions": scores.product_actions,
        "insights": scores.insights,
        "insights_by_severity": insights_by_severity,

        # Chart data
        "funnel_labels": ["Page View", "Add to Cart", "Checkout", "Payment Info", "Purchase"],
        "funnel_values": [
            funnel.page_views,
            funnel.add_to_carts,
            funnel.checkouts,
            funnel.payment_info,
            funnel.purchases,
        ],
        "daily_revenue_labels": [d.purchase_date for d in report.revenue_by_date],
        "daily_revenue_values": [d.daily_revenue for d in report.revenue_by_date],
        "hourly_labels": [h.hour_of_day for h in report.hourly_activity],
        "hourly_values": [h.total_events for h in report.hourly_activity],

        # Helper functions
        "format_money": format_money,
        "format_pct": format_pct,
        "format_id": _format_id_md if markdown else _format_id,
    }


def render_report(report: FunnelReport, scores: ReportScores) -> str:
    """
    Render Markdown report from query results and scores.

    Failure modes:
        - Raises jinja2.TemplateError if template is malformed
        - Raises if templates/report.md.j2 is missing
    """
    # Markdown is not HTML; escaping would mangle "&" in labels.
    env = _get_template_env(autoescape=False)
    template = env.get_template("report.md.j2")
    return template.render(**_prepare_context(report, scores, markdown=True))


def render_dashboard(report: FunnelReport, scores: ReportScores) -> str:
    """
    Render single-file HTML dashboard from query results and scores.

    Returns:
        Complete HTML string (self-contained, Chart.js via CDN)

    Failure modes:
        - Raises jinja2.TemplateError if template is malformed
        - Raises if templates/dashboard.html.j2 is missing
    """
    env = _get_template_env()
    template = env.get_template("dashboard.html.j2")
    return template.render(**_prepare_context(report, scores))
