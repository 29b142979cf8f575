from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from event_loader.main import FUNNEL_STAGES

# Human-readable labels for each adjacent stage pair, in funnel order.
STAGE_TRANSITION_LABELS = (
    "Page View → Add to Cart",
    "Add to Cart → Checkout",
    "Checkout → Payment Info",
    "Payment Info → Purchase",
)

SEGMENT_LABELS = ("1 purchase", "2 purchases", "3+ purchases")

DEFAULT_TOP_N = 20


@dataclass
class FunnelSummary:
    """
    Event counts per funnel stage and stage-to-stage conversion rates.

    Every rate is a percentage rounded to 2 decimals, or None when the
    predecessor count is zero.
    """
    page_views: int
    add_to_carts: int
    add_to_cart_rate: Optional[float]
    checkouts: int
    checkout_rate: Optional[float]
    payment_info: int
    payment_info_rate: Optional[float]
    purchases: int
    purchase_rate: Optional[float]
    overall_conversion_rate: Optional[float]


@dataclass
class StageTransition:
    """
    Drop-off between two adjacent funnel stages.

    Invariant (from_count > 0): drop_off_rate + conversion_rate == 100
    """
    funnel_stage: str
    from_stage: str
    to_stage: str
    from_count: int
    to_count: int
    users_dropped: int
    drop_off_rate: Optional[float]
    conversion_rate: Optional[float]


@dataclass
class SourceRevenue:
    traffic_source: Optional[str]
    total_purchases: int
    total_revenue: float
    avg_order_value: float
    pct_of_purchases: float


@dataclass
class DailyRevenue:
    purchase_date: str  # ISO date
    daily_purchases: int
    daily_revenue: float
    avg_order_value: float


@dataclass
class ProductRevenue:
    product_id: Optional[int]
    times_purchased: int
    total_revenue: float
    avg_price: float
    revenue_share_pct: Optional[float]


@dataclass
class ProductConversion:
    product_id: Optional[int]
    views: int
    purchases: int
    conversion_rate: Optional[float]


@dataclass
class CartAbandonment:
    product_id: Optional[int]
    added_to_cart: int
    purchases: int
    abandoned_carts: int
    abandonment_rate: Optional[float]


@dataclass
class PurchaseRate:
    total_users: int
    purchasing_users: int
    non_purchasers: int
    purchase_rate: Optional[float]


@dataclass
class CustomerSegment:
    customer_segment: str  # one of SEGMENT_LABELS
    num_customers: int
    avg_ltv: float
    total_revenue: float


@dataclass
class TopCustomer:
    user_id: int
    num_purchases: int
    total_spent: float
    avg_order_value: float


@dataclass
class Cohort:
    """Users grouped by the traffic_source of their first chronological event."""
    first_source: Optional[str]
    total_users: int
    purchasers: int
    conversion_rate: Optional[float]
    total_revenue: float
    revenue_per_user: Optional[float]


@dataclass
class DailyActivity:
    activity_date: str  # ISO date
    daily_active_users: int
    daily_purchasers: int
    daily_conversion_rate: Optional[float]


@dataclass
class HourlyActivity:
    hour_of_day: int  # 0..23
    total_events: int
    purchases: int
    revenue: float


@dataclass
class SourcePerformance:
    traffic_source: Optional[str]
    users: int
    buyers: int
    conversion_rate: Optional[float]
    revenue: float
    revenue_per_user: Optional[float]


@dataclass
class ProductPerformance:
    product_id: Optional[int]
    views: int
    carts: int
    purchases: int
    conversion_rate: Optional[float]
    cart_abandonment_rate: Optional[float]
    revenue: float


@dataclass
class DataSummary:
    total_records: int
    distinct_dates: int
    unique_users: int
    total_revenue: float


@dataclass
class FunnelReport:
    """
    Every query result over one snapshot of user_events.

    All fields are deterministic functions of the table contents; only
    extracted_at_utc varies between runs.
    """
    source_path: str
    data_summary: DataSummary
    funnel_summary: FunnelSummary
    funnel_drop_offs: List[StageTransition]
    revenue_by_source: List[SourceRevenue]
    revenue_by_date: List[DailyRevenue]
    revenue_by_product: List[ProductRevenue]
    product_conversion: List[ProductConversion]
    cart_abandonment: List[CartAbandonment]
    purchase_rate: PurchaseRate
    customer_segments: List[CustomerSegment]
    top_customers: List[TopCustomer]
    cohorts: List[Cohort]
    daily_activity: List[DailyActivity]
    hourly_activity: List[HourlyActivity]
    source_performance: List[SourcePerformance]
    product_performance: List[ProductPerformance]
    extracted_at_utc: str = field(default="")


def connect(sqlite_path: str) -> sqlite3.Connection:
    """Open an existing database read-only; never creates a file."""
    if not Path(sqlite_path).exists():
        raise FileNotFoundError(f"Database not found at {sqlite_path}")
    conn = sqlite3.connect(f"file:{Path(sqlite_path).as_posix()}?mode=ro", uri=True)
    conn.row_factory = sqlite3.Row
    return conn


def _rows(conn: sqlite3.Connection, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
    return conn.execute(sql, params).fetchall()


def _stage_count_columns() -> str:
    # One COUNT per stage, aliased to the stage name.
    return ",\n".join(
        f"COUNT(CASE WHEN event_type = '{stage}' THEN 1 END) AS {stage}"
        for stage in FUNNEL_STAGES
    )


def _rate(numerator: int, denominator: int) -> Optional[float]:
    if not denominator:
        return None
    return round(100.0 * numerator / denominator, 2)


def _stage_counts(conn: sqlite3.Connection) -> List[int]:
    row = conn.execute(f"SELECT {_stage_count_columns()} FROM user_events").fetchone()
    return [row[stage] for stage in FUNNEL_STAGES]


def funnel_summary(conn: sqlite3.Connection) -> FunnelSummary:
    views, carts, checkouts, payments, purchases = _stage_counts(conn)
    return FunnelSummary(
        page_views=views,
        add_to_carts=carts,
        add_to_cart_rate=_rate(carts, views),
        checkouts=checkouts,
        checkout_rate=_rate(checkouts, carts),
        payment_info=payments,
        payment_info_rate=_rate(payments, checkouts),
        purchases=purchases,
        purchase_rate=_rate(purchases, payments),
        overall_conversion_rate=_rate(purchases, views),
    )


def funnel_drop_offs(conn: sqlite3.Connection) -> List[StageTransition]:
    """
    Drop-off for each adjacent stage pair, biggest drop-off first.

    conversion_rate is derived from the rounded drop_off_rate so the two always
    sum to exactly 100.
    """
    counts = _stage_counts(conn)
    transitions: List[StageTransition] = []
    for i, label in enumerate(STAGE_TRANSITION_LABELS):
        from_count, to_count = counts[i], counts[i + 1]
        drop_off = _rate(from_count - to_count, from_count)
        transitions.append(
            StageTransition(
                funnel_stage=label,
                from_stage=FUNNEL_STAGES[i],
                to_stage=FUNNEL_STAGES[i + 1],
                from_count=from_count,
                to_count=to_count,
                users_dropped=from_count - to_count,
                drop_off_rate=drop_off,
                conversion_rate=round(100.0 - drop_off, 2) if drop_off is not None else None,
            )
        )
    # Stable sort keeps funnel order among ties; undefined rates go last.
    transitions.sort(key=lambda t: (t.drop_off_rate is None, -(t.drop_off_rate or 0.0)))
    return transitions


def revenue_by_source(conn: sqlite3.Connection) -> List[SourceRevenue]:
    rows = _rows(
        conn,
        """
        SELECT
            traffic_source,
            COUNT(*) AS total_purchases,
            ROUND(COALESCE(SUM(amount), 0), 2) AS total_revenue,
            ROUND(COALESCE(AVG(amount), 0), 2) AS avg_order_value,
            ROUND(100.0 * COUNT(*) / SUM(COUNT(*)) OVER (), 2) AS pct_of_purchases
        FROM user_events
        WHERE event_type = 'purchase'
        GROUP BY traffic_source
        ORDER BY total_revenue DESC, traffic_source
        """,
    )
    return [SourceRevenue(**dict(r)) for r in rows]


def revenue_by_date(conn: sqlite3.Connection) -> List[DailyRevenue]:
    rows = _rows(
        conn,
        """
        SELECT
            date(event_date) AS purchase_date,
            COUNT(*) AS daily_purchases,
            ROUND(COALESCE(SUM(amount), 0), 2) AS daily_revenue,
            ROUND(COALESCE(AVG(amount), 0), 2) AS avg_order_value
        FROM user_events
        WHERE event_type = 'purchase'
        GROUP BY date(event_date)
        ORDER BY purchase_date
        """,
    )
    return [DailyRevenue(**dict(r)) for r in rows]


def revenue_by_product(conn: sqlite3.Connection) -> List[ProductRevenue]:
    rows = _rows(
        conn,
        """
        SELECT
            product_id,
            COUNT(*) AS times_purchased,
            ROUND(COALESCE(SUM(amount), 0), 2) AS total_revenue,
            ROUND(COALESCE(AVG(amount), 0), 2) AS avg_price,
            ROUND(100.0 * SUM(amount) / NULLIF(SUM(SUM(amount)) OVER (), 0), 2) AS revenue_share_pct
        FROM user_events
        WHERE event_type = 'purchase'
        GROUP BY product_id
        ORDER BY total_revenue DESC, product_id
        """,
    )
    return [ProductRevenue(**dict(r)) for r in rows]


def product_conversion(conn: sqlite3.Connection) -> List[ProductConversion]:
    rows = _rows(
        conn,
        """
        WITH product_funnel AS (
            SELECT
                product_id,
                COUNT(CASE WHEN event_type = 'page_view' THEN 1 END) AS views,
                COUNT(CASE WHEN event_type = 'purchase' THEN 1 END) AS purchases
            FROM user_events
            GROUP BY product_id
        )
        SELECT
            product_id,
            views,
            purchases,
            ROUND(100.0 * purchases / NULLIF(views, 0), 2) AS conversion_rate
        FROM product_funnel
        ORDER BY conversion_rate IS NULL, conversion_rate DESC, product_id
        """,
    )
    return [ProductConversion(**dict(r)) for r in rows]


def cart_abandonment(conn: sqlite3.Connection) -> List[CartAbandonment]:
    rows = _rows(
        conn,
        """
        WITH cart_stats AS (
            SELECT
                product_id,
                COUNT(CASE WHEN event_type = 'add_to_cart' THEN 1 END) AS carts,
                COUNT(CASE WHEN event_type = 'purchase' THEN 1 END) AS purchases
            FROM user_events
            GROUP BY product_id
        )
        SELECT
            product_id,
            carts AS added_to_cart,
            purchases,
            carts - purchases AS abandoned_carts,
            ROUND(100.0 * (carts - purchases) / NULLIF(carts, 0), 2) AS abandonment_rate
        FROM cart_stats
        WHERE carts > 0
        ORDER BY abandonment_rate DESC, product_id
        """,
    )
    return [CartAbandonment(**dict(r)) for r in rows]


def purchase_rate(conn: sqlite3.Connection) -> PurchaseRate:
    row = conn.execute(
        """
        SELECT
            COUNT(DISTINCT user_id) AS total_users,
            COUNT(DISTINCT CASE WHEN event_type = 'purchase' THEN user_id END) AS purchasing_users
        FROM user_events
        """
    ).fetchone()
    total, purchasing = row["total_users"], row["purchasing_users"]
    return PurchaseRate(
        total_users=total,
        purchasing_users=purchasing,
        non_purchasers=total - purchasing,
        purchase_rate=_rate(purchasing, total),
    )


def customer_segments(conn: sqlite3.Connection) -> List[CustomerSegment]:
    """Buyers bucketed by purchase count, in segment rank order (1, 2, 3+)."""
    rows = _rows(
        conn,
        """
        WITH user_purchases AS (
            SELECT
                user_id,
                COUNT(*) AS purchase_count,
                COALESCE(SUM(amount), 0) AS lifetime_value
            FROM user_events
            WHERE event_type = 'purchase'
            GROUP BY user_id
        ),
        ranked AS (
            SELECT
                CASE
                    WHEN purchase_count = 1 THEN 1
                    WHEN purchase_count = 2 THEN 2
                    ELSE 3
                END AS segment_rank,
                lifetime_value
            FROM user_purchases
        )
        SELECT
            segment_rank,
            COUNT(*) AS num_customers,
            ROUND(AVG(lifetime_value), 2) AS avg_ltv,
            ROUND(SUM(lifetime_value), 2) AS total_revenue
        FROM ranked
        GROUP BY segment_rank
        ORDER BY segment_rank
        """,
    )
    return [
        CustomerSegment(
            customer_segment=SEGMENT_LABELS[r["segment_rank"] - 1],
            num_customers=r["num_customers"],
            avg_ltv=r["avg_ltv"],
            total_revenue=r["total_revenue"],
        )
        for r in rows
    ]


def top_customers(conn: sqlite3.Connection, limit: int = DEFAULT_TOP_N) -> List[TopCustomer]:
    if limit < 1:
        raise ValueError("limit must be >= 1")
    rows = _rows(
        conn,
        """
        SELECT
            user_id,
            COUNT(*) AS num_purchases,
            ROUND(COALESCE(SUM(amount), 0), 2) AS total_spent,
            ROUND(COALESCE(AVG(amount), 0), 2) AS avg_order_value
        FROM user_events
        WHERE event_type = 'purchase'
        GROUP BY user_id
        ORDER BY total_spent DESC, user_id
        LIMIT ?
        """,
        (int(limit),),
    )
    return [TopCustomer(**dict(r)) for r in rows]


def cohorts(conn: sqlite3.Connection) -> List[Cohort]:
    """
    First-touch cohorts.

    A user's cohort is the traffic_source of their earliest event; equal
    timestamps go to the row inserted first.
    """
    rows = _rows(
        conn,
        """
        WITH ordered AS (
            SELECT
                user_id,
                traffic_source,
                ROW_NUMBER() OVER (
                    PARTITION BY user_id
                    ORDER BY event_date, rowid
                ) AS touch_rank
            FROM user_events
        ),
        first_touch AS (
            SELECT user_id, traffic_source AS first_source
            FROM ordered
            WHERE touch_rank = 1
        ),
        cohort_metrics AS (
            SELECT
                ft.first_source,
                COUNT(DISTINCT ue.user_id) AS total_users,
                COUNT(DISTINCT CASE WHEN ue.event_type = 'purchase' THEN ue.user_id END) AS purchasers,
                SUM(CASE WHEN ue.event_type = 'purchase' THEN COALESCE(ue.amount, 0) ELSE 0 END) AS revenue
            FROM first_touch ft
            JOIN user_events ue ON ft.user_id = ue.user_id
            GROUP BY ft.first_source
        )
        SELECT
            first_source,
            total_users,
            purchasers,
            ROUND(100.0 * purchasers / NULLIF(total_users, 0), 2) AS conversion_rate,
            ROUND(revenue, 2) AS total_revenue,
            ROUND(revenue / NULLIF(total_users, 0), 2) AS revenue_per_user
        FROM cohort_metrics
        ORDER BY revenue_per_user IS NULL, revenue_per_user DESC, first_source
        """,
    )
    return [Cohort(**dict(r)) for r in rows]


def daily_activity(conn: sqlite3.Connection) -> List[DailyActivity]:
    rows = _rows(
        conn,
        """
        SELECT
            date(event_date) AS activity_date,
            COUNT(DISTINCT user_id) AS daily_active_users,
            COUNT(DISTINCT CASE WHEN event_type = 'purchase' THEN user_id END) AS daily_purchasers
        FROM user_events
        GROUP BY date(event_date)
        ORDER BY activity_date
        """,
    )
    return [
        DailyActivity(
            activity_date=r["activity_date"],
            daily_active_users=r["daily_active_users"],
            daily_purchasers=r["daily_purchasers"],
            daily_conversion_rate=_rate(r["daily_purchasers"], r["daily_active_users"]),
        )
        for r in rows
    ]


def hourly_activity(conn: sqlite3.Connection) -> List[HourlyActivity]:
    """Events bucketed by hour of day across all dates; empty hours are omitted."""
    rows = _rows(
        conn,
        """
        SELECT
            CAST(strftime('%H', event_date) AS INTEGER) AS hour_of_day,
            COUNT(*) AS total_events,
            COUNT(CASE WHEN event_type = 'purchase' THEN 1 END) AS purchases,
            ROUND(SUM(CASE WHEN event_type = 'purchase' THEN COALESCE(amount, 0) ELSE 0 END), 2) AS revenue
        FROM user_events
        GROUP BY hour_of_day
        ORDER BY hour_of_day
        """,
    )
    return [HourlyActivity(**dict(r)) for r in rows]


def source_performance(conn: sqlite3.Connection) -> List[SourcePerformance]:
    rows = _rows(
        conn,
        """
        WITH per_source AS (
            SELECT
                traffic_source,
                COUNT(DISTINCT user_id) AS users,
                COUNT(DISTINCT CASE WHEN event_type = 'purchase' THEN user_id END) AS buyers,
                SUM(CASE WHEN event_type = 'purchase' THEN COALESCE(amount, 0) ELSE 0 END) AS revenue
            FROM user_events
            GROUP BY traffic_source
        )
        SELECT
            traffic_source,
            users,
            buyers,
            ROUND(100.0 * buyers / NULLIF(users, 0), 2) AS conversion_rate,
            ROUND(revenue, 2) AS revenue,
            ROUND(revenue / NULLIF(users, 0), 2) AS revenue_per_user
        FROM per_source
        ORDER BY revenue_per_user IS NULL, revenue_per_user DESC, traffic_source
        """,
    )
    return [SourcePerformance(**dict(r)) for r in rows]


def product_performance(conn: sqlite3.Connection) -> List[ProductPerformance]:
    """Per-product funnel metrics, weakest conversion first."""
    rows = _rows(
        conn,
        """
        WITH product_metrics AS (
            SELECT
                product_id,
                COUNT(CASE WHEN event_type = 'page_view' THEN 1 END) AS views,
                COUNT(CASE WHEN event_type = 'add_to_cart' THEN 1 END) AS carts,
                COUNT(CASE WHEN event_type = 'purchase' THEN 1 END) AS purchases,
                SUM(CASE WHEN event_type = 'purchase' THEN COALESCE(amount, 0) ELSE 0 END) AS revenue
            FROM user_events
            GROUP BY product_id
        )
        SELECT
            product_id,
            views,
            carts,
            purchases,
            ROUND(100.0 * purchases / NULLIF(views, 0), 2) AS conversion_rate,
            ROUND(100.0 * (carts - purchases) / NULLIF(carts, 0), 2) AS cart_abandonment_rate,
            ROUND(revenue, 2) AS revenue
        FROM product_metrics
        ORDER BY conversion_rate IS NULL, conversion_rate, product_id
        """,
    )
    return [ProductPerformance(**dict(r)) for r in rows]


def data_summary(conn: sqlite3.Connection) -> DataSummary:
    row = conn.execute(
        """
        SELECT
            COUNT(*) AS total_records,
            COUNT(DISTINCT date(event_date)) AS distinct_dates,
            COUNT(DISTINCT user_id) AS unique_users,
            ROUND(COALESCE(SUM(CASE WHEN event_type = 'purchase' THEN amount END), 0), 2) AS total_revenue
        FROM user_events
        """
    ).fetchone()
    return DataSummary(**dict(row))


def extract(sqlite_path: str, top_n: int = DEFAULT_TOP_N) -> FunnelReport:
    """
    Run every report query against the user_events table.

    Args:
        sqlite_path: Path to the SQLite database written by event_loader
        top_n: Number of customers in the top-customers table

    Returns:
        FunnelReport with one field per query result

    Failure modes:
        - Raises FileNotFoundError if the database file does not exist
        - Raises sqlite3.Error if user_events is missing or the file is corrupt
        - An empty table yields zero counts, empty lists and None rates
    """
    conn = connect(sqlite_path)
    try:
        return FunnelReport(
            source_path=sqlite_path,
            data_summary=data_summary(conn),
            funnel_summary=funnel_summary(conn),
            funnel_drop_offs=funnel_drop_offs(conn),
            revenue_by_source=revenue_by_source(conn),
            revenue_by_date=revenue_by_date(conn),
            revenue_by_product=revenue_by_product(conn),
            product_conversion=product_conversion(conn),
            cart_abandonment=cart_abandonment(conn),
            purchase_rate=purchase_rate(conn),
            customer_segments=customer_segments(conn),
            top_customers=top_customers(conn, limit=top_n),
            cohorts=cohorts(conn),
            daily_activity=daily_activity(conn),
            hourly_activity=hourly_activity(conn),
            source_performance=source_performance(conn),
            product_performance=product_performance(conn),
            extracted_at_utc=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        )
    finally:
        conn.close()
