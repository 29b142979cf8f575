"""Query results over small synthetic event tables."""

from __future__ import annotations

import sqlite3

import pytest

from conftest import ev
from funnel_report import queries


@pytest.fixture
def conn(sample_db):
    c = queries.connect(sample_db)
    yield c
    c.close()


def test_funnel_summary_counts_and_rates(conn):
    s = queries.funnel_summary(conn)
    assert (s.page_views, s.add_to_carts, s.checkouts, s.payment_info, s.purchases) == (5, 3, 2, 2, 2)
    assert s.add_to_cart_rate == 60.0
    assert s.checkout_rate == 66.67
    assert s.payment_info_rate == 100.0
    assert s.purchase_rate == 100.0
    assert s.overall_conversion_rate == 40.0


def test_drop_offs_sorted_biggest_first(conn):
    transitions = queries.funnel_drop_offs(conn)
    assert [t.funnel_stage for t in transitions] == [
        "Page View → Add to Cart",
        "Add to Cart → Checkout",
        "Checkout → Payment Info",
        "Payment Info → Purchase",
    ]
    first = transitions[0]
    assert (first.from_stage, first.to_stage) == ("page_view", "add_to_cart")
    assert first.users_dropped == 2
    assert first.drop_off_rate == 40.0
    assert transitions[1].drop_off_rate == 33.33


def test_drop_off_and_conversion_sum_to_100(conn):
    for t in queries.funnel_drop_offs(conn):
        assert t.from_count > 0
        assert t.drop_off_rate + t.conversion_rate == pytest.approx(100.0)


def test_empty_table_yields_none_rates(make_db):
    c = queries.connect(make_db([]))
    try:
        s = queries.funnel_summary(c)
        assert s.page_views == 0
        assert s.add_to_cart_rate is None
        assert s.overall_conversion_rate is None
        assert all(t.drop_off_rate is None and t.conversion_rate is None for t in queries.funnel_drop_offs(c))
        assert queries.purchase_rate(c).purchase_rate is None
        assert queries.revenue_by_source(c) == []
        assert queries.data_summary(c).total_revenue == 0
    finally:
        c.close()


def test_revenue_by_source(conn):
    rows = queries.revenue_by_source(conn)
    assert [(r.traffic_source, r.total_purchases, r.total_revenue) for r in rows] == [
        ("google", 1, 50.0),
        ("email", 1, 30.0),
    ]
    assert [r.pct_of_purchases for r in rows] == [50.0, 50.0]


def test_source_revenue_sums_to_total_purchase_revenue(conn):
    total = sum(r.total_revenue for r in queries.revenue_by_source(conn))
    assert total == pytest.approx(queries.data_summary(conn).total_revenue)
    assert total == pytest.approx(80.0)


def test_revenue_by_date(conn):
    rows = queries.revenue_by_date(conn)
    assert [(r.purchase_date, r.daily_purchases, r.daily_revenue) for r in rows] == [
        ("2024-01-01", 1, 50.0),
        ("2024-01-02", 1, 30.0),
    ]


def test_revenue_by_product_share(conn):
    rows = queries.revenue_by_product(conn)
    assert [(r.product_id, r.total_revenue, r.revenue_share_pct) for r in rows] == [
        (101, 50.0, 62.5),
        (102, 30.0, 37.5),
    ]


def test_product_conversion(conn):
    rows = queries.product_conversion(conn)
    assert [(r.product_id, r.views, r.purchases, r.conversion_rate) for r in rows] == [
        (101, 2, 1, 50.0),
        (102, 2, 1, 50.0),
        (103, 1, 0, 0.0),
    ]


def test_product_without_views_has_null_conversion(make_db):
    db = make_db(
        [
            ev(1, 1, "page_view", "2024-01-01 10:00:00", product_id=1),
            ev(2, 1, "add_to_cart", "2024-01-01 10:01:00", product_id=200),
            ev(3, 1, "purchase", "2024-01-01 10:02:00", product_id=200, amount=12.0),
        ]
    )
    c = queries.connect(db)
    try:
        rows = queries.product_conversion(c)
        assert rows[-1].product_id == 200
        assert rows[-1].views == 0
        assert rows[-1].conversion_rate is None
        perf = {p.product_id: p for p in queries.product_performance(c)}
        assert perf[200].conversion_rate is None
        assert perf[200].cart_abandonment_rate == 0.0
    finally:
        c.close()


def test_cart_abandonment_excludes_products_without_carts(conn):
    rows = queries.cart_abandonment(conn)
    assert [(r.product_id, r.added_to_cart, r.purchases, r.abandoned_carts, r.abandonment_rate) for r in rows] == [
        (102, 2, 1, 1, 50.0),
        (101, 1, 1, 0, 0.0),
    ]


def test_purchase_rate(conn):
    r = queries.purchase_rate(conn)
    assert (r.total_users, r.purchasing_users, r.non_purchasers, r.purchase_rate) == (4, 2, 2, 50.0)


def test_customer_segments_one_per_bucket(make_db):
    db = make_db(
        [
            ev(1, 1, "purchase", "2024-01-01 10:00:00", amount=10.0),
            ev(2, 2, "purchase", "2024-01-01 10:00:00", amount=10.0),
            ev(3, 2, "purchase", "2024-01-02 10:00:00", amount=20.0),
            ev(4, 3, "purchase", "2024-01-01 10:00:00", amount=5.0),
            ev(5, 3, "purchase", "2024-01-02 10:00:00", amount=5.0),
            ev(6, 3, "purchase", "2024-01-03 10:00:00", amount=5.0),
        ]
    )
    c = queries.connect(db)
    try:
        segments = queries.customer_segments(c)
    finally:
        c.close()
    assert [(s.customer_segment, s.num_customers) for s in segments] == [
        ("1 purchase", 1),
        ("2 purchases", 1),
        ("3+ purchases", 1),
    ]
    assert [s.avg_ltv for s in segments] == [10.0, 30.0, 15.0]


def test_segments_ordered_by_rank_when_some_are_missing(make_db):
    db = make_db(
        [
            ev(1, 1, "purchase", "2024-01-01 10:00:00", amount=1.0),
            ev(2, 1, "purchase", "2024-01-01 11:00:00", amount=1.0),
            ev(3, 1, "purchase", "2024-01-01 12:00:00", amount=1.0),
            ev(4, 1, "purchase", "2024-01-01 13:00:00", amount=1.0),
            ev(5, 2, "purchase", "2024-01-01 10:00:00", amount=7.0),
        ]
    )
    c = queries.connect(db)
    try:
        segments = queries.customer_segments(c)
    finally:
        c.close()
    assert [s.customer_segment for s in segments] == ["1 purchase", "3+ purchases"]
    assert segments[1].total_revenue == 4.0


def test_top_customers_limited_and_descending(make_db):
    db = make_db(
        [ev(i, i, "purchase", "2024-01-01 10:00:00", amount=float(i)) for i in range(1, 26)]
    )
    c = queries.connect(db)
    try:
        top = queries.top_customers(c)
        assert len(top) == 20
        spends = [t.total_spent for t in top]
        assert all(a > b for a, b in zip(spends, spends[1:]))
        assert top[0].user_id == 25
        assert len(queries.top_customers(c, limit=3)) == 3
        with pytest.raises(ValueError):
            queries.top_customers(c, limit=0)
    finally:
        c.close()


def test_cohorts_use_first_touch_source(conn):
    rows = queries.cohorts(conn)
    by_source = {r.first_source: r for r in rows}
    assert [r.first_source for r in rows] == ["facebook", "google", "email"]
    # user 2 bought via email but arrived via facebook
    assert by_source["facebook"].total_revenue == 30.0
    assert by_source["facebook"].revenue_per_user == 30.0
    assert by_source["google"].total_users == 2
    assert by_source["google"].revenue_per_user == 25.0
    assert by_source["email"].purchasers == 0


def test_first_touch_earlier_timestamp_wins(make_db):
    db = make_db(
        [
            ev(2, 1, "purchase", "2024-01-01 12:00:00", source="ads", amount=9.0),
            ev(1, 1, "page_view", "2024-01-01 08:00:00", source="organic"),
        ]
    )
    c = queries.connect(db)
    try:
        rows = queries.cohorts(c)
    finally:
        c.close()
    assert [r.first_source for r in rows] == ["organic"]
    assert rows[0].total_revenue == 9.0


def test_first_touch_tie_goes_to_first_inserted_row(make_db):
    db = make_db(
        [
            ev(2, 1, "page_view", "2024-01-01 08:00:00", source="first_row"),
            ev(1, 1, "page_view", "2024-01-01 08:00:00", source="second_row"),
        ]
    )
    c = queries.connect(db)
    try:
        assert [r.first_source for r in queries.cohorts(c)] == ["first_row"]
    finally:
        c.close()


def test_daily_activity(conn):
    rows = queries.daily_activity(conn)
    assert [(r.activity_date, r.daily_active_users, r.daily_purchasers, r.daily_conversion_rate) for r in rows] == [
        ("2024-01-01", 2, 1, 50.0),
        ("2024-01-02", 3, 1, 33.33),
    ]


def test_hourly_activity_buckets(conn):
    rows = queries.hourly_activity(conn)
    assert [r.hour_of_day for r in rows] == [9, 10, 14, 20, 21]
    assert all(0 <= r.hour_of_day <= 23 for r in rows)
    assert sum(r.total_events for r in rows) == 14
    nine = rows[0]
    assert (nine.total_events, nine.purchases, nine.revenue) == (5, 1, 50.0)


def test_source_performance(conn):
    rows = queries.source_performance(conn)
    assert [(r.traffic_source, r.users, r.buyers, r.revenue_per_user) for r in rows] == [
        ("google", 2, 1, 25.0),
        ("email", 2, 1, 15.0),
        ("facebook", 1, 0, 0.0),
    ]


def test_product_performance_weakest_first(conn):
    rows = queries.product_performance(conn)
    assert [r.product_id for r in rows] == [103, 101, 102]
    p102 = rows[2]
    assert (p102.views, p102.carts, p102.purchases) == (2, 2, 1)
    assert p102.cart_abandonment_rate == 50.0


def test_data_summary(conn):
    s = queries.data_summary(conn)
    assert (s.total_records, s.distinct_dates, s.unique_users, s.total_revenue) == (14, 2, 4, 80.0)


def test_extract_collects_every_query(sample_db):
    report = queries.extract(sample_db, top_n=1)
    assert report.source_path == sample_db
    assert report.data_summary.total_records == 14
    assert len(report.top_customers) == 1
    assert report.top_customers[0].user_id == 1
    assert len(report.funnel_drop_offs) == 4
    assert report.extracted_at_utc.endswith("Z")


def test_extract_missing_database(tmp_path):
    with pytest.raises(FileNotFoundError):
        queries.extract(str(tmp_path / "nope.sqlite"))


def test_extract_without_table_raises_sqlite_error(tmp_path):
    path = tmp_path / "empty.sqlite"
    with sqlite3.connect(str(path)) as c:
        c.execute("CREATE TABLE other (x INTEGER)")
    with pytest.raises(sqlite3.Error):
        queries.extract(str(path))


def test_connection_is_read_only(conn):
    with pytest.raises(sqlite3.OperationalError):
        conn.execute("DELETE FROM user_events")


def test_sub_cent_amounts_keep_source_revenue_consistent(make_db):
    db = make_db(
        [
            ev(1, 1, "purchase", "2024-01-01 10:00:00", amount=0.005, source="a"),
            ev(2, 2, "purchase", "2024-01-01 11:00:00", amount=0.005, source="b"),
        ]
    )
    c = queries.connect(db)
    try:
        per_source = [r.total_revenue for r in queries.revenue_by_source(c)]
        total = queries.data_summary(c).total_revenue
    finally:
        c.close()
    # stored as cents: each 0.005 rounds half up to 0.01
    assert per_source == [0.01, 0.01]
    assert sum(per_source) == pytest.approx(total)
    assert total == pytest.approx(0.02)
