"""Shared fixtures: temporary user_events databases built from synthetic rows."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from event_loader.main import Event, EventStore


def ev(
    event_id: int,
    user_id: int,
    event_type: str,
    ts: str,
    product_id: Optional[int] = 101,
    amount: Optional[float] = None,
    source: Optional[str] = "google",
) -> Event:
    return Event(
        event_id=event_id,
        user_id=user_id,
        event_type=event_type,
        event_date=datetime.fromisoformat(ts),
        product_id=product_id,
        amount=amount,
        traffic_source=source,
    )


# Four users, two days, three products.
#   user 1: full funnel on product 101 via google, buys for 50.00
#   user 2: first touch facebook, later returns via email and buys 102 for 30.00
#   user 3: email, abandons 102 in the cart
#   user 4: google, a single page view of 103
SAMPLE_EVENTS = [
    ev(1, 1, "page_view", "2024-01-01 09:00:00", 101, None, "google"),
    ev(2, 1, "add_to_cart", "2024-01-01 09:05:00", 101, None, "google"),
    ev(3, 1, "checkout_start", "2024-01-01 09:10:00", 101, None, "google"),
    ev(4, 1, "payment_info", "2024-01-01 09:12:00", 101, None, "google"),
    ev(5, 1, "purchase", "2024-01-01 09:15:00", 101, 50.00, "google"),
    ev(6, 2, "page_view", "2024-01-01 14:00:00", 101, None, "facebook"),
    ev(7, 2, "page_view", "2024-01-01 14:02:00", 102, None, "facebook"),
    ev(8, 2, "add_to_cart", "2024-01-01 14:05:00", 102, None, "facebook"),
    ev(9, 2, "checkout_start", "2024-01-02 10:00:00", 102, None, "email"),
    ev(10, 2, "payment_info", "2024-01-02 10:01:00", 102, None, "email"),
    ev(11, 2, "purchase", "2024-01-02 10:02:00", 102, 30.00, "email"),
    ev(12, 3, "page_view", "2024-01-02 20:00:00", 102, None, "email"),
    ev(13, 3, "add_to_cart", "2024-01-02 20:01:00", 102, None, "email"),
    ev(14, 4, "page_view", "2024-01-02 21:00:00", 103, None, "google"),
]

SAMPLE_CSV = """event_id,user_id,event_type,event_date,product_id,amount,traffic_source
1,1,page_view,2024-01-01 09:00:00,101,,google
2,1,add_to_cart,2024-01-01 09:05:00,101,,google
3,1,purchase,2024-01-01 09:15:00,101,50.00,google
4,2,page_view,2024-01-02 14:00:00,102,0,facebook
"""


@pytest.fixture
def make_db(tmp_path: Path) -> Callable[[List[Event]], str]:
    counter = {"n": 0}

    def _make(events: List[Event]) -> str:
        counter["n"] += 1
        path = tmp_path / f"events_{counter['n']}.sqlite"
        EventStore(str(path)).insert_events(events)
        return str(path)

    return _make


@pytest.fixture
def sample_db(make_db) -> str:
    return make_db(SAMPLE_EVENTS)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "FUNNEL_SQLITE_PATH",
        "FUNNEL_OUTPUT_DIR",
        "FUNNEL_TOP_N",
        "FUNNEL_TIMEOUT_S",
        "FUNNEL_MAX_RETRIES",
        "FUNNEL_BACKOFF_BASE_S",
        "FUNNEL_BACKOFF_CAP_S",
        "FUNNEL_JITTER_RATIO",
    ):
        monkeypatch.delenv(name, raising=False)
