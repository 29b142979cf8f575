from __future__ import annotations

import argparse
import csv
import io
import os
import random
import sqlite3
import sys
import time
from contextlib import closing, contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional

import httpx

# Funnel stages in order; every event_type is one of these.
FUNNEL_STAGES = ("page_view", "add_to_cart", "checkout_start", "payment_info", "purchase")

REQUIRED_COLUMNS = (
    "event_id",
    "user_id",
    "event_type",
    "event_date",
    "product_id",
    "amount",
    "traffic_source",
)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

# amount is stored with cents precision, rounded half up like NUMERIC(10,2).
CENTS = Decimal("0.01")


class EventParseError(ValueError):
    """A row of the event file could not be turned into an Event."""

    def __init__(self, line: int, message: str) -> None:
        super().__init__(f"line {line}: {message}")
        self.line = line


class LoadError(RuntimeError):
    """The event source could not be read."""


@dataclass(frozen=True)
class Event:
    """
    One row of the user_events table.

    amount is None (or 0) for every event_type except purchase.
    """
    event_id: int
    user_id: int
    event_type: str
    event_date: datetime
    product_id: Optional[int]
    amount: Optional[float]
    traffic_source: Optional[str]


@dataclass
class LoaderConfig:
    sqlite_path: str
    user_agent: str
    timeout_s: float
    max_retries: int
    backoff_base_s: float
    backoff_cap_s: float
    jitter_ratio: float


def _env_number(name: str, default: str, cast: Callable[[str], float]):
    raw = os.environ.get(name, default).strip()
    try:
        return cast(raw)
    except ValueError as e:
        raise RuntimeError(f"Invalid {name}: {raw!r}") from e


def load_config_from_env() -> LoaderConfig:
    return LoaderConfig(
        sqlite_path=os.environ.get("FUNNEL_SQLITE_PATH", "data/funnel.sqlite"),
        user_agent=os.environ.get("FUNNEL_USER_AGENT", "funnel-report/0.1"),
        timeout_s=_env_number("FUNNEL_TIMEOUT_S", "20", float),
        max_retries=_env_number("FUNNEL_MAX_RETRIES", "4", int),
        backoff_base_s=_env_number("FUNNEL_BACKOFF_BASE_S", "0.8", float),
        backoff_cap_s=_env_number("FUNNEL_BACKOFF_CAP_S", "30", float),
        jitter_ratio=_env_number("FUNNEL_JITTER_RATIO", "0.25", float),
    )


def round_money(value: Optional[object]) -> Optional[float]:
    """Round an amount to cents; accepts numbers or numeric strings."""
    if value is None:
        return None
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValueError(f"invalid amount {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"invalid amount {value!r}")
    return float(amount.quantize(CENTS, rounding=ROUND_HALF_UP))


class EventStore:
    """Append-only SQLite table of user events."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._init_db()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        # Commits on success, rolls back on error, always closes.
        with closing(sqlite3.connect(self.path)) as conn:
            with conn:
                yield conn

    def _init_db(self) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_events (
                    event_id INTEGER,
                    user_id INTEGER,
                    event_type TEXT,
                    event_date TEXT,
                    product_id INTEGER,
                    amount REAL,
                    traffic_source TEXT
                );
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_user_events_user_date "
                "ON user_events (user_id, event_date);"
            )

    def clear(self) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM user_events;")

    def insert_events(self, events: Iterable[Event], replace: bool = False) -> int:
        """
        Append events in one transaction.

        With replace=True the existing rows are deleted in the same
        transaction, so a failed insert leaves the table untouched.
        """
        rows = [
            (
                ev.event_id,
                ev.user_id,
                ev.event_type,
                ev.event_date.strftime(TIMESTAMP_FORMAT),
                ev.product_id,
                round_money(ev.amount),
                ev.traffic_source,
            )
            for ev in events
        ]
        with self._transaction() as conn:
            if replace:
                conn.execute("DELETE FROM user_events;")
            conn.executemany(
                """
                INSERT INTO user_events
                (event_id, user_id, event_type, event_date, product_id, amount, traffic_source)
                VALUES (?, ?, ?, ?, ?, ?, ?);
                """,
                rows,
            )
        return len(rows)

    def count(self) -> int:
        with closing(sqlite3.connect(self.path)) as conn:
            return conn.execute("SELECT COUNT(*) FROM user_events;").fetchone()[0]


def _parse_timestamp(raw: str) -> datetime:
    """Accept 'YYYY-MM-DD', 'YYYY-MM-DD HH:MM[:SS]' or ISO 8601 with 'T'/offset."""
    value = raw.strip().replace("Z", "+00:00")
    ts = datetime.fromisoformat(value)
    # Offsets are dropped: hour-of-day buckets use the recorded wall clock.
    return ts.replace(tzinfo=None, microsecond=0)


def _optional(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    raw = raw.strip()
    return raw or None


def parse_events_csv(text: str) -> List[Event]:
    """
    Parse a delimited event file with a header row.

    Columns are matched by name; extra columns are ignored.

    Raises:
        EventParseError: on a missing column or any malformed row. Line numbers
            are 1-based and count the header.
    """
    # A leading byte-order mark would otherwise stick to the first column name.
    if text.startswith("\ufeff"):
        text = text[1:]
    reader = csv.DictReader(io.StringIO(text))
    header = [h.strip() for h in (reader.fieldnames or [])]
    missing = [c for c in REQUIRED_COLUMNS if c not in header]
    if missing:
        raise EventParseError(1, f"missing column(s): {', '.join(missing)}")
    reader.fieldnames = header

    events: List[Event] = []
    for line_no, row in enumerate(reader, start=2):
        try:
            event_type = (row["event_type"] or "").strip()
            if event_type not in FUNNEL_STAGES:
                raise ValueError(f"unknown event_type {event_type!r}")

            product_id = _optional(row["product_id"])
            amount = _optional(row["amount"])

            events.append(
                Event(
                    event_id=int(row["event_id"]),
                    user_id=int(row["user_id"]),
                    event_type=event_type,
                    event_date=_parse_timestamp(row["event_date"] or ""),
                    product_id=int(product_id) if product_id is not None else None,
                    amount=round_money(amount),
                    traffic_source=_optional(row["traffic_source"]),
                )
            )
        except (ValueError, TypeError) as e:
            raise EventParseError(line_no, str(e)) from e

    return events


def compute_backoff_s(attempt: int, base: float, cap: float, jitter_ratio: float) -> float:
    exp = min(cap, base * (2 ** max(0, attempt - 1)))
    jitter = exp * jitter_ratio * random.random()
    return exp + jitter


def fetch_csv_with_retries(
    client: httpx.Client,
    cfg: LoaderConfig,
    url: str,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """
    Download an event file.

    Semantics:
      - Retry 429, 5xx and network errors with exponential backoff + jitter
      - Any other 4xx is fatal
      - Raise LoadError once cfg.max_retries attempts are used up
    """
    last_error = "no attempts made"
    for attempt in range(1, cfg.max_retries + 1):
        try:
            resp = client.get(url)
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            last_error = f"network:{type(e).__name__}"
        else:
            status_code = resp.status_code
            if status_code == 429 or 500 <= status_code <= 599:
                last_error = f"retryable_status:{status_code}"
            elif status_code >= 400:
                raise LoadError(f"GET {url} failed with status {status_code}")
            else:
                try:
                    return resp.content.decode("utf-8-sig")
                except UnicodeDecodeError as e:
                    raise LoadError(f"GET {url} returned a body that is not UTF-8: {e}") from e

        print(f"[loader] attempt {attempt}/{cfg.max_retries} failed ({last_error})", file=sys.stderr)
        if attempt < cfg.max_retries:
            sleep(compute_backoff_s(attempt, cfg.backoff_base_s, cfg.backoff_cap_s, cfg.jitter_ratio))

    raise LoadError(f"GET {url} gave up after {cfg.max_retries} attempts ({last_error})")


def read_source(source: str, cfg: LoaderConfig, client: Optional[httpx.Client] = None) -> str:
    if source.startswith(("http://", "https://")):
        if client is not None:
            return fetch_csv_with_retries(client, cfg, source)
        headers = {"User-Agent": cfg.user_agent}
        with httpx.Client(timeout=cfg.timeout_s, headers=headers, follow_redirects=True) as http:
            return fetch_csv_with_retries(http, cfg, source)

    path = Path(source)
    if not path.exists():
        raise LoadError(f"Event file not found: {source}")
    return path.read_text(encoding="utf-8-sig")


def load_events(
    source: str,
    cfg: LoaderConfig,
    replace: bool = False,
    client: Optional[httpx.Client] = None,
) -> int:
    """
    Read, parse and insert an event file into cfg.sqlite_path.

    Parsing happens before any write, so a malformed file inserts nothing.

    Returns:
        Number of events inserted
    """
    events = parse_events_csv(read_source(source, cfg, client=client))

    os.makedirs(os.path.dirname(cfg.sqlite_path) or ".", exist_ok=True)
    store = EventStore(cfg.sqlite_path)
    inserted = store.insert_events(events, replace=replace)
    print(f"[loader] inserted {inserted} events into {cfg.sqlite_path} ({store.count()} total)")
    return inserted


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Load a user_events CSV into SQLite")
    parser.add_argument("source", help="Path or http(s) URL of the event CSV")
    parser.add_argument("--db", type=str, help="SQLite path (default: $FUNNEL_SQLITE_PATH)")
    parser.add_argument("--replace", action="store_true", help="Delete existing events first")
    args = parser.parse_args(argv)

    try:
        cfg = load_config_from_env()
        if args.db:
            cfg.sqlite_path = args.db
        load_events(args.source, cfg, replace=args.replace)
        return 0
    except (EventParseError, LoadError, RuntimeError, sqlite3.Error) as e:
        print(f"[loader] ERROR: {type(e).__name__}: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
