#!/usr/bin/env python3
"""
Funnel reporting CLI.

Usage:
    python -m funnel_report.run_report                              # report on existing database
    python -m funnel_report.run_report --events data/user_events.csv --replace
    python -m funnel_report.run_report --help

Environment variables:
    FUNNEL_SQLITE_PATH: Path to the events database (default: data/funnel.sqlite)
    FUNNEL_OUTPUT_DIR: Output directory for artifacts (default: output)
    FUNNEL_TOP_N: Rows in the top-customers table (default: 20)
"""

from __future__ import annotations

import argparse
import os
import sys
import traceback
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from event_loader import main as event_loader
from funnel_report import queries, render, scoring


@dataclass
class ReportConfig:
    sqlite_path: str
    output_dir: str
    top_n: int


def load_config_from_env() -> ReportConfig:
    raw_top_n = os.environ.get("FUNNEL_TOP_N", str(queries.DEFAULT_TOP_N)).strip()
    try:
        top_n = int(raw_top_n)
    except ValueError as e:
        raise RuntimeError(f"Invalid FUNNEL_TOP_N: {raw_top_n!r}") from e

    return ReportConfig(
        sqlite_path=os.environ.get("FUNNEL_SQLITE_PATH", "data/funnel.sqlite"),
        output_dir=os.environ.get("FUNNEL_OUTPUT_DIR", "output"),
        top_n=top_n,
    )


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for report generation.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    parser = argparse.ArgumentParser(
        description="Generate funnel, revenue and cohort reports from user_events",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--events", type=str, help="CSV path or http(s) URL to load before reporting")
    parser.add_argument("--replace", action="store_true", help="Delete existing events before loading (requires --events)")
    parser.add_argument("--db", type=str, help="SQLite path (default: $FUNNEL_SQLITE_PATH)")
    parser.add_argument("--output-dir", type=str, help="Output directory (default: $FUNNEL_OUTPUT_DIR)")
    parser.add_argument("--top-n", type=int, help="Rows in the top-customers table (default: 20)")

    args = parser.parse_args(argv)

    if args.replace and not args.events:
        print("[report] ERROR: --replace only applies together with --events", file=sys.stderr)
        return 1

    try:
        cfg = load_config_from_env()
    except RuntimeError as e:
        print(f"[report] ERROR: {e}", file=sys.stderr)
        return 1

    if args.db:
        cfg.sqlite_path = args.db
    if args.output_dir:
        cfg.output_dir = args.output_dir
    if args.top_n is not None:
        cfg.top_n = args.top_n

    if cfg.top_n < 1:
        print("[report] ERROR: --top-n must be >= 1", file=sys.stderr)
        return 1

    try:
        if args.events:
            loader_cfg = event_loader.load_config_from_env()
            loader_cfg.sqlite_path = cfg.sqlite_path
            event_loader.load_events(args.events, loader_cfg, replace=args.replace)

        if not Path(cfg.sqlite_path).exists():
            print(f"[report] ERROR: Database not found at {cfg.sqlite_path}", file=sys.stderr)
            return 1

        print(f"[report] Running queries against {cfg.sqlite_path}...")

        report = queries.extract(cfg.sqlite_path, top_n=cfg.top_n)
        scores = scoring.score(report)

        report_md = render.render_report(report, scores)
        dashboard_html = render.render_dashboard(report, scores)

        output_path = Path(cfg.output_dir)
        output_path.mkdir(parents=True, exist_ok=True)

        report_path = output_path / "report.md"
        dashboard_path = output_path / "dashboard.html"

        report_path.write_text(report_md, encoding="utf-8")
        dashboard_path.write_text(dashboard_html, encoding="utf-8")

        funnel = report.funnel_summary
        print("[report] Generated artifacts:")
        print(f"[report]   - {report_path}")
        print(f"[report]   - {dashboard_path}")
        print("[report]")
        print("[report] Summary:")
        print(f"[report]   Events: {report.data_summary.total_records}")
        print(f"[report]   Users: {report.data_summary.unique_users}")
        print(f"[report]   Revenue: {render.format_money(report.data_summary.total_revenue)}")
        print(f"[report]   Overall conversion: {render.format_pct(funnel.overall_conversion_rate)}")
        if scores.biggest_drop_off is not None:
            biggest = scores.biggest_drop_off
            print(f"[report]   Biggest drop-off: {biggest.funnel_stage} ({render.format_pct(biggest.drop_off_rate)})")

        if scores.insights:
            print("[report]")
            print("[report] Insights:")
            for insight in scores.insights:
                print(f"[report]   [{insight.severity.upper()}] {insight.message}")

        return 0

    except Exception as e:
        print(f"[report] ERROR: {type(e).__name__}: {e}", file=sys.stderr)
        traceback.print_exc(file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
