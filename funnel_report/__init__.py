"""
E-commerce funnel reporting.

Runs a fixed set of read-only aggregate queries over the user_events table
and renders them as:
  - a Markdown report
  - a static single-file HTML dashboard

Every figure is reproducible from the table contents alone.
"""

__version__ = "0.1.0"
