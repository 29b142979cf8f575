"""Loads user_events CSV files into the SQLite database read by funnel_report."""
