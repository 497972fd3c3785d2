"""Trend-layer aggregation helpers.

This package turns the contributions of a rolling window into population
statistics. Every subgroup below its category's cohort floor is dropped
before anything is written, and survivors are upserted keyed by
(category, subgroup, metric, period) so that re-runs never duplicate rows.
"""
