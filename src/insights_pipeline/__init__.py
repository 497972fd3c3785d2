"""insights_pipeline package.

Contains modules for pseudonymizing consenting users, generalizing their raw
health-tracking records into anonymized contributions, and aggregating recent
contributions into population-level trend statistics.

Architecture:
- Raw → Contribution → Trend layers stored in MongoDB
- Dask runs the per-user contribution work on a bounded thread pool
- Pandas computes the trend groupings
- Pydantic models validate raw records, contributions and trends
"""

__all__ = ["__version__"]
__version__ = "0.1.0"
