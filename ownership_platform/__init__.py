"""Ownership Filings Platform (SEC 13F / 13D / 13G / Forms 3, 4, 5) - Backend.

Core concepts:
- Filings are ingested from the SEC (current feeds + quarterly bulk archives),
  parsed into canonical records, and written idempotently through the Gateway.
- Analytics (position changes, sentiment, concentration, accumulation alerts)
  read normalized data back through the same Gateway.
- Monetary values are stored in whole dollars regardless of the filing era.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
