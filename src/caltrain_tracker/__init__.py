"""Caltrain tracker: schedule ingestion, live departure matching and trip history."""

__version__ = "0.1.0"

from caltrain_tracker.__main__ import main

__all__ = ["main", "__version__"]
