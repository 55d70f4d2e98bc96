"""Multi-sheet term aggregation, key reconciliation and reporting for Excel workbooks."""

__version__ = "0.1.0"
