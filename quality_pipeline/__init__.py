"""Report quality scoring and duplicate detection pipeline."""

__version__ = "0.1.0"
