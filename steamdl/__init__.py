"""Steam Workshop download job orchestration core."""

__version__ = "0.1.0"
