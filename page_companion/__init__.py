"""Page summaries and scoped questions with per-tab history."""

__version__ = "0.1.0"
