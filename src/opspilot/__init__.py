"""OpsPilot: cron-driven automation scheduler for managed servers."""

__version__ = "0.1.0"
