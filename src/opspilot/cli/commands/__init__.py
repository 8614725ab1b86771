"""OpsPilot CLI commands."""
