"""PropIntel orchestration core: execution planning and agent context management."""

__version__ = "0.1.0"
