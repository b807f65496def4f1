"""Task dependency scheduler and checkpointed job lifecycle engine."""

__version__ = "0.1.0"
