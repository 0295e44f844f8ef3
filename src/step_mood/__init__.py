"""Step-to-mood reconciliation and scheduling engine."""

__version__ = "0.1.0"
