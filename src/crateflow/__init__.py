"""CrateFlow: container fleet reconciliation and real-time log channel."""

__version__ = "0.1.0"
