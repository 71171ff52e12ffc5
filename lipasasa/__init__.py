"""LipaSasa payments: provider initiation and callback reconciliation."""

__version__ = "1.0.0"
