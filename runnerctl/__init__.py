"""Reconciliation logic for self-hosted CI runners, an in-memory object store, and scheduled overrides."""

__version__ = "0.1.0"