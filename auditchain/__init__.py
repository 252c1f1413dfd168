"""Tamper-evident, append-only audit log with per-chain hash linking."""

__version__ = "0.1.0"
