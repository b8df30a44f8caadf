"""Keygate - managed API keys, quotas and audit for a completion gateway."""

__version__ = "0.1.0"
