"""Keygate HTTP layer."""
