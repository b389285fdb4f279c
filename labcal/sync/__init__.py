"""Sync engine module."""
