"""Credential storage and legacy migration."""
