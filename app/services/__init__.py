"""Attach, usage and reconciliation services."""
