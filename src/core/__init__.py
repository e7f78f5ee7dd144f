"""Shared pipeline types and error taxonomy."""
