"""Scan engines."""
