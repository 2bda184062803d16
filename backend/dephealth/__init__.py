"""Dependency connectivity health tracking."""
