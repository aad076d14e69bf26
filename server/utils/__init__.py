"""Shared helpers for the server package."""
