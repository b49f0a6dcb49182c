"""Utility helpers for shapes and validation."""
