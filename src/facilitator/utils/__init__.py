"""Utility helpers shared across the facilitator package."""
