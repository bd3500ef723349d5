"""Shared services injected into the orchestrator."""

from .diagnostics import DiagnosticEntry, DiagnosticsRecorder, InFlightTracker
from .greeting_cache import GreetingCache, greeting_fingerprint
from .settings import Settings, SettingsStore

__all__ = [
    "DiagnosticEntry",
    "DiagnosticsRecorder",
    "InFlightTracker",
    "GreetingCache",
    "greeting_fingerprint",
    "Settings",
    "SettingsStore",
]
