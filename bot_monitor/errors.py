from __future__ import annotations


class MonitorError(Exception):
    """Base class for bot-monitor errors."""


class ConfigError(MonitorError):
    """Fatal startup configuration problem (missing credential, empty roster)."""


class NotifierError(MonitorError):
    """A notifier call failed (transport error or API rejected the request)."""
