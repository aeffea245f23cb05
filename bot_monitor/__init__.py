"""Periodic health monitor and redeploy trigger for a fixed roster of HTTP bots."""

__version__ = "0.1.0"
