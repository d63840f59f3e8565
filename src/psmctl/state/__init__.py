"""Registry helpers for psmctl."""
from __future__ import annotations

from .models import Server, ServerStatus, ServiceTier
from .registry import ServerRegistry

__all__ = ["Server", "ServerRegistry", "ServerStatus", "ServiceTier"]
