"""Provider interfaces for pteroctl."""
from __future__ import annotations

from .panel import PanelProvider, output_lines, validate_email
from .services import RestartReport, ServiceManager, ServiceStatus

__all__ = [
    "PanelProvider",
    "RestartReport",
    "ServiceManager",
    "ServiceStatus",
    "output_lines",
    "validate_email",
]
