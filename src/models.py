"""Shared enums used across the procedure gate packages."""

from __future__ import annotations

from enum import Enum


class Severity(str, Enum):
    """Severity attached to audit entries and violations."""

    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class RiskLevel(str, Enum):
    """Declared risk level of a procedure."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"
