from __future__ import annotations


class OrchestratorError(RuntimeError):
    """Base class for all orchestration errors."""


class ConfigurationError(OrchestratorError, ValueError):
    """Parameters that must be rejected before any order is placed."""


class TerminalError(OrchestratorError):
    """Failure inside the terminal adapter."""


class TerminalConnectionError(TerminalError):
    """Transient communication failure; pollers treat it as 'no signal this tick'."""


class TerminalDependencyError(TerminalError):
    """MetaTrader5 import failed."""


class CircuitOpenError(TerminalError):
    """Circuit breaker is open."""
