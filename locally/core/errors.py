from __future__ import annotations

from locally.core.diagnostics import Diagnostics


class LocallyError(Exception):
    """Base error for the locally control plane."""


class ConfigurationError(LocallyError):
    """Missing or invalid configuration detected during service initialization."""


class EncryptionError(LocallyError):
    """Encryption or key derivation failure."""


class InvalidCiphertextError(EncryptionError):
    """Ciphertext is malformed, truncated, or fails authentication."""


class QueryParseError(ValueError):
    """Filter or order expression cannot be parsed or references a disallowed column."""


class WorkerRegistrationError(LocallyError):
    """Worker metadata conflicts with an already registered worker."""


class MessageServiceError(LocallyError):
    """Message service lifecycle misuse (double start, no workers)."""


class DiagnosticsError(LocallyError):
    """A failed operation raised to the API boundary with its full Diagnostics."""

    def __init__(self, diagnostics: Diagnostics, *, status_code: int | None = None) -> None:
        super().__init__(diagnostics.summary())
        self.diagnostics = diagnostics
        self.status_code = status_code
