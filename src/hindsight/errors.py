"""
Exception hierarchy for the memory engine.

Validation-style errors subclass ValueError so callers that already guard
store input with ``except ValueError`` keep working.
"""

from typing import List, Optional


class HindsightError(Exception):
    """Base class for all memory engine errors."""


class ConfigurationError(HindsightError, ValueError):
    """Raised when the engine configuration is invalid. The engine refuses to start."""


class FragmentValidationError(HindsightError, ValueError):
    """
    Raised when store input is malformed (empty or oversized content,
    missing provenance, wrong embedding dimension).

    Attributes:
        errors: Individual validation messages
    """

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or [message]


class NamespaceError(HindsightError, ValueError):
    """Raised for malformed namespace keys or invalid fork/merge requests."""


class EmbeddingError(HindsightError):
    """Raised when the embedding provider fails or times out."""


class StorageUnavailableError(HindsightError):
    """Raised when the storage backend is down and write retries are exhausted."""


class ConsolidationError(HindsightError):
    """
    Raised by a consolidation batch that failed and was rolled back.

    Attributes:
        namespace: Namespace of the failed batch
    """

    def __init__(self, message: str, namespace: Optional[str] = None):
        super().__init__(message)
        self.namespace = namespace
