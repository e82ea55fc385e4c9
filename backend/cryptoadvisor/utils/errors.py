"""
Custom exceptions for the crypto advisory ML signal core.

Provides domain-specific exceptions with clear error messages and
support for structured error handling.
"""

from typing import Optional, Dict, Any


class CryptoAdvisorError(Exception):
    """Base exception for all signal-core errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for reports and API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


# ============================================================================
# Database Errors
# ============================================================================

class DatabaseError(CryptoAdvisorError):
    """Database operation failed."""
    pass


class RecordNotFoundError(DatabaseError):
    """Database record not found, or an UPDATE affected zero rows."""
    pass


# ============================================================================
# Validation Errors
# ============================================================================

class ValidationError(CryptoAdvisorError):
    """Data validation failed."""
    pass


class InsufficientSamplesError(ValidationError):
    """Not enough samples to train a model."""

    def __init__(self, message: str, got: int, need: int, **kwargs):
        super().__init__(message, details={"got": got, "need": need}, **kwargs)
        self.got = got
        self.need = need


# ============================================================================
# Model Errors
# ============================================================================

class ModelError(CryptoAdvisorError):
    """Model training or serving failed."""
    pass


class ModelTrainingError(ModelError):
    """Model could not be trained on the provided dataset."""
    pass


class ModelArtifactError(ModelError):
    """Model artifact could not be serialized or deserialized."""
    pass


# ============================================================================
# Control Flow Errors
# ============================================================================

class OperationCancelledError(CryptoAdvisorError):
    """A long-running operation observed its cancellation signal."""
    pass


# ============================================================================
# Configuration Errors
# ============================================================================

class ConfigurationError(CryptoAdvisorError):
    """Application configuration error or missing collaborator."""
    pass
