"""
Domain exceptions.

Every error carries the HTTP status it maps to and a message that is safe to
show to end users. Provider error codes and database details are logged where
they happen, never attached here.
"""
from typing import Any, Dict, Optional


class RoomVibeError(Exception):
    """Base class for all RoomVibe domain errors"""

    status_code = 500
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message}


# Validation (400)


class ValidationFailed(RoomVibeError):
    status_code = 400
    message = "Invalid request"


class InvalidAmount(ValidationFailed):
    message = "Invalid credit amount"


class MissingDescription(ValidationFailed):
    message = "Description is required"


class ReferenceConflict(ValidationFailed):
    message = "Reference ID already used by another account"


class MalformedEvent(ValidationFailed):
    message = "Missing required metadata"


class PackageMismatch(ValidationFailed):
    message = "Invalid package or credits mismatch"


class UnknownPackage(ValidationFailed):
    message = "Invalid package ID"


class NoBaseImage(ValidationFailed):
    message = "No image available"


class SuggestionAlreadyApplied(ValidationFailed):
    message = "Suggestion has already been applied"


class InvalidSignature(ValidationFailed):
    message = "Invalid signature"


# Business rule (400)


class InsufficientCredits(RoomVibeError):
    status_code = 400
    message = "Insufficient credits"

    def __init__(self, required: int, available: Optional[int] = None):
        self.required = required
        self.available = available
        super().__init__()

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["credits"] = self.available
        data["required"] = self.required
        return data


# Store / configuration (500)


class CreditStoreUnavailable(RoomVibeError):
    message = "Credit store temporarily unavailable"


class PaymentsNotConfigured(RoomVibeError):
    message = "Payments are not configured"


class BackendNotConfigured(RoomVibeError):
    message = "Generation backend is not configured"


class CreditOperationError(RoomVibeError):
    """Client-side failure talking to the credit endpoints"""

    def __init__(self, operation: str, message: Optional[str] = None):
        self.operation = operation
        super().__init__(message or f"Failed to {operation} credits")


# Generation (500 / 404)


class GenerationError(RoomVibeError):
    message = "Image generation failed"


class PromptGenerationFailed(GenerationError):
    message = "Failed to generate prompt"


class ImageJobSubmissionFailed(GenerationError):
    message = "Failed to start image generation"


class GenerationFailed(GenerationError):
    """The provider detail stays on the exception for logs; clients get the generic message"""

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail
        super().__init__()


class GenerationTimeout(GenerationError):
    message = "Image generation timed out"


class JobNotFound(GenerationError):
    status_code = 404
    message = "Prediction not found"
