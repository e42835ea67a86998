"""
Contract Service Exceptions

Every failure a caller has to tell apart carries a stable ``code``; the HTTP
layer maps codes to status codes in one place (see ``main.py``).
"""

from dataclasses import dataclass
from typing import List, Optional


class ContractError(Exception):
    """Base exception for all contract and signing errors."""
    code = "CONTRACT_ERROR"
    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class TemplateNotFound(ContractError):
    """Raised when a referenced template or contract id does not resolve."""
    code = "TEMPLATE_NOT_FOUND"
    status_code = 404

    def __init__(self, entity_id, kind: str = "Template"):
        self.entity_id = entity_id
        super().__init__(f"{kind} not found: {entity_id}")


@dataclass(frozen=True)
class RenderErrorDetail:
    """One problem found while rendering a template."""
    tag: str
    explanation: str
    part: Optional[str] = None


class TemplateRenderError(ContractError):
    """
    Raised when the placeholder engine cannot render a template.

    The message is meant to be shown as-is to whoever authored the
    template: a single explanation, or a numbered list when there are
    several problems.
    """
    code = "TEMPLATE_RENDER_ERROR"
    status_code = 400

    def __init__(self, message: str, details: Optional[List[RenderErrorDetail]] = None):
        self.details = list(details or [])
        super().__init__(message)

    @classmethod
    def from_details(cls, details: List[RenderErrorDetail]) -> "TemplateRenderError":
        explanations = [d.explanation for d in details if d.explanation]
        if not explanations:
            return cls("DOCX template error: unknown error", details)
        if len(explanations) == 1:
            return cls(explanations[0], details)
        message = "\n".join(f"{i}. {text}" for i, text in enumerate(explanations, start=1))
        return cls(message, details)


class StorageError(ContractError):
    code = "STORAGE_ERROR"
    status_code = 500


class ContractSignedError(ContractError):
    code = "CONTRACT_SIGNED"
    status_code = 409

    def __init__(self, message: str = "Contract is signed and cannot be modified"):
        super().__init__(message)


class AlreadySignedError(ContractError):
    code = "ALREADY_SIGNED"
    status_code = 409

    def __init__(self, message: str = "Already signed or invalid signer"):
        super().__init__(message)


class InvalidOrExpiredOtp(ContractError):
    code = "INVALID_OTP"
    status_code = 400

    def __init__(self, message: str = "Invalid or expired OTP"):
        super().__init__(message)


class InvalidOrExpiredToken(ContractError):
    code = "INVALID_TOKEN"
    status_code = 404

    def __init__(self, message: str = "Invalid or expired link"):
        super().__init__(message)


class ConsentRequired(ContractError):
    code = "CONSENT_REQUIRED"
    status_code = 400

    def __init__(self, message: str = "Consent required"):
        super().__init__(message)


class SignatureRequired(ContractError):
    code = "SIGNATURE_REQUIRED"
    status_code = 400

    def __init__(self, message: str = "Signature image required"):
        super().__init__(message)


class ConflictError(ContractError):
    """Raised when a contract keeps changing under a re-render."""
    code = "CONFLICT"
    status_code = 409


class DeliveryError(ContractError):
    """Raised when a one-time code could not be sent."""
    code = "DELIVERY_FAILED"
    status_code = 502


class InvalidVariableDefinitions(ContractError):
    code = "INVALID_DEFINITIONS"
    status_code = 400
