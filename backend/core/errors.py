"""
BUSINESS ERROR TAXONOMY

Typed errors raised by repositories and the consistency engine.
Each carries a machine-readable kind and the HTTP status the API adapter
maps it to. Client-caused errors are 4xx, dependency failures are 503.
"""

from typing import Dict, List, Optional


class BusinessError(Exception):
    """Base class for every error the API adapter translates."""
    kind = "BUSINESS_ERROR"
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict:
        return {"kind": self.kind, "detail": self.message}


class NotFoundError(BusinessError):
    """
    Raised when an id (or tenant+id pair) does not resolve.

    Identical whether the record never existed or belongs to another tenant.
    """
    kind = "NOT_FOUND"
    status_code = 404

    def __init__(self, entity: str, entity_id: Optional[str] = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found")


class ValidationFailedError(BusinessError):
    """Raised on schema / required-field violations"""
    kind = "VALIDATION_FAILED"
    status_code = 422

    def __init__(self, errors: List[Dict[str, str]], message: str = "Validation failed"):
        self.errors = errors
        super().__init__(message)

    def to_dict(self) -> Dict:
        data = super().to_dict()
        data["errors"] = self.errors
        return data


class DuplicateIdentifierError(BusinessError):
    """
    Raised on a (tenant, identifier) uniqueness violation.

    retryable=True when the identifier was server generated,
    False when the caller supplied it.
    """
    kind = "DUPLICATE_IDENTIFIER"
    status_code = 409

    def __init__(self, entity: str, identifier: str, retryable: bool = False):
        self.entity = entity
        self.identifier = identifier
        self.retryable = retryable
        super().__init__(f"{entity} '{identifier}' already exists")


class IdentifierCollisionError(DuplicateIdentifierError):
    """Raised when generated identifiers kept colliding until the retry bound"""
    kind = "IDENTIFIER_COLLISION"
    status_code = 503

    def __init__(self, entity: str, attempts: int, identifier: str = ""):
        self.attempts = attempts
        super().__init__(entity, identifier, retryable=True)
        self.message = (
            f"Failed to create {entity} after {attempts} attempts "
            f"due to identifier collisions"
        )
        self.args = (self.message,)


class IllegalStateTransitionError(BusinessError):
    """Raised for an unrecognised status or an edit not allowed in the current state"""
    kind = "ILLEGAL_STATE_TRANSITION"
    status_code = 400

    def __init__(self, message: str, allowed: Optional[List[str]] = None):
        self.allowed = allowed or []
        super().__init__(message)

    def to_dict(self) -> Dict:
        data = super().to_dict()
        if self.allowed:
            data["allowed"] = self.allowed
        return data


class DependencyUnavailableError(BusinessError):
    """Raised when the allocator or tenant store cannot be reached on the critical path"""
    kind = "DEPENDENCY_UNAVAILABLE"
    status_code = 503
