"""
Gamification Errors

Every error raised by the engine derives from ``BaseError`` and carries a
``details`` mapping, so callers can turn a failure into a structured
response with ``to_dict()`` instead of parsing messages.
"""

from typing import Any, Dict, Optional


class BaseError(Exception):
    """Root of the engine's error hierarchy."""

    code = "error"

    def __init__(
        self,
        message: str,
        original_exception: Optional[Exception] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.original_exception = original_exception
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Error code, message and details as plain data."""
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class StorageError(BaseError):
    """The profile store could not complete an operation."""

    code = "storage_error"

    def __init__(self, message: str, original_exception: Optional[Exception] = None):
        details = {"cause": type(original_exception).__name__} if original_exception else None
        super().__init__(f"Storage error: {message}", original_exception, details)


class ValidationError(BaseError):
    """
    Input failed validation.

    ``errors`` maps each offending field to a description of the problem.
    """

    code = "validation_error"

    def __init__(self, message: str, errors: Optional[Dict[str, Any]] = None):
        self.errors = errors or {}
        super().__init__(message, details={"errors": self.errors} if self.errors else None)


class InvalidInputError(ValidationError):
    """
    A value the engine refuses to work with.

    Raised for non-positive or non-finite XP amounts, unknown source types,
    unknown difficulty tiers, level numbers out of range and mismatched
    profiles.
    """

    code = "invalid_input"

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None):
        """
        Args:
            message: What is wrong with the value
            field: Name of the offending argument or attribute
            value: The rejected value
        """
        super().__init__(message, {field: repr(value)} if field else None)
        self.field = field
        self.value = value


class ConfigurationError(BaseError):
    """The configuration could not be loaded."""

    code = "configuration_error"

    def __init__(self, message: str, config_key: Optional[str] = None):
        super().__init__(message, details={"config_key": config_key} if config_key else None)
        self.config_key = config_key


class NotFoundError(BaseError):
    """A profile, reward or other record does not exist."""

    code = "not_found"

    def __init__(self, resource_type: str, resource_id: Any):
        super().__init__(
            f"{resource_type} {resource_id!r} not found",
            details={"resource_type": resource_type, "resource_id": str(resource_id)}
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class DuplicateError(BaseError):
    """
    The same thing was submitted twice.

    For XP awards ``identifier`` is the ``<source type>:<source id>`` key
    that was already rewarded.
    """

    code = "duplicate"

    def __init__(self, resource_type: str, identifier: Any):
        super().__init__(
            f"{resource_type} {identifier!r} was already recorded",
            details={"resource_type": resource_type, "identifier": str(identifier)}
        )
        self.resource_type = resource_type
        self.identifier = identifier


class ConcurrencyError(BaseError):
    """Another writer changed the record first, or its lock could not be taken in time."""

    code = "concurrency_conflict"

    def __init__(self, resource_type: str, resource_id: Any, reason: str = "conflicting update"):
        super().__init__(
            f"{resource_type} {resource_id!r}: {reason}",
            details={"resource_type": resource_type, "resource_id": str(resource_id), "reason": reason}
        )
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.reason = reason


class InvalidStateError(BaseError):
    """The requested transition is not allowed from the record's current state."""

    code = "invalid_state"

    def __init__(self, resource_type: str, resource_id: Any, state: str):
        super().__init__(
            f"{resource_type} {resource_id!r} is {state}",
            details={"resource_type": resource_type, "resource_id": str(resource_id), "state": state}
        )
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.state = state


class RewardExpiredError(InvalidStateError):
    """A reward was claimed after its expiry; it has been marked expired."""

    code = "reward_expired"

    def __init__(self, reward_id: Any):
        super().__init__("Reward", reward_id, "expired")
