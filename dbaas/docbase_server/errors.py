"""
Error types for Docbase.

Every validation point in the schema and query layers maps to exactly one
of the classes below. Errors are raised where the problem is detected and
propagate unchanged to the caller; nothing in this package converts them
into silent successes.

Invariants:
    - All errors inherit from DocbaseError
    - `code` is stable and safe for programmatic handling
    - Errors are raised before any persisted write whenever the failing
      check can be performed up front

How to change safely:
    - Add new error classes rather than reusing an unrelated code
    - Never change an existing `code` string; clients match on it
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class DocbaseError(Exception):
    """Base exception for all Docbase errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    default_code = "DOCBASE_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Error envelope returned to clients."""
        return {"code": self.code, "error": self.message}


class InvalidClassNameError(DocbaseError):
    """Class name is malformed, or the class already exists / does not exist."""

    default_code = "INVALID_CLASS_NAME"


class InvalidKeyNameError(DocbaseError):
    """Field name is not a valid identifier."""

    default_code = "INVALID_KEY_NAME"


class ClassNotEmptyError(DocbaseError):
    """Field lifecycle violation.

    Raised when:
    - Adding a field that already exists
    - Deleting a field that does not exist
    """

    default_code = "CLASS_NOT_EMPTY"


class ChangedImmutableFieldError(DocbaseError):
    """Attempt to add or remove a default column."""

    default_code = "CHANGED_IMMUTABLE_FIELD"


class IncorrectTypeError(DocbaseError):
    """Type conflict against the committed schema.

    Raised when:
    - A field is validated with a type other than the committed one
    - A second GeoPoint field would be added to a class or object
    """

    default_code = "INCORRECT_TYPE"


class MissingRequiredFieldError(DocbaseError):
    """A required value is absent.

    Raised when:
    - A Pointer/Relation type has no targetClass
    - An object lacks (or deletes) a required column of its class
    """

    default_code = "MISSING_REQUIRED_FIELD"

    def __init__(
        self,
        message: str,
        missing: Optional[List[str]] = None,
    ) -> None:
        super().__init__(message, details={"missing": missing or []})
        self.missing = missing or []


class InvalidJSONError(DocbaseError):
    """Malformed document: bad CLP, unknown option, unrecognized type."""

    default_code = "INVALID_JSON"


class InvalidQueryError(DocbaseError):
    """Malformed query operator or a where tree that cannot be rewritten."""

    default_code = "INVALID_QUERY"


class InvalidSessionTokenError(DocbaseError):
    """Anonymous caller on a session-scoped class."""

    default_code = "INVALID_SESSION_TOKEN"


class OperationForbiddenError(DocbaseError):
    """Caller may not create the requested class."""

    default_code = "OPERATION_FORBIDDEN"


class PermissionDeniedError(DocbaseError):
    """Class-level permission denies the operation.

    Attributes:
        class_name: Class being accessed
        operation: CLP operation that was denied
    """

    default_code = "PERMISSION_DENIED"

    def __init__(self, class_name: str, operation: str, message: Optional[str] = None) -> None:
        msg = message or f"Permission denied for action {operation} on class {class_name}."
        super().__init__(msg, details={"className": class_name, "operation": operation})
        self.class_name = class_name
        self.operation = operation
