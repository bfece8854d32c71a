"""
Class-level permissions (CLP) for Docbase.

A CLP document maps an operation to the set of subjects allowed to perform
it, expressed as {subject: true}:

    {
        "find": {"*": true},
        "update": {"role:admin": true, "a1b2c3d4e5f6g7h8i9j0k1l2": true},
    }

Subjects:
    - 24-character alphanumeric user id
    - role:<name>
    - * (public)

Invariants:
    - An operation missing from the CLP is open to everyone
    - The only legal subject value is boolean true
    - Authorization is enforced: a non-empty entry that neither contains
      "*" nor intersects the caller's ACL group denies the operation

How to change safely:
    - New operations must also be added to SchemaDefaults.clp_operations
    - New subject shapes need a pattern in SUBJECT_PATTERNS
"""

from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Any, Iterable, Mapping

from ..errors import InvalidJSONError, PermissionDeniedError
from .defaults import DEFAULT_SCHEMA_DEFAULTS, SchemaDefaults

logger = logging.getLogger(__name__)


class SubjectType(Enum):
    """Kinds of CLP subjects."""

    USER = "user"
    ROLE = "role"
    PUBLIC = "public"


PUBLIC_SUBJECT = "*"

SUBJECT_PATTERNS = (
    (SubjectType.USER, re.compile(r"^[a-zA-Z0-9]{24}$")),
    (SubjectType.ROLE, re.compile(r"^role:.*")),
    (SubjectType.PUBLIC, re.compile(r"^\*$")),
)


def parse_subject(key: str) -> SubjectType:
    """Classify a CLP subject key.

    Raises:
        InvalidJSONError: If the key is not a user id, role or *
    """
    if isinstance(key, str):
        for subject_type, pattern in SUBJECT_PATTERNS:
            if pattern.match(key):
                return subject_type
    raise InvalidJSONError(f"{key} is not a valid key for class level permissions")


def validate_class_level_permissions(
    perms: Mapping[str, Any] | None,
    defaults: SchemaDefaults = DEFAULT_SCHEMA_DEFAULTS,
) -> None:
    """Validate a CLP document.

    Args:
        perms: CLP document (None means "no CLP", which is valid)
        defaults: Schema defaults providing the valid operations

    Raises:
        InvalidJSONError: On an unknown operation, a malformed subject key
            or a subject value other than true
    """
    if perms is None:
        return
    if not isinstance(perms, Mapping):
        raise InvalidJSONError("class level permissions must be an object")

    for operation, subjects in perms.items():
        if operation not in defaults.clp_operations:
            raise InvalidJSONError(
                f"{operation} is not a valid operation for class level permissions"
            )
        if not isinstance(subjects, Mapping):
            raise InvalidJSONError(
                f"{subjects!r} is not a valid value for class level permissions {operation}"
            )
        for key, value in subjects.items():
            parse_subject(key)
            if value is False:
                raise InvalidJSONError(
                    "false is not a valid value for class level permissions "
                    f"{operation}:{key}:false"
                )
            if value is not True:
                raise InvalidJSONError(
                    "this perm is not a valid value for class level permissions "
                    f"{operation}:{key}:perm"
                )


class PermissionChecker:
    """Evaluates CLP documents against a caller's ACL group.

    This class is stateless and thread-safe.

    Example:
        >>> checker = PermissionChecker()
        >>> checker.check_permission({"find": {"role:admin": True}}, ["role:admin"], "find")
        True
        >>> checker.check_permission({"find": {"role:admin": True}}, ["u1"], "find")
        False
    """

    def check_permission(
        self,
        class_perms: Mapping[str, Any] | None,
        acl_group: Iterable[str],
        operation: str,
    ) -> bool:
        """Whether the ACL group may perform the operation.

        Args:
            class_perms: The class's CLP document (None when unset)
            acl_group: Caller subjects (user id, role:<name> entries)
            operation: CLP operation name

        Returns:
            True if access is granted
        """
        if not class_perms:
            return True
        subjects = class_perms.get(operation)
        if subjects is None:
            return True
        if PUBLIC_SUBJECT in subjects:
            return True
        return any(subject in subjects for subject in acl_group)

    def check_permission_or_raise(
        self,
        class_name: str,
        class_perms: Mapping[str, Any] | None,
        acl_group: Iterable[str],
        operation: str,
    ) -> None:
        """Check permission and raise if denied.

        Raises:
            PermissionDeniedError: If access is denied
        """
        acl_group = list(acl_group)
        if not self.check_permission(class_perms, acl_group, operation):
            logger.debug(
                "CLP denied",
                extra={"class_name": class_name, "operation": operation},
            )
            raise PermissionDeniedError(class_name, operation)


def merge_with_default_permissions(
    perms: Mapping[str, Any] | None,
    defaults: SchemaDefaults = DEFAULT_SCHEMA_DEFAULTS,
) -> dict[str, dict[str, bool]]:
    """Overlay a stored CLP on the fully-open default, as returned to clients."""
    merged = defaults.default_class_level_permissions()
    for operation, subjects in (perms or {}).items():
        merged[operation] = dict(subjects)
    return merged
