"""
Caller identity consumed by the schema and query layers.

Session-token verification happens upstream; by the time a request reaches
the query engine the caller is described by an Auth value:

- master: bypasses ACL scoping, CLPs and the class-creation guard
- authenticated user: {"objectId": ..., ...} plus the transitive role names
- anonymous: neither

Role names are resolved lazily through an optional async loader and cached
on the instance, so nested queries of one request resolve them once.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

ROLE_PREFIX = "role:"

RoleLoader = Callable[[Dict[str, Any]], Awaitable[Iterable[str]]]


def _role_subject(name: str) -> str:
    return name if name.startswith(ROLE_PREFIX) else f"{ROLE_PREFIX}{name}"


@dataclass
class Auth:
    """Caller capability.

    Attributes:
        is_master: Whether the caller holds the master key
        user: The authenticated user object (must carry objectId)
        user_roles: Resolved role subjects ("role:<name>"), None until loaded
        role_loader: Async callable returning the user's role names

    Example:
        >>> auth = Auth.for_user({"objectId": "a1b2"}, roles=["admin"])
        >>> await auth.acl_group()
        ['role:admin', 'a1b2']
    """

    is_master: bool = False
    user: Optional[Dict[str, Any]] = None
    user_roles: Optional[List[str]] = None
    role_loader: Optional[RoleLoader] = None

    @classmethod
    def master(cls) -> Auth:
        return cls(is_master=True)

    @classmethod
    def nobody(cls) -> Auth:
        return cls()

    @classmethod
    def for_user(
        cls,
        user: Dict[str, Any],
        roles: Optional[Iterable[str]] = None,
        role_loader: Optional[RoleLoader] = None,
    ) -> Auth:
        if not user or not user.get("objectId"):
            raise ValueError("user must carry an objectId")
        user_roles = [_role_subject(r) for r in roles] if roles is not None else None
        return cls(user=user, user_roles=user_roles, role_loader=role_loader)

    @property
    def user_id(self) -> Optional[str]:
        return self.user.get("objectId") if self.user else None

    async def get_user_roles(self) -> List[str]:
        """Role subjects of the caller (empty for master and anonymous)."""
        if self.is_master or self.user is None:
            return []
        if self.user_roles is None:
            names = await self.role_loader(self.user) if self.role_loader else []
            self.user_roles = [_role_subject(name) for name in names]
        return list(self.user_roles)

    async def acl_group(self) -> List[str]:
        """Subjects used for authorization: roles followed by the user id."""
        if self.user_id is None:
            return []
        return await self.get_user_roles() + [self.user_id]
