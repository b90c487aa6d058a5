"""Narrow interfaces to the services around the approval core.

The document store owns file bytes and the identity provider owns users;
the engine only needs to flag a document as signed and to ask which roles
a user holds.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, Mapping, Optional, Protocol, Set


class DocumentStore(Protocol):
    async def mark_signed(self, document_id: str, signed_at: datetime) -> None:
        """Record that every required signature on the document is in place.

        Called before the completing transition is committed and again if
        the caller retries, so implementations must be idempotent.
        """


class RoleDirectory(Protocol):
    def roles_for(self, user_id: str) -> Set[str]:
        """Return the roles ``user_id`` may sign as."""


class InMemoryDocumentStore(DocumentStore):
    """Keeps signed timestamps per document id."""

    def __init__(self) -> None:
        self.signed: Dict[str, datetime] = {}

    async def mark_signed(self, document_id: str, signed_at: datetime) -> None:
        self.signed[document_id] = signed_at

    def is_signed(self, document_id: str) -> bool:
        return document_id in self.signed


class StaticRoleDirectory(RoleDirectory):
    """Role lookup backed by a fixed ``user id -> roles`` mapping."""

    def __init__(self, roles: Optional[Mapping[str, Iterable[str]]] = None) -> None:
        self._roles: Dict[str, Set[str]] = {
            user: set(user_roles) for user, user_roles in (roles or {}).items()
        }

    def roles_for(self, user_id: str) -> Set[str]:
        return set(self._roles.get(user_id, ()))

    def grant(self, user_id: str, role: str) -> None:
        self._roles.setdefault(user_id, set()).add(role)
