"""
Tenant scoping.

Every storage read goes through ``scoped()`` / ``get_scoped()`` and every
insert takes its organization from ``owner_id()``, so a clinic user never sees
or writes rows of another organization. Platform super admins are not
filtered unless they explicitly picked a clinic.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, TypeVar

from sqlalchemy import Select
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ScopeError(PermissionError):
    """The caller has no organization to act on."""


@dataclass(frozen=True)
class Scope:
    clinic_id: str | None
    is_super_admin: bool = False
    # a super admin narrowed the request to one clinic (cross-clinic endpoints)
    explicit: bool = False
    user_id: str | None = None

    @property
    def filters(self) -> bool:
        return not self.is_super_admin or self.explicit

    @classmethod
    def platform(cls, user_id: str | None = None) -> "Scope":
        """Unfiltered scope for super admins and maintenance scripts."""
        return cls(clinic_id=None, is_super_admin=True, user_id=user_id)

    @classmethod
    def clinic(cls, clinic_id: str, user_id: str | None = None) -> "Scope":
        return cls(clinic_id=clinic_id, is_super_admin=False, user_id=user_id)


def _required_clinic(scope: Scope) -> str:
    if not scope.clinic_id:
        logger.warning("Scoped query without clinic (user=%s)", scope.user_id)
        raise ScopeError("User is not associated with any clinic")
    return scope.clinic_id


def scoped(stmt: Select, model: Any, scope: Scope) -> Select:
    """Add the organization filter for ``model`` unless the scope is elevated."""
    if not scope.filters:
        return stmt
    return stmt.where(model.organization_id == _required_clinic(scope))


def in_scope(obj: Any, scope: Scope) -> bool:
    if obj is None:
        return False
    if not scope.filters:
        return True
    return obj.organization_id == _required_clinic(scope)


def get_scoped(session: Session, model: type[T], obj_id: Any, scope: Scope) -> T | None:
    """
    Primary key lookup honouring the scope.
    Rows of another organization come back as None, like missing rows.
    """
    if obj_id is None:
        return None
    obj = session.get(model, obj_id)
    if not in_scope(obj, scope):
        if obj is not None:
            logger.warning(
                "Denied %s %s to user %s (clinic %s)", model.__name__, obj_id, scope.user_id, scope.clinic_id
            )
        return None
    return obj


def owner_id(scope: Scope, requested: str | None = None) -> str:
    """
    Organization stamped on new rows.
    Clinic users always write into their own clinic; a super admin may name one.
    """
    if scope.is_super_admin and requested:
        return requested
    return _required_clinic(scope)
