from __future__ import annotations

import logging
import re

from sqlalchemy import select

from .auth_models import Organization, OrganizationType, User, UserRole
from .auth_security import hash_password, verify_password
from .db import db_session

logger = logging.getLogger(__name__)


class AccountNotActive(PermissionError):
    """Valid credentials, but the account may not sign in (disabled or awaiting approval)."""


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.strip().lower()).strip("-")
    return slug or "clinic"


def _unique_slug(s, base: str) -> str:
    slug, n = base, 1
    while s.execute(select(Organization.id).where(Organization.slug == slug)).first() is not None:
        n += 1
        slug = f"{base}-{n}"
    return slug


def _new_user(s, username: str, password: str, **fields) -> User:
    username = username.strip().lower()
    if not username or not password:
        raise ValueError("Username and password are required.")
    if s.execute(select(User.id).where(User.username == username)).first() is not None:
        raise ValueError("Username already registered.")

    u = User(username=username, password_hash=hash_password(password), **fields)
    s.add(u)
    s.flush()
    return u


def create_user(
    username: str,
    password: str,
    first_name: str,
    last_name: str,
    role: UserRole = UserRole.STAFF,
    organization_id: str | None = None,
    **extra,
) -> User:
    if role is not UserRole.SUPER_ADMIN and not organization_id:
        raise ValueError("Only super admins may exist without an organization.")

    with db_session() as s:
        if organization_id and s.get(Organization, organization_id) is None:
            raise ValueError("Organization not found.")
        u = _new_user(
            s,
            username,
            password,
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            role=role,
            organization_id=organization_id,
            is_active=True,
            **extra,
        )
        logger.info("Created user %s (%s) in organization %s", u.username, role.value, organization_id)
        return u


def authenticate(username: str, password: str) -> User | None:
    """
    None for unknown users or wrong passwords.
    Raises AccountNotActive when the password is right but the account cannot log in.
    """
    username = username.strip().lower()
    with db_session() as s:
        u = s.execute(select(User).where(User.username == username)).scalar_one_or_none()
        if not u or not verify_password(password, u.password_hash):
            return None
        if not u.is_active:
            raise AccountNotActive("Account is disabled")
        if u.role is UserRole.PENDING:
            raise AccountNotActive(
                "Your account is pending approval. Please wait for an administrator to activate your account."
            )
        if u.organization_id:
            org = s.get(Organization, u.organization_id)
            if org is not None and not org.is_active:
                raise AccountNotActive("Your clinic account is suspended")
        return u


def get_user(user_id: str) -> User | None:
    with db_session() as s:
        return s.get(User, user_id)


def get_user_by_username(username: str) -> User | None:
    with db_session() as s:
        return s.execute(select(User).where(User.username == username.strip().lower())).scalar_one_or_none()


# =========================
# Registration
# =========================
def register_clinic(
    clinic_name: str,
    username: str,
    password: str,
    first_name: str,
    last_name: str,
    email: str | None = None,
    org_type: OrganizationType = OrganizationType.CLINIC,
) -> tuple[Organization, User]:
    """
    "create clinic" registration:
    - new organization (slug derived from the name)
    - its first user as clinic_admin, owner of the organization
    """
    if not clinic_name.strip():
        raise ValueError("Clinic name is required.")

    with db_session() as s:
        org = Organization(
            name=clinic_name.strip(),
            slug=_unique_slug(s, slugify(clinic_name)),
            type=org_type,
            email=email,
        )
        s.add(org)
        s.flush()

        admin = _new_user(
            s,
            username,
            password,
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            email=email,
            role=UserRole.CLINIC_ADMIN,
            organization_id=org.id,
        )
        org.owner_id = admin.id
        logger.info("Registered organization %s with admin %s", org.slug, admin.username)
        return org, admin


def join_clinic(
    clinic_slug: str,
    username: str,
    password: str,
    first_name: str,
    last_name: str,
    email: str | None = None,
) -> User:
    """"join clinic" registration: the account waits as `pending` until an admin approves it."""
    with db_session() as s:
        org = s.execute(
            select(Organization).where(Organization.slug == clinic_slug.strip().lower())
        ).scalar_one_or_none()
        if org is None or not org.is_active:
            raise ValueError("Clinic not found.")

        u = _new_user(
            s,
            username,
            password,
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            email=email,
            role=UserRole.PENDING,
            organization_id=org.id,
        )
        logger.info("User %s asked to join %s", u.username, org.slug)
        return u


def change_password(user_id: str, old_password: str, new_password: str) -> bool:
    with db_session() as s:
        u = s.get(User, user_id)
        if not u or not verify_password(old_password, u.password_hash):
            return False
        if not new_password:
            raise ValueError("New password is required.")
        u.password_hash = hash_password(new_password)
        return True
