from __future__ import annotations

import enum
import uuid
from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base, now_utc


def new_uuid() -> str:
    return str(uuid.uuid4())


class UserRole(enum.Enum):
    SUPER_ADMIN = "super_admin"
    CLINIC_ADMIN = "clinic_admin"
    ADMIN = "admin"
    DOCTOR = "doctor"
    STAFF = "staff"
    STUDENT = "student"
    PENDING = "pending"


class OrganizationType(enum.Enum):
    CLINIC = "clinic"
    DOCTOR = "doctor"
    STUDENT = "student"


class DoctorSpecialty(enum.Enum):
    GENERAL_DENTISTRY = "general_dentistry"
    ORTHODONTICS = "orthodontics"
    PERIODONTICS = "periodontics"
    ENDODONTICS = "endodontics"
    PROSTHODONTICS = "prosthodontics"
    ORAL_SURGERY = "oral_surgery"
    PEDIATRIC_DENTISTRY = "pediatric_dentistry"
    COSMETIC_DENTISTRY = "cosmetic_dentistry"
    IMPLANTOLOGY = "implantology"
    ORAL_PATHOLOGY = "oral_pathology"


ADMIN_ROLES = frozenset({UserRole.SUPER_ADMIN, UserRole.CLINIC_ADMIN, UserRole.ADMIN})


class Organization(Base):
    """
    Tenant: a clinic, a solo doctor or a student account.
    Every patient, appointment and financial row belongs to exactly one.
    """
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    slug: Mapped[str] = mapped_column(String(80), nullable=False, unique=True)
    type: Mapped[OrganizationType] = mapped_column(
        Enum(OrganizationType), default=OrganizationType.CLINIC, nullable=False
    )
    email: Mapped[str | None] = mapped_column(String(120), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    owner_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False)

    def __repr__(self) -> str:
        return f"Organization({self.slug})"


class User(Base):
    """
    Application user.
    - username unique across the platform
    - password_hash with bcrypt (passlib)
    - organization_id is NULL only for platform super admins
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    organization_id: Mapped[str | None] = mapped_column(ForeignKey("organizations.id"), nullable=True, index=True)
    username: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)

    first_name: Mapped[str] = mapped_column(String(80), nullable=False)
    last_name: Mapped[str] = mapped_column(String(80), nullable=False)
    email: Mapped[str | None] = mapped_column(String(120), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    role: Mapped[UserRole] = mapped_column(Enum(UserRole), default=UserRole.STAFF, nullable=False)
    specialty: Mapped[DoctorSpecialty | None] = mapped_column(Enum(DoctorSpecialty), nullable=True)
    license_number: Mapped[str | None] = mapped_column(String(60), nullable=True)
    bio: Mapped[str | None] = mapped_column(Text, nullable=True)
    # compensation terms; informative, doctor payments are recorded explicitly
    commission_rate: Mapped[int | None] = mapped_column(Integer, nullable=True)
    hired_on: Mapped[date | None] = mapped_column(Date, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def __repr__(self) -> str:
        return f"User({self.username}, {self.role.value})"
