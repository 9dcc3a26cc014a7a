"""
In-app notifications.

Rows are written inside the caller's session when they belong to a larger
change (low stock after an inventory update) and through ``create_notification``
otherwise. A type switched off in the user's preferences is dropped silently.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, func, select, update

from .db import db_session
from .models import (
    InventoryItem,
    InventoryStatus,
    Notification,
    NotificationPreference,
    NotificationPriority,
    NotificationType,
    User,
    UserRole,
)

logger = logging.getLogger(__name__)

_PREFERENCE_FIELD = {
    NotificationType.PASSWORD_RESET: "password_reset_in_app",
    NotificationType.LOW_STOCK: "low_stock_in_app",
    NotificationType.APPOINTMENT_REMINDER: "appointment_reminder_in_app",
    NotificationType.SECURITY_ALERT: "security_alert_in_app",
}


def _enabled(s, user_id: str, ntype: NotificationType) -> bool:
    pref = s.execute(
        select(NotificationPreference).where(NotificationPreference.user_id == user_id)
    ).scalar_one_or_none()
    if pref is None:
        return True
    return bool(getattr(pref, _PREFERENCE_FIELD[ntype]))


def _notify(
    s,
    user_id: str,
    ntype: NotificationType,
    title: str,
    message: str,
    organization_id: str | None = None,
    priority: NotificationPriority = NotificationPriority.MEDIUM,
    related_entity_type: str | None = None,
    related_entity_id: str | None = None,
    extra: dict[str, Any] | None = None,
) -> Notification | None:
    if not _enabled(s, user_id, ntype):
        logger.debug("Notification %s muted for user %s", ntype.value, user_id)
        return None

    n = Notification(
        user_id=user_id,
        organization_id=organization_id,
        type=ntype,
        priority=priority,
        title=title,
        message=message,
        related_entity_type=related_entity_type,
        related_entity_id=related_entity_id,
        extra=extra,
    )
    s.add(n)
    s.flush()
    return n


def create_notification(user_id: str, ntype: NotificationType, title: str, message: str, **kwargs) -> Notification | None:
    with db_session() as s:
        if s.get(User, user_id) is None:
            raise ValueError("User not found.")
        return _notify(s, user_id, ntype, title, message, **kwargs)


def notify_low_stock(s, item: InventoryItem) -> list[Notification]:
    """Tell every active admin of the item's clinic that it ran low (or out)."""
    out = item.status is InventoryStatus.OUT_OF_STOCK
    admins = s.scalars(
        select(User).where(
            and_(
                User.organization_id == item.organization_id,
                User.role.in_((UserRole.CLINIC_ADMIN, UserRole.ADMIN)),
                User.is_active.is_(True),
            )
        )
    ).all()

    created = []
    for admin in admins:
        n = _notify(
            s,
            admin.id,
            NotificationType.LOW_STOCK,
            title=f"{item.name} is {'out of stock' if out else 'running low'}",
            message=f"{item.current_quantity} {item.unit} left (minimum {item.minimum_quantity}).",
            organization_id=item.organization_id,
            priority=NotificationPriority.HIGH if out else NotificationPriority.MEDIUM,
            related_entity_type="inventory_item",
            related_entity_id=item.id,
            extra={"current_quantity": item.current_quantity, "minimum_quantity": item.minimum_quantity},
        )
        if n is not None:
            created.append(n)

    logger.info("Low stock on %s: notified %d admin(s)", item.name, len(created))
    return created


def list_notifications(user_id: str, unread_only: bool = False, limit: int = 50) -> list[Notification]:
    with db_session() as s:
        q = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            q = q.where(Notification.read_at.is_(None))
        return list(s.scalars(q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)))


def unread_count(user_id: str) -> int:
    with db_session() as s:
        return s.scalar(
            select(func.count(Notification.id)).where(
                and_(Notification.user_id == user_id, Notification.read_at.is_(None))
            )
        ) or 0


def mark_read(user_id: str, notification_id: int) -> bool:
    with db_session() as s:
        n = s.get(Notification, notification_id)
        # another user's notification looks missing
        if not n or n.user_id != user_id:
            return False
        if n.read_at is None:
            n.read_at = datetime.now(timezone.utc)
        return True


def mark_all_read(user_id: str) -> int:
    with db_session() as s:
        result = s.execute(
            update(Notification)
            .where(and_(Notification.user_id == user_id, Notification.read_at.is_(None)))
            .values(read_at=datetime.now(timezone.utc))
        )
        return result.rowcount or 0


def delete_notification(user_id: str, notification_id: int) -> bool:
    with db_session() as s:
        n = s.get(Notification, notification_id)
        if not n or n.user_id != user_id:
            return False
        s.delete(n)
        return True


# =========================
# Preferences
# =========================
def get_preferences(user_id: str) -> NotificationPreference:
    with db_session() as s:
        pref = s.execute(
            select(NotificationPreference).where(NotificationPreference.user_id == user_id)
        ).scalar_one_or_none()
        if pref is None:
            pref = NotificationPreference(user_id=user_id)
            s.add(pref)
            s.flush()
        return pref


def update_preferences(user_id: str, **fields: bool) -> NotificationPreference:
    unknown = set(fields) - set(_PREFERENCE_FIELD.values())
    if unknown:
        raise ValueError(f"Unknown preference: {', '.join(sorted(unknown))}")

    with db_session() as s:
        pref = s.execute(
            select(NotificationPreference).where(NotificationPreference.user_id == user_id)
        ).scalar_one_or_none()
        if pref is None:
            pref = NotificationPreference(user_id=user_id)
            s.add(pref)
        for key, value in fields.items():
            if value is not None:
                setattr(pref, key, bool(value))
        s.flush()
        return pref
