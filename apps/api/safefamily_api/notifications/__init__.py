"""Operator notification channels."""

from safefamily_api.notifications.email import (
    LogNotifier,
    NotificationError,
    NotificationMessage,
    Notifier,
    ResendEmailNotifier,
    get_notifier,
    plan_label,
    render_signup_notification,
    send_signup_notification,
)

__all__ = [
    "LogNotifier",
    "NotificationError",
    "NotificationMessage",
    "Notifier",
    "ResendEmailNotifier",
    "get_notifier",
    "plan_label",
    "render_signup_notification",
    "send_signup_notification",
]
