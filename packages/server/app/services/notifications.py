"""
Ownership-transfer notifications.

Notifications are best-effort: the dispatcher runs them after the
transaction has committed, on their own asyncio task, and only logs
failures. Nothing here can fail or delay a transfer transition.
"""

from __future__ import annotations

import asyncio
import html
import uuid
from typing import Any, Optional

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings, get_settings
from app.models.user import User
from orgtree_shared.schemas.transfers import NotificationKind

log = structlog.get_logger()


class Notifier:
    """Interface for delivering a transfer notification to one user."""

    async def notify(
        self, kind: NotificationKind, to_user_id: uuid.UUID, context: dict[str, Any]
    ) -> bool:
        raise NotImplementedError


class LogNotifier(Notifier):
    """Records notifications in the log only (email not configured)."""

    async def notify(
        self, kind: NotificationKind, to_user_id: uuid.UUID, context: dict[str, Any]
    ) -> bool:
        log.info(
            "notification.logged",
            kind=kind.value,
            to_user_id=str(to_user_id),
            transfer_id=context.get("transfer_id"),
        )
        return True


# ---------------------------------------------------------------------------
# Email
# ---------------------------------------------------------------------------

_SUBJECTS = {
    NotificationKind.TRANSFER_INITIATED: "Action Required: Organization Ownership Transfer for {org_name}",
    NotificationKind.TRANSFER_ACCEPTED: "Ownership Transfer Accepted: {org_name}",
    NotificationKind.TRANSFER_REJECTED: "Ownership Transfer Rejected: {org_name}",
    NotificationKind.TRANSFER_CANCELLED: "Ownership Transfer Cancelled: {org_name}",
}

_BODIES = {
    NotificationKind.TRANSFER_INITIATED: (
        "{initiator_name} has initiated a request to transfer ownership of {org_name} to you.\n"
        "Reason: {reason}\n"
        "Please log in to review and accept this transfer request within 7 days "
        "(expires {expires_at})."
    ),
    NotificationKind.TRANSFER_ACCEPTED: (
        "{recipient_name} has accepted the ownership transfer for {org_name}. "
        "You are now an admin of the organization."
    ),
    NotificationKind.TRANSFER_REJECTED: (
        "{recipient_name} has rejected the ownership transfer request for {org_name}.\n"
        "Reason: {response_reason}"
    ),
    NotificationKind.TRANSFER_CANCELLED: (
        "{initiator_name} has cancelled the ownership transfer request for {org_name}.\n"
        "Reason: {response_reason}"
    ),
}


def render_email(kind: NotificationKind, context: dict[str, Any], app_url: str) -> dict[str, str]:
    """Build subject, plain text and HTML for a notification."""
    values = {
        "org_name": context.get("org_name") or "your organization",
        "initiator_name": context.get("initiator_name") or "The organization owner",
        "recipient_name": context.get("recipient_name") or "The recipient",
        "reason": context.get("reason") or "(none given)",
        "response_reason": context.get("response_reason") or "(none given)",
        "expires_at": context.get("expires_at") or "in 7 days",
    }
    subject = _SUBJECTS[kind].format(**values)
    text = _BODIES[kind].format(**values)
    link = f"{app_url.rstrip('/')}/organizations/{context.get('org_id', '')}/settings"
    text = f"{text}\n\n{link}"
    paragraphs = "".join(f"<p>{html.escape(line)}</p>" for line in text.splitlines() if line)
    return {
        "subject": subject,
        "text": text,
        "html": f"<h2>{html.escape(subject)}</h2>{paragraphs}",
    }


class EmailNotifier(Notifier):
    """Sends transfer emails through an HTTP email API (Resend-compatible)."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self._settings.email_api_key)

    async def _email_for(self, user_id: uuid.UUID) -> Optional[str]:
        async with self._session_factory() as session:
            user = await session.get(User, user_id)
            return user.email if user else None

    async def notify(
        self, kind: NotificationKind, to_user_id: uuid.UUID, context: dict[str, Any]
    ) -> bool:
        if not self.configured:
            log.warning(
                "notification.email_not_configured",
                kind=kind.value,
                to_user_id=str(to_user_id),
            )
            return False

        to_email = await self._email_for(to_user_id)
        if not to_email:
            log.warning("notification.no_email", kind=kind.value, to_user_id=str(to_user_id))
            return False

        message = render_email(kind, context, self._settings.app_url)
        payload = {
            "from": self._settings.email_from_address,
            "to": [to_email],
            **message,
        }
        headers = {"Authorization": f"Bearer {self._settings.email_api_key}"}

        if self._client is not None:
            response = await self._client.post(
                self._settings.email_api_url, json=payload, headers=headers
            )
        else:
            async with httpx.AsyncClient(timeout=self._settings.email_timeout_seconds) as client:
                response = await client.post(
                    self._settings.email_api_url, json=payload, headers=headers
                )
        response.raise_for_status()
        log.info(
            "notification.email_sent",
            kind=kind.value,
            to_user_id=str(to_user_id),
            message_id=response.json().get("id"),
        )
        return True


# ---------------------------------------------------------------------------
# Post-commit dispatch
# ---------------------------------------------------------------------------

class NotificationDispatcher:
    """Fire-and-forget delivery of notifications on background tasks."""

    def __init__(self, notifier: Notifier):
        self.notifier = notifier
        self._tasks: set[asyncio.Task] = set()

    def dispatch(
        self, kind: NotificationKind, to_user_id: uuid.UUID, context: dict[str, Any]
    ) -> asyncio.Task:
        task = asyncio.create_task(self._deliver(kind, to_user_id, context))
        # Keep a strong reference until the task finishes.
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver(
        self, kind: NotificationKind, to_user_id: uuid.UUID, context: dict[str, Any]
    ) -> bool:
        try:
            delivered = await self.notifier.notify(kind, to_user_id, context)
        except Exception:
            log.exception(
                "notification.failed",
                kind=kind.value,
                to_user_id=str(to_user_id),
                transfer_id=context.get("transfer_id"),
            )
            return False
        if not delivered:
            log.warning(
                "notification.not_delivered",
                kind=kind.value,
                to_user_id=str(to_user_id),
                transfer_id=context.get("transfer_id"),
            )
        return delivered

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every in-flight notification to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def build_notifier(
    session_factory: async_sessionmaker[AsyncSession], settings: Optional[Settings] = None
) -> Notifier:
    settings = settings or get_settings()
    if settings.email_api_key:
        return EmailNotifier(session_factory, settings)
    log.info("notification.email_disabled", reason="ORGTREE_EMAIL_API_KEY not set")
    return LogNotifier()
