"""
Tests for notification rendering, email delivery and post-commit dispatch.
"""

from __future__ import annotations

import asyncio
import json
import uuid

import httpx
import pytest

from app.core.config import Settings
from app.services.notifications import (
    EmailNotifier,
    LogNotifier,
    NotificationDispatcher,
    build_notifier,
    render_email,
)
from orgtree_shared.schemas.transfers import NotificationKind, TransferStatus

REASON = "Passing the torch to the next generation"

CONTEXT = {
    "transfer_id": str(uuid.uuid4()),
    "org_id": "1b2c",
    "org_name": "Smith Family Tree",
    "initiator_name": "Ada Smith",
    "recipient_name": "Ben Smith",
    "reason": REASON,
    "response_reason": None,
    "expires_at": "2024-03-08T09:00:00+00:00",
}


def _settings(**overrides) -> Settings:
    values = {
        "email_api_key": "re_test_key",
        "email_api_url": "https://mail.example.test/emails",
        "email_from_address": "trees@example.test",
        "app_url": "https://orgtree.example.test/",
    }
    values.update(overrides)
    return Settings(**values)


class TestRenderEmail:

    def test_initiated(self):
        message = render_email(NotificationKind.TRANSFER_INITIATED, CONTEXT, "https://app.test")
        assert message["subject"] == "Action Required: Organization Ownership Transfer for Smith Family Tree"
        assert "Ada Smith has initiated" in message["text"]
        assert REASON in message["text"]
        assert "https://app.test/organizations/1b2c/settings" in message["text"]
        assert message["html"].startswith("<h2>")

    def test_missing_reason_placeholder(self):
        message = render_email(NotificationKind.TRANSFER_REJECTED, CONTEXT, "https://app.test")
        assert message["subject"] == "Ownership Transfer Rejected: Smith Family Tree"
        assert "(none given)" in message["text"]

    def test_html_is_escaped(self):
        context = {**CONTEXT, "org_name": "<script>x</script>"}
        message = render_email(NotificationKind.TRANSFER_CANCELLED, context, "https://app.test")
        assert "<script>" not in message["html"]

    @pytest.mark.parametrize("kind", list(NotificationKind))
    def test_every_kind_renders(self, kind):
        message = render_email(kind, CONTEXT, "https://app.test")
        assert "Smith Family Tree" in message["subject"]


class TestEmailNotifier:

    async def test_posts_to_email_api(self, session_factory, org):
        captured = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200, json={"id": "msg_123"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            notifier = EmailNotifier(session_factory, _settings(), client=client)
            delivered = await notifier.notify(NotificationKind.TRANSFER_INITIATED, org.admin, CONTEXT)

        assert delivered is True
        assert len(captured) == 1
        request = captured[0]
        assert str(request.url) == "https://mail.example.test/emails"
        assert request.headers["Authorization"] == "Bearer re_test_key"
        payload = json.loads(request.content)
        assert payload["from"] == "trees@example.test"
        assert payload["to"][0].startswith("admin-")
        assert payload["subject"].endswith("Smith Family Tree")

    async def test_http_error_raises(self, session_factory, org):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, json={"error": "boom"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            notifier = EmailNotifier(session_factory, _settings(), client=client)
            with pytest.raises(httpx.HTTPStatusError):
                await notifier.notify(NotificationKind.TRANSFER_ACCEPTED, org.owner, CONTEXT)

    async def test_not_configured(self, session_factory, org):
        notifier = EmailNotifier(session_factory, _settings(email_api_key=None))
        assert not notifier.configured
        assert await notifier.notify(NotificationKind.TRANSFER_ACCEPTED, org.owner, CONTEXT) is False

    async def test_unknown_user(self, session_factory, org):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            notifier = EmailNotifier(session_factory, _settings(), client=client)
            assert await notifier.notify(NotificationKind.TRANSFER_ACCEPTED, uuid.uuid4(), CONTEXT) is False

    def test_build_notifier(self, session_factory):
        assert isinstance(build_notifier(session_factory, _settings()), EmailNotifier)
        assert isinstance(build_notifier(session_factory, _settings(email_api_key=None)), LogNotifier)


class TestDispatcher:

    async def test_failures_are_contained(self):
        class Exploding(LogNotifier):
            async def notify(self, kind, to_user_id, context):
                raise RuntimeError("smtp down")

        dispatcher = NotificationDispatcher(Exploding())
        task = dispatcher.dispatch(NotificationKind.TRANSFER_ACCEPTED, uuid.uuid4(), CONTEXT)
        await dispatcher.drain()

        assert task.result() is False
        assert dispatcher.pending == 0

    async def test_drain_waits_for_slow_delivery(self):
        delivered = []

        class Slow(LogNotifier):
            async def notify(self, kind, to_user_id, context):
                await asyncio.sleep(0.01)
                delivered.append(to_user_id)
                return True

        dispatcher = NotificationDispatcher(Slow())
        users = [uuid.uuid4(), uuid.uuid4()]
        for user in users:
            dispatcher.dispatch(NotificationKind.TRANSFER_INITIATED, user, CONTEXT)
        assert dispatcher.pending == 2

        await dispatcher.drain()
        assert sorted(delivered) == sorted(users)
        assert dispatcher.pending == 0

    async def test_notifier_failure_does_not_affect_transfer(self, manager, org, notifier):
        notifier.fail = True
        transfer = await manager.initiate(org.org_id, org.owner, org.admin, REASON)
        accepted = await manager.accept(transfer.id, org.admin)
        await manager.drain_notifications()

        assert accepted.status == TransferStatus.ACCEPTED.value
        assert notifier.sent == []
