"""
Ownership transfer lifecycle: the state machine behind handing an
organization to a new owner.

Handles:
- initiate / accept / reject / cancel, each in one transaction
- the owner/admin role swap on acceptance, atomic with the status change
- lazy expiration of overdue transfers on any late response
- the expiration sweep driven by the scheduler
- read paths: single transfer, org listing, history, recipient inbox
- post-commit, fire-and-forget notifications

Every write runs through ``_run``: one transaction, retried once on a
transient storage failure. Domain errors from ``app.core.errors`` are
raised to the caller untouched.
"""

from __future__ import annotations

import functools
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Sequence, TypeVar

import structlog
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import get_settings
from app.core.database import async_session_factory
from app.core.errors import (
    Conflict,
    Forbidden,
    InternalError,
    InvalidRecipient,
    InvalidRequest,
    NotFound,
    TransferError,
)
from app.models.base import as_utc, utcnow
from app.models.organization import Organization
from app.models.ownership_transfer import OwnershipTransfer
from app.models.transfer_audit import TransferAuditEntry
from app.models.user import User
from app.services import transfer_audit as audit
from app.services import transfer_repository as repo
from app.services.authorization import (
    can_view_transfer,
    require_initiator,
    require_member,
    require_owner,
    require_recipient,
    require_transfer_viewer,
)
from app.services.membership import MembershipStore
from app.services.notifications import NotificationDispatcher, Notifier, build_notifier
from orgtree_shared.schemas.common import SYSTEM_ACTOR, Role
from orgtree_shared.schemas.transfers import AuditEvent, NotificationKind, TransferStatus

log = structlog.get_logger()

T = TypeVar("T")

# PostgreSQL serialization_failure and deadlock_detected
_TRANSIENT_SQLSTATES = {"40001", "40P01"}


def _is_transient(exc: DBAPIError) -> bool:
    if exc.connection_invalidated or isinstance(exc, OperationalError):
        return True
    sqlstate = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    return sqlstate in _TRANSIENT_SQLSTATES


def _clean(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    text = text.strip()
    return text or None


@dataclass
class _Outcome:
    transfer: OwnershipTransfer
    context: dict[str, Any] = field(default_factory=dict)
    expired: bool = False


@dataclass(frozen=True)
class TransferHistory:
    """One transfer with its audit trail, oldest event first."""

    transfer: OwnershipTransfer
    audit_trail: list[TransferAuditEntry]


class OwnershipTransferManager:
    """Runs the ownership-transfer state machine against the database."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        *,
        notifier: Optional[Notifier] = None,
        membership: Optional[MembershipStore] = None,
        clock: Callable[[], datetime] = utcnow,
        expiry_days: Optional[int] = None,
    ):
        self._session_factory = session_factory or async_session_factory
        self._clock = clock
        self.membership = membership or MembershipStore()
        self.notifications = NotificationDispatcher(
            notifier or build_notifier(self._session_factory)
        )
        self.expiry = timedelta(days=expiry_days or get_settings().transfer_expiry_days)

    # -----------------------------------------------------------------------
    # Transaction boundary
    # -----------------------------------------------------------------------

    async def _run(
        self, operation: str, work: Callable[[AsyncSession], Awaitable[T]]
    ) -> T:
        for attempt in (1, 2):
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        return await work(session)
            except TransferError:
                raise
            except DBAPIError as exc:
                if attempt == 1 and _is_transient(exc):
                    log.warning("transfer.transient_retry", operation=operation, error=str(exc))
                    continue
                log.error("transfer.storage_failed", operation=operation, error=str(exc))
                raise InternalError(f"Storage failure during {operation}") from exc
        raise InternalError(f"Storage failure during {operation}")

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _is_overdue(self, transfer: OwnershipTransfer, now: datetime) -> bool:
        return (
            transfer.status == TransferStatus.PENDING.value
            and now > as_utc(transfer.expires_at)
        )

    async def _context(
        self,
        session: AsyncSession,
        transfer: OwnershipTransfer,
        org: Optional[Organization] = None,
    ) -> dict[str, Any]:
        """Notification context; JSON-friendly values only."""
        org = org or await session.get(Organization, transfer.org_id)
        initiator = await session.get(User, transfer.initiator_id)
        recipient = await session.get(User, transfer.recipient_id)
        return {
            "transfer_id": str(transfer.id),
            "org_id": str(transfer.org_id),
            "org_name": org.name if org else None,
            "initiator_id": str(transfer.initiator_id),
            "initiator_name": initiator.display_name if initiator else None,
            "recipient_id": str(transfer.recipient_id),
            "recipient_name": recipient.display_name if recipient else None,
            "reason": transfer.reason,
            "response_reason": transfer.response_reason,
            "expires_at": as_utc(transfer.expires_at).isoformat(),
        }

    async def _expire(
        self, session: AsyncSession, transfer: OwnershipTransfer, now: datetime
    ) -> bool:
        if not await repo.transition(session, transfer, TransferStatus.EXPIRED, now=now):
            return False
        await audit.record(
            session,
            transfer.id,
            AuditEvent.EXPIRED,
            actor_id=SYSTEM_ACTOR,
            actor_role=SYSTEM_ACTOR,
            now=now,
            reason=f"Auto-expired after {self.expiry.days} days",
            metadata={"expires_at": as_utc(transfer.expires_at).isoformat()},
        )
        return True

    async def _load_pending(
        self,
        session: AsyncSession,
        transfer_id: uuid.UUID,
        now: datetime,
        action: str,
        authorize: Callable[[OwnershipTransfer], None],
    ) -> tuple[OwnershipTransfer, bool]:
        """Lock the transfer and run the checks shared by accept/reject/cancel.

        ``authorize`` raises ``Forbidden`` for anyone but the acting party and
        runs before the status and deadline checks.

        Returns ``(transfer, expired)``; ``expired`` means the row was just
        moved to expired and the requested action must not run.
        """
        transfer = await repo.get_transfer(session, transfer_id, for_update=True)
        if transfer is None:
            raise NotFound("Transfer not found")
        authorize(transfer)
        if transfer.status != TransferStatus.PENDING.value:
            raise Conflict(
                Conflict.NOT_PENDING,
                f"Transfer cannot be {action}. Current status: {transfer.status}",
            )
        if self._is_overdue(transfer, now):
            if not await self._expire(session, transfer, now):
                raise Conflict(Conflict.NOT_PENDING, f"Transfer cannot be {action}")
            return transfer, True
        return transfer, False

    def _finish(
        self,
        outcome: _Outcome,
        kind: Optional[NotificationKind] = None,
        to_user_id: Optional[uuid.UUID] = None,
    ) -> OwnershipTransfer:
        """Post-commit: report lazy expiry or fire the notification."""
        transfer = outcome.transfer
        if outcome.expired:
            log.info(
                "transfer.lazily_expired",
                transfer_id=str(transfer.id),
                org_id=str(transfer.org_id),
            )
            raise Conflict(Conflict.EXPIRED, "This transfer has expired")
        if kind is not None and to_user_id is not None:
            self.notifications.dispatch(kind, to_user_id, outcome.context)
        return transfer

    # -----------------------------------------------------------------------
    # Lifecycle operations
    # -----------------------------------------------------------------------

    async def initiate(
        self,
        org_id: uuid.UUID,
        actor_id: uuid.UUID,
        recipient_id: uuid.UUID,
        reason: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> OwnershipTransfer:
        """Open a pending transfer from the current owner to another member."""
        reason = _clean(reason)

        async def work(session: AsyncSession) -> _Outcome:
            now = self._clock()
            org = await session.get(Organization, org_id)
            if org is None:
                raise NotFound("Organization not found")

            actor_role = await self.membership.get_role(session, org_id, actor_id)
            require_owner(actor_role)

            if recipient_id == actor_id:
                raise InvalidRecipient("Cannot transfer ownership to yourself")
            recipient_role = await self.membership.get_role(session, org_id, recipient_id)
            if recipient_role is None:
                raise InvalidRecipient("Recipient is not a member of this organization")
            if recipient_role is Role.OWNER:
                raise InvalidRecipient("Recipient is already an owner of this organization")

            if await repo.get_pending_for_org(session, org_id) is not None:
                raise Conflict(
                    Conflict.ALREADY_PENDING,
                    "A pending transfer already exists for this organization",
                )

            transfer = OwnershipTransfer(
                org_id=org_id,
                initiator_id=actor_id,
                recipient_id=recipient_id,
                status=TransferStatus.PENDING.value,
                reason=reason,
                created_at=now,
                updated_at=now,
                expires_at=now + self.expiry,
            )
            await repo.insert_pending(session, transfer)
            await audit.record(
                session,
                transfer.id,
                AuditEvent.INITIATED,
                actor_id=str(actor_id),
                actor_role=actor_role.value,
                now=now,
                reason=reason,
                metadata={
                    "org_id": str(org_id),
                    "recipient_id": str(recipient_id),
                    "expires_at": as_utc(transfer.expires_at).isoformat(),
                },
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return _Outcome(transfer, await self._context(session, transfer, org))

        outcome = await self._run("initiate", work)
        log.info(
            "transfer.initiated",
            transfer_id=str(outcome.transfer.id),
            org_id=str(org_id),
            initiator_id=str(actor_id),
            recipient_id=str(recipient_id),
        )
        return self._finish(outcome, NotificationKind.TRANSFER_INITIATED, recipient_id)

    async def accept(
        self,
        transfer_id: uuid.UUID,
        actor_id: uuid.UUID,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> OwnershipTransfer:
        """Recipient takes ownership; the initiator is demoted to admin."""

        async def work(session: AsyncSession) -> _Outcome:
            now = self._clock()
            transfer, expired = await self._load_pending(
                session,
                transfer_id,
                now,
                "accepted",
                lambda t: require_recipient(t, actor_id, "accept"),
            )
            if expired:
                return _Outcome(transfer, expired=True)

            org_id = transfer.org_id
            initiator_role = await self.membership.get_role(
                session, org_id, transfer.initiator_id, for_update=True
            )
            recipient_role = await self.membership.get_role(
                session, org_id, transfer.recipient_id, for_update=True
            )
            if recipient_role is None:
                raise InvalidRecipient("Recipient is no longer a member of this organization")
            if initiator_role is not Role.OWNER:
                raise Conflict(
                    Conflict.INITIATOR_NOT_OWNER,
                    "The initiator no longer owns this organization",
                )

            if not await repo.transition(session, transfer, TransferStatus.ACCEPTED, now=now):
                raise Conflict(Conflict.NOT_PENDING, "Transfer cannot be accepted")
            await self.membership.set_role(session, org_id, transfer.initiator_id, Role.ADMIN)
            await self.membership.set_role(session, org_id, transfer.recipient_id, Role.OWNER)
            await audit.record(
                session,
                transfer.id,
                AuditEvent.ACCEPTED,
                actor_id=str(actor_id),
                actor_role=recipient_role.value,
                now=now,
                metadata={
                    "previous_owner_id": str(transfer.initiator_id),
                    "new_owner_id": str(transfer.recipient_id),
                },
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return _Outcome(transfer, await self._context(session, transfer))

        outcome = await self._run("accept", work)
        if not outcome.expired:
            log.info(
                "transfer.accepted",
                transfer_id=str(transfer_id),
                org_id=str(outcome.transfer.org_id),
                previous_owner_id=str(outcome.transfer.initiator_id),
                new_owner_id=str(outcome.transfer.recipient_id),
            )
        return self._finish(
            outcome, NotificationKind.TRANSFER_ACCEPTED, outcome.transfer.initiator_id
        )

    async def reject(
        self,
        transfer_id: uuid.UUID,
        actor_id: uuid.UUID,
        response_reason: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> OwnershipTransfer:
        """Recipient declines; no role changes."""
        response_reason = _clean(response_reason)

        async def work(session: AsyncSession) -> _Outcome:
            now = self._clock()
            transfer, expired = await self._load_pending(
                session,
                transfer_id,
                now,
                "rejected",
                lambda t: require_recipient(t, actor_id, "reject"),
            )
            if expired:
                return _Outcome(transfer, expired=True)

            actor_role = await self.membership.get_role(session, transfer.org_id, actor_id)
            if not await repo.transition(
                session,
                transfer,
                TransferStatus.REJECTED,
                now=now,
                response_reason=response_reason,
            ):
                raise Conflict(Conflict.NOT_PENDING, "Transfer cannot be rejected")
            await audit.record(
                session,
                transfer.id,
                AuditEvent.REJECTED,
                actor_id=str(actor_id),
                actor_role=actor_role.value if actor_role else "unknown",
                now=now,
                reason=response_reason,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return _Outcome(transfer, await self._context(session, transfer))

        outcome = await self._run("reject", work)
        if not outcome.expired:
            log.info(
                "transfer.rejected",
                transfer_id=str(transfer_id),
                org_id=str(outcome.transfer.org_id),
            )
        return self._finish(
            outcome, NotificationKind.TRANSFER_REJECTED, outcome.transfer.initiator_id
        )

    async def cancel(
        self,
        transfer_id: uuid.UUID,
        actor_id: uuid.UUID,
        response_reason: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> OwnershipTransfer:
        """Initiator withdraws the request; no role changes."""
        response_reason = _clean(response_reason)

        async def work(session: AsyncSession) -> _Outcome:
            now = self._clock()
            transfer, expired = await self._load_pending(
                session,
                transfer_id,
                now,
                "cancelled",
                lambda t: require_initiator(t, actor_id),
            )
            if expired:
                return _Outcome(transfer, expired=True)

            actor_role = await self.membership.get_role(session, transfer.org_id, actor_id)
            if not await repo.transition(
                session,
                transfer,
                TransferStatus.CANCELLED,
                now=now,
                response_reason=response_reason,
            ):
                raise Conflict(Conflict.NOT_PENDING, "Transfer cannot be cancelled")
            await audit.record(
                session,
                transfer.id,
                AuditEvent.CANCELLED,
                actor_id=str(actor_id),
                actor_role=actor_role.value if actor_role else "unknown",
                now=now,
                reason=response_reason,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return _Outcome(transfer, await self._context(session, transfer))

        outcome = await self._run("cancel", work)
        if not outcome.expired:
            log.info(
                "transfer.cancelled",
                transfer_id=str(transfer_id),
                org_id=str(outcome.transfer.org_id),
            )
        return self._finish(
            outcome, NotificationKind.TRANSFER_CANCELLED, outcome.transfer.recipient_id
        )

    # -----------------------------------------------------------------------
    # Expiration sweep
    # -----------------------------------------------------------------------

    async def _expire_one(
        self, session: AsyncSession, *, transfer_id: uuid.UUID, now: datetime
    ) -> bool:
        transfer = await repo.get_transfer(session, transfer_id, for_update=True)
        if transfer is None or transfer.status != TransferStatus.PENDING.value:
            return False
        if not as_utc(transfer.expires_at) < now:
            return False
        return await self._expire(session, transfer, now)

    async def expire_overdue(self, now: Optional[datetime] = None) -> int:
        """Expire every pending transfer past its deadline.

        Each row gets its own transaction; a failure on one is logged and
        the sweep moves on. Returns how many rows this call expired.
        An explicit ``now`` must be timezone-aware.
        """
        if now is None:
            now = self._clock()
        elif now.tzinfo is None:
            raise InvalidRequest("now must be a timezone-aware datetime")
        else:
            now = now.astimezone(timezone.utc)
        async with self._session_factory() as session:
            overdue = await repo.list_overdue_ids(session, now)

        count = 0
        for transfer_id in overdue:
            work = functools.partial(self._expire_one, transfer_id=transfer_id, now=now)
            try:
                if await self._run("expire", work):
                    count += 1
            except Exception:
                log.exception("transfer_expiration.row_failed", transfer_id=str(transfer_id))

        if count:
            log.info("transfer_expiration.batch_expired", count=count, scanned=len(overdue))
        return count

    # -----------------------------------------------------------------------
    # Read paths
    # -----------------------------------------------------------------------

    async def list_history(
        self,
        org_id: uuid.UUID,
        *,
        actor_id: Optional[uuid.UUID] = None,
        page_size: int = 50,
    ) -> AsyncIterator[TransferHistory]:
        """Yield the org's transfers newest first, each with its audit trail.

        With ``actor_id`` set, only members of the org may read the history;
        internal callers pass none. Pages are fetched as the caller iterates;
        the iterator is single-use.
        """
        async with self._session_factory() as session:
            if await session.get(Organization, org_id) is None:
                raise NotFound("Organization not found")
            if actor_id is not None:
                require_member(await self.membership.get_role(session, org_id, actor_id))

        offset = 0
        while True:
            async with self._session_factory() as session:
                transfers = await repo.list_for_org(
                    session, org_id, limit=page_size, offset=offset
                )
                trails = await audit.trails_for(session, [t.id for t in transfers])
            for transfer in transfers:
                yield TransferHistory(transfer=transfer, audit_trail=trails.get(transfer.id, []))
            if len(transfers) < page_size:
                return
            offset += page_size

    async def get_transfer(
        self, transfer_id: uuid.UUID, actor_id: uuid.UUID
    ) -> OwnershipTransfer:
        async def work(session: AsyncSession) -> OwnershipTransfer:
            transfer = await repo.get_transfer(session, transfer_id)
            if transfer is None:
                raise NotFound("Transfer not found")
            role = await self.membership.get_role(session, transfer.org_id, actor_id)
            if not can_view_transfer(transfer, actor_id, role):
                raise Forbidden("Insufficient permissions to view this transfer")
            return transfer

        return await self._run("get_transfer", work)

    async def audit_trail(
        self, transfer_id: uuid.UUID, actor_id: uuid.UUID
    ) -> Sequence[TransferAuditEntry]:
        transfer = await self.get_transfer(transfer_id, actor_id)

        async def work(session: AsyncSession) -> Sequence[TransferAuditEntry]:
            return await audit.trail_for(session, transfer.id)

        return await self._run("audit_trail", work)

    async def list_transfers(
        self,
        org_id: uuid.UUID,
        actor_id: uuid.UUID,
        *,
        status: Optional[TransferStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Sequence[OwnershipTransfer]:
        async def work(session: AsyncSession) -> Sequence[OwnershipTransfer]:
            if await session.get(Organization, org_id) is None:
                raise NotFound("Organization not found")
            require_transfer_viewer(await self.membership.get_role(session, org_id, actor_id))
            return await repo.list_for_org(
                session, org_id, status=status, limit=limit, offset=offset
            )

        return await self._run("list_transfers", work)

    async def pending_for_user(self, user_id: uuid.UUID) -> Sequence[OwnershipTransfer]:
        """Pending transfers awaiting this user's answer."""

        async def work(session: AsyncSession) -> Sequence[OwnershipTransfer]:
            return await repo.list_pending_for_recipient(session, user_id)

        return await self._run("pending_for_user", work)

    async def drain_notifications(self) -> None:
        await self.notifications.drain()
