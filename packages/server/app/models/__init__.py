# SQLModel definitions, imported here to ensure metadata is populated for Alembic.
from .base import UUIDMixin, TimestampMixin  # noqa: F401
from .organization import Organization  # noqa: F401
from .user import User  # noqa: F401
from .membership import OrganizationMember  # noqa: F401
from .ownership_transfer import OwnershipTransfer  # noqa: F401
from .transfer_audit import TransferAuditEntry  # noqa: F401
