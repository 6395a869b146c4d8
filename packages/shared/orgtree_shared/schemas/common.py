from enum import Enum

from pydantic import BaseModel

class Role(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    EDITOR = "editor"
    VIEWER = "viewer"

# Roles allowed to read an organization's transfer records
TRANSFER_VIEWER_ROLES: frozenset["Role"] = frozenset({Role.OWNER, Role.ADMIN})

SYSTEM_ACTOR = "system"

class Pagination(BaseModel):
    limit: int
    offset: int
    count: int

