"""
Domain errors raised by the ownership-transfer core.

Each error carries the HTTP status the API layer maps it to, a stable
machine-readable ``code`` and a human ``detail`` message.
"""

from __future__ import annotations


class TransferError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, detail: str | None = None, *, code: str | None = None):
        if code is not None:
            self.code = code
        self.detail = detail or self.code.replace("_", " ").capitalize()
        super().__init__(self.detail)


class NotFound(TransferError):
    status_code = 404
    code = "not_found"


class Forbidden(TransferError):
    status_code = 403
    code = "forbidden"


class InvalidRecipient(TransferError):
    status_code = 400
    code = "invalid_recipient"


class InvalidRequest(TransferError):
    status_code = 422
    code = "invalid_request"


class Conflict(TransferError):
    status_code = 409

    ALREADY_PENDING = "transfer_already_pending"
    NOT_PENDING = "transfer_not_pending"
    EXPIRED = "transfer_expired"
    INITIATOR_NOT_OWNER = "initiator_not_owner"

    def __init__(self, code: str, detail: str | None = None):
        super().__init__(detail, code=code)


class InternalError(TransferError):
    status_code = 500
    code = "internal_error"
