"""Error taxonomy of the ledger core.

Every failure path raises one of these. ``code`` is the machine-readable
string the request layer puts in ``{"error": code}``, ``status`` its HTTP
status.
"""
from __future__ import annotations

from typing import Optional


class LedgerError(Exception):
    code = "ledger_error"
    status = 500

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(LedgerError):
    code = "validation_error"
    status = 400


class UnknownUserError(LedgerError):
    code = "unknown_user"
    status = 404

    def __init__(self, user_id: str) -> None:
        super().__init__(f"user {user_id} does not exist")
        self.user_id = user_id


class NotAMemberError(LedgerError):
    code = "not_a_member"
    status = 403

    def __init__(self, user_id: str, group_id: str) -> None:
        super().__init__(f"user {user_id} is not a member of group {group_id}")
        self.user_id = user_id
        self.group_id = group_id


class ForbiddenError(LedgerError):
    code = "forbidden"
    status = 403


class NotFoundError(LedgerError):
    code = "not_found"
    status = 404


class AlreadyExistsError(LedgerError):
    code = "already_exists"
    status = 409


class OptimisticLockError(LedgerError):
    code = "optimistic_lock_failure"
    status = 409

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or "optimistic lock failure: balance was modified")


class AlreadyFinalizedError(LedgerError):
    code = "already_finalized"
    status = 409


class TransactionError(LedgerError):
    code = "transaction_failed"
    status = 503
