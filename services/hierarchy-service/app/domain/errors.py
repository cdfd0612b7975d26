"""Error taxonomy raised by the hierarchy engine."""

from __future__ import annotations


class HierarchyError(Exception):
    """Base class for every failure surfaced by the account hierarchy engine.

    ``transient`` marks errors a caller may retry with backoff. Policy
    violations are never transient.
    """

    code = "hierarchy_error"
    transient = False

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code.replace("_", " "))


class NotFound(HierarchyError):
    code = "not_found"


class AccountNotFound(NotFound):
    code = "account_not_found"

    def __init__(self, account_id: str) -> None:
        super().__init__(f"account {account_id} not found")
        self.account_id = account_id


class ParentNotFound(NotFound):
    code = "parent_not_found"

    def __init__(self, parent_id: str) -> None:
        super().__init__(f"parent account {parent_id} not found")
        self.parent_id = parent_id


class Conflict(HierarchyError):
    """Concurrent structural mutation or optimistic version mismatch."""

    code = "conflict"
    transient = True


class QuotaExceeded(HierarchyError):
    code = "quota_exceeded"


class DepthExceeded(HierarchyError):
    code = "depth_exceeded"


class InvalidAccountType(HierarchyError):
    code = "invalid_account_type"


class ParentDisallowsSubAccounts(HierarchyError):
    code = "parent_disallows_sub_accounts"


class AccessDenied(HierarchyError):
    code = "access_denied"


class AccountSuspended(HierarchyError):
    code = "account_suspended"


class HasChildren(HierarchyError):
    code = "has_children"


class ActiveJobsRunning(HierarchyError):
    code = "active_jobs_running"


class UpstreamUnavailable(HierarchyError):
    """The access grant store (or another collaborator) could not be reached."""

    code = "upstream_unavailable"
    transient = True


class StorageUnavailable(HierarchyError):
    code = "storage_unavailable"
    transient = True


class HierarchyCorrupted(HierarchyError):
    """The parent graph violates acyclicity or the depth bound."""

    code = "hierarchy_corrupted"
