"""Domain-level request contracts and collaborator interfaces shared by multiple layers."""

from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from .account import Account, AccountContext, AccountType, BillingStatus, PlanLimits


class Capability(str, Enum):
    create_sub_accounts = "canCreateSubAccounts"
    invite_users = "canInviteUsers"
    manage_integrations = "canManageIntegrations"
    view_all_data = "canViewAllData"
    manage_billing = "canManageBilling"
    delete_account = "canDeleteAccount"
    change_settings = "canChangeSettings"


OWNER_CAPABILITIES: dict[str, bool] = {capability.value: True for capability in Capability}


@dataclass(slots=True)
class AccessGrant:
    """Explicit capabilities a user holds on exactly one account.

    ``False`` values are explicit revocations and shadow grants made further up
    the hierarchy.
    """

    user_id: str
    account_id: str
    capabilities: dict[str, bool] = field(default_factory=dict)
    role: str = "Member"


@dataclass(slots=True)
class SettingsOverrides:
    timezone: str | None = None
    allow_sub_accounts: bool | None = None
    max_sub_accounts: int | None = None
    retention_days: int | None = None
    two_factor_required: bool | None = None


@dataclass(slots=True)
class BillingOverrides:
    status: BillingStatus | None = None
    plan: str | None = None
    limits: PlanLimits | None = None


@dataclass(slots=True)
class CreateAccountInput:
    """Validated inputs required to create a root or sub-account."""

    name: str
    account_type: AccountType
    company: str = ""
    description: str = ""
    owner_user_id: str | None = None
    settings: SettingsOverrides = field(default_factory=SettingsOverrides)
    billing: BillingOverrides = field(default_factory=BillingOverrides)


@dataclass(slots=True)
class AccountPatch:
    """Partial update; ``None`` fields are left untouched."""

    name: str | None = None
    company: str | None = None
    description: str | None = None
    settings: SettingsOverrides | None = None
    billing: BillingOverrides | None = None

    def touches_billing(self) -> bool:
        return self.billing is not None

    def touches_profile(self) -> bool:
        return any(value is not None for value in (self.name, self.company, self.description, self.settings))


class AccountStore(Protocol):
    """Durable storage of account nodes.

    Every mutating call is a single all-or-nothing transaction.

    ``create_account`` commits only while the parent is still at
    ``parent_version`` and writes ``owner_grant`` in the same transaction.
    ``update_account`` commits only while the account is at
    ``expected_version`` and, when given, the parent at ``parent_version``;
    with ``rename_from`` it moves every path under that prefix to the
    account's new path inside the same transaction.
    """

    def create_account(
        self,
        account: Account,
        *,
        parent_version: int | None,
        owner_grant: AccessGrant | None = None,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Account | None: ...

    def update_account(
        self,
        account: Account,
        *,
        expected_version: int,
        parent_version: int | None = None,
        rename_from: str | None = None,
    ) -> Account: ...

    def delete_account(self, account_id: str) -> bool: ...

    def children_of(self, account_id: str | None) -> list[Account]: ...

    def subtree(self, account_id: str) -> list[Account]: ...

    def get_accounts(self, account_ids: list[str]) -> list[Account]: ...

    def count_active_jobs(self, account_id: str) -> int: ...

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...


class GrantStore(Protocol):
    def grants_for(self, user_id: str, account_ids: list[str]) -> list[AccessGrant]: ...

    def grants_of_user(self, user_id: str) -> list[AccessGrant]: ...

    def delete_grants_for_account(self, account_id: str) -> None: ...


class ParentLocks(Protocol):
    def hold(self, key: str, timeout: float | None = None) -> AbstractContextManager[None]: ...


class ContextStore(Protocol):
    def put(self, context: AccountContext) -> None: ...

    def get(self, session_id: str) -> AccountContext | None: ...

    def delete(self, session_id: str) -> None: ...
