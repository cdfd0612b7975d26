"""Account hierarchy service orchestrating authorization, structure, and auditing."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Iterator

from schemas import (
    AccountCreated,
    AccountDeleted,
    AccountRenamed,
    AccountSummary,
    AccountUpdated,
    ContextSwitched,
    HierarchyEvent,
    HierarchyEventType,
)

from ..metrics import CONTEXT_SWITCHES, HIERARCHY_MUTATIONS
from .account import Account, AccountContext, BillingInfo
from .context import AccountContextManager
from .contracts import AccessGrant, AccountPatch, AccountStore, Capability, CreateAccountInput, GrantStore
from .errors import AccessDenied, AccountNotFound, HierarchyError, ParentNotFound
from .hierarchy import HierarchyResolver
from .permissions import CapabilitySet, PermissionResolver
from .usage import NodeUsage, UsageAggregator, UsageReport

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ActiveContext:
    """Session context paired with capabilities resolved at read time."""

    context: AccountContext
    account: Account
    capabilities: CapabilitySet


def _summary(account: Account) -> AccountSummary:
    return AccountSummary(
        account_id=account.account_id,
        parent_account_id=account.parent_account_id,
        name=account.name,
        account_path=account.account_path,
        level=account.level,
        account_type=account.account_type.value,
    )


def _now() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def _track(operation: str) -> Iterator[None]:
    try:
        yield
    except HierarchyError as exc:
        HIERARCHY_MUTATIONS.labels(operation=operation, outcome=exc.code).inc()
        raise
    HIERARCHY_MUTATIONS.labels(operation=operation, outcome="ok").inc()


class AccountHierarchyService:
    """Entry point used by the HTTP layer.

    Every call re-resolves the actor's capabilities; nothing about a user's
    permissions is cached between requests.
    """

    def __init__(
        self,
        store: AccountStore,
        grants: GrantStore,
        hierarchy: HierarchyResolver,
        permissions: PermissionResolver,
        usage: UsageAggregator,
        contexts: AccountContextManager,
    ) -> None:
        self._store = store
        self._grants = grants
        self._hierarchy = hierarchy
        self._permissions = permissions
        self._usage = usage
        self._contexts = contexts

    # -- authorization helpers ----------------------------------------------

    def _require(self, actor_id: str, account_id: str, capability: Capability) -> None:
        if not self._permissions.resolve(actor_id, account_id).has(capability.value):
            logger.info("user %s lacks %s on account %s", actor_id, capability.value, account_id)
            raise AccessDenied(f"{capability.value} is required on account {account_id}")

    def _require_visible(self, actor_id: str, account_id: str) -> None:
        if not self._permissions.can_act_as(actor_id, account_id):
            raise AccessDenied(f"user {actor_id} cannot access account {account_id}")

    def _audit(self, account_id: str | None, actor_id: str | None, event_type: HierarchyEventType, event: HierarchyEvent) -> None:
        self._store.write_audit_event(
            account_id=account_id,
            event_type=event_type.value,
            actor=actor_id,
            metadata=event.model_dump(mode="json"),
        )

    # -- structure -----------------------------------------------------------

    def create_root_account(self, actor_id: str, fields: CreateAccountInput) -> Account:
        """Create a standalone root account owned by ``actor_id``."""
        fields = replace(fields, owner_user_id=fields.owner_user_id or actor_id)
        with _track("create_root"):
            account = self._hierarchy.create_root_account(fields)
        self._audit(
            account.account_id,
            actor_id,
            HierarchyEventType.account_created,
            AccountCreated(occurred_at=_now(), account=_summary(account), created_by=actor_id),
        )
        return account

    def create_sub_account(self, actor_id: str, parent_id: str, fields: CreateAccountInput) -> Account:
        """Create a sub-account; the creator becomes owner of the new node."""
        try:
            self._hierarchy.get(parent_id)
        except AccountNotFound as exc:
            raise ParentNotFound(parent_id) from exc
        self._require(actor_id, parent_id, Capability.create_sub_accounts)
        fields = replace(fields, owner_user_id=fields.owner_user_id or actor_id)
        with _track("create_sub_account"):
            account = self._hierarchy.create_sub_account(parent_id, fields)
        self._audit(
            account.account_id,
            actor_id,
            HierarchyEventType.account_created,
            AccountCreated(occurred_at=_now(), account=_summary(account), created_by=actor_id),
        )
        return account

    def get_account(self, actor_id: str, account_id: str) -> Account:
        account = self._hierarchy.get(account_id)
        self._require_visible(actor_id, account_id)
        return account

    def update_account(
        self,
        actor_id: str,
        account_id: str,
        patch: AccountPatch,
        expected_version: int | None = None,
    ) -> Account:
        """Apply a profile, settings or billing patch on behalf of ``actor_id``."""
        before = self._hierarchy.get(account_id)
        if patch.touches_profile():
            self._require(actor_id, account_id, Capability.change_settings)
        if patch.touches_billing():
            self._require(actor_id, account_id, Capability.manage_billing)
        with _track("update"):
            updated = self._hierarchy.update_account(account_id, patch, expected_version=expected_version)
        if updated.account_path != before.account_path:
            self._audit(
                account_id,
                actor_id,
                HierarchyEventType.account_renamed,
                AccountRenamed(
                    occurred_at=_now(),
                    account_id=account_id,
                    old_path=before.account_path,
                    new_path=updated.account_path,
                ),
            )
        changed = [name for name in ("name", "company", "description", "settings", "billing") if getattr(patch, name) is not None]
        self._audit(
            account_id,
            actor_id,
            HierarchyEventType.account_updated,
            AccountUpdated(occurred_at=_now(), account_id=account_id, fields=changed),
        )
        return updated

    def delete_account(self, actor_id: str, account_id: str, *, force: bool = False) -> list[str]:
        self._hierarchy.get(account_id)
        self._require(actor_id, account_id, Capability.delete_account)
        with _track("delete"):
            deleted = self._hierarchy.delete_account(account_id, force=force)
        for deleted_id in deleted:
            self._grants.delete_grants_for_account(deleted_id)
        self._audit(
            account_id,
            actor_id,
            HierarchyEventType.account_deleted,
            AccountDeleted(occurred_at=_now(), account_id=account_id, force=force, deleted_ids=deleted),
        )
        return deleted

    def hierarchy(self, actor_id: str, account_id: str) -> NodeUsage:
        self._hierarchy.get(account_id)
        self._require_visible(actor_id, account_id)
        return self._usage.aggregate_tree(account_id)

    def ancestors(self, actor_id: str, account_id: str) -> list[Account]:
        self._hierarchy.get(account_id)
        self._require_visible(actor_id, account_id)
        return self._hierarchy.ancestor_chain(account_id)

    # -- permissions, usage, billing ----------------------------------------

    def permissions(self, actor_id: str, account_id: str, user_id: str | None = None) -> CapabilitySet:
        """Resolve ``user_id``'s capabilities; looking at another user needs access to the account."""
        target_user = user_id or actor_id
        if target_user != actor_id:
            self._hierarchy.get(account_id)
            self._require_visible(actor_id, account_id)
        return self._permissions.resolve(target_user, account_id)

    def usage_report(self, actor_id: str, account_id: str) -> UsageReport:
        self._hierarchy.get(account_id)
        self._require_visible(actor_id, account_id)
        return self._usage.check_limits(account_id)

    def effective_billing(self, actor_id: str, account_id: str) -> BillingInfo:
        self._hierarchy.get(account_id)
        self._require_visible(actor_id, account_id)
        return self._usage.effective_billing(account_id)

    def available_accounts(self, actor_id: str) -> list[tuple[Account, AccessGrant]]:
        return self._permissions.accessible_accounts(actor_id)

    # -- session context -----------------------------------------------------

    def switch_context(self, session_id: str, actor_id: str, account_id: str) -> ActiveContext:
        previous = self._contexts.current(session_id)
        try:
            context = self._contexts.switch(session_id, actor_id, account_id)
        except HierarchyError as exc:
            CONTEXT_SWITCHES.labels(outcome=exc.code).inc()
            raise
        CONTEXT_SWITCHES.labels(outcome="ok").inc()
        self._audit(
            account_id,
            actor_id,
            HierarchyEventType.context_switched,
            ContextSwitched(
                occurred_at=context.switched_at,
                session_id=session_id,
                user_id=actor_id,
                account_id=account_id,
                previous_account_id=previous.active_account_id if previous else None,
            ),
        )
        return ActiveContext(
            context=context,
            account=self._hierarchy.get(account_id),
            capabilities=self._permissions.resolve(actor_id, account_id),
        )

    def current_context(self, session_id: str) -> ActiveContext | None:
        active = self._contexts.active(session_id)
        if active is None:
            return None
        context, account, capabilities = active
        return ActiveContext(context=context, account=account, capabilities=capabilities)

    def end_context(self, session_id: str) -> None:
        self._contexts.end(session_id)
