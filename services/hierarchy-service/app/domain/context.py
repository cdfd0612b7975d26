"""Per-session "acting as" state.

A session moves from unselected to active on its first switch, between
active accounts on later switches, and to ended when it is closed. Only the
selected account id is kept; access and capabilities are resolved again on
every read, and a context whose account can no longer be acted as is ended.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from .account import Account, AccountContext, BillingStatus
from .contracts import ContextStore
from .errors import AccessDenied, AccountNotFound, AccountSuspended
from .hierarchy import HierarchyResolver
from .permissions import CapabilitySet, PermissionResolver
from .usage import UsageAggregator

logger = logging.getLogger(__name__)


class AccountContextManager:
    def __init__(
        self,
        hierarchy: HierarchyResolver,
        permissions: PermissionResolver,
        usage: UsageAggregator,
        store: ContextStore,
    ) -> None:
        self._hierarchy = hierarchy
        self._permissions = permissions
        self._usage = usage
        self._store = store

    def switch(self, session_id: str, user_id: str, target_account_id: str) -> AccountContext:
        """Make ``target_account_id`` the session's active account.

        Concurrent switches on one session are not serialised; the last
        write wins and each write replaces the whole context at once.
        """
        self._validate(user_id, target_account_id)
        context = AccountContext(
            session_id=session_id,
            user_id=user_id,
            active_account_id=target_account_id,
            switched_at=datetime.now(timezone.utc),
        )
        self._store.put(context)
        logger.info("session %s for user %s now acting as %s", session_id, user_id, target_account_id)
        return context

    def _validate(self, user_id: str, account_id: str) -> Account:
        account = self._hierarchy.get(account_id)
        if not self._permissions.can_act_as(user_id, account_id):
            logger.info("user %s denied acting as account %s", user_id, account_id)
            raise AccessDenied(f"user {user_id} cannot act as account {account_id}")
        if self._usage.effective_billing(account_id).status is BillingStatus.suspended:
            raise AccountSuspended(f"account {account_id} is suspended")
        return account

    def current(self, session_id: str) -> AccountContext | None:
        return self._store.get(session_id)

    def active(self, session_id: str) -> tuple[AccountContext, Account, CapabilitySet] | None:
        """Return the session's context, account and freshly resolved capabilities.

        The switch checks are repeated on every read; a context that would
        no longer pass them is ended and ``None`` returned.
        """
        context = self._store.get(session_id)
        if context is None:
            return None
        try:
            account = self._validate(context.user_id, context.active_account_id)
            capabilities = self._permissions.resolve(context.user_id, context.active_account_id)
        except (AccountNotFound, AccessDenied, AccountSuspended) as exc:
            logger.info("session %s context on %s is no longer valid: %s", session_id, context.active_account_id, exc)
            self.end(session_id)
            return None
        return context, account, capabilities

    def end(self, session_id: str) -> None:
        self._store.delete(session_id)
        logger.info("session %s context ended", session_id)
