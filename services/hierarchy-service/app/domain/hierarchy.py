"""Tree structure enforcement and traversal for the account hierarchy."""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Iterable

from .account import (
    CHILD_TYPES,
    FREE_PLAN,
    ROOT_TYPES,
    Account,
    AccountNode,
    AccountSettings,
    AccountType,
    Billing,
    BillingStatus,
    join_path,
    slugify,
)
from .contracts import (
    OWNER_CAPABILITIES,
    AccessGrant,
    AccountPatch,
    AccountStore,
    CreateAccountInput,
    ParentLocks,
    SettingsOverrides,
)
from .errors import (
    AccountNotFound,
    ActiveJobsRunning,
    Conflict,
    DepthExceeded,
    HasChildren,
    HierarchyCorrupted,
    InvalidAccountType,
    ParentDisallowsSubAccounts,
    ParentNotFound,
    QuotaExceeded,
)

logger = logging.getLogger(__name__)

ROOT_LOCK_KEY = "__roots__"
DEFAULT_MAX_DEPTH = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _unique_slug(name: str, siblings: Iterable[Account], exclude: str | None = None) -> str:
    taken = {sibling.slug for sibling in siblings if sibling.account_id != exclude}
    base = slugify(name)
    candidate = base
    suffix = 2
    while candidate in taken:
        candidate = f"{base}-{suffix}"
        suffix += 1
    return candidate


def _owner_grant(account: Account) -> AccessGrant | None:
    if account.owner_user_id is None:
        return None
    return AccessGrant(
        user_id=account.owner_user_id,
        account_id=account.account_id,
        capabilities=dict(OWNER_CAPABILITIES),
        role="Owner",
    )


def _merge_settings(base: AccountSettings, overrides: SettingsOverrides | None) -> AccountSettings:
    if overrides is None:
        return base
    merged = replace(base)
    for name in ("timezone", "allow_sub_accounts", "max_sub_accounts", "retention_days", "two_factor_required"):
        value = getattr(overrides, name)
        if value is not None:
            setattr(merged, name, value)
    if merged.max_sub_accounts < 0:
        raise ValueError("max_sub_accounts must be non-negative")
    return merged


class HierarchyResolver:
    """Single source of truth for traversal and structural mutation.

    Parameters
    ----------
    store:
        Account store; every write goes through it as one transaction.
    locks:
        Per-parent lock registry serialising child creation and renames.
    max_depth:
        Deepest legal ``level``; roots sit at level 0.
    default_max_sub_accounts:
        Child ceiling given to new accounts that do not override it.
    lock_timeout:
        Seconds to wait for a parent lock before failing with ``Conflict``.
    """

    def __init__(
        self,
        store: AccountStore,
        locks: ParentLocks,
        *,
        max_depth: int = DEFAULT_MAX_DEPTH,
        default_max_sub_accounts: int = 10,
        lock_timeout: float | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._locks = locks
        self._max_depth = max_depth
        self._default_max_sub_accounts = default_max_sub_accounts
        self._lock_timeout = lock_timeout
        self._clock = clock

    @property
    def max_depth(self) -> int:
        return self._max_depth

    # -- queries -------------------------------------------------------------

    def get(self, account_id: str) -> Account:
        account = self._store.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    def find_many(self, account_ids: list[str]) -> list[Account]:
        """Return whichever of ``account_ids`` still exist."""
        if not account_ids:
            return []
        return self._store.get_accounts(account_ids)

    def ancestor_chain(self, account_id: str) -> list[Account]:
        """Return the account followed by each ancestor up to its root."""
        chain = [self.get(account_id)]
        seen = {account_id}
        while chain[-1].parent_account_id is not None:
            parent_id = chain[-1].parent_account_id
            if parent_id in seen or len(chain) > self._max_depth:
                raise HierarchyCorrupted(f"ancestor chain of {account_id} does not reach a root")
            parent = self._store.get_account(parent_id)
            if parent is None:
                raise HierarchyCorrupted(f"account {chain[-1].account_id} references missing parent {parent_id}")
            seen.add(parent_id)
            chain.append(parent)
        if chain[0].level != len(chain) - 1:
            raise HierarchyCorrupted(
                f"account {account_id} has level {chain[0].level} but {len(chain) - 1} ancestors"
            )
        return chain

    def subtree(self, account_id: str) -> AccountNode:
        """Build the subtree rooted at ``account_id`` from one store snapshot.

        Children are ordered by creation time, then id, so an unchanged tree
        always yields the same structure.
        """
        accounts = self._store.subtree(account_id)
        nodes = {account.account_id: AccountNode(account) for account in accounts}
        if account_id not in nodes:
            raise AccountNotFound(account_id)
        ordered = sorted(accounts, key=lambda item: (item.created_at, item.account_id))
        for account in ordered:
            if account.account_id == account_id:
                continue
            parent = nodes.get(account.parent_account_id or "")
            if parent is None:
                raise HierarchyCorrupted(f"account {account.account_id} is detached from subtree {account_id}")
            parent.children.append(nodes[account.account_id])
        return nodes[account_id]

    # -- creation ------------------------------------------------------------

    def create_root_account(self, fields: CreateAccountInput, *, timeout: float | None = None) -> Account:
        """Create a standalone root (level 0) account."""
        if fields.account_type not in ROOT_TYPES:
            raise InvalidAccountType(f"{fields.account_type.value} accounts must have a parent")
        with self._locks.hold(ROOT_LOCK_KEY, self._timeout(timeout)):
            slug = _unique_slug(fields.name, self._store.children_of(None))
            account = self._new_account(fields, parent=None, slug=slug)
            created = self._store.create_account(
                account, parent_version=None, owner_grant=_owner_grant(account)
            )
        logger.info("root account %s created at path %s", created.account_id, created.account_path)
        return created

    def create_sub_account(
        self, parent_id: str, fields: CreateAccountInput, *, timeout: float | None = None
    ) -> Account:
        """Create a child of ``parent_id`` after validating the tree rules.

        The child count, slug and path are read and committed while the
        parent's lock is held, and the commit is conditional on the parent's
        version so a concurrent rename cannot leave the child with a stale path.
        """
        with self._locks.hold(parent_id, self._timeout(timeout)):
            parent = self._store.get_account(parent_id)
            if parent is None:
                raise ParentNotFound(parent_id)
            if fields.account_type not in CHILD_TYPES[parent.account_type]:
                raise InvalidAccountType(
                    f"{parent.account_type.value} accounts cannot contain {fields.account_type.value} accounts"
                )
            if not parent.settings.allow_sub_accounts:
                raise ParentDisallowsSubAccounts(f"account {parent_id} does not allow sub-accounts")
            siblings = self._store.children_of(parent_id)
            if len(siblings) >= parent.settings.max_sub_accounts:
                raise QuotaExceeded(
                    f"account {parent_id} already has {len(siblings)} of {parent.settings.max_sub_accounts} sub-accounts"
                )
            if parent.level + 1 > self._max_depth:
                raise DepthExceeded(f"sub-accounts may not be nested deeper than {self._max_depth} levels")
            slug = _unique_slug(fields.name, siblings)
            account = self._new_account(fields, parent=parent, slug=slug)
            created = self._store.create_account(
                account, parent_version=parent.version, owner_grant=_owner_grant(account)
            )
        logger.info(
            "sub-account %s (%s) created under %s at path %s",
            created.account_id,
            created.account_type.value,
            parent_id,
            created.account_path,
        )
        return created

    def _new_account(self, fields: CreateAccountInput, *, parent: Account | None, slug: str) -> Account:
        now = self._clock()
        defaults = AccountSettings(
            timezone=parent.settings.timezone if parent else "UTC",
            allow_sub_accounts=fields.account_type is not AccountType.location,
            max_sub_accounts=self._default_max_sub_accounts,
        )
        settings = _merge_settings(defaults, fields.settings)
        if parent is None:
            billing = Billing(
                status=FREE_PLAN.status,
                plan=FREE_PLAN.plan,
                limits=replace(FREE_PLAN.limits),
            )
        else:
            billing = Billing(status=BillingStatus.inherited)
        overrides = fields.billing
        if overrides.status is not None:
            billing.status = overrides.status
        if overrides.plan is not None:
            billing.plan = overrides.plan
        if overrides.limits is not None:
            billing.limits = overrides.limits
        return Account(
            account_id=str(uuid.uuid4()),
            parent_account_id=parent.account_id if parent else None,
            name=fields.name,
            slug=slug,
            account_path=join_path(parent.account_path if parent else None, slug),
            level=parent.level + 1 if parent else 0,
            account_type=fields.account_type,
            created_at=now,
            updated_at=now,
            company=fields.company,
            description=fields.description,
            owner_user_id=fields.owner_user_id,
            settings=settings,
            billing=billing,
        )

    # -- updates -------------------------------------------------------------

    def update_account(
        self,
        account_id: str,
        patch: AccountPatch,
        *,
        expected_version: int | None = None,
        timeout: float | None = None,
    ) -> Account:
        """Apply ``patch``; a rename rewrites every descendant path in the same commit.

        Descendants are moved by path prefix inside the store transaction, so
        children created while the rename is prepared are moved too. The
        commit fails with ``Conflict`` when the parent changed after its path
        was read.
        """
        current = self.get(account_id)
        if patch.name is None or slugify(patch.name) == slugify(current.name):
            return self._commit(current, patch, expected_version)

        lock_key = current.parent_account_id or ROOT_LOCK_KEY
        with self._locks.hold(lock_key, self._timeout(timeout)):
            current = self.get(account_id)
            parent_path = None
            parent_version = None
            if current.parent_account_id is not None:
                parent = self._store.get_account(current.parent_account_id)
                if parent is None:
                    raise HierarchyCorrupted(f"account {account_id} references a missing parent")
                parent_path = parent.account_path
                parent_version = parent.version
            siblings = self._store.children_of(current.parent_account_id)
            slug = _unique_slug(patch.name, siblings, exclude=account_id)
            old_path = current.account_path
            new_path = join_path(parent_path, slug)
            updated = self._commit(
                current,
                patch,
                expected_version,
                slug=slug,
                account_path=new_path,
                parent_version=parent_version,
                rename_from=old_path,
            )
        logger.info("account %s renamed; path %s -> %s", account_id, old_path, new_path)
        return updated

    def _commit(
        self,
        current: Account,
        patch: AccountPatch,
        expected_version: int | None,
        *,
        slug: str | None = None,
        account_path: str | None = None,
        parent_version: int | None = None,
        rename_from: str | None = None,
    ) -> Account:
        if expected_version is not None and expected_version != current.version:
            raise Conflict(
                f"account {current.account_id} is at version {current.version}, not {expected_version}"
            )
        billing = current.billing
        if patch.billing is not None:
            billing = replace(
                current.billing,
                status=patch.billing.status or current.billing.status,
                plan=patch.billing.plan if patch.billing.plan is not None else current.billing.plan,
                limits=patch.billing.limits if patch.billing.limits is not None else current.billing.limits,
            )
        updated = replace(
            current,
            name=patch.name if patch.name is not None else current.name,
            company=patch.company if patch.company is not None else current.company,
            description=patch.description if patch.description is not None else current.description,
            slug=slug or current.slug,
            account_path=account_path or current.account_path,
            settings=_merge_settings(current.settings, patch.settings),
            billing=billing,
            updated_at=self._clock(),
        )
        return self._store.update_account(
            updated,
            expected_version=current.version,
            parent_version=parent_version,
            rename_from=rename_from,
        )

    # -- deletion ------------------------------------------------------------

    def delete_account(self, account_id: str, *, force: bool = False) -> list[str]:
        """Delete an account, or with ``force`` its whole subtree leaves first.

        Returns the ids removed by this call. A failure part-way leaves every
        ancestor of the failed node in place; leaves already removed stay
        removed, so a forced delete can simply be re-run.
        """
        self.get(account_id)
        if not force:
            if self._store.children_of(account_id):
                raise HasChildren(f"account {account_id} has sub-accounts; delete them first or force")
            if self._store.count_active_jobs(account_id) > 0:
                raise ActiveJobsRunning(f"account {account_id} has running backup jobs")
            self._store.delete_account(account_id)
            logger.info("account %s deleted", account_id)
            return [account_id]

        deleted: list[str] = []
        for node in self.subtree(account_id).post_order():
            node_id = node.account.account_id
            if self._store.delete_account(node_id):
                deleted.append(node_id)
        logger.info("account %s force-deleted with %d accounts removed", account_id, len(deleted))
        return deleted

    def _timeout(self, timeout: float | None) -> float | None:
        return self._lock_timeout if timeout is None else timeout


