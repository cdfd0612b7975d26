from __future__ import annotations

import copy
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from app.coordination.locks import ParentLockRegistry
from app.coordination.sessions import InMemoryContextStore
from app.domain.account import Account, AccountType, Usage
from app.domain.context import AccountContextManager
from app.domain.contracts import AccessGrant, CreateAccountInput
from app.domain.errors import (
    AccountNotFound,
    Conflict,
    ParentNotFound,
    StorageUnavailable,
    UpstreamUnavailable,
)
from app.domain.hierarchy import HierarchyResolver
from app.domain.permissions import PermissionResolver
from app.domain.service import AccountHierarchyService
from app.domain.usage import UsageAggregator


class FakeAccountStore:
    """In-memory store mimicking the transactional Postgres repository."""

    def __init__(self, grants: FakeGrantStore | None = None) -> None:
        self._accounts: dict[str, Account] = {}
        self._lock = threading.Lock()
        self._grants = grants
        self.active_jobs: dict[str, int] = {}
        self.failing_deletes: set[str] = set()
        self.audit_log: list[dict] = []

    def create_account(
        self,
        account: Account,
        *,
        parent_version: int | None,
        owner_grant: AccessGrant | None = None,
    ) -> Account:
        with self._lock:
            if any(existing.account_path == account.account_path for existing in self._accounts.values()):
                raise Conflict(f"path {account.account_path} already exists")
            parent = None
            if account.parent_account_id is not None:
                parent = self._accounts.get(account.parent_account_id)
                if parent is None:
                    raise ParentNotFound(account.parent_account_id)
                if parent.version != parent_version:
                    raise Conflict("parent changed concurrently")
            if owner_grant is not None and self._grants is not None:
                self._grants.put_grant(owner_grant)
            if parent is not None:
                self._accounts[parent.account_id] = replace(parent, version=parent.version + 1)
            self._accounts[account.account_id] = copy.deepcopy(account)
            return copy.deepcopy(account)

    def get_account(self, account_id: str) -> Account | None:
        with self._lock:
            account = self._accounts.get(account_id)
            return copy.deepcopy(account) if account else None

    def get_accounts(self, account_ids: list[str]) -> list[Account]:
        with self._lock:
            return [copy.deepcopy(self._accounts[item]) for item in account_ids if item in self._accounts]

    def children_of(self, account_id: str | None) -> list[Account]:
        with self._lock:
            children = [a for a in self._accounts.values() if a.parent_account_id == account_id]
            return [copy.deepcopy(a) for a in sorted(children, key=lambda a: (a.created_at, a.account_id))]

    def subtree(self, account_id: str) -> list[Account]:
        with self._lock:
            top = self._accounts.get(account_id)
            if top is None:
                return []
            prefix = top.account_path + "/"
            return [
                copy.deepcopy(a)
                for a in self._accounts.values()
                if a.account_id == account_id or a.account_path.startswith(prefix)
            ]

    def update_account(
        self,
        account: Account,
        *,
        expected_version: int,
        parent_version: int | None = None,
        rename_from: str | None = None,
    ) -> Account:
        with self._lock:
            if parent_version is not None and account.parent_account_id is not None:
                parent = self._accounts.get(account.parent_account_id)
                if parent is None:
                    raise ParentNotFound(account.parent_account_id)
                if parent.version != parent_version:
                    raise Conflict("parent changed during rename")
            stored = self._accounts.get(account.account_id)
            if stored is None:
                raise AccountNotFound(account.account_id)
            if stored.version != expected_version:
                raise Conflict("version mismatch")
            if any(
                other.account_path == account.account_path and other.account_id != account.account_id
                for other in self._accounts.values()
            ):
                raise Conflict(f"path {account.account_path} already exists")
            updated = replace(account, version=expected_version + 1)
            self._accounts[account.account_id] = updated
            if rename_from is not None and rename_from != account.account_path:
                prefix = rename_from + "/"
                for descendant in list(self._accounts.values()):
                    if descendant.account_path.startswith(prefix):
                        self._accounts[descendant.account_id] = replace(
                            descendant,
                            account_path=account.account_path + descendant.account_path[len(rename_from):],
                            version=descendant.version + 1,
                        )
            return copy.deepcopy(updated)

    def delete_account(self, account_id: str) -> bool:
        with self._lock:
            if account_id in self.failing_deletes:
                raise StorageUnavailable("simulated outage")
            if any(a.parent_account_id == account_id for a in self._accounts.values()):
                raise Conflict("foreign key violation")
            return self._accounts.pop(account_id, None) is not None

    def count_active_jobs(self, account_id: str) -> int:
        return self.active_jobs.get(account_id, 0)

    def write_audit_event(self, *, account_id, event_type, actor, metadata=None) -> None:
        self.audit_log.append(
            {"account_id": account_id, "event_type": event_type, "actor": actor, "metadata": metadata or {}}
        )

    # test helpers

    def set_usage(self, account_id: str, **counters: int) -> None:
        with self._lock:
            account = self._accounts[account_id]
            self._accounts[account_id] = replace(account, usage=replace(Usage(), **counters))

    def all_accounts(self) -> list[Account]:
        with self._lock:
            return [copy.deepcopy(a) for a in self._accounts.values()]


class FakeGrantStore:
    def __init__(self) -> None:
        self._grants: dict[tuple[str, str], AccessGrant] = {}
        self.unavailable = False
        self.failing_writes = False

    def _check(self) -> None:
        if self.unavailable:
            raise UpstreamUnavailable("grant store unreachable")

    def grants_for(self, user_id: str, account_ids: list[str]) -> list[AccessGrant]:
        self._check()
        return [self._grants[(user_id, item)] for item in account_ids if (user_id, item) in self._grants]

    def grants_of_user(self, user_id: str) -> list[AccessGrant]:
        self._check()
        return [grant for (owner, _), grant in self._grants.items() if owner == user_id]

    def put_grant(self, grant: AccessGrant) -> None:
        self._check()
        if self.failing_writes:
            raise StorageUnavailable("grant write rejected")
        self._grants[(grant.user_id, grant.account_id)] = grant

    def delete_grants_for_account(self, account_id: str) -> None:
        self._check()
        for key in [key for key in self._grants if key[1] == account_id]:
            del self._grants[key]


class StepClock:
    """Deterministic clock advancing one second per reading."""

    def __init__(self) -> None:
        self._now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            self._now += timedelta(seconds=1)
            return self._now


@pytest.fixture
def store(grants) -> FakeAccountStore:
    return FakeAccountStore(grants)


@pytest.fixture
def grants() -> FakeGrantStore:
    return FakeGrantStore()


@pytest.fixture
def locks() -> ParentLockRegistry:
    return ParentLockRegistry(default_timeout=2.0)


@pytest.fixture
def hierarchy(store, locks) -> HierarchyResolver:
    return HierarchyResolver(store, locks, max_depth=5, clock=StepClock())


@pytest.fixture
def permissions(hierarchy, grants) -> PermissionResolver:
    return PermissionResolver(hierarchy, grants)


@pytest.fixture
def usage(hierarchy) -> UsageAggregator:
    return UsageAggregator(hierarchy)


@pytest.fixture
def context_store() -> InMemoryContextStore:
    return InMemoryContextStore(ttl_seconds=3600)


@pytest.fixture
def contexts(hierarchy, permissions, usage, context_store) -> AccountContextManager:
    return AccountContextManager(hierarchy, permissions, usage, context_store)


@pytest.fixture
def service(store, grants, hierarchy, permissions, usage, contexts) -> AccountHierarchyService:
    return AccountHierarchyService(store, grants, hierarchy, permissions, usage, contexts)


@pytest.fixture
def conglomerate(hierarchy):
    """Root R with divisions D1 and D2, and location L1 under D1."""
    root = hierarchy.create_root_account(CreateAccountInput(name="Acme Holdings", account_type=AccountType.root))
    d1 = hierarchy.create_sub_account(root.account_id, CreateAccountInput(name="East", account_type=AccountType.division))
    d2 = hierarchy.create_sub_account(root.account_id, CreateAccountInput(name="West", account_type=AccountType.division))
    l1 = hierarchy.create_sub_account(d1.account_id, CreateAccountInput(name="Boston", account_type=AccountType.location))
    return {"R": root, "D1": d1, "D2": d2, "L1": l1}
