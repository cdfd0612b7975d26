from __future__ import annotations

import threading
from dataclasses import replace

import pytest

from app.domain.account import AccountType, BillingStatus
from app.domain.contracts import AccountPatch, CreateAccountInput, SettingsOverrides
from app.domain.errors import (
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
    StorageUnavailable,
)
from app.domain.hierarchy import HierarchyResolver

from conftest import StepClock


def _fields(name: str, account_type: AccountType, **settings) -> CreateAccountInput:
    return CreateAccountInput(name=name, account_type=account_type, settings=SettingsOverrides(**settings))


def test_root_account_defaults(hierarchy):
    root = hierarchy.create_root_account(_fields("Acme Holdings", AccountType.root))

    assert root.level == 0
    assert root.parent_account_id is None
    assert root.account_path == "acme-holdings"
    assert root.billing.status is BillingStatus.free
    assert root.billing.plan == "free"
    assert root.settings.allow_sub_accounts is True


def test_only_root_types_can_be_created_standalone(hierarchy):
    with pytest.raises(InvalidAccountType):
        hierarchy.create_root_account(_fields("Loose", AccountType.division))

    franchise = hierarchy.create_root_account(_fields("Burger Co", AccountType.franchise))
    assert franchise.level == 0


def test_division_location_scenario(hierarchy, conglomerate):
    d1, l1 = conglomerate["D1"], conglomerate["L1"]

    assert d1.level == 1
    assert l1.level == 2
    assert l1.account_path == "acme-holdings/east/boston"
    assert l1.settings.allow_sub_accounts is False
    assert l1.billing.status is BillingStatus.inherited

    with pytest.raises(InvalidAccountType):
        hierarchy.create_sub_account(l1.account_id, _fields("Shelf", AccountType.location))


def test_child_type_must_be_legal_for_parent(hierarchy, conglomerate):
    with pytest.raises(InvalidAccountType):
        hierarchy.create_sub_account(conglomerate["R"].account_id, _fields("Store", AccountType.location))


def test_missing_parent(hierarchy):
    with pytest.raises(ParentNotFound):
        hierarchy.create_sub_account("missing", _fields("Orphan", AccountType.division))


def test_parent_disallowing_sub_accounts(hierarchy, conglomerate):
    closed = hierarchy.create_sub_account(
        conglomerate["R"].account_id,
        _fields("Closed", AccountType.division, allow_sub_accounts=False),
    )
    with pytest.raises(ParentDisallowsSubAccounts):
        hierarchy.create_sub_account(closed.account_id, _fields("Store", AccountType.location))


def test_depth_bound(store, locks):
    shallow = HierarchyResolver(store, locks, max_depth=2, clock=StepClock())
    root = shallow.create_root_account(_fields("Root", AccountType.root))
    sub = shallow.create_sub_account(root.account_id, _fields("Sub", AccountType.subsidiary))
    division = shallow.create_sub_account(sub.account_id, _fields("Div", AccountType.division))

    with pytest.raises(DepthExceeded):
        shallow.create_sub_account(division.account_id, _fields("Store", AccountType.location))


def test_quota_enforced_sequentially(hierarchy):
    root = hierarchy.create_root_account(_fields("Root", AccountType.root, max_sub_accounts=2))
    hierarchy.create_sub_account(root.account_id, _fields("A", AccountType.division))
    hierarchy.create_sub_account(root.account_id, _fields("B", AccountType.division))

    with pytest.raises(QuotaExceeded):
        hierarchy.create_sub_account(root.account_id, _fields("C", AccountType.division))


def test_concurrent_creates_never_exceed_quota(hierarchy, store):
    parent = hierarchy.create_root_account(_fields("X", AccountType.root, max_sub_accounts=1))
    barrier = threading.Barrier(8)
    outcomes: list[str] = []
    outcomes_lock = threading.Lock()

    def attempt(index: int) -> None:
        barrier.wait()
        try:
            hierarchy.create_sub_account(parent.account_id, _fields(f"Child {index}", AccountType.division))
            result = "created"
        except QuotaExceeded:
            result = "quota"
        with outcomes_lock:
            outcomes.append(result)

    threads = [threading.Thread(target=attempt, args=(i,)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("created") == 1
    assert outcomes.count("quota") == 7
    assert len(store.children_of(parent.account_id)) == 1


def test_sibling_slugs_are_unique(hierarchy, conglomerate):
    duplicate = hierarchy.create_sub_account(conglomerate["R"].account_id, _fields("East", AccountType.division))

    assert duplicate.account_path == "acme-holdings/east-2"


def test_ancestor_chain_is_nearest_first(hierarchy, conglomerate):
    chain = hierarchy.ancestor_chain(conglomerate["L1"].account_id)

    assert [account.account_id for account in chain] == [
        conglomerate["L1"].account_id,
        conglomerate["D1"].account_id,
        conglomerate["R"].account_id,
    ]


def test_ancestor_chain_detects_cycles(hierarchy, store, conglomerate):
    root = store.get_account(conglomerate["R"].account_id)
    store._accounts[root.account_id] = replace(root, parent_account_id=conglomerate["L1"].account_id)

    with pytest.raises(HierarchyCorrupted):
        hierarchy.ancestor_chain(conglomerate["L1"].account_id)


def test_every_level_matches_its_chain(hierarchy, store, conglomerate):
    for account in store.all_accounts():
        chain = hierarchy.ancestor_chain(account.account_id)
        assert account.level == len(chain) - 1
        assert chain[-1].parent_account_id is None


def test_subtree_is_deterministic(hierarchy, conglomerate):
    first = hierarchy.subtree(conglomerate["R"].account_id)
    second = hierarchy.subtree(conglomerate["R"].account_id)

    names = [account.name for account in first.walk()]
    assert names == ["Acme Holdings", "East", "Boston", "West"]
    assert names == [account.name for account in second.walk()]


def test_subtree_of_unknown_account(hierarchy):
    with pytest.raises(AccountNotFound):
        hierarchy.subtree("missing")


def test_rename_rewrites_descendant_paths(hierarchy, store, conglomerate):
    renamed = hierarchy.update_account(conglomerate["D1"].account_id, AccountPatch(name="Northeast"))

    assert renamed.account_path == "acme-holdings/northeast"
    assert store.get_account(conglomerate["L1"].account_id).account_path == "acme-holdings/northeast/boston"
    for account in store.all_accounts():
        if account.parent_account_id is not None:
            parent = store.get_account(account.parent_account_id)
            assert account.account_path.startswith(parent.account_path + "/")


def test_update_without_rename_keeps_path(hierarchy, conglomerate):
    updated = hierarchy.update_account(
        conglomerate["D1"].account_id,
        AccountPatch(description="Eastern region", settings=SettingsOverrides(timezone="America/New_York")),
    )

    assert updated.account_path == conglomerate["D1"].account_path
    assert updated.description == "Eastern region"
    assert updated.settings.timezone == "America/New_York"


def test_update_with_stale_version_conflicts(hierarchy, conglomerate):
    with pytest.raises(Conflict):
        hierarchy.update_account(conglomerate["L1"].account_id, AccountPatch(company="Acme"), expected_version=99)


def test_negative_quota_is_rejected(hierarchy, conglomerate):
    with pytest.raises(ValueError):
        hierarchy.update_account(
            conglomerate["D2"].account_id, AccountPatch(settings=SettingsOverrides(max_sub_accounts=-1))
        )


def test_delete_with_children_requires_force(hierarchy, conglomerate):
    with pytest.raises(HasChildren):
        hierarchy.delete_account(conglomerate["D1"].account_id)


def test_delete_blocked_by_running_jobs(hierarchy, store, conglomerate):
    store.active_jobs[conglomerate["D2"].account_id] = 1

    with pytest.raises(ActiveJobsRunning):
        hierarchy.delete_account(conglomerate["D2"].account_id)


def test_force_delete_removes_leaves_first(hierarchy, store, conglomerate):
    deleted = hierarchy.delete_account(conglomerate["D1"].account_id, force=True)

    assert deleted == [conglomerate["L1"].account_id, conglomerate["D1"].account_id]
    assert store.get_account(conglomerate["D1"].account_id) is None
    assert store.get_account(conglomerate["R"].account_id) is not None


def test_failed_force_delete_leaves_ancestors_and_can_resume(hierarchy, store, conglomerate):
    root_id = conglomerate["R"].account_id
    store.failing_deletes.add(conglomerate["D1"].account_id)

    with pytest.raises(StorageUnavailable):
        hierarchy.delete_account(root_id, force=True)

    assert store.get_account(conglomerate["L1"].account_id) is None
    assert store.get_account(conglomerate["D1"].account_id) is not None
    assert store.get_account(root_id) is not None

    store.failing_deletes.clear()
    hierarchy.delete_account(root_id, force=True)
    assert store.all_accounts() == []


def _nested(hierarchy):
    root = hierarchy.create_root_account(_fields("Acme Holdings", AccountType.root))
    sub = hierarchy.create_sub_account(root.account_id, _fields("Sub Co", AccountType.subsidiary))
    div = hierarchy.create_sub_account(sub.account_id, _fields("Div One", AccountType.division))
    dock = hierarchy.create_sub_account(div.account_id, _fields("Dock", AccountType.location))
    return root, sub, div, dock


def _interleave(monkeypatch, store, parent_id, action):
    """Run ``action`` once, just before the children of ``parent_id`` are read."""
    original = store.children_of
    fired = []

    def children_of(account_id):
        if account_id == parent_id and not fired:
            fired.append(account_id)
            action()
        return original(account_id)

    monkeypatch.setattr(store, "children_of", children_of)


def _assert_paths_consistent(store):
    for account in store.all_accounts():
        if account.parent_account_id is not None:
            parent = store.get_account(account.parent_account_id)
            assert account.account_path == f"{parent.account_path}/{account.slug}"


def test_child_created_during_ancestor_rename_is_moved(hierarchy, store, monkeypatch):
    root, sub, div, _ = _nested(hierarchy)
    created = []
    _interleave(
        monkeypatch,
        store,
        root.account_id,
        lambda: created.append(hierarchy.create_sub_account(div.account_id, _fields("Yard", AccountType.location))),
    )

    hierarchy.update_account(sub.account_id, AccountPatch(name="Renamed"))

    assert created[0].account_path == "acme-holdings/sub-co/div-one/yard"
    assert store.get_account(created[0].account_id).account_path == "acme-holdings/renamed/div-one/yard"
    _assert_paths_consistent(store)


def test_create_racing_ancestor_rename_conflicts_then_succeeds(hierarchy, store, monkeypatch):
    _, sub, div, _ = _nested(hierarchy)
    _interleave(
        monkeypatch,
        store,
        div.account_id,
        lambda: hierarchy.update_account(sub.account_id, AccountPatch(name="Renamed")),
    )

    with pytest.raises(Conflict):
        hierarchy.create_sub_account(div.account_id, _fields("Yard", AccountType.location))

    assert [a.name for a in store.all_accounts() if a.name == "Yard"] == []
    _assert_paths_consistent(store)

    retried = hierarchy.create_sub_account(div.account_id, _fields("Yard", AccountType.location))
    assert retried.account_path == "acme-holdings/renamed/div-one/yard"


def test_descendant_renamed_during_ancestor_rename(hierarchy, store, monkeypatch):
    root, sub, div, dock = _nested(hierarchy)
    _interleave(
        monkeypatch,
        store,
        root.account_id,
        lambda: hierarchy.update_account(div.account_id, AccountPatch(name="Div Two")),
    )

    hierarchy.update_account(sub.account_id, AccountPatch(name="Renamed"))

    assert store.get_account(div.account_id).account_path == "acme-holdings/renamed/div-two"
    assert store.get_account(dock.account_id).account_path == "acme-holdings/renamed/div-two/dock"
    _assert_paths_consistent(store)


def test_rename_conflicts_when_ancestor_renamed_meanwhile(hierarchy, store, monkeypatch):
    _, sub, div, dock = _nested(hierarchy)
    _interleave(
        monkeypatch,
        store,
        sub.account_id,
        lambda: hierarchy.update_account(sub.account_id, AccountPatch(name="Renamed")),
    )

    with pytest.raises(Conflict):
        hierarchy.update_account(div.account_id, AccountPatch(name="Div Two"))

    assert store.get_account(div.account_id).account_path == "acme-holdings/renamed/div-one"
    assert store.get_account(dock.account_id).account_path == "acme-holdings/renamed/div-one/dock"
    _assert_paths_consistent(store)
