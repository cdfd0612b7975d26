"""Effective capability resolution over the ancestor chain."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .account import Account
from .contracts import AccessGrant, GrantStore
from .hierarchy import HierarchyResolver

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class CapabilityDecision:
    """Outcome for one capability and the account whose grant decided it."""

    capability: str
    allowed: bool
    decided_by: str


@dataclass(slots=True, frozen=True)
class CapabilitySet:
    """Capabilities a user effectively holds on one account."""

    user_id: str
    account_id: str
    granted: frozenset[str]
    decisions: tuple[CapabilityDecision, ...] = ()

    def has(self, capability: str) -> bool:
        return capability in self.granted

    def __bool__(self) -> bool:
        return bool(self.granted)


class PermissionResolver:
    """Nearest-grant-wins resolution.

    For each capability the grant on the closest account in the chain (the
    account itself first, the root last) decides it, including explicit
    ``False`` revocations. Capabilities nobody mentions are absent, so the
    default is deny. Grants on descendants or other branches are never read.
    """

    def __init__(self, hierarchy: HierarchyResolver, grants: GrantStore) -> None:
        self._hierarchy = hierarchy
        self._grants = grants

    def resolve(self, user_id: str, account_id: str) -> CapabilitySet:
        chain = self._hierarchy.ancestor_chain(account_id)
        grants = self._fetch_grants(user_id, chain)
        by_account: dict[str, list[AccessGrant]] = {}
        for grant in grants:
            by_account.setdefault(grant.account_id, []).append(grant)

        decisions: dict[str, CapabilityDecision] = {}
        for account in chain:
            for grant in by_account.get(account.account_id, ()):
                for capability, allowed in grant.capabilities.items():
                    if capability not in decisions:
                        decisions[capability] = CapabilityDecision(capability, bool(allowed), account.account_id)

        granted = frozenset(name for name, decision in decisions.items() if decision.allowed)
        return CapabilitySet(
            user_id=user_id,
            account_id=account_id,
            granted=granted,
            decisions=tuple(sorted(decisions.values(), key=lambda item: item.capability)),
        )

    def can_act_as(self, user_id: str, account_id: str) -> bool:
        """Return ``True`` when the user may select ``account_id`` as their context.

        A user holding an explicit grant on the account may select it even
        when that grant carries no capabilities (view-only membership).
        """
        if self.resolve(user_id, account_id):
            return True
        return any(grant.account_id == account_id for grant in self._grants.grants_for(user_id, [account_id]))

    def accessible_accounts(self, user_id: str) -> list[tuple[Account, AccessGrant]]:
        """Accounts the user holds explicit grants on, shallowest first then by name."""
        grants = self._grants.grants_of_user(user_id)
        accounts = {account.account_id: account for account in self._hierarchy.find_many([g.account_id for g in grants])}
        results = []
        for grant in grants:
            account = accounts.get(grant.account_id)
            if account is None:
                logger.warning("grant for %s references missing account %s", user_id, grant.account_id)
                continue
            results.append((account, grant))
        results.sort(key=lambda item: (item[0].level, item[0].name.lower(), item[0].account_id))
        return results

    def _fetch_grants(self, user_id: str, chain: list[Account]) -> list[AccessGrant]:
        return self._grants.grants_for(user_id, [account.account_id for account in chain])
