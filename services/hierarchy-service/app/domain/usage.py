"""Usage roll-up and billing inheritance across the hierarchy.

Figures are a best-effort snapshot: counters keep moving while a subtree is
summed, so callers must treat them as approximate.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from .account import FREE_PLAN, AccountNode, BillingInfo, BillingStatus, Usage
from .hierarchy import HierarchyResolver

_COUNTERS = ("storage_bytes", "source_count", "job_count", "api_calls")


@dataclass(slots=True)
class UsageSummary:
    storage_bytes: int = 0
    source_count: int = 0
    job_count: int = 0
    api_calls: int = 0
    descendant_count: int = 0

    def add_usage(self, usage: Usage) -> None:
        for name in _COUNTERS:
            setattr(self, name, getattr(self, name) + getattr(usage, name))

    def add_summary(self, other: "UsageSummary") -> None:
        for name in _COUNTERS:
            setattr(self, name, getattr(self, name) + getattr(other, name))
        self.descendant_count += other.descendant_count + 1


@dataclass(slots=True)
class NodeUsage:
    """Subtree node annotated with the roll-up of itself and its descendants."""

    node: AccountNode
    totals: UsageSummary
    children: list["NodeUsage"] = field(default_factory=list)


@dataclass(slots=True)
class UsageReport:
    account_id: str
    totals: UsageSummary
    billing: BillingInfo
    exceeded: list[str]


class UsageAggregator:
    def __init__(self, hierarchy: HierarchyResolver) -> None:
        self._hierarchy = hierarchy

    def aggregate(self, account_id: str) -> UsageSummary:
        """Sum the account's own counters with those of every descendant."""
        return self.aggregate_tree(account_id).totals

    def aggregate_tree(self, account_id: str) -> NodeUsage:
        """Roll usage up every node of the subtree in a single post-order pass."""
        return self._roll_up(self._hierarchy.subtree(account_id))

    def _roll_up(self, node: AccountNode) -> NodeUsage:
        totals = UsageSummary()
        totals.add_usage(node.account.usage)
        rolled = NodeUsage(node=node, totals=totals)
        for child in node.children:
            child_usage = self._roll_up(child)
            totals.add_summary(child_usage.totals)
            rolled.children.append(child_usage)
        return rolled

    def effective_billing(self, account_id: str) -> BillingInfo:
        """Resolve ``inherited`` billing to the nearest ancestor that sets its own.

        Falls back to the system free plan, so every account has a plan.
        """
        for account in self._hierarchy.ancestor_chain(account_id):
            if account.billing.status is not BillingStatus.inherited:
                return BillingInfo(
                    status=account.billing.status,
                    plan=account.billing.plan or FREE_PLAN.plan,
                    limits=account.billing.limits,
                    source_account_id=account.account_id,
                )
        return FREE_PLAN

    def check_limits(self, account_id: str) -> UsageReport:
        """Compare the subtree roll-up against the effective plan's limits."""
        totals = self.aggregate(account_id)
        billing = self.effective_billing(account_id)
        exceeded = []
        for name in _COUNTERS:
            limit = getattr(billing.limits, name)
            if limit is not None and getattr(totals, name) > limit:
                exceeded.append(name)
        return UsageReport(account_id=account_id, totals=totals, billing=billing, exceeded=exceeded)
