from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class AccountType(str, Enum):
    root = "root"
    subsidiary = "subsidiary"
    division = "division"
    location = "location"
    franchise = "franchise"


class BillingStatus(str, Enum):
    active = "active"
    inherited = "inherited"
    suspended = "suspended"
    free = "free"


# Legal direct-child types per parent type. Locations are leaves.
CHILD_TYPES: dict[AccountType, frozenset[AccountType]] = {
    AccountType.root: frozenset({AccountType.subsidiary, AccountType.division}),
    AccountType.subsidiary: frozenset({AccountType.division, AccountType.location}),
    AccountType.division: frozenset({AccountType.location}),
    AccountType.franchise: frozenset({AccountType.location}),
    AccountType.location: frozenset(),
}

ROOT_TYPES = frozenset({AccountType.root, AccountType.franchise})

_SLUG_INVALID = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    """Return the path segment for an account name."""
    slug = _SLUG_INVALID.sub("-", name.strip().lower()).strip("-")
    return slug or "account"


def join_path(parent_path: str | None, slug: str) -> str:
    return f"{parent_path}/{slug}" if parent_path else slug


@dataclass(slots=True)
class AccountSettings:
    timezone: str = "UTC"
    allow_sub_accounts: bool = True
    max_sub_accounts: int = 10
    retention_days: int = 30
    two_factor_required: bool = False


@dataclass(slots=True)
class PlanLimits:
    """Ceilings applied to subtree usage; ``None`` means unlimited."""

    storage_bytes: int | None = None
    source_count: int | None = None
    job_count: int | None = None
    api_calls: int | None = None


@dataclass(slots=True)
class Billing:
    status: BillingStatus = BillingStatus.inherited
    plan: str | None = None
    limits: PlanLimits = field(default_factory=PlanLimits)


@dataclass(slots=True)
class Usage:
    """Counters owned by a single account, never pre-aggregated."""

    storage_bytes: int = 0
    source_count: int = 0
    job_count: int = 0
    api_calls: int = 0


@dataclass(slots=True)
class Account:
    """A node in the tenancy tree."""

    account_id: str
    parent_account_id: str | None
    name: str
    slug: str
    account_path: str
    level: int
    account_type: AccountType
    created_at: datetime
    updated_at: datetime
    company: str = ""
    description: str = ""
    owner_user_id: str | None = None
    settings: AccountSettings = field(default_factory=AccountSettings)
    billing: Billing = field(default_factory=Billing)
    usage: Usage = field(default_factory=Usage)
    version: int = 1

    @property
    def is_root(self) -> bool:
        return self.parent_account_id is None


@dataclass(slots=True)
class AccountNode:
    """Typed subtree returned by the hierarchy resolver."""

    account: Account
    children: list["AccountNode"] = field(default_factory=list)

    def walk(self):
        """Yield accounts depth-first, parents before children."""
        yield self.account
        for child in self.children:
            yield from child.walk()

    def post_order(self):
        """Yield nodes leaves first."""
        for child in self.children:
            yield from child.post_order()
        yield self


@dataclass(slots=True)
class BillingInfo:
    """Billing actually applied to an account after inheritance is resolved."""

    status: BillingStatus
    plan: str
    limits: PlanLimits
    source_account_id: str | None


FREE_PLAN = BillingInfo(
    status=BillingStatus.free,
    plan="free",
    limits=PlanLimits(
        storage_bytes=1024 * 1024 * 1024,
        source_count=5,
        job_count=10,
        api_calls=1000,
    ),
    source_account_id=None,
)


@dataclass(slots=True, frozen=True)
class AccountContext:
    """Ephemeral per-session record of which account a user is acting as."""

    session_id: str
    user_id: str
    active_account_id: str
    switched_at: datetime
