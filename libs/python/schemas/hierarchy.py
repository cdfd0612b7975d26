"""Shared Pydantic models for account hierarchy domain events."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from .account import AccountSummary


class HierarchyEventType(str, Enum):
    account_created = "account.created"
    account_updated = "account.updated"
    account_renamed = "account.renamed"
    account_deleted = "account.deleted"
    context_switched = "context.switched"


class HierarchyEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    occurred_at: datetime
    version: str = "v1"


class AccountCreated(HierarchyEvent):
    account: AccountSummary
    created_by: str | None = None


class AccountUpdated(HierarchyEvent):
    account_id: str
    fields: list[str] = Field(default_factory=list)


class AccountRenamed(HierarchyEvent):
    account_id: str
    old_path: str
    new_path: str


class AccountDeleted(HierarchyEvent):
    account_id: str
    force: bool = False
    deleted_ids: list[str] = Field(default_factory=list)


class ContextSwitched(HierarchyEvent):
    session_id: str
    user_id: str
    account_id: str
    previous_account_id: str | None = None
