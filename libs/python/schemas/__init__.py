"""Shared schema exports."""

from .account import AccountSummary
from .hierarchy import (
    AccountCreated,
    AccountDeleted,
    AccountRenamed,
    AccountUpdated,
    ContextSwitched,
    HierarchyEvent,
    HierarchyEventType,
)

__all__ = [
    "AccountSummary",
    "AccountCreated",
    "AccountDeleted",
    "AccountRenamed",
    "AccountUpdated",
    "ContextSwitched",
    "HierarchyEvent",
    "HierarchyEventType",
]
