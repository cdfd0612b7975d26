"""Account-related DTOs shared across services."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class AccountSummary(BaseModel):
    """Minimal view of a hierarchy node for consumers outside the hierarchy service."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    parent_account_id: str | None = None
    name: str
    account_path: str
    level: int
    account_type: str
