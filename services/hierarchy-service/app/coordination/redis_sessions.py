"""Redis-backed session context storage."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Final

from redis import Redis
from redis.exceptions import RedisError

from ..domain.account import AccountContext
from ..domain.errors import UpstreamUnavailable


class RedisContextStore:
    """Stores each session context as one JSON value so a switch is a single ``SET``."""

    _FIELDS: Final[tuple[str, ...]] = ("session_id", "user_id", "active_account_id")

    def __init__(self, client: Redis, *, ttl_seconds: int, key_prefix: str = "account-context") -> None:
        self._client = client
        self._ttl = ttl_seconds
        self._key_prefix = key_prefix

    def _key(self, session_id: str) -> str:
        return f"{self._key_prefix}:{session_id}"

    def put(self, context: AccountContext) -> None:
        payload = {name: getattr(context, name) for name in self._FIELDS}
        payload["switched_at"] = context.switched_at.isoformat()
        try:
            self._client.set(self._key(context.session_id), json.dumps(payload), ex=self._ttl)
        except RedisError as exc:
            raise UpstreamUnavailable(f"context store unavailable: {exc}") from exc

    def get(self, session_id: str) -> AccountContext | None:
        try:
            raw = self._client.get(self._key(session_id))
        except RedisError as exc:
            raise UpstreamUnavailable(f"context store unavailable: {exc}") from exc
        if raw is None:
            return None
        data = json.loads(raw)
        return AccountContext(
            session_id=data["session_id"],
            user_id=data["user_id"],
            active_account_id=data["active_account_id"],
            switched_at=datetime.fromisoformat(data["switched_at"]),
        )

    def delete(self, session_id: str) -> None:
        try:
            self._client.delete(self._key(session_id))
        except RedisError as exc:
            raise UpstreamUnavailable(f"context store unavailable: {exc}") from exc
