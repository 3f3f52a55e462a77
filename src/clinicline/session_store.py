"""Per-call session persistence.

Every webhook turn is an independent request, so the session is read at the
start of the turn and written at the end.  Stores expose a narrow
read / write / delete interface plus ``merge_collected``, which re-reads the
latest stored session immediately before writing so a concurrent handler for
the same call does not lose its updates.
"""

import asyncio
import json
import logging
from typing import Optional

import redis.asyncio as redis

from clinicline.session import CallSession

logger = logging.getLogger(__name__)

TTL_SECONDS = 60 * 60  # no call session outlives its call by more than an hour


class SessionStore:
    async def read(self, call_sid: str) -> Optional[CallSession]:
        raise NotImplementedError

    async def write(self, call_sid: str, session: CallSession) -> None:
        raise NotImplementedError

    async def delete(self, call_sid: str) -> None:
        raise NotImplementedError

    async def read_or_create(self, call_sid: str, phone_number: str = "") -> CallSession:
        session = await self.read(call_sid)
        if session is None:
            logger.info("New call session %s", call_sid)
            session = CallSession(call_sid=call_sid, phone_number=phone_number)
        return session

    async def merge_collected(self, call_sid: str, updates: dict) -> Optional[CallSession]:
        """Merge caller-supplied fields into the freshest stored session."""
        latest = await self.read(call_sid)
        if latest is None:
            logger.warning("merge_collected: no session for %s", call_sid)
            return None
        latest.collected.update(updates)
        await self.write(call_sid, latest)
        return latest


class InMemorySessionStore(SessionStore):
    """Process-local store for tests and single-worker development."""

    def __init__(self):
        self._data: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def read(self, call_sid: str) -> Optional[CallSession]:
        raw = self._data.get(call_sid)
        if raw is None:
            return None
        return CallSession.from_dict(json.loads(raw))

    async def write(self, call_sid: str, session: CallSession) -> None:
        async with self._lock:
            self._data[call_sid] = json.dumps(session.to_dict())

    async def delete(self, call_sid: str) -> None:
        async with self._lock:
            self._data.pop(call_sid, None)

    async def merge_collected(self, call_sid: str, updates: dict) -> Optional[CallSession]:
        async with self._lock:
            raw = self._data.get(call_sid)
            if raw is None:
                return None
            latest = CallSession.from_dict(json.loads(raw))
            latest.collected.update(updates)
            self._data[call_sid] = json.dumps(latest.to_dict())
            return latest


class RedisSessionStore(SessionStore):
    """Redis-backed store shared by all web workers."""

    KEY_PREFIX = "call_session:"

    def __init__(self, client: redis.Redis, ttl_seconds: int = TTL_SECONDS):
        self._client = client
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str) -> "RedisSessionStore":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def _key(self, call_sid: str) -> str:
        return f"{self.KEY_PREFIX}{call_sid}"

    async def read(self, call_sid: str) -> Optional[CallSession]:
        raw = await self._client.get(self._key(call_sid))
        if not raw:
            return None
        try:
            return CallSession.from_dict(json.loads(raw))
        except (ValueError, TypeError, KeyError) as e:
            logger.error("Corrupt session for %s, starting fresh: %s", call_sid, e)
            return None

    async def write(self, call_sid: str, session: CallSession) -> None:
        await self._client.set(
            self._key(call_sid),
            json.dumps(session.to_dict()),
            ex=self.ttl_seconds,
        )

    async def delete(self, call_sid: str) -> None:
        await self._client.delete(self._key(call_sid))

    async def close(self) -> None:
        await self._client.aclose()
