"""
Credential store: CRUD for sessions, reply markers and published casts.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import ValidationError

from castbot.kv_store import KeyValueStore
from castbot.models import PublishedCast, Session, SignerState

logger = logging.getLogger(__name__)


def session_key(session_id: str) -> str:
    return f"session:{session_id}"


def reply_key(session_id: str) -> str:
    return f"replyingTo:{session_id}"


def cast_key(session_id: str, cast_hash: str) -> str:
    return f"cast:{session_id}:{cast_hash}"


class CredentialStore:
    """Durable mapping from chat identity to FID, signer id and signer state."""

    def __init__(self, kv: KeyValueStore):
        self.kv = kv

    async def get_session(self, session_id: str) -> Optional[Session]:
        """Get a session, or None if it does not exist or cannot be parsed."""
        data = await self.kv.get(session_key(session_id))
        if data is None:
            return None
        try:
            return Session.model_validate(data)
        except ValidationError:
            logger.exception("Corrupt session record for %s", session_id)
            return None

    async def save_session(self, session: Session) -> Session:
        """Persist the whole session record (last writer wins)."""
        session = session.model_copy(update={"updated_at": datetime.now(timezone.utc)})
        await self.kv.set(session_key(session.session_id), session.model_dump(mode="json"))
        return session

    async def update_signer_state(
        self,
        session_id: str,
        state: SignerState,
        signer_id: Optional[str] = None,
    ) -> Optional[Session]:
        """Update the cached signer state; no-op for unknown sessions.

        With ``signer_id`` the update only applies while the session still
        holds that signer, so a late status for a replaced signer is dropped.
        """
        session = await self.get_session(session_id)
        if session is None:
            return None
        if signer_id is not None and session.signer_id != signer_id:
            logger.info("Ignoring %s for replaced signer %s on session %s", state.value, signer_id, session_id)
            return session
        if session.signer_state == state:
            return session
        logger.info(
            "Session %s signer %s: %s -> %s",
            session_id, session.signer_id, session.signer_state.value, state.value,
        )
        return await self.save_session(session.model_copy(update={"signer_state": state}))

    async def update_fid(self, session_id: str, fid: int) -> Optional[Session]:
        session = await self.get_session(session_id)
        if session is None:
            return None
        return await self.save_session(session.model_copy(update={"fid": fid}))

    async def delete_session(self, session_id: str):
        await self.kv.delete(session_key(session_id))

    async def all_sessions(self) -> List[Session]:
        """Load every stored session, skipping unreadable records."""
        sessions = []
        for key in await self.kv.keys("session:*"):
            session = await self.get_session(key[len("session:"):])
            if session is not None:
                sessions.append(session)
        return sessions

    async def set_reply_target(self, session_id: str, cast_hash: str):
        await self.kv.set(reply_key(session_id), cast_hash)

    async def get_reply_target(self, session_id: str) -> Optional[str]:
        return await self.kv.get(reply_key(session_id))

    async def clear_reply_target(self, session_id: str) -> bool:
        return await self.kv.delete(reply_key(session_id))

    async def record_cast(
        self,
        session_id: str,
        cast_hash: str,
        text: str,
        channel_id: Optional[str] = None,
    ) -> PublishedCast:
        """Remember a cast published through the bot so /replies can find it."""
        record = PublishedCast(hash=cast_hash, text=text, timestamp=self.kv.now(), channel_id=channel_id)
        await self.kv.set(cast_key(session_id, cast_hash), record.model_dump())
        return record

    async def recent_casts(self, session_id: str, limit: int = 5) -> List[PublishedCast]:
        records = []
        for key in await self.kv.keys(f"cast:{session_id}:*"):
            data = await self.kv.get(key)
            if data is not None:
                records.append(PublishedCast.model_validate(data))
        records.sort(key=lambda r: r.timestamp, reverse=True)
        return records[:limit]
