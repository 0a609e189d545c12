"""
Short tokens for remote pagination cursors.

Remote cursors are unbounded in length while a button payload is capped at
64 bytes, so each cursor is parked in the key-value store under a short
random id and the id travels in the button instead.
"""
import logging
import secrets
import string
from typing import Optional

from pydantic import ValidationError

from castbot.kv_store import KeyValueStore
from castbot.models import CursorToken, PageContext

logger = logging.getLogger(__name__)

TOKEN_ALPHABET = string.ascii_letters + string.digits
TOKEN_LENGTH = 12


def cursor_key(short_id: str) -> str:
    return f"cursor:{short_id}"


def new_short_id(length: int = TOKEN_LENGTH) -> str:
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


class CursorRegistry:
    """issue / resolve / consume for pagination cursors.

    Tokens expire after ``ttl`` seconds. A colliding id overwrites the
    older entry.
    """

    def __init__(self, kv: KeyValueStore, ttl: int = 3600):
        self.kv = kv
        self.ttl = ttl

    async def issue(self, opaque_cursor: str, context: PageContext) -> str:
        short_id = new_short_id()
        token = CursorToken(
            short_id=short_id,
            opaque_cursor=opaque_cursor,
            context=context,
            expires_at=self.kv.now() + self.ttl,
        )
        await self.kv.set(cursor_key(short_id), token.model_dump(mode="json"), ttl=self.ttl)
        return short_id

    async def resolve(self, short_id: str) -> Optional[CursorToken]:
        """Return the stored token, or None when it is unknown or expired."""
        data = await self.kv.get(cursor_key(short_id))
        if data is None:
            logger.info("Cursor token %s expired or unknown", short_id)
            return None
        try:
            token = CursorToken.model_validate(data)
        except ValidationError:
            logger.exception("Corrupt cursor token %s", short_id)
            return None
        if token.expires_at <= self.kv.now():
            logger.info("Cursor token %s expired", short_id)
            return None
        return token

    async def consume(self, short_id: str):
        await self.kv.delete(cursor_key(short_id))
