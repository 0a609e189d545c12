"""
Paginated reads of the feed, notifications and cast conversations.

Each call makes exactly one remote request and returns whatever the API
returned for that page, normalized. When the response carries a further
cursor it is registered with the CursorRegistry together with the query
context, so a button press can replay the same query from that point.
"""
import logging
import re
from typing import Any, Iterable, List, Optional

from castbot.cursor_registry import CursorRegistry
from castbot.models import CastItem, Page, PageContext, PageKind
from castbot.neynar_client import NeynarClient
from castbot.normalize import normalize_cast, normalize_casts, normalize_notifications

logger = logging.getLogger(__name__)

DEFAULT_NOTIFICATION_TYPES = ["follows", "recasts", "likes", "mentions", "replies", "quotes"]


def resolve_notification_types(tokens: Optional[Iterable[str]]) -> List[str]:
    """Keep the recognised type names; fall back to all types if none survive.

    A typo therefore yields every notification rather than an error or an
    empty query.
    """
    requested: List[str] = []
    for token in tokens or []:
        for name in re.split(r"[\s,]+", token.strip().lower()):
            if name in DEFAULT_NOTIFICATION_TYPES and name not in requested:
                requested.append(name)
    return requested or list(DEFAULT_NOTIFICATION_TYPES)


def _next_cursor(payload: Any) -> Optional[str]:
    nxt = payload.get("next") if isinstance(payload, dict) else None
    if isinstance(nxt, dict) and nxt.get("cursor"):
        return str(nxt["cursor"])
    return None


class FeedPaginator:
    def __init__(self, neynar: NeynarClient, registry: CursorRegistry, page_size: int = 10):
        self.neynar = neynar
        self.registry = registry
        self.page_size = page_size

    async def page(self, subject_fid: int, cursor: Optional[str] = None) -> Page:
        payload = await self.neynar.fetch_feed(subject_fid, cursor=cursor, limit=self.page_size)
        if payload is None:
            return Page()

        items = normalize_casts(payload.get("casts"))
        next_cursor = _next_cursor(payload)
        next_token = None
        if next_cursor:
            context = PageContext(kind=PageKind.FEED, subject_fid=subject_fid)
            next_token = await self.registry.issue(next_cursor, context)

        logger.info("Feed page for fid %s: %d casts, more=%s", subject_fid, len(items), bool(next_token))
        return Page(items=items, next_token=next_token)


class NotificationPaginator:
    def __init__(self, neynar: NeynarClient, registry: CursorRegistry):
        self.neynar = neynar
        self.registry = registry

    async def page(
        self,
        subject_fid: int,
        cursor: Optional[str] = None,
        types: Optional[Iterable[str]] = None,
    ) -> Page:
        resolved = resolve_notification_types(types)
        payload = await self.neynar.fetch_notifications(subject_fid, resolved, cursor=cursor)
        if payload is None:
            return Page()

        items = normalize_notifications(payload.get("notifications"))
        next_cursor = _next_cursor(payload)
        next_token = None
        if next_cursor:
            context = PageContext(kind=PageKind.NOTIFICATIONS, subject_fid=subject_fid, types=resolved)
            next_token = await self.registry.issue(next_cursor, context)

        logger.info(
            "Notifications page for fid %s (%s): %d items, more=%s",
            subject_fid, ",".join(resolved), len(items), bool(next_token),
        )
        return Page(items=items, next_token=next_token)


class ConversationReader:
    """Direct replies to a single cast."""

    def __init__(self, neynar: NeynarClient):
        self.neynar = neynar

    async def replies(self, cast_hash: str, viewer_fid: Optional[int] = None) -> List[CastItem]:
        payload = await self.neynar.fetch_conversation(cast_hash, viewer_fid=viewer_fid)
        if payload is None:
            return []
        root = (payload.get("conversation") or {}).get("cast")
        if normalize_cast(root) is None:
            return []
        return normalize_casts(root.get("direct_replies"))
