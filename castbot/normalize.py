"""
Conversion of raw Neynar payloads into the normalized item shapes.

Everything coming back from the API is treated as untrusted: missing or
malformed fields fall back to defaults, and an item without an identifying
hash (or notification type) is dropped instead of propagated.
"""
import logging
from datetime import datetime
from typing import Any, List, Optional

from castbot.models import Author, CastItem, MediaRef, NotificationItem

logger = logging.getLogger(__name__)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _count(reactions: Any, name: str) -> int:
    """Reaction counts arrive either as ``<name>_count`` or as a list of reactors."""
    if not isinstance(reactions, dict):
        return 0
    if f"{name}_count" in reactions:
        return _as_int(reactions[f"{name}_count"])
    value = reactions.get(name)
    if isinstance(value, list):
        return len(value)
    return _as_int(value)


def normalize_author(data: Any) -> Author:
    if not isinstance(data, dict):
        return Author()
    return Author(
        fid=_as_int(data.get("fid")),
        username=data.get("username") or "",
        display_name=data.get("display_name") or "",
    )


def _media_kind(url: str, metadata: Any) -> str:
    content_type = ""
    if isinstance(metadata, dict):
        content_type = metadata.get("content_type") or ""
    if content_type.startswith("image/"):
        return "image"
    if content_type.startswith("video/") or url.endswith(".m3u8"):
        return "video"
    return "link"


def normalize_media(embeds: Any) -> List[MediaRef]:
    media: List[MediaRef] = []
    if not isinstance(embeds, list):
        return media
    for embed in embeds:
        # quoted casts are embedded as {"cast_id": ...} and carry no url
        if not isinstance(embed, dict) or not embed.get("url"):
            continue
        url = str(embed["url"])
        media.append(MediaRef(url=url, kind=_media_kind(url, embed.get("metadata"))))
    return media


def normalize_cast(data: Any) -> Optional[CastItem]:
    if not isinstance(data, dict) or not data.get("hash"):
        return None

    channel = data.get("channel")
    replies = data.get("replies")

    return CastItem(
        hash=str(data["hash"]),
        author=normalize_author(data.get("author")),
        text=data.get("text") or "",
        timestamp=_parse_timestamp(data.get("timestamp")),
        media=normalize_media(data.get("embeds")),
        likes=_count(data.get("reactions"), "likes"),
        recasts=_count(data.get("reactions"), "recasts"),
        replies=_as_int(replies.get("count")) if isinstance(replies, dict) else 0,
        parent_hash=data.get("parent_hash") or None,
        channel=channel.get("id") if isinstance(channel, dict) else None,
    )


def normalize_notification(data: Any) -> Optional[NotificationItem]:
    if not isinstance(data, dict) or not data.get("type"):
        return None

    reactions = data.get("reactions") if isinstance(data.get("reactions"), list) else []
    follows = data.get("follows") if isinstance(data.get("follows"), list) else []

    actors = [normalize_author(r.get("user")) for r in reactions if isinstance(r, dict)]
    actors += [normalize_author(f.get("user")) for f in follows if isinstance(f, dict)]

    cast = normalize_cast(data.get("cast"))
    if cast is None and reactions and isinstance(reactions[0], dict):
        cast = normalize_cast(reactions[0].get("cast"))
    if not actors and cast is not None:
        # mentions, replies and quotes are authored by the notifying account
        actors = [cast.author]

    return NotificationItem(
        type=str(data["type"]),
        timestamp=_parse_timestamp(data.get("most_recent_timestamp")),
        actors=actors,
        cast=cast,
    )


def normalize_casts(payload: Any) -> List[CastItem]:
    raw = payload if isinstance(payload, list) else []
    items = [normalize_cast(entry) for entry in raw]
    dropped = sum(1 for item in items if item is None)
    if dropped:
        logger.warning("Dropped %d malformed casts", dropped)
    return [item for item in items if item is not None]


def normalize_notifications(payload: Any) -> List[NotificationItem]:
    raw = payload if isinstance(payload, list) else []
    items = [normalize_notification(entry) for entry in raw]
    dropped = sum(1 for item in items if item is None)
    if dropped:
        logger.warning("Dropped %d malformed notifications", dropped)
    return [item for item in items if item is not None]
