"""
Turning normalized items into chat messages with action buttons.
"""
from html import escape
from typing import List

from castbot.models import Button, ButtonAction, CastItem, NotificationItem, Page
from castbot.transport import ButtonRows, ChatTransport

NO_MORE_ITEMS = "No more items."

NOTIFICATION_VERBS = {
    "follows": "followed you",
    "likes": "liked your cast",
    "recasts": "recasted your cast",
    "mention": "mentioned you",
    "mentions": "mentioned you",
    "reply": "replied to you",
    "replies": "replied to you",
    "quote": "quoted your cast",
    "quotes": "quoted your cast",
}


def cast_buttons(cast: CastItem) -> ButtonRows:
    return [[
        Button.for_action("❤️ Like", ButtonAction.LIKE, cast.hash),
        Button.for_action("🔄 Recast", ButtonAction.RECAST, cast.hash),
        Button.for_action("💬 Reply", ButtonAction.REPLY, cast.hash),
    ]]


def format_cast(cast: CastItem) -> str:
    lines = [f"<b>{escape(cast.author.name)}</b>", "━━━━━━━━━━", "", escape(cast.text), ""]
    stats = []
    if cast.timestamp:
        stats.append(cast.timestamp.strftime("%H:%M"))
    stats.append(f"❤️ {cast.likes}")
    stats.append(f"🔄 {cast.recasts}")
    if cast.replies:
        stats.append(f"💬 {cast.replies}")
    lines.append(" • ".join(stats))
    return "\n".join(lines)


def format_notification(notification: NotificationItem) -> str:
    names: List[str] = [escape(a.name) for a in notification.actors[:2]]
    who = " and ".join(names) or "Someone"
    others = len(notification.actors) - len(names)
    if others > 0:
        who += f" and {others} other{'s' if others > 1 else ''}"
    verb = NOTIFICATION_VERBS.get(notification.type, notification.type)
    text = f"<b>{who}</b> {verb}"
    if notification.cast and notification.cast.text:
        text += f"\n\n{escape(notification.cast.text)}"
    return text


async def deliver_cast(transport: ChatTransport, chat_id: int, cast: CastItem):
    text = format_cast(cast)
    media = next((m for m in cast.media if m.kind in ("image", "video")), None)
    if media is not None:
        await transport.send_media(chat_id, media, text, cast_buttons(cast))
    else:
        await transport.send_message(chat_id, text, cast_buttons(cast))


async def deliver_page(transport: ChatTransport, chat_id: int, page: Page, more_action: ButtonAction):
    """Send every item of ``page`` followed by a load-more button or the terminal message."""
    for item in page.items:
        if isinstance(item, CastItem):
            await deliver_cast(transport, chat_id, item)
        else:
            buttons = cast_buttons(item.cast) if item.cast else None
            await transport.send_message(chat_id, format_notification(item), buttons)

    if page.next_token:
        await transport.send_message(
            chat_id,
            "More available:",
            [[Button.for_action("⬇️ Load more", more_action, page.next_token)]],
        )
    else:
        await transport.send_message(chat_id, NO_MORE_ITEMS)
