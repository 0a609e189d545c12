"""
Inline button dispatch.

Button payloads are ``<action>:<token>``. ``load_more`` and ``notif``
carry a CursorRegistry short id and continue a paginated query; ``like``,
``recast`` and ``reply`` carry a cast hash and need an approved signer.
"""
import logging
from typing import Optional, Tuple

from castbot.cursor_registry import CursorRegistry
from castbot.models import (
    ActionOutcome,
    ButtonAction,
    CursorToken,
    FailureKind,
    Page,
    PageKind,
    Session,
)
from castbot.neynar_client import NeynarClient, NeynarError
from castbot.paginators import FeedPaginator, NotificationPaginator
from castbot.rendering import deliver_page
from castbot.session_store import CredentialStore
from castbot.transport import ChatTransport

logger = logging.getLogger(__name__)

EXPIRED_MESSAGE = "This link has expired. Please run the command again to start over."
NOT_APPROVED_MESSAGE = "You need an approved signer first. Use /start to set one up."
SIGNER_REJECTED_MESSAGE = (
    "Farcaster no longer accepts your signer. Run /check_approval, or /reset_signer to connect again."
)
UNKNOWN_ACTION_MESSAGE = "Unknown action."
REPLY_PROMPT = "Reply to this cast with your message:"

REACTION_DONE = {
    ButtonAction.LIKE: "Cast liked! ❤️",
    ButtonAction.RECAST: "Cast recasted! 🔄",
}


def parse_payload(payload: str) -> Optional[Tuple[ButtonAction, str]]:
    action, sep, token = (payload or "").partition(":")
    if not sep or not token:
        return None
    try:
        return ButtonAction(action), token
    except ValueError:
        return None


def can_mutate(session: Optional[Session]) -> bool:
    """Content-changing actions need a cached APPROVED signer."""
    return session is not None and session.is_approved


class ActionRouter:
    def __init__(
        self,
        store: CredentialStore,
        registry: CursorRegistry,
        feed: FeedPaginator,
        notifications: NotificationPaginator,
        neynar: NeynarClient,
        transport: ChatTransport,
    ):
        self.store = store
        self.registry = registry
        self.feed = feed
        self.notifications = notifications
        self.neynar = neynar
        self.transport = transport

    async def route(self, session_id: str, chat_id: int, payload: str, callback_id: str) -> ActionOutcome:
        parsed = parse_payload(payload)
        if parsed is None:
            logger.warning("Unparseable button payload %r from session %s", payload, session_id)
            await self.transport.answer_callback(callback_id, UNKNOWN_ACTION_MESSAGE)
            return ActionOutcome(action="unknown", failure=FailureKind.UNEXPECTED, detail=payload or "")

        action, token = parsed
        if action in (ButtonAction.LOAD_MORE, ButtonAction.NOTIF):
            return await self._continue(action, token, chat_id, callback_id)
        return await self._content_action(action, token, session_id, chat_id, callback_id)

    async def replay(self, token: CursorToken) -> Page:
        """Re-issue the query a token was minted for, starting at its cursor."""
        context = token.context
        cursor = token.opaque_cursor or None
        if context.kind == PageKind.FEED:
            return await self.feed.page(context.subject_fid, cursor=cursor)
        return await self.notifications.page(context.subject_fid, cursor=cursor, types=context.types)

    async def _continue(self, action: ButtonAction, short_id: str, chat_id: int, callback_id: str) -> ActionOutcome:
        token = await self.registry.resolve(short_id)
        if token is None:
            await self.transport.answer_callback(callback_id, EXPIRED_MESSAGE)
            await self.transport.send_message(chat_id, EXPIRED_MESSAGE)
            return ActionOutcome(action=action.value, failure=FailureKind.STALE_TOKEN, detail=short_id)

        await self.registry.consume(short_id)
        await self.transport.answer_callback(callback_id, "Loading…")

        page = await self.replay(token)
        more = ButtonAction.LOAD_MORE if token.context.kind == PageKind.FEED else ButtonAction.NOTIF
        await deliver_page(self.transport, chat_id, page, more)
        return ActionOutcome(action=action.value)

    async def _content_action(
        self,
        action: ButtonAction,
        cast_hash: str,
        session_id: str,
        chat_id: int,
        callback_id: str,
    ) -> ActionOutcome:
        session = await self.store.get_session(session_id)
        if not can_mutate(session):
            await self.transport.answer_callback(callback_id, NOT_APPROVED_MESSAGE)
            return ActionOutcome(action=action.value, failure=FailureKind.AUTHORIZATION)

        if action == ButtonAction.REPLY:
            # publishing happens on the next plain-text message from this session
            await self.store.set_reply_target(session_id, cast_hash)
            await self.transport.answer_callback(callback_id, "Send your reply as a message!")
            await self.transport.send_message(chat_id, REPLY_PROMPT, force_reply=True)
            return ActionOutcome(action=action.value)

        try:
            await self.neynar.publish_reaction(session.signer_id, action.value, cast_hash)
        except NeynarError as e:
            logger.error("Reaction %s on %s failed for session %s: %s", action.value, cast_hash, session_id, e)
            if e.signer_rejected:
                await self.transport.answer_callback(callback_id, SIGNER_REJECTED_MESSAGE)
                return ActionOutcome(action=action.value, failure=FailureKind.AUTHORIZATION, detail=str(e))
            await self.transport.answer_callback(callback_id, f"Sorry, couldn't {action.value} that cast.")
            return ActionOutcome(action=action.value, failure=FailureKind.REMOTE_UNAVAILABLE, detail=str(e))

        await self.transport.answer_callback(callback_id, REACTION_DONE[action])
        return ActionOutcome(action=action.value)
