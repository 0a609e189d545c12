"""
Telegram update handling: commands, free text and button presses.

Every entry point is guarded: an unexpected exception is logged and turned
into a generic apology so a single bad update never takes the bot down.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from castbot.actions import (
    NOT_APPROVED_MESSAGE,
    SIGNER_REJECTED_MESSAGE,
    ActionRouter,
    can_mutate,
)
from castbot.cursor_registry import CursorRegistry
from castbot.models import Button, ButtonAction, FailureKind, PageContext, PageKind, SignerState
from castbot.neynar_client import NeynarClient, NeynarError
from castbot.paginators import (
    ConversationReader,
    FeedPaginator,
    NotificationPaginator,
    resolve_notification_types,
)
from castbot.rendering import deliver_cast, deliver_page
from castbot.session_store import CredentialStore
from castbot.signer_lifecycle import REVOKED_MESSAGE, SignerLifecycleManager
from castbot.transport import ChatTransport

logger = logging.getLogger(__name__)

NO_FID_MESSAGE = "No FID found. Please set up your account first with /start"
NO_SIGNER_MESSAGE = "No signer found. Please use /start to set up a new signer."
GENERIC_ERROR = "Sorry, something went wrong. Please try again."
HELP_TEXT = (
    "Send your Farcaster FID (numbers only) to connect.\n\n"
    "/feed - your For You feed\n"
    "/notifications [likes recasts follows mentions replies quotes] - your notifications\n"
    "/cast <text> - publish a cast\n"
    "/channel_cast <channel> <text> - publish a cast to a channel\n"
    "/replies - replies to your recent casts\n"
    "/check_approval - check whether your signer is approved\n"
    "/get_approval_link - show the approval link again\n"
    "/reset_signer - start over with a new signer\n"
    "/status - show your connection details"
)
NOTIFICATION_SHORTCUTS = ["likes", "replies", "mentions", "follows"]
RECENT_CASTS_CHECKED = 5

CommandHandler = Callable[[str, int, str], Awaitable[None]]


class BotDispatcher:
    def __init__(
        self,
        store: CredentialStore,
        lifecycle: SignerLifecycleManager,
        router: ActionRouter,
        registry: CursorRegistry,
        feed: FeedPaginator,
        notifications: NotificationPaginator,
        conversations: ConversationReader,
        neynar: NeynarClient,
        transport: ChatTransport,
    ):
        self.store = store
        self.lifecycle = lifecycle
        self.router = router
        self.registry = registry
        self.feed = feed
        self.notifications = notifications
        self.conversations = conversations
        self.neynar = neynar
        self.transport = transport
        self._commands: Dict[str, CommandHandler] = {
            "start": self.cmd_start,
            "help": self.cmd_help,
            "feed": self.cmd_feed,
            "notifications": self.cmd_notifications,
            "cast": self.cmd_cast,
            "channel_cast": self.cmd_channel_cast,
            "replies": self.cmd_replies,
            "check_approval": self.cmd_check_approval,
            "get_approval_link": self.cmd_get_approval_link,
            "reset_signer": self.cmd_reset_signer,
            "status": self.cmd_status,
        }

    # -- entry points -------------------------------------------------------

    async def handle_update(self, update: Dict[str, Any]):
        """Route one Telegram update to the matching handler."""
        callback = update.get("callback_query")
        if callback:
            chat = (callback.get("message") or {}).get("chat") or {}
            await self.handle_callback(
                session_id=str(callback["from"]["id"]),
                chat_id=chat.get("id", callback["from"]["id"]),
                payload=callback.get("data") or "",
                callback_id=callback["id"],
            )
            return

        message = update.get("message")
        if not message or not message.get("text") or "from" not in message:
            logger.debug("Ignoring update %s", update.get("update_id"))
            return

        session_id = str(message["from"]["id"])
        chat_id = message["chat"]["id"]
        text = message["text"]
        if text.startswith("/"):
            await self.handle_command(session_id, chat_id, text)
        else:
            await self.handle_text(session_id, chat_id, text)

    async def handle_command(self, session_id: str, chat_id: int, text: str):
        head, _, args = text[1:].partition(" ")
        name = head.split("@", 1)[0].lower()
        logger.info("/%s received from session %s", name, session_id)
        try:
            # a command abandons any reply the user was about to write
            await self.store.clear_reply_target(session_id)
            handler = self._commands.get(name)
            if handler is None:
                await self.transport.send_message(chat_id, "Unknown command. Try /help")
                return
            await handler(session_id, chat_id, args.strip())
        except Exception:
            logger.exception("Error in /%s command", name)
            await self._apologize(chat_id)

    async def handle_text(self, session_id: str, chat_id: int, text: str):
        try:
            target = await self.store.get_reply_target(session_id)
            if target:
                await self._publish_reply(session_id, chat_id, target, text)
                return
            await self._link_fid(session_id, chat_id, text.strip())
        except Exception:
            logger.exception("Error handling message from session %s", session_id)
            await self._apologize(chat_id)

    async def handle_callback(self, session_id: str, chat_id: int, payload: str, callback_id: str):
        try:
            await self.router.route(session_id, chat_id, payload, callback_id)
        except Exception:
            logger.exception("Error handling button %r", payload)
            try:
                await self.transport.answer_callback(callback_id, "Sorry, something went wrong!")
            except Exception:
                logger.exception("Could not answer callback %s", callback_id)

    async def _apologize(self, chat_id: int):
        try:
            await self.transport.send_message(chat_id, GENERIC_ERROR)
        except Exception:
            logger.exception("Could not deliver apology to chat %s", chat_id)

    # -- free text ----------------------------------------------------------

    async def _publish_reply(self, session_id: str, chat_id: int, parent: str, text: str):
        try:
            session = await self.store.get_session(session_id)
            if not can_mutate(session):
                await self.transport.send_message(chat_id, NOT_APPROVED_MESSAGE)
                return
            try:
                await self.neynar.publish_cast(session.signer_id, text, parent=parent)
            except NeynarError as e:
                logger.error("Reply to %s failed for session %s: %s", parent, session_id, e)
                message = SIGNER_REJECTED_MESSAGE if e.signer_rejected else (
                    "Sorry, something went wrong while publishing your reply."
                )
                await self.transport.send_message(chat_id, message)
                return
            await self.transport.send_message(chat_id, "✅ Reply published!")
        finally:
            await self.store.clear_reply_target(session_id)

    async def _link_fid(self, session_id: str, chat_id: int, text: str):
        if not text.isdecimal():
            await self.transport.send_message(chat_id, "Please send a valid FID (numbers only)")
            return

        outcome = await self.lifecycle.start(session_id, chat_id, int(text))
        if not outcome.ok:
            await self.transport.send_message(
                chat_id, "Sorry, something went wrong while setting up your Farcaster connection. Please try again."
            )
            return
        if outcome.state == SignerState.APPROVED:
            await self.transport.send_message(chat_id, "Updated your FID! You can now use /feed to see your Farcaster feed.")
            return

        await self.transport.send_message(chat_id, "To get started, I need your approval to interact with Farcaster.")
        await self.transport.send_message(chat_id, "Please click this link to approve in Warpcast:")
        await self.transport.send_message(chat_id, outcome.approval_url)
        await self.transport.send_message(chat_id, "I'll check for your approval in a moment...")

    # -- commands -----------------------------------------------------------

    async def cmd_start(self, session_id: str, chat_id: int, args: str):
        await self.transport.send_message(chat_id, "Welcome! Please send your Farcaster FID (numbers only) to get started.")

    async def cmd_help(self, session_id: str, chat_id: int, args: str):
        await self.transport.send_message(chat_id, HELP_TEXT)

    async def cmd_feed(self, session_id: str, chat_id: int, args: str):
        session = await self.store.get_session(session_id)
        if session is None or not session.fid:
            await self.transport.send_message(chat_id, NO_FID_MESSAGE)
            return

        await self.transport.send_message(chat_id, "Fetching your For You feed...")
        page = await self.feed.page(session.fid)
        await deliver_page(self.transport, chat_id, page, ButtonAction.LOAD_MORE)

    async def cmd_notifications(self, session_id: str, chat_id: int, args: str):
        session = await self.store.get_session(session_id)
        if session is None or not session.fid:
            await self.transport.send_message(chat_id, NO_FID_MESSAGE)
            return

        requested = args.split() if args else None
        types = resolve_notification_types(requested)
        shortcuts = []
        for name in NOTIFICATION_SHORTCUTS:
            # an empty cursor replays the filtered query from its first page
            context = PageContext(kind=PageKind.NOTIFICATIONS, subject_fid=session.fid, types=[name])
            token = await self.registry.issue("", context)
            shortcuts.append(Button.for_action(name.capitalize(), ButtonAction.NOTIF, token))

        await self.transport.send_message(chat_id, f"🔔 Notifications ({', '.join(types)})", [shortcuts])
        page = await self.notifications.page(session.fid, types=requested)
        await deliver_page(self.transport, chat_id, page, ButtonAction.NOTIF)

    async def _publish(self, session_id: str, chat_id: int, text: str, channel_id: Optional[str] = None):
        session = await self.store.get_session(session_id)
        if not can_mutate(session):
            await self.transport.send_message(chat_id, NOT_APPROVED_MESSAGE)
            return

        where = f' to channel "{channel_id}"' if channel_id else ""
        await self.transport.send_message(chat_id, f"Publishing your cast{where}...")
        try:
            cast = await self.neynar.publish_cast(session.signer_id, text, channel_id=channel_id)
        except NeynarError as e:
            logger.error("Publishing cast failed for session %s: %s", session_id, e)
            message = SIGNER_REJECTED_MESSAGE if e.signer_rejected else (
                "Sorry, something went wrong while publishing your cast."
            )
            await self.transport.send_message(chat_id, message)
            return

        if cast.get("hash"):
            await self.store.record_cast(session_id, cast["hash"], text, channel_id=channel_id)
        await self.transport.send_message(chat_id, "✅ Cast published successfully!")

    async def cmd_cast(self, session_id: str, chat_id: int, args: str):
        if not args:
            await self.transport.send_message(
                chat_id, "Please include your cast text after /cast\nExample: /cast Hello Farcaster!"
            )
            return
        await self._publish(session_id, chat_id, args)

    async def cmd_channel_cast(self, session_id: str, chat_id: int, args: str):
        channel_id, _, text = args.partition(" ")
        if not channel_id or not text.strip():
            await self.transport.send_message(
                chat_id,
                "Please format your command as: /channel_cast channelId your cast text\n"
                "Example: /channel_cast art This is my artwork",
            )
            return
        await self._publish(session_id, chat_id, text.strip(), channel_id=channel_id)

    async def cmd_replies(self, session_id: str, chat_id: int, args: str):
        session = await self.store.get_session(session_id)
        if session is None or not session.fid:
            await self.transport.send_message(chat_id, NO_FID_MESSAGE)
            return
        if not can_mutate(session):
            await self.transport.send_message(chat_id, NOT_APPROVED_MESSAGE)
            return

        casts = await self.store.recent_casts(session_id, limit=RECENT_CASTS_CHECKED)
        if not casts:
            await self.transport.send_message(
                chat_id, "You haven't made any casts yet! Use /cast to create some content first."
            )
            return

        await self.transport.send_message(chat_id, "Checking replies to your recent casts...")
        found = 0
        for record in casts:
            replies = await self.conversations.replies(record.hash, viewer_fid=session.fid)
            if not replies:
                continue
            await self.transport.send_message(chat_id, f"💬 Replies to: {record.text[:80]}")
            for reply in replies:
                await deliver_cast(self.transport, chat_id, reply)
            found += len(replies)

        if not found:
            await self.transport.send_message(chat_id, "No replies yet.")
        await self.transport.send_message(chat_id, "Finished checking replies!")

    async def cmd_check_approval(self, session_id: str, chat_id: int, args: str):
        outcome = await self.lifecycle.check_approval(session_id)
        if outcome.failure == FailureKind.AUTHORIZATION:
            await self.transport.send_message(
                chat_id, "You haven't started the connection process yet. Please use /start first."
            )
        elif outcome.failure is not None:
            await self.transport.send_message(chat_id, "Couldn't reach Farcaster right now. Please try again shortly.")
        elif outcome.state == SignerState.APPROVED:
            await self.transport.send_message(chat_id, "Your connection is approved! You can use the bot now.")
        elif outcome.state == SignerState.REVOKED:
            await self.transport.send_message(chat_id, REVOKED_MESSAGE)
        else:
            await self.transport.send_message(
                chat_id, "Your connection isn't approved yet. Please approve in Warpcast and try again."
            )

    async def cmd_get_approval_link(self, session_id: str, chat_id: int, args: str):
        outcome = await self.lifecycle.approval_link(session_id)
        if outcome.failure == FailureKind.AUTHORIZATION:
            await self.transport.send_message(chat_id, NO_SIGNER_MESSAGE)
        elif outcome.ok and outcome.state == SignerState.APPROVED:
            await self.transport.send_message(chat_id, "Your signer is already approved! No need for approval link.")
        elif outcome.approval_url:
            await self.transport.send_message(chat_id, "Please approve this signer in Warpcast:")
            await self.transport.send_message(chat_id, outcome.approval_url)
        else:
            await self.transport.send_message(
                chat_id,
                "Sorry, couldn't get the approval URL. You might need to create a new signer with /reset_signer",
            )

    async def cmd_reset_signer(self, session_id: str, chat_id: int, args: str):
        outcome = await self.lifecycle.reset(session_id, chat_id)
        if outcome.failure == FailureKind.AUTHORIZATION:
            await self.transport.send_message(chat_id, NO_SIGNER_MESSAGE)
            return
        if not outcome.ok:
            await self.transport.send_message(chat_id, "Sorry, couldn't create a new signer. Please try again.")
            return
        await self.transport.send_message(chat_id, "Signer reset successfully! Please approve the new connection in Warpcast:")
        await self.transport.send_message(chat_id, outcome.approval_url)

    async def cmd_status(self, session_id: str, chat_id: int, args: str):
        session = await self.store.get_session(session_id)
        if session is None:
            await self.transport.send_message(chat_id, "Not connected yet. Send your FID to get started.")
            return
        await self.transport.send_message(
            chat_id,
            f"FID: {session.fid or 'Not set'}\n"
            f"Signer: {session.signer_id or 'None'}\n"
            f"Status: {session.signer_state.value}",
        )

    # -- scheduled ----------------------------------------------------------

    async def push_feed_digest(self):
        """Send the first feed page to every session with an approved signer."""
        for session in await self.store.all_sessions():
            if not session.is_approved or not session.fid:
                continue
            try:
                page = await self.feed.page(session.fid)
                if not page.items:
                    continue
                await self.transport.send_message(session.chat_id, "🔄 New casts from your feed:")
                await deliver_page(self.transport, session.chat_id, page, ButtonAction.LOAD_MORE)
            except Exception:
                logger.exception("Feed digest failed for chat %s", session.chat_id)
