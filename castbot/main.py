"""
FastAPI application receiving Telegram webhook updates.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Request

from castbot import __version__
from castbot.actions import ActionRouter
from castbot.config import Settings, settings
from castbot.cursor_registry import CursorRegistry
from castbot.database import init_database
from castbot.handlers import BotDispatcher
from castbot.key_request import KeyRequestSigner
from castbot.kv_store import KeyValueStore
from castbot.neynar_client import NeynarClient
from castbot.paginators import ConversationReader, FeedPaginator, NotificationPaginator
from castbot.scheduler import TaskScheduler
from castbot.session_store import CredentialStore
from castbot.signer_lifecycle import SignerLifecycleManager
from castbot.transport import ChatTransport, TelegramTransport

logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(name)s %(levelname)s %(message)s")

logger = logging.getLogger(__name__)


def create_app(
    config: Settings = settings,
    neynar: Optional[NeynarClient] = None,
    transport: Optional[ChatTransport] = None,
    key_signer: Optional[KeyRequestSigner] = None,
    scheduler: Optional[TaskScheduler] = None,
) -> FastAPI:
    """Build the app; collaborators may be injected, otherwise they come from ``config``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_database(config.database_path)

        neynar_client = neynar or NeynarClient(
            config.neynar_api_key,
            api_url=config.neynar_api_url,
            client_id=config.neynar_client_id,
            timeout=config.http_timeout_seconds,
        )
        chat = transport or TelegramTransport(
            config.telegram_bot_token,
            api_url=config.telegram_api_url,
            timeout=config.http_timeout_seconds,
        )
        signer = key_signer
        if signer is None and config.farcaster_developer_mnemonic:
            signer = KeyRequestSigner(config.farcaster_developer_mnemonic)
        if signer is None:
            logger.warning("No developer mnemonic configured; signer creation will fail")
        tasks = scheduler or TaskScheduler()

        kv = KeyValueStore(config.database_path)
        store = CredentialStore(kv)
        registry = CursorRegistry(kv, ttl=config.cursor_ttl_seconds)
        feed = FeedPaginator(neynar_client, registry, page_size=config.feed_page_size)
        notifications = NotificationPaginator(neynar_client, registry)
        lifecycle = SignerLifecycleManager(
            store,
            neynar_client,
            chat,
            tasks,
            key_signer=signer,
            app_fid=config.app_fid,
            poll_interval=config.approval_poll_interval_seconds,
            poll_max_attempts=config.approval_poll_max_attempts,
            deadline_seconds=config.key_request_deadline_seconds,
        )
        router = ActionRouter(store, registry, feed, notifications, neynar_client, chat)
        app.state.lifecycle = lifecycle
        app.state.dispatcher = BotDispatcher(
            store,
            lifecycle,
            router,
            registry,
            feed,
            notifications,
            ConversationReader(neynar_client),
            neynar_client,
            chat,
        )

        if config.signer_sweep_interval_seconds > 0:
            tasks.start_periodic("signer-sweep", config.signer_sweep_interval_seconds, lifecycle.sweep)
            tasks.start_periodic("kv-cleanup", config.signer_sweep_interval_seconds, kv.purge_expired)
        if config.feed_digest_interval_seconds > 0:
            tasks.start_periodic(
                "feed-digest", config.feed_digest_interval_seconds, app.state.dispatcher.push_feed_digest
            )

        yield

        await tasks.shutdown()
        if neynar is None:
            await neynar_client.aclose()
        if transport is None:
            await chat.aclose()

    app = FastAPI(
        title="Farcaster Telegram Bridge",
        version=__version__,
        lifespan=lifespan
    )

    @app.post("/telegram/webhook")
    async def telegram_webhook(
        request: Request,
        x_telegram_bot_api_secret_token: Optional[str] = Header(default=None),
    ):
        """Handle one Telegram update to completion."""
        if config.telegram_webhook_secret and x_telegram_bot_api_secret_token != config.telegram_webhook_secret:
            raise HTTPException(status_code=403, detail="Invalid webhook secret")

        update = await request.json()
        try:
            await app.state.dispatcher.handle_update(update)
        except Exception:
            # Telegram re-delivers failed updates; answering ok avoids a retry loop
            logger.exception("Unhandled error while handling Telegram update")
        return {"ok": True}

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": "castbot",
            "version": __version__
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
