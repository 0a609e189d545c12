"""Pytest configuration and shared fixtures."""
import asyncio
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

from castbot.actions import ActionRouter
from castbot.cursor_registry import CursorRegistry
from castbot.database import init_database
from castbot.handlers import BotDispatcher
from castbot.kv_store import KeyValueStore
from castbot.models import Session, SignerRecord, SignerState
from castbot.neynar_client import NeynarError
from castbot.paginators import ConversationReader, FeedPaginator, NotificationPaginator
from castbot.scheduler import TaskScheduler
from castbot.session_store import CredentialStore
from castbot.signer_lifecycle import SignerLifecycleManager

POLL_INTERVAL = 5.0
POLL_ATTEMPTS = 4


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class RecordingSleep:
    """Stands in for asyncio.sleep and remembers every requested delay."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)
        await asyncio.sleep(0)


class RecordingTransport:
    def __init__(self):
        self.messages: List[Dict[str, Any]] = []
        self.callbacks: List[Dict[str, str]] = []

    async def send_message(self, chat_id, text, buttons=None, force_reply=False):
        self.messages.append({"chat_id": chat_id, "text": text, "buttons": buttons, "force_reply": force_reply})

    async def send_media(self, chat_id, media, caption, buttons=None):
        self.messages.append({"chat_id": chat_id, "text": caption, "buttons": buttons, "media": media.url})

    async def answer_callback(self, callback_id, text):
        self.callbacks.append({"id": callback_id, "text": text})

    def texts(self) -> List[str]:
        return [m["text"] for m in self.messages]

    def payloads(self) -> List[str]:
        return [b.payload for m in self.messages for row in (m["buttons"] or []) for b in row]


class FakeKeySigner:
    address = "0x00000000000000000000000000000000000000aa"

    def sign(self, request_fid: int, public_key: str, deadline: int) -> str:
        return "0xsig"


class FakeNeynar:
    """In-memory Neynar double that records every call."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.feed_pages: Dict[Optional[str], Any] = {}
        self.notification_pages: Dict[Optional[str], Any] = {}
        self.conversations: Dict[str, Any] = {}
        self.signer_statuses: Dict[str, List[Any]] = {}
        self.create_error: Optional[Exception] = None
        self.publish_error: Optional[Exception] = None
        self.reaction_error: Optional[Exception] = None
        self._signers = 0
        self._casts = 0

    def calls_named(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]

    async def fetch_feed(self, fid, cursor=None, limit=10):
        self.calls.append(("fetch_feed", fid, cursor))
        return self.feed_pages.get(cursor, {"casts": []})

    async def fetch_notifications(self, fid, types, cursor=None):
        self.calls.append(("fetch_notifications", fid, list(types), cursor))
        return self.notification_pages.get(cursor, {"notifications": []})

    async def fetch_conversation(self, cast_hash, viewer_fid=None):
        self.calls.append(("fetch_conversation", cast_hash))
        return self.conversations.get(cast_hash)

    async def create_signer(self):
        self.calls.append(("create_signer",))
        if self.create_error:
            raise self.create_error
        self._signers += 1
        return SignerRecord(signer_id=f"signer-{self._signers}", public_key="0x" + "ab" * 32)

    async def register_signed_key(self, signer_id, app_fid, deadline, signature):
        self.calls.append(("register_signed_key", signer_id, app_fid, deadline, signature))
        return SignerRecord(
            signer_id=signer_id,
            public_key="0x" + "ab" * 32,
            status="pending_approval",
            approval_url=f"https://client.warpcast.com/deeplinks/signed-key-request?token={signer_id}",
        )

    async def lookup_signer(self, signer_id):
        self.calls.append(("lookup_signer", signer_id))
        statuses = self.signer_statuses.get(signer_id, ["pending_approval"])
        status = statuses.pop(0) if len(statuses) > 1 else statuses[0]
        if isinstance(status, Exception):
            raise status
        return SignerRecord(signer_id=signer_id, status=status, approval_url=f"https://approve/{signer_id}")

    async def lookup_fid_by_custody_address(self, address):
        self.calls.append(("lookup_fid_by_custody_address", address))
        return 42

    async def publish_cast(self, signer_id, text, parent=None, channel_id=None):
        self.calls.append(("publish_cast", signer_id, text, parent, channel_id))
        if self.publish_error:
            raise self.publish_error
        self._casts += 1
        return {"hash": f"0xcast{self._casts}"}

    async def publish_reaction(self, signer_id, reaction_type, target):
        self.calls.append(("publish_reaction", signer_id, reaction_type, target))
        if self.reaction_error:
            raise self.reaction_error
        return {"success": True}


def cast_payload(hash_: str, text: str = "gm", **extra) -> Dict[str, Any]:
    data = {
        "hash": hash_,
        "text": text,
        "timestamp": "2024-05-01T12:30:00.000Z",
        "author": {"fid": 3, "username": "dwr", "display_name": "Dan", "pfp_url": "https://img/dwr.png"},
        "reactions": {"likes_count": 4, "recasts_count": 1},
        "replies": {"count": 2},
        "embeds": [],
    }
    data.update(extra)
    return data


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    path = tmp_path / "data" / "castbot.db"
    run(init_database(path))
    return path


@pytest.fixture
def kv(db_path: Path, clock: FakeClock) -> KeyValueStore:
    return KeyValueStore(db_path, clock=clock)


@pytest.fixture
def bot(kv: KeyValueStore, clock: FakeClock):
    """Every component wired together around fakes."""
    neynar = FakeNeynar()
    transport = RecordingTransport()
    sleep = RecordingSleep()
    scheduler = TaskScheduler(sleep=sleep)
    store = CredentialStore(kv)
    registry = CursorRegistry(kv, ttl=600)
    feed = FeedPaginator(neynar, registry, page_size=10)
    notifications = NotificationPaginator(neynar, registry)
    lifecycle = SignerLifecycleManager(
        store,
        neynar,
        transport,
        scheduler,
        key_signer=FakeKeySigner(),
        poll_interval=POLL_INTERVAL,
        poll_max_attempts=POLL_ATTEMPTS,
        clock=clock,
    )
    router = ActionRouter(store, registry, feed, notifications, neynar, transport)
    dispatcher = BotDispatcher(
        store, lifecycle, router, registry, feed, notifications,
        ConversationReader(neynar), neynar, transport,
    )
    return SimpleNamespace(
        kv=kv, store=store, registry=registry, neynar=neynar, transport=transport,
        sleep=sleep, scheduler=scheduler, feed=feed, notifications=notifications,
        lifecycle=lifecycle, router=router, dispatcher=dispatcher, clock=clock,
    )


def make_session(state: SignerState = SignerState.APPROVED, session_id: str = "100", fid: int = 3) -> Session:
    return Session(session_id=session_id, chat_id=int(session_id), fid=fid, signer_id="signer-x", signer_state=state)


def signer_rejected_error() -> NeynarError:
    return NeynarError("Signer is not approved", status_code=403)
