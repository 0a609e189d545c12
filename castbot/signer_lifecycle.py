"""
Signer lifecycle: creation, approval polling, manual checks, reset and sweep.

States move NONE -> GENERATED -> PENDING_APPROVAL -> APPROVED, and any state
can become REVOKED. The remote service is the source of truth; the state in
the session record is a cache refreshed on manual checks, on every poll
attempt and by the periodic sweep. Writes are last-writer-wins.
"""
import logging
import time
from typing import Callable, Optional

from castbot.key_request import KeyRequestSigner
from castbot.models import FailureKind, Session, SignerOutcome, SignerRecord, SignerState
from castbot.neynar_client import NeynarClient, NeynarError
from castbot.scheduler import PollingTask, TaskScheduler
from castbot.session_store import CredentialStore
from castbot.transport import ChatTransport

logger = logging.getLogger(__name__)

APPROVED_MESSAGE = "Great! Your connection is approved. You can now use /feed to see your Farcaster feed!"
REVOKED_MESSAGE = "Your Farcaster connection was revoked. Use /reset_signer to connect again."
NOT_DETECTED_MESSAGE = (
    "I haven't detected your approval yet. Please approve the connection in Warpcast "
    "and then run /check_approval."
)


class SignerSetupError(Exception):
    """A new signer could not be created or registered."""


def map_remote_status(status: str) -> SignerState:
    if status == SignerState.APPROVED.value:
        return SignerState.APPROVED
    if status == SignerState.REVOKED.value:
        return SignerState.REVOKED
    # "generated" and "pending_approval" both mean the user has not approved yet
    return SignerState.PENDING_APPROVAL


class SignerLifecycleManager:
    def __init__(
        self,
        store: CredentialStore,
        neynar: NeynarClient,
        transport: ChatTransport,
        scheduler: TaskScheduler,
        key_signer: Optional[KeyRequestSigner] = None,
        app_fid: Optional[int] = None,
        poll_interval: float = 15.0,
        poll_max_attempts: int = 20,
        deadline_seconds: int = 86400,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.neynar = neynar
        self.transport = transport
        self.scheduler = scheduler
        self.key_signer = key_signer
        self.poll_interval = poll_interval
        self.poll_max_attempts = poll_max_attempts
        self.deadline_seconds = deadline_seconds
        self._app_fid = app_fid
        self._clock = clock

    # -- creation -----------------------------------------------------------

    async def _resolve_app_fid(self) -> int:
        if self._app_fid is None:
            self._app_fid = await self.neynar.lookup_fid_by_custody_address(self.key_signer.address)
            logger.info("Resolved app FID %s for %s", self._app_fid, self.key_signer.address)
        return self._app_fid

    async def create_signed_key(self) -> SignerRecord:
        """Create a signer and register it with a key request signed by the app."""
        if self.key_signer is None:
            raise SignerSetupError("FARCASTER_DEVELOPER_MNEMONIC is not set")

        signer = await self.neynar.create_signer()
        app_fid = await self._resolve_app_fid()
        deadline = int(self._clock()) + self.deadline_seconds
        signature = self.key_signer.sign(app_fid, signer.public_key, deadline)

        registered = await self.neynar.register_signed_key(signer.signer_id, app_fid, deadline, signature)
        if not registered.approval_url:
            raise SignerSetupError(f"Signer {registered.signer_id} has no approval url")
        logger.info("Created signer %s (status=%s)", registered.signer_id, registered.status)
        return registered

    async def _issue_signer(self, session_id: str, chat_id: int, fid: int) -> SignerOutcome:
        try:
            record = await self.create_signed_key()
        except (NeynarError, SignerSetupError, ValueError) as e:
            logger.exception("Signer setup failed for session %s", session_id)
            return SignerOutcome(
                session=await self.store.get_session(session_id),
                failure=FailureKind.LIFECYCLE,
                detail=str(e),
            )

        session = await self.store.save_session(Session(
            session_id=session_id,
            chat_id=chat_id,
            fid=fid,
            signer_id=record.signer_id,
            signer_state=SignerState.GENERATED,
            approval_url=record.approval_url,
        ))
        self.schedule_approval_polling(session)
        return SignerOutcome(session=session, approval_url=record.approval_url)

    async def start(self, session_id: str, chat_id: int, fid: int) -> SignerOutcome:
        """Link ``fid`` to the session, creating a signer unless one is already approved."""
        session = await self.store.get_session(session_id)
        if session is not None and session.signer_id:
            outcome = await self._reconcile(session)
            if outcome.session is not None and outcome.session.is_approved:
                updated = await self.store.save_session(
                    outcome.session.model_copy(update={"fid": fid, "chat_id": chat_id})
                )
                logger.info("Session %s switched to fid %s", session_id, fid)
                return SignerOutcome(session=updated)

        return await self._issue_signer(session_id, chat_id, fid)

    async def reset(self, session_id: str, chat_id: int) -> SignerOutcome:
        """Drop the current signer and immediately issue a fresh one."""
        session = await self.store.get_session(session_id)
        if session is None:
            return SignerOutcome(failure=FailureKind.AUTHORIZATION, detail="no session")
        outcome = await self._issue_signer(session_id, chat_id, session.fid)
        if outcome.ok and session.signer_id:
            logger.info(
                "Session %s signer %s: %s -> %s (replaced by %s)",
                session_id, session.signer_id, session.signer_state.value,
                SignerState.REVOKED.value, outcome.session.signer_id,
            )
        return outcome

    # -- reconciliation -----------------------------------------------------

    async def _reconcile(self, session: Session) -> SignerOutcome:
        try:
            record = await self.neynar.lookup_signer(session.signer_id)
        except NeynarError as e:
            logger.error("Signer lookup failed for %s: %s", session.signer_id, e)
            return SignerOutcome(
                session=session,
                approval_url=session.approval_url,
                failure=FailureKind.REMOTE_UNAVAILABLE,
                detail=str(e),
            )

        updated = await self.store.update_signer_state(
            session.session_id, map_remote_status(record.status), signer_id=session.signer_id
        )
        return SignerOutcome(session=updated, approval_url=record.approval_url or session.approval_url)

    async def refresh(self, session_id: str) -> SignerOutcome:
        """Read the remote signer status and cache it on the session."""
        session = await self.store.get_session(session_id)
        if session is None or not session.signer_id:
            return SignerOutcome(session=session, failure=FailureKind.AUTHORIZATION, detail="no signer")
        return await self._reconcile(session)

    async def check_approval(self, session_id: str) -> SignerOutcome:
        outcome = await self.refresh(session_id)
        logger.info("Manual approval check for session %s: %s", session_id, outcome.state.value)
        return outcome

    async def approval_link(self, session_id: str) -> SignerOutcome:
        """Refresh, then return the approval url unless the signer is already approved."""
        outcome = await self.refresh(session_id)
        if outcome.ok and outcome.state == SignerState.APPROVED:
            return SignerOutcome(session=outcome.session)
        return outcome

    async def sweep(self) -> int:
        """Refresh every stored signer; returns how many sessions changed state."""
        changed = 0
        for session in await self.store.all_sessions():
            if not session.signer_id:
                continue
            try:
                outcome = await self._reconcile(session)
            except Exception:
                logger.exception("Sweep failed for session %s", session.session_id)
                continue
            if outcome.session is not None and outcome.session.signer_state != session.signer_state:
                changed += 1
        logger.info("Signer sweep finished, %d session(s) changed", changed)
        return changed

    # -- approval polling ---------------------------------------------------

    def schedule_approval_polling(self, session: Session) -> PollingTask:
        watch = ApprovalWatch(self, session.session_id, session.signer_id)
        polling = PollingTask(
            name=f"approval:{session.session_id}:{session.signer_id}",
            check=watch.check,
            interval=self.poll_interval,
            max_attempts=self.poll_max_attempts,
            on_exhausted=watch.exhausted,
            sleep=self.scheduler.sleep,
        )
        self.scheduler.schedule_polling(polling)
        return polling


class ApprovalWatch:
    """Approval polling for one signer of one session.

    A terminal state this watch observes itself stays owed to the user
    until the notice is delivered; a failed send is retried on the next
    attempt. A terminal state already cached when the attempt starts was
    seen by someone else (a manual check, the sweep) and ends the watch
    without a notice.
    """

    NOTICES = {
        SignerState.APPROVED: APPROVED_MESSAGE,
        SignerState.REVOKED: REVOKED_MESSAGE,
    }

    def __init__(self, lifecycle: SignerLifecycleManager, session_id: str, signer_id: str):
        self.lifecycle = lifecycle
        self.session_id = session_id
        self.signer_id = signer_id
        self.owed: Optional[SignerState] = None

    async def _current(self) -> Optional[Session]:
        session = await self.lifecycle.store.get_session(self.session_id)
        if session is None or session.signer_id != self.signer_id:
            return None
        return session

    async def check(self, attempt: int) -> bool:
        session = await self._current()
        if session is None:
            logger.info("Stopping approval polling for replaced signer %s", self.signer_id)
            return True

        outcome = await self.lifecycle._reconcile(session)
        if not outcome.ok:
            return self.owed is not None and await self._deliver(session)

        state = outcome.state
        if state in self.NOTICES and state != session.signer_state:
            self.owed = state
        if self.owed is not None:
            return await self._deliver(session)
        return state in self.NOTICES

    async def _deliver(self, session: Session) -> bool:
        await self.lifecycle.transport.send_message(session.chat_id, self.NOTICES[self.owed])
        self.owed = None
        return True

    async def exhausted(self):
        session = await self._current()
        if session is None:
            return
        if self.owed is not None:
            await self._deliver(session)
        elif not session.is_approved:
            await self.lifecycle.transport.send_message(session.chat_id, NOT_DETECTED_MESSAGE)
