"""Tests for signer creation, approval polling, reset and sweep."""
from castbot.models import FailureKind, SignerState
from castbot.neynar_client import NeynarError
from castbot.signer_lifecycle import APPROVED_MESSAGE, NOT_DETECTED_MESSAGE, REVOKED_MESSAGE
from conftest import POLL_ATTEMPTS, POLL_INTERVAL, RecordingTransport, make_session, run


def start_and_drain(bot, session_id="100", fid=3):
    async def scenario():
        outcome = await bot.lifecycle.start(session_id, int(session_id), fid)
        await bot.scheduler.drain()
        return outcome
    return run(scenario())


def test_start_creates_generated_signer(bot):
    async def scenario():
        outcome = await bot.lifecycle.start("100", 100, 3)
        await bot.scheduler.shutdown()
        return outcome

    outcome = run(scenario())

    assert outcome.ok
    assert outcome.session.signer_id == "signer-1"
    assert outcome.session.signer_state == SignerState.GENERATED
    assert outcome.session.fid == 3
    assert run(bot.store.get_session("100")).signer_id == "signer-1"
    assert outcome.approval_url.endswith("token=signer-1")
    register = bot.neynar.calls_named("register_signed_key")[0]
    assert register[1:3] == ("signer-1", 42)
    assert register[3] == int(bot.clock.now) + 86400
    assert register[4] == "0xsig"


def test_creation_failure_leaves_session_unchanged(bot):
    run(bot.store.save_session(make_session(SignerState.PENDING_APPROVAL)))
    bot.neynar.create_error = NeynarError("boom", status_code=500)

    outcome = run(bot.lifecycle.reset("100", 100))

    assert outcome.failure == FailureKind.LIFECYCLE
    stored = run(bot.store.get_session("100"))
    assert stored.signer_id == "signer-x"
    assert stored.signer_state == SignerState.PENDING_APPROVAL


def test_creation_failure_for_new_user_stores_nothing(bot):
    bot.neynar.create_error = NeynarError("boom", status_code=500)
    outcome = run(bot.lifecycle.start("100", 100, 3))
    assert not outcome.ok
    assert run(bot.store.get_session("100")) is None


def test_missing_mnemonic_is_lifecycle_failure(bot):
    bot.lifecycle.key_signer = None
    outcome = run(bot.lifecycle.start("100", 100, 3))
    assert outcome.failure == FailureKind.LIFECYCLE
    assert bot.neynar.calls_named("create_signer") == []


def test_polling_approves_on_first_observation(bot):
    bot.neynar.signer_statuses["signer-1"] = ["generated", "pending_approval", "approved"]

    start_and_drain(bot)

    stored = run(bot.store.get_session("100"))
    assert stored.signer_state == SignerState.APPROVED
    assert bot.sleep.delays == [POLL_INTERVAL] * 3
    assert len(bot.neynar.calls_named("lookup_signer")) == 3
    assert bot.transport.texts().count(APPROVED_MESSAGE) == 1


def test_polling_is_bounded(bot):
    bot.neynar.signer_statuses["signer-1"] = ["pending_approval"]

    start_and_drain(bot)

    stored = run(bot.store.get_session("100"))
    assert stored.signer_state == SignerState.PENDING_APPROVAL
    assert bot.sleep.delays == [POLL_INTERVAL] * POLL_ATTEMPTS
    assert len(bot.neynar.calls_named("lookup_signer")) == POLL_ATTEMPTS
    assert bot.transport.texts() == [NOT_DETECTED_MESSAGE]


def test_poll_failure_does_not_stop_schedule(bot):
    bot.neynar.signer_statuses["signer-1"] = [NeynarError("down", status_code=503), "approved"]

    start_and_drain(bot)

    assert run(bot.store.get_session("100")).signer_state == SignerState.APPROVED
    assert len(bot.neynar.calls_named("lookup_signer")) == 2


def test_polling_stops_on_revocation(bot):
    bot.neynar.signer_statuses["signer-1"] = ["revoked"]

    start_and_drain(bot)

    assert run(bot.store.get_session("100")).signer_state == SignerState.REVOKED
    assert bot.transport.texts() == [REVOKED_MESSAGE]
    assert len(bot.neynar.calls_named("lookup_signer")) == 1


def test_manual_check_approves_pending_session(bot):
    run(bot.store.save_session(make_session(SignerState.PENDING_APPROVAL)))
    bot.neynar.signer_statuses["signer-x"] = ["approved"]

    outcome = run(bot.lifecycle.check_approval("100"))

    assert outcome.state == SignerState.APPROVED
    assert run(bot.store.get_session("100")).signer_state == SignerState.APPROVED


def test_manual_check_without_signer(bot):
    outcome = run(bot.lifecycle.check_approval("100"))
    assert outcome.failure == FailureKind.AUTHORIZATION
    assert bot.neynar.calls == []


def test_manual_check_remote_down_keeps_cache(bot):
    run(bot.store.save_session(make_session(SignerState.PENDING_APPROVAL)))
    bot.neynar.signer_statuses["signer-x"] = [NeynarError("down", status_code=502)]

    outcome = run(bot.lifecycle.check_approval("100"))

    assert outcome.failure == FailureKind.REMOTE_UNAVAILABLE
    assert run(bot.store.get_session("100")).signer_state == SignerState.PENDING_APPROVAL


def test_start_with_approved_signer_only_updates_fid(bot):
    run(bot.store.save_session(make_session(SignerState.APPROVED, fid=3)))
    bot.neynar.signer_statuses["signer-x"] = ["approved"]

    outcome = run(bot.lifecycle.start("100", 100, 99))

    assert outcome.ok
    stored = run(bot.store.get_session("100"))
    assert stored.fid == 99
    assert stored.signer_id == "signer-x"
    assert bot.neynar.calls_named("create_signer") == []


def test_reset_issues_fresh_signer_and_keeps_fid(bot):
    run(bot.store.save_session(make_session(SignerState.APPROVED, fid=77)))

    async def scenario():
        outcome = await bot.lifecycle.reset("100", 100)
        await bot.scheduler.shutdown()
        return outcome

    outcome = run(scenario())

    assert outcome.ok
    assert outcome.session.signer_id == "signer-1"
    assert outcome.session.signer_state == SignerState.GENERATED
    assert outcome.session.fid == 77
    assert run(bot.store.get_session("100")).signer_id == "signer-1"


def test_poller_for_replaced_signer_stops_silently(bot):
    async def scenario():
        old = await bot.store.save_session(make_session(SignerState.PENDING_APPROVAL))
        await bot.store.save_session(old.model_copy(update={"signer_id": "signer-2"}))
        bot.lifecycle.schedule_approval_polling(old)
        await bot.scheduler.drain()

    run(scenario())

    assert bot.sleep.delays == [POLL_INTERVAL]
    assert bot.neynar.calls_named("lookup_signer") == []
    assert bot.transport.texts() == []
    assert run(bot.store.get_session("100")).signer_id == "signer-2"


def test_sweep_reconciles_every_session(bot):
    run(bot.store.save_session(make_session(SignerState.APPROVED, session_id="1")))
    run(bot.store.save_session(make_session(SignerState.PENDING_APPROVAL, session_id="2").model_copy(
        update={"signer_id": "signer-y"})))
    bot.neynar.signer_statuses["signer-x"] = ["revoked"]
    bot.neynar.signer_statuses["signer-y"] = [NeynarError("down", status_code=500)]

    changed = run(bot.lifecycle.sweep())

    assert changed == 1
    assert run(bot.store.get_session("1")).signer_state == SignerState.REVOKED
    assert run(bot.store.get_session("2")).signer_state == SignerState.PENDING_APPROVAL


class FlakyTransport(RecordingTransport):
    """Fails the first delivery of one particular text."""

    def __init__(self, failing_text):
        super().__init__()
        self.failing_text = failing_text
        self.failures = 0

    async def send_message(self, chat_id, text, buttons=None, force_reply=False):
        if text == self.failing_text and not self.failures:
            self.failures += 1
            raise RuntimeError("telegram unreachable")
        await super().send_message(chat_id, text, buttons, force_reply)


def test_failed_approval_notice_is_sent_on_next_attempt(bot):
    transport = FlakyTransport(APPROVED_MESSAGE)
    bot.lifecycle.transport = transport
    bot.neynar.signer_statuses["signer-1"] = ["pending_approval", "approved"]

    start_and_drain(bot)

    assert transport.failures == 1
    assert transport.texts() == [APPROVED_MESSAGE]
    assert len(bot.neynar.calls_named("lookup_signer")) == 3
    assert run(bot.store.get_session("100")).signer_state == SignerState.APPROVED


def test_manual_approval_during_polling_ends_polling_quietly(bot):
    bot.neynar.signer_statuses["signer-1"] = ["pending_approval", "approved"]
    checks = []

    async def sleep(seconds):
        bot.sleep.delays.append(seconds)
        if len(bot.sleep.delays) == 2:
            checks.append(await bot.lifecycle.check_approval("100"))

    bot.scheduler.sleep = sleep

    start_and_drain(bot)

    assert checks[0].state == SignerState.APPROVED
    assert bot.sleep.delays == [POLL_INTERVAL] * 2
    assert len(bot.neynar.calls_named("lookup_signer")) == 3
    assert bot.transport.texts() == []
    assert run(bot.store.get_session("100")).signer_state == SignerState.APPROVED


def test_approval_link_survives_remote_outage(bot):
    session = make_session(SignerState.PENDING_APPROVAL).model_copy(update={"approval_url": "https://approve/cached"})
    run(bot.store.save_session(session))
    bot.neynar.signer_statuses["signer-x"] = [NeynarError("down", status_code=503)]

    outcome = run(bot.lifecycle.approval_link("100"))

    assert outcome.failure == FailureKind.REMOTE_UNAVAILABLE
    assert outcome.approval_url == "https://approve/cached"


def test_reset_without_session_creates_nothing(bot):
    outcome = run(bot.lifecycle.reset("100", 100))

    assert outcome.failure == FailureKind.AUTHORIZATION
    assert bot.neynar.calls == []
    assert run(bot.store.get_session("100")) is None
