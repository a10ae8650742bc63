import asyncio
import threading

import pytest

from conftest import StubChannel, StubStore, alumnus, run, student
from domain.errors import InvalidTransition, MissingRecipient, UnknownRow
from domain.models import DeliveryStatus
from services.ticket_pipeline import TicketPipeline, payment_confirmed, row_key

PENDING = DeliveryStatus.PENDING
SENDING = DeliveryStatus.SENDING
SENT = DeliveryStatus.SENT
FAILED = DeliveryStatus.FAILED


def make_pipeline(channel=None, store=None, **kw):
    kw.setdefault("send_delay", 0)
    return TicketPipeline(channel or StubChannel(), store, **kw)


def statuses(pipe, ids):
    return [pipe.status(rid).status for rid in ids]


# ── loading ────────────────────────────────────────────────

def test_load_keys_rows_by_category_and_id():
    pipe = make_pipeline()
    ids = pipe.load([student("1"), alumnus("1")])

    assert ids == ["student:1", "alumni:1"]
    assert pipe.record("alumni:1").category == "alumni"


def test_load_marks_already_ticketed_rows_sent():
    pipe = make_pipeline()
    ids = pipe.load([student("1"), student("2", ticket_generated=True)])

    assert statuses(pipe, ids) == [PENDING, SENT]


def test_unknown_row_raises():
    pipe = make_pipeline()
    with pytest.raises(UnknownRow):
        run(pipe.send_one("student:missing"))


# ── single sends ───────────────────────────────────────────

def test_send_one_success_marks_sent_and_persists(channel, store):
    pipe = make_pipeline(channel, store)
    [rid] = pipe.load([student("1", name="Asha Roy", email="asha@example.com")])

    outcome = run(pipe.send_one(rid))

    assert outcome.ok and outcome.attempted
    assert outcome.delivery_id == "<msg-1@test>"
    assert pipe.status(rid).status == SENT
    assert pipe.status(rid).error is None
    assert store.marked == [("1", "student")]
    assert pipe.record(rid).ticket_generated is True

    recipient, name, artifact = channel.calls[0]
    assert (recipient, name) == ("asha@example.com", "Asha Roy")
    assert '"id":"1"' in artifact.payload_text


def test_send_one_failure_records_channel_detail(store):
    channel = StubChannel(fail_for={"1@example.com"}, status_class="client")
    pipe = make_pipeline(channel, store)
    [rid] = pipe.load([student("1")])

    outcome = run(pipe.send_one(rid))

    assert outcome.status == FAILED
    status = pipe.status(rid)
    assert status.status == FAILED
    assert status.error == "client error 550: Failed to send email to 1@example.com"
    assert store.marked == []


def test_missing_recipient_never_contacts_channel(channel):
    pipe = make_pipeline(channel)
    [rid] = pipe.load([student("1", email=None)])

    with pytest.raises(MissingRecipient):
        run(pipe.send_one(rid))

    assert channel.calls == []
    assert pipe.status(rid).status == PENDING


def test_send_one_on_sent_row_requires_resend(channel):
    pipe = make_pipeline(channel)
    [rid] = pipe.load([student("1", ticket_generated=True)])

    with pytest.raises(InvalidTransition):
        run(pipe.send_one(rid))
    assert channel.calls == []


def test_double_send_while_sending_calls_channel_once():
    async def scenario():
        gate, entered = asyncio.Event(), asyncio.Event()
        channel = StubChannel(gate=gate, entered=entered)
        pipe = make_pipeline(channel)
        [rid] = pipe.load([student("1")])

        first = asyncio.create_task(pipe.send_one(rid))
        await entered.wait()
        assert pipe.status(rid).status == SENDING

        second = await pipe.send_one(rid)
        gate.set()
        done = await first
        return channel, pipe, rid, second, done

    channel, pipe, rid, second, done = run(scenario())

    assert len(channel.calls) == 1
    assert second.attempted is False
    assert second.status == SENDING
    assert done.status == SENT
    assert pipe.status(rid).status == SENT


def test_unexpected_channel_error_still_resolves_row():
    class Broken:
        async def send(self, recipient, display_name, artifact):
            raise ConnectionResetError("peer went away")

    pipe = make_pipeline(Broken())
    [rid] = pipe.load([student("1")])

    outcome = run(pipe.send_one(rid))

    assert outcome.status == FAILED
    assert "peer went away" in pipe.status(rid).error


def test_encoder_failure_lands_in_failed(channel):
    def bad_encoder(record):
        from domain.errors import InvalidPayload
        raise InvalidPayload("no identity")

    pipe = make_pipeline(channel, encoder=bad_encoder)
    [rid] = pipe.load([student("1")])

    outcome = run(pipe.send_one(rid))

    assert outcome.status == FAILED
    assert pipe.status(rid).error.startswith("InvalidPayload")
    assert channel.calls == []


# ── retry / resend ─────────────────────────────────────────

def test_retry_only_from_failed(channel):
    pipe = make_pipeline(channel)
    [rid] = pipe.load([student("1")])

    with pytest.raises(InvalidTransition):
        run(pipe.retry(rid))
    assert channel.calls == []


def test_resend_only_from_sent(channel):
    pipe = make_pipeline(channel)
    [rid] = pipe.load([student("1")])

    with pytest.raises(InvalidTransition):
        run(pipe.resend(rid))


def test_resend_sent_row_sends_exactly_once_more(channel, store):
    # Scenario C
    pipe = make_pipeline(channel, store)
    [rid] = pipe.load([student("1")])
    run(pipe.send_one(rid))
    assert len(channel.calls) == 1

    outcome = run(pipe.resend(rid))

    assert outcome.status == SENT
    assert pipe.status(rid).status == SENT
    assert len(channel.calls) == 2


def test_resend_ignores_durable_flag(channel):
    pipe = make_pipeline(channel)
    [rid] = pipe.load([student("1", ticket_generated=True)])

    run(pipe.resend(rid))

    assert len(channel.calls) == 1


# ── batches ────────────────────────────────────────────────

def test_batch_skips_rows_without_email(channel):
    # Scenario A
    pipe = make_pipeline(channel)
    ids = pipe.load([student("1"), student("2", email=None), student("3")])

    summary = run(pipe.send_all_pending())

    assert summary.counts() == {"attempted": 2, "succeeded": 2, "failed": 0, "skipped": 1}
    assert [c[0] for c in channel.calls] == ["1@example.com", "3@example.com"]
    assert statuses(pipe, ids) == [SENT, PENDING, SENT]
    skipped = [o for o in summary.outcomes if not o.attempted]
    assert "MissingRecipient" in skipped[0].error


def test_batch_failure_then_retry(store):
    # Scenario B
    channel = StubChannel(fail_for={"2@example.com"})
    pipe = make_pipeline(channel, store)
    ids = pipe.load([student("1"), student("2"), student("3")])

    summary = run(pipe.send_all_pending())

    assert statuses(pipe, ids) == [SENT, FAILED, SENT]
    assert summary.counts() == {"attempted": 3, "succeeded": 2, "failed": 1, "skipped": 0}

    channel.fail_for.clear()
    outcome = run(pipe.retry(ids[1]))

    assert outcome.ok
    assert statuses(pipe, ids) == [SENT, SENT, SENT]
    assert pipe.status(ids[1]).error is None
    assert store.marked == [("1", "student"), ("3", "student"), ("2", "student")]


def test_persistence_failure_keeps_row_sent(channel):
    # Scenario D
    pipe = make_pipeline(channel, StubStore(fail=True))
    [rid] = pipe.load([student("1")])

    outcome = run(pipe.send_one(rid))

    assert outcome.status == SENT
    assert outcome.persistence_error == "database unavailable"
    assert pipe.status(rid).status == SENT
    assert pipe.status(rid).error is None
    assert pipe.record(rid).ticket_generated is False


def test_batch_keeps_load_order_and_waits_between_rows(channel):
    naps = []

    async def fake_sleep(seconds):
        naps.append(seconds)

    pipe = TicketPipeline(channel, send_delay=1.5, sleep=fake_sleep)
    pipe.load([student("c"), alumnus("a"), student("b")])

    run(pipe.send_all_pending())

    assert [c[0] for c in channel.calls] == ["c@example.com", "a@alumni.example.com", "b@example.com"]
    assert naps == [1.5, 1.5]


def test_batch_only_takes_pending_rows(channel):
    pipe = make_pipeline(channel)
    ids = pipe.load([student("1"), student("2", ticket_generated=True)])

    summary = run(pipe.send_all_pending())

    assert summary.attempted == 1
    assert statuses(pipe, ids) == [SENT, SENT]
    assert len(channel.calls) == 1


def test_batch_eligibility_predicate(channel):
    pipe = make_pipeline(channel)
    ids = pipe.load([
        student("1", payment_status="Paid"),
        student("2", payment_status="Not Paid"),
        alumnus("3", payment_status="paid"),
    ])

    summary = run(pipe.send_all_pending(eligible=payment_confirmed))

    assert summary.attempted == 2
    assert statuses(pipe, ids) == [SENT, PENDING, SENT]


def test_batch_cancel_between_rows():
    cancel = threading.Event()

    class CancelAfterFirst(StubChannel):
        async def send(self, recipient, display_name, artifact):
            result = await super().send(recipient, display_name, artifact)
            cancel.set()
            return result

    channel = CancelAfterFirst()
    pipe = make_pipeline(channel)
    ids = pipe.load([student("1"), student("2"), student("3")])

    summary = run(pipe.send_all_pending(cancel=cancel))

    assert summary.cancelled is True
    assert summary.attempted == 1
    assert statuses(pipe, ids) == [SENT, PENDING, PENDING]


def test_no_row_left_sending_after_batch():
    channel = StubChannel(fail_for={"2@example.com", "4@example.com"})
    pipe = make_pipeline(channel)
    pipe.load([student(str(i)) for i in range(1, 6)])

    run(pipe.send_all_pending())

    assert pipe.tracker.ids_with(SENDING) == []
    assert pipe.tracker.counts() == {"pending": 0, "sending": 0, "sent": 3, "failed": 2}


def test_row_key_format():
    assert row_key(alumnus("9")) == "alumni:9"


# ── reloading ──────────────────────────────────────────────

def test_reimport_does_not_resend_delivered_rows(channel):
    pipe = make_pipeline(channel)
    pipe.load([student("1"), student("2")])
    run(pipe.send_all_pending())
    assert len(channel.calls) == 2

    ids = pipe.load([student("1"), student("2"), student("3")])
    assert statuses(pipe, ids) == [SENT, SENT, PENDING]

    summary = run(pipe.send_all_pending())

    assert summary.attempted == 1
    assert [c[0] for c in channel.calls] == ["1@example.com", "2@example.com", "3@example.com"]


def test_reload_keeps_failure_detail_and_refreshes_fields():
    channel = StubChannel(fail_for={"1@example.com"})
    pipe = make_pipeline(channel)
    [rid] = pipe.load([student("1")])
    run(pipe.send_one(rid))

    pipe.load([student("1", name="Asha Roy")])

    assert pipe.status(rid).status == FAILED
    assert pipe.status(rid).error.startswith("server error 550")
    assert pipe.record(rid).name == "Asha Roy"


def test_reload_with_durable_flag_marks_pending_row_sent(channel):
    pipe = make_pipeline(channel)
    [rid] = pipe.load([student("1")])

    pipe.load([student("1", ticket_generated=True)])

    assert pipe.status(rid).status == SENT
    run(pipe.send_all_pending())
    assert channel.calls == []


def test_replace_drops_missing_rows_but_keeps_statuses(channel):
    pipe = make_pipeline(channel)
    pipe.load([student("1"), student("2")])
    run(pipe.send_one("student:1"))

    ids = pipe.load([student("1"), alumnus("9")], replace=True)

    assert ids == ["student:1", "alumni:9"]
    assert [rid for rid, _, _ in pipe.rows()] == ["student:1", "alumni:9"]
    assert statuses(pipe, ids) == [SENT, PENDING]
    with pytest.raises(UnknownRow):
        pipe.status("student:2")


def test_replace_during_batch_keeps_in_flight_row(store):
    async def scenario():
        gate, entered = asyncio.Event(), asyncio.Event()
        channel = StubChannel(gate=gate, entered=entered)
        pipe = make_pipeline(channel, store)
        pipe.load([student("1"), student("2")])

        batch = asyncio.create_task(pipe.send_all_pending())
        await entered.wait()
        # student 2 is gone from the new load; student 1 is mid-send
        pipe.load([student("1")], replace=True)
        assert pipe.status("student:1").status == SENDING
        gate.set()
        return channel, pipe, await batch

    channel, pipe, summary = run(scenario())

    assert len(channel.calls) == 1
    assert summary.counts() == {"attempted": 1, "succeeded": 1, "failed": 0, "skipped": 1}
    assert pipe.status("student:1").status == SENT
    assert store.marked == [("1", "student")]


def test_lookup_matches_id_and_email(channel):
    pipe = make_pipeline(channel)
    pipe.load([student("7"), alumnus("7")])

    assert pipe.lookup("7") == ["student:7", "alumni:7"]
    assert pipe.lookup("7", "7@Alumni.Example.com") == ["alumni:7"]
    assert pipe.lookup("8") == []
