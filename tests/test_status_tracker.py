import pytest

from domain.errors import InvalidTransition, UnknownRow
from domain.models import DeliveryStatus, RowStatus
from services.status_tracker import StatusTracker

PENDING = DeliveryStatus.PENDING
SENDING = DeliveryStatus.SENDING
SENT = DeliveryStatus.SENT
FAILED = DeliveryStatus.FAILED


@pytest.fixture
def tracker():
    t = StatusTracker()
    t.add("a")
    t.add("b")
    return t


def test_new_rows_are_pending(tracker):
    assert tracker.get("a") == RowStatus(PENDING)
    assert [rid for rid, _ in tracker.items()] == ["a", "b"]
    assert "a" in tracker


def test_happy_path_transitions(tracker):
    tracker.set("a", SENDING)
    tracker.set("a", SENT)
    assert tracker.get("a").status == SENT


def test_pending_cannot_jump_to_sent(tracker):
    with pytest.raises(InvalidTransition):
        tracker.set("a", SENT)
    with pytest.raises(InvalidTransition):
        tracker.set("a", FAILED, "boom")
    assert tracker.get("a").status == PENDING


def test_failed_requires_error(tracker):
    tracker.set("a", SENDING)
    with pytest.raises(ValueError):
        tracker.set("a", FAILED)
    with pytest.raises(ValueError):
        tracker.set("a", FAILED, "   ")
    assert tracker.get("a").status == SENDING


def test_error_cleared_on_retry_and_success(tracker):
    tracker.set("a", SENDING)
    tracker.set("a", FAILED, "server error 421: try later")
    assert tracker.get("a") == RowStatus(FAILED, "server error 421: try later")

    tracker.set("a", SENDING)
    assert tracker.get("a").error is None
    tracker.set("a", SENT)
    assert tracker.get("a") == RowStatus(SENT, None)


def test_sent_only_goes_back_to_sending(tracker):
    tracker.set("a", SENDING)
    tracker.set("a", SENT)
    with pytest.raises(InvalidTransition):
        tracker.set("a", FAILED, "nope")
    tracker.set("a", SENDING)
    assert tracker.get("a").status == SENDING


def test_begin_claims_row_once(tracker):
    assert tracker.begin("a", [PENDING]) is True
    assert tracker.begin("a", [PENDING]) is False
    assert tracker.get("a").status == SENDING


def test_begin_respects_allowed_states(tracker):
    assert tracker.begin("a", [FAILED]) is False
    assert tracker.get("a").status == PENDING


def test_enumeration_helpers(tracker):
    tracker.add("c", SENT)
    tracker.set("b", SENDING)

    assert tracker.ids_with(PENDING) == ["a"]
    assert tracker.ids_with(SENT, SENDING) == ["b", "c"]
    assert tracker.counts() == {"pending": 1, "sending": 1, "sent": 1, "failed": 0}


def test_unknown_row(tracker):
    with pytest.raises(UnknownRow):
        tracker.get("zzz")
    with pytest.raises(UnknownRow):
        tracker.set("zzz", SENDING)


def test_rows_cannot_be_registered_mid_send(tracker):
    with pytest.raises(ValueError):
        tracker.add("d", SENDING)


def test_settle_only_from_allowed_states(tracker):
    assert tracker.settle("a", SENT, allowed_from=[PENDING, FAILED]) is True
    assert tracker.get("a") == RowStatus(SENT)

    tracker.set("b", SENDING)
    assert tracker.settle("b", SENT, allowed_from=[PENDING, FAILED]) is False
    assert tracker.get("b").status == SENDING

    with pytest.raises(ValueError):
        tracker.settle("a", FAILED, allowed_from=[SENT])


def test_discard_keeps_protected_rows(tracker):
    tracker.set("b", SENDING)

    assert tracker.discard("a", keep=[SENDING]) is True
    assert tracker.discard("b", keep=[SENDING]) is False
    assert tracker.discard("missing") is False
    assert [rid for rid, _ in tracker.items()] == ["b"]
