from datetime import timedelta

from services.billing.webhook_store import ClaimResult, claim_event, get_event, mark_failed, mark_processed
from tests.factories import NOW


def test_first_claim_then_duplicate_after_processing(db_session):
    assert claim_event(db_session, "evt_1", "invoice.paid", now=NOW) is ClaimResult.CLAIMED
    assert claim_event(db_session, "evt_1", "invoice.paid", now=NOW) is ClaimResult.IN_PROGRESS

    mark_processed(db_session, "evt_1", now=NOW)

    assert claim_event(db_session, "evt_1", "invoice.paid", now=NOW) is ClaimResult.DUPLICATE
    event = get_event(db_session, "evt_1")
    assert event.status == "PROCESSED"
    assert event.processed_at is not None


def test_failed_event_is_reclaimed(db_session):
    claim_event(db_session, "evt_2", "invoice.paid", now=NOW)
    mark_failed(db_session, "evt_2", "provider.unavailable: boom", now=NOW)

    assert claim_event(db_session, "evt_2", "invoice.paid", now=NOW) is ClaimResult.CLAIMED

    event = get_event(db_session, "evt_2")
    assert event.status == "PENDING"
    assert event.attempts == 2
    assert event.error_message is None


def test_stuck_pending_event_is_reclaimed_after_timeout(db_session):
    claim_event(db_session, "evt_3", "invoice.paid", now=NOW)

    assert claim_event(
        db_session, "evt_3", "invoice.paid", pending_timeout_seconds=60, now=NOW + timedelta(seconds=30)
    ) is ClaimResult.IN_PROGRESS
    assert claim_event(
        db_session, "evt_3", "invoice.paid", pending_timeout_seconds=60, now=NOW + timedelta(seconds=61)
    ) is ClaimResult.CLAIMED


def test_error_message_is_truncated(db_session):
    claim_event(db_session, "evt_4", "invoice.paid", now=NOW)
    mark_failed(db_session, "evt_4", "x" * 5000, now=NOW)

    assert len(get_event(db_session, "evt_4").error_message) == 2000
