import uuid
from datetime import timedelta

import pytest
from sqlalchemy.orm.exc import StaleDataError

from core.billing_constants import CancellationReason, SubscriptionStatus
from models.subscription import Subscription
from services.billing import state_machine
from services.billing.state_machine import (
    CancelMode,
    apply_transition,
    can_transition,
    cancel_locally,
    map_provider_status,
    set_status,
    validate_cancel,
    validate_cancel_downgrade,
    validate_cancel_trial,
    validate_resume,
)
from tests.factories import NOW

S = SubscriptionStatus


@pytest.mark.parametrize(
    ("current", "target", "allowed"),
    [
        (S.INCOMPLETE, S.TRIALING, True),
        (S.INCOMPLETE, S.ACTIVE, True),
        (S.TRIALING, S.ACTIVE, True),
        (S.TRIALING, S.CANCELED, True),
        (S.ACTIVE, S.PAST_DUE, True),
        (S.PAST_DUE, S.ACTIVE, True),
        (S.PAST_DUE, S.CANCELED, True),
        (S.ACTIVE, S.TRIALING, False),
        (S.CANCELED, S.ACTIVE, False),
        (S.ACTIVE, S.ACTIVE, True),
    ],
)
def test_transition_table(current, target, allowed):
    assert can_transition(current, target) is allowed


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("active", S.ACTIVE),
        ("unpaid", S.PAST_DUE),
        ("paused", S.INCOMPLETE),
        ("incomplete_expired", S.CANCELED),
        ("  Trialing ", S.TRIALING),
        ("mystery", None),
        (None, None),
    ],
)
def test_map_provider_status(raw, expected):
    assert map_provider_status(raw) == expected


def test_set_status_never_reopens_canceled():
    subscription = Subscription(status=S.CANCELED.value)

    assert set_status(subscription, S.ACTIVE, now=NOW) is False
    assert subscription.status == S.CANCELED.value


def test_set_status_accepts_out_of_table_edge_and_stamps_cancel(caplog):
    subscription = Subscription(status=S.ACTIVE.value, canceled_at=None)

    assert set_status(subscription, S.TRIALING, now=NOW) is True
    assert subscription.status == S.TRIALING.value
    assert "Out-of-band" in caplog.text

    assert set_status(subscription, S.CANCELED, now=NOW) is True
    assert subscription.canceled_at == NOW


def _sub(**overrides):
    values = {
        "status": S.ACTIVE.value,
        "cancel_at_period_end": False,
        "current_period_end": NOW + timedelta(days=10),
    }
    values.update(overrides)
    return Subscription(**values)


def test_validate_cancel_modes():
    assert validate_cancel(_sub(), now=NOW, free_trial=False).unwrap() is CancelMode.AT_PERIOD_END
    trial = _sub(status=S.TRIALING.value)
    assert validate_cancel(trial, now=NOW, free_trial=True).unwrap() is CancelMode.IMMEDIATE
    assert validate_cancel(trial, now=NOW, free_trial=False).unwrap() is CancelMode.AT_PERIOD_END
    lapsed = _sub(current_period_end=NOW - timedelta(seconds=1))
    assert validate_cancel(lapsed, now=NOW, free_trial=False).unwrap() is CancelMode.IMMEDIATE
    assert validate_cancel(_sub(status=S.INCOMPLETE.value), now=NOW, free_trial=False).unwrap() is CancelMode.IMMEDIATE


def test_validate_cancel_rejects_repeat_and_canceled():
    pending = validate_cancel(_sub(cancel_at_period_end=True), now=NOW, free_trial=False)
    assert pending.error.code == "subscription.cancel_pending"
    done = validate_cancel(_sub(status=S.CANCELED.value), now=NOW, free_trial=False)
    assert done.error.code == "subscription.already_canceled"


def test_validate_resume():
    assert validate_resume(_sub(cancel_at_period_end=True), now=NOW).ok
    assert validate_resume(_sub(), now=NOW).error.code == "subscription.not_resumable"
    lapsed = _sub(cancel_at_period_end=True, current_period_end=NOW)
    assert validate_resume(lapsed, now=NOW).error.code == "subscription.not_resumable"
    past_due = _sub(status=S.PAST_DUE.value, cancel_at_period_end=True)
    assert not validate_resume(past_due, now=NOW).ok


def test_validate_cancel_trial_and_downgrade(catalog):
    assert validate_cancel_trial(_sub(status=S.TRIALING.value)).ok
    assert validate_cancel_trial(_sub()).error.code == "subscription.not_trialing"
    assert validate_cancel_downgrade(_sub()).error.code == "subscription.no_scheduled_change"
    assert validate_cancel_downgrade(_sub(upcoming_plan_id=catalog.basic.id)).ok


def test_apply_transition_bumps_version(db_session, catalog, make_org, make_subscription):
    org = make_org()
    subscription = make_subscription(org, plan=catalog.basic)
    assert subscription.version == 1

    def _mutate(row):
        row.cancel_at_period_end = True
        return None

    outcome = apply_transition(db_session, subscription.id, _mutate, now=NOW)

    assert outcome.ok
    assert outcome.unwrap().version == 2
    assert outcome.unwrap().cancel_at_period_end is True


def test_apply_transition_retries_once_then_surfaces_conflict(db_session, catalog, make_org, make_subscription, monkeypatch):
    org = make_org()
    subscription = make_subscription(org, plan=catalog.basic)
    commits = {"count": 0}

    def _always_stale():
        commits["count"] += 1
        raise StaleDataError("simulated concurrent update")

    monkeypatch.setattr(db_session, "commit", _always_stale)
    outcome = apply_transition(db_session, subscription.id, lambda row: None, now=NOW)

    assert commits["count"] == state_machine.MAX_TRANSITION_ATTEMPTS
    assert outcome.error.code == "subscription.conflict"


def test_apply_transition_succeeds_on_the_retry(db_session, catalog, make_org, make_subscription, monkeypatch):
    org = make_org()
    subscription = make_subscription(org, plan=catalog.basic)
    real_commit = db_session.commit
    commits = {"count": 0}

    def _stale_once():
        commits["count"] += 1
        if commits["count"] == 1:
            raise StaleDataError("simulated concurrent update")
        real_commit()

    def _mutate(row):
        row.cancel_at_period_end = True
        return None

    monkeypatch.setattr(db_session, "commit", _stale_once)
    outcome = apply_transition(db_session, subscription.id, _mutate, resolve=False, now=NOW)

    assert commits["count"] == 2
    assert outcome.ok
    assert outcome.unwrap().cancel_at_period_end is True


def test_apply_transition_detects_concurrent_writer(session_factory, catalog, make_org, make_subscription):
    org = make_org()
    subscription = make_subscription(org, plan=catalog.basic)
    first = session_factory()
    second = session_factory()
    try:
        seen = first.get(Subscription, subscription.id)
        racer = second.get(Subscription, subscription.id)
        racer.cancel_at_period_end = True
        second.commit()

        seen.interval = "yearly"
        with pytest.raises(StaleDataError):
            first.commit()
    finally:
        first.close()
        second.close()


def test_apply_transition_missing_row(db_session, catalog):
    outcome = apply_transition(db_session, uuid.uuid4(), lambda row: None)
    assert outcome.error.code == "subscription.not_found"


def test_cancel_locally_is_terminal_and_clears_pending(db_session, catalog, make_org, make_subscription):
    org = make_org()
    subscription = make_subscription(org, plan=catalog.premium, upcoming_plan_id=catalog.basic.id)

    outcome = cancel_locally(db_session, subscription.id, reason=CancellationReason.DUPLICATE_CARD, now=NOW)

    row = outcome.unwrap()
    assert row.status == S.CANCELED.value
    assert row.cancellation_reason == CancellationReason.DUPLICATE_CARD.value
    assert row.upcoming_plan_id is None
    assert row.cancel_at_period_end is False
