import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from core.billing_constants import CancellationReason, SubscriptionStatus
from models.audit_log import BillingAuditLog
from models.entitlement import OrganizationEntitlement
from models.org import Organization
from models.subscription import Subscription
from services import billing_service
from services.billing.entitlement_resolver import resolve_entitlements
from services.billing.errors import ProviderError
from services.billing.plan_change import apply_due_scheduled_changes
from services.billing.reconciliation import find_subscription
from tests.factories import NOW, remote_subscription_payload


def _run(coro):
    return asyncio.run(coro)


def _fresh(db, subscription):
    return db.get(Subscription, subscription.id, populate_existing=True)


def _observable(db, subscription):
    """What callers can see: the row, its pending change and every entitlement."""
    row = _fresh(db, subscription)
    stmt = select(OrganizationEntitlement).where(OrganizationEntitlement.organization_id == row.organization_id)
    entitlements = sorted(
        (str(entitlement.feature_id), entitlement.limit_amount, entitlement.usage_amount, entitlement.is_enabled)
        for entitlement in db.execute(stmt.execution_options(populate_existing=True)).scalars()
    )
    return {
        "status": row.status,
        "cancel_at_period_end": row.cancel_at_period_end,
        "version": row.version,
        "plan_id": row.plan_id,
        "bundle_id": row.bundle_id,
        "upcoming_plan_id": row.upcoming_plan_id,
        "upcoming_bundle_id": row.upcoming_bundle_id,
        "provider_schedule_id": row.provider_schedule_id,
        "entitlements": entitlements,
    }


def _paid(make_org, make_subscription, provider, plan, *, price_id, **overrides):
    org = make_org(customer_id="cus_1")
    subscription = make_subscription(org, plan=plan, **overrides)
    provider.add(
        remote_subscription_payload(
            subscription.provider_subscription_id,
            price_id=price_id,
            status=subscription.status,
            cancel_at_period_end=bool(subscription.cancel_at_period_end),
        )
    )
    return org, subscription


def test_cancel_paid_subscription_at_period_end(db_session, catalog, make_org, make_subscription, provider):
    org, subscription = _paid(make_org, make_subscription, provider, catalog.basic, price_id="price_basic_monthly")

    outcome = _run(
        billing_service.cancel_subscription(db_session, provider, org.id, subscription.provider_subscription_id, now=NOW)
    )

    row = outcome.unwrap()
    assert row.status == SubscriptionStatus.ACTIVE.value
    assert row.cancel_at_period_end is True
    assert row.cancellation_reason is None
    name, _args, kwargs = provider.calls[0]
    assert name == "cancel_at_period_end"
    assert kwargs["idempotency_key"] == f"cancel:{subscription.id}:1"


def test_cancel_free_trial_ends_it_immediately(db_session, catalog, make_org, make_subscription, provider):
    org = make_org(customer_id="cus_1")
    subscription = make_subscription(
        org,
        plan=catalog.trial_plan,
        status=SubscriptionStatus.TRIALING.value,
        trial_start=NOW - timedelta(days=5),
        trial_end=NOW + timedelta(days=9),
    )
    provider.add(
        remote_subscription_payload(
            subscription.provider_subscription_id,
            price_id="price_trial_monthly",
            status="trialing",
            trial_start=NOW - timedelta(days=5),
            trial_end=NOW + timedelta(days=9),
        )
    )

    row = _run(
        billing_service.cancel_subscription(db_session, provider, org.id, subscription.provider_subscription_id, now=NOW)
    ).unwrap()

    assert provider.call_names() == ["cancel_immediately"]
    assert row.status == SubscriptionStatus.CANCELED.value
    assert row.cancellation_reason == CancellationReason.TRIAL_CANCELED.value


def test_cancel_twice_is_a_conflict(db_session, catalog, make_org, make_subscription, provider):
    org, subscription = _paid(
        make_org, make_subscription, provider, catalog.basic, price_id="price_basic_monthly", cancel_at_period_end=True
    )

    outcome = _run(
        billing_service.cancel_subscription(db_session, provider, org.id, subscription.provider_subscription_id, now=NOW)
    )

    assert outcome.error.code == "subscription.cancel_pending"
    assert provider.calls == []


def test_other_organization_cannot_touch_subscription(db_session, catalog, make_org, make_subscription, provider):
    _org, subscription = _paid(make_org, make_subscription, provider, catalog.basic, price_id="price_basic_monthly")
    intruder = make_org()

    outcome = _run(
        billing_service.cancel_subscription(
            db_session, provider, intruder.id, subscription.provider_subscription_id, now=NOW
        )
    )

    assert outcome.error.code == "subscription.not_found"
    assert provider.calls == []


def test_resume_clears_pending_cancel(db_session, catalog, make_org, make_subscription, provider):
    org, subscription = _paid(
        make_org, make_subscription, provider, catalog.basic, price_id="price_basic_monthly", cancel_at_period_end=True
    )

    row = _run(
        billing_service.resume_subscription(db_session, provider, org.id, subscription.provider_subscription_id, now=NOW)
    ).unwrap()

    assert row.cancel_at_period_end is False
    assert provider.call_names() == ["resume_subscription"]


def test_resume_without_pending_cancel_is_refused(db_session, catalog, make_org, make_subscription, provider):
    org, subscription = _paid(make_org, make_subscription, provider, catalog.basic, price_id="price_basic_monthly")

    outcome = _run(
        billing_service.resume_subscription(db_session, provider, org.id, subscription.provider_subscription_id, now=NOW)
    )

    assert outcome.error.code == "subscription.not_resumable"


def test_cancel_trial_requires_trialing(db_session, catalog, make_org, make_subscription, provider):
    org, subscription = _paid(make_org, make_subscription, provider, catalog.basic, price_id="price_basic_monthly")

    outcome = _run(
        billing_service.cancel_trial(db_session, provider, org.id, subscription.provider_subscription_id, now=NOW)
    )

    assert outcome.error.code == "subscription.not_trialing"


def test_upgrade_applies_immediately(db_session, catalog, make_org, make_subscription, provider):
    org, subscription = _paid(make_org, make_subscription, provider, catalog.basic, price_id="price_basic_monthly")

    row = _run(
        billing_service.change_plan(
            db_session, provider, org.id, subscription.provider_subscription_id, plan_id=catalog.premium.id, now=NOW
        )
    ).unwrap()

    assert row.plan_id == catalog.premium.id
    assert provider.call_names() == ["retrieve_subscription", "update_subscription_price"]
    assert provider.calls[1][2]["price_id"] == "price_premium_monthly"
    limits = {
        entitlement.feature_id: entitlement.limit_amount
        for entitlement in db_session.execute(
            select(OrganizationEntitlement).where(OrganizationEntitlement.organization_id == org.id)
        ).scalars()
    }
    assert limits[catalog.reports.id] == 100
    assert limits[catalog.exports.id] is None


def test_downgrade_is_scheduled_for_period_end(db_session, catalog, make_org, make_subscription, provider):
    org, subscription = _paid(make_org, make_subscription, provider, catalog.premium, price_id="price_premium_monthly")

    row = _run(
        billing_service.change_plan(
            db_session, provider, org.id, subscription.provider_subscription_id, plan_id=catalog.basic.id, now=NOW
        )
    ).unwrap()

    assert row.plan_id == catalog.premium.id
    assert row.upcoming_plan_id == catalog.basic.id
    assert row.provider_schedule_id == "sub_sched_1"
    _name, _args, kwargs = provider.calls[0]
    assert kwargs["current_price_id"] == "price_premium_monthly"
    assert kwargs["new_price_id"] == "price_basic_monthly"
    assert kwargs["idempotency_key"] == f"schedule:{subscription.id}:price_basic_monthly"


def test_downgrade_is_rolled_back_when_provider_fails(db_session, catalog, make_org, make_subscription, provider):
    org, subscription = _paid(make_org, make_subscription, provider, catalog.premium, price_id="price_premium_monthly")
    provider.fail["schedule_price_change"] = ProviderError("provider.unavailable", "Stripe is down.")

    outcome = _run(
        billing_service.change_plan(
            db_session, provider, org.id, subscription.provider_subscription_id, plan_id=catalog.basic.id, now=NOW
        )
    )

    assert outcome.error.code == "provider.unavailable"
    row = _fresh(db_session, subscription)
    assert row.upcoming_plan_id is None
    assert row.provider_schedule_id is None


def test_cancel_scheduled_downgrade_releases_schedule(db_session, catalog, make_org, make_subscription, provider):
    org, subscription = _paid(
        make_org,
        make_subscription,
        provider,
        catalog.premium,
        price_id="price_premium_monthly",
        upcoming_plan_id=catalog.basic.id,
        provider_schedule_id="sub_sched_9",
    )

    row = _run(
        billing_service.cancel_scheduled_downgrade(db_session, provider, org.id, subscription.provider_subscription_id)
    ).unwrap()

    assert row.upcoming_plan_id is None
    assert row.provider_schedule_id is None
    assert provider.calls[0][:2] == ("release_schedule", ("sub_sched_9",))


@pytest.mark.parametrize("target", ["plan", "bundle"])
def test_scheduling_then_canceling_a_downgrade_restores_state(
    db_session, catalog, make_org, make_subscription, provider, target
):
    org, subscription = _paid(make_org, make_subscription, provider, catalog.premium, price_id="price_premium_monthly")
    resolve_entitlements(db_session, org.id, now=NOW)
    before = _observable(db_session, subscription)
    change = {"plan_id": catalog.basic.id} if target == "plan" else {"bundle_id": catalog.bundle.id}

    _run(
        billing_service.change_plan(db_session, provider, org.id, subscription.provider_subscription_id, now=NOW, **change)
    ).unwrap()
    scheduled = _observable(db_session, subscription)
    _run(
        billing_service.cancel_scheduled_downgrade(db_session, provider, org.id, subscription.provider_subscription_id)
    ).unwrap()
    after = _observable(db_session, subscription)

    assert (scheduled["upcoming_plan_id"] or scheduled["upcoming_bundle_id"]) is not None
    assert scheduled["entitlements"] == before["entitlements"]
    assert provider.call_names() == ["schedule_price_change", "release_schedule"]
    before.pop("version")
    after.pop("version")
    assert after == before


def test_failed_upgrade_after_schedule_release_drops_pending_downgrade(
    db_session, catalog, make_org, make_subscription, provider
):
    org, subscription = _paid(make_org, make_subscription, provider, catalog.basic, price_id="price_basic_monthly")
    _run(
        billing_service.change_plan(
            db_session, provider, org.id, subscription.provider_subscription_id, plan_id=catalog.trial_plan.id, now=NOW
        )
    ).unwrap()
    provider.fail["update_subscription_price"] = ProviderError("provider.unavailable", "Stripe is down.")

    outcome = _run(
        billing_service.change_plan(
            db_session, provider, org.id, subscription.provider_subscription_id, plan_id=catalog.premium.id, now=NOW
        )
    )

    assert outcome.error.code == "provider.unavailable"
    assert provider.call_names() == [
        "schedule_price_change",
        "release_schedule",
        "retrieve_subscription",
        "update_subscription_price",
    ]
    row = _fresh(db_session, subscription)
    assert row.plan_id == catalog.basic.id
    assert row.upcoming_plan_id is None
    assert row.provider_schedule_id is None

    apply_due_scheduled_changes(db_session, now=NOW + timedelta(days=26))

    assert _fresh(db_session, subscription).plan_id == catalog.basic.id


def test_failed_schedule_release_keeps_pending_downgrade(db_session, catalog, make_org, make_subscription, provider):
    org, subscription = _paid(
        make_org,
        make_subscription,
        provider,
        catalog.basic,
        price_id="price_basic_monthly",
        upcoming_plan_id=catalog.trial_plan.id,
        provider_schedule_id="sub_sched_9",
    )
    before = _observable(db_session, subscription)
    provider.fail["release_schedule"] = ProviderError("provider.unavailable", "Stripe is down.")

    outcome = _run(
        billing_service.change_plan(
            db_session, provider, org.id, subscription.provider_subscription_id, plan_id=catalog.premium.id, now=NOW
        )
    )

    assert outcome.error.code == "provider.unavailable"
    assert _observable(db_session, subscription) == before


def test_provider_failure_on_cancel_leaves_state_unchanged(db_session, catalog, make_org, make_subscription, provider):
    org, subscription = _paid(make_org, make_subscription, provider, catalog.basic, price_id="price_basic_monthly")
    resolve_entitlements(db_session, org.id, now=NOW)
    before = _observable(db_session, subscription)
    provider.fail["cancel_at_period_end"] = ProviderError("provider.unavailable", "Stripe is down.")

    outcome = _run(
        billing_service.cancel_subscription(db_session, provider, org.id, subscription.provider_subscription_id, now=NOW)
    )

    assert outcome.error.code == "provider.unavailable"
    assert _observable(db_session, subscription) == before
    assert before["entitlements"]


def test_provider_failure_on_resume_leaves_state_unchanged(db_session, catalog, make_org, make_subscription, provider):
    org, subscription = _paid(
        make_org, make_subscription, provider, catalog.basic, price_id="price_basic_monthly", cancel_at_period_end=True
    )
    resolve_entitlements(db_session, org.id, now=NOW)
    before = _observable(db_session, subscription)
    provider.fail["resume_subscription"] = ProviderError("provider.timeout", "Stripe timed out.")

    outcome = _run(
        billing_service.resume_subscription(db_session, provider, org.id, subscription.provider_subscription_id, now=NOW)
    )

    assert outcome.error.code == "provider.timeout"
    after = _observable(db_session, subscription)
    assert after == before
    assert after["cancel_at_period_end"] is True


def test_provider_failure_on_cancel_trial_leaves_state_unchanged(
    db_session, catalog, make_org, make_subscription, provider
):
    org = make_org(customer_id="cus_1")
    subscription = make_subscription(
        org,
        plan=catalog.trial_plan,
        status=SubscriptionStatus.TRIALING.value,
        trial_start=NOW - timedelta(days=5),
        trial_end=NOW + timedelta(days=9),
    )
    provider.add(
        remote_subscription_payload(
            subscription.provider_subscription_id, price_id="price_trial_monthly", status="trialing"
        )
    )
    resolve_entitlements(db_session, org.id, now=NOW)
    before = _observable(db_session, subscription)
    provider.fail["cancel_immediately"] = ProviderError("provider.unavailable", "Stripe is down.")

    outcome = _run(
        billing_service.cancel_trial(db_session, provider, org.id, subscription.provider_subscription_id, now=NOW)
    )

    assert outcome.error.code == "provider.unavailable"
    after = _observable(db_session, subscription)
    assert after == before
    assert after["status"] == SubscriptionStatus.TRIALING.value


def test_provider_failure_on_upgrade_leaves_state_unchanged(db_session, catalog, make_org, make_subscription, provider):
    org, subscription = _paid(make_org, make_subscription, provider, catalog.basic, price_id="price_basic_monthly")
    resolve_entitlements(db_session, org.id, now=NOW)
    before = _observable(db_session, subscription)
    provider.fail["update_subscription_price"] = ProviderError("provider.unavailable", "Stripe is down.")

    outcome = _run(
        billing_service.change_plan(
            db_session, provider, org.id, subscription.provider_subscription_id, plan_id=catalog.premium.id, now=NOW
        )
    )

    assert outcome.error.code == "provider.unavailable"
    after = _observable(db_session, subscription)
    assert after == before
    assert after["plan_id"] == catalog.basic.id


def test_sync_organization_skips_unknown_prices(db_session, catalog, make_org, provider):
    org = make_org(customer_id="cus_1")
    provider.add(remote_subscription_payload("sub_known", price_id="price_basic_monthly"))
    provider.add(remote_subscription_payload("sub_legacy", price_id="price_retired"))
    provider.add(remote_subscription_payload("sub_other", price_id="price_basic_monthly", customer="cus_other"))

    results = _run(billing_service.sync_organization(db_session, provider, org.id, now=NOW)).unwrap()

    assert len(results) == 1
    assert find_subscription(db_session, "sub_known").organization_id == org.id
    assert find_subscription(db_session, "sub_legacy") is None


def test_sync_organization_without_customer_is_a_no_op(db_session, make_org, provider):
    org = make_org()

    assert _run(billing_service.sync_organization(db_session, provider, org.id, now=NOW)).unwrap() == []
    assert provider.calls == []


def test_trial_eligibility_reports_reason(db_session, catalog, make_org, make_subscription):
    org = make_org()

    eligible = billing_service.trial_eligibility(db_session, org.id, catalog.research.id).unwrap()
    assert eligible.eligible is True
    assert eligible.trial_days == 14

    no_trial = billing_service.trial_eligibility(db_session, org.id, catalog.alerts_tool.id).unwrap()
    assert no_trial.reason == "trial.unavailable"

    make_subscription(org, plan=catalog.trial_plan, status="trialing", trial_start=NOW, trial_end=NOW + timedelta(days=14))
    used = billing_service.trial_eligibility(db_session, org.id, catalog.research.id).unwrap()
    assert used.eligible is False
    assert used.reason == "trial.already_used"


def test_checkout_creates_customer_and_offers_trial(db_session, catalog, make_org, provider, billing_settings):
    org = make_org()

    session = _run(
        billing_service.create_checkout_session(
            db_session, provider, org.id, plan_id=catalog.trial_plan.id, settings=billing_settings, now=NOW
        )
    ).unwrap()

    assert session == {"sessionId": "cs_test_1", "url": "https://checkout.example.com/cs_test_1", "trialDays": 14}
    assert provider.call_names() == ["create_customer", "create_checkout_session"]
    assert db_session.get(Organization, org.id).provider_customer_id == "cus_created"
    kwargs = provider.calls[1][2]
    assert kwargs["mode"] == "subscription"
    assert kwargs["price_id"] == "price_trial_monthly"
    assert kwargs["metadata"] == {
        "organization_id": str(org.id),
        "plan_id": str(catalog.trial_plan.id),
        "interval": "monthly",
    }
    assert kwargs["success_url"] == "https://app.example.com/billing?checkout=success"
    assert kwargs["idempotency_key"] == f"checkout:{org.id}:{catalog.trial_plan.id}:monthly:202403151200"


def test_checkout_rejects_both_targets_and_missing_prices(db_session, catalog, make_org, provider, billing_settings):
    org = make_org(customer_id="cus_1")

    both = _run(
        billing_service.create_checkout_session(
            db_session,
            provider,
            org.id,
            plan_id=catalog.basic.id,
            bundle_id=catalog.bundle.id,
            settings=billing_settings,
            now=NOW,
        )
    )
    yearly = _run(
        billing_service.create_checkout_session(
            db_session, provider, org.id, bundle_id=catalog.bundle.id, interval="yearly", settings=billing_settings, now=NOW
        )
    )

    assert both.error.code == "billing.target_ambiguous"
    assert yearly.error.code == "billing.price_unavailable"
    assert provider.calls == []


def test_portal_requires_customer(db_session, make_org, provider, billing_settings):
    without = make_org()
    linked = make_org(customer_id="cus_1")

    missing = _run(billing_service.create_portal_session(db_session, provider, without.id, settings=billing_settings))
    url = _run(billing_service.create_portal_session(db_session, provider, linked.id, settings=billing_settings))

    assert missing.error.code == "billing.customer_not_found"
    assert url.unwrap() == "https://billing.example.com/portal"
    assert provider.calls[0][2]["return_url"] == "https://app.example.com/billing"


def test_start_trial_and_duplicate_card(db_session, catalog, make_org, provider):
    first = make_org(customer_id="cus_a")
    second = make_org(customer_id="cus_b")
    provider.fingerprints = {"pm_a": "fp_shared", "pm_b": "fp_shared"}

    trial = _run(
        billing_service.start_trial(db_session, provider, first.id, catalog.research.id, payment_method_id="pm_a", now=NOW)
    ).unwrap()

    assert trial.status == SubscriptionStatus.TRIALING.value
    assert trial.card_fingerprint == "fp_shared"
    assert trial.cancel_at_period_end is True

    duplicate = _run(
        billing_service.start_trial(db_session, provider, second.id, catalog.research.id, payment_method_id="pm_b", now=NOW)
    )

    assert duplicate.error.code == "trial.duplicate_card"
    canceled = [call for call in provider.calls if call[0] == "cancel_immediately"]
    assert len(canceled) == 1
    assert canceled[0][2]["idempotency_key"].startswith("duplicate-card:")
    retry = billing_service.trial_eligibility(db_session, second.id, catalog.research.id).unwrap()
    assert retry.reason == "trial.duplicate_card"


def test_start_trial_twice_is_refused(db_session, catalog, make_org, provider):
    org = make_org(customer_id="cus_a")
    _run(billing_service.start_trial(db_session, provider, org.id, catalog.research.id, now=NOW)).unwrap()

    again = _run(billing_service.start_trial(db_session, provider, org.id, catalog.research.id, now=NOW))

    assert again.error.code == "trial.already_used"


def test_overdue_sweep_cancels_after_grace_period(db_session, catalog, make_org, make_subscription, provider):
    org = make_org(customer_id="cus_1")
    overdue = make_subscription(
        org, plan=catalog.basic, status="past_due", last_payment_failure_at=NOW - timedelta(days=4)
    )
    recent = make_subscription(
        org, plan=catalog.premium, status="past_due", last_payment_failure_at=NOW - timedelta(days=1)
    )
    provider.add(remote_subscription_payload(overdue.provider_subscription_id, price_id="price_basic_monthly", status="past_due"))
    provider.add(remote_subscription_payload(recent.provider_subscription_id, price_id="price_premium_monthly", status="past_due"))

    sweep = _run(billing_service.cancel_overdue_subscriptions(db_session, provider, now=NOW))

    assert (sweep.examined, sweep.canceled, sweep.failed) == (1, 1, 0)
    row = _fresh(db_session, overdue)
    assert row.status == SubscriptionStatus.CANCELED.value
    assert row.cancellation_reason == CancellationReason.AUTO_CANCEL_PAST_DUE.value
    assert _fresh(db_session, recent).status == SubscriptionStatus.PAST_DUE.value
    audit = db_session.execute(select(BillingAuditLog)).scalars().one()
    assert audit.action == "subscription.auto_canceled_past_due"
    assert audit.extra == {"grace_period_days": 3}


def test_overdue_sweep_leaves_row_when_provider_fails(db_session, catalog, make_org, make_subscription, provider):
    org = make_org(customer_id="cus_1")
    overdue = make_subscription(
        org, plan=catalog.basic, status="past_due", last_payment_failure_at=NOW - timedelta(days=10)
    )
    provider.add(remote_subscription_payload(overdue.provider_subscription_id, price_id="price_basic_monthly", status="past_due"))
    provider.fail["cancel_immediately"] = ProviderError("provider.unavailable", "Stripe is down.")

    sweep = _run(billing_service.cancel_overdue_subscriptions(db_session, provider, now=NOW))

    assert sweep.failed == 1
    assert sweep.failures == [str(overdue.id)]
    assert _fresh(db_session, overdue).status == SubscriptionStatus.PAST_DUE.value
