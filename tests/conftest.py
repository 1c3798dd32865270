import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Generator, Optional

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_ALLOW_NON_POSTGRES", "1")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("DATABASE_URL", os.getenv("DATABASE_URL", os.environ["TEST_DATABASE_URL"]))

from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.engine import Engine
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import Session, sessionmaker

import database as database_module
from database import Base, IS_POSTGRES

# Lightweight fallbacks for PostgreSQL-only column types when using SQLite.
if not IS_POSTGRES:

    @compiles(JSONB, "sqlite")  # type: ignore[misc]
    def _compile_jsonb_sqlite(_element, _compiler, **_kw):  # pragma: no cover - sqlite compat
        return "TEXT"

    @compiles(UUID, "sqlite")  # type: ignore[misc]
    def _compile_uuid_sqlite(_element, _compiler, **_kw):  # pragma: no cover - sqlite compat
        return "TEXT"


import models  # noqa: E402,F401
from models.catalog import Bundle, BundlePlan, Feature, Plan, PlanLimit, Tool  # noqa: E402
from models.org import Organization  # noqa: E402
from models.subscription import Subscription  # noqa: E402
from services.billing.clock import utcnow  # noqa: E402
from services.billing.settings import BillingSettings  # noqa: E402
from web.deps import get_billing_provider, get_billing_settings, get_db  # noqa: E402
from tests.factories import NOW, FakeProvider  # noqa: E402


@pytest.fixture()
def engine(tmp_path: Path) -> Generator[Engine, None, None]:
    """File-backed SQLite per test so several sessions can run concurrently."""
    test_engine = database_module.build_engine(f"sqlite+pysqlite:///{tmp_path / 'billing.db'}")
    Base.metadata.create_all(bind=test_engine)
    original_session_local = database_module.SessionLocal
    original_engine = database_module.engine
    factory = sessionmaker(bind=test_engine, autoflush=False, expire_on_commit=False)
    database_module.SessionLocal = factory
    database_module.engine = test_engine
    try:
        yield test_engine
    finally:
        database_module.SessionLocal = original_session_local
        database_module.engine = original_engine
        test_engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker:
    return database_module.SessionLocal


@pytest.fixture()
def db_session(session_factory: sessionmaker) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@dataclass
class Catalog:
    """Two tools, three plans on the research tool, and a bundle spanning both tools."""

    research: Tool
    alerts_tool: Tool
    reports: Feature
    exports: Feature
    alerts: Feature
    trial_plan: Plan
    basic: Plan
    premium: Plan
    alerts_basic: Plan
    bundle: Bundle


@pytest.fixture()
def catalog(db_session: Session) -> Catalog:
    research = Tool(name="Research", slug="research")
    alerts_tool = Tool(name="Alerts", slug="alerts")
    db_session.add_all([research, alerts_tool])
    db_session.flush()

    reports = Feature(tool_id=research.id, name="Reports", slug="research.reports", type="metered")
    exports = Feature(tool_id=research.id, name="Exports", slug="research.exports", type="boolean")
    alerts = Feature(tool_id=alerts_tool.id, name="Alert rules", slug="alerts.rules", type="metered")
    db_session.add_all([reports, exports, alerts])
    db_session.flush()

    trial_plan = Plan(
        name="Research Trial",
        tool_id=research.id,
        tier="basic",
        price=Decimal("0"),
        trial_period_days=14,
        provider_price_id_monthly="price_trial_monthly",
    )
    basic = Plan(
        name="Research Basic",
        tool_id=research.id,
        tier="basic",
        price=Decimal("10.00"),
        provider_price_id_monthly="price_basic_monthly",
        provider_price_id_yearly="price_basic_yearly",
    )
    premium = Plan(
        name="Research Premium",
        tool_id=research.id,
        tier="premium",
        price=Decimal("30.00"),
        provider_price_id_monthly="price_premium_monthly",
        provider_price_id_yearly="price_premium_yearly",
    )
    alerts_basic = Plan(
        name="Alerts Basic",
        tool_id=alerts_tool.id,
        tier="basic",
        price=Decimal("5.00"),
        provider_price_id_monthly="price_alerts_monthly",
    )
    db_session.add_all([trial_plan, basic, premium, alerts_basic])
    db_session.flush()

    db_session.add_all(
        [
            PlanLimit(plan_id=trial_plan.id, feature_id=reports.id, default_limit=3, reset_period="monthly"),
            PlanLimit(plan_id=basic.id, feature_id=reports.id, default_limit=10, reset_period="monthly"),
            PlanLimit(plan_id=premium.id, feature_id=reports.id, default_limit=100, reset_period="monthly"),
            PlanLimit(plan_id=premium.id, feature_id=exports.id, default_limit=None, reset_period="never"),
            PlanLimit(plan_id=alerts_basic.id, feature_id=alerts.id, default_limit=5, reset_period="monthly"),
        ]
    )

    bundle = Bundle(
        name="Research + Alerts",
        slug="research-alerts",
        price=Decimal("12.00"),
        provider_price_id_monthly="price_bundle_monthly",
    )
    db_session.add(bundle)
    db_session.flush()
    db_session.add_all(
        [
            BundlePlan(bundle_id=bundle.id, plan_id=basic.id),
            BundlePlan(bundle_id=bundle.id, plan_id=alerts_basic.id),
        ]
    )
    db_session.commit()
    return Catalog(
        research=research,
        alerts_tool=alerts_tool,
        reports=reports,
        exports=exports,
        alerts=alerts,
        trial_plan=trial_plan,
        basic=basic,
        premium=premium,
        alerts_basic=alerts_basic,
        bundle=bundle,
    )


@pytest.fixture()
def make_org(db_session: Session):
    counter = {"value": 0}

    def _make(*, customer_id: Optional[str] = None) -> Organization:
        counter["value"] += 1
        org = Organization(
            name=f"Org {counter['value']}",
            slug=f"org-{counter['value']}",
            provider_customer_id=customer_id,
            billing_email=f"billing{counter['value']}@example.com",
        )
        db_session.add(org)
        db_session.commit()
        return org

    return _make


@pytest.fixture()
def make_subscription(db_session: Session):
    counter = {"value": 0}

    def _make(
        org: Organization,
        *,
        plan: Optional[Plan] = None,
        bundle: Optional[Bundle] = None,
        status: str = "active",
        period_start: datetime = NOW - timedelta(days=5),
        period_end: datetime = NOW + timedelta(days=25),
        **overrides: Any,
    ) -> Subscription:
        counter["value"] += 1
        values = {
            "provider_subscription_id": f"sub_{counter['value']}",
            "provider_customer_id": org.provider_customer_id,
            "interval": "monthly",
            "cancel_at_period_end": False,
        }
        values.update(overrides)
        subscription = Subscription(
            organization_id=org.id,
            plan_id=plan.id if plan is not None else None,
            bundle_id=bundle.id if bundle is not None else None,
            status=status,
            current_period_start=period_start,
            current_period_end=period_end,
            **values,
        )
        db_session.add(subscription)
        db_session.commit()
        return subscription

    return _make


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def billing_settings() -> BillingSettings:
    return BillingSettings(
        frontend_url="https://app.example.com",
        internal_api_key="internal-secret",
        webhook_pending_timeout_seconds=300,
        redis_url=None,
        sweep_interval_seconds=900,
    )


@pytest.fixture()
def api_client(session_factory: sessionmaker, provider: FakeProvider, billing_settings: BillingSettings):
    """TestClient over every billing router, wired to the per-test database and fake provider."""
    from web.routers import billing, health, internal, webhooks

    app = FastAPI()
    for module in (billing, webhooks, internal, health):
        app.include_router(module.router, prefix="/api/v1")

    def _get_db() -> Generator[Session, None, None]:
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_billing_provider] = lambda: provider
    app.dependency_overrides[get_billing_settings] = lambda: billing_settings
    # Routes run on the wall clock, so provider-created rows must too.
    provider.now = utcnow().replace(microsecond=0)
    with TestClient(app) as client:
        yield client
