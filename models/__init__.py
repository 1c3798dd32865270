from .org import Organization  # noqa: F401
from .catalog import Bundle, BundleGroup, BundlePlan, Feature, Plan, PlanLimit, Tool  # noqa: F401
from .subscription import OneTimePurchase, Subscription  # noqa: F401
from .entitlement import OrganizationEntitlement  # noqa: F401
from .payments import TrialFingerprint, WebhookEvent  # noqa: F401
from .system_config import SystemConfig  # noqa: F401
from .audit_log import BillingAuditLog  # noqa: F401
