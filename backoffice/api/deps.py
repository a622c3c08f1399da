"""
Service wiring for the API and workers.

build_services() assembles the billing core from settings; get_services()
returns the process-wide instance. Tests install their own with
set_services().
"""
from dataclasses import dataclass
import logging
from typing import Callable, Dict, Mapping, Optional

from sqlalchemy.orm import Session

from backoffice.core.config import Settings, settings
from backoffice.core.database import SessionScope, session_scope_factory
from backoffice.core.errors import GatewayError, SignatureError
from backoffice.features.access.service import FeatureControlService
from backoffice.features.billing.flutterwave_provider import FlutterwaveProvider
from backoffice.features.billing.provider import PaymentGateway
from backoffice.features.billing.stripe_provider import StripeProvider
from backoffice.features.notifications.service import LoggingNotifier, SubscriptionNotifier
from backoffice.features.plans.service import PlanCatalog
from backoffice.features.subscriptions.lifecycle import SubscriptionLifecycle
from backoffice.features.subscriptions.reconciler import WebhookReconciler
from backoffice.features.subscriptions.sql_repository import sql_unit_of_work_factory
from backoffice.features.usage.service import SqlUsageEventLog, UsageMeter
from backoffice.features.users.service import CustomerDirectory, SqlCustomerDirectory

logger = logging.getLogger("backoffice")


@dataclass
class Services:
    catalog: PlanCatalog
    lifecycle: SubscriptionLifecycle
    reconciler: WebhookReconciler
    features: FeatureControlService
    sessions: SessionScope


class UnconfiguredGateway:
    """Stands in for a provider whose credentials are missing; every call fails."""

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason

    def initialize_payment(self, request):
        raise GatewayError(self.reason)

    def verify_payment(self, provider_transaction_id):
        raise GatewayError(self.reason)

    def verify_webhook_signature(self, headers, body):
        raise SignatureError(self.reason)

    def parse_webhook(self, body):
        raise GatewayError(self.reason)


def build_gateways(cfg: Settings) -> Dict[str, PaymentGateway]:
    gateways: Dict[str, PaymentGateway] = {}
    for name, factory in (("flutterwave", FlutterwaveProvider), ("stripe", StripeProvider)):
        try:
            gateways[name] = factory()
        except GatewayError as e:
            gateways[name] = UnconfiguredGateway(name, e.message)
            if name == cfg.PAYMENT_PROVIDER:
                logger.warning("[deps] default payment provider unavailable", extra={"provider": name, "reason": e.message})
    return gateways


def build_services(
    cfg: Optional[Settings] = None,
    *,
    gateways: Optional[Mapping[str, PaymentGateway]] = None,
    customers: Optional[CustomerDirectory] = None,
    notifier: Optional[SubscriptionNotifier] = None,
    usage: Optional[UsageMeter] = None,
    lifecycle_kwargs: Optional[dict] = None,
    session_factory: Optional[Callable[[], Session]] = None,
) -> Services:
    """
    Wire the billing core. Every store-backed component gets its sessions
    from session_factory (the global engine when omitted).
    """
    cfg = cfg or settings
    gateways = dict(gateways) if gateways is not None else build_gateways(cfg)
    default_provider = cfg.PAYMENT_PROVIDER if cfg.PAYMENT_PROVIDER in gateways else next(iter(gateways))
    uow_factory = sql_unit_of_work_factory(session_factory)
    sessions = session_scope_factory(session_factory)

    catalog = PlanCatalog(sessions)
    lifecycle = SubscriptionLifecycle(
        uow_factory=uow_factory,
        plans=catalog,
        gateway=gateways[default_provider],
        customers=customers or SqlCustomerDirectory(sessions),
        notifier=notifier or LoggingNotifier(),
        grace_period_days=cfg.GRACE_PERIOD_DAYS,
        redirect_url=cfg.redirect_url,
        **(lifecycle_kwargs or {}),
    )
    reconciler = WebhookReconciler(
        lifecycle=lifecycle,
        gateways=gateways,
        default_provider=default_provider,
        uow_factory=uow_factory,
        clock=lifecycle.clock,
        sessions=sessions,
    )
    features = FeatureControlService(
        catalog=catalog,
        current_subscription=lifecycle.get_current_subscription,
        usage=usage or UsageMeter(SqlUsageEventLog(sessions), clock=lifecycle.clock),
        cache_ttl_seconds=cfg.ENTITLEMENT_CACHE_TTL_SECONDS,
    )
    lifecycle.add_listener(features.invalidate)
    return Services(catalog=catalog, lifecycle=lifecycle, reconciler=reconciler, features=features, sessions=sessions)


_services: Optional[Services] = None


def get_services() -> Services:
    """FastAPI dependency and worker entry point."""
    global _services
    if _services is None:
        _services = build_services()
    return _services


def set_services(services: Optional[Services]) -> None:
    global _services
    _services = services
