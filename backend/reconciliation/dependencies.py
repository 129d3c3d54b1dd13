"""
Reconciliation Wiring

Process-wide instances of the Casso client, coordinator and poller, built
from settings on first use. Routers depend on these through FastAPI
Depends, so tests swap them with app.dependency_overrides.
"""

from functools import lru_cache

from config import get_settings
from database.connection import get_session_factory
from pricing.pricing_engine import PricingEngine, PricingConfig
from reconciliation.clients.casso_client import CassoClient
from reconciliation.clients.notification_gateway import get_notification_gateway
from reconciliation.matching_rules.casso_rules import TransactionMatcher
from reconciliation.services.reconciliation_service import ReconciliationCoordinator
from reconciliation.workers.casso_poller import CassoPoller


@lru_cache()
def get_casso_client() -> CassoClient:
    return CassoClient()


@lru_cache()
def get_coordinator() -> ReconciliationCoordinator:
    settings = get_settings()
    return ReconciliationCoordinator(
        get_session_factory(),
        pricing_engine=PricingEngine(PricingConfig.from_settings(settings)),
        matcher=TransactionMatcher(amount_tolerance=settings.AMOUNT_TOLERANCE),
        notifier=get_notification_gateway(),
        gateway=get_casso_client(),
    )


@lru_cache()
def get_poller() -> CassoPoller:
    settings = get_settings()
    return CassoPoller(
        get_coordinator(),
        get_casso_client(),
        poll_interval=settings.CASSO_POLL_INTERVAL_SECONDS,
        page_size=settings.CASSO_POLL_PAGE_SIZE,
    )
