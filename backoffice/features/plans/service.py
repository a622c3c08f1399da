"""
backoffice/features/plans/service.py

Plan catalog.

Handles:
- Plan seeding (free, professional, enterprise)
- Plan lookup and listing
- Plan updates, with prices and features frozen while live subscriptions reference the plan
- Feature comparison matrix across active plans
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, insert, select, update

from backoffice.core.database import (
    OPEN_SUBSCRIPTION_STATUSES,
    SessionScope,
    get_db_session,
    plan_features,
    plans,
    subscriptions,
)
from backoffice.core.errors import ConflictError, NotFoundError, ValidationError
from backoffice.models.plan import FeatureEntitlement, Plan

logger = logging.getLogger("backoffice")


# Default plan configurations (-1 = unlimited)
DEFAULT_PLANS: Dict[str, Dict[str, Any]] = {
    "free": {
        "name": "Free",
        "description": "Perfect for small businesses just getting started with inventory management",
        "price_monthly": "0",
        "price_annual": "0",
        "currency": "GHS",
        "sort_order": 1,
        "features": {
            "products": {"enabled": True, "limit": 50, "description": "Manage up to 50 products"},
            "inventory_tracking": {"enabled": True, "limit": -1, "description": "Basic inventory tracking"},
            "basic_reports": {"enabled": True, "limit": 5, "description": "Up to 5 basic reports per month"},
            "email_support": {"enabled": True, "limit": -1, "description": "Email support"},
            "mobile_access": {"enabled": True, "limit": -1, "description": "Mobile app access"},
        },
    },
    "professional": {
        "name": "Professional",
        "description": "Everything you need to scale your business with advanced features and analytics",
        "price_monthly": "90",
        "price_annual": "900",
        "currency": "GHS",
        "sort_order": 2,
        "features": {
            "products": {"enabled": True, "limit": -1, "description": "Unlimited products"},
            "inventory_tracking": {"enabled": True, "limit": -1, "description": "Advanced inventory tracking with alerts"},
            "basic_reports": {"enabled": True, "limit": -1, "description": "Unlimited basic reports"},
            "advanced_reports": {"enabled": True, "limit": -1, "description": "Unlimited advanced reports and analytics"},
            "bulk_operations": {"enabled": True, "limit": -1, "description": "Bulk import/export operations"},
            "priority_support": {"enabled": True, "limit": -1, "description": "Priority email and chat support"},
            "mobile_access": {"enabled": True, "limit": -1, "description": "Full mobile app access"},
            "low_stock_alerts": {"enabled": True, "limit": -1, "description": "Automated low stock alerts"},
            "sales_analytics": {"enabled": True, "limit": -1, "description": "Detailed sales analytics and insights"},
            "multi_location": {"enabled": True, "limit": 5, "description": "Manage up to 5 locations"},
        },
    },
    "enterprise": {
        "name": "Enterprise",
        "description": "Advanced solution for large businesses with custom integrations and dedicated support",
        "price_monthly": "210",
        "price_annual": "2100",
        "currency": "GHS",
        "sort_order": 3,
        "features": {
            "products": {"enabled": True, "limit": -1, "description": "Unlimited products"},
            "inventory_tracking": {"enabled": True, "limit": -1, "description": "Enterprise-grade inventory management"},
            "basic_reports": {"enabled": True, "limit": -1, "description": "Unlimited basic reports"},
            "advanced_reports": {"enabled": True, "limit": -1, "description": "Unlimited reports with custom dashboards"},
            "bulk_operations": {"enabled": True, "limit": -1, "description": "Advanced bulk operations and automation"},
            "dedicated_support": {"enabled": True, "limit": -1, "description": "Dedicated account manager and phone support"},
            "mobile_access": {"enabled": True, "limit": -1, "description": "Full mobile app with offline capabilities"},
            "api_access": {"enabled": True, "limit": -1, "description": "Full API access for custom integrations"},
            "custom_integrations": {"enabled": True, "limit": -1, "description": "Custom third-party integrations"},
            "multi_location": {"enabled": True, "limit": -1, "description": "Unlimited locations"},
            "advanced_security": {"enabled": True, "limit": -1, "description": "Advanced security features and audit logs"},
            "white_labeling": {"enabled": True, "limit": -1, "description": "White-label branding options"},
            "custom_workflows": {"enabled": True, "limit": -1, "description": "Custom workflow automation"},
        },
    },
}

# Fields that may change while live subscriptions reference a plan
MUTABLE_WHILE_LIVE = frozenset({"name", "description", "sort_order", "is_active"})


def plan_from_config(plan_id: str, config: Dict[str, Any]) -> Plan:
    return Plan(
        plan_id=plan_id,
        name=config["name"],
        description=config.get("description"),
        price_monthly=Decimal(str(config["price_monthly"])),
        price_annual=Decimal(str(config["price_annual"])),
        currency=config["currency"],
        trial_days=config.get("trial_days", 0),
        is_active=config.get("is_active", True),
        sort_order=config.get("sort_order", 0),
        features={k: FeatureEntitlement(**v) for k, v in config.get("features", {}).items()},
    )


class PlanCatalog:
    """Read and administer plans. Each call runs in its own DB session."""

    def __init__(self, sessions: SessionScope = get_db_session):
        self._sessions = sessions

    def seed_plans(self, definitions: Optional[Dict[str, Dict[str, Any]]] = None) -> List[str]:
        """
        Seed default plans (idempotent).

        Existing plans are left untouched. Returns ids of plans inserted.
        """
        created = []
        for plan_id, config in (definitions or DEFAULT_PLANS).items():
            with self._sessions() as session:
                exists = session.execute(
                    select(plans.c.plan_id).where(plans.c.plan_id == plan_id)
                ).first()
                if exists:
                    continue
                self._insert(session, plan_from_config(plan_id, config))
                created.append(plan_id)
        if created:
            logger.info("[plans] seeded", extra={"plan_ids": created})
        return created

    def create_plan(self, plan: Plan) -> Plan:
        with self._sessions() as session:
            exists = session.execute(
                select(plans.c.plan_id).where(plans.c.plan_id == plan.plan_id)
            ).first()
            if exists:
                raise ConflictError(f"Plan {plan.plan_id} already exists")
            self._insert(session, plan)
        return plan

    def _insert(self, session, plan: Plan) -> None:
        now = datetime.now(timezone.utc)
        session.execute(
            insert(plans).values(
                plan_id=plan.plan_id,
                name=plan.name,
                description=plan.description,
                price_monthly=plan.price_monthly,
                price_annual=plan.price_annual,
                currency=plan.currency,
                trial_days=plan.trial_days,
                is_active=plan.is_active,
                sort_order=plan.sort_order,
                created_at=now,
                updated_at=now,
            )
        )
        self._write_features(session, plan.plan_id, plan.features)

    def _write_features(self, session, plan_id: str, features: Dict[str, FeatureEntitlement]) -> None:
        for key, entitlement in features.items():
            session.execute(
                insert(plan_features).values(
                    plan_id=plan_id,
                    feature_key=key,
                    enabled=entitlement.enabled,
                    limit=entitlement.limit,
                    description=entitlement.description,
                )
            )

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        with self._sessions() as session:
            row = session.execute(select(plans).where(plans.c.plan_id == plan_id)).first()
            if not row:
                return None
            feature_rows = session.execute(
                select(plan_features).where(plan_features.c.plan_id == plan_id)
            ).all()
            return _plan_from_rows(row, feature_rows)

    def require_plan(self, plan_id: str) -> Plan:
        plan = self.get_plan(plan_id)
        if not plan:
            raise NotFoundError(f"Plan {plan_id} not found")
        return plan

    def require_active_plan(self, plan_id: str) -> Plan:
        plan = self.require_plan(plan_id)
        if not plan.is_active:
            raise NotFoundError(f"Plan {plan_id} is not available")
        return plan

    def list_plans(self, active_only: bool = True) -> List[Plan]:
        """Plans ordered by sort order, then monthly price."""
        with self._sessions() as session:
            stmt = select(plans)
            if active_only:
                stmt = stmt.where(plans.c.is_active == True)  # noqa: E712
            rows = session.execute(stmt.order_by(plans.c.sort_order, plans.c.price_monthly)).all()
            feature_rows = session.execute(select(plan_features)).all()

        by_plan: Dict[str, list] = {}
        for fr in feature_rows:
            by_plan.setdefault(fr.plan_id, []).append(fr)
        return [_plan_from_rows(r, by_plan.get(r.plan_id, [])) for r in rows]

    def update_plan(self, plan_id: str, **changes) -> Plan:
        """
        Update a plan.

        Prices, currency, trial length and features are frozen while any open
        subscription references the plan; such changes raise ConflictError.
        """
        unknown = set(changes) - MUTABLE_WHILE_LIVE - {"price_monthly", "price_annual", "currency", "trial_days", "features"}
        if unknown:
            raise ValidationError(f"Unknown plan fields: {', '.join(sorted(unknown))}")

        current = self.require_plan(plan_id)
        frozen_changes = set(changes) - MUTABLE_WHILE_LIVE

        with self._sessions() as session:
            if frozen_changes:
                live = session.execute(
                    select(subscriptions.c.id)
                    .where(subscriptions.c.plan_id == plan_id)
                    .where(subscriptions.c.status.in_(OPEN_SUBSCRIPTION_STATUSES))
                    .limit(1)
                ).first()
                if live:
                    raise ConflictError(
                        f"Plan {plan_id} is referenced by live subscriptions; "
                        f"cannot change {', '.join(sorted(frozen_changes))}"
                    )

            merged = current.model_dump()
            merged.update(changes)
            if "features" in changes:
                merged["features"] = {
                    k: v if isinstance(v, FeatureEntitlement) else FeatureEntitlement(**v)
                    for k, v in changes["features"].items()
                }
            try:
                updated = Plan(**merged)
            except ValueError as e:
                raise ValidationError(str(e))

            column_changes = {k: getattr(updated, k) for k in changes if k != "features"}
            column_changes["updated_at"] = datetime.now(timezone.utc)
            session.execute(update(plans).where(plans.c.plan_id == plan_id).values(**column_changes))
            if "features" in changes:
                session.execute(delete(plan_features).where(plan_features.c.plan_id == plan_id))
                self._write_features(session, plan_id, updated.features)

        logger.info("[plans] updated", extra={"plan_id": plan_id, "fields": sorted(changes)})
        return updated

    def get_feature_comparison(self) -> Dict[str, Any]:
        """
        Plan x feature matrix over active plans.

        Returns:
            {"plans": [{plan_id, name, price_monthly, price_annual, currency}],
             "features": {feature_key: {plan_id: {enabled, limit}}}}
        """
        active = self.list_plans(active_only=True)
        feature_keys = sorted({key for plan in active for key in plan.features})
        matrix: Dict[str, Dict[str, Any]] = {}
        for key in feature_keys:
            matrix[key] = {}
            for plan in active:
                entitlement = plan.feature(key)
                matrix[key][plan.plan_id] = {
                    "enabled": bool(entitlement and entitlement.enabled),
                    "limit": entitlement.limit if entitlement else None,
                    "description": entitlement.description if entitlement else None,
                }
        return {
            "plans": [
                {
                    "plan_id": p.plan_id,
                    "name": p.name,
                    "price_monthly": str(p.price_monthly),
                    "price_annual": str(p.price_annual),
                    "currency": p.currency,
                }
                for p in active
            ],
            "features": matrix,
        }


def _plan_from_rows(row, feature_rows) -> Plan:
    return Plan(
        plan_id=row.plan_id,
        name=row.name,
        description=row.description,
        price_monthly=Decimal(str(row.price_monthly)),
        price_annual=Decimal(str(row.price_annual)),
        currency=row.currency,
        trial_days=row.trial_days,
        is_active=bool(row.is_active),
        sort_order=row.sort_order,
        features={
            fr.feature_key: FeatureEntitlement(
                enabled=bool(fr.enabled), limit=fr.limit, description=fr.description
            )
            for fr in feature_rows
        },
    )
