"""Shared fixtures: an in-memory database per test and row builders."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("CELERY_TASK_ALWAYS_EAGER", "true")

from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base, load_models
from app.core.tenant import RequestContext, UserRole
from app.engine.enums import CommissionBasis, CustomerTier, RuleScope, RuleType, TransactionType
from app.engine.precedence import assign_priority_from_scope

load_models()

from app.models.client import Client, Project
from app.models.commission_plan import CommissionPlan
from app.models.commission_rule import CommissionRule
from app.models.organization import Organization
from app.models.sales_transaction import SalesTransaction

SALE_DATE = date(2024, 3, 15)
RULE_EPOCH = datetime(2024, 1, 1, 9, 0, 0)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def organization(db) -> Organization:
    org = Organization(name="Acme Sales")
    db.add(org)
    db.commit()
    return org


@pytest.fixture
def admin(organization) -> RequestContext:
    return RequestContext(organization_id=organization.id, user_id="admin-1", role=UserRole.ADMIN)


@pytest.fixture
def rep(organization) -> RequestContext:
    return RequestContext(organization_id=organization.id, user_id="rep-1", role=UserRole.SALESPERSON)


@pytest.fixture
def make_client(db, organization):
    def _make(name="Globex", tier=CustomerTier.STANDARD, territory_id=None) -> Client:
        client = Client(organization_id=organization.id, name=name, tier=tier, territory_id=territory_id)
        db.add(client)
        db.commit()
        return client
    return _make


@pytest.fixture
def make_project(db, organization):
    def _make(client, name="Rollout") -> Project:
        project = Project(organization_id=organization.id, client_id=client.id, name=name)
        db.add(project)
        db.commit()
        return project
    return _make


@pytest.fixture
def make_plan(db, organization):
    def _make(name="Standard Plan", basis=CommissionBasis.GROSS_REVENUE, project=None, is_active=True) -> CommissionPlan:
        plan = CommissionPlan(
            organization_id=organization.id,
            name=name,
            commission_basis=basis,
            project_id=project.id if project else None,
            is_active=is_active,
        )
        db.add(plan)
        db.commit()
        return plan
    return _make


@pytest.fixture
def make_rule(db):
    counter = {"n": 0}

    def _make(plan, rule_type=RuleType.PERCENTAGE, scope=RuleScope.GLOBAL, percentage="10", **kwargs) -> CommissionRule:
        counter["n"] += 1
        values = {
            "rule_type": rule_type,
            "scope": scope,
            "priority": kwargs.pop("priority", None) or assign_priority_from_scope(scope),
            "percentage": Decimal(percentage) if rule_type == RuleType.PERCENTAGE and percentage is not None else None,
            "created_at": kwargs.pop("created_at", RULE_EPOCH + timedelta(minutes=counter["n"])),
        }
        for key in ("flat_amount", "min_sale_amount", "max_sale_amount", "min_amount", "max_amount"):
            if kwargs.get(key) is not None:
                kwargs[key] = Decimal(str(kwargs[key]))
        values.update(kwargs)

        rule = CommissionRule(organization_id=plan.organization_id, commission_plan_id=plan.id, **values)
        db.add(rule)
        db.commit()
        return rule
    return _make


@pytest.fixture
def make_sale(db, organization):
    def _make(
        amount,
        client=None,
        project=None,
        user_id="rep-1",
        transaction_type=TransactionType.SALE,
        parent=None,
        invoice_number=None,
        product_category_id=None,
    ) -> SalesTransaction:
        transaction = SalesTransaction(
            organization_id=organization.id,
            amount=Decimal(str(amount)),
            transaction_date=SALE_DATE,
            transaction_type=transaction_type,
            parent_transaction_id=parent.id if parent else None,
            client_id=client.id if client else None,
            project_id=project.id if project else None,
            product_category_id=product_category_id,
            user_id=user_id,
            invoice_number=invoice_number,
        )
        db.add(transaction)
        db.commit()
        return transaction
    return _make
