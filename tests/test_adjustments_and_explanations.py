"""
Tests for recording transactions, settling returns through adjustments and
explaining calculated commissions.
"""

from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from app.core.exceptions import AuthorizationError, NotFoundError, ValidationError
from app.core.tenant import RequestContext, UserRole
from app.engine.enums import CommissionBasis, CustomerTier, RuleScope, TransactionType
from app.models.commission import AdjustmentType, CommissionAdjustment, CommissionStatus
from app.schemas.adjustment import AdjustmentCreate
from app.schemas.transaction import SalesTransactionCreate
from app.services.adjustment_service import AdjustmentService
from app.services.commission_service import CommissionService
from app.services.explanation_service import ExplanationService
from app.services.trace_migration_service import TraceMigrationService
from app.services.transaction_service import TransactionService


@pytest.fixture
def gross_plan(make_plan, make_rule):
    plan = make_plan(name="Gross Plan")
    make_rule(plan, percentage="5", description="Base rate")
    make_rule(plan, scope=RuleScope.CUSTOMER_TIER, customer_tier=CustomerTier.VIP, percentage="7.5")
    return plan


@pytest.fixture
def net_plan(make_plan, make_rule):
    plan = make_plan(name="Net Plan", basis=CommissionBasis.NET_SALES)
    make_rule(plan, percentage="10")
    return plan


def _record(db, context, amount, **kwargs):
    data = SalesTransactionCreate(amount=Decimal(str(amount)), transaction_date=date(2024, 3, 15), **kwargs)
    return TransactionService.create_transaction(db, context, data)


def _return(db, context, sale, amount):
    return _record(db, context, amount, transaction_type=TransactionType.RETURN, parent_transaction_id=sale.id)


class TestRecordTransaction:
    def test_sale_is_calculated_for_the_caller(self, db, rep, gross_plan) -> None:
        sale, [calculation] = _record(db, rep, 10000, invoice_number="INV-7")

        assert sale.user_id == "rep-1"
        assert calculation.amount == Decimal("500.00")
        assert calculation.sales_transaction_id == sale.id

    def test_admin_can_credit_another_salesperson(self, db, admin, gross_plan) -> None:
        sale, [calculation] = _record(db, admin, 10000, user_id="rep-2")

        assert sale.user_id == "rep-2"
        assert calculation.user_id == "rep-2"

    def test_salesperson_cannot_credit_someone_else(self, db, rep, gross_plan) -> None:
        with pytest.raises(AuthorizationError):
            _record(db, rep, 10000, user_id="rep-2")

    def test_negative_sale_is_rejected(self, db, rep, gross_plan) -> None:
        with pytest.raises(ValidationError):
            _record(db, rep, -10)

    def test_unlinked_return_reverses_commission(self, db, rep, gross_plan) -> None:
        returned, [calculation] = _record(db, rep, 2000, transaction_type=TransactionType.RETURN)

        assert returned.amount == Decimal("-2000.00")
        assert calculation.amount == Decimal("-100.00")

    def test_project_is_required_when_configured(self, db, rep, organization, gross_plan) -> None:
        organization.require_projects = True
        db.commit()

        with pytest.raises(ValidationError):
            _record(db, rep, 1000)

    def test_client_must_match_project(self, db, rep, gross_plan, make_client, make_project) -> None:
        project = make_project(make_client(name="Globex"))
        other = make_client(name="Umbrella")

        with pytest.raises(ValidationError):
            _record(db, rep, 1000, project_id=project.id, client_id=other.id)

    def test_unknown_organization(self, db, gross_plan) -> None:
        stranger = RequestContext(organization_id="missing", user_id="rep-1", role=UserRole.SALESPERSON)

        with pytest.raises(NotFoundError):
            _record(db, stranger, 1000)


class TestReturns:
    def test_return_is_settled_at_original_rate(self, db, rep, organization, gross_plan, make_client) -> None:
        client = make_client(tier=CustomerTier.VIP)
        sale, [calculation] = _record(db, rep, 10000, client_id=client.id, invoice_number="INV-7")

        returned, calculations = _return(db, rep, sale, 2000)

        assert calculations == []
        assert returned.amount == Decimal("-2000.00")
        assert returned.client_id == client.id
        assert returned.user_id == "rep-1"

        [adjustment] = AdjustmentService.list_adjustments(db, organization.id, calculation.id)
        assert adjustment.type == AdjustmentType.RETURN
        assert adjustment.amount == Decimal("-150.00")
        assert adjustment.reason == "Return of $2,000.00 on invoice INV-7"
        assert adjustment.related_transaction_id == returned.id

        net = AdjustmentService.get_net_amount(db, organization.id, calculation.id)
        assert net["amount"] == Decimal("750.00")
        assert net["net_amount"] == Decimal("600.00")

    def test_linking_twice_adds_nothing(self, db, rep, organization, gross_plan) -> None:
        sale, _ = _record(db, rep, 10000)
        returned, _ = _return(db, rep, sale, 2000)

        again = AdjustmentService.link_return_to_commission(db, organization.id, returned)

        assert again == []
        assert db.query(CommissionAdjustment).count() == 1

    def test_net_plan_is_recalculated_instead(self, db, rep, organization, net_plan) -> None:
        sale, [calculation] = _record(db, rep, 10000)
        assert calculation.amount == Decimal("1000.00")

        _return(db, rep, sale, 2000)

        db.refresh(calculation)
        assert calculation.amount == Decimal("800.00")
        assert calculation.trace["input"]["returns_total"] == "2000.00"
        assert AdjustmentService.list_adjustments(db, organization.id, calculation.id) == []

    def test_paid_net_commission_gets_an_adjustment(self, db, rep, organization, net_plan) -> None:
        sale, [calculation] = _record(db, rep, 10000)
        CommissionService.approve(db, organization.id, calculation.id)
        CommissionService.mark_paid(db, organization.id, calculation.id)

        _return(db, rep, sale, 2000)

        db.refresh(calculation)
        assert calculation.amount == Decimal("1000.00")
        assert calculation.status == CommissionStatus.PAID
        [adjustment] = AdjustmentService.list_adjustments(db, organization.id, calculation.id)
        assert adjustment.amount == Decimal("-200.00")

    def test_returns_cannot_exceed_the_sale(self, db, rep, gross_plan) -> None:
        sale, _ = _record(db, rep, 10000)
        _return(db, rep, sale, 6000)

        with pytest.raises(ValidationError):
            _return(db, rep, sale, 5000)

    def test_only_returns_reference_a_sale(self, db, rep, gross_plan) -> None:
        sale, _ = _record(db, rep, 10000)

        with pytest.raises(ValidationError):
            _record(db, rep, 100, parent_transaction_id=sale.id)

    def test_return_must_reference_a_sale(self, db, rep, gross_plan) -> None:
        unlinked, _ = _record(db, rep, 100, transaction_type=TransactionType.RETURN)

        with pytest.raises(ValidationError):
            _return(db, rep, unlinked, 50)


class TestManualAdjustments:
    def test_adjustments_layer_on_top(self, db, rep, organization, gross_plan) -> None:
        _, [calculation] = _record(db, rep, 10000)

        adjustment = AdjustmentService.create_adjustment(
            db,
            organization.id,
            AdjustmentCreate(
                commission_calculation_id=calculation.id,
                type=AdjustmentType.CLAWBACK,
                amount=Decimal("-50"),
                reason="Customer churned within 30 days",
            ),
            applied_by="admin-1",
        )

        db.refresh(calculation)
        assert calculation.amount == Decimal("500.00")
        assert calculation.version == 1
        assert AdjustmentService.get_net_amount(db, organization.id, calculation.id)["net_amount"] == Decimal("450.00")

        AdjustmentService.delete_adjustment(db, organization.id, adjustment.id, user_id="admin-1")
        assert AdjustmentService.get_adjustments_total(db, organization.id, calculation.id) == Decimal("0.00")

    def test_zero_adjustment_is_rejected(self) -> None:
        with pytest.raises(PydanticValidationError):
            AdjustmentCreate(
                commission_calculation_id="calc-1",
                type=AdjustmentType.OVERRIDE,
                amount=Decimal("0"),
                reason="No-op",
            )

    def test_unknown_calculation(self, db, organization) -> None:
        with pytest.raises(NotFoundError):
            AdjustmentService.create_adjustment(
                db,
                organization.id,
                AdjustmentCreate(
                    commission_calculation_id="missing",
                    type=AdjustmentType.OVERRIDE,
                    amount=Decimal("10"),
                    reason="Bonus",
                ),
            )


class TestExplanation:
    def test_admin_sees_everything(self, db, rep, admin, gross_plan) -> None:
        _, [calculation] = _record(db, rep, 10000)

        explanation = ExplanationService.explain(db, admin, calculation.id)

        summary = explanation["summary"]
        assert summary["commission_amount"] == Decimal("500.00")
        assert summary["effective_rate"] == Decimal("5.00")
        assert summary["plan_name"] == "Gross Plan"

        applied = explanation["applied_rule"]
        assert applied["description"] == "Base rate"
        assert applied["steps"] == ["Gross revenue basis: $10,000.00", "5% x $10,000.00 = $500.00"]

        details = explanation["admin_details"]
        assert details["migrated_from"] is None
        [rejected] = details["rejected_rules"]
        assert rejected["description"] == "7.5% of sale"
        assert rejected["reasons"] == ["customer_tier equals VIP (was None)"]

    def test_salesperson_sees_summary_only(self, db, rep, organization, gross_plan) -> None:
        sale, [calculation] = _record(db, rep, 10000)
        _return(db, rep, sale, 1000)

        explanation = ExplanationService.explain(db, rep, calculation.id)

        assert explanation["admin_details"] is None
        assert explanation["adjustments_total"] == Decimal("-50.00")
        assert explanation["net_amount"] == Decimal("450.00")
        assert explanation["adjustments"][0]["applied_by"] is None

    def test_salesperson_cannot_see_others(self, db, admin, rep, gross_plan) -> None:
        _, [calculation] = _record(db, admin, 10000, user_id="rep-2")

        with pytest.raises(AuthorizationError):
            ExplanationService.explain(db, rep, calculation.id)

    def test_legacy_trace_must_be_migrated(self, db, rep, admin, organization, gross_plan) -> None:
        _, [calculation] = _record(db, rep, 10000)
        calculation.trace = {
            "engineVersion": "1.0.0",
            "planVersion": {"id": gross_plan.id, "name": "Gross Plan", "commissionBasis": "GROSS_REVENUE"},
            "inputSnapshot": {"transactionId": calculation.sales_transaction_id, "grossAmount": 10000},
            "ruleTrace": [{
                "ruleId": "legacy-rule",
                "ruleType": "PERCENTAGE",
                "scope": "GLOBAL",
                "eligible": True,
                "selected": True,
                "calculation": {"basisAmount": 10000, "rate": 5, "rawAmount": 500, "finalAmount": 500},
            }],
            "output": {"selectedRuleId": "legacy-rule", "commissionAmount": 500, "effectiveRate": 5},
        }
        db.commit()

        with pytest.raises(ValidationError) as exc_info:
            ExplanationService.explain(db, admin, calculation.id)
        assert exc_info.value.details["trace_version"] == 1

        TraceMigrationService.migrate_traces(db, organization_id=organization.id)

        explanation = ExplanationService.explain(db, admin, calculation.id)
        assert explanation["admin_details"]["migrated_from"] == 1
        assert explanation["applied_rule"]["steps"][-1] == "5% x $10,000.00 = $500.00"
