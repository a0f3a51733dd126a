"""
Tests for CommissionService: persisting calculations, recalculation and
the approval workflow.
"""

from decimal import Decimal

import pytest

from app.core.exceptions import ConcurrencyConflictError, InvalidRuleConfiguration, NotFoundError, ValidationError, WorkflowError
from app.engine.enums import CustomerTier, RuleScope, TransactionType
from app.models.audit_log import AuditLog
from app.models.commission import CommissionCalculation, CommissionStatus
from app.schemas.commission import CommissionSimulation
from app.schemas.plan import CommissionPlanUpdate, CommissionRuleUpdate
from app.services.commission_service import CommissionService
from app.services.plan_service import PlanService


@pytest.fixture
def standard_plan(make_plan, make_rule):
    """5% for everyone, 7.5% for VIP customers"""
    plan = make_plan()
    make_rule(plan, percentage="5", description="Base rate")
    make_rule(plan, scope=RuleScope.CUSTOMER_TIER, customer_tier=CustomerTier.VIP, percentage="7.5")
    return plan


@pytest.fixture
def vip(make_client):
    return make_client(name="Initech", tier=CustomerTier.VIP)


def _calculate(db, organization, transaction) -> list:
    return CommissionService.calculate_for_transaction(db, organization.id, transaction.id)


def _approved(db, organization, calculation) -> CommissionCalculation:
    return CommissionService.approve(db, organization.id, calculation.id, approved_by="admin-1")


class TestCalculate:
    def test_standard_and_vip_rates(self, db, organization, standard_plan, make_client, vip, make_sale) -> None:
        standard_sale = make_sale(10000, client=make_client())
        vip_sale = make_sale(10000, client=vip)

        [standard] = _calculate(db, organization, standard_sale)
        [premium] = _calculate(db, organization, vip_sale)

        assert standard.amount == Decimal("500.00")
        assert premium.amount == Decimal("750.00")
        assert standard.status == CommissionStatus.PENDING
        assert standard.user_id == "rep-1"
        assert standard.trace["schema_version"] == 2
        assert premium.trace["output"]["selected_rule_id"] == premium.trace["rule_trace"][0]["rule_id"]

    def test_client_comes_from_project(self, db, organization, standard_plan, vip, make_project, make_sale) -> None:
        sale = make_sale(10000, project=make_project(vip))

        [calculation] = _calculate(db, organization, sale)

        assert calculation.amount == Decimal("750.00")

    def test_no_matching_rule_creates_nothing(self, db, organization, make_plan, make_rule, make_sale) -> None:
        make_rule(make_plan(), min_sale_amount="50000")

        assert _calculate(db, organization, make_sale(1000)) == []
        assert db.query(CommissionCalculation).count() == 0

    def test_project_plan_only_applies_to_its_project(
        self, db, organization, standard_plan, make_client, make_project, make_plan, make_rule, make_sale
    ) -> None:
        project = make_project(make_client())
        make_rule(make_plan(name="Rollout bonus", project=project), percentage="1")

        without_project = _calculate(db, organization, make_sale(10000))
        with_project = _calculate(db, organization, make_sale(10000, project=project))

        assert len(without_project) == 1
        assert sorted(row.amount for row in with_project) == [Decimal("100.00"), Decimal("500.00")]

    def test_linked_return_gets_no_calculation(self, db, organization, standard_plan, make_sale) -> None:
        sale = make_sale(10000)
        returned = make_sale(-2000, transaction_type=TransactionType.RETURN, parent=sale)

        assert _calculate(db, organization, returned) == []

    def test_invalid_stored_rule_is_reported(self, db, organization, make_plan, make_rule, make_sale) -> None:
        make_rule(make_plan(), percentage=None)

        with pytest.raises(InvalidRuleConfiguration):
            _calculate(db, organization, make_sale(1000))

    def test_unknown_transaction(self, db, organization) -> None:
        with pytest.raises(NotFoundError):
            CommissionService.calculate_for_transaction(db, organization.id, "missing")

    def test_calculation_is_audited(self, db, organization, standard_plan, make_sale) -> None:
        sale = make_sale(10000)
        _calculate(db, organization, sale)

        entry = db.query(AuditLog).filter(AuditLog.action == "commission.calculated").one()
        assert entry.entity_id == sale.id
        assert entry.changes["calculations"] == 1


class TestRecalculation:
    def test_recalculation_is_idempotent(self, db, organization, standard_plan, vip, make_sale) -> None:
        sale = make_sale(10000, client=vip)
        [first] = _calculate(db, organization, sale)
        first_id, first_trace = first.id, dict(first.trace)

        [second] = CommissionService.recalculate_transaction(db, organization.id, sale.id)

        assert second.id == first_id
        assert second.trace == first_trace
        assert second.version == 1
        assert db.query(CommissionCalculation).count() == 1

    def test_rule_change_updates_pending_row_in_place(self, db, organization, make_plan, make_rule, make_sale) -> None:
        plan = make_plan()
        rule = make_rule(plan, percentage="5")
        sale = make_sale(10000)
        [calculation] = _calculate(db, organization, sale)

        PlanService.update_rule(db, organization.id, rule.id, CommissionRuleUpdate(percentage=Decimal("6")))
        summary = CommissionService.recalculate_plan(db, organization.id, plan.id)

        db.refresh(calculation)
        assert summary["processed"] == 1
        assert summary["calculated"] == 1
        assert calculation.amount == Decimal("600.00")
        assert calculation.version == 2

    def test_paid_rows_are_not_recalculated(self, db, organization, make_plan, make_rule, make_sale) -> None:
        plan = make_plan()
        rule = make_rule(plan, percentage="5")
        [calculation] = _calculate(db, organization, make_sale(10000))
        _approved(db, organization, calculation)
        CommissionService.mark_paid(db, organization.id, calculation.id)

        PlanService.update_rule(db, organization.id, rule.id, CommissionRuleUpdate(percentage=Decimal("6")))
        summary = CommissionService.recalculate_plan(db, organization.id, plan.id)

        db.refresh(calculation)
        assert summary["skipped_paid"] == 1
        assert calculation.amount == Decimal("500.00")
        assert calculation.status == CommissionStatus.PAID

    def test_changed_approved_row_returns_to_pending(self, db, organization, make_plan, make_rule, make_sale) -> None:
        plan = make_plan()
        rule = make_rule(plan, percentage="5")
        [calculation] = _calculate(db, organization, make_sale(10000))
        _approved(db, organization, calculation)

        PlanService.update_rule(db, organization.id, rule.id, CommissionRuleUpdate(percentage=Decimal("6")))
        CommissionService.recalculate_plan(db, organization.id, plan.id)

        db.refresh(calculation)
        assert calculation.status == CommissionStatus.PENDING
        assert calculation.approved_at is None
        assert calculation.amount == Decimal("600.00")

    def test_unchanged_approved_row_stays_approved(self, db, organization, standard_plan, make_sale) -> None:
        sale = make_sale(10000)
        [calculation] = _calculate(db, organization, sale)
        _approved(db, organization, calculation)

        CommissionService.recalculate_transaction(db, organization.id, sale.id)

        db.refresh(calculation)
        assert calculation.status == CommissionStatus.APPROVED

    def test_deactivated_plan_keeps_pending_rows(self, db, organization, standard_plan, make_sale) -> None:
        sale = make_sale(10000)
        [calculation] = _calculate(db, organization, sale)

        PlanService.update_plan(db, organization.id, standard_plan.id, CommissionPlanUpdate(is_active=False))

        assert CommissionService.recalculate_transaction(db, organization.id, sale.id) == []
        db.refresh(calculation)
        assert calculation.status == CommissionStatus.PENDING
        assert calculation.amount == Decimal("500.00")

    def test_plan_recalculation_leaves_other_plans_alone(self, db, organization, make_plan, make_rule, make_sale) -> None:
        retired = make_plan(name="Retired Plan")
        make_rule(retired, percentage="10")
        current = make_plan(name="Current Plan")
        rule = make_rule(current, percentage="5")
        sale = make_sale(1000)
        assert len(_calculate(db, organization, sale)) == 2

        PlanService.update_plan(db, organization.id, retired.id, CommissionPlanUpdate(is_active=False))
        PlanService.update_rule(db, organization.id, rule.id, CommissionRuleUpdate(percentage=Decimal("6")))
        summary = CommissionService.recalculate_plan(db, organization.id, current.id)

        amounts = {
            row.commission_plan_id: row.amount
            for row in db.query(CommissionCalculation).all()
        }
        assert summary["removed"] == 0
        assert amounts == {retired.id: Decimal("100.00"), current.id: Decimal("60.00")}

    def test_active_plan_that_stops_matching_drops_pending_row(self, db, organization, make_plan, make_rule, make_sale) -> None:
        plan = make_plan()
        rule = make_rule(plan, percentage="5")
        _calculate(db, organization, make_sale(1000))

        PlanService.update_rule(db, organization.id, rule.id, CommissionRuleUpdate(min_sale_amount=Decimal("5000")))
        summary = CommissionService.recalculate_plan(db, organization.id, plan.id)

        assert summary["removed"] == 1
        assert db.query(CommissionCalculation).count() == 0

    def test_vanished_transaction_counts_as_failed(self, db, organization) -> None:
        summary = {"processed": 0, "calculated": 0, "removed": 0, "skipped_paid": 0, "failed": 0, "failures": []}

        CommissionService._sync_each(db, ["gone"], summary)

        assert summary["processed"] == 1
        assert summary["failed"] == 1
        assert summary["failures"] == [{"transaction_id": "gone", "error": "Sales transaction not found"}]

    def test_invalid_plan_is_rejected_before_any_write(self, db, organization, make_plan, make_rule, make_sale) -> None:
        plan = make_plan()
        make_rule(plan, percentage=None)
        make_sale(10000)

        with pytest.raises(InvalidRuleConfiguration):
            CommissionService.recalculate_plan(db, organization.id, plan.id)

    def test_recalculation_in_small_batches(self, db, organization, standard_plan, make_sale) -> None:
        for amount in (1000, 2000, 3000):
            make_sale(amount)

        summary = CommissionService.recalculate_plan(db, organization.id, standard_plan.id, batch_size=2)

        assert summary["processed"] == 3
        assert summary["calculated"] == 3
        assert summary["failed"] == 0


class TestBackfill:
    def test_backfill_creates_missing_rows(self, db, organization, make_plan, make_rule, make_sale) -> None:
        make_rule(make_plan(), percentage="5", min_sale_amount="1000")
        make_sale(5000)
        make_sale(500)

        first = CommissionService.backfill_missing(db, organization.id)
        second = CommissionService.backfill_missing(db, organization.id)

        assert (first["checked"], first["created"], first["still_missing"]) == (2, 1, 1)
        assert (second["checked"], second["created"], second["still_missing"]) == (1, 0, 1)

    def test_backfill_limit(self, db, organization, standard_plan, make_sale) -> None:
        make_sale(1000)
        make_sale(2000)

        summary = CommissionService.backfill_missing(db, limit=1)

        assert summary["created"] == 1
        assert db.query(CommissionCalculation).count() == 1


class TestWorkflow:
    def test_approve_then_pay(self, db, organization, standard_plan, make_sale) -> None:
        [calculation] = _calculate(db, organization, make_sale(10000))

        approved = _approved(db, organization, calculation)
        assert approved.status == CommissionStatus.APPROVED
        assert approved.approved_by == "admin-1"
        assert approved.version == 2

        paid = CommissionService.mark_paid(db, organization.id, calculation.id, user_id="admin-1")
        assert paid.status == CommissionStatus.PAID
        assert paid.paid_at is not None

    def test_approving_twice_is_a_no_op(self, db, organization, standard_plan, make_sale) -> None:
        [calculation] = _calculate(db, organization, make_sale(10000))

        _approved(db, organization, calculation)
        again = _approved(db, organization, calculation)

        assert again.version == 2

    def test_illegal_transitions(self, db, organization, standard_plan, make_sale) -> None:
        [calculation] = _calculate(db, organization, make_sale(10000))

        with pytest.raises(WorkflowError):
            CommissionService.mark_paid(db, organization.id, calculation.id)

        _approved(db, organization, calculation)
        CommissionService.mark_paid(db, organization.id, calculation.id)

        with pytest.raises(WorkflowError):
            _approved(db, organization, calculation)
        with pytest.raises(WorkflowError):
            CommissionService.mark_paid(db, organization.id, calculation.id)
        with pytest.raises(WorkflowError):
            CommissionService.reject(db, organization.id, calculation.id)

    def test_reject_removes_the_row(self, db, organization, standard_plan, make_sale) -> None:
        [calculation] = _calculate(db, organization, make_sale(10000))
        calculation_id = calculation.id

        CommissionService.reject(db, organization.id, calculation_id, user_id="admin-1")

        assert db.get(CommissionCalculation, calculation_id) is None
        assert db.query(AuditLog).filter(AuditLog.action == "commission.rejected").count() == 1

    def test_stale_version_is_a_conflict(self, db, organization, standard_plan, make_sale) -> None:
        [calculation] = _calculate(db, organization, make_sale(10000))

        with pytest.raises(ConcurrencyConflictError):
            CommissionService.approve(db, organization.id, calculation.id, expected_version=5)

    def test_concurrent_writer_is_a_conflict(self, db, session_factory, organization, standard_plan, make_sale) -> None:
        [calculation] = _calculate(db, organization, make_sale(10000))
        other = session_factory()
        try:
            other.get(CommissionCalculation, calculation.id)

            _approved(db, organization, calculation)

            with pytest.raises(ConcurrencyConflictError):
                _approved(other, organization, calculation)
        finally:
            other.close()

    def test_bulk_approve_reports_skips(self, db, organization, standard_plan, make_sale) -> None:
        [first] = _calculate(db, organization, make_sale(1000))
        [second] = _calculate(db, organization, make_sale(2000))
        [paid] = _calculate(db, organization, make_sale(3000))
        _approved(db, organization, paid)
        CommissionService.mark_paid(db, organization.id, paid.id)

        result = CommissionService.bulk_approve(
            db, organization.id, [first.id, second.id, paid.id, "missing", first.id], approved_by="admin-1"
        )

        assert result["updated"] == [first.id, second.id]
        assert result["skipped"] == [
            {"id": paid.id, "reason": "already paid"},
            {"id": "missing", "reason": "not found"},
        ]

    def test_bulk_pay_requires_approval(self, db, organization, standard_plan, make_sale) -> None:
        [pending] = _calculate(db, organization, make_sale(1000))
        [approved] = _calculate(db, organization, make_sale(2000))
        _approved(db, organization, approved)

        result = CommissionService.bulk_mark_paid(db, organization.id, [pending.id, approved.id])

        assert result["updated"] == [approved.id]
        assert result["skipped"] == [{"id": pending.id, "reason": "not approved"}]


class TestQueries:
    def test_stats(self, db, organization, standard_plan, make_sale) -> None:
        [small] = _calculate(db, organization, make_sale(10000))
        _calculate(db, organization, make_sale(20000))
        _approved(db, organization, small)

        stats = CommissionService.get_stats(db, organization.id)

        assert (stats["pending_count"], stats["pending_amount"]) == (1, Decimal("1000.00"))
        assert (stats["approved_count"], stats["approved_amount"]) == (1, Decimal("500.00"))
        assert (stats["paid_count"], stats["total_count"]) == (0, 2)
        assert stats["total_amount"] == Decimal("1500.00")

    def test_stats_for_one_salesperson(self, db, organization, standard_plan, make_sale) -> None:
        _calculate(db, organization, make_sale(10000, user_id="rep-1"))
        _calculate(db, organization, make_sale(10000, user_id="rep-2"))

        stats = CommissionService.get_stats(db, organization.id, user_id="rep-2")

        assert stats["total_count"] == 1

    def test_list_filters(self, db, organization, standard_plan, make_sale) -> None:
        [mine] = _calculate(db, organization, make_sale(10000, user_id="rep-1"))
        [theirs] = _calculate(db, organization, make_sale(10000, user_id="rep-2"))
        _approved(db, organization, theirs)

        assert [row.id for row in CommissionService.list_calculations(db, organization.id, user_id="rep-1")] == [mine.id]
        approved = CommissionService.list_calculations(db, organization.id, status=CommissionStatus.APPROVED)
        assert [row.id for row in approved] == [theirs.id]

    def test_other_salesperson_cannot_fetch(self, db, organization, standard_plan, make_sale) -> None:
        [calculation] = _calculate(db, organization, make_sale(10000, user_id="rep-1"))

        with pytest.raises(NotFoundError):
            CommissionService.get_calculation(db, organization.id, calculation.id, user_id="rep-2")


class TestSimulate:
    def test_simulation_persists_nothing(self, db, organization, standard_plan) -> None:
        result = CommissionService.simulate(
            db, organization.id, standard_plan.id,
            CommissionSimulation(amount=Decimal("10000"), customer_tier=CustomerTier.VIP)
        )

        assert result.final_amount == Decimal("750.00")
        assert db.query(CommissionCalculation).count() == 0

    def test_simulation_reads_client_attributes(self, db, organization, standard_plan, vip) -> None:
        result = CommissionService.simulate(
            db, organization.id, standard_plan.id, CommissionSimulation(amount=Decimal("2000"), client_id=vip.id)
        )

        assert result.final_amount == Decimal("150.00")
        assert result.trace.input.customer_tier == CustomerTier.VIP

    def test_inactive_plan_can_be_simulated(self, db, organization, make_plan, make_rule) -> None:
        draft = make_plan(name="Draft", is_active=False)
        make_rule(draft, percentage="3")

        result = CommissionService.simulate(db, organization.id, draft.id, CommissionSimulation(amount=Decimal("1000")))

        assert result.final_amount == Decimal("30.00")

    def test_negative_sale_is_rejected(self, db, organization, standard_plan) -> None:
        with pytest.raises(ValidationError) as exc_info:
            CommissionService.simulate(
                db, organization.id, standard_plan.id, CommissionSimulation(amount=Decimal("-5"))
            )

        assert exc_info.value.details["errors"]

    def test_unknown_client(self, db, organization, standard_plan) -> None:
        with pytest.raises(NotFoundError):
            CommissionService.simulate(
                db, organization.id, standard_plan.id, CommissionSimulation(amount=Decimal("100"), client_id="nope")
            )
