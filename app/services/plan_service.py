import logging
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.exceptions import InvalidRuleConfiguration, NotFoundError, WorkflowError
from app.engine.calculator import describe_rule
from app.engine.precedence import assign_priority_from_scope, detect_rule_conflicts, sort_by_precedence
from app.engine.validation import validate_rule
from app.models.client import Client, Project
from app.models.commission import CommissionCalculation
from app.models.commission_plan import CommissionPlan
from app.models.commission_rule import CommissionRule
from app.schemas.plan import (
    CommissionPlanCreate,
    CommissionPlanUpdate,
    CommissionRuleCreate,
    CommissionRuleUpdate,
)
from app.services import rule_source
from app.services.audit_service import AuditService
from app.services.commission_service import commit_or_conflict

logger = logging.getLogger(__name__)

_RULE_FIELDS = (
    "rule_type", "scope", "percentage", "flat_amount",
    "min_sale_amount", "max_sale_amount", "min_amount", "max_amount",
    "customer_tier", "product_category_id", "territory_id", "client_id", "project_id",
    "stacking", "description",
)


def _json_value(value):
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if hasattr(value, "value"):
        return value.value
    return str(value)


def _rule_values(rule: CommissionRule) -> Dict:
    values = {field: getattr(rule, field) for field in _RULE_FIELDS}
    values["priority"] = rule.priority
    values["tiers"] = rule.tiers or []
    return values


class PlanService:
    # Plans

    @staticmethod
    def list_plans(db: Session, organization_id: str, include_inactive: bool = True) -> List[CommissionPlan]:
        query = db.query(CommissionPlan).filter(CommissionPlan.organization_id == organization_id)
        if not include_inactive:
            query = query.filter(CommissionPlan.is_active == True)
        return query.order_by(CommissionPlan.name, CommissionPlan.id).all()

    @staticmethod
    def get_plan(db: Session, organization_id: str, plan_id: str) -> CommissionPlan:
        plan = db.query(CommissionPlan).filter(
            CommissionPlan.organization_id == organization_id,
            CommissionPlan.id == plan_id
        ).first()
        if not plan:
            raise NotFoundError("Commission plan not found", details={"id": plan_id})
        return plan

    @staticmethod
    def create_plan(
        db: Session,
        organization_id: str,
        data: CommissionPlanCreate,
        user_id: Optional[str] = None
    ) -> CommissionPlan:
        if data.project_id:
            PlanService._ensure_project(db, organization_id, data.project_id)

        plan = CommissionPlan(organization_id=organization_id, **data.model_dump())
        db.add(plan)
        db.flush()

        AuditService.log_action(
            db,
            organization_id=organization_id,
            action="plan.created",
            entity_type="commission_plan",
            entity_id=plan.id,
            user_id=user_id,
            description=f"Created commission plan {plan.name}",
            changes={key: _json_value(value) for key, value in data.model_dump().items()}
        )
        commit_or_conflict(db)
        db.refresh(plan)
        logger.info(f"Commission plan {plan.id} created")
        return plan

    @staticmethod
    def update_plan(
        db: Session,
        organization_id: str,
        plan_id: str,
        data: CommissionPlanUpdate,
        user_id: Optional[str] = None
    ) -> CommissionPlan:
        plan = PlanService.get_plan(db, organization_id, plan_id)

        changes = {}
        for field, value in data.model_dump(exclude_unset=True).items():
            if value is None and field != "description":
                continue
            if getattr(plan, field) != value:
                changes[field] = {"from": _json_value(getattr(plan, field)), "to": _json_value(value)}
                setattr(plan, field, value)

        if changes:
            AuditService.log_action(
                db,
                organization_id=organization_id,
                action="plan.updated",
                entity_type="commission_plan",
                entity_id=plan.id,
                user_id=user_id,
                changes=changes
            )
            commit_or_conflict(db)
            db.refresh(plan)
        return plan

    @staticmethod
    def delete_plan(db: Session, organization_id: str, plan_id: str, user_id: Optional[str] = None) -> None:
        plan = PlanService.get_plan(db, organization_id, plan_id)

        has_calculations = db.query(CommissionCalculation.id).filter(
            CommissionCalculation.commission_plan_id == plan.id
        ).first()
        if has_calculations:
            raise WorkflowError(
                "Plan has commission calculations, deactivate it instead",
                details={"id": plan.id}
            )

        AuditService.log_action(
            db,
            organization_id=organization_id,
            action="plan.deleted",
            entity_type="commission_plan",
            entity_id=plan.id,
            user_id=user_id,
            description=f"Deleted commission plan {plan.name}"
        )
        db.delete(plan)
        commit_or_conflict(db)

    # Rules

    @staticmethod
    def get_rule(db: Session, organization_id: str, rule_id: str) -> CommissionRule:
        rule = db.query(CommissionRule).filter(
            CommissionRule.organization_id == organization_id,
            CommissionRule.id == rule_id
        ).first()
        if not rule:
            raise NotFoundError("Commission rule not found", details={"id": rule_id})
        return rule

    @staticmethod
    def list_rules(db: Session, organization_id: str, plan_id: str) -> List[CommissionRule]:
        plan = PlanService.get_plan(db, organization_id, plan_id)
        return list(plan.rules)

    @staticmethod
    def create_rule(
        db: Session,
        organization_id: str,
        plan_id: str,
        data: CommissionRuleCreate,
        user_id: Optional[str] = None
    ) -> Tuple[CommissionRule, List[Dict]]:
        """Validate and store a rule.

        Returns the rule and conflict warnings: existing rules that would
        tie with it on priority and scope.

        Raises:
            InvalidRuleConfiguration: the rule cannot be evaluated as given.
        """
        plan = PlanService.get_plan(db, organization_id, plan_id)
        PlanService._validate(db, organization_id, data)

        warnings = detect_rule_conflicts(data, plan.rules)

        rule = CommissionRule(
            organization_id=organization_id,
            commission_plan_id=plan.id,
            priority=data.priority or assign_priority_from_scope(data.scope),
            tiers=rule_source.serialize_tiers(data.tiers),
            created_by=user_id,
            **{field: getattr(data, field) for field in _RULE_FIELDS}
        )
        db.add(rule)
        db.flush()

        AuditService.log_action(
            db,
            organization_id=organization_id,
            action="rule.created",
            entity_type="commission_rule",
            entity_id=rule.id,
            user_id=user_id,
            description=f"Added rule to plan {plan.name}: {describe_rule(data)}",
            changes={"plan_id": plan.id, "scope": data.scope.value, "rule_type": data.rule_type.value}
        )
        commit_or_conflict(db)
        db.refresh(rule)

        if warnings:
            logger.warning(f"Rule {rule.id} ties with {len(warnings)} existing rule(s) in plan {plan.id}")
        return rule, warnings

    @staticmethod
    def update_rule(
        db: Session,
        organization_id: str,
        rule_id: str,
        data: CommissionRuleUpdate,
        user_id: Optional[str] = None
    ) -> Tuple[CommissionRule, List[Dict]]:
        rule = PlanService.get_rule(db, organization_id, rule_id)
        updates = data.model_dump(exclude_unset=True)
        for field in ("rule_type", "scope", "stacking"):
            if field in updates and updates[field] is None:
                del updates[field]

        # A priority that was derived from the old scope follows the new one
        if "scope" in updates and "priority" not in updates:
            if rule.priority == assign_priority_from_scope(rule.scope):
                updates["priority"] = None

        merged = CommissionRuleCreate.model_validate({**_rule_values(rule), **updates})
        PlanService._validate(db, organization_id, merged)

        warnings = detect_rule_conflicts(merged, rule.plan.rules, exclude_id=rule.id)

        before = _rule_values(rule)
        for field in _RULE_FIELDS:
            setattr(rule, field, getattr(merged, field))
        rule.tiers = rule_source.serialize_tiers(merged.tiers)
        rule.priority = merged.priority or assign_priority_from_scope(merged.scope)
        after = _rule_values(rule)

        changes = {
            field: {"from": _json_value(before[field]), "to": _json_value(after[field])}
            for field in after
            if field != "tiers" and before[field] != after[field]
        }
        if before["tiers"] != after["tiers"]:
            changes["tiers"] = {"from": before["tiers"], "to": after["tiers"]}

        AuditService.log_action(
            db,
            organization_id=organization_id,
            action="rule.updated",
            entity_type="commission_rule",
            entity_id=rule.id,
            user_id=user_id,
            changes=changes
        )
        commit_or_conflict(db)
        db.refresh(rule)
        return rule, warnings

    @staticmethod
    def delete_rule(db: Session, organization_id: str, rule_id: str, user_id: Optional[str] = None) -> None:
        rule = PlanService.get_rule(db, organization_id, rule_id)

        AuditService.log_action(
            db,
            organization_id=organization_id,
            action="rule.deleted",
            entity_type="commission_rule",
            entity_id=rule.id,
            user_id=user_id,
            changes={"plan_id": rule.commission_plan_id}
        )
        db.delete(rule)
        commit_or_conflict(db)

    @staticmethod
    def precedence(db: Session, organization_id: str, plan_id: str) -> List[Dict]:
        """Rules of a plan in the order the engine considers them"""
        plan = PlanService.get_plan(db, organization_id, plan_id)
        ordered = sort_by_precedence(rule_source.plan_rules(plan))
        return [
            {
                "position": position,
                "rule_id": rule.id,
                "rule_type": rule.rule_type,
                "scope": rule.scope,
                "priority": rule.effective_priority,
                "stacking": rule.stacking,
                "label": describe_rule(rule),
                "description": rule.description,
                "created_at": rule.created_at,
            }
            for position, rule in enumerate(ordered, start=1)
        ]

    @staticmethod
    def _validate(db: Session, organization_id: str, data) -> None:
        errors = validate_rule(data, strict=True)

        if data.client_id and not db.query(Client.id).filter(
            Client.organization_id == organization_id,
            Client.id == data.client_id
        ).first():
            errors.append({"field": "client_id", "message": "Client not found"})

        if data.project_id and not db.query(Project.id).filter(
            Project.organization_id == organization_id,
            Project.id == data.project_id
        ).first():
            errors.append({"field": "project_id", "message": "Project not found"})

        if errors:
            raise InvalidRuleConfiguration(getattr(data, "id", None), errors, message="Invalid commission rule")

    @staticmethod
    def _ensure_project(db: Session, organization_id: str, project_id: str) -> None:
        exists = db.query(Project.id).filter(
            Project.organization_id == organization_id,
            Project.id == project_id
        ).first()
        if not exists:
            raise NotFoundError("Project not found", details={"id": project_id})
