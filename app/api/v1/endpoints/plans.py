from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List

from app.core.database import get_db
from app.core.tenant import RequestContext, get_admin_context, get_request_context
from app.engine.models import CalculationResult
from app.schemas.commission import CommissionSimulation, TaskDispatch
from app.schemas.plan import (
    CommissionPlanCreate,
    CommissionPlanResponse,
    CommissionPlanUpdate,
    CommissionRuleCreate,
    CommissionRuleResponse,
    CommissionRuleUpdate,
    PrecedenceEntry,
    RuleWriteResult,
)
from app.services.commission_service import CommissionService
from app.services.plan_service import PlanService
from app.tasks.commission_tasks import recalculate_plan_task

router = APIRouter()


@router.get("/", response_model=List[CommissionPlanResponse])
async def list_plans(
    include_inactive: bool = True,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db)
):
    """List commission plans"""
    return PlanService.list_plans(db, context.organization_id, include_inactive=include_inactive)


@router.post("/", response_model=CommissionPlanResponse, status_code=status.HTTP_201_CREATED)
async def create_plan(
    plan_data: CommissionPlanCreate,
    context: RequestContext = Depends(get_admin_context),
    db: Session = Depends(get_db)
):
    """Create a commission plan (admin only)"""
    return PlanService.create_plan(db, context.organization_id, plan_data, user_id=context.user_id)


@router.get("/rules/{rule_id}", response_model=CommissionRuleResponse)
async def get_rule(
    rule_id: str,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db)
):
    """Get a commission rule"""
    return PlanService.get_rule(db, context.organization_id, rule_id)


@router.patch("/rules/{rule_id}", response_model=RuleWriteResult)
async def update_rule(
    rule_id: str,
    rule_data: CommissionRuleUpdate,
    context: RequestContext = Depends(get_admin_context),
    db: Session = Depends(get_db)
):
    """Update a commission rule (admin only)"""
    rule, warnings = PlanService.update_rule(db, context.organization_id, rule_id, rule_data, user_id=context.user_id)
    return {"rule": rule, "warnings": warnings}


@router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(
    rule_id: str,
    context: RequestContext = Depends(get_admin_context),
    db: Session = Depends(get_db)
):
    """Delete a commission rule (admin only)"""
    PlanService.delete_rule(db, context.organization_id, rule_id, user_id=context.user_id)


@router.get("/{plan_id}", response_model=CommissionPlanResponse)
async def get_plan(
    plan_id: str,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db)
):
    """Get a commission plan"""
    return PlanService.get_plan(db, context.organization_id, plan_id)


@router.patch("/{plan_id}", response_model=CommissionPlanResponse)
async def update_plan(
    plan_id: str,
    plan_data: CommissionPlanUpdate,
    context: RequestContext = Depends(get_admin_context),
    db: Session = Depends(get_db)
):
    """Update a commission plan (admin only)"""
    return PlanService.update_plan(db, context.organization_id, plan_id, plan_data, user_id=context.user_id)


@router.delete("/{plan_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_plan(
    plan_id: str,
    context: RequestContext = Depends(get_admin_context),
    db: Session = Depends(get_db)
):
    """Delete a plan that has never produced a commission (admin only)"""
    PlanService.delete_plan(db, context.organization_id, plan_id, user_id=context.user_id)


@router.get("/{plan_id}/rules", response_model=List[CommissionRuleResponse])
async def list_rules(
    plan_id: str,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db)
):
    """List the rules of a plan"""
    return PlanService.list_rules(db, context.organization_id, plan_id)


@router.post("/{plan_id}/rules", response_model=RuleWriteResult, status_code=status.HTTP_201_CREATED)
async def create_rule(
    plan_id: str,
    rule_data: CommissionRuleCreate,
    context: RequestContext = Depends(get_admin_context),
    db: Session = Depends(get_db)
):
    """Add a rule to a plan (admin only)

    Rules tying with an existing rule on scope and priority are accepted
    and reported in ``warnings``.
    """
    rule, warnings = PlanService.create_rule(db, context.organization_id, plan_id, rule_data, user_id=context.user_id)
    return {"rule": rule, "warnings": warnings}


@router.get("/{plan_id}/precedence", response_model=List[PrecedenceEntry])
async def get_rule_precedence(
    plan_id: str,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db)
):
    """Rules in the order the engine considers them"""
    return PlanService.precedence(db, context.organization_id, plan_id)


@router.post("/{plan_id}/simulate", response_model=CalculationResult)
async def simulate_commission(
    plan_id: str,
    simulation: CommissionSimulation,
    context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db)
):
    """Run the engine against a plan without saving anything"""
    return CommissionService.simulate(db, context.organization_id, plan_id, simulation)


@router.post("/{plan_id}/recalculate", response_model=TaskDispatch, status_code=status.HTTP_202_ACCEPTED)
async def recalculate_plan(
    plan_id: str,
    context: RequestContext = Depends(get_admin_context),
    db: Session = Depends(get_db)
):
    """Queue recalculation of every transaction the plan covers (admin only)"""
    PlanService.get_plan(db, context.organization_id, plan_id)
    result = recalculate_plan_task.delay(context.organization_id, plan_id, context.user_id)
    return {"task_id": result.id, "status": "queued"}
