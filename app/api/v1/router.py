from fastapi import APIRouter

from app.api.v1.endpoints import adjustments, commissions, plans, reports, transactions

api_router = APIRouter()

api_router.include_router(transactions.router, prefix="/transactions", tags=["Sales Transactions"])
api_router.include_router(plans.router, prefix="/plans", tags=["Commission Plans"])
api_router.include_router(commissions.router, prefix="/commissions", tags=["Commissions"])
api_router.include_router(adjustments.router, prefix="/adjustments", tags=["Adjustments"])
api_router.include_router(reports.router, prefix="/reports", tags=["Reports"])
