import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

import pandas as pd
from sqlalchemy.orm import Session, joinedload

from app.engine.calculator import money
from app.models.commission import CommissionCalculation, CommissionStatus
from app.models.sales_transaction import SalesTransaction

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = [
    "Commission ID",
    "Salesperson",
    "Client",
    "Project",
    "Sale Date",
    "Invoice",
    "Sale Amount",
    "Commission Amount",
    "Adjustments",
    "Net Commission",
    "Plan",
    "Status",
    "Approved Date",
    "Paid Date",
]


def _date_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    return value.isoformat()


class ReportService:
    @staticmethod
    def commission_rows(
        db: Session,
        organization_id: str,
        status: Optional[CommissionStatus] = CommissionStatus.APPROVED,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        user_id: Optional[str] = None
    ) -> List[Dict]:
        """Flattened commission rows for payout reporting, oldest sale first"""
        query = db.query(CommissionCalculation).join(
            SalesTransaction, CommissionCalculation.sales_transaction_id == SalesTransaction.id
        ).options(
            joinedload(CommissionCalculation.sales_transaction),
            joinedload(CommissionCalculation.commission_plan),
            joinedload(CommissionCalculation.adjustments)
        ).filter(CommissionCalculation.organization_id == organization_id)

        if status:
            query = query.filter(CommissionCalculation.status == status)
        if start_date:
            query = query.filter(SalesTransaction.transaction_date >= start_date)
        if end_date:
            query = query.filter(SalesTransaction.transaction_date <= end_date)
        if user_id:
            query = query.filter(CommissionCalculation.user_id == user_id)

        calculations = query.order_by(SalesTransaction.transaction_date, CommissionCalculation.id).all()

        rows = []
        for calculation in calculations:
            transaction = calculation.sales_transaction
            project = transaction.project
            client = transaction.client or (project.client if project is not None else None)
            amount = money(Decimal(str(calculation.amount)))
            adjustments = sum((Decimal(str(item.amount)) for item in calculation.adjustments), Decimal("0.00"))
            rows.append({
                "Commission ID": calculation.id,
                "Salesperson": calculation.user_id,
                "Client": client.name if client is not None else "",
                "Project": project.name if project is not None else "",
                "Sale Date": _date_text(transaction.transaction_date),
                "Invoice": transaction.invoice_number or "",
                "Sale Amount": f"{Decimal(str(transaction.amount)):.2f}",
                "Commission Amount": f"{amount:.2f}",
                "Adjustments": f"{adjustments:.2f}",
                "Net Commission": f"{amount + adjustments:.2f}",
                "Plan": calculation.commission_plan.name,
                "Status": calculation.status.value.upper(),
                "Approved Date": _date_text(calculation.approved_at),
                "Paid Date": _date_text(calculation.paid_at),
            })
        return rows

    @staticmethod
    def export_commissions_csv(
        db: Session,
        organization_id: str,
        status: Optional[CommissionStatus] = CommissionStatus.APPROVED,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        user_id: Optional[str] = None
    ) -> str:
        """CSV of commissions for payout, approved ones by default"""
        rows = ReportService.commission_rows(db, organization_id, status, start_date, end_date, user_id)
        frame = pd.DataFrame(rows, columns=EXPORT_COLUMNS)
        logger.info(f"Exported {len(frame)} commission row(s) for organization {organization_id}")
        return frame.to_csv(index=False)

    @staticmethod
    def totals_by_salesperson(
        db: Session,
        organization_id: str,
        status: Optional[CommissionStatus] = CommissionStatus.APPROVED,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None
    ) -> List[Dict]:
        """Payout totals per salesperson, largest first"""
        rows = ReportService.commission_rows(db, organization_id, status, start_date, end_date)
        if not rows:
            return []

        frame = pd.DataFrame(rows, columns=EXPORT_COLUMNS)
        frame["Net Commission"] = frame["Net Commission"].map(Decimal)
        grouped = frame.groupby("Salesperson").agg(
            count=("Commission ID", "count"),
            net_amount=("Net Commission", lambda values: sum(values, Decimal("0.00")))
        ).reset_index()
        grouped = grouped.sort_values(["net_amount", "Salesperson"], ascending=[False, True])

        return [
            {"user_id": row["Salesperson"], "count": int(row["count"]), "net_amount": row["net_amount"]}
            for row in grouped.to_dict("records")
        ]
