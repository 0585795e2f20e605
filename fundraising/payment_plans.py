import calendar
import logging
from datetime import date, datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from .audit import log_audit
from .models import Donor, DonorPaymentPlan, PaymentPlanSchedule

logger = logging.getLogger(__name__)


def add_months(start: date, months: int, day: Optional[int] = None) -> date:
    """Same day-of-month `months` later, clamped to the month's last day."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day or start.day, last_day))


class PaymentPlanService:
    """Creates installment plans and keeps their schedule in step with payments."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def create_plan(
        self,
        donor_id: int,
        total_amount: float,
        total_payments: int,
        start_date: date,
        pledge_id: Optional[int] = None,
        payment_method: Optional[str] = None,
        payment_day: Optional[int] = None,
        created_by: Optional[int] = None
    ) -> DonorPaymentPlan:
        """
        Create an active plan and its monthly schedule.

        Installments are whole pence; the last one absorbs the remainder so
        the schedule sums to total_amount.
        """
        if total_amount <= 0:
            raise ValueError("Plan amount must be greater than zero")
        if total_payments < 1:
            raise ValueError("Plan needs at least one payment")

        donor = self.db.get(Donor, donor_id)
        if donor is None:
            raise LookupError(f"Donor {donor_id} not found")

        total_pence = int(round(total_amount * 100))
        if total_pence < total_payments:
            raise ValueError("Plan amount is too small for the number of payments")
        monthly_amount = (total_pence // total_payments) / 100

        try:
            # one active plan per donor
            for existing in self.db.query(DonorPaymentPlan).filter_by(donor_id=donor_id, status='active').all():
                existing.status = 'cancelled'

            plan = DonorPaymentPlan(
                donor_id=donor_id,
                pledge_id=pledge_id,
                total_amount=round(total_amount, 2),
                monthly_amount=monthly_amount,
                total_payments=total_payments,
                payments_made=0,
                amount_paid=0,
                start_date=start_date,
                next_payment_due=start_date,
                payment_day=payment_day or start_date.day,
                payment_method=payment_method,
                status='active'
            )
            self.db.add(plan)
            self.db.flush()

            for i in range(total_payments):
                if i < total_payments - 1:
                    amount = monthly_amount
                else:
                    amount = (total_pence - (total_pence // total_payments) * (total_payments - 1)) / 100
                self.db.add(PaymentPlanSchedule(
                    plan_id=plan.id,
                    donor_id=donor_id,
                    installment_number=i + 1,
                    due_date=add_months(start_date, i, plan.payment_day),
                    amount=amount,
                    status='pending'
                ))

            donor.has_active_plan = True
            donor.active_payment_plan_id = plan.id

            log_audit(self.db, 'payment_plan', plan.id, 'create', user_id=created_by, after={
                'donor_id': donor_id,
                'total_amount': plan.total_amount,
                'monthly_amount': monthly_amount,
                'total_payments': total_payments,
                'start_date': start_date.isoformat()
            })
            self.db.commit()
            logger.info(f"Created payment plan {plan.id} for donor {donor_id}: {total_payments} x {monthly_amount}")
            return plan

        except Exception as e:
            self.db.rollback()
            logger.error(f"Error creating payment plan for donor {donor_id}: {str(e)}")
            raise

    def get_active_plan(self, donor_id: int) -> Optional[DonorPaymentPlan]:
        return self.db.query(DonorPaymentPlan).filter_by(
            donor_id=donor_id, status='active'
        ).order_by(DonorPaymentPlan.id.desc()).first()

    def get_schedule(self, plan: DonorPaymentPlan) -> List[Dict]:
        """
        Installments in order. The first payments_made installments count as
        paid even when the stored row lags behind.
        """
        rows = self.db.query(PaymentPlanSchedule).filter_by(plan_id=plan.id).order_by(
            PaymentPlanSchedule.installment_number
        ).all()

        if not rows:
            # plans imported without schedule rows
            return [
                {
                    'installment_number': i + 1,
                    'due_date': add_months(plan.start_date, i, plan.payment_day),
                    'amount': plan.monthly_amount,
                    'status': 'paid' if i < (plan.payments_made or 0) else 'pending'
                }
                for i in range(plan.total_payments)
            ]

        return [
            {
                'installment_number': row.installment_number,
                'due_date': row.due_date,
                'amount': row.amount,
                'status': 'paid' if i < (plan.payments_made or 0) else row.status
            }
            for i, row in enumerate(rows)
        ]

    def record_installment(self, plan: DonorPaymentPlan, amount: float) -> DonorPaymentPlan:
        """Advance plan progress after an installment is confirmed; caller commits."""
        plan.payments_made = (plan.payments_made or 0) + 1
        plan.amount_paid = round(float(plan.amount_paid or 0) + amount, 2)

        row = self.db.query(PaymentPlanSchedule).filter_by(
            plan_id=plan.id, installment_number=plan.payments_made
        ).first()
        if row is not None:
            row.status = 'paid'
            row.paid_at = datetime.utcnow()

        if plan.payments_made >= plan.total_payments or plan.amount_paid >= float(plan.total_amount) - 0.01:
            plan.status = 'completed'
            plan.next_payment_due = None
            donor = self.db.get(Donor, plan.donor_id)
            if donor is not None:
                donor.has_active_plan = False
        else:
            plan.next_payment_due = add_months(plan.start_date, plan.payments_made, plan.payment_day)

        self.db.flush()
        return plan

    def revert_installment(self, plan: DonorPaymentPlan, amount: float) -> DonorPaymentPlan:
        """Undo record_installment after a confirmed installment is reversed; caller commits."""
        if not plan.payments_made:
            return plan

        row = self.db.query(PaymentPlanSchedule).filter_by(
            plan_id=plan.id, installment_number=plan.payments_made
        ).first()
        if row is not None:
            row.status = 'pending'
            row.paid_at = None

        plan.payments_made -= 1
        plan.amount_paid = max(0.0, round(float(plan.amount_paid or 0) - amount, 2))
        plan.next_payment_due = add_months(plan.start_date, plan.payments_made, plan.payment_day)
        if plan.status == 'completed':
            plan.status = 'active'
            donor = self.db.get(Donor, plan.donor_id)
            if donor is not None:
                donor.has_active_plan = True

        self.db.flush()
        return plan

    def mark_overdue(self, today: Optional[date] = None) -> int:
        """Flag pending installments whose due date has passed."""
        today = today or date.today()
        rows = self.db.query(PaymentPlanSchedule).filter(
            PaymentPlanSchedule.status == 'pending',
            PaymentPlanSchedule.due_date < today
        ).all()
        for row in rows:
            row.status = 'overdue'
        self.db.commit()
        return len(rows)
