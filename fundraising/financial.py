import logging
from datetime import datetime
from typing import Dict, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from .models import Donor, Payment, Pledge, PledgePayment

logger = logging.getLogger(__name__)

# Balances within a penny count as settled
SETTLED_TOLERANCE = 0.01


class FinancialCalculator:
    """Campaign and donor totals computed from payments, pledges and installments."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def _sum(self, model, status: str, date_column, date_from=None, date_to=None) -> Tuple[float, int]:
        query = self.db.query(func.coalesce(func.sum(model.amount), 0), func.count(model.id)).filter(
            model.status == status
        )
        if date_from is not None and date_to is not None:
            query = query.filter(date_column.between(date_from, date_to))
        total, count = query.one()
        return float(total or 0), int(count or 0)

    def get_totals(self, date_from: Optional[datetime] = None, date_to: Optional[datetime] = None) -> Dict:
        """
        Campaign totals. With a date range, each figure counts only activity
        inside the range.
        """
        instant_total, instant_count = self._sum(Payment, 'approved', Payment.received_at, date_from, date_to)
        pledge_paid_total, pledge_paid_count = self._sum(
            PledgePayment, 'confirmed', PledgePayment.created_at, date_from, date_to)
        total_pledges, pledge_count = self._sum(Pledge, 'approved', Pledge.created_at, date_from, date_to)

        total_paid = instant_total + pledge_paid_total
        outstanding = max(0.0, total_pledges - pledge_paid_total)

        return {
            'instant_payments': round(instant_total, 2),
            'instant_count': instant_count,
            'pledge_payments': round(pledge_paid_total, 2),
            'pledge_payment_count': pledge_paid_count,
            'total_pledges': round(total_pledges, 2),
            'pledge_count': pledge_count,
            'total_paid': round(total_paid, 2),
            'total_payment_count': instant_count + pledge_paid_count,
            'outstanding_pledged': round(outstanding, 2),
            'grand_total': round(total_paid + outstanding, 2),
            'date_filtered': date_from is not None and date_to is not None,
            'date_from': date_from,
            'date_to': date_to,
            'calculated_at': datetime.utcnow()
        }

    def get_donor_summary(self, donor_id: int) -> Dict:
        """Stored totals for a donor plus counts of their approved activity."""
        donor = self.db.get(Donor, donor_id)
        if donor is None:
            return {'total_paid': 0.0, 'total_pledged': 0.0, 'outstanding_balance': 0.0,
                    'payment_count': 0, 'pledge_count': 0, 'payment_status': None}

        payment_count = self.db.query(func.count(Payment.id)).filter(
            Payment.donor_id == donor_id, Payment.status == 'approved'
        ).scalar() or 0
        installment_count = self.db.query(func.count(PledgePayment.id)).filter(
            PledgePayment.donor_id == donor_id, PledgePayment.status == 'confirmed'
        ).scalar() or 0
        pledge_count = self.db.query(func.count(Pledge.id)).filter(
            Pledge.donor_id == donor_id, Pledge.status == 'approved'
        ).scalar() or 0

        return {
            'total_paid': float(donor.total_paid or 0),
            'total_pledged': float(donor.total_pledged or 0),
            'outstanding_balance': float(donor.balance or 0),
            'payment_count': payment_count + installment_count,
            'pledge_count': pledge_count,
            'payment_status': donor.payment_status
        }

    def _donor_sums(self, donor_id: int) -> Tuple[float, float]:
        approved_payments = self.db.query(func.coalesce(func.sum(Payment.amount), 0)).filter(
            Payment.donor_id == donor_id, Payment.status == 'approved'
        ).scalar()
        confirmed_installments = self.db.query(func.coalesce(func.sum(PledgePayment.amount), 0)).filter(
            PledgePayment.donor_id == donor_id, PledgePayment.status == 'confirmed'
        ).scalar()
        return float(approved_payments or 0), float(confirmed_installments or 0)

    def recalculate_donor_totals_after_approve(self, donor_id: int) -> Optional[Donor]:
        """
        Refresh total_paid, balance and payment_status after a payment is approved.

        Changes are left in the session for the caller to commit.
        """
        donor = self.db.get(Donor, donor_id)
        if donor is None:
            logger.warning(f"Cannot recalculate totals: donor {donor_id} not found")
            return None

        approved_payments, confirmed_installments = self._donor_sums(donor_id)
        balance = float(donor.total_pledged or 0) - confirmed_installments

        donor.total_paid = round(approved_payments + confirmed_installments, 2)
        donor.balance = round(balance, 2)
        donor.payment_status = 'completed' if balance <= SETTLED_TOLERANCE else 'paying'
        self.db.flush()
        return donor

    def recalculate_donor_totals_after_undo(self, donor_id: int) -> Optional[Donor]:
        """Same refresh after an installment is un-confirmed; outstanding donors go back to pending."""
        donor = self.db.get(Donor, donor_id)
        if donor is None:
            logger.warning(f"Cannot recalculate totals: donor {donor_id} not found")
            return None

        approved_payments, confirmed_installments = self._donor_sums(donor_id)
        total_pledged = float(donor.total_pledged or 0)
        balance = total_pledged - confirmed_installments

        donor.total_paid = round(approved_payments + confirmed_installments, 2)
        donor.balance = round(balance, 2)
        if total_pledged > 0 and balance > SETTLED_TOLERANCE:
            donor.payment_status = 'pending'
        else:
            donor.payment_status = 'completed'
        self.db.flush()
        return donor

    def recalculate_donor_totals(self, donor_id: int) -> Optional[Donor]:
        return self.recalculate_donor_totals_after_approve(donor_id)
