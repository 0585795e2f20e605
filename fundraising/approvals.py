import logging
import re
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.orm import Session

from .audit import log_audit
from .financial import FinancialCalculator
from .floor_grid import FloorGridAllocator
from .models import Counter, Donor, DonorPaymentPlan, Payment, Pledge, PledgePayment
from .payment_plans import PaymentPlanService

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ('cash', 'bank_transfer', 'card', 'other')


class ApprovalService:
    """
    Admin approval of pledges, instant payments and pledge installments.

    Every transition is checked against the current status, written to the
    audit log and committed as one transaction. Approved pledges and payments
    claim cells on the floor plan and give them back when undone.
    """

    def __init__(
        self,
        db_session: Session,
        calculator: Optional[FinancialCalculator] = None,
        plans: Optional[PaymentPlanService] = None,
        messaging=None,
        grid: Optional[FloorGridAllocator] = None
    ):
        self.db = db_session
        self.calculator = calculator or FinancialCalculator(db_session)
        self.plans = plans or PaymentPlanService(db_session)
        self.messaging = messaging
        self.grid = grid or FloorGridAllocator(db_session)

    def _bump_counters(self, paid_delta: float = 0.0, pledged_delta: float = 0.0) -> Counter:
        counter = self.db.get(Counter, 1)
        if counter is None:
            counter = Counter(id=1, paid_total=0, pledged_total=0, grand_total=0, version=0)
            self.db.add(counter)
        counter.paid_total = round(float(counter.paid_total or 0) + paid_delta, 2)
        counter.pledged_total = round(float(counter.pledged_total or 0) + pledged_delta, 2)
        counter.grand_total = round(float(counter.grand_total or 0) + paid_delta + pledged_delta, 2)
        counter.version = (counter.version or 0) + 1
        counter.recalc_needed = False
        return counter

    def _notify(self, template_key: str, donor_id: Optional[int], variables: Dict, source_type: str) -> None:
        if self.messaging is None or not donor_id:
            return
        try:
            result = self.messaging.send_from_template(template_key, donor_id, variables, source_type=source_type)
            if not result.get('success'):
                logger.warning(f"Could not send {template_key} to donor {donor_id}: {result.get('error')}")
        except Exception as e:
            logger.error(f"Error sending {template_key} to donor {donor_id}: {str(e)}")

    def _pending_pledge(self, pledge_id: int) -> Pledge:
        pledge = self.db.get(Pledge, pledge_id)
        if pledge is None or pledge.status != 'pending':
            raise ValueError("Invalid pledge state")
        return pledge

    def approve_pledge(self, pledge_id: int, admin_id: int, notify: bool = False) -> Pledge:
        try:
            pledge = self._pending_pledge(pledge_id)
            amount = float(pledge.amount or 0)

            pledge.status = 'approved'
            pledge.approved_by = admin_id
            pledge.approved_at = datetime.utcnow()

            donor = None
            if pledge.type == 'paid':
                self._bump_counters(paid_delta=amount)
            else:
                self._bump_counters(pledged_delta=amount)
                donor = self.db.get(Donor, pledge.donor_id) if pledge.donor_id else None
                if donor is not None:
                    donor.total_pledged = round(float(donor.total_pledged or 0) + amount, 2)
                    donor.balance = round(float(donor.balance or 0) + amount, 2)
                    donor.payment_status = 'paying' if float(donor.total_paid or 0) > 0 else 'pending'

            allocation = self.grid.allocate(
                amount, pledge.donor_name or (donor.name if donor else None),
                'paid' if pledge.type == 'paid' else 'pledged',
                pledge_id=pledge.id, package_id=pledge.package_id, donor_id=pledge.donor_id
            )
            if donor is not None:
                self.grid.sync_donor_cells(donor.id)

            log_audit(self.db, 'pledge', pledge.id, 'approve', user_id=admin_id,
                      before={'status': 'pending', 'type': pledge.type, 'amount': amount},
                      after={'status': 'approved', 'grid_allocation': allocation})
            self.db.commit()
            logger.info(f"Pledge {pledge_id} approved by admin {admin_id}")
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error approving pledge {pledge_id}: {str(e)}")
            raise

        if notify:
            self._notify('pledge_approved', pledge.donor_id, {'amount': f"{amount:.2f}"}, 'pledge_approved')
        return pledge

    def undo_pledge(self, pledge_id: int, admin_id: int, reason: str = '') -> Pledge:
        """Send an approved pledge back to pending, taking it off the totals and the floor plan."""
        try:
            pledge = self.db.get(Pledge, pledge_id)
            if pledge is None:
                raise LookupError("Pledge not found")
            if pledge.status != 'approved':
                raise ValueError(f"Only approved pledges can be undone. Current status: {pledge.status}")
            amount = float(pledge.amount or 0)

            pledge.status = 'pending'
            pledge.approved_by = None
            pledge.approved_at = None

            donor = None
            if pledge.type == 'paid':
                self._bump_counters(paid_delta=-amount)
            else:
                self._bump_counters(pledged_delta=-amount)
                donor = self.db.get(Donor, pledge.donor_id) if pledge.donor_id else None
                if donor is not None:
                    donor.total_pledged = max(0.0, round(float(donor.total_pledged or 0) - amount, 2))
                    self.calculator.recalculate_donor_totals_after_undo(donor.id)

            released = self.grid.release(
                amount, pledge.donor_name or (donor.name if donor else None),
                pledge_id=pledge.id, package_id=pledge.package_id, donor_id=pledge.donor_id
            )
            if donor is not None:
                self.grid.sync_donor_cells(donor.id)

            log_audit(self.db, 'pledge', pledge.id, 'undo', user_id=admin_id,
                      before={'status': 'approved', 'type': pledge.type, 'amount': amount},
                      after={'status': 'pending', 'reason': (reason or '').strip(),
                             'grid_deallocation': released})
            self.db.commit()
            logger.info(f"Pledge {pledge_id} undone by admin {admin_id}")
            return pledge
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error undoing pledge {pledge_id}: {str(e)}")
            raise

    def reject_pledge(self, pledge_id: int, admin_id: int) -> Pledge:
        try:
            pledge = self._pending_pledge(pledge_id)
            pledge.status = 'rejected'
            log_audit(self.db, 'pledge', pledge.id, 'reject', user_id=admin_id,
                      before={'status': 'pending'}, after={'status': 'rejected'})
            self.db.commit()
            logger.info(f"Pledge {pledge_id} rejected by admin {admin_id}")
            return pledge
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error rejecting pledge {pledge_id}: {str(e)}")
            raise

    def update_pledge(
        self,
        pledge_id: int,
        admin_id: int,
        donor_name: str,
        donor_phone: str,
        amount,
        notes: str = '',
        package_id: Optional[int] = None
    ) -> Pledge:
        """Correct a pending pledge before it is approved."""
        try:
            pledge = self._pending_pledge(pledge_id)
            donor_name = (donor_name or '').strip()
            donor_phone = (donor_phone or '').strip()
            amount = float(amount or 0)

            if donor_phone:
                digits = re.sub(r'[^0-9+]', '', donor_phone)
                if digits.startswith('+44'):
                    digits = '0' + digits[3:]
                if not re.fullmatch(r'07\d{9}', digits):
                    raise ValueError("Phone must be a valid UK mobile (start with 07)")
                donor_phone = digits

                other_pledge = self.db.query(Pledge).filter(
                    Pledge.donor_phone == donor_phone,
                    Pledge.status.in_(('pending', 'approved')),
                    Pledge.id != pledge_id
                ).first()
                if other_pledge is not None:
                    raise ValueError("Another pledge exists with this phone")

                payment = self.db.query(Payment).filter(
                    Payment.donor_phone == donor_phone,
                    Payment.status.in_(('pending', 'approved'))
                ).first()
                if payment is not None:
                    raise ValueError("A payment exists with this phone")

            if not donor_name or not donor_phone or amount <= 0:
                raise ValueError("Invalid data provided")

            pledge.donor_name = donor_name
            pledge.donor_phone = donor_phone
            pledge.amount = round(amount, 2)
            pledge.notes = (notes or '').strip()
            if package_id:
                pledge.package_id = package_id

            log_audit(self.db, 'pledge', pledge.id, 'update', user_id=admin_id, before={'status': 'pending'},
                      after={'donor_name': donor_name, 'amount': pledge.amount, 'package_id': package_id,
                             'updated': True})
            self.db.commit()
            return pledge
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error updating pledge {pledge_id}: {str(e)}")
            raise

    def _pending_payment(self, payment_id: int) -> Payment:
        payment = self.db.get(Payment, payment_id)
        if payment is None:
            raise LookupError("Payment not found")
        if payment.status != 'pending':
            raise ValueError("Payment not pending")
        return payment

    def approve_payment(self, payment_id: int, admin_id: int, notify: bool = False) -> Payment:
        try:
            payment = self._pending_payment(payment_id)
            amount = float(payment.amount or 0)

            payment.status = 'approved'
            payment.approved_by = admin_id
            payment.approved_at = datetime.utcnow()
            self._bump_counters(paid_delta=amount)

            donor = None
            if payment.donor_id:
                donor = self.calculator.recalculate_donor_totals_after_approve(payment.donor_id)
                if donor is not None:
                    donor.last_payment_date = datetime.utcnow()

            allocation = self.grid.allocate(
                amount, payment.donor_name or (donor.name if donor else None), 'paid',
                payment_id=payment.id, donor_id=payment.donor_id
            )

            log_audit(self.db, 'payment', payment.id, 'approve', user_id=admin_id, before={'status': 'pending'},
                      after={'status': 'approved', 'amount': amount, 'grid_allocation': allocation})
            self.db.commit()
            logger.info(f"Payment {payment_id} approved by admin {admin_id}")
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error approving payment {payment_id}: {str(e)}")
            raise

        if notify:
            self._notify('payment_confirmed', payment.donor_id, {'amount': f"{amount:.2f}"}, 'payment_confirmed')
        return payment

    def reject_payment(self, payment_id: int, admin_id: int) -> Payment:
        try:
            payment = self._pending_payment(payment_id)
            payment.status = 'voided'
            log_audit(self.db, 'payment', payment.id, 'reject', user_id=admin_id,
                      before={'status': 'pending'}, after={'status': 'voided'})
            self.db.commit()
            logger.info(f"Payment {payment_id} rejected by admin {admin_id}")
            return payment
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error rejecting payment {payment_id}: {str(e)}")
            raise

    def undo_payment(self, payment_id: int, admin_id: int, reason: str = '') -> Payment:
        """Send an approved payment back to pending and free its floor cells."""
        try:
            payment = self.db.get(Payment, payment_id)
            if payment is None:
                raise LookupError("Payment not found")
            if payment.status != 'approved':
                raise ValueError(f"Only approved payments can be undone. Current status: {payment.status}")
            amount = float(payment.amount or 0)

            payment.status = 'pending'
            payment.approved_by = None
            payment.approved_at = None
            self.db.flush()
            self._bump_counters(paid_delta=-amount)

            donor = None
            if payment.donor_id:
                donor = self.calculator.recalculate_donor_totals_after_undo(payment.donor_id)

            released = self.grid.release(
                amount, payment.donor_name or (donor.name if donor else None),
                payment_id=payment.id, donor_id=payment.donor_id
            )

            log_audit(self.db, 'payment', payment.id, 'undo', user_id=admin_id, before={'status': 'approved'},
                      after={'status': 'pending', 'reason': (reason or '').strip(), 'grid_deallocation': released})
            self.db.commit()
            logger.info(f"Payment {payment_id} undone by admin {admin_id}")
            return payment
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error undoing payment {payment_id}: {str(e)}")
            raise

    def record_pledge_payment(
        self,
        donor_id: int,
        amount,
        payment_method: str,
        reference: Optional[str] = None,
        pledge_id: Optional[int] = None,
        admin_id: Optional[int] = None,
        notes: Optional[str] = None,
        source: str = 'admin'
    ) -> PledgePayment:
        """
        Record an installment against a donor's pledge, pending approval.

        Without a pledge_id the donor's latest approved pledge is used.
        """
        try:
            donor = self.db.get(Donor, donor_id)
            if donor is None:
                raise LookupError("Donor not found")

            amount = round(float(amount or 0), 2)
            if amount <= 0:
                raise ValueError("Amount must be greater than zero")
            if payment_method not in PAYMENT_METHODS:
                raise ValueError(f"Invalid payment method: {payment_method}")

            if pledge_id:
                pledge = self.db.get(Pledge, pledge_id)
                if pledge is None:
                    raise LookupError("Pledge not found")
                if pledge.donor_id != donor.id:
                    raise ValueError("Pledge does not belong to this donor")
            else:
                pledge = self.db.query(Pledge).filter_by(donor_id=donor.id, status='approved').order_by(
                    Pledge.id.desc()
                ).first()
            if pledge is None or pledge.status != 'approved':
                raise ValueError("Donor has no approved pledge")

            payment = PledgePayment(
                donor_id=donor.id,
                pledge_id=pledge.id,
                amount=amount,
                payment_method=payment_method,
                reference_number=(reference or '').strip() or None,
                notes=(notes or '').strip() or None,
                status='pending'
            )
            self.db.add(payment)
            self.db.flush()

            log_audit(self.db, 'pledge_payment', payment.id, 'create', user_id=admin_id, source=source, after={
                'donor_id': donor.id,
                'pledge_id': pledge.id,
                'amount': amount,
                'method': payment_method,
                'reference': payment.reference_number,
                'status': 'pending'
            })
            self.db.commit()
            logger.info(f"Pledge payment {payment.id} of £{amount:.2f} recorded for donor {donor.id}")
            return payment
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error recording pledge payment for donor {donor_id}: {str(e)}")
            raise

    def _get_pledge_payment(self, payment_id: int) -> PledgePayment:
        payment = self.db.get(PledgePayment, payment_id)
        if payment is None:
            raise LookupError("Payment not found")
        return payment

    def _plan_for(self, payment: PledgePayment) -> Optional[DonorPaymentPlan]:
        if payment.plan_id:
            return self.db.get(DonorPaymentPlan, payment.plan_id)
        return self.db.query(DonorPaymentPlan).filter_by(
            donor_id=payment.donor_id, status='active'
        ).order_by(DonorPaymentPlan.id.desc()).first()

    def approve_pledge_payment(self, payment_id: int, admin_id: int, notify: bool = False) -> PledgePayment:
        """Confirm an installment, refresh the donor's totals and advance their plan."""
        try:
            payment = self._get_pledge_payment(payment_id)
            if payment.status != 'pending':
                raise ValueError(f"Payment is not pending. Current status: {payment.status}")

            payment.status = 'confirmed'
            payment.approved_by = admin_id
            payment.approved_at = datetime.utcnow()
            self.db.flush()

            donor = self.calculator.recalculate_donor_totals_after_approve(payment.donor_id)
            if donor is None:
                raise LookupError(f"Donor {payment.donor_id} not found")
            donor.last_payment_date = datetime.utcnow()

            plan = self._plan_for(payment)
            if plan is not None and plan.status == 'active':
                self.plans.record_installment(plan, float(payment.amount))
                payment.plan_id = plan.id
            else:
                payment.plan_id = None
            self.grid.sync_donor_cells(donor.id)

            log_audit(self.db, 'pledge_payment', payment.id, 'approve', user_id=admin_id, after={
                'action': 'payment_approved',
                'payment_id': payment.id,
                'donor_id': payment.donor_id,
                'pledge_id': payment.pledge_id,
                'amount': payment.amount,
                'approved_by': admin_id
            })
            self.db.commit()
            logger.info(f"Pledge payment {payment_id} confirmed by admin {admin_id}")
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error approving pledge payment {payment_id}: {str(e)}")
            raise

        if notify:
            self._notify('payment_confirmed', payment.donor_id, {
                'amount': f"{float(payment.amount):.2f}",
                'balance': f"{float(donor.balance or 0):.2f}"
            }, 'payment_confirmed')
        return payment

    def undo_pledge_payment(self, payment_id: int, admin_id: int, reason: str = '') -> PledgePayment:
        """Send a confirmed installment back to pending and roll back its effects."""
        try:
            payment = self._get_pledge_payment(payment_id)
            if payment.status != 'confirmed':
                raise ValueError(f"Only confirmed payments can be undone. Current status: {payment.status}")

            payment.status = 'pending'
            payment.approved_by = None
            payment.approved_at = None
            self.db.flush()

            self.calculator.recalculate_donor_totals_after_undo(payment.donor_id)
            self.grid.sync_donor_cells(payment.donor_id)

            # only installments that advanced a plan are taken back off it
            plan = self.db.get(DonorPaymentPlan, payment.plan_id) if payment.plan_id else None
            if plan is not None:
                self.plans.revert_installment(plan, float(payment.amount))
            payment.plan_id = None

            log_audit(self.db, 'pledge_payment', payment.id, 'undo', user_id=admin_id,
                      before={'status': 'confirmed'},
                      after={'status': 'pending', 'reason': (reason or '').strip()})
            self.db.commit()
            logger.info(f"Pledge payment {payment_id} undone by admin {admin_id}")
            return payment
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error undoing pledge payment {payment_id}: {str(e)}")
            raise

    def reject_pledge_payment(self, payment_id: int, admin_id: int, reason: str = '') -> PledgePayment:
        try:
            payment = self._get_pledge_payment(payment_id)
            if payment.status != 'pending':
                raise ValueError(f"Payment is not pending. Current status: {payment.status}")

            payment.status = 'voided'
            payment.void_reason = (reason or '').strip() or None
            log_audit(self.db, 'pledge_payment', payment.id, 'void', user_id=admin_id,
                      before={'status': 'pending'}, after={'status': 'voided', 'reason': payment.void_reason})
            self.db.commit()
            logger.info(f"Pledge payment {payment_id} voided by admin {admin_id}")
            return payment
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error voiding pledge payment {payment_id}: {str(e)}")
            raise
