import logging
import re
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .audit import log_audit
from .models import DonationPackage, Donor, DonorSupportRequest, Payment, Pledge, PledgePayment
from .payment_plans import PaymentPlanService
from .support import CATEGORIES
from .uploads import save_payment_proof

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ('cash', 'bank_transfer', 'card', 'other')
LANGUAGES = ('en', 'am', 'ti')
PORTAL_CHANNELS = ('auto', 'sms', 'whatsapp')
PACKAGE_SIZES = {'1': 1.0, '0.5': 0.5, '0.25': 0.25}


def _error(message: str) -> Dict:
    return {'success': False, 'error': message}


def _local_digits(phone: str) -> str:
    digits = re.sub(r'\D+', '', phone or '')
    if digits.startswith('44') and len(digits) == 12:
        digits = '0' + digits[2:]
    return digits


class DonorPortalService:
    """Everything a logged-in donor can do from the portal."""

    def __init__(
        self,
        db_session: Session,
        plans: Optional[PaymentPlanService] = None,
        notifier=None,
        upload_folder: Optional[str] = None,
        max_upload_bytes: int = 5 * 1024 * 1024,
        token_days: int = 30
    ):
        self.db = db_session
        self.plans = plans or PaymentPlanService(db_session)
        self.notifier = notifier
        self.upload_folder = upload_folder
        self.max_upload_bytes = max_upload_bytes
        self.token_days = token_days

    def _get_donor(self, donor_id: int) -> Donor:
        donor = self.db.get(Donor, donor_id)
        if donor is None:
            raise LookupError(f"Donor {donor_id} not found")
        return donor

    def _stamp_login(self, donor: Donor) -> None:
        donor.last_login_at = datetime.utcnow()
        donor.login_count = (donor.login_count or 0) + 1
        self.db.commit()

    def login_by_phone(self, phone: str) -> Dict:
        """Find a donor by phone: exact match first, then on digits only."""
        phone = (phone or '').strip()
        if not phone:
            return _error('Please enter your phone number.')

        normalized = _local_digits(phone)
        if len(normalized) < 10:
            return _error('Please enter a valid UK mobile number.')

        donor = self.db.query(Donor).filter(Donor.phone == phone).first()
        if donor is None:
            stripped = Donor.phone
            for char in (' ', '-', '(', ')'):
                stripped = func.replace(stripped, char, '')
            donor = self.db.query(Donor).filter(stripped == normalized).first()

        if donor is None:
            logger.info(f"Portal login failed for {normalized}")
            return _error('No donor account found with this phone number. '
                          'Please contact the church office if you believe this is an error.')

        self._stamp_login(donor)
        logger.info(f"Donor {donor.id} logged in by phone")
        return {'success': True, 'donor': donor}

    def login_by_token(self, token: str) -> Dict:
        if not token:
            return _error('Invalid login link')

        donor = self.db.query(Donor).filter_by(portal_token=token).first()
        if donor is None:
            return _error('Invalid login link')
        if donor.token_expires_at is None or donor.token_expires_at < datetime.utcnow():
            return _error('This login link has expired')

        self._stamp_login(donor)
        logger.info(f"Donor {donor.id} logged in with portal token")
        return {'success': True, 'donor': donor}

    def issue_portal_token(self, donor_id: int) -> str:
        donor = self._get_donor(donor_id)
        donor.portal_token = secrets.token_urlsafe(32)
        donor.token_expires_at = datetime.utcnow() + timedelta(days=self.token_days)
        self.db.commit()
        return donor.portal_token

    def suggested_amount(self, donor: Donor) -> float:
        """Amount to pre-fill: the plan installment when there is one, capped at the balance."""
        balance = max(0.0, float(donor.balance or 0))
        if donor.has_active_plan:
            plan = self.plans.get_active_plan(donor.id)
            if plan is not None and plan.monthly_amount:
                return min(float(plan.monthly_amount), balance)
        return balance

    def get_dashboard(self, donor_id: int) -> Dict:
        donor = self._get_donor(donor_id)
        plan = self.plans.get_active_plan(donor_id)

        last_payment = self.db.query(Payment).filter_by(donor_id=donor_id, status='approved').order_by(
            Payment.received_at.desc()
        ).first()

        recent = [
            {'id': p.id, 'kind': 'payment', 'amount': p.amount, 'method': p.method,
             'status': p.status, 'created_at': p.created_at}
            for p in self.db.query(Payment).filter_by(donor_id=donor_id).order_by(
                Payment.created_at.desc()).limit(5)
        ] + [
            {'id': p.id, 'kind': 'installment', 'amount': p.amount, 'method': p.payment_method,
             'status': p.status, 'created_at': p.created_at}
            for p in self.db.query(PledgePayment).filter_by(donor_id=donor_id).order_by(
                PledgePayment.created_at.desc()).limit(5)
        ]
        recent.sort(key=lambda p: p['created_at'] or datetime.min, reverse=True)

        return {
            'donor': {
                'id': donor.id,
                'name': donor.name,
                'phone': donor.phone,
                'total_pledged': float(donor.total_pledged or 0),
                'total_paid': float(donor.total_paid or 0),
                'balance': float(donor.balance or 0),
                'payment_status': donor.payment_status,
                'preferred_language': donor.preferred_language
            },
            'active_plan': {
                'id': plan.id,
                'monthly_amount': plan.monthly_amount,
                'payments_made': plan.payments_made,
                'total_payments': plan.total_payments,
                'next_payment_due': plan.next_payment_due.isoformat() if plan.next_payment_due else None
            } if plan else None,
            'last_payment': {
                'amount': last_payment.amount,
                'date': last_payment.received_at.isoformat() if last_payment.received_at else None
            } if last_payment else None,
            'recent_payments': recent[:5],
            'suggested_amount': self.suggested_amount(donor)
        }

    def make_payment(
        self,
        donor_id: int,
        amount,
        method: str,
        reference: str = '',
        notes: str = '',
        proof=None
    ) -> Dict:
        """Record a payment the donor says they made; it waits for admin approval."""
        donor = self._get_donor(donor_id)

        try:
            amount = float(amount or 0)
        except (TypeError, ValueError):
            amount = 0.0
        method = (method or '').strip()
        balance = float(donor.balance or 0)

        if amount <= 0:
            return _error('Please enter a valid payment amount.')
        if amount > balance:
            return _error(f'Payment amount cannot exceed your remaining balance of £{balance:,.2f}.')
        if method not in PAYMENT_METHODS:
            return _error('Please select a valid payment method.')

        try:
            proof_path = save_payment_proof(proof, self.upload_folder, self.max_upload_bytes) \
                if self.upload_folder else None
        except ValueError as e:
            return _error(str(e))

        try:
            payment = Payment(
                donor_id=donor.id,
                donor_name=donor.name,
                donor_phone=donor.phone,
                amount=round(amount, 2),
                method=method,
                reference=(reference or '').strip(),
                notes=(notes or '').strip(),
                proof_path=proof_path,
                status='pending',
                source='donor_portal'
            )
            self.db.add(payment)
            self.db.flush()

            log_audit(self.db, 'payment', payment.id, 'create_pending', user_id=0, source='donor_portal', after={
                'payment_id': payment.id,
                'amount': payment.amount,
                'method': method,
                'reference': payment.reference,
                'donor_id': donor.id,
                'donor_name': donor.name
            })
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error submitting portal payment for donor {donor_id}: {str(e)}")
            return _error('An error occurred while submitting your payment. Please try again or contact support.')

        logger.info(f"Donor {donor_id} submitted payment {payment.id} of {amount:.2f}")
        return {
            'success': True,
            'payment_id': payment.id,
            'message': f'Payment submitted successfully! Your payment of £{amount:,.2f} is pending approval. '
                       f"You will receive a confirmation once it's been processed."
        }

    def update_pledge(
        self,
        donor_id: int,
        pack: str,
        custom_amount=None,
        notes: str = '',
        client_uuid: Optional[str] = None
    ) -> Dict:
        """Pledge an additional amount; the new pledge is pending until approved."""
        donor = self._get_donor(donor_id)
        client_uuid = (client_uuid or '').strip() or str(uuid.uuid4())

        packages = self.db.query(DonationPackage).filter_by(active=True).all()
        package = None
        amount = 0.0
        if pack in PACKAGE_SIZES:
            package = next((p for p in packages if p.sqm_meters is not None
                            and abs(float(p.sqm_meters) - PACKAGE_SIZES[pack]) < 1e-6), None)
            amount = float(package.price or 0) if package else 0.0
        elif pack == 'custom':
            package = next((p for p in packages if p.sqm_meters is None), None)
            try:
                amount = max(0.0, float(custom_amount or 0))
            except (TypeError, ValueError):
                amount = 0.0

        if package is None:
            return _error('Please select a valid donation package.')
        if amount <= 0:
            return _error('Please select a valid amount greater than zero.')
        if not donor.phone:
            return _error('Your account has no phone number. Please contact the church office.')

        if self.db.query(Pledge).filter_by(client_uuid=client_uuid).first() is not None:
            return _error('Duplicate submission detected. Please do not click submit twice.')

        try:
            pledge = Pledge(
                donor_id=donor.id,
                donor_name=donor.name or 'Anonymous',
                donor_phone=_local_digits(donor.phone),
                package_id=package.id,
                amount=round(amount, 2),
                type='pledge',
                status='pending',
                source='self',
                client_uuid=client_uuid,
                notes=re.sub(r'\D+', '', notes or '')
            )
            self.db.add(pledge)
            self.db.flush()
            log_audit(self.db, 'pledge', pledge.id, 'create_pending', user_id=0, source='donor_portal', after={
                'amount': pledge.amount,
                'type': 'pledge',
                'donor': donor.name,
                'phone': pledge.donor_phone,
                'status': 'pending',
                'source': 'donor_portal'
            })
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return _error('Duplicate submission detected. Please do not click submit twice.')
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error creating pledge for donor {donor_id}: {str(e)}")
            return _error('An error occurred while submitting your pledge. Please try again or contact support.')

        logger.info(f"Donor {donor_id} pledged an additional {amount:.2f} (pledge {pledge.id})")
        return {
            'success': True,
            'pledge_id': pledge.id,
            'message': f'Thank you! Your additional pledge of £{amount:,.2f} has been submitted for approval.'
        }

    def get_payment_plan(self, donor_id: int) -> Optional[Dict]:
        self._get_donor(donor_id)
        plan = self.plans.get_active_plan(donor_id)
        if plan is None:
            return None

        schedule = self.plans.get_schedule(plan)
        return {
            'id': plan.id,
            'total_amount': plan.total_amount,
            'monthly_amount': plan.monthly_amount,
            'total_payments': plan.total_payments,
            'payments_made': plan.payments_made or 0,
            'amount_paid': plan.amount_paid or 0,
            'next_payment_due': plan.next_payment_due.isoformat() if plan.next_payment_due else None,
            'payment_method': plan.payment_method,
            'status': plan.status,
            'schedule': [
                dict(row, due_date=row['due_date'].isoformat()) for row in schedule
            ]
        }

    def update_profile(
        self,
        donor_id: int,
        name: Optional[str] = None,
        preferred_language: Optional[str] = None,
        preferred_payment_method: Optional[str] = None,
        sms_opt_in: Optional[bool] = None,
        preferred_channel: Optional[str] = None
    ) -> Dict:
        donor = self._get_donor(donor_id)

        if name is not None:
            name = name.strip()
            if not name:
                return _error('Name cannot be empty.')
            donor.name = name
        if preferred_language is not None:
            if preferred_language not in LANGUAGES:
                return _error('Please select a valid language.')
            donor.preferred_language = preferred_language
        if preferred_payment_method is not None:
            if preferred_payment_method not in PAYMENT_METHODS:
                return _error('Please select a valid payment method.')
            donor.preferred_payment_method = preferred_payment_method
        if preferred_channel is not None:
            if preferred_channel not in PORTAL_CHANNELS:
                return _error('Please select a valid contact channel.')
            donor.preferred_channel = preferred_channel
        if sms_opt_in is not None:
            donor.sms_opt_in = bool(sms_opt_in)

        self.db.commit()
        return {'success': True, 'message': 'Profile updated successfully!'}

    def submit_support_request(self, donor_id: int, category: str, subject: str, message: str) -> Dict:
        donor = self._get_donor(donor_id)
        subject = (subject or '').strip()
        message = (message or '').strip()
        category = category if category in CATEGORIES else 'general'

        if not subject or not message:
            return _error('Please fill in all required fields.')

        try:
            request = DonorSupportRequest(
                donor_id=donor.id,
                category=category,
                subject=subject,
                message=message,
                status='open',
                priority='normal'
            )
            self.db.add(request)
            self.db.flush()
            log_audit(self.db, 'donor', donor.id, 'contact_support', source='donor_portal', after={
                'donor_id': donor.id,
                'donor_name': donor.name,
                'donor_phone': donor.phone,
                'category': category,
                'subject': subject,
                'message': message,
                'request_id': request.id
            })
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error saving support request for donor {donor_id}: {str(e)}")
            return _error('An error occurred while sending your message. Please try again.')

        if self.notifier is not None:
            try:
                self.notifier.notify_new_request(request, donor)
            except Exception as e:
                logger.error(f"Failed to notify admin of support request {request.id}: {str(e)}")

        return {
            'success': True,
            'request_id': request.id,
            'message': 'Your message has been sent successfully! We will get back to you as soon as possible.'
        }
