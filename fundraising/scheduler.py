import logging
import time
from datetime import date, datetime, timedelta
from typing import Dict, Optional

import pytz
from sqlalchemy import or_
from sqlalchemy.orm import Session

from .messaging import WHATSAPP_CACHE_HOURS
from .models import Donor, DonorPaymentPlan, PaymentPlanSchedule, SMSQueue, WhatsAppNumberCache
from .rate_limiter import rate_limit_sms
from .sms_helper import SMSHelper, start_of_today_utc
from .sms_providers import process_template

logger = logging.getLogger(__name__)

# (template key, setting toggle, days until due, schedule flag, priority)
REMINDERS = (
    ('payment_reminder_3day', 'sms_reminder_3day_enabled', 3, 'reminder_3day_sent', 5),
    ('payment_reminder_dueday', 'sms_reminder_dueday_enabled', 0, 'reminder_dueday_sent', 5),
    ('payment_overdue_7day', 'sms_overdue_7day_enabled', -7, 'overdue_reminder_sent', 8),
)


def format_due_date(d: date) -> str:
    return f"{d.day} {d:%b %Y}"


class ReminderScheduler:
    """Queues payment plan reminders ahead of, on and after each due date."""

    def __init__(self, db_session: Session, sms_helper: SMSHelper, base_url: str, timezone: str = 'Europe/London'):
        self.db = db_session
        self.sms_helper = sms_helper
        self.portal_link = f"{base_url.rstrip('/')}/portal"
        self.timezone = pytz.timezone(timezone)

    def _already_queued_today(self, donor_id: int, source_type: str) -> bool:
        return self.db.query(SMSQueue).filter(
            SMSQueue.donor_id == donor_id,
            SMSQueue.source_type == source_type,
            SMSQueue.created_at >= start_of_today_utc()
        ).first() is not None

    def schedule_payment_reminders(self, today: Optional[date] = None) -> Dict[str, int]:
        """
        Queue reminder SMS for installments due in 3 days, due today and 7 days
        overdue. Returns count of queued, skipped and failed reminders.
        """
        today = today or datetime.now(self.timezone).date()
        settings = self.sms_helper.settings

        queued_count = 0
        skipped_count = 0
        failed_count = 0

        try:
            for template_key, setting, days, flag, priority in REMINDERS:
                if settings.get(setting) != '1':
                    logger.info(f"{template_key} reminders disabled")
                    continue

                template = self.sms_helper.get_template(template_key)
                if template is None:
                    logger.warning(f"Template {template_key} missing; skipping reminders")
                    continue

                flag_column = getattr(PaymentPlanSchedule, flag)
                rows = self.db.query(PaymentPlanSchedule, Donor).join(
                    DonorPaymentPlan, DonorPaymentPlan.id == PaymentPlanSchedule.plan_id
                ).join(
                    Donor, Donor.id == PaymentPlanSchedule.donor_id
                ).filter(
                    PaymentPlanSchedule.due_date == today + timedelta(days=days),
                    PaymentPlanSchedule.status.in_(('pending', 'overdue')),
                    or_(flag_column.is_(False), flag_column.is_(None)),
                    DonorPaymentPlan.status == 'active',
                    Donor.sms_opt_in.is_(True),
                    Donor.phone.isnot(None)
                ).all()

                for installment, donor in rows:
                    try:
                        if self.sms_helper.is_blacklisted(donor.phone):
                            logger.info(f"Skipping donor {donor.id}: number is blacklisted")
                            skipped_count += 1
                            continue

                        if self._already_queued_today(donor.id, template_key):
                            logger.info(f"Skipping donor {donor.id}: {template_key} already queued today")
                            skipped_count += 1
                            continue

                        language = donor.preferred_language if donor.preferred_language in ('am', 'ti') else 'en'
                        message = process_template(self.sms_helper.get_localized_message(template, language), {
                            'name': donor.name,
                            'amount': f"{float(installment.amount):.2f}",
                            'due_date': format_due_date(installment.due_date),
                            'portal_link': self.portal_link
                        })

                        result = self.sms_helper.queue_sms(
                            donor.id, donor.phone, message, template.id,
                            source_type=template_key, priority=priority, language=language
                        )
                        if result['success']:
                            setattr(installment, flag, True)
                            self.db.commit()
                            queued_count += 1
                        else:
                            failed_count += 1
                            logger.error(f"Failed to queue {template_key} for donor {donor.id}: {result.get('error')}")

                    except Exception as e:
                        self.db.rollback()
                        logger.error(f"Failed to schedule {template_key} for donor {donor.id}: {str(e)}")
                        failed_count += 1

            return {
                'queued': queued_count,
                'skipped': skipped_count,
                'failed': failed_count
            }

        except Exception as e:
            logger.error(f"Error in schedule_payment_reminders: {str(e)}")
            raise


class SMSQueueProcessor:
    """Sends queued SMS in priority order within quiet hours and the daily limit."""

    def __init__(self, db_session: Session, sms_helper: SMSHelper, batch_size: int = 20, max_runtime: int = 240):
        self.db = db_session
        self.sms_helper = sms_helper
        self.batch_size = batch_size
        self.max_runtime = max_runtime

    @rate_limit_sms()
    def _send(self, provider, queued: SMSQueue) -> Dict:
        return provider.send(
            queued.phone_number,
            queued.message,
            donor_id=queued.donor_id,
            template_id=queued.template_id,
            source_type=queued.source_type or 'queue'
        )

    def _fail(self, queued: SMSQueue, error: str) -> None:
        queued.error_message = error
        queued.status = 'pending' if queued.attempts < queued.max_attempts else 'failed'

    def process_queue(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Send due messages from the queue.
        Returns count of sent, failed, skipped and cancelled messages.
        """
        counts = {'sent': 0, 'failed': 0, 'skipped': 0, 'cancelled': 0}

        provider = self.sms_helper.provider
        if self.sms_helper.settings.get('sms_enabled') != '1' or provider is None:
            logger.warning("SMS queue not processed: SMS disabled or no active provider")
            return counts

        if self.sms_helper.is_quiet_hours(now):
            logger.info("Quiet hours; queue processing skipped")
            return counts

        limit = self.batch_size
        remaining = self.sms_helper.remaining_today()
        if remaining is not None:
            limit = min(limit, remaining)
        if limit <= 0:
            logger.warning("Daily SMS limit reached; queue processing skipped")
            return counts

        try:
            current_time = datetime.utcnow()
            due_messages = self.db.query(SMSQueue).filter(
                SMSQueue.status == 'pending',
                or_(SMSQueue.scheduled_for.is_(None), SMSQueue.scheduled_for <= current_time),
                SMSQueue.attempts < SMSQueue.max_attempts
            ).order_by(SMSQueue.priority.desc(), SMSQueue.created_at.asc()).limit(limit).all()

            started = time.monotonic()
            for queued in due_messages:
                if time.monotonic() - started > self.max_runtime:
                    counts['skipped'] += 1
                    continue

                donor = self.db.get(Donor, queued.donor_id) if queued.donor_id else None
                if donor is not None and not donor.sms_opt_in:
                    queued.status = 'cancelled'
                    queued.error_message = 'Donor opted out'
                    self.db.commit()
                    counts['cancelled'] += 1
                    continue

                if self.sms_helper.is_blacklisted(queued.phone_number):
                    queued.status = 'cancelled'
                    queued.error_message = 'Phone number is blacklisted'
                    self.db.commit()
                    counts['cancelled'] += 1
                    continue

                queued.status = 'processing'
                queued.attempts = (queued.attempts or 0) + 1
                self.db.commit()

                try:
                    result = self._send(provider, queued)
                except Exception as e:
                    logger.error(f"Error sending queued SMS {queued.id}: {str(e)}")
                    self._fail(queued, str(e))
                    self.db.commit()
                    counts['failed'] += 1
                    continue

                if result['success']:
                    queued.status = 'sent'
                    queued.provider_message_id = result.get('message_id')
                    queued.sent_at = datetime.utcnow()
                    queued.error_message = None
                    counts['sent'] += 1
                    logger.info(f"Sent queued SMS {queued.id} to {queued.phone_number}")
                else:
                    self._fail(queued, result.get('error') or 'Unknown error')
                    counts['failed'] += 1
                    logger.error(f"Failed to send queued SMS {queued.id}: {result.get('error')}")
                self.db.commit()

            return counts

        except Exception as e:
            self.db.rollback()
            logger.error(f"Error in process_queue: {str(e)}")
            raise


def cleanup_old_records(db_session: Session, days: int = 90) -> Dict[str, int]:
    """Delete finished queue rows older than `days` and stale WhatsApp number checks."""
    try:
        cutoff_date = datetime.utcnow() - timedelta(days=days)

        queue_deleted = db_session.query(SMSQueue).filter(
            SMSQueue.status.in_(('sent', 'failed', 'cancelled')),
            SMSQueue.created_at < cutoff_date
        ).delete(synchronize_session=False)

        cache_deleted = db_session.query(WhatsAppNumberCache).filter(
            WhatsAppNumberCache.checked_at < datetime.utcnow() - timedelta(hours=WHATSAPP_CACHE_HOURS)
        ).delete(synchronize_session=False)

        db_session.commit()

        return {
            'queue_rows_deleted': queue_deleted,
            'whatsapp_cache_deleted': cache_deleted
        }

    except Exception as e:
        logger.error(f"Error in cleanup_old_records: {str(e)}")
        db_session.rollback()
        raise
