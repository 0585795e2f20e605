import logging
from datetime import datetime
from typing import Dict, Optional

import pytz
from sqlalchemy import func
from sqlalchemy.orm import Session

from .models import Donor, SMSBlacklist, SMSLog, SMSQueue, SMSSetting, SMSTemplate
from .sms_factory import SMSServiceFactory
from .sms_providers import process_template

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS = {
    'sms_enabled': '1',
    'sms_daily_limit': '1000',
    'sms_quiet_hours_start': '21:00',
    'sms_quiet_hours_end': '09:00',
    'sms_reminder_3day_enabled': '1',
    'sms_reminder_dueday_enabled': '1',
    'sms_overdue_7day_enabled': '1',
}


def _error(message: str) -> Dict:
    return {'success': False, 'error': message}


def start_of_today_utc() -> datetime:
    return datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)


class SMSHelper:
    """SMS sending policy: templates, opt-in, blacklist, quiet hours and daily limit."""

    def __init__(
        self,
        db_session: Session,
        sms_factory: Optional[SMSServiceFactory] = None,
        timezone: str = 'Europe/London'
    ):
        self.db = db_session
        self.sms_factory = sms_factory or SMSServiceFactory(db_session)
        self.timezone = pytz.timezone(timezone)
        self.settings = self.load_settings()

    def load_settings(self) -> Dict[str, str]:
        settings = dict(DEFAULT_SETTINGS)
        for row in self.db.query(SMSSetting).all():
            settings[row.setting_key] = row.setting_value
        return settings

    @property
    def provider(self):
        return self.sms_factory.get_default_service()

    def is_ready(self) -> bool:
        return self.settings.get('sms_enabled') == '1' and self.provider is not None

    def get_template(self, template_key: str) -> Optional[SMSTemplate]:
        return self.db.query(SMSTemplate).filter_by(
            template_key=template_key,
            is_active=True
        ).first()

    @staticmethod
    def get_localized_message(template: SMSTemplate, language: Optional[str]) -> str:
        localized = getattr(template, f'message_{language}', None) if language else None
        return localized or template.message_en or ''

    def is_blacklisted(self, phone_number: str) -> bool:
        return self.db.query(SMSBlacklist).filter_by(phone_number=phone_number).first() is not None

    def can_receive_sms(self, donor: Donor) -> Dict:
        if not donor.sms_opt_in:
            return _error('Donor has opted out of SMS')
        if not donor.phone:
            return _error('Donor has no phone number')
        if self.is_blacklisted(donor.phone):
            return _error('Phone number is blacklisted')
        return {'success': True}

    def is_quiet_hours(self, now: Optional[datetime] = None) -> bool:
        """True inside the configured quiet window; handles windows that cross midnight."""
        try:
            start = datetime.strptime(self.settings['sms_quiet_hours_start'], '%H:%M').time()
            end = datetime.strptime(self.settings['sms_quiet_hours_end'], '%H:%M').time()
        except (KeyError, TypeError, ValueError):
            return False

        current = now.time() if now else datetime.now(self.timezone).time()

        if start > end:
            return current >= start or current < end
        return start <= current < end

    def get_today_count(self) -> int:
        return self.db.query(func.count(SMSLog.id)).filter(
            SMSLog.sent_at >= start_of_today_utc()
        ).scalar() or 0

    def get_daily_limit(self) -> int:
        return int(self.settings.get('sms_daily_limit') or 0)

    def remaining_today(self) -> Optional[int]:
        """Messages still allowed today, or None when unlimited."""
        limit = self.get_daily_limit()
        if limit <= 0:
            return None
        return max(0, limit - self.get_today_count())

    def check_daily_limit(self) -> bool:
        remaining = self.remaining_today()
        return remaining is None or remaining > 0

    def queue_sms(
        self,
        donor_id: Optional[int],
        phone_number: str,
        message: str,
        template_id: Optional[int] = None,
        source_type: str = 'queued',
        priority: int = 5,
        scheduled_for: Optional[datetime] = None,
        language: str = 'en'
    ) -> Dict:
        """Add a message to the queue for the background processor."""
        try:
            recipient_name = None
            if donor_id:
                donor = self.db.get(Donor, donor_id)
                recipient_name = donor.name if donor else None

            queued = SMSQueue(
                donor_id=donor_id,
                phone_number=phone_number,
                recipient_name=recipient_name,
                message=message,
                template_id=template_id,
                language=language,
                source_type=source_type,
                priority=priority,
                scheduled_for=scheduled_for,
                status='pending'
            )
            self.db.add(queued)
            self.db.commit()

            logger.info(f"SMS queued #{queued.id} for {phone_number}")
            return {'success': True, 'message': 'SMS queued successfully', 'queue_id': queued.id, 'queued': True}

        except Exception as e:
            self.db.rollback()
            logger.error(f"Error queueing SMS for {phone_number}: {str(e)}")
            return _error(f'Queue error: {str(e)}')

    def send_now(
        self,
        phone_number: str,
        message: str,
        donor_id: Optional[int] = None,
        template_id: Optional[int] = None,
        source_type: str = 'system',
        force_immediate: bool = False
    ) -> Dict:
        """Send immediately, or queue when inside quiet hours."""
        if self.settings.get('sms_enabled') != '1':
            return _error('SMS sending is disabled')

        provider = self.provider
        if provider is None:
            return _error('SMS system not ready. No active SMS provider')

        if not force_immediate and self.is_quiet_hours():
            return self.queue_sms(donor_id, phone_number, message, template_id, source_type)

        if not self.check_daily_limit():
            return _error('Daily SMS limit reached')

        if self.is_blacklisted(phone_number):
            return _error('Phone number is blacklisted')

        result = provider.send(
            phone_number,
            message,
            donor_id=donor_id,
            template_id=template_id,
            source_type=source_type
        )

        if result['success']:
            return {
                'success': True,
                'message': 'SMS sent successfully',
                'message_id': result.get('message_id'),
                'credits_used': result.get('credits_used', 1)
            }
        return {
            'success': False,
            'error': result.get('error') or 'Failed to send SMS',
            'error_code': result.get('error_code')
        }

    def send_from_template(
        self,
        template_key: str,
        donor_id: int,
        variables: Optional[Dict] = None,
        source_type: str = 'system',
        queue: bool = False,
        force_immediate: bool = False,
        language: Optional[str] = None
    ) -> Dict:
        template = self.get_template(template_key)
        if template is None:
            return _error(f"Template '{template_key}' not found or inactive")

        donor = self.db.get(Donor, donor_id)
        if donor is None:
            return _error(f"Donor #{donor_id} not found")

        can_receive = self.can_receive_sms(donor)
        if not can_receive['success']:
            return can_receive

        language = language or donor.preferred_language or 'en'
        variables = dict(variables or {})
        variables.setdefault('name', donor.name)
        message = process_template(self.get_localized_message(template, language), variables)

        template.usage_count = (template.usage_count or 0) + 1
        template.last_used_at = datetime.utcnow()
        self.db.commit()

        if queue:
            return self.queue_sms(donor.id, donor.phone, message, template.id, source_type, language=language)
        return self.send_now(donor.phone, message, donor.id, template.id, source_type, force_immediate)

    def send_direct(
        self,
        phone_number: str,
        message: str,
        donor_id: Optional[int] = None,
        source_type: str = 'manual'
    ) -> Dict:
        """Manual send: bypasses quiet hours but still honours opt-out."""
        if donor_id:
            donor = self.db.get(Donor, donor_id)
            if donor is not None:
                can_receive = self.can_receive_sms(donor)
                if not can_receive['success']:
                    return can_receive

        return self.send_now(phone_number, message, donor_id, None, source_type, force_immediate=True)

    def get_balance(self) -> Dict:
        provider = self.provider
        if provider is None:
            return {'success': False, 'credits': 0, 'error': 'SMS system not ready'}
        return provider.get_balance()

    def get_stats(self) -> Dict:
        today = start_of_today_utc()
        month_start = today.replace(day=1)

        def _summary(since: datetime) -> Dict:
            rows = self.db.query(SMSLog.status, func.count(SMSLog.id), func.coalesce(func.sum(SMSLog.cost_pence), 0)).filter(
                SMSLog.sent_at >= since
            ).group_by(SMSLog.status).all()
            summary = {'sent': 0, 'failed': 0, 'cost_pence': 0.0}
            for status, count, cost in rows:
                if status in ('sent', 'delivered'):
                    summary['sent'] += count
                elif status == 'failed':
                    summary['failed'] += count
                summary['cost_pence'] += float(cost or 0)
            return summary

        today_summary = _summary(today)
        month_summary = _summary(month_start)

        stats = {
            'today_sent': today_summary['sent'],
            'today_failed': today_summary['failed'],
            'today_cost': round(today_summary['cost_pence'], 2),
            'month_sent': month_summary['sent'],
            'month_cost': round(month_summary['cost_pence'], 2),
            'pending_queue': self.db.query(func.count(SMSQueue.id)).filter_by(status='pending').scalar() or 0,
            'daily_limit': self.get_daily_limit(),
            'credits_remaining': 0
        }

        balance = self.get_balance()
        if balance['success']:
            stats['credits_remaining'] = balance['credits']
        return stats

