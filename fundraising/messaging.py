import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from .models import Donor, SMSLog, WhatsAppLog, WhatsAppNumberCache
from .phone import normalize_e164, phone_variants
from .sms_helper import SMSHelper
from .sms_providers import process_template
from .whatsapp_service import UltraMsgService

logger = logging.getLogger(__name__)

CHANNEL_AUTO = 'auto'
CHANNEL_SMS = 'sms'
CHANNEL_WHATSAPP = 'whatsapp'
CHANNEL_BOTH = 'both'
CHANNELS = (CHANNEL_AUTO, CHANNEL_SMS, CHANNEL_WHATSAPP, CHANNEL_BOTH)

# UltraMsg instance states in which messages cannot be delivered
UNAVAILABLE_WHATSAPP_STATUSES = {'disconnected', 'initialize', 'qr', 'error', 'unknown'}

WHATSAPP_CACHE_HOURS = 24


def _error(message: str) -> Dict:
    return {'success': False, 'error': message}


class MessagingHelper:
    """
    Sends donor messages over SMS, WhatsApp or both.

    In auto mode WhatsApp is preferred when the instance is connected and the
    donor's number is registered on WhatsApp; a failed WhatsApp send falls back
    to SMS.
    """

    def __init__(
        self,
        db_session: Session,
        sms_helper: Optional[SMSHelper] = None,
        whatsapp_service: Optional[UltraMsgService] = None
    ):
        self.db = db_session
        self.sms_helper = sms_helper or SMSHelper(db_session)
        self.whatsapp_service = whatsapp_service if whatsapp_service is not None \
            else UltraMsgService.from_database(db_session)
        self._whatsapp_checked = False
        self._whatsapp_ready = False

    def is_sms_available(self) -> bool:
        return self.sms_helper is not None and self.sms_helper.is_ready()

    def is_whatsapp_available(self) -> bool:
        if self.whatsapp_service is None:
            return False

        # one status call per helper instance
        if self._whatsapp_checked:
            return self._whatsapp_ready
        self._whatsapp_checked = True

        try:
            status = self.whatsapp_service.get_status()
            status_value = str(status.get('status') or 'unknown').lower()
            self._whatsapp_ready = bool(status.get('success')) and status_value not in UNAVAILABLE_WHATSAPP_STATUSES
            if not self._whatsapp_ready:
                logger.warning(f"WhatsApp not available, status={status_value}")
        except Exception as e:
            # the send itself will report a clear error if the instance is really down
            logger.error(f"WhatsApp status check failed: {str(e)}")
            self._whatsapp_ready = True

        return self._whatsapp_ready

    def check_whatsapp_number(self, phone: str) -> bool:
        """Whether a number is on WhatsApp, cached for 24 hours."""
        if self.whatsapp_service is None:
            return False

        phone = normalize_e164(phone)
        if not phone:
            return False

        cutoff = datetime.utcnow() - timedelta(hours=WHATSAPP_CACHE_HOURS)
        cached = self.db.query(WhatsAppNumberCache).filter_by(phone_number=phone).first()
        if cached is not None and cached.checked_at and cached.checked_at >= cutoff:
            return bool(cached.has_whatsapp)

        result = self.whatsapp_service.check_number(phone)
        has_whatsapp = bool(result.get('success') and result.get('has_whatsapp'))

        try:
            if cached is None:
                cached = WhatsAppNumberCache(phone_number=phone)
                self.db.add(cached)
            cached.has_whatsapp = has_whatsapp
            cached.checked_at = datetime.utcnow()
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to cache WhatsApp check for {phone}: {str(e)}")

        return has_whatsapp

    def determine_channel(self, donor: Donor, preferred_channel: str = CHANNEL_AUTO) -> str:
        if preferred_channel == CHANNEL_SMS:
            return CHANNEL_SMS if self.is_sms_available() else CHANNEL_WHATSAPP
        if preferred_channel == CHANNEL_WHATSAPP:
            return CHANNEL_WHATSAPP if self.is_whatsapp_available() else CHANNEL_SMS
        if preferred_channel == CHANNEL_BOTH:
            return CHANNEL_BOTH

        if donor.preferred_channel == CHANNEL_WHATSAPP and self.is_whatsapp_available():
            if self.check_whatsapp_number(donor.phone):
                return CHANNEL_WHATSAPP

        if self.is_whatsapp_available() and self.check_whatsapp_number(donor.phone):
            return CHANNEL_WHATSAPP

        return CHANNEL_SMS if self.is_sms_available() else CHANNEL_WHATSAPP

    def send_from_template(
        self,
        template_key: str,
        donor_id: int,
        variables: Optional[Dict] = None,
        channel: str = CHANNEL_AUTO,
        source_type: str = 'system',
        queue: bool = False,
        force_immediate: bool = False
    ) -> Dict:
        donor = self.db.get(Donor, donor_id)
        if donor is None:
            return _error(f"Donor #{donor_id} not found")

        variables = variables or {}
        channel = self.determine_channel(donor, channel)

        if channel == CHANNEL_BOTH:
            results = {'success': False, 'channel': CHANNEL_BOTH, 'sms': None, 'whatsapp': None}
            if self.is_sms_available():
                results['sms'] = self.sms_helper.send_from_template(
                    template_key, donor_id, variables, source_type, queue, force_immediate)
            if self.is_whatsapp_available():
                results['whatsapp'] = self._send_whatsapp_template(
                    template_key, donor, variables, source_type, queue, force_immediate)
            results['success'] = self._any_success(results)
            return results

        if channel == CHANNEL_WHATSAPP:
            return self._send_whatsapp_template(template_key, donor, variables, source_type, queue, force_immediate)

        return self.sms_helper.send_from_template(template_key, donor_id, variables, source_type, queue,
                                                  force_immediate)

    def _send_whatsapp_template(self, template_key: str, donor: Donor, variables: Dict, source_type: str,
                                queue: bool, force_immediate: bool) -> Dict:
        if self.whatsapp_service is None:
            return self.sms_helper.send_from_template(template_key, donor.id, variables, source_type, queue,
                                                      force_immediate, language='en')

        template = self.sms_helper.get_template(template_key)
        if template is None:
            return _error(f"Template '{template_key}' not found")

        # WhatsApp messages go out in Amharic when a translation exists
        message = template.message_am or template.message_en or ''
        if not message:
            return _error(f"Template '{template_key}' has no message content")

        variables = dict(variables)
        variables.setdefault('name', donor.name)
        message = process_template(message, variables)

        phone = normalize_e164(donor.phone)
        if not phone:
            return _error('Invalid donor phone number')

        result = self.whatsapp_service.send(phone, message, donor_id=donor.id, template_id=template.id,
                                            source_type=source_type)
        if result['success']:
            return {
                'success': True,
                'channel': CHANNEL_WHATSAPP,
                'language': 'am' if template.message_am else 'en',
                'message': 'WhatsApp message sent successfully',
                'message_id': result.get('message_id')
            }

        logger.warning(f"WhatsApp template to donor {donor.id} failed ({result.get('error')}), falling back to SMS")
        sms_result = self.sms_helper.send_from_template(template_key, donor.id, variables, source_type, queue,
                                                        force_immediate, language='en')
        if sms_result.get('success'):
            sms_result.update({
                'channel': CHANNEL_SMS,
                'is_fallback': True,
                'fallback_reason': 'whatsapp_failed',
                'original_channel': CHANNEL_WHATSAPP,
                'language': 'en'
            })
        return sms_result

    def send_direct(
        self,
        phone_number: str,
        message: str,
        channel: str = CHANNEL_AUTO,
        donor_id: Optional[int] = None,
        source_type: str = 'manual'
    ) -> Dict:
        donor = self.db.get(Donor, donor_id) if donor_id else None

        if channel == CHANNEL_AUTO and donor is not None:
            channel = self.determine_channel(donor, CHANNEL_AUTO)
        elif channel == CHANNEL_AUTO:
            channel = CHANNEL_WHATSAPP if self.is_whatsapp_available() else CHANNEL_SMS

        phone = normalize_e164(phone_number)
        if not phone:
            return _error('Invalid phone number format')

        if channel == CHANNEL_BOTH:
            results = {'success': False, 'channel': CHANNEL_BOTH, 'sms': None, 'whatsapp': None}
            if self.is_sms_available():
                results['sms'] = self.sms_helper.send_direct(phone, message, donor_id, source_type)
            if self.is_whatsapp_available():
                results['whatsapp'] = self._send_whatsapp_direct(phone, message, donor_id, source_type)
            results['success'] = self._any_success(results)
            return results

        if channel == CHANNEL_WHATSAPP:
            return self._send_whatsapp_direct(phone, message, donor_id, source_type)

        result = self.sms_helper.send_direct(phone, message, donor_id, source_type)
        result.setdefault('channel', CHANNEL_SMS)
        return result

    def _send_whatsapp_direct(self, phone: str, message: str, donor_id: Optional[int], source_type: str) -> Dict:
        if self.whatsapp_service is None:
            return self.sms_helper.send_direct(phone, message, donor_id, source_type)

        result = self.whatsapp_service.send(phone, message, donor_id=donor_id, source_type=source_type)
        if result['success']:
            return {
                'success': True,
                'channel': CHANNEL_WHATSAPP,
                'message': 'WhatsApp message sent successfully',
                'message_id': result.get('message_id')
            }

        logger.warning(f"WhatsApp to {phone} failed ({result.get('error')}), falling back to SMS")
        sms_result = self.sms_helper.send_direct(phone, message, donor_id, source_type)
        if sms_result.get('success'):
            sms_result.update({
                'channel': CHANNEL_SMS,
                'is_fallback': True,
                'fallback_reason': 'whatsapp_failed',
                'original_channel': CHANNEL_WHATSAPP
            })
        return sms_result

    def send_to_donor(self, donor_id: int, message: str, channel: str = CHANNEL_AUTO,
                      source_type: str = 'manual') -> Dict:
        donor = self.db.get(Donor, donor_id)
        if donor is None:
            return _error(f"Donor #{donor_id} not found")
        if not donor.phone:
            return _error(f"Donor #{donor_id} has no phone number")
        return self.send_direct(donor.phone, message, channel, donor_id, source_type)

    @staticmethod
    def _any_success(results: Dict) -> bool:
        return bool(
            (results['sms'] and results['sms'].get('success')) or
            (results['whatsapp'] and results['whatsapp'].get('success'))
        )

    def _donor_log_filter(self, model, donor: Donor):
        phones = phone_variants(donor.phone) if donor.phone else []
        return or_(model.donor_id == donor.id, model.phone_number.in_(phones))

    def get_donor_history(self, donor_id: int, limit: int = 50, offset: int = 0,
                          channel: Optional[str] = None) -> List[Dict]:
        """SMS and WhatsApp messages for a donor, newest first."""
        donor = self.db.get(Donor, donor_id)
        if donor is None:
            return []

        messages = []
        if channel in (None, CHANNEL_SMS):
            for row in self.db.query(SMSLog).filter(self._donor_log_filter(SMSLog, donor)).all():
                messages.append({
                    'id': row.id,
                    'channel': CHANNEL_SMS,
                    'phone_number': row.phone_number,
                    'message': row.message,
                    'source_type': row.source_type,
                    'status': row.status,
                    'error_message': row.error_message,
                    'cost_pence': row.cost_pence or 0,
                    'sent_at': row.sent_at
                })
        if channel in (None, CHANNEL_WHATSAPP):
            for row in self.db.query(WhatsAppLog).filter(self._donor_log_filter(WhatsAppLog, donor)).all():
                messages.append({
                    'id': row.id,
                    'channel': CHANNEL_WHATSAPP,
                    'phone_number': row.phone_number,
                    'message': row.message,
                    'source_type': row.source_type,
                    'status': row.status,
                    'error_message': row.error_message,
                    'cost_pence': 0,
                    'sent_at': row.sent_at
                })

        messages.sort(key=lambda m: m['sent_at'] or datetime.min, reverse=True)
        return messages[offset:offset + limit]

    def get_donor_stats(self, donor_id: int) -> Dict:
        stats = {
            'total_messages': 0,
            'sms_count': 0,
            'whatsapp_count': 0,
            'delivered_count': 0,
            'failed_count': 0,
            'total_cost_pence': 0.0,
            'last_message_at': None
        }
        for message in self.get_donor_history(donor_id, limit=100000):
            stats['total_messages'] += 1
            stats[f"{message['channel']}_count"] += 1
            if message['status'] in ('delivered', 'sent'):
                stats['delivered_count'] += 1
            elif message['status'] == 'failed':
                stats['failed_count'] += 1
            stats['total_cost_pence'] += float(message['cost_pence'] or 0)
            if stats['last_message_at'] is None:
                stats['last_message_at'] = message['sent_at']
        stats['total_cost_pence'] = round(stats['total_cost_pence'], 2)
        return stats

    def get_status(self) -> Dict:
        return {
            'sms_available': self.is_sms_available(),
            'whatsapp_available': self.is_whatsapp_available(),
            'whatsapp_status': self.whatsapp_service.get_status() if self.whatsapp_service else None
        }
