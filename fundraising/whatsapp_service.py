import logging
from datetime import datetime
from typing import Dict, Optional

import requests
from sqlalchemy.orm import Session

from .models import Donor, WhatsAppConversation, WhatsAppLog, WhatsAppMessage, WhatsAppProvider
from .phone import normalize_e164, phone_variants
from .sms_providers import transport_retry

logger = logging.getLogger(__name__)


class UltraMsgService:
    """WhatsApp messaging through an UltraMsg instance."""

    API_BASE_URL = 'https://api.ultramsg.com/'

    def __init__(
        self,
        instance_id: str,
        token: str,
        db_session: Optional[Session] = None,
        provider_id: Optional[int] = None
    ):
        if not instance_id or not token:
            raise ValueError("Missing UltraMsg credentials")

        self.instance_id = instance_id
        self.token = token
        self.db = db_session
        self.provider_id = provider_id
        self.base_url = f"{self.API_BASE_URL}{instance_id}/"

    @classmethod
    def from_database(cls, db_session: Session) -> Optional['UltraMsgService']:
        """Build from the first active row of whatsapp_providers, if any."""
        provider = db_session.query(WhatsAppProvider).filter(
            WhatsAppProvider.is_active.is_(True)
        ).order_by(WhatsAppProvider.id).first()

        if provider is None:
            return None
        try:
            return cls(provider.instance_id, provider.api_token, db_session, provider.id)
        except ValueError as e:
            logger.error(f"Failed to initialise UltraMsg: {str(e)}")
            return None

    @transport_retry
    def _request(self, endpoint: str, params: Dict, method: str = 'POST') -> requests.Response:
        url = self.base_url + endpoint
        if method == 'GET':
            return requests.get(url, params=params, timeout=(10, 30))
        return requests.post(url, data=params, timeout=(10, 30))

    def _call(self, endpoint: str, params: Dict, method: str = 'POST') -> Optional[Dict]:
        """Make a request and decode JSON; None on transport failure or invalid JSON."""
        try:
            response = self._request(endpoint, params, method)
        except requests.RequestException as e:
            logger.error(f"UltraMsg {endpoint} request failed: {str(e)}")
            return None
        try:
            return response.json()
        except ValueError:
            logger.error(f"UltraMsg {endpoint} returned invalid JSON: {response.text[:100]}")
            return {'error': f'Invalid API response: {response.text[:100]}', 'error_code': 'INVALID_RESPONSE'}

    @staticmethod
    def parse_response(data: Optional[Dict]) -> Dict:
        if data is None:
            return {
                'success': False,
                'message_id': None,
                'error': 'Failed to connect to UltraMsg API',
                'error_code': 'CONNECTION_FAILED'
            }

        sent = data.get('sent') in ('true', True)
        message_id = str(data['id']) if data.get('id') is not None else None

        if sent or (message_id and 'error' not in data):
            return {'success': True, 'message_id': message_id, 'error': None}

        error = data.get('error') or data.get('message') or 'Unknown error'
        if not isinstance(error, str):
            error = str(error)

        return {
            'success': False,
            'message_id': message_id,
            'error': error,
            'error_code': data.get('error_code', 'UNKNOWN')
        }

    def send(
        self,
        phone_number: str,
        message: str,
        donor_id: Optional[int] = None,
        template_id: Optional[int] = None,
        source_type: Optional[str] = None,
        priority: Optional[int] = None,
        log: bool = True
    ) -> Dict:
        """Send a text message."""
        to = normalize_e164(phone_number)
        if not to:
            return {'success': False, 'error': 'Invalid phone number format', 'error_code': 'INVALID_PHONE'}

        params = {'token': self.token, 'to': to, 'body': message}
        if priority is not None:
            params['priority'] = priority

        result = self.parse_response(self._call('messages/chat', params))
        self._record(to, message, 'text', None, result, donor_id, template_id, source_type, log)
        result['phone_number'] = to
        return result

    def _send_media(self, endpoint: str, message_type: str, phone_number: str, media_key: str,
                    media_url: str, caption: str = '', donor_id: Optional[int] = None,
                    source_type: Optional[str] = None, **extra) -> Dict:
        to = normalize_e164(phone_number)
        if not to:
            return {'success': False, 'error': 'Invalid phone number format', 'error_code': 'INVALID_PHONE'}

        params = {'token': self.token, 'to': to, media_key: media_url}
        if caption:
            params['caption'] = caption
        params.update(extra)

        result = self.parse_response(self._call(endpoint, params))
        self._record(to, caption, message_type, media_url, result, donor_id, None, source_type, True)
        result['phone_number'] = to
        return result

    def send_image(self, phone_number: str, image_url: str, caption: str = '', **kwargs) -> Dict:
        return self._send_media('messages/image', 'image', phone_number, 'image', image_url, caption, **kwargs)

    def send_document(self, phone_number: str, document_url: str, filename: str = '', caption: str = '',
                      **kwargs) -> Dict:
        return self._send_media('messages/document', 'document', phone_number, 'document', document_url,
                                caption, filename=filename, **kwargs)

    def send_audio(self, phone_number: str, audio_url: str, **kwargs) -> Dict:
        return self._send_media('messages/audio', 'audio', phone_number, 'audio', audio_url, **kwargs)

    def send_video(self, phone_number: str, video_url: str, caption: str = '', **kwargs) -> Dict:
        return self._send_media('messages/video', 'video', phone_number, 'video', video_url, caption, **kwargs)

    def check_number(self, phone_number: str) -> Dict:
        """Ask UltraMsg whether a number is registered on WhatsApp."""
        chat_id = normalize_e164(phone_number)
        if not chat_id:
            return {'success': False, 'has_whatsapp': False, 'error': 'Invalid phone number'}

        data = self._call('contacts/check', {'token': self.token, 'chatId': chat_id}, method='GET') or {}

        if 'status' in data:
            return {'success': True, 'has_whatsapp': data['status'] == 'valid', 'error': None}
        return {'success': False, 'has_whatsapp': False, 'error': data.get('error', 'Unknown error')}

    def get_status(self) -> Dict:
        """Instance connection status ('authenticated', 'qr', 'disconnected', ...)."""
        data = self._call('instance/status', {'token': self.token}, method='GET')
        if data is None:
            return {'success': False, 'status': 'unknown', 'error': 'Failed to connect to UltraMsg API'}

        status = data.get('status')
        if status is not None:
            if isinstance(status, dict):
                account_status = status.get('accountStatus', {})
                return {
                    'success': True,
                    'status': account_status.get('status', 'unknown'),
                    'substatus': account_status.get('substatus'),
                    'error': None
                }
            return {'success': True, 'status': status, 'substatus': None, 'error': None}

        return {'success': False, 'status': 'error', 'error': data.get('error', 'Unknown error')}

    def test_connection(self) -> Dict:
        status = self.get_status()
        if status['success']:
            return {'success': True, 'message': f"Instance status: {status['status']}", 'status': status['status']}
        return {'success': False, 'message': f"Connection failed: {status['error']}", 'status': status['status']}

    def _record(self, phone_number, message, message_type, media_url, result, donor_id, template_id,
                source_type, log) -> None:
        if self.db is None:
            return
        try:
            if log:
                self.db.add(WhatsAppLog(
                    donor_id=donor_id,
                    phone_number=phone_number,
                    message=message,
                    message_type=message_type,
                    media_url=media_url,
                    template_id=template_id,
                    provider_message_id=result.get('message_id'),
                    source_type=source_type,
                    status='sent' if result['success'] else 'failed',
                    error_message=result.get('error'),
                    sent_at=datetime.utcnow()
                ))

            if self.provider_id:
                provider = self.db.get(WhatsAppProvider, self.provider_id)
                if provider is not None:
                    if result['success']:
                        provider.last_success_at = datetime.utcnow()
                        provider.failure_count = 0
                    else:
                        provider.failure_count = (provider.failure_count or 0) + 1
                        provider.last_error = result.get('error')

            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to log WhatsApp message to {phone_number}: {str(e)}")


MESSAGE_TYPES = {
    'chat': 'text', 'text': 'text', 'image': 'image', 'video': 'video', 'audio': 'audio',
    'ptt': 'voice', 'voice': 'voice', 'document': 'document', 'location': 'location',
    'vcard': 'contact', 'contact': 'contact', 'sticker': 'sticker', 'reaction': 'reaction'
}


def normalize_incoming_phone(phone: str) -> str:
    phone = phone.replace('@c.us', '')
    phone = ''.join(ch for ch in phone if ch.isdigit() or ch == '+')
    if not phone.startswith('+'):
        if phone.startswith('0'):
            phone = '+44' + phone[1:]
        else:
            phone = '+' + phone
    return phone


def record_incoming_message(db_session: Session, payload: Dict) -> Dict:
    """Store an UltraMsg webhook message in the WhatsApp inbox."""
    data = payload.get('data') or payload
    sender = data.get('from') or data.get('sender') or data.get('chatId')
    if not sender:
        return {'status': 'ok', 'message': 'No sender found'}

    if data.get('fromMe') in (True, 'true', 1):
        return {'status': 'ok', 'message': 'Outgoing message skipped'}

    phone = normalize_incoming_phone(sender)
    body = data.get('body') or data.get('text') or ''
    message_type = MESSAGE_TYPES.get(str(data.get('type') or 'chat').lower(), 'text')
    contact_name = data.get('pushname') or data.get('senderName')

    try:
        donor = db_session.query(Donor).filter(Donor.phone.in_(phone_variants(phone))).first()

        conversation = db_session.query(WhatsAppConversation).filter_by(phone_number=phone).first()
        if conversation is None:
            conversation = WhatsAppConversation(
                phone_number=phone,
                donor_id=donor.id if donor else None,
                contact_name=contact_name or (donor.name if donor else None),
                is_unknown=donor is None,
                unread_count=0
            )
            db_session.add(conversation)
            db_session.flush()
        elif contact_name:
            conversation.contact_name = contact_name

        message = WhatsAppMessage(
            conversation_id=conversation.id,
            ultramsg_id=data.get('id'),
            direction='incoming',
            message_type=message_type,
            body=body,
            media_url=data.get('media'),
            status='delivered'
        )
        db_session.add(message)

        conversation.last_message_at = datetime.utcnow()
        conversation.last_message_preview = (body or data.get('caption') or message_type)[:255]
        conversation.unread_count = (conversation.unread_count or 0) + 1
        db_session.commit()
    except Exception as e:
        db_session.rollback()
        logger.error(f"Failed to store incoming WhatsApp message from {phone}: {str(e)}")
        raise

    logger.info(f"Incoming WhatsApp message from {phone} stored in conversation {conversation.id}")
    return {
        'status': 'ok',
        'message': 'Message received',
        'conversation_id': conversation.id,
        'message_id': message.id,
        'donor_id': donor.id if donor else None,
        'is_new_sender': donor is None
    }
