import json
import logging
import math
import re
import time
import xml.etree.ElementTree as ET
from datetime import datetime
from typing import Dict, List, Optional

import requests
from sqlalchemy.orm import Session
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .models import SMSLog, SMSProvider
from .phone import normalize_uk_sms

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 918
DEFAULT_SENDER_ID = 'ATEOTC'

transport_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=4, max=10),
    retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
    reraise=True
)


def calculate_credits(message: str) -> int:
    """Number of SMS segments a message will be billed as."""
    length = len(message)
    is_unicode = any(ord(char) > 127 for char in message)

    if is_unicode:
        return 1 if length <= 70 else math.ceil(length / 67)
    return 1 if length <= 160 else math.ceil(length / 153)


def process_template(template: str, data: Dict) -> str:
    """Fill {placeholders} and drop any that have no value."""
    message = template
    for key, value in data.items():
        message = message.replace('{' + key + '}', str(value))

    message = re.sub(r'\{[a-z_]+\}', '', message)
    return message.strip()


class BaseSMSService:
    """Shared behaviour for SMS gateway wrappers."""

    name = 'base'
    display_name = 'SMS'
    default_cost_pence = 3.5

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        sender_id: Optional[str] = None,
        db_session: Optional[Session] = None,
        provider_id: Optional[int] = None
    ):
        if not api_key or not api_secret:
            raise ValueError(f"Missing {self.display_name} credentials")

        self.api_key = api_key
        self.api_secret = api_secret
        self.sender_id = (sender_id or DEFAULT_SENDER_ID)[:11]
        self.db = db_session
        self.provider_id = provider_id

    @classmethod
    def from_provider(cls, db_session: Session, provider: SMSProvider) -> 'BaseSMSService':
        return cls(
            api_key=provider.api_key,
            api_secret=provider.api_secret,
            sender_id=provider.sender_id,
            db_session=db_session,
            provider_id=provider.id
        )

    def send(
        self,
        phone_number: str,
        message: str,
        donor_id: Optional[int] = None,
        template_id: Optional[int] = None,
        source_type: Optional[str] = None,
        scheduled_for: Optional[datetime] = None,
        log: bool = True
    ) -> Dict:
        """
        Send one SMS.

        Returns a dict with 'success', 'message_id', 'error', 'error_code',
        'credits_used' and 'phone_number'.
        """
        start_time = time.monotonic()

        destination = normalize_uk_sms(phone_number)
        if not destination:
            return {
                'success': False,
                'error': 'Invalid phone number format',
                'error_code': 'INVALID_PHONE'
            }

        if len(message) > MAX_MESSAGE_LENGTH:
            return {
                'success': False,
                'error': f'Message too long (max {MAX_MESSAGE_LENGTH} characters)',
                'error_code': 'MESSAGE_TOO_LONG'
            }

        credits_used = calculate_credits(message)

        try:
            result = self._send_request(destination, message, scheduled_for=scheduled_for, donor_id=donor_id)
        except requests.RequestException as e:
            logger.error(f"{self.display_name} request failed: {str(e)}")
            result = {
                'success': False,
                'message_id': None,
                'error': f'Failed to connect to {self.display_name} API',
                'error_code': 'CONNECTION_FAILED'
            }

        if result['success']:
            logger.info(f"{self.display_name} SMS sent to {destination}: {result.get('message_id')}")
        else:
            logger.warning(f"{self.display_name} SMS to {destination} failed: {result.get('error')}")

        if self.db is not None and log:
            self._log_sms(destination, message, result, credits_used, donor_id, template_id, source_type)

        if self.db is not None and self.provider_id:
            self._update_provider_stats(result['success'], result.get('error'))

        result.update({
            'credits_used': credits_used,
            'duration_ms': round((time.monotonic() - start_time) * 1000),
            'phone_number': destination,
            'provider': self.name
        })
        return result

    def send_batch(self, recipients: List[Dict]) -> List[Dict]:
        """
        Send to several recipients one after another.

        Each recipient is a dict with 'phone', 'message' and optional
        'donor_id' / 'source_type'.
        """
        results = []
        for recipient in recipients:
            result = self.send(
                recipient['phone'],
                recipient['message'],
                donor_id=recipient.get('donor_id'),
                source_type=recipient.get('source_type')
            )
            results.append({'phone': recipient['phone'], 'result': result})
            # gateways throttle bursts
            time.sleep(0.1)
        return results

    def test_connection(self) -> Dict:
        balance = self.get_balance()
        if balance['success']:
            return {
                'success': True,
                'message': f"Connection successful! Credits available: {balance['credits']}",
                'credits': balance['credits']
            }
        return {
            'success': False,
            'message': f"Connection failed: {balance.get('error')}",
            'credits': 0
        }

    def _send_request(self, destination: str, message: str, **options) -> Dict:
        raise NotImplementedError

    def get_balance(self) -> Dict:
        raise NotImplementedError

    def _cost_per_sms(self) -> float:
        provider = self.db.get(SMSProvider, self.provider_id) if self.provider_id else None
        if provider is not None and provider.cost_per_sms_pence is not None:
            return float(provider.cost_per_sms_pence)
        return self.default_cost_pence

    def _log_sms(
        self,
        phone_number: str,
        message: str,
        result: Dict,
        credits_used: int,
        donor_id: Optional[int],
        template_id: Optional[int],
        source_type: Optional[str]
    ) -> None:
        try:
            log = SMSLog(
                donor_id=donor_id,
                phone_number=phone_number,
                message=message,
                template_id=template_id,
                provider_id=self.provider_id,
                provider_message_id=result.get('message_id'),
                source_type=source_type,
                segments=credits_used,
                cost_pence=round(credits_used * self._cost_per_sms(), 2),
                status='sent' if result['success'] else 'failed',
                error_message=result.get('error'),
                sent_at=datetime.utcnow()
            )
            self.db.add(log)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to log SMS to {phone_number}: {str(e)}")

    def _update_provider_stats(self, success: bool, error: Optional[str] = None) -> None:
        try:
            provider = self.db.get(SMSProvider, self.provider_id)
            if provider is None:
                return
            if success:
                provider.last_success_at = datetime.utcnow()
                provider.failure_count = 0
            else:
                provider.failure_count = (provider.failure_count or 0) + 1
                provider.last_error = error
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to update stats for provider {self.provider_id}: {str(e)}")


class VoodooSMSService(BaseSMSService):
    """VoodooSMS REST API (form-encoded POST, JSON/XML/plain-text replies)."""

    name = 'voodoosms'
    display_name = 'VoodooSMS'
    default_cost_pence = 3.5

    API_BASE_URL = 'https://www.voodoosms.com/vapi/server/'
    SEND_ENDPOINT = 'sendSMS'
    BALANCE_ENDPOINT = 'getCredit'

    @transport_retry
    def _post(self, endpoint: str, params: Dict) -> str:
        response = requests.post(
            self.API_BASE_URL + endpoint,
            data=params,
            headers={'Accept': 'application/json'},
            timeout=(10, 30)
        )
        return response.text

    def _send_request(self, destination: str, message: str, **options) -> Dict:
        params = {
            'uid': self.api_key,
            'pass': self.api_secret,
            'dest': destination,
            'orig': self.sender_id,
            'msg': message,
            'format': 'json'
        }
        if options.get('scheduled_for'):
            params['sd'] = options['scheduled_for'].strftime('%Y-%m-%dT%H:%M:%S')

        return self.parse_response(self._post(self.SEND_ENDPOINT, params))

    def get_balance(self) -> Dict:
        try:
            raw = self._post(self.BALANCE_ENDPOINT, {
                'uid': self.api_key,
                'pass': self.api_secret,
                'format': 'json'
            })
        except requests.RequestException as e:
            logger.error(f"VoodooSMS balance request failed: {str(e)}")
            return {'success': False, 'credits': 0, 'error': 'Failed to connect to VoodooSMS API'}

        parsed = self.parse_response(raw)
        if not parsed['success']:
            return {'success': False, 'credits': 0, 'error': parsed.get('error')}
        return {'success': True, 'credits': int(round(parsed.get('credits') or 0)), 'error': None}

    @staticmethod
    def _result_code(result_raw: str) -> int:
        match = re.match(r'^\s*(\d{3})\b', str(result_raw).strip())
        return int(match.group(1)) if match else 0

    def parse_response(self, raw: Optional[str]) -> Dict:
        if not raw:
            return {
                'success': False,
                'error': 'Failed to connect to VoodooSMS API',
                'error_code': 'CONNECTION_FAILED'
            }

        try:
            data = json.loads(raw)
        except ValueError:
            return self._parse_non_json(raw)

        if not isinstance(data, dict):
            return self._parse_non_json(raw)

        if 'result' in data:
            if self._result_code(data['result']) == 200:
                return {
                    'success': True,
                    'message_id': data.get('reference_number') or data.get('resultText'),
                    'credits': float(data['credit']) if data.get('credit') is not None else None,
                    'error': None
                }
            return {
                'success': False,
                'message_id': None,
                'error': data.get('resultText') or 'Request failed',
                'error_code': str(data['result'])
            }

        return {
            'success': False,
            'error': data.get('resultText') or data.get('error') or 'Unknown error',
            'error_code': 'UNKNOWN'
        }

    def _parse_non_json(self, raw: str) -> Dict:
        try:
            root = ET.fromstring(raw)
        except ET.ParseError:
            root = None

        if root is not None:
            fields = {child.tag: (child.text or '') for child in root}
            result_raw = fields.get('result', '')
            if self._result_code(result_raw) == 200:
                return {
                    'success': True,
                    'credits': float(fields['credit']) if fields.get('credit') else None,
                    'message_id': fields.get('messageId') or fields.get('reference_number'),
                    'error': None
                }
            return {
                'success': False,
                'error': fields.get('resultText') or result_raw or 'Request failed',
                'error_code': result_raw or 'UNKNOWN'
            }

        if raw.startswith('OK'):
            match = re.match(r'OK\s+(\S+)', raw)
            return {
                'success': True,
                'message_id': match.group(1) if match else None,
                'error': None
            }

        return {
            'success': False,
            'error': f'Invalid API response: {raw[:100]}',
            'error_code': 'INVALID_RESPONSE'
        }


class TheSMSWorksService(BaseSMSService):
    """TheSMSWorks REST API (JWT auth, JSON bodies)."""

    name = 'thesmsworks'
    display_name = 'TheSMSWorks'
    default_cost_pence = 2.9

    API_BASE_URL = 'https://api.thesmsworks.co.uk/v1/'

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.jwt_token = None

    @transport_retry
    def _http(self, endpoint: str, payload: Optional[Dict] = None, method: str = 'POST',
              headers: Optional[Dict] = None) -> requests.Response:
        headers = {'Content-Type': 'application/json', 'Accept': 'application/json', **(headers or {})}
        url = self.API_BASE_URL + endpoint
        if method == 'GET':
            return requests.get(url, headers=headers, timeout=(10, 30))
        return requests.post(url, json=payload or {}, headers=headers, timeout=(10, 30))

    def _request(self, endpoint: str, payload: Optional[Dict] = None,
                 method: str = 'POST') -> Optional[requests.Response]:
        """Authorised API call; None when no token could be obtained."""
        token = self.get_jwt_token()
        if not token:
            return None
        return self._http(endpoint, payload, method, headers={'Authorization': token})

    def get_jwt_token(self) -> Optional[str]:
        """Fetch (once) and cache the JWT used to authorise API calls."""
        if self.jwt_token:
            return self.jwt_token

        response = self._http('auth/token', {
            'customerid': self.api_key,
            'key': self.api_secret
        })

        try:
            data = response.json()
        except ValueError:
            logger.error("TheSMSWorks: Failed to get JWT token - invalid response")
            return None

        if data.get('token'):
            self.jwt_token = data['token']
            return self.jwt_token

        logger.error(f"TheSMSWorks: Failed to get JWT token - {data.get('message', 'Unknown error')}")
        return None

    def _send_request(self, destination: str, message: str, **options) -> Dict:
        payload = {
            'sender': self.sender_id,
            'destination': destination,
            'content': message,
            'schedule': ''
        }
        if options.get('scheduled_for'):
            payload['schedule'] = options['scheduled_for'].strftime('%Y-%m-%dT%H:%M:%SZ')
        if options.get('donor_id'):
            payload['tag'] = f"donor_{options['donor_id']}"

        response = self._request('message/send', payload)
        if response is None:
            return {
                'success': False,
                'message_id': None,
                'error': 'Authentication with TheSMSWorks failed',
                'error_code': 'AUTH_FAILED'
            }

        if response.status_code == 401:
            self.jwt_token = None

        return self.parse_response(response)

    def parse_response(self, response: requests.Response) -> Dict:
        try:
            data = response.json()
        except ValueError:
            return {
                'success': False,
                'message_id': None,
                'error': f'Invalid API response: {response.text[:100]}',
                'error_code': 'INVALID_RESPONSE'
            }

        if data.get('messageid'):
            return {'success': True, 'message_id': data['messageid'], 'error': None}

        if data.get('status') == 'SENT':
            return {'success': True, 'message_id': data.get('id'), 'error': None}

        return {
            'success': False,
            'message_id': None,
            'error': data.get('message') or data.get('error') or 'Request failed',
            'error_code': data.get('errorCode') or 'UNKNOWN'
        }

    def get_balance(self) -> Dict:
        try:
            response = self._request('credits/balance', method='GET')
        except requests.RequestException as e:
            logger.error(f"TheSMSWorks balance request failed: {str(e)}")
            return {'success': False, 'credits': 0, 'error': 'Failed to connect to TheSMSWorks API'}

        if response is None:
            return {'success': False, 'credits': 0, 'error': 'Authentication with TheSMSWorks failed'}

        try:
            data = response.json()
        except ValueError:
            return {'success': False, 'credits': 0, 'error': 'Invalid API response'}

        if 'credits' in data:
            return {'success': True, 'credits': float(data['credits']), 'error': None}
        return {'success': False, 'credits': 0, 'error': data.get('message', 'Unknown error')}
