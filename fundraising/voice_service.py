from twilio.rest import Client
from twilio.base.exceptions import TwilioRestException
from typing import Optional, Dict
from urllib.parse import urlencode
from datetime import datetime
import logging

from sqlalchemy.orm import Session

from .models import CallLog
from .phone import normalize_twilio
from .twilio_errors import TwilioErrorCodes

logger = logging.getLogger(__name__)

CALL_EVENTS = ['initiated', 'ringing', 'answered', 'completed']


class TwilioVoiceService:
    """Outbound voice calls through Twilio."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        base_url: str,
        db_session: Optional[Session] = None,
        record_calls: bool = True
    ):
        """
        Create the Twilio client.
        Raises ValueError if credentials are missing.
        """
        if not all([account_sid, auth_token, from_number]):
            raise ValueError("Missing required credentials")

        self.client = Client(account_sid, auth_token)
        self.account_sid = account_sid
        self.from_number = from_number
        self.base_url = base_url.rstrip('/')
        self.db = db_session
        self.record_calls = record_calls

    def _url(self, path: str, **params) -> str:
        url = f"{self.base_url}{path}"
        if params:
            url += '?' + urlencode(params)
        return url

    def initiate_call(self, agent_phone: str, donor_phone: str, donor_name: str, session_id: int) -> Dict:
        """
        Ring the agent first; when they answer, the answer webhook dials the donor.
        """
        agent_phone = normalize_twilio(agent_phone)
        donor_phone = normalize_twilio(donor_phone)
        if not agent_phone or not donor_phone:
            return {'success': False, 'call_sid': None, 'message': 'Invalid phone number format'}

        params = {
            'to': agent_phone,
            'from_': self.from_number,
            'url': self._url('/webhooks/twilio/answer', donor_phone=donor_phone,
                             donor_name=donor_name, session_id=session_id),
            'method': 'GET',
            'status_callback': self._url('/webhooks/twilio/status', session_id=session_id),
            'status_callback_method': 'POST',
            'status_callback_event': CALL_EVENTS,
            'record': self.record_calls,
            'timeout': 30,
        }
        if self.record_calls:
            params['recording_status_callback'] = self._url('/webhooks/twilio/recording', session_id=session_id)
            params['recording_status_callback_method'] = 'POST'

        try:
            call = self.client.calls.create(**params)
        except TwilioRestException as e:
            logger.error(f"Twilio error initiating call: {str(e)}")
            return {
                'success': False,
                'call_sid': None,
                'message': str(e),
                'error_code': e.code,
                'error_info': TwilioErrorCodes.describe(e.code)
            }

        logger.info(f"Call {call.sid} initiated to agent {agent_phone} for donor {donor_phone}")
        self._log_call(call.sid, 'outbound', donor_phone, agent_phone=agent_phone, session_id=session_id,
                       purpose='donor_call', status=call.status)

        return {
            'success': True,
            'call_sid': call.sid,
            'message': 'Call initiated. Agent phone will ring first.'
        }

    def get_call_status(self, call_sid: str) -> Optional[Dict]:
        try:
            call = self.client.calls(call_sid).fetch()
        except TwilioRestException as e:
            logger.error(f"Error fetching call {call_sid}: {str(e)}")
            return None

        return {
            'status': call.status,
            'duration': int(call.duration) if call.duration else 0,
            'start_time': call.start_time,
            'end_time': call.end_time,
            'direction': call.direction,
            'answered_by': getattr(call, 'answered_by', None)
        }

    def get_call_recording(self, call_sid: str) -> Optional[str]:
        """MP3 URL of the first recording made on a call."""
        try:
            recordings = self.client.recordings.list(call_sid=call_sid, limit=1)
        except TwilioRestException as e:
            logger.error(f"Error fetching recordings for {call_sid}: {str(e)}")
            return None

        if not recordings:
            return None
        return (
            f"https://api.twilio.com/2010-04-01/Accounts/{self.account_sid}"
            f"/Recordings/{recordings[0].sid}.mp3"
        )

    def hangup_call(self, call_sid: str) -> bool:
        try:
            self.client.calls(call_sid).update(status='completed')
            return True
        except TwilioRestException as e:
            logger.error(f"Error hanging up call {call_sid}: {str(e)}")
            return False

    def make_notification_call(self, to_phone: str, twiml_url: str) -> Dict:
        """Place a call that plays the TwiML at twiml_url (used for admin alerts)."""
        to_phone = normalize_twilio(to_phone)
        if not to_phone:
            return {'success': False, 'call_sid': None, 'error': 'Invalid phone number format'}

        try:
            call = self.client.calls.create(
                to=to_phone,
                from_=self.from_number,
                url=twiml_url,
                method='GET',
                timeout=30
            )
        except TwilioRestException as e:
            logger.error(f"Twilio error placing notification call to {to_phone}: {str(e)}")
            return {'success': False, 'call_sid': None, 'error': str(e), 'error_code': e.code}

        self._log_call(call.sid, 'outbound', to_phone, purpose='notification', status=call.status)
        return {'success': True, 'call_sid': call.sid, 'error': None}

    def _log_call(self, call_sid: str, direction: str, phone_number: str, **fields) -> None:
        if self.db is None:
            return
        try:
            self.db.add(CallLog(call_sid=call_sid, direction=direction, phone_number=phone_number, **fields))
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to log call {call_sid}: {str(e)}")


def record_call_status(db_session: Session, form: Dict) -> Optional[CallLog]:
    """Apply a Twilio status callback to the matching call log row."""
    call_sid = form.get('CallSid')
    if not call_sid:
        return None

    call_log = db_session.query(CallLog).filter_by(call_sid=call_sid).first()
    if call_log is None:
        logger.warning(f"Status callback for unknown call {call_sid}")
        return None

    call_log.status = form.get('CallStatus', call_log.status)
    if form.get('CallDuration'):
        call_log.duration = int(form['CallDuration'])
    if form.get('ErrorCode'):
        call_log.error_code = str(form['ErrorCode'])
        call_log.error_message = TwilioErrorCodes.describe(form['ErrorCode'])['message']
    if form.get('RecordingUrl'):
        call_log.recording_url = form['RecordingUrl'] + '.mp3'
    call_log.updated_at = datetime.utcnow()

    db_session.commit()
    logger.info(f"Call {call_sid} status updated to {call_log.status}")
    return call_log
