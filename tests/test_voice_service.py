import pytest
from unittest.mock import Mock
from twilio.base.exceptions import TwilioRestException
from fundraising.models import CallLog
from fundraising.twilio_errors import TwilioErrorCodes
from fundraising.voice_service import TwilioVoiceService, record_call_status


@pytest.fixture
def voice(db_session, mocker):
    mocker.patch('fundraising.voice_service.Client')
    return TwilioVoiceService('ACtest', 'token', '+441234567890', 'https://fundraising.test/', db_session)


def test_missing_credentials():
    with pytest.raises(ValueError, match="Missing required credentials"):
        TwilioVoiceService('', 'token', '+441234567890', 'https://x.test')


def test_initiate_call_rings_agent_first(voice, db_session):
    voice.client.calls.create.return_value = Mock(sid='CA1', status='queued')

    result = voice.initiate_call('07700900999', '07700900123', 'Abebe Kebede', 12)

    assert result['success'] is True
    assert result['call_sid'] == 'CA1'
    params = voice.client.calls.create.call_args.kwargs
    assert params['to'] == '+447700900999'
    assert params['url'].startswith('https://fundraising.test/webhooks/twilio/answer?')
    assert 'donor_phone=%2B447700900123' in params['url']
    assert params['recording_status_callback'] == 'https://fundraising.test/webhooks/twilio/recording?session_id=12'

    log = db_session.query(CallLog).one()
    assert log.purpose == 'donor_call'
    assert log.agent_phone == '+447700900999'
    assert log.session_id == 12


def test_initiate_call_twilio_error(voice, db_session):
    voice.client.calls.create.side_effect = TwilioRestException(400, '/Calls', msg='bad number', code=31002)

    result = voice.initiate_call('07700900999', '07700900123', 'Abebe', 1)

    assert result['success'] is False
    assert result['error_code'] == 31002
    assert result['error_info']['category'] == 'Number Format'
    assert db_session.query(CallLog).count() == 0


def test_notification_call(voice, db_session):
    voice.client.calls.create.return_value = Mock(sid='CA2', status='queued')

    result = voice.make_notification_call('07700900111', 'https://fundraising.test/twiml/notification?x=1')

    assert result == {'success': True, 'call_sid': 'CA2', 'error': None}
    assert db_session.query(CallLog).one().purpose == 'notification'


def test_call_recording_url(voice):
    voice.client.recordings.list.return_value = [Mock(sid='RE9')]
    assert voice.get_call_recording('CA1') == \
        'https://api.twilio.com/2010-04-01/Accounts/ACtest/Recordings/RE9.mp3'

    voice.client.recordings.list.return_value = []
    assert voice.get_call_recording('CA1') is None


def test_record_call_status(db_session):
    db_session.add(CallLog(call_sid='CA1', direction='outbound', phone_number='+447700900123'))
    db_session.commit()

    log = record_call_status(db_session, {
        'CallSid': 'CA1', 'CallStatus': 'failed', 'CallDuration': '0', 'ErrorCode': '486'
    })

    assert log.status == 'failed'
    assert log.error_code == '486'
    assert log.error_message == 'Donor line is busy'
    assert record_call_status(db_session, {'CallSid': 'CA404'}) is None
    assert record_call_status(db_session, {}) is None


def test_error_descriptions():
    assert TwilioErrorCodes.describe('30005')['category'] == 'Unknown Destination'
    assert TwilioErrorCodes.describe(99999)['message'] == 'Call failed with error code: 99999'
    assert TwilioErrorCodes.describe(None)['category'] == 'Unknown'


@pytest.mark.parametrize('code, action', [
    ('31005', 'retry'),
    (480, 'retry'),
    ('33001', 'update_number'),
    ('603', 'escalate'),
    ('11200', 'skip'),
    (None, 'skip'),
])
def test_recommended_action(code, action):
    assert TwilioErrorCodes.recommended_action(code) == action


def test_call_status_and_hangup(voice):
    voice.client.calls.return_value.fetch.return_value = Mock(
        status='completed', duration='61', start_time=None, end_time=None, direction='outbound-api',
        answered_by='human'
    )

    status = voice.get_call_status('CA1')

    assert status['status'] == 'completed'
    assert status['duration'] == 61
    assert voice.hangup_call('CA1') is True
    voice.client.calls.return_value.update.assert_called_once_with(status='completed')


def test_call_status_twilio_error(voice):
    voice.client.calls.return_value.fetch.side_effect = TwilioRestException(404, '/Calls/CA1', msg='not found')
    voice.client.calls.return_value.update.side_effect = TwilioRestException(404, '/Calls/CA1', msg='not found')

    assert voice.get_call_status('CA1') is None
    assert voice.hangup_call('CA1') is False
