import pytest
import requests
from unittest.mock import Mock
from fundraising.models import SMSLog, SMSProvider
from fundraising.sms_providers import (
    MAX_MESSAGE_LENGTH, TheSMSWorksService, VoodooSMSService, calculate_credits, process_template
)


@pytest.fixture
def voodoo(db_session, sms_provider):
    return VoodooSMSService.from_provider(db_session, sms_provider)


def test_calculate_credits():
    assert calculate_credits('a' * 160) == 1
    assert calculate_credits('a' * 161) == 2
    assert calculate_credits('ሰ' * 70) == 1
    assert calculate_credits('ሰ' * 71) == 2


def test_process_template_drops_unknown_placeholders():
    assert process_template('Hi {name}, {missing}', {'name': 'Abebe'}) == 'Hi Abebe,'
    assert process_template('£{amount}', {'amount': 10}) == '£10'


def test_missing_credentials():
    with pytest.raises(ValueError, match="Missing VoodooSMS credentials"):
        VoodooSMSService('', 'secret')


def test_sender_id_is_truncated():
    service = VoodooSMSService('uid', 'pass', sender_id='AVeryLongSenderName')
    assert service.sender_id == 'AVeryLongSe'


def test_voodoo_parse_json_success():
    service = VoodooSMSService('uid', 'pass')
    result = service.parse_response('{"result": "200 OK", "reference_number": "REF1", "credit": 42}')
    assert result['success'] is True
    assert result['message_id'] == 'REF1'
    assert result['credits'] == 42.0


def test_voodoo_parse_json_failure():
    service = VoodooSMSService('uid', 'pass')
    result = service.parse_response('{"result": 401, "resultText": "Authentication failed"}')
    assert result['success'] is False
    assert result['error'] == 'Authentication failed'
    assert result['error_code'] == '401'


def test_voodoo_parse_xml_and_plain_text():
    service = VoodooSMSService('uid', 'pass')

    xml = service.parse_response('<xml><result>200</result><messageId>abc</messageId></xml>')
    assert xml['success'] is True
    assert xml['message_id'] == 'abc'

    plain = service.parse_response('OK 12345')
    assert plain['success'] is True
    assert plain['message_id'] == '12345'

    assert service.parse_response('garbage')['error_code'] == 'INVALID_RESPONSE'
    assert service.parse_response('')['error_code'] == 'CONNECTION_FAILED'


def test_send_rejects_invalid_phone_and_long_message(voodoo):
    assert voodoo.send('123', 'Hello')['error_code'] == 'INVALID_PHONE'
    assert voodoo.send('07700900123', 'x' * (MAX_MESSAGE_LENGTH + 1))['error_code'] == 'MESSAGE_TOO_LONG'


def test_send_success_logs_and_updates_provider(voodoo, db_session, sms_provider, mocker):
    post = mocker.patch.object(voodoo, '_post', return_value='{"result": 200, "reference_number": "R1"}')

    result = voodoo.send('07700 900123', 'Hello', donor_id=7, source_type='test')

    assert result['success'] is True
    assert result['message_id'] == 'R1'
    assert result['credits_used'] == 1
    assert result['phone_number'] == '447700900123'
    params = post.call_args[0][1]
    assert params['dest'] == '447700900123'
    assert params['orig'] == 'Church'

    log = db_session.query(SMSLog).one()
    assert log.status == 'sent'
    assert log.donor_id == 7
    assert log.cost_pence == 3.5
    provider = db_session.get(SMSProvider, sms_provider.id)
    assert provider.failure_count == 0
    assert provider.last_success_at is not None


def test_send_connection_error_counts_failure(voodoo, db_session, sms_provider, mocker):
    mocker.patch.object(voodoo, '_post', side_effect=requests.ConnectionError('down'))

    result = voodoo.send('07700900123', 'Hello')

    assert result['success'] is False
    assert result['error_code'] == 'CONNECTION_FAILED'
    assert db_session.query(SMSLog).one().status == 'failed'
    provider = db_session.get(SMSProvider, sms_provider.id)
    assert provider.failure_count == 1
    assert provider.last_error == 'Failed to connect to VoodooSMS API'


def test_voodoo_balance_and_test_connection(mocker):
    service = VoodooSMSService('uid', 'pass')
    mocker.patch.object(service, '_post', return_value='{"result": 200, "credit": 99.6}')

    assert service.get_balance() == {'success': True, 'credits': 100, 'error': None}
    result = service.test_connection()
    assert result['success'] is True
    assert result['credits'] == 100


def test_smsworks_token_request_retried_three_times(mocker):
    mocker.patch('tenacity.nap.time.sleep')
    post = mocker.patch('fundraising.sms_providers.requests.post', side_effect=requests.ConnectionError('down'))

    result = TheSMSWorksService('customer', 'key').send('07700900123', 'Hello')

    assert result['error_code'] == 'CONNECTION_FAILED'
    assert post.call_count == 3


def test_smsworks_jwt_is_cached(mocker):
    service = TheSMSWorksService('customer', 'key')
    post = mocker.patch('fundraising.sms_providers.requests.post',
                        return_value=Mock(json=Mock(return_value={'token': 'JWT abc'})))

    assert service.get_jwt_token() == 'JWT abc'
    assert service.get_jwt_token() == 'JWT abc'
    assert post.call_count == 1


def test_smsworks_send_success(mocker):
    service = TheSMSWorksService('customer', 'key', sender_id='Church')
    request = mocker.patch.object(service, '_request', return_value=Mock(
        status_code=201, json=Mock(return_value={'messageid': 'M1', 'status': 'SENT'})
    ))

    result = service.send('07700900123', 'Hello', donor_id=3)

    assert result['success'] is True
    assert result['message_id'] == 'M1'
    payload = request.call_args[0][1]
    assert payload['destination'] == '447700900123'
    assert payload['tag'] == 'donor_3'


def test_smsworks_unauthorised_clears_token(mocker):
    service = TheSMSWorksService('customer', 'key')
    service.jwt_token = 'JWT stale'
    mocker.patch.object(service, '_request', return_value=Mock(
        status_code=401, json=Mock(return_value={'message': 'Unauthorized'})
    ))

    result = service.send('07700900123', 'Hello')

    assert result['success'] is False
    assert result['error'] == 'Unauthorized'
    assert service.jwt_token is None


def test_smsworks_balance(mocker):
    service = TheSMSWorksService('customer', 'key')
    mocker.patch.object(service, '_request', return_value=Mock(json=Mock(return_value={'credits': 12.5})))
    assert service.get_balance() == {'success': True, 'credits': 12.5, 'error': None}


def test_send_batch(voodoo, mocker):
    mocker.patch.object(voodoo, '_post', return_value='{"result": 200, "reference_number": "R1"}')
    sleep = mocker.patch('fundraising.sms_providers.time.sleep')

    results = voodoo.send_batch([
        {'phone': '07700900123', 'message': 'One', 'donor_id': 1},
        {'phone': '123', 'message': 'Two'},
    ])

    assert [r['phone'] for r in results] == ['07700900123', '123']
    assert results[0]['result']['success'] is True
    assert results[1]['result']['error_code'] == 'INVALID_PHONE'
    assert sleep.call_count == 2
