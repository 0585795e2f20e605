import pytest
from datetime import datetime
from fundraising.models import SMSBlacklist, SMSLog, SMSQueue, SMSTemplate
from fundraising.sms_helper import SMSHelper

SENT = '{"result": 200, "reference_number": "R1"}'


@pytest.fixture
def helper(db_session, sms_provider, sms_settings):
    return SMSHelper(db_session)


@pytest.fixture
def gateway(mocker):
    return mocker.patch('fundraising.sms_providers.VoodooSMSService._post', return_value=SENT)


def test_settings_fall_back_to_defaults(db_session):
    helper = SMSHelper(db_session)
    assert helper.settings['sms_quiet_hours_start'] == '21:00'
    assert helper.settings['sms_enabled'] == '1'
    assert helper.is_ready() is False


def test_quiet_hours_cross_midnight(db_session):
    helper = SMSHelper(db_session)
    assert helper.is_quiet_hours(datetime(2025, 1, 1, 22, 0)) is True
    assert helper.is_quiet_hours(datetime(2025, 1, 1, 8, 59)) is True
    assert helper.is_quiet_hours(datetime(2025, 1, 1, 9, 0)) is False
    assert helper.is_quiet_hours(datetime(2025, 1, 1, 12, 0)) is False


def test_quiet_hours_same_day_window(db_session):
    helper = SMSHelper(db_session)
    helper.settings.update({'sms_quiet_hours_start': '12:00', 'sms_quiet_hours_end': '14:00'})
    assert helper.is_quiet_hours(datetime(2025, 1, 1, 13, 0)) is True
    assert helper.is_quiet_hours(datetime(2025, 1, 1, 15, 0)) is False


def test_quiet_hours_equal_start_and_end_never_quiet(db_session, sms_settings):
    helper = SMSHelper(db_session)
    assert helper.settings['sms_quiet_hours_start'] == helper.settings['sms_quiet_hours_end'] == '00:00'
    for hour in (0, 6, 12, 23):
        assert helper.is_quiet_hours(datetime(2025, 1, 1, hour, 30)) is False
    assert helper.is_quiet_hours(datetime(2025, 1, 1, 0, 0)) is False

    helper.settings.update({'sms_quiet_hours_start': '21:00', 'sms_quiet_hours_end': '21:00'})
    assert helper.is_quiet_hours(datetime(2025, 1, 1, 21, 0)) is False


def test_localized_message_falls_back_to_english():
    template = SMSTemplate(template_key='x', message_en='Hello', message_am='ሰላም')
    assert SMSHelper.get_localized_message(template, 'am') == 'ሰላም'
    assert SMSHelper.get_localized_message(template, 'ti') == 'Hello'
    assert SMSHelper.get_localized_message(template, None) == 'Hello'


def test_can_receive_sms(helper, donor, db_session):
    assert helper.can_receive_sms(donor)['success'] is True

    db_session.add(SMSBlacklist(phone_number=donor.phone, reason='STOP'))
    db_session.commit()
    assert helper.can_receive_sms(donor)['error'] == 'Phone number is blacklisted'

    donor.sms_opt_in = False
    assert helper.can_receive_sms(donor)['error'] == 'Donor has opted out of SMS'


def test_send_now_success(helper, gateway, db_session):
    result = helper.send_now('07700900123', 'Hello', source_type='test')

    assert result == {'success': True, 'message': 'SMS sent successfully', 'message_id': 'R1', 'credits_used': 1}
    assert db_session.query(SMSLog).count() == 1


def test_send_now_disabled(helper, gateway):
    helper.settings['sms_enabled'] = '0'
    assert helper.send_now('07700900123', 'Hello') == {'success': False, 'error': 'SMS sending is disabled'}
    gateway.assert_not_called()


def test_send_now_without_provider(db_session, sms_settings):
    result = SMSHelper(db_session).send_now('07700900123', 'Hello')
    assert result['error'] == 'SMS system not ready. No active SMS provider'


def test_send_now_queues_in_quiet_hours(helper, gateway, donor, db_session, mocker):
    mocker.patch.object(helper, 'is_quiet_hours', return_value=True)

    result = helper.send_now(donor.phone, 'Hello', donor_id=donor.id, source_type='reminder')

    assert result['queued'] is True
    queued = db_session.get(SMSQueue, result['queue_id'])
    assert queued.status == 'pending'
    assert queued.recipient_name == donor.name
    assert queued.source_type == 'reminder'
    gateway.assert_not_called()


def test_force_immediate_ignores_quiet_hours(helper, gateway, mocker):
    mocker.patch.object(helper, 'is_quiet_hours', return_value=True)
    assert helper.send_now('07700900123', 'Hello', force_immediate=True)['success'] is True
    gateway.assert_called_once()


def test_send_now_daily_limit(helper, gateway, db_session):
    helper.settings['sms_daily_limit'] = '1'
    db_session.add(SMSLog(phone_number='447700900123', message='earlier', status='sent', sent_at=datetime.utcnow()))
    db_session.commit()

    assert helper.send_now('07700900123', 'Hello') == {'success': False, 'error': 'Daily SMS limit reached'}
    gateway.assert_not_called()


def test_send_now_blacklisted(helper, gateway, db_session):
    db_session.add(SMSBlacklist(phone_number='07700900123'))
    db_session.commit()
    assert helper.send_now('07700900123', 'Hello')['error'] == 'Phone number is blacklisted'


def test_send_from_template_fills_variables(helper, gateway, donor, templates, db_session):
    result = helper.send_from_template('payment_confirmed', donor.id, {'amount': '50.00'}, source_type='payment')

    assert result['success'] is True
    sent = gateway.call_args[0][1]['msg']
    assert sent == 'Dear Abebe Kebede, we received £50.00. Thank you!'
    template = db_session.get(SMSTemplate, templates['payment_confirmed'].id)
    assert template.usage_count == 1
    assert template.last_used_at is not None


def test_send_from_template_uses_donor_language(helper, gateway, donor, templates):
    donor.preferred_language = 'am'
    helper.send_from_template('payment_reminder_3day', donor.id, {'amount': '20.00', 'due_date': '1 Jan 2026'})
    assert gateway.call_args[0][1]['msg'] == 'ውድ Abebe Kebede, £20.00 1 Jan 2026'


def test_send_from_template_errors(helper, donor, templates):
    assert 'not found' in helper.send_from_template('nope', donor.id)['error']
    assert helper.send_from_template('payment_confirmed', 999)['error'] == 'Donor #999 not found'

    donor.sms_opt_in = False
    assert helper.send_from_template('payment_confirmed', donor.id)['error'] == 'Donor has opted out of SMS'


def test_send_from_template_can_queue(helper, gateway, donor, templates, db_session):
    result = helper.send_from_template('pledge_approved', donor.id, {'amount': '400.00'}, queue=True)

    assert result['queued'] is True
    queued = db_session.get(SMSQueue, result['queue_id'])
    assert queued.message == 'Dear Abebe Kebede, your pledge of £400.00 is approved.'
    assert queued.template_id == templates['pledge_approved'].id
    gateway.assert_not_called()


def test_send_direct_honours_opt_out(helper, gateway, donor, mocker):
    mocker.patch.object(helper, 'is_quiet_hours', return_value=True)
    assert helper.send_direct(donor.phone, 'Hi', donor_id=donor.id)['success'] is True

    donor.sms_opt_in = False
    assert helper.send_direct(donor.phone, 'Hi', donor_id=donor.id)['error'] == 'Donor has opted out of SMS'


def test_get_stats(helper, db_session, mocker):
    db_session.add_all([
        SMSLog(phone_number='447700900123', message='a', status='sent', cost_pence=3.5, sent_at=datetime.utcnow()),
        SMSLog(phone_number='447700900123', message='b', status='failed', cost_pence=0, sent_at=datetime.utcnow()),
        SMSQueue(phone_number='447700900123', message='c', status='pending'),
    ])
    db_session.commit()
    mocker.patch.object(helper, 'get_balance', return_value={'success': True, 'credits': 250})

    stats = helper.get_stats()

    assert stats['today_sent'] == 1
    assert stats['today_failed'] == 1
    assert stats['today_cost'] == 3.5
    assert stats['pending_queue'] == 1
    assert stats['daily_limit'] == 100
    assert stats['credits_remaining'] == 250
