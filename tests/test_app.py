import io
import pytest
from fundraising.app import app
from fundraising.models import (
    CallLog, Donor, DonorPaymentPlan, DonorSupportRequest, Payment, Pledge, PledgePayment
)


@pytest.fixture
def twilio_signed(mocker):
    """Accept every Twilio webhook signature."""
    return mocker.patch('fundraising.app.RequestValidator.validate', return_value=True)


def test_health_check(client):
    response = client.get('/health')

    assert response.status_code == 200
    data = response.get_json()
    assert data['components']['database'] == 'healthy'
    assert data['components']['sms_service'] == 'unhealthy'
    assert data['status'] == 'degraded'


def test_portal_login_and_dashboard(client, donor):
    response = client.post('/portal/login', json={'phone': '07700 900123'})

    assert response.status_code == 200
    data = response.get_json()
    assert data['donor']['balance'] == 300
    assert data['csrf_token']

    dashboard = client.get('/portal/dashboard').get_json()
    assert dashboard['donor']['name'] == 'Abebe Kebede'


def test_portal_login_unknown_phone(client, donor):
    response = client.post('/portal/login', data={'phone': '07700900999'})
    assert response.status_code == 401
    assert 'No donor account found' in response.get_json()['error']


def test_portal_requires_login(client, db_session):
    assert client.get('/portal/dashboard').status_code == 401
    assert client.get('/portal/plan').get_json() == {'error': 'Login required'}


def test_portal_token_login(client, donor, admin_headers):
    login_url = client.post(f'/admin/donors/{donor.id}/portal-token', headers=admin_headers).get_json()['login_url']
    assert login_url.startswith('https://fundraising.test/portal/login/')

    token = login_url.rsplit('/', 1)[1]
    response = client.get(f'/portal/login/{token}')
    assert response.status_code == 200
    assert response.get_json()['donor']['id'] == donor.id
    assert client.get('/portal/login/not-a-token').status_code == 401


def test_portal_payment_requires_csrf(client, donor_headers):
    response = client.post('/portal/payments', json={'payment_amount': '20', 'payment_method': 'cash'})
    assert response.status_code == 403
    assert response.get_json()['error'] == 'Invalid CSRF token'


def test_portal_payment_with_proof(client, donor, donor_headers, db_session, tmp_path, monkeypatch):
    monkeypatch.setitem(app.config, 'UPLOAD_FOLDER', str(tmp_path))

    response = client.post('/portal/payments', headers=donor_headers, content_type='multipart/form-data', data={
        'payment_amount': '20',
        'payment_method': 'bank_transfer',
        'reference': 'ABEBE',
        'payment_proof': (io.BytesIO(b'png'), 'slip.png'),
    })

    assert response.status_code == 201
    payment = db_session.get(Payment, response.get_json()['payment_id'])
    assert payment.status == 'pending'
    assert (tmp_path / payment.proof_path).exists()


def test_portal_payment_validation_error(client, donor_headers):
    response = client.post('/portal/payments', headers=donor_headers,
                           json={'payment_amount': '900', 'payment_method': 'cash'})
    assert response.status_code == 400
    assert 'remaining balance' in response.get_json()['error']


def test_portal_pledge_and_profile(client, donor, donor_headers, packages, db_session):
    response = client.post('/portal/pledges', headers=donor_headers, json={'pack': '0.25', 'client_uuid': 'abc'})
    assert response.status_code == 201
    assert db_session.get(Pledge, response.get_json()['pledge_id']).amount == 100

    response = client.post('/portal/profile', headers=donor_headers,
                           json={'preferred_language': 'ti', 'sms_opt_in': 'false'})
    assert response.status_code == 200
    donor = db_session.get(Donor, donor.id)
    db_session.refresh(donor)
    assert donor.preferred_language == 'ti'
    assert donor.sms_opt_in is False


def test_portal_support_request(client, donor, donor_headers, db_session):
    response = client.post('/portal/support', headers=donor_headers,
                           json={'category': 'payment', 'subject': 'Receipt', 'message': 'Please send'})

    assert response.status_code == 201
    assert db_session.query(DonorSupportRequest).one().subject == 'Receipt'


def test_portal_logout(client, donor_headers):
    client.post('/portal/logout')
    assert client.get('/portal/dashboard').status_code == 401


def test_admin_login(client, admin_user):
    response = client.post('/admin/login', json={'email': 'Admin@Church.test', 'password': 'secret123'})
    assert response.status_code == 200
    assert response.get_json()['user']['role'] == 'admin'

    response = client.post('/admin/login', json={'email': 'admin@church.test', 'password': 'wrong'})
    assert response.status_code == 401


def test_registrar_cannot_use_admin_routes(client, db_session, admin_user):
    admin_user.role = 'registrar'
    db_session.commit()
    with client.session_transaction() as sess:
        sess['admin_id'] = admin_user.id
        sess['admin_role'] = 'registrar'

    assert client.get('/admin/approvals').status_code == 403


def test_admin_approves_pending_pledge(client, donor, admin_headers, db_session):
    pledge = Pledge(donor_id=donor.id, donor_name=donor.name, donor_phone=donor.phone, amount=100, status='pending')
    db_session.add(pledge)
    db_session.commit()

    approvals = client.get('/admin/approvals').get_json()
    assert [p['id'] for p in approvals['pledges']] == [pledge.id]

    response = client.post(f'/admin/pledges/{pledge.id}/approve', headers=admin_headers, json={})
    assert response.get_json()['status'] == 'approved'

    response = client.post(f'/admin/pledges/{pledge.id}/approve', headers=admin_headers, json={})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Invalid pledge state'


def test_admin_unknown_action(client, admin_headers):
    response = client.post('/admin/pledges/1/archive', headers=admin_headers)
    assert response.status_code == 404
    assert response.get_json()['error'] == 'Unknown action'


def test_admin_payment_actions(client, donor, admin_headers, db_session):
    payment = Payment(donor_id=donor.id, amount=30, method='cash', status='pending')
    installment = PledgePayment(donor_id=donor.id, amount=50, payment_method='cash', status='pending')
    db_session.add_all([payment, installment])
    db_session.commit()

    assert client.post(f'/admin/payments/{payment.id}/reject', headers=admin_headers).get_json()['status'] == 'voided'
    response = client.post(f'/admin/pledge-payments/{installment.id}/approve', headers=admin_headers, json={})
    assert response.get_json()['status'] == 'confirmed'
    response = client.post(f'/admin/pledge-payments/{installment.id}/undo', headers=admin_headers,
                           json={'reason': 'typo'})
    assert response.get_json()['status'] == 'pending'

    assert client.post('/admin/payments/999/approve', headers=admin_headers).status_code == 404


def test_admin_creates_payment_plan(client, donor, admin_headers, db_session):
    response = client.post(f'/admin/donors/{donor.id}/payment-plan', headers=admin_headers, json={
        'start_date': '2025-06-01', 'total_amount': '300', 'total_payments': '12'
    })

    assert response.status_code == 201
    assert response.get_json()['monthly_amount'] == 25
    assert db_session.query(DonorPaymentPlan).count() == 1

    response = client.post(f'/admin/donors/{donor.id}/payment-plan', headers=admin_headers, json={
        'start_date': '2025-06-01', 'total_amount': '0', 'total_payments': '12'
    })
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Plan amount must be greater than zero'


def test_admin_message_requires_text(client, donor, admin_headers):
    response = client.post(f'/admin/donors/{donor.id}/message', headers=admin_headers, json={'message': ' '})
    assert response.status_code == 400


def test_admin_donor_messages(client, donor, admin_headers):
    data = client.get(f'/admin/donors/{donor.id}/messages').get_json()
    assert data['messages'] == []
    assert data['stats']['total_messages'] == 0


def test_admin_support_workflow(client, donor, admin_user, admin_headers, db_session):
    request = DonorSupportRequest(donor_id=donor.id, category='plan', subject='Change plan', message='Please')
    db_session.add(request)
    db_session.commit()

    listing = client.get('/admin/support').get_json()
    assert listing['counts']['open'] == 1

    response = client.post(f'/admin/support/{request.id}/reply', headers=admin_headers,
                           json={'message': 'Checking', 'is_internal': True})
    assert response.status_code == 201
    response = client.post(f'/admin/support/{request.id}/status', headers=admin_headers, json={'status': 'resolved'})
    assert response.get_json()['status'] == 'resolved'

    detail = client.get(f'/admin/support/{request.id}').get_json()
    assert [r['message'] for r in detail['replies']] == ['Checking']
    assert client.get('/admin/support/999').status_code == 404


def test_admin_totals(client, admin_headers, db_session):
    db_session.add(Payment(amount=10, method='cash', status='approved'))
    db_session.commit()

    totals = client.get('/admin/totals').get_json()
    assert totals['total_paid'] == 10
    assert totals['date_from'] is None

    ranged = client.get('/admin/totals?date_from=2000-01-01&date_to=2000-01-31').get_json()
    assert ranged['total_paid'] == 0
    assert ranged['date_filtered'] is True


def test_admin_sms_providers(client, admin_headers, sms_provider, mocker):
    mocker.patch('fundraising.sms_providers.VoodooSMSService._post', return_value='{"result": 200, "credit": 12}')

    data = client.get('/admin/sms/providers').get_json()
    assert data['providers'][0]['name'] == 'voodoosms'
    assert data['stats']['credits_remaining'] == 12

    response = client.post(f'/admin/sms/providers/{sms_provider.id}/test', headers=admin_headers)
    assert response.status_code == 200


def test_twilio_webhook_rejects_bad_signature(client, db_session):
    response = client.post('/webhooks/twilio/voice', data={'From': '+447700900123'})
    assert response.status_code == 403


def test_inbound_call_welcome(client, donor, twilio_signed, db_session):
    response = client.post('/webhooks/twilio/voice', data={'From': '+447700900123', 'CallSid': 'CA9'})

    assert response.mimetype == 'text/xml'
    assert 'Hello Abebe.' in response.get_data(as_text=True)
    assert db_session.query(CallLog).filter_by(call_sid='CA9').one().purpose == 'ivr'


def test_menu_balance_and_call_back(client, donor, twilio_signed, db_session):
    balance = client.post('/webhooks/twilio/menu', data={'Digits': '1', 'From': '+447700900123'})
    assert 'outstanding balance is 300 pounds' in balance.get_data(as_text=True)

    call_back = client.post('/webhooks/twilio/menu', data={'Digits': '3', 'From': '+447700900123'})
    assert 'will call you back' in call_back.get_data(as_text=True)
    assert db_session.query(DonorSupportRequest).one().priority == 'high'


def test_answer_bridges_to_donor(client, twilio_signed):
    response = client.get('/webhooks/twilio/answer?donor_phone=%2B447700900123&donor_name=Abebe')
    assert '<Number>+447700900123</Number>' in response.get_data(as_text=True)


def test_status_callback(client, twilio_signed, db_session):
    db_session.add(CallLog(call_sid='CA1', direction='outbound', phone_number='+447700900123'))
    db_session.commit()

    response = client.post('/webhooks/twilio/status', data={'CallSid': 'CA1', 'CallStatus': 'completed',
                                                            'CallDuration': '42'})

    assert response.get_json() == {'status': 'success'}
    log = db_session.query(CallLog).filter_by(call_sid='CA1').one()
    db_session.refresh(log)
    assert log.duration == 42


def test_notification_twiml(client, twilio_signed):
    response = client.get('/twiml/notification?request_id=5')
    assert 'support request number 5' in response.get_data(as_text=True)


def test_ultramsg_webhook(client, donor, db_session):
    assert client.post('/webhooks/ultramsg').get_json()['message'] == 'Webhook is active'

    response = client.post('/webhooks/ultramsg', json={
        'event_type': 'message_received',
        'data': {'from': '447700900123@c.us', 'body': 'Selam', 'type': 'chat', 'id': 'x1'}
    })
    assert response.get_json()['donor_id'] == donor.id


def test_admin_records_and_approves_installment(client, donor, admin_headers, db_session):
    pledge = Pledge(donor_id=donor.id, donor_name=donor.name, amount=400, status='approved')
    db_session.add(pledge)
    db_session.commit()

    response = client.post(f'/admin/donors/{donor.id}/pledge-payments', headers=admin_headers, json={
        'amount': '75', 'payment_method': 'bank_transfer', 'reference': 'ABEBE-MAY'
    })

    assert response.status_code == 201
    data = response.get_json()
    assert data['pledge_id'] == pledge.id
    assert data['status'] == 'pending'
    pending = client.get('/admin/approvals').get_json()['pledge_payments']
    assert [p['reference'] for p in pending] == ['ABEBE-MAY']

    client.post(f"/admin/pledge-payments/{data['payment_id']}/approve", headers=admin_headers, json={})
    donor = db_session.get(Donor, donor.id)
    assert donor.total_paid == 75
    assert donor.balance == 325


def test_admin_record_installment_errors(client, donor, admin_headers):
    response = client.post(f'/admin/donors/{donor.id}/pledge-payments', headers=admin_headers,
                           json={'amount': '75', 'payment_method': 'bank_transfer'})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Donor has no approved pledge'

    response = client.post('/admin/donors/999/pledge-payments', headers=admin_headers,
                           json={'amount': '75', 'payment_method': 'cash'})
    assert response.status_code == 404


def test_admin_undo_approved_pledge_and_payment(client, donor, admin_headers, floor_grid, db_session):
    pledge = Pledge(donor_id=donor.id, donor_name=donor.name, amount=200, status='pending')
    payment = Payment(donor_name='Walk-in', amount=100, method='cash', status='pending')
    db_session.add_all([pledge, payment])
    db_session.commit()
    client.post(f'/admin/pledges/{pledge.id}/approve', headers=admin_headers, json={})
    client.post(f'/admin/payments/{payment.id}/approve', headers=admin_headers, json={})

    stats = client.get('/admin/floor-grid').get_json()
    assert stats['total_cells'] == 10
    assert stats['available_cells'] == 7

    assert client.post(f'/admin/pledges/{pledge.id}/undo', headers=admin_headers,
                       json={'reason': 'duplicate'}).get_json()['status'] == 'pending'
    assert client.post(f'/admin/payments/{payment.id}/undo', headers=admin_headers,
                       json={}).get_json()['status'] == 'pending'
    assert client.get('/admin/floor-grid').get_json()['available_cells'] == 10


def test_public_floor_grid(client, floor_grid, db_session):
    floor_grid.allocate(100, 'Giver', 'paid')
    db_session.commit()

    data = client.get('/floor-grid').get_json()

    assert [cell['cell_id'] for cell in data['cells']] == ['A-1']
    assert data['summary']['paid_cells'] == 1
    assert data['summary']['total_possible_area'] == 2.5


@pytest.fixture
def fake_messaging(mocker):
    messaging = mocker.Mock()
    messaging.send_direct.return_value = {'success': True}
    mocker.patch('fundraising.app.get_messaging', return_value=messaging)
    return messaging


def test_menu_general_options_for_unknown_caller(client, twilio_signed, fake_messaging, db_session):
    about = client.post('/webhooks/twilio/menu', data={'Digits': '1', 'From': '+447911000000'})
    assert 'join us for worship' in about.get_data(as_text=True)

    info = client.post('/webhooks/twilio/menu', data={'Digits': '2', 'From': '+447911000000'})
    assert 'The message has been sent to your phone.' in info.get_data(as_text=True)
    assert fake_messaging.send_direct.call_args[1]['source_type'] == 'ivr_info_request'

    donate = client.post('/webhooks/twilio/menu', data={'Digits': '3', 'From': '+447911000000'})
    assert 'I will repeat the bank details.' in donate.get_data(as_text=True)


def test_menu_keypad_payment_flow(client, donor, twilio_signed, fake_messaging, db_session):
    db_session.add(Pledge(donor_id=donor.id, donor_name=donor.name, amount=400, status='approved'))
    db_session.commit()

    start = client.post('/webhooks/twilio/menu', data={'Digits': '5', 'From': '+447700900123'})
    assert '/webhooks/twilio/payment"' in start.get_data(as_text=True)

    amount = client.post('/webhooks/twilio/payment', data={'Digits': '60', 'From': '+447700900123'})
    assert '/webhooks/twilio/payment/confirm?amount=60' in amount.get_data(as_text=True)

    confirm = client.post('/webhooks/twilio/payment/confirm?amount=60',
                          data={'Digits': '1', 'From': '+447700900123', 'CallSid': 'CA77'})
    assert 'has been recorded' in confirm.get_data(as_text=True)

    payment = db_session.query(PledgePayment).one()
    assert (payment.status, payment.amount, payment.donor_id) == ('pending', 60, donor.id)
    assert payment.notes == 'IVR Phone Payment - Call SID: CA77'
