from flask import Flask, Response, request, jsonify, session
from flask_migrate import Migrate
from twilio.request_validator import RequestValidator
from flask_apscheduler import APScheduler
from werkzeug.exceptions import HTTPException
from sqlalchemy import text
import functools
import logging
from logging.config import dictConfig
from datetime import datetime, timedelta
import os
import ssl
import certifi
import urllib3
from .config import Config
from .rate_limiter import limiter, api_limiter

# Configure SSL for requests
urllib3.util.ssl_.DEFAULT_CERTS = certifi.where()


def create_ssl_context():
    """Create a secure SSL context with system certificates."""
    context = ssl.create_default_context(cafile=certifi.where())
    context.verify_mode = ssl.CERT_REQUIRED
    context.check_hostname = True
    return context


# Configure logging
dictConfig({
    'version': 1,
    'formatters': {
        'default': {
            'format': '[%(asctime)s] %(levelname)s in %(module)s: %(message)s',
        }
    },
    'handlers': {
        'wsgi': {
            'class': 'logging.StreamHandler',
            'stream': 'ext://flask.logging.wsgi_errors_stream',
            'formatter': 'default'
        }
    },
    'root': {
        'level': 'INFO',
        'handlers': ['wsgi']
    }
})

app = Flask(__name__)
app.config.from_object(Config)
scheduler = APScheduler()

# Initialize rate limiter
limiter.init_app(app)
api_limiter.configure(app.config['SMS_MESSAGES_PER_SECOND'], app.config['SMS_MESSAGES_PER_DAY'])

# Import models and initialize db
from .models import db, CallLog, Donor, Payment, Pledge, PledgePayment

db.init_app(app)
migrate = Migrate(app, db)

from .approvals import ApprovalService
from .auth import (
    admin_required, authenticate_admin, csrf_protect, current_admin_id, current_donor_id,
    donor_required, generate_csrf_token, login_admin, login_donor
)
from .donor_portal import DonorPortalService
from .financial import FinancialCalculator
from .floor_grid import FloorGridAllocator
from .ivr import PhoneMenu
from .messaging import MessagingHelper
from .notifications import SupportNotifier
from .payment_plans import PaymentPlanService
from .scheduler import ReminderScheduler, SMSQueueProcessor, cleanup_old_records as cleanup_records
from .sms_factory import SMSServiceFactory
from .sms_helper import SMSHelper
from .support import SupportRequestService
from .voice_service import TwilioVoiceService, record_call_status
from .whatsapp_service import record_incoming_message

# Set up SSL context for Twilio requests
ssl_context = create_ssl_context()
urllib3.util.ssl_.SSL_CONTEXT_FACTORY = lambda: ssl_context

import twilio.http.http_client
twilio.http.http_client.CA_BUNDLE = certifi.where()


def get_sms_helper() -> SMSHelper:
    return SMSHelper(db.session, SMSServiceFactory(db.session), timezone=app.config['TIMEZONE'])


def get_messaging() -> MessagingHelper:
    return MessagingHelper(db.session, sms_helper=get_sms_helper())


def get_voice_service():
    try:
        return TwilioVoiceService(
            app.config['TWILIO_ACCOUNT_SID'],
            app.config['TWILIO_AUTH_TOKEN'],
            app.config['TWILIO_FROM_NUMBER'],
            app.config['APP_BASE_URL'],
            db_session=db.session,
            record_calls=app.config['TWILIO_RECORD_CALLS']
        )
    except ValueError as e:
        app.logger.warning(f"Twilio voice service unavailable: {str(e)}")
        return None


def get_notifier(messaging: MessagingHelper) -> SupportNotifier:
    return SupportNotifier(
        app.config['ADMIN_NOTIFY_PHONE'],
        app.config['APP_BASE_URL'],
        whatsapp_service=messaging.whatsapp_service,
        voice_service=get_voice_service(),
        sms_helper=messaging.sms_helper
    )


def get_portal(notifier=None) -> DonorPortalService:
    return DonorPortalService(
        db.session,
        notifier=notifier,
        upload_folder=app.config['UPLOAD_FOLDER'],
        max_upload_bytes=app.config['MAX_CONTENT_LENGTH'],
        token_days=app.config['PORTAL_TOKEN_DAYS']
    )


def get_phone_menu(with_messaging: bool = False) -> PhoneMenu:
    messaging = get_messaging() if with_messaging else None
    return PhoneMenu(
        db.session,
        app.config['APP_BASE_URL'],
        messaging=messaging,
        notifier=get_notifier(messaging) if messaging else None,
        bank_details={
            'account_name': app.config['BANK_ACCOUNT_NAME'],
            'sort_code': app.config['BANK_SORT_CODE'],
            'account_number': app.config['BANK_ACCOUNT_NUMBER']
        },
        caller_id=app.config['TWILIO_FROM_NUMBER'],
        church_info={
            'website': app.config['CHURCH_WEBSITE'],
            'donation_website': app.config['DONATION_WEBSITE'],
            'admin_name': app.config['CHURCH_ADMIN_NAME'],
            'admin_phone': app.config['CHURCH_ADMIN_PHONE']
        }
    )


def _payload() -> dict:
    if request.is_json:
        return request.get_json(silent=True) or {}
    return request.form.to_dict()


def _flag(value) -> bool:
    return str(value).lower() in ('1', 'true', 'yes', 'on')


def _twiml(response) -> Response:
    return Response(str(response), mimetype='text/xml')


def _result(result: dict, created: bool = False):
    if result.get('success'):
        return jsonify(result), 201 if created else 200
    return jsonify({'error': result.get('error')}), 400


def _donor_json(donor: Donor) -> dict:
    return {
        'id': donor.id,
        'name': donor.name,
        'phone': donor.phone,
        'total_pledged': float(donor.total_pledged or 0),
        'total_paid': float(donor.total_paid or 0),
        'balance': float(donor.balance or 0),
        'payment_status': donor.payment_status
    }


# Error handlers
@app.errorhandler(429)
def ratelimit_handler(e):
    """Handle rate limit exceeded errors."""
    app.logger.warning(f"Rate limit exceeded: {str(e)}")
    return jsonify({
        'error': 'Rate limit exceeded',
        'message': str(e),
        'retry_after': e.description
    }), 429


@app.errorhandler(ValueError)
def bad_request_handler(e):
    db.session.rollback()
    return jsonify({'error': str(e)}), 400


@app.errorhandler(LookupError)
def not_found_handler(e):
    db.session.rollback()
    return jsonify({'error': str(e).strip("'")}), 404


@app.errorhandler(Exception)
def internal_error_handler(e):
    if isinstance(e, HTTPException):
        return jsonify({'error': e.name}), e.code
    db.session.rollback()
    app.logger.error(f"Unhandled error on {request.path}: {str(e)}")
    return jsonify({'error': 'Internal server error'}), 500


# Schedule background tasks
@scheduler.task('interval', id='process_sms_queue', minutes=5)
def process_sms_queue():
    """Send due messages from the SMS queue."""
    with app.app_context():
        try:
            result = SMSQueueProcessor(db.session, get_sms_helper()).process_queue()
            app.logger.info(f"SMS queue processing complete: {result}")
        except Exception as e:
            app.logger.error(f"Error in SMS queue processing: {str(e)}")


@scheduler.task('cron', id='payment_reminders', hour=10, minute=0)
def schedule_payment_reminders():
    """Flag overdue installments and queue the day's reminders."""
    with app.app_context():
        try:
            overdue = PaymentPlanService(db.session).mark_overdue()
            result = ReminderScheduler(
                db.session, get_sms_helper(), app.config['APP_BASE_URL'], app.config['TIMEZONE']
            ).schedule_payment_reminders()
            app.logger.info(f"Payment reminders complete: {result}, {overdue} installments overdue")
        except Exception as e:
            app.logger.error(f"Error scheduling payment reminders: {str(e)}")


@scheduler.task('cron', id='cleanup_records', hour=1, minute=0)
def cleanup_old_records():
    """Clean up old records daily."""
    with app.app_context():
        try:
            result = cleanup_records(db.session)
            app.logger.info(f"Database cleanup complete: {result}")
        except Exception as e:
            app.logger.error(f"Error in database cleanup: {str(e)}")


def validate_twilio_request(f):
    """Decorator to validate incoming Twilio requests."""
    @functools.wraps(f)
    def decorated_function(*args, **kwargs):
        # Skip validation in debug mode
        if app.debug:
            app.logger.debug("Debug mode: Skipping Twilio request validation")
            return f(*args, **kwargs)

        validator = RequestValidator(app.config['TWILIO_AUTH_TOKEN'] or '')

        request_valid = validator.validate(
            request.url,
            request.form,
            request.headers.get('X-Twilio-Signature', '')
        )

        if request_valid:
            return f(*args, **kwargs)
        else:
            app.logger.warning("Invalid Twilio request signature")
            return jsonify({'error': 'Invalid request signature'}), 403

    return decorated_function


# Donor portal

@app.route('/portal/csrf-token', methods=['GET'])
def portal_csrf_token():
    return jsonify({'csrf_token': generate_csrf_token()})


@app.route('/portal/login', methods=['POST'])
@limiter.limit("10/minute")
def portal_login():
    result = get_portal().login_by_phone(_payload().get('phone', ''))
    if not result['success']:
        return jsonify({'error': result['error']}), 401

    login_donor(result['donor'])
    return jsonify({
        'message': 'Logged in',
        'donor': _donor_json(result['donor']),
        'csrf_token': generate_csrf_token()
    })


@app.route('/portal/login/<token>', methods=['GET'])
@limiter.limit("10/minute")
def portal_token_login(token):
    result = get_portal().login_by_token(token)
    if not result['success']:
        return jsonify({'error': result['error']}), 401

    login_donor(result['donor'])
    return jsonify({
        'message': 'Logged in',
        'donor': _donor_json(result['donor']),
        'csrf_token': generate_csrf_token()
    })


@app.route('/portal/logout', methods=['POST'])
def portal_logout():
    session.clear()
    return jsonify({'message': 'Logged out'})


@app.route('/portal/dashboard', methods=['GET'])
@donor_required
def portal_dashboard():
    return jsonify(get_portal().get_dashboard(current_donor_id()))


@app.route('/portal/payments', methods=['POST'])
@donor_required
@csrf_protect
@limiter.limit("20/hour")
def portal_make_payment():
    data = _payload()
    result = get_portal().make_payment(
        current_donor_id(),
        data.get('payment_amount'),
        data.get('payment_method', ''),
        reference=data.get('reference', ''),
        notes=data.get('notes', ''),
        proof=request.files.get('payment_proof')
    )
    return _result(result, created=True)


@app.route('/portal/pledges', methods=['POST'])
@donor_required
@csrf_protect
@limiter.limit("20/hour")
def portal_update_pledge():
    data = _payload()
    result = get_portal().update_pledge(
        current_donor_id(),
        data.get('pack', ''),
        custom_amount=data.get('custom_amount'),
        notes=data.get('notes', ''),
        client_uuid=data.get('client_uuid')
    )
    return _result(result, created=True)


@app.route('/portal/plan', methods=['GET'])
@donor_required
def portal_payment_plan():
    plan = get_portal().get_payment_plan(current_donor_id())
    return jsonify({'plan': plan})


@app.route('/portal/profile', methods=['POST'])
@donor_required
@csrf_protect
def portal_update_profile():
    data = _payload()
    result = get_portal().update_profile(
        current_donor_id(),
        name=data.get('name'),
        preferred_language=data.get('preferred_language'),
        preferred_payment_method=data.get('preferred_payment_method'),
        sms_opt_in=_flag(data['sms_opt_in']) if 'sms_opt_in' in data else None,
        preferred_channel=data.get('preferred_channel')
    )
    return _result(result)


@app.route('/portal/support', methods=['POST'])
@donor_required
@csrf_protect
@limiter.limit("10/hour")
def portal_support_request():
    data = _payload()
    notifier = get_notifier(get_messaging())
    result = get_portal(notifier).submit_support_request(
        current_donor_id(),
        data.get('category', 'general'),
        data.get('subject', ''),
        data.get('message', '')
    )
    return _result(result, created=True)


# Admin

@app.route('/admin/login', methods=['POST'])
@limiter.limit("10/minute")
def admin_login():
    data = _payload()
    user = authenticate_admin(db.session, data.get('email', ''), data.get('password', ''))
    if user is None:
        return jsonify({'error': 'Invalid email or password'}), 401

    login_admin(user)
    return jsonify({
        'message': 'Logged in',
        'user': {'id': user.id, 'name': user.name, 'role': user.role},
        'csrf_token': generate_csrf_token()
    })


@app.route('/admin/approvals', methods=['GET'])
@admin_required
def admin_pending_approvals():
    pledges = Pledge.query.filter_by(status='pending').order_by(Pledge.created_at).all()
    payments = Payment.query.filter_by(status='pending').order_by(Payment.created_at).all()
    installments = PledgePayment.query.filter_by(status='pending').order_by(PledgePayment.created_at).all()
    return jsonify({
        'pledges': [
            {'id': p.id, 'donor_name': p.donor_name, 'donor_phone': p.donor_phone, 'amount': p.amount,
             'type': p.type, 'source': p.source, 'created_at': p.created_at.isoformat()}
            for p in pledges
        ],
        'payments': [
            {'id': p.id, 'donor_name': p.donor_name, 'amount': p.amount, 'method': p.method,
             'reference': p.reference, 'proof_path': p.proof_path, 'created_at': p.created_at.isoformat()}
            for p in payments
        ],
        'pledge_payments': [
            {'id': p.id, 'donor_id': p.donor_id, 'pledge_id': p.pledge_id, 'amount': p.amount,
             'method': p.payment_method, 'reference': p.reference_number, 'created_at': p.created_at.isoformat()}
            for p in installments
        ]
    })


def _approvals(with_messaging: bool = False) -> ApprovalService:
    return ApprovalService(db.session, messaging=get_messaging() if with_messaging else None)


@app.route('/admin/pledges/<int:pledge_id>/<action>', methods=['POST'])
@admin_required
@csrf_protect
def admin_pledge_action(pledge_id, action):
    data = _payload()
    if action == 'approve':
        notify = _flag(data.get('notify'))
        pledge = _approvals(notify).approve_pledge(pledge_id, current_admin_id(), notify=notify)
    elif action == 'reject':
        pledge = _approvals().reject_pledge(pledge_id, current_admin_id())
    elif action == 'undo':
        pledge = _approvals().undo_pledge(pledge_id, current_admin_id(), data.get('reason', ''))
    elif action == 'update':
        package_id = data.get('package_id')
        pledge = _approvals().update_pledge(
            pledge_id, current_admin_id(),
            data.get('donor_name', ''), data.get('donor_phone', ''), data.get('amount'),
            notes=data.get('notes', ''), package_id=int(package_id) if package_id else None
        )
    else:
        return jsonify({'error': 'Unknown action'}), 404
    return jsonify({'message': f'Pledge {action} complete', 'pledge_id': pledge.id, 'status': pledge.status})


@app.route('/admin/payments/<int:payment_id>/<action>', methods=['POST'])
@admin_required
@csrf_protect
def admin_payment_action(payment_id, action):
    data = _payload()
    if action == 'approve':
        notify = _flag(data.get('notify'))
        payment = _approvals(notify).approve_payment(payment_id, current_admin_id(), notify=notify)
    elif action == 'reject':
        payment = _approvals().reject_payment(payment_id, current_admin_id())
    elif action == 'undo':
        payment = _approvals().undo_payment(payment_id, current_admin_id(), data.get('reason', ''))
    else:
        return jsonify({'error': 'Unknown action'}), 404
    return jsonify({'message': f'Payment {action} complete', 'payment_id': payment.id, 'status': payment.status})


@app.route('/admin/pledge-payments/<int:payment_id>/<action>', methods=['POST'])
@admin_required
@csrf_protect
def admin_pledge_payment_action(payment_id, action):
    data = _payload()
    if action == 'approve':
        notify = _flag(data.get('notify'))
        payment = _approvals(notify).approve_pledge_payment(payment_id, current_admin_id(), notify=notify)
    elif action == 'undo':
        payment = _approvals().undo_pledge_payment(payment_id, current_admin_id(), data.get('reason', ''))
    elif action == 'reject':
        payment = _approvals().reject_pledge_payment(payment_id, current_admin_id(), data.get('reason', ''))
    else:
        return jsonify({'error': 'Unknown action'}), 404
    return jsonify({'message': f'Pledge payment {action} complete', 'payment_id': payment.id,
                    'status': payment.status})


@app.route('/admin/donors/<int:donor_id>/pledge-payments', methods=['POST'])
@admin_required
@csrf_protect
def admin_record_pledge_payment(donor_id):
    data = _payload()
    pledge_id = data.get('pledge_id')
    payment = _approvals().record_pledge_payment(
        donor_id,
        data.get('amount'),
        data.get('payment_method', ''),
        reference=data.get('reference'),
        pledge_id=int(pledge_id) if pledge_id else None,
        admin_id=current_admin_id(),
        notes=data.get('notes')
    )
    return jsonify({'message': 'Payment recorded, awaiting approval', 'payment_id': payment.id,
                    'pledge_id': payment.pledge_id, 'status': payment.status}), 201


@app.route('/admin/floor-grid', methods=['GET'])
@admin_required
def admin_floor_grid():
    return jsonify(FloorGridAllocator(db.session).get_allocation_stats())


@app.route('/floor-grid', methods=['GET'])
@limiter.limit("60/minute")
def floor_grid_status():
    """Claimed cells for the public floor plan."""
    grid = FloorGridAllocator(db.session)
    stats = grid.get_allocation_stats()
    return jsonify({
        'cells': grid.get_grid_status(),
        'summary': {key: stats[key] for key in ('total_cells', 'pledged_cells', 'paid_cells', 'available_cells',
                                                'total_allocated_area', 'total_possible_area')},
        'timestamp': datetime.utcnow().isoformat()
    })


@app.route('/admin/donors/<int:donor_id>/payment-plan', methods=['POST'])
@admin_required
@csrf_protect
def admin_create_payment_plan(donor_id):
    data = _payload()
    start_date = datetime.strptime(data.get('start_date', ''), '%Y-%m-%d').date()
    plan = PaymentPlanService(db.session).create_plan(
        donor_id,
        float(data.get('total_amount') or 0),
        int(data.get('total_payments') or 0),
        start_date,
        pledge_id=data.get('pledge_id'),
        payment_method=data.get('payment_method'),
        created_by=current_admin_id()
    )
    return jsonify({'message': 'Payment plan created', 'plan_id': plan.id,
                    'monthly_amount': plan.monthly_amount}), 201


@app.route('/admin/donors/<int:donor_id>/portal-token', methods=['POST'])
@admin_required
@csrf_protect
def admin_issue_portal_token(donor_id):
    token = get_portal().issue_portal_token(donor_id)
    return jsonify({'login_url': f"{app.config['APP_BASE_URL']}/portal/login/{token}"})


@app.route('/admin/donors/<int:donor_id>/message', methods=['POST'])
@admin_required
@csrf_protect
@limiter.limit("60/hour")
def admin_message_donor(donor_id):
    data = _payload()
    message = (data.get('message') or '').strip()
    if not message:
        return jsonify({'error': 'Message is required'}), 400
    result = get_messaging().send_to_donor(donor_id, message, data.get('channel', 'auto'), source_type='admin')
    return _result(result)


@app.route('/admin/donors/<int:donor_id>/messages', methods=['GET'])
@admin_required
def admin_donor_messages(donor_id):
    messaging = get_messaging()
    history = messaging.get_donor_history(
        donor_id,
        limit=request.args.get('limit', 50, type=int),
        offset=request.args.get('offset', 0, type=int),
        channel=request.args.get('channel')
    )
    for message in history:
        message['sent_at'] = message['sent_at'].isoformat() if message['sent_at'] else None
    stats = messaging.get_donor_stats(donor_id)
    if stats['last_message_at']:
        stats['last_message_at'] = stats['last_message_at'].isoformat()
    return jsonify({'messages': history, 'stats': stats})


@app.route('/admin/support', methods=['GET'])
@admin_required
def admin_support_list():
    service = SupportRequestService(db.session)
    requests = service.list_requests(
        status=request.args.get('status'),
        category=request.args.get('category'),
        priority=request.args.get('priority')
    )
    return jsonify({
        'counts': service.count_by_status(),
        'requests': [
            {'id': r.id, 'donor_id': r.donor_id, 'category': r.category, 'subject': r.subject,
             'status': r.status, 'priority': r.priority, 'assigned_to': r.assigned_to,
             'created_at': r.created_at.isoformat()}
            for r in requests
        ]
    })


@app.route('/admin/support/<int:request_id>', methods=['GET'])
@admin_required
def admin_support_detail(request_id):
    detail = SupportRequestService(db.session).get_request(request_id)
    r = detail['request']
    return jsonify({
        'request': {'id': r.id, 'donor_id': r.donor_id, 'category': r.category, 'subject': r.subject,
                    'message': r.message, 'status': r.status, 'priority': r.priority,
                    'assigned_to': r.assigned_to, 'admin_notes': r.admin_notes,
                    'created_at': r.created_at.isoformat()},
        'replies': [
            {'id': reply.id, 'user_id': reply.user_id, 'message': reply.message,
             'is_internal': reply.is_internal, 'created_at': reply.created_at.isoformat()}
            for reply in detail['replies']
        ]
    })


@app.route('/admin/support/<int:request_id>/<action>', methods=['POST'])
@admin_required
@csrf_protect
def admin_support_action(request_id, action):
    data = _payload()
    if action == 'reply':
        is_internal = _flag(data.get('is_internal'))
        service = SupportRequestService(db.session, messaging=None if is_internal else get_messaging())
        reply = service.add_reply(request_id, current_admin_id(), data.get('message', ''), is_internal)
        return jsonify({'message': 'Reply added', 'reply_id': reply.id}), 201

    service = SupportRequestService(db.session)
    if action == 'status':
        support_request = service.update_status(request_id, data.get('status', ''), current_admin_id())
    elif action == 'priority':
        support_request = service.update_priority(request_id, data.get('priority', ''))
    elif action == 'assign':
        assignee = data.get('admin_id')
        support_request = service.assign(request_id, int(assignee) if assignee else None)
    elif action == 'note':
        support_request = service.add_note(request_id, data.get('note', ''))
    else:
        return jsonify({'error': 'Unknown action'}), 404
    return jsonify({'message': 'Support request updated', 'status': support_request.status,
                    'priority': support_request.priority})


@app.route('/admin/totals', methods=['GET'])
@admin_required
def admin_totals():
    date_from = request.args.get('date_from')
    date_to = request.args.get('date_to')
    if date_from and date_to:
        start = datetime.strptime(date_from, '%Y-%m-%d')
        end = datetime.strptime(date_to, '%Y-%m-%d') + timedelta(days=1) - timedelta(microseconds=1)
        totals = FinancialCalculator(db.session).get_totals(start, end)
    else:
        totals = FinancialCalculator(db.session).get_totals()

    for key in ('date_from', 'date_to', 'calculated_at'):
        if totals[key] is not None:
            totals[key] = totals[key].isoformat()
    return jsonify(totals)


@app.route('/admin/sms/providers', methods=['GET'])
@admin_required
def admin_sms_providers():
    factory = SMSServiceFactory(db.session)
    messaging = get_messaging()
    return jsonify({
        'supported': factory.get_supported_providers(),
        'providers': [
            {'id': p.id, 'name': p.name, 'display_name': p.display_name, 'is_active': p.is_active,
             'is_default': p.is_default, 'failure_count': p.failure_count, 'last_error': p.last_error,
             'last_success_at': p.last_success_at.isoformat() if p.last_success_at else None}
            for p in factory.get_active_providers()
        ],
        'stats': messaging.sms_helper.get_stats(),
        'channels': messaging.get_status()
    })


@app.route('/admin/sms/providers/<int:provider_id>/test', methods=['POST'])
@admin_required
@csrf_protect
@limiter.limit("10/minute")
def admin_test_sms_provider(provider_id):
    result = SMSServiceFactory(db.session).test_connection(provider_id)
    return jsonify(result), 200 if result.get('success') else 400


# Webhooks

@app.route('/webhooks/twilio/status', methods=['POST'])
@validate_twilio_request
@limiter.limit("120/minute")
def twilio_status_callback():
    """Handle call status callbacks."""
    app.logger.debug(f"Status callback data: {request.form}")
    call_log = record_call_status(db.session, request.form)
    if call_log is None:
        app.logger.warning(f"Call log not found for SID: {request.form.get('CallSid')}")
    return jsonify({'status': 'success'})


@app.route('/webhooks/twilio/recording', methods=['POST'])
@validate_twilio_request
@limiter.limit("120/minute")
def twilio_recording_callback():
    call_log = CallLog.query.filter_by(call_sid=request.form.get('CallSid')).first()
    if call_log is not None and request.form.get('RecordingUrl'):
        call_log.recording_url = request.form['RecordingUrl'] + '.mp3'
        db.session.commit()
    return jsonify({'status': 'success'})


@app.route('/webhooks/twilio/answer', methods=['GET', 'POST'])
@validate_twilio_request
def twilio_answer():
    """Agent answered: bridge the call to the donor."""
    return _twiml(get_phone_menu().bridge_to_donor(
        request.values.get('donor_phone', ''),
        request.values.get('donor_name', '')
    ))


@app.route('/webhooks/twilio/voice', methods=['POST'])
@validate_twilio_request
@limiter.limit("60/minute")
def twilio_inbound_call():
    return _twiml(get_phone_menu().welcome(request.form.get('From', ''), request.form.get('CallSid')))


@app.route('/webhooks/twilio/menu', methods=['POST'])
@validate_twilio_request
@limiter.limit("60/minute")
def twilio_menu():
    digits = request.form.get('Digits', '')
    menu = get_phone_menu(with_messaging=digits in ('2', '3', '4'))
    return _twiml(menu.handle_menu(digits, request.form.get('From', ''), request.form.get('CallSid')))


@app.route('/webhooks/twilio/payment', methods=['POST'])
@validate_twilio_request
@limiter.limit("60/minute")
def twilio_payment_amount():
    return _twiml(get_phone_menu().handle_payment_amount(
        request.form.get('Digits', ''), request.form.get('From', ''), request.form.get('CallSid')
    ))


@app.route('/webhooks/twilio/payment/confirm', methods=['POST'])
@validate_twilio_request
@limiter.limit("60/minute")
def twilio_payment_confirm():
    digits = request.form.get('Digits', '')
    menu = get_phone_menu(with_messaging=digits == '1')
    return _twiml(menu.handle_payment_confirm(
        digits, float(request.args.get('amount') or 0), request.form.get('From', ''), request.form.get('CallSid')
    ))


@app.route('/twiml/notification', methods=['GET', 'POST'])
@validate_twilio_request
def twiml_notification():
    return _twiml(PhoneMenu.notification(
        request.values.get('request_id'),
        request.values.get('caller')
    ))


@app.route('/webhooks/ultramsg', methods=['POST'])
@limiter.limit("120/minute")
def ultramsg_webhook():
    payload = request.get_json(silent=True) or request.form.to_dict()
    if not payload:
        return jsonify({'status': 'ok', 'message': 'Webhook is active'})
    return jsonify(record_incoming_message(db.session, payload))


@app.route('/health', methods=['GET'], endpoint='health_check')
@limiter.exempt  # No rate limit for health checks
def health_check():
    """Health check endpoint."""
    try:
        db.session.execute(text('SELECT 1'))
        sms_status = "healthy" if get_sms_helper().is_ready() else "unhealthy"
        scheduler_status = "healthy" if scheduler.running else "unhealthy"

        return jsonify({
            'status': 'healthy' if all([
                sms_status == "healthy",
                scheduler_status == "healthy"
            ]) else 'degraded',
            'components': {
                'database': 'healthy',
                'sms_service': sms_status,
                'scheduler': scheduler_status
            },
            'timestamp': datetime.utcnow().isoformat()
        })
    except Exception as e:
        app.logger.error(f"Health check failed: {str(e)}")
        return jsonify({
            'status': 'unhealthy',
            'error': str(e)
        }), 500


def init_app():
    """Initialize the Flask application."""
    with app.app_context():
        # Initialize database
        db.create_all()

        # Start scheduler
        scheduler.init_app(app)
        scheduler.start()

        app.logger.info("Application initialized successfully")


if __name__ == '__main__':
    init_app()
    app.run(host='0.0.0.0', port=int(os.getenv('PORT', 5000)))
