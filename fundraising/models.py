from datetime import datetime
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import (
    Column, Integer, String, DateTime, Date, Boolean, Text, Numeric, JSON, ForeignKey
)

db = SQLAlchemy()


def Money():
    """Two-decimal money column that reads back as float."""
    return Numeric(10, 2, asdecimal=False)


class AdminUser(db.Model):
    """Back-office user (admin or registrar)."""
    __tablename__ = 'admin_users'

    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    phone = Column(String(20), nullable=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default='admin')  # 'admin' or 'registrar'
    is_active = Column(Boolean, default=True)
    last_login_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Donor(db.Model):
    """A donor with running pledge and payment totals."""
    __tablename__ = 'donors'

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    phone = Column(String(20), unique=True, nullable=True)
    email = Column(String(255), nullable=True)
    preferred_language = Column(String(5), default='en')  # 'en', 'am', 'ti'
    preferred_payment_method = Column(String(20), nullable=True)
    preferred_channel = Column(String(10), default='auto')  # 'auto', 'sms', 'whatsapp'
    sms_opt_in = Column(Boolean, default=True)
    total_pledged = Column(Money(), default=0)
    total_paid = Column(Money(), default=0)
    balance = Column(Money(), default=0)
    payment_status = Column(String(20), default='no_pledge')  # 'no_pledge', 'pending', 'paying', 'completed'
    has_active_plan = Column(Boolean, default=False)
    active_payment_plan_id = Column(Integer, nullable=True)
    last_payment_date = Column(DateTime, nullable=True)
    portal_token = Column(String(64), unique=True, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)
    last_login_at = Column(DateTime, nullable=True)
    login_count = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class DonationPackage(db.Model):
    """Priced square-metre package a donor can pledge."""
    __tablename__ = 'donation_packages'

    id = Column(Integer, primary_key=True)
    label = Column(String(50), nullable=False)
    sqm_meters = Column(Numeric(6, 2, asdecimal=False), nullable=True)  # NULL for the custom package
    price = Column(Money(), default=0)
    active = Column(Boolean, default=True)
    sort_order = Column(Integer, default=0)


class Pledge(db.Model):
    """A pledge or instant paid donation awaiting approval."""
    __tablename__ = 'pledges'

    id = Column(Integer, primary_key=True)
    donor_id = Column(Integer, ForeignKey('donors.id'), nullable=True)
    donor_name = Column(String(255), nullable=True)
    donor_phone = Column(String(20), nullable=True)
    package_id = Column(Integer, ForeignKey('donation_packages.id'), nullable=True)
    amount = Column(Money(), nullable=False)
    type = Column(String(10), nullable=False, default='pledge')  # 'pledge' or 'paid'
    status = Column(String(20), nullable=False, default='pending')  # 'pending', 'approved', 'rejected'
    source = Column(String(20), nullable=False, default='volunteer')  # 'self', 'volunteer', 'admin'
    client_uuid = Column(String(64), unique=True, nullable=True)
    notes = Column(Text, nullable=True)
    approved_by = Column(Integer, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Payment(db.Model):
    """An instant payment, approved by an admin before it counts."""
    __tablename__ = 'payments'

    id = Column(Integer, primary_key=True)
    donor_id = Column(Integer, ForeignKey('donors.id'), nullable=True)
    donor_name = Column(String(255), nullable=True)
    donor_phone = Column(String(20), nullable=True)
    amount = Column(Money(), nullable=False)
    method = Column(String(20), nullable=False)  # 'cash', 'bank_transfer', 'card', 'other'
    reference = Column(String(255), nullable=True)
    proof_path = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default='pending')  # 'pending', 'approved', 'voided'
    source = Column(String(20), nullable=False, default='admin')
    notes = Column(Text, nullable=True)
    approved_by = Column(Integer, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    received_at = Column(DateTime, default=datetime.utcnow)
    created_at = Column(DateTime, default=datetime.utcnow)


class PledgePayment(db.Model):
    """An installment paid against an approved pledge."""
    __tablename__ = 'pledge_payments'

    id = Column(Integer, primary_key=True)
    donor_id = Column(Integer, ForeignKey('donors.id'), nullable=False)
    pledge_id = Column(Integer, ForeignKey('pledges.id'), nullable=True)
    plan_id = Column(Integer, ForeignKey('donor_payment_plans.id'), nullable=True)  # set while it counts towards a plan
    amount = Column(Money(), nullable=False)
    payment_method = Column(String(20), nullable=False)
    reference_number = Column(String(255), nullable=True)
    proof_path = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default='pending')  # 'pending', 'confirmed', 'voided'
    notes = Column(Text, nullable=True)
    approved_by = Column(Integer, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    void_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class DonorPaymentPlan(db.Model):
    """Monthly installment plan against a pledge balance."""
    __tablename__ = 'donor_payment_plans'

    id = Column(Integer, primary_key=True)
    donor_id = Column(Integer, ForeignKey('donors.id'), nullable=False)
    pledge_id = Column(Integer, ForeignKey('pledges.id'), nullable=True)
    total_amount = Column(Money(), nullable=False)
    monthly_amount = Column(Money(), nullable=False)
    total_payments = Column(Integer, nullable=False)
    payments_made = Column(Integer, default=0)
    amount_paid = Column(Money(), default=0)
    start_date = Column(Date, nullable=False)
    next_payment_due = Column(Date, nullable=True)
    payment_day = Column(Integer, nullable=True)
    payment_method = Column(String(20), nullable=True)
    status = Column(String(20), default='active')  # 'active', 'completed', 'paused', 'cancelled'
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class PaymentPlanSchedule(db.Model):
    """One installment in a payment plan."""
    __tablename__ = 'payment_plan_schedule'

    id = Column(Integer, primary_key=True)
    plan_id = Column(Integer, ForeignKey('donor_payment_plans.id'), nullable=False)
    donor_id = Column(Integer, ForeignKey('donors.id'), nullable=False)
    installment_number = Column(Integer, nullable=False)
    due_date = Column(Date, nullable=False)
    amount = Column(Money(), nullable=False)
    status = Column(String(20), default='pending')  # 'pending', 'paid', 'overdue', 'skipped'
    paid_at = Column(DateTime, nullable=True)
    reminder_3day_sent = Column(Boolean, default=False)
    reminder_dueday_sent = Column(Boolean, default=False)
    overdue_reminder_sent = Column(Boolean, default=False)


class DonorSupportRequest(db.Model):
    """Support ticket raised by a donor."""
    __tablename__ = 'donor_support_requests'

    id = Column(Integer, primary_key=True)
    donor_id = Column(Integer, ForeignKey('donors.id'), nullable=False)
    category = Column(String(20), nullable=False, default='general')
    subject = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default='open')  # 'open', 'in_progress', 'resolved', 'closed'
    priority = Column(String(10), nullable=False, default='normal')  # 'low', 'normal', 'high', 'urgent'
    assigned_to = Column(Integer, ForeignKey('admin_users.id'), nullable=True)
    admin_notes = Column(Text, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    resolved_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class DonorSupportReply(db.Model):
    """Reply on a support ticket, from an admin or the donor."""
    __tablename__ = 'donor_support_replies'

    id = Column(Integer, primary_key=True)
    request_id = Column(Integer, ForeignKey('donor_support_requests.id'), nullable=False)
    user_id = Column(Integer, nullable=True)
    donor_id = Column(Integer, nullable=True)
    message = Column(Text, nullable=False)
    is_internal = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class Counter(db.Model):
    """Singleton row of campaign running totals."""
    __tablename__ = 'counters'

    id = Column(Integer, primary_key=True)
    paid_total = Column(Money(), default=0)
    pledged_total = Column(Money(), default=0)
    grand_total = Column(Money(), default=0)
    version = Column(Integer, default=0)
    recalc_needed = Column(Boolean, default=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AuditLog(db.Model):
    """Record of a state change made by a user or donor."""
    __tablename__ = 'audit_logs'

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Integer, nullable=True)
    action = Column(String(50), nullable=False)
    before_json = Column(JSON, nullable=True)
    after_json = Column(JSON, nullable=True)
    source = Column(String(20), default='admin')
    created_at = Column(DateTime, default=datetime.utcnow)


class SMSProvider(db.Model):
    """Configured SMS gateway account."""
    __tablename__ = 'sms_providers'

    id = Column(Integer, primary_key=True)
    name = Column(String(50), nullable=False)  # 'voodoosms', 'thesmsworks'
    display_name = Column(String(100), nullable=True)
    api_key = Column(String(255), nullable=True)
    api_secret = Column(String(255), nullable=True)
    sender_id = Column(String(20), nullable=True)
    is_active = Column(Boolean, default=True)
    is_default = Column(Boolean, default=False)
    cost_per_sms_pence = Column(Numeric(6, 2, asdecimal=False), nullable=True)
    failure_count = Column(Integer, default=0)
    last_success_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class SMSTemplate(db.Model):
    """Localised SMS message template."""
    __tablename__ = 'sms_templates'

    id = Column(Integer, primary_key=True)
    template_key = Column(String(50), unique=True, nullable=False)
    name = Column(String(100), nullable=True)
    message_en = Column(Text, nullable=False)
    message_am = Column(Text, nullable=True)
    message_ti = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True)
    usage_count = Column(Integer, default=0)
    last_used_at = Column(DateTime, nullable=True)


class SMSSetting(db.Model):
    """Key/value SMS settings."""
    __tablename__ = 'sms_settings'

    id = Column(Integer, primary_key=True)
    setting_key = Column(String(50), unique=True, nullable=False)
    setting_value = Column(String(255), nullable=True)


class SMSQueue(db.Model):
    """SMS waiting to be sent by the queue processor."""
    __tablename__ = 'sms_queue'

    id = Column(Integer, primary_key=True)
    donor_id = Column(Integer, ForeignKey('donors.id'), nullable=True)
    phone_number = Column(String(20), nullable=False)
    recipient_name = Column(String(255), nullable=True)
    message = Column(Text, nullable=False)
    template_id = Column(Integer, nullable=True)
    language = Column(String(5), default='en')
    source_type = Column(String(50), nullable=True)
    source_id = Column(Integer, nullable=True)
    priority = Column(Integer, default=5)
    scheduled_for = Column(DateTime, nullable=True)
    status = Column(String(20), default='pending')  # 'pending', 'processing', 'sent', 'failed', 'cancelled'
    attempts = Column(Integer, default=0)
    max_attempts = Column(Integer, default=3)
    provider_message_id = Column(String(100), nullable=True)
    error_message = Column(Text, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class SMSLog(db.Model):
    """One row per SMS send attempt."""
    __tablename__ = 'sms_log'

    id = Column(Integer, primary_key=True)
    donor_id = Column(Integer, nullable=True)
    phone_number = Column(String(20), nullable=False)
    message = Column(Text, nullable=False)
    template_id = Column(Integer, nullable=True)
    provider_id = Column(Integer, nullable=True)
    provider_message_id = Column(String(100), nullable=True)
    source_type = Column(String(50), nullable=True)
    segments = Column(Integer, default=1)
    cost_pence = Column(Numeric(8, 2, asdecimal=False), default=0)
    status = Column(String(20), nullable=False)  # 'sent', 'failed'
    error_message = Column(Text, nullable=True)
    sent_at = Column(DateTime, default=datetime.utcnow)


class SMSBlacklist(db.Model):
    """Numbers that must never receive SMS."""
    __tablename__ = 'sms_blacklist'

    id = Column(Integer, primary_key=True)
    phone_number = Column(String(20), unique=True, nullable=False)
    reason = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class WhatsAppProvider(db.Model):
    """UltraMsg instance configuration."""
    __tablename__ = 'whatsapp_providers'

    id = Column(Integer, primary_key=True)
    name = Column(String(50), default='ultramsg')
    instance_id = Column(String(50), nullable=False)
    api_token = Column(String(255), nullable=False)
    phone_number = Column(String(20), nullable=True)
    is_active = Column(Boolean, default=True)
    failure_count = Column(Integer, default=0)
    last_success_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)


class WhatsAppLog(db.Model):
    """One row per WhatsApp send attempt."""
    __tablename__ = 'whatsapp_log'

    id = Column(Integer, primary_key=True)
    donor_id = Column(Integer, nullable=True)
    phone_number = Column(String(20), nullable=False)
    message = Column(Text, nullable=True)
    message_type = Column(String(20), default='text')  # 'text', 'image', 'document', 'audio', 'video'
    media_url = Column(String(500), nullable=True)
    template_id = Column(Integer, nullable=True)
    provider_message_id = Column(String(100), nullable=True)
    source_type = Column(String(50), nullable=True)
    status = Column(String(20), nullable=False)
    error_message = Column(Text, nullable=True)
    sent_at = Column(DateTime, default=datetime.utcnow)


class WhatsAppNumberCache(db.Model):
    """Cached result of a 'does this number have WhatsApp' check."""
    __tablename__ = 'whatsapp_number_cache'

    id = Column(Integer, primary_key=True)
    phone_number = Column(String(20), unique=True, nullable=False)
    has_whatsapp = Column(Boolean, nullable=False)
    checked_at = Column(DateTime, default=datetime.utcnow)


class WhatsAppConversation(db.Model):
    """Inbound WhatsApp thread with one phone number."""
    __tablename__ = 'whatsapp_conversations'

    id = Column(Integer, primary_key=True)
    phone_number = Column(String(20), unique=True, nullable=False)
    donor_id = Column(Integer, ForeignKey('donors.id'), nullable=True)
    contact_name = Column(String(255), nullable=True)
    is_unknown = Column(Boolean, default=False)
    unread_count = Column(Integer, default=0)
    last_message_at = Column(DateTime, nullable=True)
    last_message_preview = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class WhatsAppMessage(db.Model):
    """Message in a WhatsApp conversation."""
    __tablename__ = 'whatsapp_messages'

    id = Column(Integer, primary_key=True)
    conversation_id = Column(Integer, ForeignKey('whatsapp_conversations.id'), nullable=False)
    ultramsg_id = Column(String(100), nullable=True)
    direction = Column(String(10), nullable=False)  # 'incoming', 'outgoing'
    message_type = Column(String(20), default='chat')
    body = Column(Text, nullable=True)
    media_url = Column(String(500), nullable=True)
    status = Column(String(20), default='delivered')
    created_at = Column(DateTime, default=datetime.utcnow)


class CallLog(db.Model):
    """Outbound or inbound Twilio call."""
    __tablename__ = 'call_logs'

    id = Column(Integer, primary_key=True)
    call_sid = Column(String(64), unique=True, nullable=True)
    direction = Column(String(10), nullable=False)  # 'outbound', 'inbound'
    donor_id = Column(Integer, ForeignKey('donors.id'), nullable=True)
    agent_phone = Column(String(20), nullable=True)
    phone_number = Column(String(20), nullable=False)
    session_id = Column(Integer, nullable=True)
    purpose = Column(String(30), default='donor_call')  # 'donor_call', 'notification', 'ivr'
    status = Column(String(20), default='initiated')
    duration = Column(Integer, nullable=True)
    recording_url = Column(String(500), nullable=True)
    menu_selection = Column(String(20), nullable=True)
    error_code = Column(String(10), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class IVRRecording(db.Model):
    """Pre-recorded audio prompt for the phone menu."""
    __tablename__ = 'ivr_recordings'

    id = Column(Integer, primary_key=True)
    recording_key = Column(String(50), unique=True, nullable=False)
    recording_url = Column(String(500), nullable=True)
    fallback_text = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True)
    play_count = Column(Integer, default=0)
    last_played_at = Column(DateTime, nullable=True)


class FloorGridCell(db.Model):
    """A 0.5m x 0.5m square of the church floor plan that a donation can claim."""
    __tablename__ = 'floor_grid_cells'

    id = Column(Integer, primary_key=True)
    cell_id = Column(String(20), unique=True, nullable=False)  # e.g. 'A-12'
    rectangle_id = Column(String(5), nullable=False)
    position = Column(Integer, nullable=False)  # fill order within the rectangle
    grid_x = Column(Integer, nullable=False)
    grid_y = Column(Integer, nullable=False)
    cell_type = Column(String(10), default='0.5x0.5')
    area_size = Column(Numeric(6, 2, asdecimal=False), default=0.25)
    status = Column(String(20), nullable=False, default='available')  # 'available', 'pledged', 'paid', 'blocked'
    pledge_id = Column(Integer, ForeignKey('pledges.id'), nullable=True)
    payment_id = Column(Integer, ForeignKey('payments.id'), nullable=True)
    donor_name = Column(String(255), nullable=True)
    amount = Column(Money(), nullable=True)
    assigned_date = Column(DateTime, nullable=True)


class CustomAmountTracking(db.Model):
    """Running total of custom donations not yet large enough to claim a cell."""
    __tablename__ = 'custom_amount_tracking'

    id = Column(Integer, primary_key=True)
    donor_id = Column(Integer, ForeignKey('donors.id'), nullable=True)
    donor_name = Column(String(255), nullable=False)
    total_amount = Column(Money(), default=0)
    allocated_amount = Column(Money(), default=0)
    remaining_amount = Column(Money(), default=0)
    last_updated = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
