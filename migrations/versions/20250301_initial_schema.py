"""Initial fundraising schema

Revision ID: 20250301_initial
Revises:
Create Date: 2025-03-01 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
import logging

# revision identifiers, used by Alembic.
revision = '20250301_initial'
down_revision = None
branch_labels = None
depends_on = None

logger = logging.getLogger('alembic.env')

TABLES = (
    'ivr_recordings', 'call_logs', 'whatsapp_messages', 'whatsapp_conversations', 'whatsapp_number_cache',
    'whatsapp_log', 'whatsapp_providers', 'sms_blacklist', 'sms_log', 'sms_queue', 'sms_settings',
    'sms_templates', 'sms_providers', 'audit_logs', 'counters', 'donor_support_replies',
    'donor_support_requests', 'payment_plan_schedule', 'pledge_payments', 'donor_payment_plans',
    'payments', 'pledges', 'donation_packages', 'donors', 'admin_users',
)


def money(name, nullable=True):
    return sa.Column(name, sa.Numeric(10, 2), nullable=nullable)


def table_exists(table_name):
    """Check if a table exists."""
    return table_name in sa.inspect(op.get_bind()).get_table_names()


def create_table(name, *columns):
    if table_exists(name):
        logger.info(f"{name} table already exists")
        return False
    logger.info(f"Creating {name} table")
    op.create_table(name, *columns)
    return True


def upgrade() -> None:
    """Create initial database schema."""
    logger.info("Starting table creation")

    create_table(
        'admin_users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('phone', sa.String(length=20), nullable=True),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('role', sa.String(length=20), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('last_login_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email')
    )

    create_table(
        'donors',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('phone', sa.String(length=20), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('preferred_language', sa.String(length=5), nullable=True),
        sa.Column('preferred_payment_method', sa.String(length=20), nullable=True),
        sa.Column('preferred_channel', sa.String(length=10), nullable=True),
        sa.Column('sms_opt_in', sa.Boolean(), nullable=True),
        money('total_pledged'),
        money('total_paid'),
        money('balance'),
        sa.Column('payment_status', sa.String(length=20), nullable=True),
        sa.Column('has_active_plan', sa.Boolean(), nullable=True),
        sa.Column('active_payment_plan_id', sa.Integer(), nullable=True),
        sa.Column('last_payment_date', sa.DateTime(), nullable=True),
        sa.Column('portal_token', sa.String(length=64), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(), nullable=True),
        sa.Column('last_login_at', sa.DateTime(), nullable=True),
        sa.Column('login_count', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('phone'),
        sa.UniqueConstraint('portal_token')
    )

    create_table(
        'donation_packages',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('label', sa.String(length=50), nullable=False),
        sa.Column('sqm_meters', sa.Numeric(6, 2), nullable=True),
        money('price'),
        sa.Column('active', sa.Boolean(), nullable=True),
        sa.Column('sort_order', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )

    create_table(
        'pledges',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('donor_id', sa.Integer(), nullable=True),
        sa.Column('donor_name', sa.String(length=255), nullable=True),
        sa.Column('donor_phone', sa.String(length=20), nullable=True),
        sa.Column('package_id', sa.Integer(), nullable=True),
        money('amount', nullable=False),
        sa.Column('type', sa.String(length=10), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('source', sa.String(length=20), nullable=False),
        sa.Column('client_uuid', sa.String(length=64), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('approved_by', sa.Integer(), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['donor_id'], ['donors.id']),
        sa.ForeignKeyConstraint(['package_id'], ['donation_packages.id']),
        sa.UniqueConstraint('client_uuid')
    )

    create_table(
        'payments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('donor_id', sa.Integer(), nullable=True),
        sa.Column('donor_name', sa.String(length=255), nullable=True),
        sa.Column('donor_phone', sa.String(length=20), nullable=True),
        money('amount', nullable=False),
        sa.Column('method', sa.String(length=20), nullable=False),
        sa.Column('reference', sa.String(length=255), nullable=True),
        sa.Column('proof_path', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('source', sa.String(length=20), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('approved_by', sa.Integer(), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('received_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['donor_id'], ['donors.id'])
    )

    create_table(
        'donor_payment_plans',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('donor_id', sa.Integer(), nullable=False),
        sa.Column('pledge_id', sa.Integer(), nullable=True),
        money('total_amount', nullable=False),
        money('monthly_amount', nullable=False),
        sa.Column('total_payments', sa.Integer(), nullable=False),
        sa.Column('payments_made', sa.Integer(), nullable=True),
        money('amount_paid'),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('next_payment_due', sa.Date(), nullable=True),
        sa.Column('payment_day', sa.Integer(), nullable=True),
        sa.Column('payment_method', sa.String(length=20), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['donor_id'], ['donors.id']),
        sa.ForeignKeyConstraint(['pledge_id'], ['pledges.id'])
    )

    create_table(
        'pledge_payments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('donor_id', sa.Integer(), nullable=False),
        sa.Column('pledge_id', sa.Integer(), nullable=True),
        sa.Column('plan_id', sa.Integer(), nullable=True),
        money('amount', nullable=False),
        sa.Column('payment_method', sa.String(length=20), nullable=False),
        sa.Column('reference_number', sa.String(length=255), nullable=True),
        sa.Column('proof_path', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('approved_by', sa.Integer(), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('void_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['donor_id'], ['donors.id']),
        sa.ForeignKeyConstraint(['pledge_id'], ['pledges.id']),
        sa.ForeignKeyConstraint(['plan_id'], ['donor_payment_plans.id'])
    )

    create_table(
        'payment_plan_schedule',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('plan_id', sa.Integer(), nullable=False),
        sa.Column('donor_id', sa.Integer(), nullable=False),
        sa.Column('installment_number', sa.Integer(), nullable=False),
        sa.Column('due_date', sa.Date(), nullable=False),
        money('amount', nullable=False),
        sa.Column('status', sa.String(length=20), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('reminder_3day_sent', sa.Boolean(), nullable=True),
        sa.Column('reminder_dueday_sent', sa.Boolean(), nullable=True),
        sa.Column('overdue_reminder_sent', sa.Boolean(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['plan_id'], ['donor_payment_plans.id']),
        sa.ForeignKeyConstraint(['donor_id'], ['donors.id'])
    )

    create_table(
        'donor_support_requests',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('donor_id', sa.Integer(), nullable=False),
        sa.Column('category', sa.String(length=20), nullable=False),
        sa.Column('subject', sa.String(length=255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('priority', sa.String(length=10), nullable=False),
        sa.Column('assigned_to', sa.Integer(), nullable=True),
        sa.Column('admin_notes', sa.Text(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_by', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['donor_id'], ['donors.id']),
        sa.ForeignKeyConstraint(['assigned_to'], ['admin_users.id'])
    )

    create_table(
        'donor_support_replies',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('request_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('donor_id', sa.Integer(), nullable=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('is_internal', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['request_id'], ['donor_support_requests.id'])
    )

    create_table(
        'counters',
        sa.Column('id', sa.Integer(), nullable=False),
        money('paid_total'),
        money('pledged_total'),
        money('grand_total'),
        sa.Column('version', sa.Integer(), nullable=True),
        sa.Column('recalc_needed', sa.Boolean(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )

    create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('entity_type', sa.String(length=50), nullable=False),
        sa.Column('entity_id', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(length=50), nullable=False),
        sa.Column('before_json', sa.JSON(), nullable=True),
        sa.Column('after_json', sa.JSON(), nullable=True),
        sa.Column('source', sa.String(length=20), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )

    create_table(
        'sms_providers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=50), nullable=False),
        sa.Column('display_name', sa.String(length=100), nullable=True),
        sa.Column('api_key', sa.String(length=255), nullable=True),
        sa.Column('api_secret', sa.String(length=255), nullable=True),
        sa.Column('sender_id', sa.String(length=20), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('is_default', sa.Boolean(), nullable=True),
        sa.Column('cost_per_sms_pence', sa.Numeric(6, 2), nullable=True),
        sa.Column('failure_count', sa.Integer(), nullable=True),
        sa.Column('last_success_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )

    create_table(
        'sms_templates',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('template_key', sa.String(length=50), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=True),
        sa.Column('message_en', sa.Text(), nullable=False),
        sa.Column('message_am', sa.Text(), nullable=True),
        sa.Column('message_ti', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('usage_count', sa.Integer(), nullable=True),
        sa.Column('last_used_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('template_key')
    )

    create_table(
        'sms_settings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('setting_key', sa.String(length=50), nullable=False),
        sa.Column('setting_value', sa.String(length=255), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('setting_key')
    )

    if create_table(
        'sms_queue',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('donor_id', sa.Integer(), nullable=True),
        sa.Column('phone_number', sa.String(length=20), nullable=False),
        sa.Column('recipient_name', sa.String(length=255), nullable=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('template_id', sa.Integer(), nullable=True),
        sa.Column('language', sa.String(length=5), nullable=True),
        sa.Column('source_type', sa.String(length=50), nullable=True),
        sa.Column('source_id', sa.Integer(), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=True),
        sa.Column('scheduled_for', sa.DateTime(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=True),
        sa.Column('max_attempts', sa.Integer(), nullable=True),
        sa.Column('provider_message_id', sa.String(length=100), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['donor_id'], ['donors.id'])
    ):
        op.create_index('ix_sms_queue_status_priority', 'sms_queue', ['status', 'priority'])

    if create_table(
        'sms_log',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('donor_id', sa.Integer(), nullable=True),
        sa.Column('phone_number', sa.String(length=20), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('template_id', sa.Integer(), nullable=True),
        sa.Column('provider_id', sa.Integer(), nullable=True),
        sa.Column('provider_message_id', sa.String(length=100), nullable=True),
        sa.Column('source_type', sa.String(length=50), nullable=True),
        sa.Column('segments', sa.Integer(), nullable=True),
        sa.Column('cost_pence', sa.Numeric(8, 2), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    ):
        op.create_index('ix_sms_log_donor_id', 'sms_log', ['donor_id'])

    create_table(
        'sms_blacklist',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('phone_number', sa.String(length=20), nullable=False),
        sa.Column('reason', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('phone_number')
    )

    create_table(
        'whatsapp_providers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=50), nullable=True),
        sa.Column('instance_id', sa.String(length=50), nullable=False),
        sa.Column('api_token', sa.String(length=255), nullable=False),
        sa.Column('phone_number', sa.String(length=20), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('failure_count', sa.Integer(), nullable=True),
        sa.Column('last_success_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )

    if create_table(
        'whatsapp_log',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('donor_id', sa.Integer(), nullable=True),
        sa.Column('phone_number', sa.String(length=20), nullable=False),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('message_type', sa.String(length=20), nullable=True),
        sa.Column('media_url', sa.String(length=500), nullable=True),
        sa.Column('template_id', sa.Integer(), nullable=True),
        sa.Column('provider_message_id', sa.String(length=100), nullable=True),
        sa.Column('source_type', sa.String(length=50), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    ):
        op.create_index('ix_whatsapp_log_donor_id', 'whatsapp_log', ['donor_id'])

    create_table(
        'whatsapp_number_cache',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('phone_number', sa.String(length=20), nullable=False),
        sa.Column('has_whatsapp', sa.Boolean(), nullable=False),
        sa.Column('checked_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('phone_number')
    )

    create_table(
        'whatsapp_conversations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('phone_number', sa.String(length=20), nullable=False),
        sa.Column('donor_id', sa.Integer(), nullable=True),
        sa.Column('contact_name', sa.String(length=255), nullable=True),
        sa.Column('is_unknown', sa.Boolean(), nullable=True),
        sa.Column('unread_count', sa.Integer(), nullable=True),
        sa.Column('last_message_at', sa.DateTime(), nullable=True),
        sa.Column('last_message_preview', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['donor_id'], ['donors.id']),
        sa.UniqueConstraint('phone_number')
    )

    create_table(
        'whatsapp_messages',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('conversation_id', sa.Integer(), nullable=False),
        sa.Column('ultramsg_id', sa.String(length=100), nullable=True),
        sa.Column('direction', sa.String(length=10), nullable=False),
        sa.Column('message_type', sa.String(length=20), nullable=True),
        sa.Column('body', sa.Text(), nullable=True),
        sa.Column('media_url', sa.String(length=500), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['conversation_id'], ['whatsapp_conversations.id'])
    )

    create_table(
        'call_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('call_sid', sa.String(length=64), nullable=True),
        sa.Column('direction', sa.String(length=10), nullable=False),
        sa.Column('donor_id', sa.Integer(), nullable=True),
        sa.Column('agent_phone', sa.String(length=20), nullable=True),
        sa.Column('phone_number', sa.String(length=20), nullable=False),
        sa.Column('session_id', sa.Integer(), nullable=True),
        sa.Column('purpose', sa.String(length=30), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=True),
        sa.Column('duration', sa.Integer(), nullable=True),
        sa.Column('recording_url', sa.String(length=500), nullable=True),
        sa.Column('menu_selection', sa.String(length=20), nullable=True),
        sa.Column('error_code', sa.String(length=10), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['donor_id'], ['donors.id']),
        sa.UniqueConstraint('call_sid')
    )

    create_table(
        'ivr_recordings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('recording_key', sa.String(length=50), nullable=False),
        sa.Column('recording_url', sa.String(length=500), nullable=True),
        sa.Column('fallback_text', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('play_count', sa.Integer(), nullable=True),
        sa.Column('last_played_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('recording_key')
    )

    logger.info("Table creation complete")


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index('ix_whatsapp_log_donor_id', table_name='whatsapp_log')
    op.drop_index('ix_sms_log_donor_id', table_name='sms_log')
    op.drop_index('ix_sms_queue_status_priority', table_name='sms_queue')
    for name in TABLES:
        op.drop_table(name)
