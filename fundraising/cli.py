#!/usr/bin/env python3
import click
import logging
from logging.config import dictConfig
from datetime import datetime
import json

from .app import app, get_sms_helper
from .auth import hash_password
from .financial import FinancialCalculator
from .floor_grid import FloorGridAllocator
from .models import db, AdminUser
from .payment_plans import PaymentPlanService
from .scheduler import ReminderScheduler, SMSQueueProcessor, cleanup_old_records
from .sms_factory import SMSServiceFactory
from .donor_portal import DonorPortalService

# Configure logging
dictConfig({
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'default': {
            'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        }
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'default',
            'level': 'INFO'
        },
        'file': {
            'class': 'logging.FileHandler',
            'filename': 'fundraising.log',
            'formatter': 'default',
            'level': 'INFO'
        }
    },
    'root': {
        'level': 'INFO',
        'handlers': ['console', 'file']
    }
})

logger = logging.getLogger(__name__)

STATUS_FILE = 'scheduler_status.json'


def write_status(action, result):
    """Write results to status file for monitoring."""
    status = {
        'timestamp': datetime.utcnow().isoformat(),
        'action': action,
        'result': result
    }
    with open(STATUS_FILE, 'w') as f:
        json.dump(status, f, indent=2)


@click.group()
def cli():
    """Church fundraising CLI"""
    pass


@cli.command('init-db')
def init_db():
    """Create all database tables."""
    with app.app_context():
        db.create_all()
        logger.info("Database tables created")


@cli.command('process-queue')
@click.option('--batch-size', default=20, help='Maximum messages to send in this run')
def process_queue(batch_size):
    """Send queued SMS that are due."""
    with app.app_context():
        try:
            result = SMSQueueProcessor(db.session, get_sms_helper(), batch_size=batch_size).process_queue()
            logger.info(
                f"Processed SMS queue: {result['sent']} sent, {result['failed']} failed, "
                f"{result['cancelled']} cancelled"
            )
            write_status('process_queue', result)
        except Exception as e:
            logger.error(f"Error in process_queue command: {str(e)}")
            raise


@cli.command('schedule-reminders')
def schedule_reminders():
    """Mark overdue installments and queue payment reminders."""
    with app.app_context():
        try:
            overdue = PaymentPlanService(db.session).mark_overdue()
            result = ReminderScheduler(
                db.session, get_sms_helper(), app.config['APP_BASE_URL'], app.config['TIMEZONE']
            ).schedule_payment_reminders()
            result['overdue_marked'] = overdue
            logger.info(
                f"Queued {result['queued']} reminders "
                f"({result['skipped']} skipped, {result['failed']} failed)"
            )
            write_status('schedule_reminders', result)
        except Exception as e:
            logger.error(f"Error in schedule_reminders command: {str(e)}")
            raise


@cli.command()
@click.option('--days', default=90, help='Number of days of records to keep')
def cleanup(days):
    """Clean up old records from the database."""
    with app.app_context():
        try:
            logger.info(f"Cleaning up records older than {days} days...")
            result = cleanup_old_records(db.session, days)
            logger.info(
                f"Cleaned up {result['queue_rows_deleted']} queue rows "
                f"and {result['whatsapp_cache_deleted']} WhatsApp number checks"
            )
            write_status('cleanup', result)
        except Exception as e:
            logger.error(f"Error in cleanup command: {str(e)}")
            raise


@cli.command('test-provider')
@click.argument('provider_id', type=int)
def test_provider(provider_id):
    """Check the credentials of an SMS provider."""
    with app.app_context():
        result = SMSServiceFactory(db.session).test_connection(provider_id)
        if result.get('success'):
            click.echo(f"Provider {provider_id} OK: {result.get('message', '')}")
        else:
            click.echo(f"Provider {provider_id} failed: {result.get('error') or result.get('message')}")
            raise SystemExit(1)


@cli.command('send-sms')
@click.argument('phone')
@click.argument('message')
@click.option('--force', is_flag=True, help='Send even during quiet hours')
def send_sms(phone, message, force):
    """Send a one-off SMS through the default provider."""
    with app.app_context():
        result = get_sms_helper().send_now(phone, message, source_type='cli', force_immediate=force)
        if result.get('queued'):
            click.echo(f"Queued for after quiet hours (queue id {result.get('queue_id')})")
        elif result.get('success'):
            click.echo(f"Sent, message id {result.get('message_id')}")
        else:
            click.echo(f"Failed: {result.get('error')}")
            raise SystemExit(1)


@cli.command('recalc-donor')
@click.argument('donor_id', type=int)
def recalc_donor(donor_id):
    """Rebuild a donor's totals from approved records."""
    with app.app_context():
        donor = FinancialCalculator(db.session).recalculate_donor_totals(donor_id)
        if donor is None:
            click.echo(f"Donor {donor_id} not found")
            raise SystemExit(1)
        db.session.commit()
        click.echo(
            f"{donor.name}: pledged £{float(donor.total_pledged or 0):.2f}, "
            f"paid £{float(donor.total_paid or 0):.2f}, balance £{float(donor.balance or 0):.2f} "
            f"({donor.payment_status})"
        )


@cli.command('create-admin')
@click.option('--name', prompt=True)
@click.option('--email', prompt=True)
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True)
@click.option('--role', type=click.Choice(['admin', 'registrar']), default='admin')
def create_admin(name, email, password, role):
    """Create a back-office user."""
    with app.app_context():
        email = email.strip().lower()
        if AdminUser.query.filter_by(email=email).first():
            click.echo(f"A user with email {email} already exists")
            raise SystemExit(1)

        user = AdminUser(name=name.strip(), email=email, password_hash=hash_password(password), role=role)
        db.session.add(user)
        db.session.commit()
        click.echo(f"Created {role} {user.email} (id {user.id})")


@cli.command('issue-token')
@click.argument('donor_id', type=int)
def issue_token(donor_id):
    """Print a portal login link for a donor."""
    with app.app_context():
        token = DonorPortalService(db.session, token_days=app.config['PORTAL_TOKEN_DAYS']).issue_portal_token(donor_id)
        click.echo(f"{app.config['APP_BASE_URL']}/portal/login/{token}")


@cli.command('populate-grid')
@click.option('--reset', is_flag=True, help='Drop every existing cell and its allocation first')
def populate_grid(reset):
    """Create the floor plan cells."""
    with app.app_context():
        try:
            total = FloorGridAllocator(db.session).populate(reset=reset)
        except ValueError as e:
            click.echo(f"{str(e)}; use --reset to rebuild it")
            raise SystemExit(1)
        click.echo(f"Created {total} cells")


@cli.command('grid-stats')
def grid_stats():
    """Show how much of the floor plan is claimed."""
    with app.app_context():
        stats = FloorGridAllocator(db.session).get_allocation_stats()
        click.echo(
            f"{stats['paid_cells']} paid, {stats['pledged_cells']} pledged, "
            f"{stats['available_cells']} available of {stats['total_cells']} cells "
            f"({stats['total_allocated_area']:.2f} of {stats['total_possible_area']:.2f} m²)"
        )


if __name__ == '__main__':
    cli()
