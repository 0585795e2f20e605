#!/usr/bin/env python3
"""
Seed a fresh database with donation packages, SMS settings, message
templates and an SMS provider taken from the environment.
"""
import os
import sys
from pathlib import Path
from dotenv import load_dotenv

root_dir = Path(__file__).resolve().parent.parent
load_dotenv(root_dir / '.env')
sys.path.append(str(root_dir))

from fundraising.app import app
from fundraising.models import db, DonationPackage, IVRRecording, SMSProvider, SMSSetting, SMSTemplate
from fundraising.sms_helper import DEFAULT_SETTINGS

PACKAGES = [
    ('1 m²', 1.0, 400.00, 1),
    ('½ m²', 0.5, 200.00, 2),
    ('¼ m²', 0.25, 100.00, 3),
    ('Custom', None, 0, 4),
]

TEMPLATES = {
    'payment_reminder_3day': (
        'Payment reminder',
        'Dear {name}, your payment of £{amount} is due on {due_date}. '
        'View your pledge: {portal_link}'
    ),
    'payment_reminder_dueday': (
        'Payment due today',
        'Dear {name}, your payment of £{amount} is due today ({due_date}). '
        'Thank you for supporting the church. {portal_link}'
    ),
    'payment_overdue_7day': (
        'Payment overdue',
        'Dear {name}, your payment of £{amount} due on {due_date} has not been received yet. '
        'Please contact us if you need help. {portal_link}'
    ),
    'payment_confirmed': (
        'Payment confirmed',
        'Dear {name}, thank you! We have received your payment of £{amount}.'
    ),
    'pledge_approved': (
        'Pledge approved',
        'Dear {name}, your pledge of £{amount} has been approved. God bless you.'
    ),
}

IVR_PROMPTS = {
    'welcome': 'Welcome to the church fundraising line.',
}


def print_step(message):
    """Print a formatted step message."""
    print("\n" + "=" * 80)
    print(f">>> {message}")
    print("=" * 80)


def seed_packages():
    print_step("Seeding donation packages")
    for label, sqm, price, order in PACKAGES:
        if DonationPackage.query.filter_by(label=label).first():
            print(f"  {label} already exists")
            continue
        db.session.add(DonationPackage(label=label, sqm_meters=sqm, price=price, sort_order=order))
        print(f"  added {label}")


def seed_settings():
    print_step("Seeding SMS settings")
    for key, value in DEFAULT_SETTINGS.items():
        if not SMSSetting.query.filter_by(setting_key=key).first():
            db.session.add(SMSSetting(setting_key=key, setting_value=value))
            print(f"  {key} = {value}")


def seed_templates():
    print_step("Seeding message templates")
    for key, (name, message) in TEMPLATES.items():
        if not SMSTemplate.query.filter_by(template_key=key).first():
            db.session.add(SMSTemplate(template_key=key, name=name, message_en=message))
            print(f"  added {key}")


def seed_ivr_prompts():
    print_step("Seeding phone menu prompts")
    for key, text in IVR_PROMPTS.items():
        if not IVRRecording.query.filter_by(recording_key=key).first():
            db.session.add(IVRRecording(recording_key=key, fallback_text=text))
            print(f"  added {key}")


def seed_provider():
    print_step("Seeding SMS provider")
    name = os.getenv('SMS_PROVIDER')
    if not name:
        print("SMS_PROVIDER not set, skipping")
        return
    if SMSProvider.query.filter_by(name=name).first():
        print(f"  {name} already configured")
        return
    db.session.add(SMSProvider(
        name=name,
        display_name=name,
        api_key=os.getenv('SMS_API_KEY'),
        api_secret=os.getenv('SMS_API_SECRET'),
        sender_id=os.getenv('SMS_SENDER_ID', 'Church'),
        is_default=True
    ))
    print(f"  added {name} as default provider")


def main():
    try:
        with app.app_context():
            db.create_all()
            seed_packages()
            seed_settings()
            seed_templates()
            seed_ivr_prompts()
            seed_provider()
            db.session.commit()
        print("\nSeeding complete")
    except Exception as e:
        print(f"\nError seeding database: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
