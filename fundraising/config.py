import os
from dotenv import load_dotenv

load_dotenv()


class Config:
    """Application settings read from the environment."""

    SQLALCHEMY_DATABASE_URI = os.getenv('DATABASE_URL', 'postgresql://localhost/fundraising')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-change-me')

    # APScheduler
    SCHEDULER_API_ENABLED = False
    SCHEDULER_TIMEZONE = os.getenv('TIMEZONE', 'Europe/London')

    APP_BASE_URL = os.getenv('APP_BASE_URL', 'http://localhost:5000').rstrip('/')
    TIMEZONE = os.getenv('TIMEZONE', 'Europe/London')

    # Payment proof uploads
    UPLOAD_FOLDER = os.getenv('UPLOAD_FOLDER', os.path.join(os.getcwd(), 'uploads', 'payment_proofs'))
    MAX_UPLOAD_MB = int(os.getenv('MAX_UPLOAD_MB', '5'))
    MAX_CONTENT_LENGTH = MAX_UPLOAD_MB * 1024 * 1024

    PORTAL_TOKEN_DAYS = int(os.getenv('PORTAL_TOKEN_DAYS', '30'))

    # Twilio voice
    TWILIO_ACCOUNT_SID = os.getenv('TWILIO_ACCOUNT_SID')
    TWILIO_AUTH_TOKEN = os.getenv('TWILIO_AUTH_TOKEN')
    TWILIO_FROM_NUMBER = os.getenv('TWILIO_FROM_NUMBER')
    TWILIO_RECORD_CALLS = os.getenv('TWILIO_RECORD_CALLS', 'true').lower() == 'true'

    # Outbound SMS throughput
    SMS_MESSAGES_PER_SECOND = int(os.getenv('SMS_MESSAGES_PER_SECOND', '5'))
    SMS_MESSAGES_PER_DAY = int(os.getenv('SMS_MESSAGES_PER_DAY', '2000'))

    # Where new support requests are announced
    ADMIN_NOTIFY_PHONE = os.getenv('ADMIN_NOTIFY_PHONE')

    # Bank details read out by the phone menu and sent by message
    BANK_ACCOUNT_NAME = os.getenv('BANK_ACCOUNT_NAME', 'LMKATH')
    BANK_SORT_CODE = os.getenv('BANK_SORT_CODE', '')
    BANK_ACCOUNT_NUMBER = os.getenv('BANK_ACCOUNT_NUMBER', '')

    # Church contact details offered to callers who are not donors
    CHURCH_WEBSITE = os.getenv('CHURCH_WEBSITE', 'https://abuneteklehaymanot.org/')
    DONATION_WEBSITE = os.getenv('DONATION_WEBSITE', 'https://donate.abuneteklehaymanot.org/')
    CHURCH_ADMIN_NAME = os.getenv('CHURCH_ADMIN_NAME', '')
    CHURCH_ADMIN_PHONE = os.getenv('CHURCH_ADMIN_PHONE', '')
