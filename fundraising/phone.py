"""
Phone number normalisation shared by the SMS, WhatsApp and voice services.

Each vendor wants a different shape of the same UK (or Ethiopian) number:
the SMS gateways take bare ``44XXXXXXXXXX``, UltraMsg and Twilio take E.164,
and donor records are stored in the local ``07...`` form.
"""

import re
from typing import List, Optional


def _strip(phone: Optional[str]) -> str:
    return re.sub(r'[^0-9+]', '', phone or '')


def normalize_uk_sms(phone: Optional[str]) -> Optional[str]:
    """Return ``44XXXXXXXXXX`` for a UK number, or None when unrecognised."""
    phone = _strip(phone)

    match = re.match(r'^\+44(\d{10})$', phone)
    if match:
        return '44' + match.group(1)
    if re.match(r'^44\d{10}$', phone):
        return phone
    match = re.match(r'^0([1-9]\d{9})$', phone)
    if match:
        return '44' + match.group(1)
    if re.match(r'^[1-9]\d{9}$', phone):
        return '44' + phone
    return None


def normalize_e164(phone: Optional[str]) -> Optional[str]:
    """Return an E.164 number (``+44...``, ``+251...`` or other international)."""
    uk = normalize_uk_sms(phone)
    if uk:
        return '+' + uk

    phone = _strip(phone)
    digits = phone.lstrip('+')

    # Ethiopia
    if re.match(r'^251\d{9}$', digits):
        return '+' + digits
    match = re.match(r'^0(9\d{8})$', digits)
    if match:
        return '+251' + match.group(1)

    if re.match(r'^[1-9]\d{9,14}$', digits):
        return '+' + digits
    return None


def normalize_twilio(phone: Optional[str]) -> str:
    """Format a number for the Twilio API, defaulting UK local numbers to +44."""
    phone = _strip(phone)
    if phone.startswith('+'):
        return phone
    if re.match(r'^07\d{9}$', phone):
        return '+44' + phone[1:]
    if re.match(r'^0\d{10}$', phone):
        return '+44' + phone[1:]
    if re.match(r'^44\d{10,11}$', phone):
        return '+' + phone
    return phone


def to_uk_local(phone: Optional[str]) -> str:
    """Convert ``+44``/``44`` numbers to the ``0...`` form stored on donors."""
    digits = re.sub(r'\D', '', phone or '')
    if digits.startswith('44') and len(digits) == 12:
        return '0' + digits[2:]
    return digits


def is_uk_mobile(phone: Optional[str]) -> bool:
    return bool(re.match(r'^07\d{9}$', to_uk_local(phone)))


def phone_variants(phone: Optional[str]) -> List[str]:
    """Stored forms a donor's number might take: +447..., 447..., 07..., 7..."""
    e164 = normalize_e164(phone) or _strip(phone)
    bare = e164.lstrip('+')
    variants = [e164, bare]
    if bare.startswith('44'):
        variants.append('0' + bare[2:])
        variants.append(bare[2:])
    # keep order, drop duplicates
    return list(dict.fromkeys(v for v in variants if v))
