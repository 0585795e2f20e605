"""Human-readable descriptions of Twilio call error codes."""

from typing import Dict, Optional, Union

ERROR_MAP = {
    # Call progress
    '30001': ('Queue Overflow', 'Too many concurrent calls', 'Try again in a few minutes'),
    '30002': ('Account Suspended', 'Twilio account suspended', 'Contact Twilio support immediately'),
    '30003': ('Unreachable', 'Destination unreachable', 'Verify the phone number is correct'),
    '30004': ('Message Blocked', 'Call blocked by Twilio', 'Contact Twilio support'),
    '30005': ('Unknown Destination', 'Phone number does not exist', 'Verify and update donor phone number'),
    '30006': ('Landline/Unreachable', 'Cannot reach landline or mobile is off', 'Try calling at a different time'),
    '30007': ('Carrier Violation', 'Call rejected by carrier', 'Contact donor via different method'),
    '30008': ('Region Blocked', 'Calls to this region are blocked', 'Enable region in Twilio settings'),
    # Call execution
    '31000': ('Call Rejected', 'Call rejected by recipient', 'Donor may have blocked this number'),
    '31002': ('Number Format', 'Invalid phone number format', 'Update phone number to E.164 format'),
    '31003': ('International Disabled', 'International calling not enabled', 'Enable in Twilio console'),
    '31005': ('Network Error', 'Network connection error', 'Retry the call - temporary network issue'),
    '31009': ('Bad Request', 'Invalid request parameters', 'Check system configuration'),
    '32000': ('SIP Error', 'SIP protocol error', 'System error - contact support'),
    '33001': ('Invalid Number', 'Phone number is invalid', 'Update donor phone number'),
    '33002': ('Number Not Found', 'Phone number not found', 'Verify phone number exists'),
    # Webhooks and TwiML
    '11200': ('HTTP Error', 'Webhook returned error', 'Check webhook endpoint configuration'),
    '11210': ('HTTP Error', 'Webhook timeout', 'Optimize webhook response time'),
    '13225': ('Invalid TwiML', 'TwiML response is invalid', 'Check webhook TwiML generation'),
    '13227': ('TwiML Error', 'TwiML execution error', 'Check webhook logic'),
    # SIP status codes
    '480': ('Unavailable', 'Temporarily unavailable', 'Phone may be off or out of coverage'),
    '486': ('Busy', 'Donor line is busy', 'Schedule callback for later'),
    '487': ('Canceled', 'Call was canceled', 'Call was ended before connection'),
    '603': ('Declined', 'Call declined by recipient', 'Donor rejected the call'),
}

RETRYABLE = {'31005', '30001', '30006', '480'}
BAD_NUMBER = {'30005', '31002', '33001', '33002'}
ESCALATE = {'31000', '603', '30002', '30007'}


class TwilioErrorCodes:

    @staticmethod
    def describe(error_code: Optional[Union[str, int]]) -> Dict[str, str]:
        if error_code is None or error_code == '':
            return {
                'category': 'Unknown',
                'message': 'No error code provided',
                'action': 'Check call logs for more details'
            }

        code = str(error_code)
        if code in ERROR_MAP:
            category, message, action = ERROR_MAP[code]
            return {'category': category, 'message': message, 'action': action}

        return {
            'category': f'Error {code}',
            'message': f'Call failed with error code: {code}',
            'action': f'Check Twilio documentation for error code {code}'
        }

    @staticmethod
    def is_retryable(error_code: Optional[Union[str, int]]) -> bool:
        return error_code is not None and str(error_code) in RETRYABLE

    @staticmethod
    def is_bad_number(error_code: Optional[Union[str, int]]) -> bool:
        return error_code is not None and str(error_code) in BAD_NUMBER

    @classmethod
    def recommended_action(cls, error_code: Optional[Union[str, int]]) -> str:
        """One of 'retry', 'update_number', 'skip' or 'escalate'."""
        if error_code is None:
            return 'skip'
        if cls.is_retryable(error_code):
            return 'retry'
        if cls.is_bad_number(error_code):
            return 'update_number'
        if str(error_code) in ESCALATE:
            return 'escalate'
        return 'skip'
