import logging
import re
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.orm import Session
from twilio.twiml.voice_response import Play, Say, VoiceResponse

from .approvals import ApprovalService
from .models import CallLog, Donor, DonorSupportRequest, IVRRecording
from .phone import phone_variants

logger = logging.getLogger(__name__)

VOICE = 'Google.en-GB-Neural2-B'

CHURCH_NAME = 'Liverpool Abune Teklehaymanot Ethiopian Orthodox Tewahedo Church'
WELCOME_TEXT = f'Welcome to {CHURCH_NAME}.'
MENU_TEXT = (
    'To hear your pledge balance, press 1. '
    'To receive our payment details by message, press 2. '
    'To ask a church member to call you back, press 3. '
    'To hear these options again, press 4. '
    'To make a payment over the phone, press 5.'
)
GENERAL_MENU_TEXT = (
    'To learn about our church, press 1. '
    'To receive our website links by text message, press 2. '
    'To find out how to support our building fund, press 3. '
    'To get our church administrator contact details, press 4. '
    'To hear these options again, press 5.'
)
ABOUT_TEXT = (
    f'{CHURCH_NAME} serves the Ethiopian Orthodox community in Liverpool and the surrounding areas.',
    'We hold regular services, celebrations and community events.',
    'We are working towards purchasing our own church building, and we warmly welcome any support '
    'from the community.',
    'We welcome everyone to join us for worship and fellowship.',
)
NO_INPUT_TEXT = "We didn't receive any input. Please call back and try again. Goodbye."
ERROR_TEXT = 'We are sorry, we are experiencing technical difficulties. Please try again later. God bless you.'
NO_ACCOUNT_TEXT = 'We could not retrieve your account information. Please try again later.'
GOODBYE_TEXT = 'Thank you for calling. May God bless you. Goodbye.'


def speak_money(amount: float) -> str:
    pounds = int(amount)
    pence = int(round((amount - pounds) * 100))
    if pence == 100:
        pounds, pence = pounds + 1, 0
    text = f'{pounds} pounds'
    if pence > 0:
        text += f' and {pence} pence'
    return text


def speak_digits(value: str) -> str:
    return ' '.join(re.sub(r'\D', '', value or ''))


class IVRRecordingService:
    """Plays an uploaded recording for a prompt, or speaks its fallback text."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def get_recording(self, key: str) -> Optional[IVRRecording]:
        recording = self.db.query(IVRRecording).filter_by(recording_key=key, is_active=True).first()
        if recording is None or not recording.recording_url:
            return None
        return recording

    def _mark_played(self, recording: IVRRecording) -> None:
        try:
            recording.play_count = (recording.play_count or 0) + 1
            recording.last_played_at = datetime.utcnow()
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to update play count for {recording.recording_key}: {str(e)}")

    @staticmethod
    def _fill(text: str, replacements: Optional[Dict]) -> str:
        for key, value in (replacements or {}).items():
            text = text.replace('{' + key + '}', str(value))
        return text

    def add_prompt(self, response: VoiceResponse, key: str, fallback_text: str = '',
                   replacements: Optional[Dict] = None) -> VoiceResponse:
        recording = self.get_recording(key)
        if recording is not None:
            response.play(recording.recording_url)
            self._mark_played(recording)
            return response

        text = self._fill(recording_text(self.db, key) or fallback_text, replacements)
        if text:
            response.say(text, voice=VOICE)
        return response

    def get_twiml(self, key: str, fallback_text: str = '', replacements: Optional[Dict] = None) -> str:
        """TwiML fragment for a prompt; empty when there is nothing to say."""
        recording = self.get_recording(key)
        if recording is not None:
            self._mark_played(recording)
            return Play(recording.recording_url).to_xml(xml_declaration=False)

        text = self._fill(recording_text(self.db, key) or fallback_text, replacements)
        if not text:
            return ''
        return self.say(text)

    @staticmethod
    def say(text: str) -> str:
        return Say(text, voice=VOICE).to_xml(xml_declaration=False)

    @staticmethod
    def pause(seconds: int = 1) -> str:
        return f'<Pause length="{seconds}"/>'


def recording_text(db_session: Session, key: str) -> Optional[str]:
    row = db_session.query(IVRRecording).filter_by(recording_key=key, is_active=True).first()
    return row.fallback_text if row is not None else None


class PhoneMenu:
    """
    Inbound phone line. Callers are matched to donors by number; donors can
    hear their balance, get payment details by message, ask for a call back
    or report a payment on the keypad. Everyone else gets the general menu
    about the church.
    """

    def __init__(
        self,
        db_session: Session,
        base_url: str,
        recordings: Optional[IVRRecordingService] = None,
        messaging=None,
        notifier=None,
        bank_details: Optional[Dict] = None,
        caller_id: Optional[str] = None,
        church_info: Optional[Dict] = None,
        approvals: Optional[ApprovalService] = None
    ):
        self.db = db_session
        self.base_url = base_url.rstrip('/')
        self.recordings = recordings or IVRRecordingService(db_session)
        self.messaging = messaging
        self.notifier = notifier
        self.bank_details = bank_details or {}
        self.caller_id = caller_id
        self.church_info = church_info or {}
        self.approvals = approvals or ApprovalService(db_session)

    def find_donor(self, caller: str) -> Optional[Donor]:
        variants = phone_variants(caller)
        if not variants:
            return None
        return self.db.query(Donor).filter(Donor.phone.in_(variants)).first()

    def _log_inbound(self, call_sid: Optional[str], caller: str, donor: Optional[Donor]) -> None:
        if not call_sid or self.db.query(CallLog).filter_by(call_sid=call_sid).first():
            return
        try:
            self.db.add(CallLog(
                call_sid=call_sid,
                direction='inbound',
                phone_number=caller,
                donor_id=donor.id if donor else None,
                purpose='ivr',
                status='in-progress'
            ))
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to log inbound call {call_sid}: {str(e)}")

    def _record_selection(self, call_sid: Optional[str], digits: str) -> None:
        if not call_sid:
            return
        call_log = self.db.query(CallLog).filter_by(call_sid=call_sid).first()
        if call_log is not None:
            call_log.menu_selection = digits
            self.db.commit()

    def _menu_url(self) -> str:
        return f'{self.base_url}/webhooks/twilio/menu'

    def _voice_url(self) -> str:
        return f'{self.base_url}/webhooks/twilio/voice'

    def _payment_url(self) -> str:
        return f'{self.base_url}/webhooks/twilio/payment'

    def _confirm_url(self, amount: int) -> str:
        return f'{self.base_url}/webhooks/twilio/payment/confirm?amount={amount}'

    def _error(self) -> VoiceResponse:
        response = VoiceResponse()
        response.say(ERROR_TEXT, voice=VOICE)
        response.hangup()
        return response

    def welcome(self, caller: str, call_sid: Optional[str] = None) -> VoiceResponse:
        response = VoiceResponse()
        try:
            donor = self.find_donor(caller)
            self._log_inbound(call_sid, caller, donor)

            self.recordings.add_prompt(response, 'welcome', WELCOME_TEXT)
            if donor is not None:
                first_name = (donor.name or '').split(' ')[0]
                response.say(f'Hello {first_name}. Thank you for your support.', voice=VOICE)
            response.pause(length=1)

            gather = response.gather(num_digits=1, action=self._menu_url(), method='POST', timeout=10)
            gather.say(MENU_TEXT if donor is not None else GENERAL_MENU_TEXT, voice=VOICE)

            response.say(NO_INPUT_TEXT, voice=VOICE)
            response.hangup()
        except Exception as e:
            logger.error(f"IVR welcome error for {caller}: {str(e)}")
            response = self._error()
        return response

    def handle_menu(self, digits: str, caller: str, call_sid: Optional[str] = None) -> VoiceResponse:
        response = VoiceResponse()
        try:
            donor = self.find_donor(caller)
            if donor is None:
                self._record_selection(call_sid, f'general_menu_{digits}')
                self._general_menu(response, digits, caller)
                return response

            self._record_selection(call_sid, digits)
            if digits == '1':
                self._balance(response, donor)
            elif digits == '2':
                self._payment_details(response, donor, caller)
            elif digits == '3':
                self._call_back(response, donor, caller)
            elif digits == '4':
                response.redirect(self._voice_url(), method='POST')
            elif digits == '5':
                self._ask_amount(response)
            else:
                response.say('Invalid option. Please try again.', voice=VOICE)
                response.redirect(self._voice_url(), method='POST')
        except Exception as e:
            logger.error(f"IVR menu error for {caller} (digits {digits}): {str(e)}")
            response = self._error()
        return response

    def _general_menu(self, response: VoiceResponse, digits: str, caller: str) -> None:
        if digits == '1':
            self._about_church(response)
        elif digits == '2':
            self._send_info(response, caller)
        elif digits == '3':
            self._donation_info(response)
        elif digits == '4':
            self._contact_details(response, caller)
        elif digits == '5':
            response.redirect(self._voice_url(), method='POST')
        else:
            response.say('Invalid option. Please try again.', voice=VOICE)
            response.redirect(self._voice_url(), method='POST')

    def _about_church(self, response: VoiceResponse) -> None:
        for text in ABOUT_TEXT:
            response.say(text, voice=VOICE)
            response.pause(length=2)

        gather = response.gather(num_digits=1, action=self._menu_url(), method='POST', timeout=30)
        gather.say('Would you like to receive more information by text message? Press 2 to receive our '
                   'website links. Press 5 to return to the main menu. Or simply hang up if you are done.',
                   voice=VOICE)
        response.say('Thank you for your interest in our church. May God bless you. Goodbye.', voice=VOICE)
        response.hangup()

    def _send_to_caller(self, caller: str, text: str, source_type: str) -> bool:
        if self.messaging is None or not caller:
            return False
        result = self.messaging.send_direct(caller, text, source_type=source_type)
        if not result.get('success'):
            logger.warning(f"Could not send {source_type} message to {caller}: {result.get('error')}")
        return bool(result.get('success'))

    def _send_info(self, response: VoiceResponse, caller: str) -> None:
        text = (
            f"Welcome to {CHURCH_NAME}!\n\n"
            f"To learn more about us, visit:\n{self.church_info.get('website', '')}\n\n"
            f"To support our church building fund, please visit:\n{self.church_info.get('donation_website', '')}\n\n"
            f"May God bless you!"
        )
        response.say('We will send you a text message with links to learn more about our church.', voice=VOICE)
        response.pause(length=1)
        if self._send_to_caller(caller, text, 'ivr_info_request'):
            response.say('The message has been sent to your phone. Please check your messages.', voice=VOICE)
        else:
            response.say('We could not send the message at this time. Please visit our website for more '
                         'information.', voice=VOICE)
        response.pause(length=2)
        response.say('Thank you for your interest in our church. May God bless you abundantly. Goodbye.', voice=VOICE)
        response.hangup()

    def _say_bank_details(self, response: VoiceResponse) -> None:
        if self.bank_details.get('account_name'):
            response.say(f"Account name: {self.bank_details['account_name']}.", voice=VOICE)
        response.say(f"Sort code: {speak_digits(self.bank_details.get('sort_code', ''))}.", voice=VOICE)
        response.say(f"Account number: {speak_digits(self.bank_details.get('account_number', ''))}.", voice=VOICE)

    def _donation_info(self, response: VoiceResponse) -> None:
        response.say('Thank you for your interest in supporting our church.', voice=VOICE)
        response.pause(length=1)
        response.say('We are fundraising to purchase our own church building. Your generous donation will help '
                     'us achieve this goal and continue serving our community.', voice=VOICE)
        response.pause(length=1)
        response.say('To make a donation by bank transfer, please use the following details.', voice=VOICE)
        self._say_bank_details(response)
        response.pause(length=2)
        response.say('I will repeat the bank details.', voice=VOICE)
        self._say_bank_details(response)
        response.pause(length=2)
        response.say('You can also visit our donation website to make a pledge or learn about other ways to give.',
                     voice=VOICE)
        response.say('Thank you for your generous heart. May God bless you abundantly. Goodbye.', voice=VOICE)
        response.hangup()

    def _contact_details(self, response: VoiceResponse, caller: str) -> None:
        admin_name = self.church_info.get('admin_name') or 'our church administrator'
        admin_phone = self.church_info.get('admin_phone', '')

        response.say('We will send you a text message with our church administrator contact details.', voice=VOICE)
        text = (
            f"{CHURCH_NAME}\n\nChurch Administrator Contact:\n{admin_name} - {admin_phone}\n\n"
            f"Website: {self.church_info.get('website', '')}\n\nGod bless you!"
        )
        if self._send_to_caller(caller, text, 'ivr_contact_request'):
            response.say('The message has been sent to your phone.', voice=VOICE)
        else:
            response.say('We could not send the message at this time.', voice=VOICE)

        if self.notifier is not None:
            try:
                self.notifier.notify_callback_request(caller)
            except Exception as e:
                logger.error(f"Failed to tell the office about caller {caller}: {str(e)}")

        if admin_phone:
            response.say(f'You can contact {admin_name} on {speak_digits(admin_phone)}.', voice=VOICE)
            response.pause(length=1)
            response.say(f'I will repeat that number. {speak_digits(admin_phone)}.', voice=VOICE)
        response.pause(length=2)
        response.say(GOODBYE_TEXT, voice=VOICE)
        response.hangup()

    def _balance(self, response: VoiceResponse, donor: Donor) -> None:
        total_pledged = float(donor.total_pledged or 0)
        total_paid = float(donor.total_paid or 0)
        balance = float(donor.balance or 0)

        response.say('Here is your account summary.', voice=VOICE)
        response.pause(length=1)
        response.say(f'Your total pledge amount is {speak_money(total_pledged)}.', voice=VOICE)
        response.say(f'You have paid {speak_money(total_paid)}.', voice=VOICE)
        if balance > 0:
            response.say(f'Your outstanding balance is {speak_money(balance)}.', voice=VOICE)
        else:
            response.say('Congratulations! You have fully paid your pledge.', voice=VOICE)
        response.pause(length=1)
        response.say('Thank you for calling. May God bless you abundantly. Goodbye.', voice=VOICE)
        response.hangup()

    def _payment_details_text(self, donor: Donor) -> str:
        return (
            f"Bank transfer details for {CHURCH_NAME}:\n"
            f"Account name: {self.bank_details.get('account_name', '')}\n"
            f"Sort code: {self.bank_details.get('sort_code', '')}\n"
            f"Account number: {self.bank_details.get('account_number', '')}\n"
            f"Reference: {donor.name}\n"
            f"Outstanding balance: £{float(donor.balance or 0):,.2f}"
        )

    def _payment_details(self, response: VoiceResponse, donor: Donor, caller: str) -> None:
        balance = float(donor.balance or 0)
        if balance <= 0:
            response.say('Great news! You have no outstanding balance. Your pledge has been fully paid.',
                         voice=VOICE)
            response.say('Thank you for your generous support. May God bless you. Goodbye.', voice=VOICE)
            response.hangup()
            return

        response.say(f'Your outstanding balance is {speak_money(balance)}.', voice=VOICE)

        sent = False
        if self.messaging is not None:
            result = self.messaging.send_direct(caller, self._payment_details_text(donor), donor_id=donor.id,
                                                source_type='ivr_payment_details')
            sent = bool(result.get('success'))
            if not sent:
                logger.warning(f"Could not send payment details to {caller}: {result.get('error')}")

        if sent:
            response.say('We have sent our bank details to your phone. '
                         'Please use your name as the payment reference.', voice=VOICE)
        else:
            response.say('We could not send a message at this time.', voice=VOICE)
            if self.bank_details.get('sort_code') and self.bank_details.get('account_number'):
                response.say(
                    f"Our sort code is {speak_digits(self.bank_details['sort_code'])}. "
                    f"Our account number is {speak_digits(self.bank_details['account_number'])}.",
                    voice=VOICE
                )
        response.pause(length=1)
        response.say(GOODBYE_TEXT, voice=VOICE)
        response.hangup()

    def _call_back(self, response: VoiceResponse, donor: Donor, caller: str) -> None:
        try:
            request = DonorSupportRequest(
                donor_id=donor.id,
                category='general',
                subject='Call back requested from the phone line',
                message=f'Donor asked for a call back on {caller}.',
                status='open',
                priority='high'
            )
            self.db.add(request)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to register call back for {caller}: {str(e)}")
            response.say('We could not register your request at this time. '
                         'Please try again later.', voice=VOICE)
            response.hangup()
            return

        # the request is saved; the office also sees it in the admin portal
        if self.notifier is not None:
            try:
                self.notifier.notify_new_request(request, donor)
            except Exception as e:
                logger.error(f"Failed to notify the office of request {request.id}: {str(e)}")

        response.say('Thank you. A member of the church will call you back as soon as possible.', voice=VOICE)
        response.pause(length=1)
        response.say(GOODBYE_TEXT, voice=VOICE)
        response.hangup()

    def _ask_amount(self, response: VoiceResponse) -> None:
        gather = response.gather(action=self._payment_url(), method='POST', timeout=15, finish_on_key='#')
        gather.say('Please enter the amount you are paying in whole pounds using your keypad, '
                   'then press the hash key.', voice=VOICE)
        response.say(NO_INPUT_TEXT, voice=VOICE)
        response.hangup()

    def handle_payment_amount(self, digits: str, caller: str, call_sid: Optional[str] = None) -> VoiceResponse:
        """Read back a keypad amount and ask the donor to confirm it."""
        response = VoiceResponse()
        try:
            donor = self.find_donor(caller)
            if donor is None:
                response.say(NO_ACCOUNT_TEXT, voice=VOICE)
                response.hangup()
                return response

            amount = int(digits) if (digits or '').isdigit() else 0
            if amount <= 0:
                response.say('Invalid amount entered. Please try again.', voice=VOICE)
                self._ask_amount(response)
                return response

            balance = float(donor.balance or 0)
            gather = response.gather(num_digits=1, action=self._confirm_url(amount), method='POST', timeout=10)
            if 0 < balance < amount:
                gather.say(f'The amount you entered, {speak_money(amount)}, is more than your outstanding '
                           f'balance of {speak_money(balance)}.', voice=VOICE)
                gather.say(f'Press 1 to proceed with {speak_money(amount)}, or press 2 to enter a different '
                           f'amount.', voice=VOICE)
            else:
                gather.say(f'You entered {speak_money(amount)}. Press 1 to confirm this payment, or press 2 '
                           f'to enter a different amount.', voice=VOICE)
            response.say(NO_INPUT_TEXT, voice=VOICE)
            response.hangup()
        except Exception as e:
            logger.error(f"IVR payment amount error for {caller}: {str(e)}")
            response = self._error()
        return response

    def handle_payment_confirm(
        self,
        digits: str,
        amount: float,
        caller: str,
        call_sid: Optional[str] = None
    ) -> VoiceResponse:
        """Record a confirmed keypad payment as a pending installment."""
        response = VoiceResponse()
        try:
            donor = self.find_donor(caller)
            if donor is None:
                response.say(NO_ACCOUNT_TEXT, voice=VOICE)
                response.hangup()
                return response

            if digits == '2':
                self._ask_amount(response)
                return response
            if digits != '1' or amount <= 0:
                response.say('Invalid option. Please try again.', voice=VOICE)
                response.redirect(self._voice_url(), method='POST')
                return response

            reference = f"IVR-{datetime.utcnow():%y%m%d}-{donor.id:04d}"
            try:
                self.approvals.record_pledge_payment(
                    donor.id, amount, 'bank_transfer', reference=reference,
                    notes=f'IVR Phone Payment - Call SID: {call_sid or "unknown"}', source='ivr'
                )
            except ValueError as e:
                logger.warning(f"Keypad payment from donor {donor.id} not recorded: {str(e)}")
                response.say('We could not find an approved pledge on your account. '
                             'Please ask for a call back and a member of the church will help you.', voice=VOICE)
                response.say(GOODBYE_TEXT, voice=VOICE)
                response.hangup()
                return response

            response.say(f'Thank you. Your payment of {speak_money(amount)} has been recorded and will be '
                         f'confirmed once it reaches our account.', voice=VOICE)
            response.pause(length=1)
            spoken_reference = " ".join(reference.replace("-", ""))
            response.say(f'Please use the reference {spoken_reference} when you make the transfer.', voice=VOICE)
            self._say_bank_details(response)

            text = (
                f"Thank you {donor.name}. Your payment of £{amount:,.2f} has been recorded.\n"
                f"Account name: {self.bank_details.get('account_name', '')}\n"
                f"Sort code: {self.bank_details.get('sort_code', '')}\n"
                f"Account number: {self.bank_details.get('account_number', '')}\n"
                f"Reference: {reference}"
            )
            if self.messaging is not None:
                result = self.messaging.send_direct(caller, text, donor_id=donor.id, source_type='ivr_payment')
                if result.get('success'):
                    response.say('We have also sent these details to your phone.', voice=VOICE)
            response.pause(length=1)
            response.say(GOODBYE_TEXT, voice=VOICE)
            response.hangup()
        except Exception as e:
            logger.error(f"IVR payment confirm error for {caller}: {str(e)}")
            response = self._error()
        return response

    def bridge_to_donor(self, donor_phone: str, donor_name: str = '') -> VoiceResponse:
        """TwiML for the agent leg of an outbound call: connect them to the donor."""
        response = VoiceResponse()
        if not donor_phone:
            response.say('The donor number is missing. Goodbye.', voice=VOICE)
            response.hangup()
            return response

        response.say(f'Connecting you to {donor_name or "the donor"}.', voice=VOICE)
        dial = response.dial(caller_id=self.caller_id, timeout=30) if self.caller_id \
            else response.dial(timeout=30)
        dial.number(donor_phone)
        return response

    @staticmethod
    def notification(request_id: Optional[str] = None, caller: Optional[str] = None) -> VoiceResponse:
        """Announcement played when the office is called about a new request."""
        if request_id:
            text = (f'This is the church fundraising system. A donor has submitted support request number '
                    f'{request_id}. Please check the admin portal.')
        elif caller:
            text = (f'This is the church fundraising system. A caller asked to be called back on '
                    f'{speak_digits(caller)}.')
        else:
            text = 'This is the church fundraising system. A donor needs your attention. Please check the admin portal.'

        response = VoiceResponse()
        response.say(text, voice=VOICE)
        response.pause(length=1)
        response.say(text, voice=VOICE)
        response.hangup()
        return response
