import logging
from typing import Dict, List, Optional

from .models import Donor, DonorSupportRequest

logger = logging.getLogger(__name__)


class SupportNotifier:
    """
    Tells the church office about new support requests.

    Channels are tried in order (WhatsApp, phone call, SMS) and the first
    one that succeeds wins.
    """

    def __init__(
        self,
        admin_phone: Optional[str],
        base_url: str,
        whatsapp_service=None,
        voice_service=None,
        sms_helper=None
    ):
        self.admin_phone = admin_phone
        self.base_url = base_url.rstrip('/')
        self.whatsapp_service = whatsapp_service
        self.voice_service = voice_service
        self.sms_helper = sms_helper

    def _notify(self, text: str, twiml_url: str) -> Dict:
        if not self.admin_phone:
            logger.warning("ADMIN_NOTIFY_PHONE not set; skipping support notification")
            return {'success': False, 'channel': None, 'errors': ['No admin phone configured']}

        errors: List[str] = []
        attempts = (
            ('whatsapp', self.whatsapp_service,
             lambda: self.whatsapp_service.send(self.admin_phone, text, source_type='support_notification')),
            ('call', self.voice_service,
             lambda: self.voice_service.make_notification_call(self.admin_phone, twiml_url)),
            ('sms', self.sms_helper,
             lambda: self.sms_helper.send_now(self.admin_phone, text, source_type='support_notification',
                                              force_immediate=True)),
        )

        for channel, service, send in attempts:
            if service is None:
                continue
            try:
                result = send()
            except Exception as e:
                logger.error(f"Support notification via {channel} raised: {str(e)}")
                errors.append(f"{channel}: {str(e)}")
                continue

            if result.get('success'):
                logger.info(f"Support notification sent via {channel}")
                return {'success': True, 'channel': channel, 'errors': errors}

            logger.warning(f"Support notification via {channel} failed: {result.get('error')}")
            errors.append(f"{channel}: {result.get('error')}")

        logger.error(f"All support notification channels failed: {errors}")
        return {'success': False, 'channel': None, 'errors': errors}

    def notify_new_request(self, request: DonorSupportRequest, donor: Donor) -> Dict:
        text = (
            f"New support request #{request.id} from {donor.name} ({donor.phone or 'no phone'}). "
            f"Category: {request.category}. Subject: {request.subject}"
        )
        return self._notify(text, f"{self.base_url}/twiml/notification?request_id={request.id}")

    def notify_callback_request(self, caller: str, donor: Optional[Donor] = None) -> Dict:
        name = donor.name if donor else 'Unknown caller'
        text = f"Call back requested by {name} on {caller} via the phone line."
        return self._notify(text, f"{self.base_url}/twiml/notification?caller={caller}")
