import logging
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from .models import SMSProvider
from .sms_providers import BaseSMSService, TheSMSWorksService, VoodooSMSService

logger = logging.getLogger(__name__)

PROVIDER_CLASSES = {
    'voodoosms': VoodooSMSService,
    'thesmsworks': TheSMSWorksService,
}


class SMSServiceFactory:
    """Builds SMS gateway services from the sms_providers table."""

    def __init__(self, db_session: Session):
        self.db = db_session
        self._default_service = None

    def _build(self, provider: SMSProvider) -> Optional[BaseSMSService]:
        service_class = PROVIDER_CLASSES.get((provider.name or '').lower())
        if service_class is None:
            logger.warning(f"Unknown SMS provider: {provider.name}")
            return None
        try:
            return service_class.from_provider(self.db, provider)
        except ValueError as e:
            logger.error(f"Failed to initialise SMS provider {provider.name}: {str(e)}")
            return None

    def get_default_service(self) -> Optional[BaseSMSService]:
        """Active provider flagged as default, else the oldest active one."""
        if self._default_service is not None:
            return self._default_service

        provider = self.db.query(SMSProvider).filter(
            SMSProvider.is_active.is_(True)
        ).order_by(SMSProvider.is_default.desc(), SMSProvider.id).first()

        if provider is None:
            logger.warning("No active SMS provider configured")
            return None

        self._default_service = self._build(provider)
        return self._default_service

    def get_by_name(self, name: str) -> Optional[BaseSMSService]:
        provider = self.db.query(SMSProvider).filter(
            SMSProvider.name == name.lower(),
            SMSProvider.is_active.is_(True)
        ).first()
        return self._build(provider) if provider else None

    def get_by_id(self, provider_id: int) -> Optional[BaseSMSService]:
        provider = self.db.get(SMSProvider, provider_id)
        return self._build(provider) if provider else None

    def get_active_providers(self) -> List[SMSProvider]:
        return self.db.query(SMSProvider).filter(
            SMSProvider.is_active.is_(True)
        ).order_by(SMSProvider.is_default.desc(), SMSProvider.id).all()

    @staticmethod
    def get_supported_providers() -> List[Dict]:
        return [
            {
                'name': 'voodoosms',
                'display_name': 'VoodooSMS',
                'cost_per_sms_pence': 3.5,
                'api_key_label': 'API username',
                'api_secret_label': 'API password',
            },
            {
                'name': 'thesmsworks',
                'display_name': 'TheSMSWorks',
                'cost_per_sms_pence': 2.9,
                'api_key_label': 'Customer ID',
                'api_secret_label': 'API key',
            },
        ]

    def test_connection(self, provider_id: int) -> Dict:
        service = self.get_by_id(provider_id)
        if service is None:
            return {'success': False, 'message': 'Provider not found or not supported', 'credits': 0}
        return service.test_connection()

    def clear_cache(self) -> None:
        self._default_service = None
