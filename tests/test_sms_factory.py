from fundraising.models import SMSProvider
from fundraising.sms_factory import SMSServiceFactory
from fundraising.sms_providers import TheSMSWorksService, VoodooSMSService


def test_no_provider_configured(db_session):
    factory = SMSServiceFactory(db_session)
    assert factory.get_default_service() is None
    assert factory.test_connection(99)['success'] is False


def test_default_provider_preferred(db_session):
    db_session.add_all([
        SMSProvider(name='voodoosms', api_key='a', api_secret='b', is_active=True, is_default=False),
        SMSProvider(name='thesmsworks', api_key='c', api_secret='d', is_active=True, is_default=True),
    ])
    db_session.commit()

    service = SMSServiceFactory(db_session).get_default_service()
    assert isinstance(service, TheSMSWorksService)


def test_unknown_or_incomplete_provider_yields_none(db_session):
    db_session.add_all([
        SMSProvider(name='carrierpigeon', api_key='a', api_secret='b', is_active=True),
        SMSProvider(name='voodoosms', api_key='', api_secret='', is_active=True),
    ])
    db_session.commit()
    factory = SMSServiceFactory(db_session)

    assert factory.get_by_name('carrierpigeon') is None
    assert factory.get_by_name('voodoosms') is None


def test_lookup_by_name_and_id(db_session, sms_provider):
    factory = SMSServiceFactory(db_session)
    assert isinstance(factory.get_by_name('VoodooSMS'), VoodooSMSService)
    assert factory.get_by_id(sms_provider.id).provider_id == sms_provider.id
    assert [p.id for p in factory.get_active_providers()] == [sms_provider.id]


def test_supported_providers():
    names = [p['name'] for p in SMSServiceFactory.get_supported_providers()]
    assert names == ['voodoosms', 'thesmsworks']


def test_default_service_is_cached(db_session, sms_provider):
    factory = SMSServiceFactory(db_session)
    first = factory.get_default_service()
    assert factory.get_default_service() is first
    factory.clear_cache()
    assert factory.get_default_service() is not first
