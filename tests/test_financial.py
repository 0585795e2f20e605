import pytest
from datetime import datetime
from fundraising.financial import FinancialCalculator
from fundraising.models import Donor, Payment, Pledge, PledgePayment


@pytest.fixture
def activity(db_session, donor):
    db_session.add_all([
        Pledge(donor_id=donor.id, amount=400, status='approved', created_at=datetime(2025, 3, 1)),
        Pledge(donor_id=donor.id, amount=200, status='pending', created_at=datetime(2025, 3, 1)),
        Pledge(amount=100, status='approved', type='pledge', created_at=datetime(2025, 5, 1)),
        Payment(donor_id=donor.id, amount=50, method='cash', status='approved', received_at=datetime(2025, 3, 2)),
        Payment(amount=25, method='card', status='pending', received_at=datetime(2025, 3, 2)),
        PledgePayment(donor_id=donor.id, amount=100, payment_method='bank_transfer', status='confirmed',
                      created_at=datetime(2025, 3, 5)),
        PledgePayment(donor_id=donor.id, amount=60, payment_method='cash', status='voided',
                      created_at=datetime(2025, 3, 6)),
    ])
    db_session.commit()


def test_campaign_totals(db_session, activity):
    totals = FinancialCalculator(db_session).get_totals()

    assert totals['instant_payments'] == 50
    assert totals['pledge_payments'] == 100
    assert totals['total_pledges'] == 500
    assert totals['pledge_count'] == 2
    assert totals['total_paid'] == 150
    assert totals['total_payment_count'] == 2
    assert totals['outstanding_pledged'] == 400
    assert totals['grand_total'] == 550
    assert totals['date_filtered'] is False


def test_totals_within_date_range(db_session, activity):
    totals = FinancialCalculator(db_session).get_totals(datetime(2025, 4, 1), datetime(2025, 5, 31))

    assert totals['total_pledges'] == 100
    assert totals['total_paid'] == 0
    assert totals['grand_total'] == 100
    assert totals['date_filtered'] is True


def test_outstanding_never_negative(db_session, donor):
    db_session.add(PledgePayment(donor_id=donor.id, amount=80, payment_method='cash', status='confirmed'))
    db_session.commit()

    totals = FinancialCalculator(db_session).get_totals()

    assert totals['outstanding_pledged'] == 0
    assert totals['grand_total'] == 80


def test_recalculate_after_approve(db_session, donor, activity):
    donor = FinancialCalculator(db_session).recalculate_donor_totals_after_approve(donor.id)

    assert donor.total_paid == 150
    assert donor.balance == 300
    assert donor.payment_status == 'paying'


def test_recalculate_marks_completed(db_session, donor):
    donor.total_pledged = 100
    db_session.add(PledgePayment(donor_id=donor.id, amount=99.995, payment_method='cash', status='confirmed'))
    db_session.commit()

    donor = FinancialCalculator(db_session).recalculate_donor_totals_after_approve(donor.id)

    assert donor.payment_status == 'completed'


def test_recalculate_after_undo_reopens(db_session, donor):
    donor.payment_status = 'completed'
    db_session.commit()

    donor = FinancialCalculator(db_session).recalculate_donor_totals_after_undo(donor.id)

    assert donor.total_paid == 0
    assert donor.balance == 400
    assert donor.payment_status == 'pending'


def test_recalculate_unknown_donor(db_session):
    assert FinancialCalculator(db_session).recalculate_donor_totals(404) is None


def test_donor_summary(db_session, donor, activity):
    summary = FinancialCalculator(db_session).get_donor_summary(donor.id)

    assert summary['payment_count'] == 2
    assert summary['pledge_count'] == 1
    assert summary['outstanding_balance'] == 300
    assert FinancialCalculator(db_session).get_donor_summary(404)['payment_status'] is None


def test_donor_summary_uses_stored_totals(db_session, donor):
    stored = db_session.get(Donor, donor.id)
    summary = FinancialCalculator(db_session).get_donor_summary(donor.id)
    assert summary['total_paid'] == stored.total_paid == 100
