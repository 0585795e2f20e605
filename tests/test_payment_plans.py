import pytest
from datetime import date
from fundraising.models import AuditLog, Donor, DonorPaymentPlan, PaymentPlanSchedule
from fundraising.payment_plans import PaymentPlanService, add_months


@pytest.fixture
def service(db_session):
    return PaymentPlanService(db_session)


def test_add_months_clamps_to_month_end():
    assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2025, 11, 15), 3) == date(2026, 2, 15)
    assert add_months(date(2025, 2, 28), 1, day=31) == date(2025, 3, 31)


def test_create_plan_builds_schedule(service, donor, db_session):
    plan = service.create_plan(donor.id, 100, 3, date(2025, 1, 31), payment_method='bank_transfer', created_by=1)

    assert plan.monthly_amount == 33.33
    assert plan.next_payment_due == date(2025, 1, 31)
    rows = db_session.query(PaymentPlanSchedule).filter_by(plan_id=plan.id).order_by(
        PaymentPlanSchedule.installment_number).all()
    assert [r.amount for r in rows] == [33.33, 33.33, 33.34]
    assert [r.due_date for r in rows] == [date(2025, 1, 31), date(2025, 2, 28), date(2025, 3, 31)]

    donor = db_session.get(Donor, donor.id)
    assert donor.has_active_plan is True
    assert donor.active_payment_plan_id == plan.id
    audit = db_session.query(AuditLog).filter_by(entity_type='payment_plan').one()
    assert audit.user_id == 1
    assert audit.after_json['total_payments'] == 3


def test_schedule_never_goes_negative(service, donor, db_session):
    plan = service.create_plan(donor.id, 1, 100, date(2025, 1, 1))
    amounts = [r.amount for r in db_session.query(PaymentPlanSchedule).filter_by(plan_id=plan.id)]
    assert set(amounts) == {0.01}

    plan = service.create_plan(donor.id, 100, 6, date(2025, 1, 1))
    rows = db_session.query(PaymentPlanSchedule).filter_by(plan_id=plan.id).order_by(
        PaymentPlanSchedule.installment_number).all()
    assert plan.monthly_amount == 16.66
    assert rows[-1].amount == 16.7
    assert round(sum(r.amount for r in rows), 2) == 100


def test_new_plan_cancels_previous(service, donor, db_session):
    first = service.create_plan(donor.id, 300, 3, date(2025, 1, 1))
    second = service.create_plan(donor.id, 300, 6, date(2025, 2, 1))

    assert db_session.get(DonorPaymentPlan, first.id).status == 'cancelled'
    assert service.get_active_plan(donor.id).id == second.id


@pytest.mark.parametrize('amount, payments, message', [
    (0, 3, 'Plan amount must be greater than zero'),
    (100, 0, 'Plan needs at least one payment'),
    (1, 199, 'Plan amount is too small for the number of payments'),
])
def test_create_plan_validation(service, donor, amount, payments, message):
    with pytest.raises(ValueError, match=message):
        service.create_plan(donor.id, amount, payments, date(2025, 1, 1))


def test_create_plan_unknown_donor(service):
    with pytest.raises(LookupError):
        service.create_plan(404, 100, 2, date(2025, 1, 1))


def test_record_and_revert_installment(service, donor, db_session):
    plan = service.create_plan(donor.id, 200, 2, date(2025, 1, 10))

    service.record_installment(plan, 100)
    assert plan.payments_made == 1
    assert plan.next_payment_due == date(2025, 2, 10)
    assert service.get_schedule(plan)[0]['status'] == 'paid'

    service.record_installment(plan, 100)
    assert plan.status == 'completed'
    assert plan.next_payment_due is None
    assert db_session.get(Donor, donor.id).has_active_plan is False

    service.revert_installment(plan, 100)
    assert plan.status == 'active'
    assert plan.payments_made == 1
    assert plan.amount_paid == 100
    assert plan.next_payment_due == date(2025, 2, 10)
    assert db_session.get(Donor, donor.id).has_active_plan is True


def test_revert_without_payments_is_noop(service, donor):
    plan = service.create_plan(donor.id, 200, 2, date(2025, 1, 10))
    service.revert_installment(plan, 100)
    assert plan.payments_made == 0


def test_schedule_for_plan_without_rows(service, donor, db_session):
    plan = DonorPaymentPlan(donor_id=donor.id, total_amount=90, monthly_amount=30, total_payments=3,
                            payments_made=1, start_date=date(2025, 1, 5), payment_day=5)
    db_session.add(plan)
    db_session.commit()

    schedule = service.get_schedule(plan)

    assert [s['status'] for s in schedule] == ['paid', 'pending', 'pending']
    assert schedule[2]['due_date'] == date(2025, 3, 5)


def test_mark_overdue(service, donor, db_session):
    plan = service.create_plan(donor.id, 300, 3, date(2025, 1, 1))

    assert service.mark_overdue(today=date(2025, 2, 15)) == 2
    statuses = [s['status'] for s in service.get_schedule(plan)]
    assert statuses == ['overdue', 'overdue', 'pending']
