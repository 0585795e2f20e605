import json
import pytest
from datetime import date
from click.testing import CliRunner
from fundraising.cli import cli
from fundraising.models import AdminUser, Donor, SMSQueue
from fundraising.payment_plans import PaymentPlanService

SENT = '{"result": 200, "reference_number": "R1", "credit": 40}'


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def status_file(tmp_path, monkeypatch):
    path = tmp_path / 'scheduler_status.json'
    monkeypatch.setattr('fundraising.cli.STATUS_FILE', str(path))
    return path


def test_init_db(runner, db_session):
    result = runner.invoke(cli, ['init-db'])
    assert result.exit_code == 0


def test_create_admin(runner, db_session):
    result = runner.invoke(cli, ['create-admin', '--name', 'Hanna', '--email', 'Hanna@Church.test',
                                 '--password', 'pw123456', '--role', 'registrar'])

    assert result.exit_code == 0
    assert 'Created registrar hanna@church.test' in result.output
    user = db_session.query(AdminUser).filter_by(email='hanna@church.test').one()
    assert user.role == 'registrar'


def test_create_admin_refuses_duplicate(runner, admin_user):
    result = runner.invoke(cli, ['create-admin', '--name', 'X', '--email', 'admin@church.test',
                                 '--password', 'pw'])
    assert result.exit_code == 1
    assert 'already exists' in result.output


def test_recalc_donor(runner, donor, db_session):
    result = runner.invoke(cli, ['recalc-donor', str(donor.id)])

    assert result.exit_code == 0
    assert 'Abebe Kebede: pledged £400.00, paid £0.00, balance £400.00 (paying)' in result.output
    db_session.expire_all()
    assert db_session.get(Donor, donor.id).balance == 400


def test_recalc_unknown_donor(runner, db_session):
    result = runner.invoke(cli, ['recalc-donor', '999'])
    assert result.exit_code == 1
    assert 'Donor 999 not found' in result.output


def test_issue_token(runner, donor):
    result = runner.invoke(cli, ['issue-token', str(donor.id)])
    assert result.output.startswith('https://fundraising.test/portal/login/')


def test_provider_check(runner, sms_provider, mocker):
    mocker.patch('fundraising.sms_providers.VoodooSMSService._post', return_value=SENT)
    result = runner.invoke(cli, ['test-provider', str(sms_provider.id)])
    assert result.exit_code == 0
    assert f'Provider {sms_provider.id} OK' in result.output


def test_provider_check_unknown(runner, db_session):
    result = runner.invoke(cli, ['test-provider', '42'])
    assert result.exit_code == 1
    assert 'Provider not found or not supported' in result.output


def test_send_sms(runner, sms_provider, sms_settings, mocker):
    mocker.patch('fundraising.sms_providers.VoodooSMSService._post', return_value=SENT)
    result = runner.invoke(cli, ['send-sms', '07700900123', 'Hello'])
    assert result.exit_code == 0
    assert 'Sent, message id R1' in result.output


def test_send_sms_failure(runner, db_session):
    result = runner.invoke(cli, ['send-sms', '07700900123', 'Hello'])
    assert result.exit_code == 1
    assert 'SMS system not ready' in result.output


def test_process_queue_writes_status(runner, sms_provider, sms_settings, status_file, db_session, mocker):
    mocker.patch('fundraising.sms_providers.VoodooSMSService._post', return_value=SENT)
    db_session.add(SMSQueue(phone_number='07700900123', message='Hi'))
    db_session.commit()

    result = runner.invoke(cli, ['process-queue', '--batch-size', '5'])

    assert result.exit_code == 0
    status = json.loads(status_file.read_text())
    assert status['action'] == 'process_queue'
    assert status['result']['sent'] == 1


def test_schedule_reminders_reports_overdue(runner, donor, templates, sms_settings, status_file, db_session):
    PaymentPlanService(db_session).create_plan(donor.id, 200, 2, date(2020, 1, 1))

    result = runner.invoke(cli, ['schedule-reminders'])

    assert result.exit_code == 0
    status = json.loads(status_file.read_text())
    assert status['result']['overdue_marked'] == 2


def test_cleanup(runner, status_file, db_session):
    result = runner.invoke(cli, ['cleanup', '--days', '30'])
    assert result.exit_code == 0
    assert json.loads(status_file.read_text())['result'] == {'queue_rows_deleted': 0, 'whatsapp_cache_deleted': 0}


def test_populate_grid(runner, db_session):
    result = runner.invoke(cli, ['populate-grid'])
    assert result.exit_code == 0
    assert 'Created 513 cells' in result.output

    again = runner.invoke(cli, ['populate-grid'])
    assert again.exit_code == 1
    assert 'use --reset' in again.output

    assert runner.invoke(cli, ['populate-grid', '--reset']).exit_code == 0


def test_grid_stats(runner, floor_grid):
    floor_grid.allocate(200, 'Giver', 'paid')
    floor_grid.db.commit()

    result = runner.invoke(cli, ['grid-stats'])

    assert result.exit_code == 0
    assert '2 paid, 0 pledged, 8 available of 10 cells (0.50 of 2.50 m²)' in result.output
