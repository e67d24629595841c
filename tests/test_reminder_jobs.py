from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from chambers import db
from chambers.crud import bill_crud, proposal_crud
from chambers.jobs import reminder_jobs
from chambers.models import Bill, InstallmentInvoice, Notification, OfficeAdvance, ProjectManager, UserFinancialTransaction
from chambers.schemas import BillCreate, PaymentTermIn, ProposalCreate, SubmitRequest

NOW = datetime(2024, 6, 15, 9, 0)


@pytest.fixture
def overdue(ctx, users, acme, project):
    db.session.add(ProjectManager(project_id=project.id, user_id=users['staff'].id))
    db.session.commit()
    bill = bill_crud.add_bill(ctx['manager'], BillCreate(
        client_id=acme.id, project_id=project.id, amount='250', due_date=NOW - timedelta(days=10)))
    bill_crud.submit_bill(ctx['manager'], bill.id, SubmitRequest())
    return bill


class TestOutstandingInvoices:

    def test_first_sighting_notifies_everyone_involved(self, app, users, overdue, outbox):
        results = reminder_jobs.check_outstanding_invoices(NOW)
        assert results['processed'] == 1
        assert results['notified'] == 1

        bill = db.session.get(Bill, overdue.id)
        assert bill.became_outstanding_at == NOW
        assert bill.last_reminder_sent_at == NOW
        assert bill.reminder_count == 1

        notified = {n.user_id for n in Notification.query.filter_by(type='INVOICE_OUTSTANDING').all()}
        expected = {users[name].id for name in ('staff2', 'manager', 'staff', 'admin', 'admin2')}
        assert notified == expected
        assert len(outbox) == len(expected)

    def test_no_repeat_within_a_week(self, app, overdue):
        reminder_jobs.check_outstanding_invoices(NOW)
        results = reminder_jobs.check_outstanding_invoices(NOW + timedelta(days=3))
        assert results['processed'] == 1
        assert results['notified'] == 0
        assert db.session.get(Bill, overdue.id).reminder_count == 1

    def test_repeat_after_a_week(self, app, overdue):
        reminder_jobs.check_outstanding_invoices(NOW)
        later = NOW + timedelta(days=8)
        results = reminder_jobs.check_outstanding_invoices(later)
        assert results['notified'] == 1
        bill = db.session.get(Bill, overdue.id)
        assert bill.reminder_count == 2
        assert bill.became_outstanding_at == NOW
        assert bill.last_reminder_sent_at == later

    def test_paid_and_future_bills_are_skipped(self, app, ctx, acme, overdue):
        bill_crud.mark_paid(ctx['admin'], overdue.id)
        bill_crud.add_bill(ctx['manager'], BillCreate(client_id=acme.id, amount='10', due_date=NOW + timedelta(days=1)))
        results = reminder_jobs.check_outstanding_invoices(NOW)
        assert results['processed'] == 0
        assert Notification.query.filter_by(type='INVOICE_OUTSTANDING').count() == 0


class TestInstallments:

    @pytest.fixture
    def term(self, ctx, acme):
        proposal = proposal_crud.add_proposal(ctx['staff'], ProposalCreate(
            title='Retainer', client_id=acme.id, amount='900',
            payment_terms=[PaymentTermIn(installment_type='TIME_BASED', installment_count=3,
                                         installment_frequency='MONTHLY')],
        ))
        proposal.status = 'APPROVED'
        proposal.issue_date = datetime(2024, 1, 10, 14, 30)
        db.session.commit()
        return proposal.payment_terms[0]

    def test_installment_in_window_notifies_creator_and_client_manager(self, app, users, term):
        results = reminder_jobs.check_installments(datetime(2024, 2, 5))
        assert results['notifications_created'] == 2
        notices = Notification.query.filter_by(type='INSTALLMENT_DUE').all()
        assert {n.user_id for n in notices} == {users['staff'].id, users['manager'].id}
        assert all(n.payment_term_id == term.id and n.due_date == datetime(2024, 2, 10) for n in notices)
        assert '300.00' in notices[0].message

    def test_outside_window(self, app, term):
        assert reminder_jobs.check_installments(datetime(2024, 1, 20))['notifications_created'] == 0

    def test_invoiced_installment_is_skipped(self, app, term):
        db.session.add(InstallmentInvoice(payment_term_id=term.id, installment_number=1,
                                          invoiced_at=datetime(2024, 2, 1)))
        db.session.commit()
        assert reminder_jobs.check_installments(datetime(2024, 2, 5))['notifications_created'] == 0

    def test_unapproved_proposals_are_ignored(self, app, term):
        term.proposal.status = 'SUBMITTED'
        db.session.commit()
        assert reminder_jobs.check_installments(datetime(2024, 2, 5))['payment_terms'] == 0


class TestRecurringAdvances:

    @pytest.fixture
    def advance(self, users):
        advance = OfficeAdvance(
            user_id=users['staff'].id, type='RECURRING', description='Rent support', amount=Decimal('150'),
            start_date=datetime(2024, 1, 1), end_date=datetime(2024, 12, 31), frequency='MONTHLY', is_active=True,
        )
        db.session.add(advance)
        db.session.commit()
        return advance

    def test_posts_one_installment_per_due_date(self, app, users, advance):
        assert reminder_jobs.process_recurring_advances(datetime(2024, 1, 15))['processed'] == 1
        assert reminder_jobs.process_recurring_advances(datetime(2024, 1, 20))['not_due'] == 1
        assert reminder_jobs.process_recurring_advances(datetime(2024, 2, 2))['processed'] == 1

        entries = UserFinancialTransaction.query.filter_by(user_id=users['staff'].id).order_by(
            UserFinancialTransaction.transaction_date).all()
        assert [e.transaction_date for e in entries] == [datetime(2024, 1, 1), datetime(2024, 2, 1)]
        assert all(e.amount == Decimal('-150.00') and e.type == 'ADVANCE' for e in entries)

    def test_deactivates_after_end_date(self, app, advance):
        results = reminder_jobs.process_recurring_advances(datetime(2025, 1, 5))
        assert results['deactivated'] == 1
        assert db.session.get(OfficeAdvance, advance.id).is_active is False


class TestCronEndpoints:

    @pytest.mark.parametrize('path', [
        '/api/cron/check-outstanding-invoices',
        '/api/cron/check-installments',
        '/api/cron/process-recurring-advances',
    ])
    def test_requires_bearer_secret(self, client, path):
        assert client.get(path).status_code == 401
        assert client.get(path, headers={'Authorization': 'Bearer wrong'}).status_code == 401
        response = client.get(path, headers={'Authorization': 'Bearer test-cron-secret'})
        assert response.status_code == 200
        assert response.get_json()['success'] is True
