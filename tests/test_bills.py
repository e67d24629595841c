from datetime import datetime
from decimal import Decimal

import pytest
from dateutil.relativedelta import relativedelta

from chambers import db
from chambers.crud import bill_crud, project_crud, proposal_crud
from chambers.errors import BusinessRuleViolation, Forbidden
from chambers.models import Bill, DetailedLog, FinderFee, InstallmentInvoice, ProjectCharge, TimesheetEntry
from chambers.schemas import (
    BillCreate, BulkDeleteRequest, GenerateInvoiceRequest, PaymentTermIn, ProjectChargeCreate, ProposalCreate,
    SubmitRequest, TimesheetEntryCreate,
)


def log_time(ctx, project, hours, rate, billable=True):
    return project_crud.add_timesheet_entry(ctx, project.id, TimesheetEntryCreate(
        date=datetime(2024, 3, 4), hours=hours, rate=rate, billable=billable, description='Drafting'))


def paid_upfront_bill(ctx, acme, project, amount):
    bill = bill_crud.add_bill(ctx['manager'], BillCreate(
        client_id=acme.id, project_id=project.id, amount=amount, is_upfront_payment=True))
    bill_crud.submit_bill(ctx['manager'], bill.id, SubmitRequest())
    return bill_crud.mark_paid(ctx['admin'], bill.id)


def test_create_from_items_with_credit_and_tax(client, headers, acme):
    body = {
        'client_id': str(acme.id),
        'tax_rate': '23',
        'items': [
            {'description': 'Hearing', 'quantity': 2, 'unit_price': '250'},
            {'description': 'Goodwill', 'unit_price': '100', 'is_credit': True},
        ],
    }
    response = client.post('/api/bills', json=body, headers=headers('staff'))
    assert response.status_code == 201
    bill = response.get_json()
    assert bill['status'] == 'DRAFT'
    assert bill['subtotal'] == 500.0
    assert bill['credit_applied'] == 100.0
    assert bill['amount'] == 492.0
    assert [i['amount'] for i in bill['items']] == [500.0, -100.0]


def test_list_filters_by_client(client, headers, ctx, acme):
    bill_crud.add_bill(ctx['staff'], BillCreate(client_id=acme.id, amount=10))
    listed = client.get(f'/api/bills?client_id={acme.id}', headers=headers('manager')).get_json()
    assert len(listed) == 1
    assert client.get('/api/bills?client_id=not-a-uuid', headers=headers('manager')).status_code == 400


def test_mark_paid_requires_submission_and_manager(app, ctx, acme):
    bill = bill_crud.add_bill(ctx['staff'], BillCreate(client_id=acme.id, amount=100))
    with pytest.raises(Forbidden):
        bill_crud.mark_paid(ctx['staff'], bill.id)
    with pytest.raises(BusinessRuleViolation):
        bill_crud.mark_paid(ctx['manager'], bill.id)
    bill_crud.submit_bill(ctx['staff'], bill.id, SubmitRequest())
    bill_crud.mark_paid(ctx['manager'], bill.id)
    assert bill.status == 'PAID' and bill.paid_at is not None
    with pytest.raises(BusinessRuleViolation):
        bill_crud.mark_paid(ctx['manager'], bill.id)


def test_only_draft_invoices_are_submitted(client, headers, ctx, acme):
    bill = bill_crud.add_bill(ctx['manager'], BillCreate(client_id=acme.id, amount='100'))
    url = f'/api/bills/{bill.id}/submit'
    assert client.post(url, json={}, headers=headers('manager')).status_code == 200
    response = client.post(url, json={}, headers=headers('manager'))
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Only draft bills can be submitted'

    bill_crud.mark_paid(ctx['admin'], bill.id)
    assert client.post(url, json={}, headers=headers('admin')).status_code == 400


class TestGenerateInvoice:

    def test_bills_unbilled_work_less_upfront_credit(self, app, ctx, users, acme, project):
        log_time(ctx['staff'], project, 2.5, 200)
        log_time(ctx['staff'], project, 1, 200, billable=False)
        project_crud.add_charge(ctx['staff'], project.id, ProjectChargeCreate(description='Court fee', amount='50'))
        upfront = paid_upfront_bill(ctx, acme, project, 100)

        bill = project_crud.generate_invoice(ctx['manager'], project.id, GenerateInvoiceRequest())
        assert bill.status == 'DRAFT'
        assert sorted(i.type for i in bill.items) == ['CHARGE', 'FEE', 'TIMESHEET']
        assert bill.subtotal == Decimal('550.00')
        assert bill.credit_applied == Decimal('100.00')
        assert bill.amount == Decimal('450.00')
        assert upfront.credit_applied == Decimal('100.00')

        billed = TimesheetEntry.query.filter_by(bill_id=bill.id).all()
        assert len(billed) == 1 and billed[0].billed
        assert ProjectCharge.query.filter_by(bill_id=bill.id).one().billed
        assert TimesheetEntry.query.filter_by(billable=False).one().billed is False

        with pytest.raises(BusinessRuleViolation, match='no unbilled time or charges'):
            project_crud.generate_invoice(ctx['manager'], project.id, GenerateInvoiceRequest())

    def test_credit_is_only_used_once(self, app, ctx, acme, project):
        paid_upfront_bill(ctx, acme, project, 100)
        log_time(ctx['staff'], project, 1, 80)
        first = project_crud.generate_invoice(ctx['manager'], project.id, GenerateInvoiceRequest())
        assert first.amount == Decimal('0.00')
        log_time(ctx['staff'], project, 1, 80)
        second = project_crud.generate_invoice(ctx['manager'], project.id, GenerateInvoiceRequest())
        assert second.credit_applied == Decimal('20.00')
        assert second.amount == Decimal('60.00')

    def test_cancel_releases_work(self, app, ctx, acme, project):
        entry = log_time(ctx['staff'], project, 3, 100)
        bill = project_crud.generate_invoice(ctx['manager'], project.id, GenerateInvoiceRequest())
        bill_crud.cancel_bill(ctx['manager'], bill.id)
        entry = db.session.get(TimesheetEntry, entry.id)
        db.session.refresh(entry)
        assert entry.billed is False and entry.bill_id is None

    def test_http_route(self, client, headers, ctx, project):
        log_time(ctx['staff'], project, 1, 120)
        response = client.post(f'/api/projects/{project.id}/generate-invoice', json={}, headers=headers('manager'))
        assert response.status_code == 201
        assert response.get_json()['amount'] == 120.0
        unbilled = client.get(f'/api/projects/{project.id}/unbilled', headers=headers('manager')).get_json()
        assert unbilled['total'] == 0


class TestFinderFees:

    def test_paid_invoice_earns_finder_fee_on_net_amount(self, app, ctx, users, acme):
        bill = bill_crud.add_bill(ctx['manager'], BillCreate(
            client_id=acme.id, discount_percent=10, tax_rate=23,
            items=[{'description': 'Advice', 'unit_price': '1000'}]))
        bill_crud.submit_bill(ctx['manager'], bill.id, SubmitRequest())
        bill_crud.mark_paid(ctx['admin'], bill.id)

        fee = FinderFee.query.filter_by(bill_id=bill.id).one()
        assert fee.finder_id == users['staff2'].id
        assert fee.invoice_net_amount == Decimal('900.00')
        assert fee.finder_fee_amount == Decimal('90.00')
        assert fee.status == 'PENDING'

    def test_paid_invoice_cannot_be_deleted(self, app, ctx, acme):
        bill = bill_crud.add_bill(ctx['manager'], BillCreate(client_id=acme.id, amount=100))
        bill_crud.submit_bill(ctx['manager'], bill.id, SubmitRequest())
        bill_crud.mark_paid(ctx['admin'], bill.id)
        with pytest.raises(BusinessRuleViolation) as raised:
            bill_crud.delete_bill(ctx['admin'], bill.id)
        assert raised.value.details == {'finder_fees': 1, 'paid': 1}


class TestInstallments:

    @pytest.fixture
    def approved(self, ctx, acme):
        proposal = proposal_crud.add_proposal(ctx['staff'], ProposalCreate(
            title='Retainer', client_id=acme.id, amount='1200',
            payment_terms=[PaymentTermIn(upfront_type='PERCENT', upfront_value=10, installment_type='TIME_BASED',
                                         installment_count=3, installment_frequency='MONTHLY')],
        ))
        proposal.status = 'APPROVED'
        db.session.commit()
        return proposal

    def test_invoice_one_installment(self, app, ctx, approved):
        term = approved.payment_terms[0]
        bill = bill_crud.invoice_installment(ctx['manager'], term.id, 2, GenerateInvoiceRequest())
        assert bill.status == 'DRAFT'
        assert bill.amount == Decimal('360.00')
        assert bill.due_date == approved.issue_date + relativedelta(months=2)
        record = InstallmentInvoice.query.filter_by(payment_term_id=term.id, installment_number=2).one()
        assert record.bill_id == bill.id and record.invoiced_at is not None
        assert proposal_crud.invoiced_installment_numbers(term) == {2}

        with pytest.raises(BusinessRuleViolation, match='already been invoiced'):
            bill_crud.invoice_installment(ctx['manager'], term.id, 2, GenerateInvoiceRequest())

    def test_unknown_installment(self, app, ctx, approved):
        with pytest.raises(BusinessRuleViolation):
            bill_crud.invoice_installment(ctx['manager'], approved.payment_terms[0].id, 4, GenerateInvoiceRequest())

    def test_cancelling_frees_the_installment(self, app, ctx, approved):
        term = approved.payment_terms[0]
        bill = bill_crud.invoice_installment(ctx['manager'], term.id, 1, GenerateInvoiceRequest())
        bill_crud.cancel_bill(ctx['admin'], bill.id)
        assert proposal_crud.invoiced_installment_numbers(term) == set()


class TestUpfrontInvoice:

    def approved_proposal(self, ctx, acme, term, **fields):
        proposal = proposal_crud.add_proposal(ctx['staff'], ProposalCreate(
            title='Retainer', client_id=acme.id, amount='1200', payment_terms=[term], **fields))
        proposal.status = 'APPROVED'
        db.session.commit()
        return proposal

    def test_percent_upfront_with_shared_fixed_discount(self, app, ctx, acme):
        proposal = self.approved_proposal(ctx, acme, PaymentTermIn(
            upfront_type='PERCENT', upfront_value=10, installment_type='TIME_BASED',
            installment_count=3, installment_frequency='MONTHLY'), client_discount_amount='300')
        bill = bill_crud.invoice_upfront(ctx['manager'], proposal.id)
        assert bill.is_upfront_payment
        assert bill.status == 'DRAFT'
        assert bill.proposal_id == proposal.id
        assert bill.subtotal == Decimal('120.00')
        assert bill.discount_amount == Decimal('30.00')
        assert bill.amount == Decimal('90.00')

        with pytest.raises(BusinessRuleViolation, match='already exists'):
            bill_crud.invoice_upfront(ctx['manager'], proposal.id)

    def test_fixed_upfront_with_percent_discount(self, app, ctx, acme):
        proposal = self.approved_proposal(ctx, acme, PaymentTermIn(upfront_type='FIXED', upfront_value=500),
                                          client_discount_percent=10)
        bill = bill_crud.invoice_upfront(ctx['manager'], proposal.id)
        assert bill.discount_percent == Decimal('10')
        assert bill.amount == Decimal('450.00')

    def test_cancelled_upfront_invoice_can_be_issued_again(self, app, ctx, acme):
        proposal = self.approved_proposal(ctx, acme, PaymentTermIn(upfront_type='FIXED', upfront_value=200))
        first = bill_crud.invoice_upfront(ctx['manager'], proposal.id)
        bill_crud.cancel_bill(ctx['admin'], first.id)
        second = bill_crud.invoice_upfront(ctx['manager'], proposal.id)
        assert second.id != first.id
        assert Bill.query.filter_by(proposal_id=proposal.id, is_upfront_payment=True).count() == 2

    def test_needs_an_approved_proposal_with_upfront_terms(self, app, ctx, acme):
        proposal = self.approved_proposal(ctx, acme, PaymentTermIn(
            installment_type='TIME_BASED', installment_count=2, installment_frequency='MONTHLY'))
        with pytest.raises(BusinessRuleViolation, match='No upfront payment'):
            bill_crud.invoice_upfront(ctx['manager'], proposal.id)

        draft = proposal_crud.add_proposal(ctx['staff'], ProposalCreate(
            title='Draft', client_id=acme.id, amount='100',
            payment_terms=[PaymentTermIn(upfront_type='FIXED', upfront_value=50)]))
        with pytest.raises(BusinessRuleViolation, match='must be approved'):
            bill_crud.invoice_upfront(ctx['manager'], draft.id)

    def test_http_route(self, client, headers, ctx, acme):
        proposal = self.approved_proposal(ctx, acme, PaymentTermIn(upfront_type='FIXED', upfront_value=250))
        url = f'/api/proposals/{proposal.id}/generate-upfront-invoice'
        assert client.post(url, headers=headers('client')).status_code == 403
        response = client.post(url, headers=headers('manager'))
        assert response.status_code == 201
        body = response.get_json()
        assert body['is_upfront_payment'] is True
        assert body['amount'] == 250.0
        assert [item['description'] for item in body['items']] == ['Upfront payment: Retainer']


class TestDeletion:

    def test_staff_delete_only_their_drafts(self, app, ctx, acme):
        bill = bill_crud.add_bill(ctx['staff'], BillCreate(client_id=acme.id, amount=10))
        bill_crud.submit_bill(ctx['staff'], bill.id, SubmitRequest())
        with pytest.raises(Forbidden):
            bill_crud.delete_bill(ctx['staff'], bill.id)
        draft = bill_crud.add_bill(ctx['staff'], BillCreate(client_id=acme.id, amount=10))
        bill_crud.delete_bill(ctx['staff'], draft.id)
        assert draft.deleted_at is not None

    def test_bulk_delete(self, client, headers, ctx, acme):
        draft = bill_crud.add_bill(ctx['staff'], BillCreate(client_id=acme.id, amount=10))
        paid = bill_crud.add_bill(ctx['manager'], BillCreate(client_id=acme.id, amount=10))
        bill_crud.submit_bill(ctx['manager'], paid.id, SubmitRequest())
        bill_crud.mark_paid(ctx['admin'], paid.id)

        response = client.post('/api/bills/bulk-delete', json={'ids': [str(draft.id), str(paid.id)],
                                                               'action': 'delete'}, headers=headers('admin'))
        assert response.status_code == 200
        result = response.get_json()
        assert [row['id'] for row in result['deletable']] == [str(draft.id)]
        assert [row['id'] for row in result['non_deletable']] == [str(paid.id)]
        assert result['deleted'] == 1

        response = client.post('/api/bills/bulk-delete', json={'ids': [str(draft.id)], 'action': 'delete'},
                               headers=headers('manager'))
        assert response.status_code == 403

    def test_bulk_delete_counts_repeated_ids_once(self, app, ctx, acme):
        draft = bill_crud.add_bill(ctx['staff'], BillCreate(client_id=acme.id, amount=10))
        result = bill_crud.bulk_delete(ctx['admin'], BulkDeleteRequest(ids=[draft.id, draft.id], action='delete'))
        assert result['deleted'] == 1
        assert DetailedLog.query.filter_by(action='BULK_DELETE', record_id=draft.id).count() == 1
