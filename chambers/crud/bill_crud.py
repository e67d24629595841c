from chambers import db
from chambers.errors import BusinessRuleViolation, ChambersError, Forbidden, NotFound, ServiceUnavailable
from chambers.errors import DATABASE_UNAVAILABLE_MESSAGE, is_database_connection_error
from chambers.models import (
    Bill, BillItem, Client, InstallmentInvoice, Notification, PaymentTerm, ProjectCharge, Project, Proposal,
    TimesheetEntry,
)
from chambers.crud import approval_crud, account_crud, proposal_crud
from chambers.schemas import BILL_FIELDS_BY_ROLE, whitelisted_changes
from chambers.services import email_service, financial
from chambers.services.notification_service import unique_ids
from chambers.services.reference_census import bill_census, describe, session_is_reachable
from chambers.utils.date_utils import utc_now
from chambers.utils.logging_utils import log_action
from chambers.utils.permissions import can_edit_all_invoices, can_edit_invoice, can_submit
from chambers.utils.record_resolver import get_record, user_label
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
import logging

logger = logging.getLogger(__name__)

CLOSED_STATUSES = ('PAID', 'CANCELLED', 'WRITTEN_OFF')


def bill_to_dict(bill, detail=False):
    now = utc_now()
    data = {
        'id': str(bill.id),
        'invoice_number': bill.invoice_number,
        'proposal_id': str(bill.proposal_id) if bill.proposal_id else None,
        'project_id': str(bill.project_id) if bill.project_id else None,
        'project_name': bill.project.name if bill.project else None,
        'client_id': str(bill.client_id),
        'client_name': bill.client.name if bill.client else None,
        'created_by': str(bill.created_by),
        'creator_name': user_label(bill.creator),
        'status': bill.status,
        'subtotal': float(bill.subtotal or 0),
        'amount': float(bill.amount or 0),
        'currency': bill.currency,
        'tax_rate': float(bill.tax_rate) if bill.tax_rate is not None else None,
        'tax_inclusive': bool(bill.tax_inclusive),
        'discount_percent': float(bill.discount_percent) if bill.discount_percent is not None else None,
        'discount_amount': float(bill.discount_amount) if bill.discount_amount is not None else None,
        'credit_applied': float(bill.credit_applied or 0),
        'is_upfront_payment': bool(bill.is_upfront_payment),
        'due_date': bill.due_date.isoformat() if bill.due_date else None,
        'notes': bill.notes,
        'submitted_at': bill.submitted_at.isoformat() if bill.submitted_at else None,
        'approved_at': bill.approved_at.isoformat() if bill.approved_at else None,
        'paid_at': bill.paid_at.isoformat() if bill.paid_at else None,
        'internal_approval_required': bool(bill.internal_approval_required),
        'internal_approval_type': bill.internal_approval_type,
        'required_approver_ids': bill.required_approver_ids or [],
        'internal_approvals_complete': bool(bill.internal_approvals_complete),
        'is_outstanding': bill.deleted_at is None and financial.is_outstanding(bill, now),
        'became_outstanding_at': bill.became_outstanding_at.isoformat() if bill.became_outstanding_at else None,
        'last_reminder_sent_at': bill.last_reminder_sent_at.isoformat() if bill.last_reminder_sent_at else None,
        'reminder_count': bill.reminder_count or 0,
        'deleted_at': bill.deleted_at.isoformat() if bill.deleted_at else None,
        'created_at': bill.created_at.isoformat() if bill.created_at else None,
    }
    if detail:
        data['items'] = [{
            'id': str(item.id),
            'type': item.type,
            'description': item.description,
            'quantity': item.quantity,
            'unit_price': float(item.unit_price or 0),
            'amount': float(item.amount or 0),
            'is_credit': bool(item.is_credit),
            'person_id': str(item.person_id) if item.person_id else None,
        } for item in bill.items]
        data['approvals'] = approval_crud.approvals_for(bill, 'bill')
    return data


def generate_invoice_number():
    year = utc_now().year
    last = Bill.query.filter(
        Bill.invoice_number.like(f'INV-{year}-%')
    ).order_by(Bill.invoice_number.desc()).first()
    if last:
        try:
            new_number = int(last.invoice_number.split('-')[-1]) + 1
        except (ValueError, IndexError) as e:
            logger.error(f"Error parsing invoice number {last.invoice_number}: {e}")
            raise ChambersError('Failed to generate invoice number')
    else:
        new_number = 1
    return f'INV-{year}-{new_number:04d}'


def _scoped_query(ctx):
    query = Bill.query
    if ctx.role in ('ADMIN', 'MANAGER') or can_edit_all_invoices(ctx):
        return query
    if ctx.is_client:
        return query.join(Client, Client.id == Bill.client_id).filter(
            Client.email == ctx.email,
            Bill.status != 'DRAFT',
        )
    return query.filter(Bill.created_by == ctx.user_id)


def get_all_bills(ctx, status=None, client_id=None, project_id=None, include_deleted=False, q=None):
    try:
        query = _scoped_query(ctx)
        if not (include_deleted and ctx.is_admin):
            query = query.filter(Bill.deleted_at.is_(None))
        if status:
            query = query.filter(Bill.status == status)
        if client_id:
            query = query.filter(Bill.client_id == client_id)
        if project_id:
            query = query.filter(Bill.project_id == project_id)
        if q:
            query = query.filter(or_(Bill.invoice_number.ilike(f"%{q.strip()}%"), Bill.notes.ilike(f"%{q.strip()}%")))
        bills = query.order_by(Bill.created_at.desc()).all()
        return [bill_to_dict(b) for b in bills]
    except SQLAlchemyError as e:
        logger.error(f"Error listing bills: {e}")
        raise


def get_bill(ctx, bill_id):
    bill = get_record(Bill, bill_id, 'Bill', include_deleted=ctx.is_admin)
    if not _scoped_query(ctx).filter(Bill.id == bill.id).first():
        raise NotFound('Bill not found')
    return bill


def apply_totals(bill):
    """Recompute subtotal and amount from the bill's items"""
    charges = [i for i in bill.items if not i.is_credit]
    credits = [i for i in bill.items if i.is_credit]
    subtotal = sum((financial.to_decimal(i.amount) for i in charges), financial.ZERO)
    credit = sum((abs(financial.to_decimal(i.amount)) for i in credits), financial.ZERO)
    totals = financial.invoice_totals(
        subtotal, credit,
        discount_percent=bill.discount_percent,
        discount_amount=bill.discount_amount,
        tax_rate=bill.tax_rate,
        tax_inclusive=bill.tax_inclusive,
    )
    bill.subtotal = totals['subtotal']
    bill.credit_applied = totals['credit']
    bill.amount = totals['total']
    return totals


def add_bill(ctx, payload):
    if ctx.is_client:
        raise Forbidden('Forbidden')
    get_record(Client, payload.client_id, 'Client')
    if payload.project_id:
        get_record(Project, payload.project_id, 'Project')
    if payload.proposal_id:
        get_record(Proposal, payload.proposal_id, 'Proposal')

    try:
        bill = Bill(
            invoice_number=generate_invoice_number(),
            client_id=payload.client_id,
            project_id=payload.project_id,
            proposal_id=payload.proposal_id,
            created_by=ctx.user_id,
            status='DRAFT',
            currency=payload.currency.upper(),
            tax_rate=payload.tax_rate,
            tax_inclusive=payload.tax_inclusive,
            discount_percent=payload.discount_percent,
            discount_amount=payload.discount_amount,
            due_date=payload.due_date,
            notes=payload.notes,
            is_upfront_payment=payload.is_upfront_payment,
            required_approver_ids=[],
            reminder_count=0,
        )
        db.session.add(bill)
        for item in payload.items:
            amount = financial.money(financial.to_decimal(item.quantity) * financial.to_decimal(item.unit_price))
            if item.is_credit:
                amount = -abs(amount)
            bill.items.append(BillItem(
                type=item.type,
                description=item.description,
                quantity=item.quantity,
                unit_price=item.unit_price,
                amount=amount,
                is_credit=item.is_credit,
                person_id=item.person_id,
            ))
        if bill.items:
            apply_totals(bill)
        else:
            amount = financial.money(payload.amount or 0)
            bill.subtotal = amount
            bill.amount = financial.invoice_totals(
                amount, discount_percent=payload.discount_percent, discount_amount=payload.discount_amount,
                tax_rate=payload.tax_rate, tax_inclusive=payload.tax_inclusive)['total']
        db.session.flush()
        log_action(ctx, 'CREATE', 'bills', bill.id, None,
                   {'invoice_number': bill.invoice_number, 'amount': bill.amount, 'client_id': bill.client_id},
                   commit=False)
        db.session.commit()
        return bill
    except SQLAlchemyError as e:
        logger.error(f"Database error adding bill: {e}")
        db.session.rollback()
        raise


def update_bill(ctx, bill_id, payload):
    bill = get_bill(ctx, bill_id)
    if ctx.is_client or not can_edit_invoice(ctx, bill):
        raise Forbidden('You do not have permission to edit this invoice')
    if bill.status in CLOSED_STATUSES:
        raise BusinessRuleViolation(f"Cannot edit a {bill.status.lower()} invoice")

    changes = whitelisted_changes(payload, BILL_FIELDS_BY_ROLE, ctx.role)
    try:
        old_values = {name: getattr(bill, name) for name in changes}
        for name, value in changes.items():
            if name != 'amount':
                setattr(bill, name, value)
        if bill.items:
            apply_totals(bill)
        elif 'amount' in changes or set(changes) & {'tax_rate', 'tax_inclusive', 'discount_percent', 'discount_amount'}:
            if changes.get('amount') is not None:
                bill.subtotal = financial.money(changes['amount'])
            bill.amount = financial.invoice_totals(
                bill.subtotal, discount_percent=bill.discount_percent, discount_amount=bill.discount_amount,
                tax_rate=bill.tax_rate, tax_inclusive=bill.tax_inclusive)['total']
        log_action(ctx, 'UPDATE', 'bills', bill.id, old_values, changes, commit=False)
        db.session.commit()
        return bill
    except SQLAlchemyError as e:
        logger.error(f"Database error updating bill {bill_id}: {e}")
        db.session.rollback()
        raise


def submit_bill(ctx, bill_id, payload):
    bill = get_bill(ctx, bill_id)
    return approval_crud.submit_record(ctx, bill, 'bill', payload)


def resubmit_bill(ctx, bill_id, payload):
    bill = get_bill(ctx, bill_id)
    if ctx.is_client or not can_submit(ctx, bill.created_by):
        raise Forbidden('Forbidden')
    if bill.status != 'SUBMITTED':
        raise BusinessRuleViolation('Only submitted invoices can be resubmitted')
    return approval_crud.reset_internal_approval(ctx, bill, 'bill', payload)


def mark_paid(ctx, bill_id):
    if ctx.role not in ('ADMIN', 'MANAGER'):
        raise Forbidden('Forbidden')
    bill = get_record(Bill, bill_id, 'Bill')
    if bill.status in CLOSED_STATUSES:
        raise BusinessRuleViolation(f"Invoice is already {bill.status.lower().replace('_', ' ')}")
    if bill.status == 'DRAFT':
        raise BusinessRuleViolation('Submit the invoice before marking it paid')
    try:
        old_status = bill.status
        bill.status = 'PAID'
        bill.paid_at = utc_now()
        db.session.flush()
        fees = account_crud.create_finder_fees(bill)
        log_action(ctx, 'MARK_PAID', 'bills', bill.id, {'status': old_status},
                   {'status': 'PAID', 'finder_fees': len(fees)}, commit=False)
        db.session.commit()
        return bill
    except SQLAlchemyError as e:
        logger.error(f"Database error marking bill {bill_id} paid: {e}")
        db.session.rollback()
        raise


def _release_work(bill):
    """Let timesheet entries and charges of a dropped invoice be billed again"""
    TimesheetEntry.query.filter(TimesheetEntry.bill_id == bill.id).update(
        {'billed': False, 'bill_id': None}, synchronize_session=False)
    ProjectCharge.query.filter(ProjectCharge.bill_id == bill.id).update(
        {'billed': False, 'bill_id': None}, synchronize_session=False)
    InstallmentInvoice.query.filter(InstallmentInvoice.bill_id == bill.id).update(
        {'bill_id': None, 'invoiced_at': None}, synchronize_session=False)


def _close(ctx, bill_id, status, roles):
    if ctx.role not in roles:
        raise Forbidden('Forbidden')
    bill = get_record(Bill, bill_id, 'Bill')
    if bill.status in CLOSED_STATUSES:
        raise BusinessRuleViolation(f"Invoice is already {bill.status.lower().replace('_', ' ')}")
    try:
        old_status = bill.status
        bill.status = status
        if status == 'CANCELLED':
            _release_work(bill)
        log_action(ctx, status, 'bills', bill.id, {'status': old_status}, {'status': status}, commit=False)
        db.session.commit()
        return bill
    except SQLAlchemyError as e:
        logger.error(f"Database error setting bill {bill_id} to {status}: {e}")
        db.session.rollback()
        raise


def cancel_bill(ctx, bill_id):
    return _close(ctx, bill_id, 'CANCELLED', ('ADMIN', 'MANAGER'))


def write_off_bill(ctx, bill_id):
    return _close(ctx, bill_id, 'WRITTEN_OFF', ('ADMIN',))


def send_reminder(ctx, bill_id):
    if ctx.is_client:
        raise Forbidden('Forbidden')
    bill = get_bill(ctx, bill_id)
    if bill.status == 'PAID':
        raise BusinessRuleViolation('Invoice is already paid')
    if not bill.client or not bill.client.email:
        raise BusinessRuleViolation('Client has no email address')
    if not email_service.send_invoice_reminder(bill):
        raise ChambersError('Failed to send the reminder email')
    log_action(ctx, 'SEND_REMINDER', 'bills', bill.id, None, {'recipient': bill.client.email})
    return bill


# ---- installments -----------------------------------------------------------

def invoice_installment(ctx, term_id, installment_number, payload):
    """Draft invoice for one installment of an approved proposal's payment term"""
    if ctx.is_client:
        raise Forbidden('Forbidden')
    term = get_record(PaymentTerm, term_id, 'Payment term')
    proposal = term.proposal
    if proposal.deleted_at is not None or proposal.status != 'APPROVED':
        raise BusinessRuleViolation('Installments can only be invoiced on approved proposals')
    if proposal.client_id is None:
        raise BusinessRuleViolation('Proposal has no client to invoice')
    if not term.installment_count or not 1 <= installment_number <= term.installment_count:
        raise BusinessRuleViolation(f"Payment term has no installment {installment_number}")

    existing = InstallmentInvoice.query.filter_by(
        payment_term_id=term.id, installment_number=installment_number).first()
    if existing is not None and existing.invoiced_at is not None:
        raise BusinessRuleViolation(f"Installment {installment_number} has already been invoiced")

    dates = financial.installment_dates(term, proposal.issue_date, proposal.milestones)
    due_date = dates[installment_number - 1] if len(dates) >= installment_number else None
    amount = financial.installment_amount(
        proposal_crud.term_base_amount(term, proposal), term.installment_count,
        term.upfront_type, term.upfront_value)
    project = next((p for p in proposal.projects if p.deleted_at is None), None)

    try:
        bill = Bill(
            invoice_number=generate_invoice_number(),
            client_id=proposal.client_id,
            proposal_id=proposal.id,
            project_id=project.id if project else None,
            created_by=ctx.user_id,
            status='DRAFT',
            currency=proposal.currency or 'EUR',
            tax_rate=proposal.tax_rate,
            tax_inclusive=bool(proposal.tax_inclusive),
            due_date=payload.due_date or due_date,
            required_approver_ids=[],
            reminder_count=0,
        )
        bill.items.append(BillItem(
            type='FEE',
            description=f"{proposal.title}: installment {installment_number} of {term.installment_count}",
            quantity=1,
            unit_price=amount,
            amount=amount,
        ))
        apply_totals(bill)
        db.session.add(bill)
        db.session.flush()

        if existing is None:
            existing = InstallmentInvoice(payment_term_id=term.id, installment_number=installment_number)
            db.session.add(existing)
        existing.due_date = due_date
        existing.bill_id = bill.id
        existing.invoiced_at = utc_now()

        log_action(ctx, 'INVOICE_INSTALLMENT', 'bills', bill.id, None, {
            'payment_term_id': term.id,
            'installment_number': installment_number,
            'amount': amount,
        }, commit=False)
        db.session.commit()
        return bill
    except SQLAlchemyError as e:
        logger.error(f"Database error invoicing installment {installment_number} of term {term_id}: {e}")
        db.session.rollback()
        raise


def invoice_upfront(ctx, proposal_id):
    """
    Draft invoice for the upfront part of an approved proposal's payment terms.

    A proposal gets one upfront invoice; a cancelled or deleted one can be
    issued again. A fixed proposal discount is shared out in proportion to the
    upfront amount.
    """
    if ctx.is_client:
        raise Forbidden('Forbidden')
    proposal = get_record(Proposal, proposal_id, 'Proposal')
    if proposal.status != 'APPROVED':
        raise BusinessRuleViolation('Proposal must be approved before generating an upfront invoice')
    if proposal.client_id is None:
        raise BusinessRuleViolation('Proposal has no client to invoice')
    existing = Bill.query.filter(
        Bill.proposal_id == proposal.id,
        Bill.is_upfront_payment.is_(True),
        Bill.deleted_at.is_(None),
        Bill.status != 'CANCELLED',
    ).first()
    if existing is not None:
        raise BusinessRuleViolation(f"Upfront invoice {existing.invoice_number} already exists for this proposal")

    term = next((t for t in proposal.payment_terms if t.upfront_type and t.upfront_value is not None), None)
    if term is None:
        raise BusinessRuleViolation('No upfront payment configured for this proposal')
    amount = financial.upfront_deduction(
        proposal_crud.term_base_amount(term, proposal), term.upfront_type, term.upfront_value)
    if amount <= 0:
        raise BusinessRuleViolation('Invalid upfront payment amount')

    discount_amount = None
    if not proposal.client_discount_percent and proposal.client_discount_amount:
        total = financial.to_decimal(proposal.amount) or amount
        discount_amount = financial.money(amount * financial.to_decimal(proposal.client_discount_amount) / total)
    project = next((p for p in proposal.projects if p.deleted_at is None), None)

    try:
        bill = Bill(
            invoice_number=generate_invoice_number(),
            client_id=proposal.client_id,
            proposal_id=proposal.id,
            project_id=project.id if project else None,
            created_by=ctx.user_id,
            status='DRAFT',
            currency=proposal.currency or 'EUR',
            tax_rate=proposal.tax_rate,
            tax_inclusive=bool(proposal.tax_inclusive),
            discount_percent=proposal.client_discount_percent or None,
            discount_amount=discount_amount,
            is_upfront_payment=True,
            required_approver_ids=[],
            reminder_count=0,
        )
        bill.items.append(BillItem(
            type='FEE',
            description=f"Upfront payment: {proposal.title}",
            quantity=1,
            unit_price=amount,
            amount=amount,
        ))
        apply_totals(bill)
        db.session.add(bill)
        db.session.flush()
        log_action(ctx, 'INVOICE_UPFRONT', 'bills', bill.id, None, {
            'proposal_id': proposal.id,
            'payment_term_id': term.id,
            'amount': amount,
        }, commit=False)
        db.session.commit()
        return bill
    except SQLAlchemyError as e:
        logger.error(f"Database error invoicing upfront payment of proposal {proposal_id}: {e}")
        db.session.rollback()
        raise


# ---- deletion ---------------------------------------------------------------

def deletion_check(bill):
    census = bill_census(bill)
    if census.is_clear():
        return True, None, census
    return False, f"Cannot delete: {describe(census)}", census


def delete_bill(ctx, bill_id):
    bill = get_record(Bill, bill_id, 'Bill')
    if not ctx.is_admin and not (bill.created_by == ctx.user_id and bill.status == 'DRAFT'):
        raise Forbidden('Only administrators can delete submitted invoices')
    ok, reason, census = deletion_check(bill)
    if not ok:
        raise BusinessRuleViolation(reason, details=census.blocking)
    try:
        bill.deleted_at = utc_now()
        _release_work(bill)
        log_action(ctx, 'DELETE', 'bills', bill.id, None, None, commit=False)
        db.session.commit()
        return bill
    except SQLAlchemyError as e:
        logger.error(f"Database error deleting bill {bill_id}: {e}")
        db.session.rollback()
        raise


def restore_bill(ctx, bill_id):
    if not ctx.is_admin:
        raise Forbidden('Only administrators can restore invoices')
    bill = get_record(Bill, bill_id, 'Bill', include_deleted=True)
    if bill.deleted_at is None:
        raise BusinessRuleViolation('Invoice is not deleted')
    try:
        bill.deleted_at = None
        log_action(ctx, 'RESTORE', 'bills', bill.id, None, None, commit=False)
        db.session.commit()
        return bill
    except SQLAlchemyError as e:
        logger.error(f"Database error restoring bill {bill_id}: {e}")
        db.session.rollback()
        raise


def permanent_delete_bill(ctx, bill_id):
    if not ctx.is_admin:
        raise Forbidden('Only administrators can permanently delete invoices')
    bill = get_record(Bill, bill_id, 'Bill', include_deleted=True)
    if bill.deleted_at is None:
        raise BusinessRuleViolation('Invoice must be deleted before it can be permanently deleted')
    try:
        number = bill.invoice_number
        _release_work(bill)
        Notification.query.filter(Notification.bill_id == bill.id).delete(synchronize_session=False)
        db.session.delete(bill)
        log_action(ctx, 'PERMANENT_DELETE', 'bills', bill.id, {'invoice_number': number}, None, commit=False)
        db.session.commit()
        return True
    except SQLAlchemyError as e:
        logger.error(f"Database error permanently deleting bill {bill_id}: {e}")
        db.session.rollback()
        raise


def bulk_delete(ctx, payload):
    """Validate or soft delete many invoices; per item results, one transaction for the delete"""
    if not ctx.is_admin:
        raise Forbidden('Only administrators can bulk delete invoices')
    try:
        session_is_reachable()
    except SQLAlchemyError as e:
        if is_database_connection_error(e):
            logger.error(f"Database unreachable during bulk delete: {e}")
            raise ServiceUnavailable(DATABASE_UNAVAILABLE_MESSAGE)
        raise

    deletable, non_deletable, to_delete = [], [], []
    for bill_id in unique_ids(payload.ids):
        try:
            bill = get_record(Bill, bill_id, 'Bill')
            ok, reason, census = deletion_check(bill)
            entry = {'id': str(bill.id), 'invoice_number': bill.invoice_number}
            if ok:
                deletable.append(entry)
                to_delete.append(bill)
            else:
                non_deletable.append({**entry, 'reason': reason, 'details': census.blocking})
        except NotFound:
            non_deletable.append({'id': str(bill_id), 'reason': 'Bill not found'})
        except SQLAlchemyError as e:
            if is_database_connection_error(e):
                raise ServiceUnavailable(DATABASE_UNAVAILABLE_MESSAGE)
            logger.error(f"Error checking bill {bill_id} for deletion: {e}")
            non_deletable.append({'id': str(bill_id), 'reason': 'Failed to check invoice'})

    result = {'deletable': deletable, 'non_deletable': non_deletable}
    if payload.action == 'validate':
        return result

    now = utc_now()
    try:
        for bill in to_delete:
            bill.deleted_at = now
            _release_work(bill)
            log_action(ctx, 'BULK_DELETE', 'bills', bill.id, None, None, commit=False)
        db.session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Database error in bulk bill delete: {e}")
        db.session.rollback()
        raise
    result['deleted'] = len(deletable)
    return result
