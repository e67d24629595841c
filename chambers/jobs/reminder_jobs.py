"""
Scheduled reminder jobs

Each job is triggered once a day by an external scheduler hitting the cron
endpoints. A job commits per record so one bad row never rolls back the rest,
and email failures are logged without stopping the scan.
"""

from chambers import db
from chambers.models import Bill, OfficeAdvance, PaymentTerm, Proposal, User
from chambers.crud import account_crud
from chambers.crud.proposal_crud import invoiced_installment_numbers, term_base_amount
from chambers.services import email_service, financial
from chambers.services.notification_service import (
    NotificationRef, notify_users, outstanding_invoice_recipients, unique_ids,
)
from chambers.utils.date_utils import firm_today, start_of_day, utc_now
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from datetime import timedelta
import logging

logger = logging.getLogger(__name__)


def check_outstanding_invoices(now=None):
    """
    Flag invoices that went past their due date without being paid.

    The first time a bill is seen outstanding it is stamped and every
    recipient is notified; after that a reminder goes out at most once per
    REMINDER_INTERVAL_DAYS (7 by default).

    Returns:
        dict: processed and notified counts
    """
    now = now or utc_now()
    interval = current_app.config.get('REMINDER_INTERVAL_DAYS', 7)
    bills = Bill.query.filter(
        Bill.deleted_at.is_(None),
        Bill.status != 'PAID',
        Bill.due_date.isnot(None),
        Bill.due_date < now,
    ).all()

    results = {'processed': 0, 'notified': 0, 'notifications': 0, 'errors': [], 'timestamp': now.isoformat()}
    for bill in bills:
        results['processed'] += 1
        due = financial.reminder_due(bill, now, interval)
        if due is None:
            continue
        try:
            if due == 'first':
                bill.became_outstanding_at = now
                bill.reminder_count = 1
            else:
                bill.reminder_count = (bill.reminder_count or 0) + 1
            bill.last_reminder_sent_at = now

            recipients = outstanding_invoice_recipients(bill)
            days_overdue = (now - bill.due_date).days
            title = (f"Invoice {bill.invoice_number} is outstanding" if due == 'first'
                     else f"Reminder #{bill.reminder_count}: invoice {bill.invoice_number} is still outstanding")
            created = notify_users(
                recipients,
                'INVOICE_OUTSTANDING',
                title,
                f"{bill.currency} {financial.money(bill.amount)} was due {days_overdue} day(s) ago.",
                ref=NotificationRef.invoice(bill.id),
                due_date=bill.due_date,
            )
            db.session.commit()
            results['notified'] += 1
            results['notifications'] += len(created)
        except SQLAlchemyError as e:
            logger.error(f"Error flagging outstanding invoice {bill.id}: {e}")
            db.session.rollback()
            results['errors'].append({'bill_id': str(bill.id), 'error': str(e)})
            continue

        for user in User.query.filter(User.id.in_(recipients)).all():
            email_service.send_outstanding_invoice(user, bill)

    logger.info(f"Outstanding invoice scan: {results['processed']} processed, {results['notified']} notified")
    return results


def check_installments(today=None):
    """
    Notify the proposal creator and the client manager about installments
    falling due within the next INSTALLMENT_NOTICE_DAYS that have not been
    invoiced yet. `today` defaults to the current date in the firm's timezone.
    """
    today = start_of_day(today or firm_today(current_app.config.get('FIRM_TIMEZONE', 'UTC')))
    horizon = today + timedelta(days=current_app.config.get('INSTALLMENT_NOTICE_DAYS', 7))

    terms = PaymentTerm.query.join(Proposal, Proposal.id == PaymentTerm.proposal_id).filter(
        PaymentTerm.installment_type.isnot(None),
        PaymentTerm.installment_count > 0,
        Proposal.status == 'APPROVED',
        Proposal.deleted_at.is_(None),
    ).all()

    results = {'payment_terms': len(terms), 'notifications_created': 0, 'details': [], 'errors': []}
    for term in terms:
        proposal = term.proposal
        dates = financial.installment_dates(term, proposal.issue_date, proposal.milestones)
        invoiced = invoiced_installment_numbers(term)
        amount = financial.installment_amount(
            term_base_amount(term, proposal), term.installment_count, term.upfront_type, term.upfront_value)

        for index, due_date in enumerate(dates[:term.installment_count]):
            number = index + 1
            due_day = start_of_day(due_date)
            if number in invoiced or not today <= due_day <= horizon:
                continue

            recipient_ids = unique_ids([
                proposal.created_by,
                proposal.client.client_manager_id if proposal.client else None,
            ])
            label = term.proposal_item.description if term.proposal_item else proposal.title
            try:
                created = notify_users(
                    recipient_ids,
                    'INSTALLMENT_DUE',
                    f"Installment due: {label}",
                    f"Installment {number} of {term.installment_count} is due on "
                    f"{due_day.strftime('%Y-%m-%d')}. Amount: {proposal.currency} {amount}",
                    ref=NotificationRef.installment(term.id),
                    due_date=due_day,
                    proposal_id=proposal.id,
                )
                db.session.commit()
            except SQLAlchemyError as e:
                logger.error(f"Error creating installment notification for term {term.id}: {e}")
                db.session.rollback()
                results['errors'].append({'payment_term_id': str(term.id), 'installment': number, 'error': str(e)})
                continue

            results['notifications_created'] += len(created)
            results['details'].append(f"PaymentTerm {term.id} - Installment {number}")
            for user in User.query.filter(User.id.in_(recipient_ids)).all():
                email_service.send_installment_due(user, proposal, number, due_day, amount)

    logger.info(f"Installment scan: {results['notifications_created']} notifications created")
    return results


def process_recurring_advances(now=None):
    """Post every recurring advance installment that has come due"""
    now = now or utc_now()
    advances = OfficeAdvance.query.filter(
        OfficeAdvance.type == 'RECURRING',
        OfficeAdvance.is_active.is_(True),
    ).all()

    results = {'processed': 0, 'deactivated': 0, 'not_due': 0, 'errors': []}
    for advance in advances:
        try:
            outcome, _ = account_crud.process_advance(advance, now)
            db.session.commit()
            results[outcome] += 1
        except SQLAlchemyError as e:
            logger.error(f"Error processing recurring advance {advance.id}: {e}")
            db.session.rollback()
            results['errors'].append({'advance_id': str(advance.id), 'error': str(e)})

    logger.info(
        f"Recurring advances: {results['processed']} processed, {results['deactivated']} deactivated")
    return results
