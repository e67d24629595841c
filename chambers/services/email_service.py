import logging

from flask import current_app, render_template
from flask_mail import Message

from chambers import mail

logger = logging.getLogger(__name__)


def send_email(to, subject, template, **kwargs):
    msg = Message(subject, recipients=[to])
    msg.html = render_template(f"emails/{template}.html", **kwargs)
    mail.send(msg)


def try_send_email(to, subject, template, **kwargs):
    """Send and report success; a failed send is logged and never raised"""
    if not to:
        return False
    try:
        send_email(to, subject, template, **kwargs)
        return True
    except Exception as e:
        logger.error(f"Failed to send '{template}' email to {to}: {e}")
        return False


def app_link(path):
    return f"{current_app.config['APP_URL'].rstrip('/')}/{path.lstrip('/')}"


def send_approval_request(approver, requester, kind, record):
    return try_send_email(
        approver.email,
        f"Approval requested: {record_title(record)}",
        'approval_request',
        approver_name=approver.name or approver.email,
        requester_name=requester.name or requester.email if requester else 'A colleague',
        kind=kind,
        title=record_title(record),
        amount=record.amount,
        currency=record.currency,
        link=app_link(f"{'proposals' if kind == 'proposal' else 'invoices'}/{record.id}"),
    )


def send_client_approval_request(proposal, recipient_email, recipient_name):
    return try_send_email(
        recipient_email,
        f"Proposal for your review: {proposal.title}",
        'client_approval',
        client_name=recipient_name,
        title=proposal.title,
        amount=proposal.amount,
        currency=proposal.currency,
        link=app_link(f"proposals/{proposal.id}/review?token={proposal.client_approval_token}"),
        expires_at=proposal.client_approval_token_expiry.strftime('%Y-%m-%d'),
    )


def send_client_decision_confirmation(proposal, recipient_email, recipient_name, approved, reason=None):
    return try_send_email(
        recipient_email,
        f"Proposal {'approved' if approved else 'declined'}: {proposal.title}",
        'client_decision',
        client_name=recipient_name,
        title=proposal.title,
        approved=approved,
        reason=reason,
    )


def send_outstanding_invoice(recipient, bill):
    return try_send_email(
        recipient.email,
        f"Outstanding invoice {bill.invoice_number}",
        'invoice_outstanding',
        recipient_name=recipient.name or recipient.email,
        invoice_number=bill.invoice_number,
        client_name=bill.client.name if bill.client else '',
        amount=bill.amount,
        currency=bill.currency,
        due_date=bill.due_date.strftime('%Y-%m-%d') if bill.due_date else '',
        reminder_count=bill.reminder_count,
        link=app_link(f"invoices/{bill.id}"),
    )


def send_installment_due(recipient, proposal, installment_number, due_date, amount):
    return try_send_email(
        recipient.email,
        f"Installment due: {proposal.title}",
        'installment_due',
        recipient_name=recipient.name or recipient.email,
        installment_number=installment_number,
        title=proposal.title,
        amount=amount,
        currency=proposal.currency,
        due_date=due_date.strftime('%Y-%m-%d'),
        link=app_link(f"proposals/{proposal.id}"),
    )


def send_invoice_reminder(bill):
    client = bill.client
    return try_send_email(
        client.email if client else None,
        f"Payment reminder: invoice {bill.invoice_number}",
        'invoice_reminder',
        client_name=client.name if client else '',
        invoice_number=bill.invoice_number,
        amount=bill.amount,
        currency=bill.currency,
        due_date=bill.due_date.strftime('%Y-%m-%d') if bill.due_date else None,
    )


def record_title(record):
    return getattr(record, 'title', None) or getattr(record, 'invoice_number', None) or str(record.id)
