"""
Notification rows and the references they carry.

A notification points at the thing it is about through a `NotificationRef`:
an explicit kind plus the id of the referenced record. The kind decides which
foreign key column of `Notification` holds the id.
"""

import logging
import uuid
from dataclasses import dataclass

from chambers import db
from chambers.errors import ValidationFailed
from chambers.models import Notification, User

logger = logging.getLogger(__name__)

REF_COLUMNS = {
    'PROPOSAL': 'proposal_id',
    'INVOICE': 'bill_id',
    'TODO': 'todo_id',
    'INSTALLMENT': 'payment_term_id',
}


@dataclass(frozen=True)
class NotificationRef:
    kind: str
    id: uuid.UUID

    def __post_init__(self):
        if self.kind not in REF_COLUMNS:
            raise ValidationFailed(f"Unknown notification reference kind: {self.kind}")

    @classmethod
    def proposal(cls, proposal_id):
        return cls('PROPOSAL', proposal_id)

    @classmethod
    def invoice(cls, bill_id):
        return cls('INVOICE', bill_id)

    @classmethod
    def todo(cls, todo_id):
        return cls('TODO', todo_id)

    @classmethod
    def installment(cls, payment_term_id):
        return cls('INSTALLMENT', payment_term_id)

    @classmethod
    def of(cls, notification):
        """The reference stored on a Notification row, or None for a plain message"""
        # Most specific first: an installment notice also carries its proposal
        for kind in ('INSTALLMENT', 'TODO', 'INVOICE', 'PROPOSAL'):
            value = getattr(notification, REF_COLUMNS[kind])
            if value is not None:
                return cls(kind, value)
        return None

    def columns(self):
        return {REF_COLUMNS[self.kind]: self.id}

    def to_dict(self):
        return {'kind': self.kind, 'id': str(self.id)}


def create_notification(user_id, type, title, message=None, ref=None, due_date=None, **extra_columns):
    """Stage one notification on the session; the caller commits"""
    columns = dict(extra_columns)
    if ref is not None:
        columns.update(ref.columns())
    notification = Notification(
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        due_date=due_date,
        **columns,
    )
    db.session.add(notification)
    return notification


def notify_users(user_ids, type, title, message=None, ref=None, due_date=None, **extra_columns):
    """One notification per distinct user id, in first-seen order"""
    created = []
    for user_id in unique_ids(user_ids):
        created.append(create_notification(user_id, type, title, message, ref, due_date, **extra_columns))
    return created


def unique_ids(ids):
    seen = set()
    ordered = []
    for value in ids:
        if value is None:
            continue
        key = str(value)
        if key in seen:
            continue
        seen.add(key)
        ordered.append(value if isinstance(value, uuid.UUID) else uuid.UUID(key))
    return ordered


def admin_ids():
    return [u.id for u in User.query.filter(User.role == 'ADMIN', User.is_active.is_(True)).all()]


def outstanding_invoice_recipients(bill):
    """Client finders, the client manager, project managers and every admin"""
    recipients = []
    client = bill.client
    if client is not None:
        recipients.extend(f.user_id for f in client.finders)
        recipients.append(client.client_manager_id)
    if bill.project is not None:
        recipients.extend(m.user_id for m in bill.project.managers)
    recipients.extend(admin_ids())
    return unique_ids(recipients)


def notification_to_dict(notification):
    ref = NotificationRef.of(notification)
    return {
        'id': str(notification.id),
        'type': notification.type,
        'title': notification.title,
        'message': notification.message,
        'ref': ref.to_dict() if ref else None,
        'due_date': notification.due_date.isoformat() if notification.due_date else None,
        'read': notification.read_at is not None,
        'read_at': notification.read_at.isoformat() if notification.read_at else None,
        'created_at': notification.created_at.isoformat() if notification.created_at else None,
    }
