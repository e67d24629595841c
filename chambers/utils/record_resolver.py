from chambers import db
from chambers.errors import NotFound
from chambers.models import User, Client, Proposal, Bill, Project, Todo, UserDeletionRequest
from chambers.utils.request_context import parse_uuid
import logging

logger = logging.getLogger(__name__)


def get_record(model, record_id, label=None, include_deleted=False):
    """Load a row by primary key or raise NotFound. Soft deleted rows count as missing unless asked for."""
    label = label or model.__name__
    record = db.session.get(model, parse_uuid(record_id, label))
    if record is None:
        raise NotFound(f"{label} not found")
    if not include_deleted and getattr(record, 'deleted_at', None) is not None:
        raise NotFound(f"{label} not found")
    return record


def user_label(user):
    if user is None:
        return None
    return user.name or user.email


def resolve_record_details(table_name, record_id):
    """
    Resolves a record ID to a dictionary of human-readable details based on the table name.
    """
    details = {}
    if table_name == 'users':
        record = db.session.get(User, record_id)
        if record:
            details = {'Name': record.name, 'Email': record.email, 'Role': record.role}
    elif table_name == 'clients':
        record = db.session.get(Client, record_id)
        if record:
            details = {'Name': record.name, 'Company': record.company or 'N/A'}
    elif table_name == 'proposals':
        record = db.session.get(Proposal, record_id)
        if record:
            details = {
                'Proposal #': record.proposal_number,
                'Title': record.title,
                'Amount': f"{record.amount}",
                'Status': record.status,
            }
    elif table_name == 'bills':
        record = db.session.get(Bill, record_id)
        if record:
            details = {
                'Invoice #': record.invoice_number,
                'Amount': f"{record.amount}",
                'Status': record.status,
                'Due Date': record.due_date.strftime('%Y-%m-%d') if record.due_date else 'N/A',
            }
    elif table_name == 'projects':
        record = db.session.get(Project, record_id)
        if record:
            details = {'Name': record.name, 'Status': record.status}
    elif table_name == 'todos':
        record = db.session.get(Todo, record_id)
        if record:
            details = {'Title': record.title, 'Status': record.status}
    elif table_name == 'user_deletion_requests':
        record = db.session.get(UserDeletionRequest, record_id)
        if record:
            details = {'Target': record.target_email, 'Status': record.status}
    return details
