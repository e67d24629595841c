from chambers import db
from chambers.errors import BusinessRuleViolation, Forbidden, NotFound, ValidationFailed
from chambers.models import Client, ClientFinder, Lead, User
from chambers.services.reference_census import client_census, describe
from chambers.utils.date_utils import utc_now
from chambers.utils.logging_utils import log_action
from chambers.utils.permissions import can_view_all_clients
from chambers.utils.record_resolver import get_record, user_label
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
import pandas as pd
import logging
import re

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')
IMPORT_COLUMNS = ['name', 'email', 'company', 'contact_info', 'tax_number']


def client_to_dict(client):
    return {
        'id': str(client.id),
        'name': client.name,
        'email': client.email,
        'company': client.company,
        'contact_info': client.contact_info,
        'tax_number': client.tax_number,
        'kyc_completed': bool(client.kyc_completed),
        'client_manager_id': str(client.client_manager_id) if client.client_manager_id else None,
        'client_manager_name': user_label(client.client_manager),
        'finders': [
            {
                'id': str(f.id),
                'user_id': str(f.user_id),
                'name': user_label(f.user),
                'finder_fee_percent': float(f.finder_fee_percent or 0),
            }
            for f in client.finders
        ],
        'created_by': str(client.created_by),
        'created_at': client.created_at.isoformat() if client.created_at else None,
        'deleted_at': client.deleted_at.isoformat() if client.deleted_at else None,
    }


def _scoped_query(ctx):
    query = Client.query
    if ctx.is_client:
        return query.filter(Client.email == ctx.email)
    if can_view_all_clients(ctx):
        return query
    finder_client_ids = db.session.query(ClientFinder.client_id).filter(ClientFinder.user_id == ctx.user_id)
    return query.filter(or_(
        Client.created_by == ctx.user_id,
        Client.client_manager_id == ctx.user_id,
        Client.id.in_(finder_client_ids),
    ))


def get_all_clients(ctx, q=None, include_deleted=False):
    try:
        query = _scoped_query(ctx)
        if not (include_deleted and ctx.is_admin):
            query = query.filter(Client.deleted_at.is_(None))
        if q:
            like = f"%{q.strip()}%"
            query = query.filter(or_(Client.name.ilike(like), Client.email.ilike(like), Client.company.ilike(like)))
        return [client_to_dict(c) for c in query.order_by(Client.name).all()]
    except SQLAlchemyError as e:
        logger.error(f"Error listing clients: {e}")
        raise


def get_client(ctx, client_id):
    client = get_record(Client, client_id, 'Client', include_deleted=ctx.is_admin)
    if not _scoped_query(ctx).filter(Client.id == client.id).first():
        raise NotFound('Client not found')
    return client


def _check_user(user_id, label):
    user = get_record(User, user_id, label)
    if user.role == 'CLIENT':
        raise ValidationFailed(f"{label} must be a staff member")
    return user


def _set_finders(client, finders):
    seen = set()
    client.finders = []
    for finder in finders:
        if finder.user_id in seen:
            raise ValidationFailed('A finder can only be listed once per client')
        seen.add(finder.user_id)
        _check_user(finder.user_id, 'Finder')
        client.finders.append(ClientFinder(user_id=finder.user_id, finder_fee_percent=finder.finder_fee_percent))


def add_client(ctx, payload):
    if ctx.is_client:
        raise Forbidden('Forbidden')
    if payload.client_manager_id:
        _check_user(payload.client_manager_id, 'Client manager')
    try:
        client = Client(
            name=payload.name,
            email=payload.email,
            company=payload.company,
            contact_info=payload.contact_info,
            tax_number=payload.tax_number,
            kyc_completed=payload.kyc_completed,
            client_manager_id=payload.client_manager_id or ctx.user_id,
            created_by=ctx.user_id,
        )
        _set_finders(client, payload.finders)
        db.session.add(client)
        db.session.flush()
        log_action(ctx, 'CREATE', 'clients', client.id, None, payload.model_dump(exclude={'finders'}), commit=False)
        db.session.commit()
        return client
    except SQLAlchemyError as e:
        logger.error(f"Database error adding client: {e}")
        db.session.rollback()
        raise
    except ValidationFailed:
        db.session.rollback()
        raise


def update_client(ctx, client_id, payload):
    client = get_client(ctx, client_id)
    if ctx.is_client:
        raise Forbidden('Forbidden')
    changes = payload.model_dump(exclude_unset=True)
    if changes.get('client_manager_id'):
        _check_user(changes['client_manager_id'], 'Client manager')
    if changes.get('email'):
        if not EMAIL_PATTERN.match(changes['email']):
            raise ValidationFailed('Invalid email address')
        changes['email'] = changes['email'].lower()
    try:
        old_values = {name: getattr(client, name) for name in changes}
        for name, value in changes.items():
            setattr(client, name, value)
        log_action(ctx, 'UPDATE', 'clients', client.id, old_values, changes, commit=False)
        db.session.commit()
        return client
    except SQLAlchemyError as e:
        logger.error(f"Database error updating client {client_id}: {e}")
        db.session.rollback()
        raise


def set_client_finders(ctx, client_id, finders):
    if ctx.role not in ('ADMIN', 'MANAGER'):
        raise Forbidden('Only administrators and managers can change client finders')
    client = get_client(ctx, client_id)
    try:
        old_values = {'finders': [str(f.user_id) for f in client.finders]}
        _set_finders(client, finders)
        log_action(ctx, 'UPDATE', 'clients', client.id, old_values,
                   {'finders': [str(f.user_id) for f in finders]}, commit=False)
        db.session.commit()
        return client
    except SQLAlchemyError as e:
        logger.error(f"Database error updating finders of client {client_id}: {e}")
        db.session.rollback()
        raise
    except ValidationFailed:
        db.session.rollback()
        raise


def delete_client(ctx, client_id):
    if not ctx.is_admin:
        raise Forbidden('Only administrators can delete clients')
    client = get_client(ctx, client_id)
    census = client_census(client)
    if not census.is_clear():
        raise BusinessRuleViolation(f"Cannot delete client: {describe(census)}", details=census.blocking)
    try:
        client.deleted_at = utc_now()
        log_action(ctx, 'DELETE', 'clients', client.id, {'name': client.name}, None, commit=False)
        db.session.commit()
        return client
    except SQLAlchemyError as e:
        logger.error(f"Database error deleting client {client_id}: {e}")
        db.session.rollback()
        raise


# ---- spreadsheet import -----------------------------------------------------

def _cell(row, column):
    if column not in row or pd.isna(row[column]):
        return None
    value = str(row[column]).strip()
    return value or None


def import_clients(ctx, df):
    """
    Create one client per row of a CSV/XLSX dataframe.

    Rows are validated independently; a bad row is reported with its 1-based
    spreadsheet line and never blocks the others.
    """
    if ctx.is_client:
        raise Forbidden('Forbidden')
    df.columns = [str(c).strip().lower().replace(' ', '_') for c in df.columns]
    if 'name' not in df.columns:
        raise ValidationFailed('The file must contain a name column')

    created = []
    errors = []
    existing_emails = {
        email.lower() for (email,) in db.session.query(Client.email)
        .filter(Client.email.isnot(None), Client.deleted_at.is_(None)).all()
    }

    for index, row in df.iterrows():
        line = index + 2
        row_errors = []
        values = {column: _cell(row, column) for column in IMPORT_COLUMNS}
        if not values['name']:
            row_errors.append('Missing required field: name')
        if values['email']:
            values['email'] = values['email'].lower()
            if not EMAIL_PATTERN.match(values['email']):
                row_errors.append('Invalid email format')
            elif values['email'] in existing_emails:
                row_errors.append('A client with this email already exists')
        if row_errors:
            errors.append({'row': line, 'errors': row_errors})
            continue

        try:
            client = Client(created_by=ctx.user_id, client_manager_id=ctx.user_id, **values)
            db.session.add(client)
            db.session.flush()
            log_action(ctx, 'IMPORT', 'clients', client.id, None, values, commit=False)
            db.session.commit()
            created.append(client)
            if values['email']:
                existing_emails.add(values['email'])
        except SQLAlchemyError as e:
            logger.error(f"Error importing client row {line}: {e}")
            db.session.rollback()
            errors.append({'row': line, 'errors': [f"Database error: {e.__class__.__name__}"]})

    logger.info(f"Client import: {len(created)} created, {len(errors)} failed")
    return {
        'total_records': len(df),
        'success_count': len(created),
        'failed_count': len(errors),
        'errors': errors,
        'created': [client_to_dict(c) for c in created],
    }


# ---- leads ------------------------------------------------------------------

def lead_to_dict(lead):
    return {
        'id': str(lead.id),
        'name': lead.name,
        'email': lead.email,
        'company': lead.company,
        'contact_info': lead.contact_info,
        'status': lead.status,
        'converted_to_client_id': str(lead.converted_to_client_id) if lead.converted_to_client_id else None,
        'converted_at': lead.converted_at.isoformat() if lead.converted_at else None,
        'created_by': str(lead.created_by),
        'created_at': lead.created_at.isoformat() if lead.created_at else None,
    }


def get_all_leads(ctx, status=None):
    if ctx.is_client:
        raise Forbidden('Forbidden')
    query = Lead.query.filter(Lead.deleted_at.is_(None))
    if not can_view_all_clients(ctx):
        query = query.filter(Lead.created_by == ctx.user_id)
    if status:
        query = query.filter(Lead.status == status)
    return [lead_to_dict(lead) for lead in query.order_by(Lead.created_at.desc()).all()]


def add_lead(ctx, payload):
    if ctx.is_client:
        raise Forbidden('Forbidden')
    try:
        lead = Lead(
            name=payload.name,
            email=payload.email.lower() if payload.email else None,
            company=payload.company,
            contact_info=payload.contact_info,
            status='NEW',
            created_by=ctx.user_id,
        )
        db.session.add(lead)
        db.session.flush()
        log_action(ctx, 'CREATE', 'leads', lead.id, None, payload.model_dump(), commit=False)
        db.session.commit()
        return lead
    except SQLAlchemyError as e:
        logger.error(f"Database error adding lead: {e}")
        db.session.rollback()
        raise


def convert_lead(ctx, lead_id):
    if ctx.is_client:
        raise Forbidden('Forbidden')
    lead = get_record(Lead, lead_id, 'Lead')
    if lead.converted_to_client_id:
        raise BusinessRuleViolation('Lead has already been converted')
    try:
        client = Client(
            name=lead.name,
            email=lead.email,
            company=lead.company,
            contact_info=lead.contact_info,
            created_by=ctx.user_id,
            client_manager_id=ctx.user_id,
        )
        db.session.add(client)
        db.session.flush()
        lead.converted_to_client_id = client.id
        lead.converted_at = utc_now()
        lead.status = 'CONVERTED'
        log_action(ctx, 'CONVERT', 'leads', lead.id, None, {'client_id': client.id}, commit=False)
        db.session.commit()
        return client
    except SQLAlchemyError as e:
        logger.error(f"Database error converting lead {lead_id}: {e}")
        db.session.rollback()
        raise
