from chambers.errors import Forbidden, ValidationFailed
from chambers.models import DetailedLog, User
from chambers.utils.record_resolver import resolve_record_details, user_label
from chambers.utils.request_context import parse_uuid
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import or_, desc, asc
import logging

logger = logging.getLogger(__name__)

SORTABLE_COLUMNS = ('created_at', 'action', 'table_name')


def log_to_dict(log, users):
    user = users.get(log.user_id)
    return {
        'id': str(log.id),
        'user_id': str(log.user_id) if log.user_id else None,
        'user_name': user_label(user) or 'Unknown',
        'action': log.action,
        'table_name': log.table_name,
        'record_id': str(log.record_id),
        'record_details': resolve_record_details(log.table_name, log.record_id),
        'old_values': log.old_values,
        'new_values': log.new_values,
        'ip_address': log.ip_address,
        'user_agent': log.user_agent,
        'created_at': log.created_at.isoformat() if log.created_at else None,
    }


def get_logs_paginated(ctx, page=1, page_size=20, sort_by='created_at', sort_dir='desc', q=None, filters=None):
    if not ctx.is_admin:
        raise Forbidden('Forbidden')
    filters = filters or {}
    page = max(1, page)
    page_size = min(max(1, page_size), 200)
    try:
        query = DetailedLog.query
        if q:
            term = f"%{q}%"
            matching_users = User.query.with_entities(User.id).filter(
                or_(User.name.ilike(term), User.email.ilike(term)))
            query = query.filter(or_(
                DetailedLog.action.ilike(term),
                DetailedLog.table_name.ilike(term),
                DetailedLog.ip_address.ilike(term),
                DetailedLog.user_id.in_(matching_users),
            ))
        if filters.get('action'):
            query = query.filter(DetailedLog.action == filters['action'])
        if filters.get('table_name'):
            query = query.filter(DetailedLog.table_name == filters['table_name'])
        if filters.get('record_id'):
            query = query.filter(DetailedLog.record_id == parse_uuid(filters['record_id'], 'record id', missing=ValidationFailed))

        total = query.count()

        column = getattr(DetailedLog, sort_by if sort_by in SORTABLE_COLUMNS else 'created_at')
        query = query.order_by(desc(column) if sort_dir.lower() == 'desc' else asc(column))
        logs = query.offset((page - 1) * page_size).limit(page_size).all()

        user_ids = {log.user_id for log in logs if log.user_id}
        users = {u.id: u for u in User.query.filter(User.id.in_(user_ids)).all()} if user_ids else {}
        return [log_to_dict(log, users) for log in logs], total
    except SQLAlchemyError as e:
        logger.error(f"Error fetching audit logs: {e}")
        raise
