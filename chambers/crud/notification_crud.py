from chambers import db
from chambers.models import Notification
from chambers.crud import approval_crud
from chambers.services.notification_service import notification_to_dict
from chambers.utils.date_utils import utc_now
from chambers.utils.record_resolver import get_record
from chambers.errors import NotFound
from sqlalchemy.exc import SQLAlchemyError
import logging

logger = logging.getLogger(__name__)


def get_notifications(ctx, unread_only=False, limit=50):
    """
    Stored notifications plus the approvals currently waiting on the caller.

    Pending approvals are derived on every call rather than stored, so they
    disappear as soon as someone decides the record.
    """
    try:
        query = Notification.query.filter(Notification.user_id == ctx.user_id)
        if unread_only:
            query = query.filter(Notification.read_at.is_(None))
        notifications = query.order_by(Notification.created_at.desc()).limit(limit).all()
        unread = Notification.query.filter(
            Notification.user_id == ctx.user_id,
            Notification.read_at.is_(None),
        ).count()
        pending = [] if ctx.is_client else approval_crud.list_pending_approvals(ctx)
        return {
            'notifications': [notification_to_dict(n) for n in notifications],
            'pending_approvals': pending,
            'unread_count': unread,
            'pending_approval_count': len(pending),
        }
    except SQLAlchemyError as e:
        logger.error(f"Error fetching notifications for {ctx.user_id}: {e}")
        raise


def mark_read(ctx, notification_id):
    notification = get_record(Notification, notification_id, 'Notification')
    if notification.user_id != ctx.user_id:
        raise NotFound('Notification not found')
    if notification.read_at is None:
        notification.read_at = utc_now()
        db.session.commit()
    return notification


def mark_all_read(ctx):
    try:
        count = Notification.query.filter(
            Notification.user_id == ctx.user_id,
            Notification.read_at.is_(None),
        ).update({'read_at': utc_now()}, synchronize_session=False)
        db.session.commit()
        return count
    except SQLAlchemyError as e:
        logger.error(f"Error marking notifications read for {ctx.user_id}: {e}")
        db.session.rollback()
        raise
