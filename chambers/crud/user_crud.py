from chambers import db
from chambers.errors import BusinessRuleViolation, Conflict, Forbidden
from chambers.models import (
    Approval, BillItem, Client, ClientFinder, FringeBenefit, OfficeAdvance, ProjectCharge, Proposal,
    TodoReassignment, User, UserCompensation, UserDeletionRequest, UserFinancialTransaction,
)
from chambers.services.reference_census import describe, user_census
from chambers.utils.date_utils import utc_now
from chambers.utils.logging_utils import log_action
from chambers.utils.permissions import can_create_users
from chambers.utils.record_resolver import get_record, user_label
from chambers.utils.request_context import CAPABILITY_FLAGS
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
import logging

logger = logging.getLogger(__name__)

REQUIRED_DELETION_APPROVALS = 2


def user_to_dict(user):
    return {
        'id': str(user.id),
        'email': user.email,
        'name': user.name,
        'role': user.role,
        'timezone': user.timezone,
        'is_active': bool(user.is_active),
        'capabilities': {flag: getattr(user, flag) for flag in CAPABILITY_FLAGS},
        'created_at': user.created_at.isoformat() if user.created_at else None,
    }


def get_all_users(ctx, role=None):
    if ctx.is_client:
        raise Forbidden('Forbidden')
    query = User.query
    if role:
        query = query.filter(User.role == role)
    return [user_to_dict(u) for u in query.order_by(User.name, User.email).all()]


def get_user_by_id(ctx, user_id):
    user = get_record(User, user_id, 'User')
    if ctx.is_client and user.id != ctx.user_id:
        raise Forbidden('Forbidden')
    return user


def add_user(ctx, payload):
    if not can_create_users(ctx):
        raise Forbidden('You do not have permission to create users')
    if payload.role == 'ADMIN' and not ctx.is_admin:
        raise Forbidden('Only administrators can create administrators')
    email = payload.email.strip().lower()
    if User.query.filter(User.email == email).first():
        raise Conflict('A user with this email already exists')
    try:
        user = User(email=email, name=payload.name, role=payload.role, is_active=True)
        user.set_password(payload.password)
        db.session.add(user)
        db.session.flush()
        log_action(ctx, 'CREATE', 'users', user.id, None,
                   {'email': email, 'name': payload.name, 'role': payload.role}, commit=False)
        db.session.commit()
        return user
    except IntegrityError:
        db.session.rollback()
        raise Conflict('A user with this email already exists')
    except SQLAlchemyError as e:
        logger.error(f"Database error adding user: {e}")
        db.session.rollback()
        raise


# ---- two-person deletion ----------------------------------------------------

def deletion_request_to_dict(request):
    return {
        'id': str(request.id),
        'target_user_id': str(request.target_user_id),
        'target_email': request.target_email,
        'requested_by': str(request.requested_by),
        'requester_name': user_label(request.requester),
        'approved_by': request.approved_by or [],
        'approvals_needed': max(0, REQUIRED_DELETION_APPROVALS - len(request.approved_by or [])),
        'status': request.status,
        'report': request.report,
        'completed_at': request.completed_at.isoformat() if request.completed_at else None,
        'created_at': request.created_at.isoformat() if request.created_at else None,
    }


def get_deletion_requests(ctx, status=None):
    if not ctx.is_admin:
        raise Forbidden('Forbidden')
    query = UserDeletionRequest.query
    if status:
        query = query.filter(UserDeletionRequest.status == status)
    return [deletion_request_to_dict(r) for r in query.order_by(UserDeletionRequest.created_at.desc()).all()]


def request_user_deletion(ctx, user_id):
    if not ctx.is_admin:
        raise Forbidden('Only administrators can request user deletion')
    target = get_record(User, user_id, 'User')
    if target.id == ctx.user_id:
        raise BusinessRuleViolation('You cannot request deletion of your own account')
    pending = UserDeletionRequest.query.filter_by(target_user_id=target.id, status='PENDING').first()
    if pending:
        raise BusinessRuleViolation('A deletion request for this user is already pending')
    try:
        request = UserDeletionRequest(
            target_user_id=target.id,
            target_email=target.email,
            requested_by=ctx.user_id,
            approved_by=[],
            status='PENDING',
        )
        db.session.add(request)
        db.session.flush()
        log_action(ctx, 'DELETE_REQUEST', 'users', target.id, None, {'request_id': request.id}, commit=False)
        db.session.commit()
        return request
    except SQLAlchemyError as e:
        logger.error(f"Database error requesting deletion of user {user_id}: {e}")
        db.session.rollback()
        raise


def _detach_user(user_id):
    """Clear optional references to the user so the row can go"""
    Client.query.filter(Client.client_manager_id == user_id).update(
        {'client_manager_id': None}, synchronize_session=False)
    ClientFinder.query.filter(ClientFinder.user_id == user_id).delete(synchronize_session=False)
    Approval.query.filter(Approval.approver_id == user_id).delete(synchronize_session=False)
    Proposal.query.filter(Proposal.client_approval_email_sent_by == user_id).update(
        {'client_approval_email_sent_by': None}, synchronize_session=False)
    Proposal.query.filter(Proposal.deletion_requested_by == user_id).update(
        {'deletion_requested_by': None}, synchronize_session=False)
    Proposal.query.filter(Proposal.deletion_approved_by == user_id).update(
        {'deletion_approved_by': None}, synchronize_session=False)
    TodoReassignment.query.filter(TodoReassignment.from_user_id == user_id).update(
        {'from_user_id': None}, synchronize_session=False)
    BillItem.query.filter(BillItem.person_id == user_id).update({'person_id': None}, synchronize_session=False)
    for model in (ProjectCharge, OfficeAdvance, FringeBenefit, UserCompensation, UserFinancialTransaction):
        model.query.filter(model.created_by == user_id).update({'created_by': None}, synchronize_session=False)


def _finish(request, status, report=None):
    request.status = status
    request.report = report
    if status == 'COMPLETED':
        request.completed_at = utc_now()
    db.session.commit()


def approve_user_deletion(ctx, request_id):
    """
    Record one admin approval. The second distinct approval runs the reference
    census: any reference left rejects the request and keeps the user, none
    deletes the user and completes the request.
    """
    if not ctx.is_admin:
        raise Forbidden('Only administrators can approve user deletion')
    request = get_record(UserDeletionRequest, request_id, 'Deletion request')
    if request.status != 'PENDING':
        raise BusinessRuleViolation(f"Deletion request is already {request.status.lower()}")
    if request.requested_by == ctx.user_id:
        raise BusinessRuleViolation('You cannot approve your own deletion request')
    approved_by = list(request.approved_by or [])
    if str(ctx.user_id) in approved_by:
        raise BusinessRuleViolation('You have already approved this deletion request')

    try:
        approved_by.append(str(ctx.user_id))
        request.approved_by = approved_by
        log_action(ctx, 'DELETE_APPROVE', 'user_deletion_requests', request.id, None,
                   {'approved_by': approved_by}, commit=False)
        if len(approved_by) < REQUIRED_DELETION_APPROVALS:
            db.session.commit()
            return request
        request.status = 'APPROVED'
        db.session.flush()
    except SQLAlchemyError as e:
        logger.error(f"Database error approving deletion request {request_id}: {e}")
        db.session.rollback()
        raise

    target = db.session.get(User, request.target_user_id)
    if target is None:
        _finish(request, 'COMPLETED', {'message': 'User no longer exists'})
        return request

    census = user_census(target.id)
    if not census.is_clear():
        report = {'message': f"Cannot delete user: {describe(census)}", 'counts': dict(census)}
        _finish(request, 'REJECTED', report)
        logger.info(f"Deletion of user {target.id} rejected: {describe(census)}")
        raise BusinessRuleViolation(
            'Cannot delete user because they have associated records',
            details=census.blocking,
        )

    request_pk, target_pk = request.id, target.id
    try:
        _detach_user(target_pk)
        db.session.delete(target)
        request.status = 'COMPLETED'
        request.completed_at = utc_now()
        request.report = {'message': 'User deleted', 'counts': dict(census)}
        log_action(ctx, 'DELETE', 'users', target_pk, {'email': request.target_email}, None, commit=False)
        db.session.commit()
        logger.info(f"User {target_pk} deleted after {len(approved_by)} approvals")
        return request
    except SQLAlchemyError as e:
        # nothing mapped may be touched until the failed transaction is gone
        db.session.rollback()
        logger.error(f"Failed to delete user {target_pk}: {e}")
        request = db.session.get(UserDeletionRequest, request_pk)
        request.approved_by = approved_by
        _finish(request, 'REJECTED', {'message': f"Failed to delete user: {e.__class__.__name__}"})
        raise BusinessRuleViolation('Failed to delete user', details={'error': str(e.orig) if getattr(e, 'orig', None) else str(e)})


