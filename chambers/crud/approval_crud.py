from chambers import db
from chambers.errors import BusinessRuleViolation, Forbidden, ValidationFailed
from chambers.models import Approval, Bill, Proposal, User
from chambers.services import email_service
from chambers.services.notification_service import NotificationRef, create_notification, notify_users, unique_ids
from chambers.utils.date_utils import utc_now
from chambers.utils.logging_utils import log_action
from chambers.utils.permissions import can_approve_item, can_submit
from chambers.utils.record_resolver import get_record, user_label
from sqlalchemy.exc import SQLAlchemyError
import logging

logger = logging.getLogger(__name__)

KINDS = {
    'proposal': (Proposal, 'proposal_id', 'proposals'),
    'bill': (Bill, 'bill_id', 'bills'),
}

DECISION_CAPABILITY = {
    'proposal': 'can_approve_proposals',
    'bill': 'can_approve_invoices',
}


def approval_to_dict(approval):
    return {
        'id': str(approval.id),
        'proposal_id': str(approval.proposal_id) if approval.proposal_id else None,
        'bill_id': str(approval.bill_id) if approval.bill_id else None,
        'approver_id': str(approval.approver_id),
        'approver_name': user_label(approval.approver),
        'status': approval.status,
        'comments': approval.comments,
        'created_at': approval.created_at.isoformat() if approval.created_at else None,
        'updated_at': approval.updated_at.isoformat() if approval.updated_at else None,
    }


def validate_approvers(approver_ids):
    """Approvers must exist and may not be client accounts"""
    ids = unique_ids(approver_ids)
    if not ids:
        return []
    approvers = User.query.filter(User.id.in_(ids), User.role != 'CLIENT').all()
    if len(approvers) != len(ids):
        raise ValidationFailed('One or more selected approvers are invalid')
    by_id = {a.id: a for a in approvers}
    return [by_id[i] for i in ids]


def stage_internal_approval(record, kind, approvers, requirement):
    """Set the approval flags on the record and stage one PENDING Approval per approver"""
    _, column, _ = KINDS[kind]
    for approver in approvers:
        db.session.add(Approval(approver_id=approver.id, status='PENDING', **{column: record.id}))

    if approvers:
        ref = NotificationRef.proposal(record.id) if kind == 'proposal' else NotificationRef.invoice(record.id)
        notify_users(
            [a.id for a in approvers],
            'APPROVAL_REQUEST',
            f"Approval requested: {email_service.record_title(record)}",
            f"A {kind} is waiting for your approval.",
            ref=ref,
            **({'proposal_id': record.proposal_id} if kind == 'bill' and record.proposal_id else {}),
        )

    record.internal_approval_required = bool(approvers)
    record.internal_approval_type = requirement if approvers else None
    record.required_approver_ids = [str(a.id) for a in approvers]
    record.internal_approvals_complete = not approvers


def send_approval_emails(record, kind, approvers):
    requester = db.session.get(User, record.created_by)
    sent = 0
    for approver in approvers:
        if email_service.send_approval_request(approver, requester, kind, record):
            sent += 1
    return sent


def submit_record(ctx, record, kind, payload, on_no_approvers=None):
    """
    DRAFT -> SUBMITTED for a proposal or bill.

    Only the creator or an admin may submit. Approver emails are sent after the
    commit and a failed send never fails the submission.
    """
    if not can_submit(ctx, record.created_by):
        raise Forbidden(f"Only the {kind} creator can submit it")
    if record.status != 'DRAFT':
        raise BusinessRuleViolation(f"Only draft {kind}s can be submitted")

    approvers = validate_approvers(payload.approver_ids)
    old_status = record.status
    try:
        stage_internal_approval(record, kind, approvers, payload.approval_requirement)
        record.status = 'SUBMITTED'
        record.submitted_at = utc_now()
        if not approvers and on_no_approvers is not None:
            on_no_approvers(record)
        log_action(ctx, 'SUBMIT', KINDS[kind][2], record.id,
                   {'status': old_status},
                   {'status': record.status, 'approver_ids': record.required_approver_ids,
                    'approval_requirement': record.internal_approval_type},
                   commit=False)
        db.session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Database error submitting {kind} {record.id}: {e}")
        db.session.rollback()
        raise

    send_approval_emails(record, kind, approvers)
    return record


def reset_internal_approval(ctx, record, kind, payload):
    """Replace the approver set of an already submitted record"""
    _, column, table = KINDS[kind]
    approvers = validate_approvers(payload.approver_ids)
    try:
        Approval.query.filter(getattr(Approval, column) == record.id).delete(synchronize_session=False)
        stage_internal_approval(record, kind, approvers, payload.approval_requirement)
        log_action(ctx, 'RESUBMIT', table, record.id, None,
                   {'approver_ids': record.required_approver_ids}, commit=False)
        db.session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Database error resubmitting {kind} {record.id}: {e}")
        db.session.rollback()
        raise
    db.session.expire(record, ['approvals'])
    send_approval_emails(record, kind, approvers)
    return record


def record_decision(ctx, payload):
    """
    Internal approve/reject of a submitted proposal or bill.

    STAFF work may be decided by a MANAGER or ADMIN, MANAGER work only by an
    ADMIN. The first decision settles the record.
    """
    if (payload.proposal_id is None) == (payload.bill_id is None):
        raise ValidationFailed('Either proposalId or billId must be provided')
    if ctx.is_client:
        raise Forbidden('Forbidden')

    kind = 'proposal' if payload.proposal_id else 'bill'
    model, column, table = KINDS[kind]
    record = get_record(model, payload.proposal_id or payload.bill_id, kind.capitalize())

    creator = db.session.get(User, record.created_by)
    creator_role = creator.role if creator else 'STAFF'
    if not can_approve_item(creator_role, ctx.role) or ctx.capability(DECISION_CAPABILITY[kind]) is False:
        raise Forbidden('You do not have permission to approve this item')
    if record.status != 'SUBMITTED':
        raise BusinessRuleViolation(f"Only submitted {kind}s can be approved or rejected")

    now = utc_now()
    try:
        approval = Approval.query.filter(
            getattr(Approval, column) == record.id,
            Approval.approver_id == ctx.user_id,
            Approval.status == 'PENDING',
        ).first()
        if approval is None:
            approval = Approval(approver_id=ctx.user_id, **{column: record.id})
            db.session.add(approval)
        approval.status = payload.status
        approval.comments = payload.comments

        old_status = record.status
        record.status = payload.status
        if payload.status == 'APPROVED':
            record.approved_at = now
            record.internal_approvals_complete = True
        else:
            record.approved_at = None

        ref = NotificationRef.proposal(record.id) if kind == 'proposal' else NotificationRef.invoice(record.id)
        if record.created_by != ctx.user_id:
            create_notification(
                record.created_by,
                'PROPOSAL_APPROVAL' if kind == 'proposal' else 'GENERAL',
                f"{kind.capitalize()} {payload.status.lower()}: {email_service.record_title(record)}",
                payload.comments,
                ref=ref,
            )

        log_action(ctx, payload.status, table, record.id,
                   {'status': old_status},
                   {'status': record.status, 'comments': payload.comments},
                   commit=False)
        db.session.commit()
        logger.info(f"{kind} {record.id} {payload.status} by {ctx.user_id}")
        return approval
    except SQLAlchemyError as e:
        logger.error(f"Database error recording decision on {kind} {record.id}: {e}")
        db.session.rollback()
        raise


def list_pending_approvals(ctx):
    """Approvals still waiting on the caller, for records that are still submitted"""
    approvals = Approval.query.filter(
        Approval.approver_id == ctx.user_id,
        Approval.status == 'PENDING',
    ).order_by(Approval.created_at.desc()).all()

    result = []
    for approval in approvals:
        record = approval.proposal or approval.bill
        if record is None or record.status != 'SUBMITTED' or record.deleted_at is not None:
            continue
        item = approval_to_dict(approval)
        item['kind'] = 'proposal' if approval.proposal_id else 'bill'
        item['title'] = email_service.record_title(record)
        item['amount'] = float(record.amount or 0)
        item['currency'] = record.currency
        result.append(item)
    return result


def approvals_for(record, kind):
    _, column, _ = KINDS[kind]
    approvals = Approval.query.filter(getattr(Approval, column) == record.id).order_by(Approval.created_at).all()
    return [approval_to_dict(a) for a in approvals]
