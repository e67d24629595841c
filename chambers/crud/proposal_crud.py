from chambers import db
from chambers.errors import BusinessRuleViolation, ChambersError, Forbidden, NotFound, ServiceUnavailable, ValidationFailed
from chambers.errors import DATABASE_UNAVAILABLE_MESSAGE, is_database_connection_error
from chambers.models import (
    Client, InstallmentInvoice, Lead, Milestone, Notification, PaymentTerm, Project, Proposal, ProposalItem,
)
from chambers.crud import approval_crud
from chambers.schemas import PROPOSAL_FIELDS_BY_ROLE, whitelisted_changes
from chambers.services import email_service, financial
from chambers.services.notification_service import NotificationRef, notify_users, unique_ids
from chambers.services.reference_census import describe, proposal_census, session_is_reachable
from chambers.utils.date_utils import utc_now
from chambers.utils.logging_utils import log_action
from chambers.utils.permissions import can_edit_all_proposals, can_edit_proposal, can_submit
from chambers.utils.record_resolver import get_record, user_label
from chambers.utils.request_context import parse_uuid
from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from datetime import timedelta
import secrets
import logging

logger = logging.getLogger(__name__)


def proposal_to_dict(proposal, detail=False):
    data = {
        'id': str(proposal.id),
        'proposal_number': proposal.proposal_number,
        'title': proposal.title,
        'description': proposal.description,
        'client_id': str(proposal.client_id) if proposal.client_id else None,
        'client_name': proposal.client.name if proposal.client else None,
        'lead_id': str(proposal.lead_id) if proposal.lead_id else None,
        'lead_name': proposal.lead.name if proposal.lead else None,
        'created_by': str(proposal.created_by),
        'creator_name': user_label(proposal.creator),
        'status': proposal.status,
        'amount': float(proposal.amount or 0),
        'currency': proposal.currency,
        'issue_date': proposal.issue_date.isoformat() if proposal.issue_date else None,
        'expiry_date': proposal.expiry_date.isoformat() if proposal.expiry_date else None,
        'tax_rate': float(proposal.tax_rate) if proposal.tax_rate is not None else None,
        'tax_inclusive': bool(proposal.tax_inclusive),
        'client_discount_percent': float(proposal.client_discount_percent) if proposal.client_discount_percent is not None else None,
        'client_discount_amount': float(proposal.client_discount_amount) if proposal.client_discount_amount is not None else None,
        'submitted_at': proposal.submitted_at.isoformat() if proposal.submitted_at else None,
        'approved_at': proposal.approved_at.isoformat() if proposal.approved_at else None,
        'internal_approval_required': bool(proposal.internal_approval_required),
        'internal_approval_type': proposal.internal_approval_type,
        'required_approver_ids': proposal.required_approver_ids or [],
        'internal_approvals_complete': bool(proposal.internal_approvals_complete),
        'client_approval_status': proposal.client_approval_status,
        'client_approval_email_sent': bool(proposal.client_approval_email_sent),
        'client_approved_at': proposal.client_approved_at.isoformat() if proposal.client_approved_at else None,
        'client_rejected_at': proposal.client_rejected_at.isoformat() if proposal.client_rejected_at else None,
        'client_rejection_reason': proposal.client_rejection_reason,
        'deleted_at': proposal.deleted_at.isoformat() if proposal.deleted_at else None,
        'deletion_requested_at': proposal.deletion_requested_at.isoformat() if proposal.deletion_requested_at else None,
        'deletion_requested_by': str(proposal.deletion_requested_by) if proposal.deletion_requested_by else None,
        'created_at': proposal.created_at.isoformat() if proposal.created_at else None,
        'updated_at': proposal.updated_at.isoformat() if proposal.updated_at else None,
    }
    if detail:
        data['items'] = [{
            'id': str(item.id),
            'description': item.description,
            'quantity': item.quantity,
            'unit_price': float(item.unit_price or 0),
            'amount': float(item.amount or 0),
        } for item in proposal.items]
        data['milestones'] = [{
            'id': str(m.id),
            'title': m.title,
            'due_date': m.due_date.isoformat() if m.due_date else None,
        } for m in proposal.milestones]
        data['payment_terms'] = [payment_term_to_dict(term, proposal) for term in proposal.payment_terms]
        data['approvals'] = approval_crud.approvals_for(proposal, 'proposal')
        data['project_ids'] = [str(p.id) for p in proposal.projects]
    return data


def payment_term_to_dict(term, proposal):
    return {
        'id': str(term.id),
        'upfront_type': term.upfront_type,
        'upfront_value': float(term.upfront_value) if term.upfront_value is not None else None,
        'proposal_item_id': str(term.proposal_item_id) if term.proposal_item_id else None,
        'upfront_amount': float(financial.upfront_deduction(
            term_base_amount(term, proposal), term.upfront_type, term.upfront_value)),
        'installment_type': term.installment_type,
        'installment_count': term.installment_count,
        'installment_frequency': term.installment_frequency,
        'installment_amount': float(financial.installment_amount(
            term_base_amount(term, proposal), term.installment_count, term.upfront_type, term.upfront_value)),
        'installment_dates': [
            d.isoformat() for d in financial.installment_dates(term, proposal.issue_date, proposal.milestones)
        ],
        'milestone_ids': term.milestone_ids or [],
        'invoiced_installments': sorted(invoiced_installment_numbers(term)),
    }


def term_base_amount(term, proposal):
    """An item level term splits its item's amount, otherwise the whole proposal"""
    if term.proposal_item is not None:
        return term.proposal_item.amount
    return proposal.amount


def public_proposal_to_dict(proposal):
    """What the token holder on the review page gets to see"""
    return {
        'id': str(proposal.id),
        'proposal_number': proposal.proposal_number,
        'title': proposal.title,
        'description': proposal.description,
        'recipient_name': _recipient(proposal)[1],
        'amount': float(proposal.amount or 0),
        'currency': proposal.currency,
        'issue_date': proposal.issue_date.isoformat() if proposal.issue_date else None,
        'expiry_date': proposal.expiry_date.isoformat() if proposal.expiry_date else None,
        'client_approval_status': proposal.client_approval_status,
        'items': [{
            'description': item.description,
            'quantity': item.quantity,
            'unit_price': float(item.unit_price or 0),
            'amount': float(item.amount or 0),
        } for item in proposal.items],
    }


def generate_proposal_number():
    year = utc_now().year
    last = Proposal.query.filter(
        Proposal.proposal_number.like(f'PRO-{year}-%')
    ).order_by(Proposal.proposal_number.desc()).first()
    if last:
        try:
            new_number = int(last.proposal_number.split('-')[-1]) + 1
        except (ValueError, IndexError) as e:
            logger.error(f"Error parsing proposal number {last.proposal_number}: {e}")
            raise ChambersError('Failed to generate proposal number')
    else:
        new_number = 1
    return f'PRO-{year}-{new_number:04d}'


def _scoped_query(ctx):
    query = Proposal.query
    if ctx.role in ('ADMIN', 'MANAGER') or can_edit_all_proposals(ctx):
        return query
    if ctx.is_client:
        return query.join(Client, Client.id == Proposal.client_id).filter(
            Client.email == ctx.email,
            Proposal.status != 'DRAFT',
        )
    return query.filter(Proposal.created_by == ctx.user_id)


def get_all_proposals(ctx, status=None, include_deleted=False, q=None):
    try:
        query = _scoped_query(ctx)
        if not (include_deleted and ctx.is_admin):
            query = query.filter(Proposal.deleted_at.is_(None))
        if status:
            query = query.filter(Proposal.status == status)
        if q:
            like = f"%{q.strip()}%"
            query = query.filter(or_(Proposal.title.ilike(like), Proposal.proposal_number.ilike(like)))
        proposals = query.order_by(Proposal.created_at.desc()).all()
        return [proposal_to_dict(p) for p in proposals]
    except SQLAlchemyError as e:
        logger.error(f"Error listing proposals: {e}")
        raise


def get_proposal(ctx, proposal_id):
    proposal = get_record(Proposal, proposal_id, 'Proposal', include_deleted=ctx.is_admin)
    if not _scoped_query(ctx).filter(Proposal.id == proposal.id).first():
        raise NotFound('Proposal not found')
    return proposal


def _line_amount(quantity, unit_price):
    return financial.money(financial.to_decimal(quantity) * financial.to_decimal(unit_price))


def _add_children(proposal, payload):
    """Items, milestones and payment terms; returns the milestone rows in payload order"""
    for item in payload.items:
        db.session.add(ProposalItem(
            proposal=proposal,
            description=item.description,
            quantity=item.quantity,
            unit_price=item.unit_price,
            amount=_line_amount(item.quantity, item.unit_price),
        ))
    milestones = []
    for m in payload.milestones:
        milestone = Milestone(proposal=proposal, title=m.title, due_date=m.due_date)
        db.session.add(milestone)
        milestones.append(milestone)
    db.session.flush()

    for term in payload.payment_terms:
        milestone_ids = []
        for index in term.milestone_indexes:
            if index < 0 or index >= len(milestones):
                raise ValidationFailed(f"Payment term refers to unknown milestone {index}")
            milestone_ids.append(str(milestones[index].id))
        db.session.add(PaymentTerm(
            proposal=proposal,
            upfront_type=term.upfront_type,
            upfront_value=term.upfront_value,
            installment_type=term.installment_type,
            installment_count=term.installment_count,
            installment_frequency=term.installment_frequency,
            installment_maturity_dates=[d.isoformat() for d in term.installment_maturity_dates],
            milestone_ids=milestone_ids,
        ))


def add_proposal(ctx, payload):
    if ctx.is_client:
        raise Forbidden('Forbidden')
    if payload.client_id:
        get_record(Client, payload.client_id, 'Client')
    if payload.lead_id:
        get_record(Lead, payload.lead_id, 'Lead')

    amount = payload.amount
    if amount is None:
        amount = sum((_line_amount(i.quantity, i.unit_price) for i in payload.items), financial.ZERO)

    try:
        proposal = Proposal(
            proposal_number=generate_proposal_number(),
            title=payload.title,
            description=payload.description,
            client_id=payload.client_id,
            lead_id=payload.lead_id,
            created_by=ctx.user_id,
            status='DRAFT',
            amount=financial.money(amount),
            currency=payload.currency.upper(),
            issue_date=utc_now(),
            expiry_date=payload.expiry_date,
            tax_rate=payload.tax_rate,
            tax_inclusive=payload.tax_inclusive,
            client_discount_percent=payload.client_discount_percent,
            client_discount_amount=payload.client_discount_amount,
            required_approver_ids=[],
        )
        db.session.add(proposal)
        db.session.flush()
        _add_children(proposal, payload)
        log_action(ctx, 'CREATE', 'proposals', proposal.id, None,
                   payload.model_dump(exclude={'items', 'milestones', 'payment_terms'}), commit=False)
        db.session.commit()
        return proposal
    except SQLAlchemyError as e:
        logger.error(f"Database error adding proposal: {e}")
        db.session.rollback()
        raise
    except ValidationFailed:
        db.session.rollback()
        raise


def update_proposal(ctx, proposal_id, payload):
    proposal = get_proposal(ctx, proposal_id)
    if ctx.is_client or not can_edit_proposal(ctx, proposal):
        raise Forbidden('You do not have permission to edit this proposal')
    if proposal.status == 'APPROVED' and not ctx.is_admin:
        raise BusinessRuleViolation('Approved proposals can only be changed by an administrator')

    changes = whitelisted_changes(payload, PROPOSAL_FIELDS_BY_ROLE, ctx.role)
    if 'client_id' in changes and changes['client_id'] is not None:
        get_record(Client, changes['client_id'], 'Client')

    try:
        old_values = {name: getattr(proposal, name) for name in changes}
        for name, value in changes.items():
            if name == 'currency' and value:
                value = value.upper()
            if name == 'amount' and value is not None:
                value = financial.money(value)
            setattr(proposal, name, value)
        log_action(ctx, 'UPDATE', 'proposals', proposal.id, old_values, changes, commit=False)
        db.session.commit()
        return proposal
    except SQLAlchemyError as e:
        logger.error(f"Database error updating proposal {proposal_id}: {e}")
        db.session.rollback()
        raise


def clone_proposal(ctx, proposal_id):
    original = get_proposal(ctx, proposal_id)
    if ctx.is_client:
        raise Forbidden('Forbidden')
    try:
        clone = Proposal(
            proposal_number=generate_proposal_number(),
            title=f"{original.title} (Copy)",
            description=original.description,
            client_id=original.client_id,
            lead_id=original.lead_id,
            created_by=ctx.user_id,
            status='DRAFT',
            amount=original.amount,
            currency=original.currency,
            issue_date=utc_now(),
            expiry_date=original.expiry_date,
            tax_rate=original.tax_rate,
            tax_inclusive=original.tax_inclusive,
            client_discount_percent=original.client_discount_percent,
            client_discount_amount=original.client_discount_amount,
            required_approver_ids=[],
        )
        db.session.add(clone)
        for item in original.items:
            db.session.add(ProposalItem(proposal=clone, description=item.description, quantity=item.quantity,
                                        unit_price=item.unit_price, amount=item.amount))
        milestone_map = {}
        for m in original.milestones:
            copy = Milestone(proposal=clone, title=m.title, due_date=m.due_date)
            db.session.add(copy)
            milestone_map[str(m.id)] = copy
        db.session.flush()
        for term in original.payment_terms:
            db.session.add(PaymentTerm(
                proposal=clone,
                upfront_type=term.upfront_type,
                upfront_value=term.upfront_value,
                installment_type=term.installment_type,
                installment_count=term.installment_count,
                installment_frequency=term.installment_frequency,
                installment_maturity_dates=list(term.installment_maturity_dates or []),
                milestone_ids=[str(milestone_map[m].id) for m in (term.milestone_ids or []) if m in milestone_map],
            ))
        log_action(ctx, 'CLONE', 'proposals', clone.id, None, {'cloned_from': str(original.id)}, commit=False)
        db.session.commit()
        return clone
    except SQLAlchemyError as e:
        logger.error(f"Database error cloning proposal {proposal_id}: {e}")
        db.session.rollback()
        raise


# ---- submission and client approval ----------------------------------------

def _recipient(proposal):
    """(email, name) of whoever decides on the client side: the client, else the lead"""
    if proposal.client and proposal.client.email:
        return proposal.client.email, proposal.client.name
    if proposal.lead and proposal.lead.email:
        return proposal.lead.email, proposal.lead.name
    if proposal.client:
        return None, proposal.client.name
    return None, proposal.lead.name if proposal.lead else None


def _issue_client_token(proposal):
    now = utc_now()
    expired = proposal.client_approval_token_expiry is not None and proposal.client_approval_token_expiry < now
    if not proposal.client_approval_token or expired:
        proposal.client_approval_token = secrets.token_hex(32)
    proposal.client_approval_token_expiry = now + timedelta(days=current_app.config['CLIENT_APPROVAL_TOKEN_DAYS'])
    proposal.client_approval_status = 'PENDING'


def submit_proposal(ctx, proposal_id, payload):
    proposal = get_proposal(ctx, proposal_id)
    # Without internal approvers the proposal goes straight to the client
    approval_crud.submit_record(ctx, proposal, 'proposal', payload, on_no_approvers=_issue_client_token)

    if not proposal.internal_approval_required:
        email, name = _recipient(proposal)
        if email and email_service.send_client_approval_request(proposal, email, name):
            proposal.client_approval_email_sent = True
            proposal.client_approval_email_sent_by = ctx.user_id
            db.session.commit()
    return proposal


def resubmit_proposal(ctx, proposal_id, payload):
    proposal = get_proposal(ctx, proposal_id)
    if ctx.is_client or not can_submit(ctx, proposal.created_by):
        raise Forbidden('Forbidden')
    if proposal.status != 'SUBMITTED':
        raise BusinessRuleViolation('Only submitted proposals can be resubmitted')
    return approval_crud.reset_internal_approval(ctx, proposal, 'proposal', payload)


def send_client_email(ctx, proposal_id):
    proposal = get_proposal(ctx, proposal_id)
    if ctx.is_client:
        raise Forbidden('Forbidden')
    if proposal.status == 'DRAFT':
        raise BusinessRuleViolation('Submit the proposal before sending it to the client')
    if proposal.internal_approval_required and not proposal.internal_approvals_complete:
        raise BusinessRuleViolation('Cannot send approval email until all internal approvals are complete')

    email, name = _recipient(proposal)
    if not email:
        raise BusinessRuleViolation(
            'Neither client nor lead email is set. Please update the client or lead information first.')

    try:
        _issue_client_token(proposal)
        db.session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Database error issuing approval token for {proposal_id}: {e}")
        db.session.rollback()
        raise

    if not email_service.send_client_approval_request(proposal, email, name):
        raise ChambersError('Failed to send the approval email')

    proposal.client_approval_email_sent = True
    proposal.client_approval_email_sent_by = ctx.user_id
    log_action(ctx, 'SEND_CLIENT_EMAIL', 'proposals', proposal.id, None, {'recipient': email})
    return proposal


def _proposal_for_token(proposal_id, token):
    proposal = Proposal.query.filter(
        Proposal.id == parse_uuid(proposal_id, 'Proposal'),
        Proposal.client_approval_token == token,
        Proposal.deleted_at.is_(None),
    ).first() if token else None
    if proposal is None:
        raise NotFound('Invalid approval token or proposal not found')
    expiry = proposal.client_approval_token_expiry
    if expiry is not None and utc_now() > expiry:
        raise BusinessRuleViolation('Approval token has expired. Please request a new approval link.')
    return proposal


def get_client_review(proposal_id, token):
    return _proposal_for_token(proposal_id, token)


def _convert_lead(proposal):
    lead = proposal.lead
    if lead.converted_to_client_id:
        proposal.client_id = lead.converted_to_client_id
        return
    client = Client(
        name=lead.name,
        email=lead.email,
        company=lead.company,
        contact_info=lead.contact_info,
        created_by=proposal.created_by,
        client_manager_id=proposal.created_by,
    )
    db.session.add(client)
    db.session.flush()
    lead.converted_to_client_id = client.id
    lead.converted_at = utc_now()
    lead.status = 'CONVERTED'
    proposal.client_id = client.id
    logger.info(f"Lead {lead.id} converted to client {client.id} upon proposal approval")


def _ensure_project(proposal):
    if proposal.client_id is None:
        return None
    if any(p.deleted_at is None for p in proposal.projects):
        return None
    project = Project(
        name=proposal.title,
        client_id=proposal.client_id,
        proposal_id=proposal.id,
        description=proposal.description,
        status='ACTIVE',
        currency=proposal.currency or 'EUR',
        start_date=utc_now(),
    )
    db.session.add(project)
    return project


def _apply_client_decision(proposal, action, reason):
    now = utc_now()
    if action == 'approve':
        proposal.client_approval_status = 'APPROVED'
        proposal.client_approved_at = now
        proposal.client_rejected_at = None
        proposal.client_rejection_reason = None
        proposal.status = 'APPROVED'
        proposal.approved_at = proposal.approved_at or now
        if proposal.lead_id and not proposal.client_id:
            _convert_lead(proposal)
        _ensure_project(proposal)
    else:
        proposal.client_approval_status = 'REJECTED'
        proposal.client_rejected_at = now
        proposal.client_approved_at = None
        proposal.client_rejection_reason = reason
        proposal.status = 'REJECTED'
        proposal.approved_at = None


def _notify_team(proposal, action):
    name = _recipient(proposal)[1] or 'the client'
    verb = 'approved' if action == 'approve' else 'rejected'
    notify_users(
        [proposal.created_by, proposal.client_approval_email_sent_by],
        'PROPOSAL_APPROVAL',
        f"Proposal {verb} by {name}",
        f"{proposal.title} was {verb} by {name}.",
        ref=NotificationRef.proposal(proposal.id),
    )


def client_decision(proposal_id, payload):
    """Decision taken through the emailed link; the token is single use"""
    proposal = _proposal_for_token(proposal_id, payload.token)
    if proposal.client_approval_status != 'PENDING':
        raise BusinessRuleViolation(f"Proposal has already been {proposal.client_approval_status.lower()}")

    email, name = _recipient(proposal)
    try:
        old_status = proposal.client_approval_status
        _apply_client_decision(proposal, payload.action, payload.reason)
        proposal.client_approval_token = None
        proposal.client_approval_token_expiry = None
        _notify_team(proposal, payload.action)
        log_action(None, f"CLIENT_{payload.action.upper()}", 'proposals', proposal.id,
                   {'client_approval_status': old_status},
                   {'client_approval_status': proposal.client_approval_status, 'reason': payload.reason},
                   commit=False)
        db.session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Database error recording client decision on {proposal_id}: {e}")
        db.session.rollback()
        raise

    if email:
        email_service.send_client_decision_confirmation(proposal, email, name, payload.action == 'approve',
                                                        payload.reason)
    return proposal


def client_decision_as_user(ctx, proposal_id, payload):
    """A signed-in CLIENT deciding on a proposal addressed to them"""
    proposal = get_record(Proposal, proposal_id, 'Proposal')
    if ctx.is_client:
        if not proposal.client or (proposal.client.email or '').lower() != (ctx.email or '').lower():
            raise Forbidden('Forbidden')
    elif not ctx.is_admin:
        raise Forbidden('Forbidden')
    if proposal.client_approval_status != 'PENDING':
        raise BusinessRuleViolation(f"Proposal has already been {proposal.client_approval_status.lower()}")
    try:
        _apply_client_decision(proposal, payload.action, payload.reason)
        proposal.client_approval_token = None
        proposal.client_approval_token_expiry = None
        _notify_team(proposal, payload.action)
        log_action(ctx, f"CLIENT_{payload.action.upper()}", 'proposals', proposal.id, None,
                   {'client_approval_status': proposal.client_approval_status}, commit=False)
        db.session.commit()
        return proposal
    except SQLAlchemyError as e:
        logger.error(f"Database error recording client decision on {proposal_id}: {e}")
        db.session.rollback()
        raise


def approve_on_behalf(ctx, proposal_id, payload):
    if ctx.role not in ('ADMIN', 'MANAGER'):
        raise Forbidden('Only administrators and managers can approve on behalf of clients')
    proposal = get_record(Proposal, proposal_id, 'Proposal')
    if proposal.internal_approval_required and not proposal.internal_approvals_complete:
        raise BusinessRuleViolation(
            'Cannot approve on behalf of client until all internal approvals are complete')
    try:
        _apply_client_decision(proposal, payload.action, payload.reason)
        proposal.client_approval_token = None
        proposal.client_approval_token_expiry = None
        log_action(ctx, f"APPROVE_ON_BEHALF_{payload.action.upper()}", 'proposals', proposal.id, None,
                   {'client_approval_status': proposal.client_approval_status, 'reason': payload.reason},
                   commit=False)
        db.session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Database error approving {proposal_id} on behalf of client: {e}")
        db.session.rollback()
        raise

    email, name = _recipient(proposal)
    if email:
        email_service.send_client_decision_confirmation(proposal, email, name, payload.action == 'approve',
                                                        payload.reason)
    return proposal


# ---- deletion ---------------------------------------------------------------

def request_deletion(ctx, proposal_id):
    """Admins soft delete at once; the creator only files a request"""
    proposal = get_record(Proposal, proposal_id, 'Proposal')
    if not ctx.is_admin and proposal.created_by != ctx.user_id:
        raise Forbidden('Only the creator or an administrator can delete this proposal')
    now = utc_now()
    try:
        if ctx.is_admin:
            proposal.deleted_at = now
            proposal.deletion_approved_at = now
            proposal.deletion_approved_by = ctx.user_id
            action = 'DELETE'
        else:
            if proposal.deletion_requested_at is not None:
                raise BusinessRuleViolation('Deletion has already been requested for this proposal')
            proposal.deletion_requested_at = now
            proposal.deletion_requested_by = ctx.user_id
            action = 'DELETE_REQUEST'
        log_action(ctx, action, 'proposals', proposal.id, None, {'deleted': proposal.deleted_at is not None},
                   commit=False)
        db.session.commit()
        return proposal
    except SQLAlchemyError as e:
        logger.error(f"Database error requesting deletion of {proposal_id}: {e}")
        db.session.rollback()
        raise


def approve_deletion(ctx, proposal_id):
    if not ctx.is_admin:
        raise Forbidden('Only administrators can approve deletions')
    proposal = get_record(Proposal, proposal_id, 'Proposal')
    if proposal.deletion_requested_at is None:
        raise BusinessRuleViolation('No deletion request pending for this proposal')
    now = utc_now()
    try:
        proposal.deleted_at = now
        proposal.deletion_approved_at = now
        proposal.deletion_approved_by = ctx.user_id
        log_action(ctx, 'DELETE_APPROVE', 'proposals', proposal.id, None,
                   {'requested_by': proposal.deletion_requested_by}, commit=False)
        db.session.commit()
        return proposal
    except SQLAlchemyError as e:
        logger.error(f"Database error approving deletion of {proposal_id}: {e}")
        db.session.rollback()
        raise


def restore_proposal(ctx, proposal_id):
    if not ctx.is_admin:
        raise Forbidden('Only administrators can restore proposals')
    proposal = get_record(Proposal, proposal_id, 'Proposal', include_deleted=True)
    if proposal.deleted_at is None:
        raise BusinessRuleViolation('Proposal is not deleted')
    try:
        proposal.deleted_at = None
        proposal.deletion_requested_at = None
        proposal.deletion_requested_by = None
        proposal.deletion_approved_at = None
        proposal.deletion_approved_by = None
        log_action(ctx, 'RESTORE', 'proposals', proposal.id, None, None, commit=False)
        db.session.commit()
        return proposal
    except SQLAlchemyError as e:
        logger.error(f"Database error restoring {proposal_id}: {e}")
        db.session.rollback()
        raise


def _purge(proposal):
    """Hard delete a proposal and the rows that only exist through it"""
    Notification.query.filter(Notification.proposal_id == proposal.id).delete(synchronize_session=False)
    for term in proposal.payment_terms:
        Notification.query.filter(Notification.payment_term_id == term.id).delete(synchronize_session=False)
    for project in proposal.projects:
        project.proposal_id = None
    for bill in proposal.bills:
        bill.proposal_id = None
    db.session.delete(proposal)


def permanent_delete(ctx, proposal_id):
    if not ctx.is_admin:
        raise Forbidden('Only administrators can permanently delete proposals')
    proposal = get_record(Proposal, proposal_id, 'Proposal', include_deleted=True)
    if proposal.deleted_at is None:
        raise BusinessRuleViolation('Proposal must be deleted before it can be permanently deleted')
    try:
        number = proposal.proposal_number
        _purge(proposal)
        log_action(ctx, 'PERMANENT_DELETE', 'proposals', proposal.id, {'proposal_number': number}, None,
                   commit=False)
        db.session.commit()
        return True
    except SQLAlchemyError as e:
        logger.error(f"Database error permanently deleting {proposal_id}: {e}")
        db.session.rollback()
        raise


def deletion_check(proposal):
    """(deletable, reason, census) for one proposal"""
    census = proposal_census(proposal)
    if census.is_clear():
        return True, None, census
    return False, f"Cannot delete: {describe(census)}", census


def bulk_delete(ctx, payload):
    """
    Validate or soft delete many proposals.

    Each id is checked on its own so one bad row never hides the others; an
    unreachable database fails the whole batch.
    """
    if not ctx.is_admin:
        raise Forbidden('Only administrators can bulk delete proposals')
    try:
        session_is_reachable()
    except SQLAlchemyError as e:
        if is_database_connection_error(e):
            logger.error(f"Database unreachable during bulk delete: {e}")
            raise ServiceUnavailable(DATABASE_UNAVAILABLE_MESSAGE)
        raise

    deletable, non_deletable, to_delete = [], [], []
    for proposal_id in unique_ids(payload.ids):
        try:
            proposal = get_record(Proposal, proposal_id, 'Proposal')
            ok, reason, census = deletion_check(proposal)
            entry = {'id': str(proposal.id), 'title': proposal.title, 'proposal_number': proposal.proposal_number}
            if ok:
                deletable.append(entry)
                to_delete.append(proposal)
            else:
                non_deletable.append({**entry, 'reason': reason, 'details': census.blocking})
        except NotFound:
            non_deletable.append({'id': str(proposal_id), 'reason': 'Proposal not found'})
        except SQLAlchemyError as e:
            if is_database_connection_error(e):
                raise ServiceUnavailable(DATABASE_UNAVAILABLE_MESSAGE)
            logger.error(f"Error checking proposal {proposal_id} for deletion: {e}")
            non_deletable.append({'id': str(proposal_id), 'reason': 'Failed to check proposal'})

    result = {'deletable': deletable, 'non_deletable': non_deletable}
    if payload.action == 'validate':
        return result

    now = utc_now()
    try:
        for proposal in to_delete:
            proposal.deleted_at = now
            proposal.deletion_approved_at = now
            proposal.deletion_approved_by = ctx.user_id
            log_action(ctx, 'BULK_DELETE', 'proposals', proposal.id, None, None, commit=False)
        db.session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Database error in bulk proposal delete: {e}")
        db.session.rollback()
        raise
    result['deleted'] = len(deletable)
    return result


def invoiced_installment_numbers(term):
    """Installment numbers of a payment term that already have an invoice"""
    return {
        inv.installment_number for inv in InstallmentInvoice.query.filter(
            InstallmentInvoice.payment_term_id == term.id,
            InstallmentInvoice.invoiced_at.isnot(None),
        ).all()
    }
