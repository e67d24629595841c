from chambers import db
from chambers.errors import BusinessRuleViolation, Forbidden, NotFound, ValidationFailed
from chambers.models import (
    Bill, BillItem, Client, Project, ProjectCharge, ProjectManager, Proposal, TimesheetEntry, User,
)
from chambers.crud.bill_crud import apply_totals, generate_invoice_number
from chambers.services import financial
from chambers.utils.date_utils import utc_now
from chambers.utils.logging_utils import log_action
from chambers.utils.permissions import can_view_all_clients
from chambers.utils.record_resolver import get_record, user_label
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
import logging

logger = logging.getLogger(__name__)


def project_to_dict(project, detail=False):
    data = {
        'id': str(project.id),
        'name': project.name,
        'description': project.description,
        'client_id': str(project.client_id),
        'client_name': project.client.name if project.client else None,
        'proposal_id': str(project.proposal_id) if project.proposal_id else None,
        'status': project.status,
        'currency': project.currency,
        'start_date': project.start_date.isoformat() if project.start_date else None,
        'managers': [
            {'user_id': str(m.user_id), 'name': user_label(m.user)} for m in project.managers
        ],
        'unbilled_amount': float(financial.unbilled_amount(project)),
        'created_at': project.created_at.isoformat() if project.created_at else None,
    }
    if detail:
        data['bills'] = [
            {'id': str(b.id), 'invoice_number': b.invoice_number, 'status': b.status, 'amount': float(b.amount or 0)}
            for b in project.bills if b.deleted_at is None
        ]
    return data


def timesheet_entry_to_dict(entry):
    return {
        'id': str(entry.id),
        'project_id': str(entry.project_id),
        'user_id': str(entry.user_id),
        'user_name': user_label(entry.user),
        'date': entry.date.isoformat() if entry.date else None,
        'hours': entry.hours,
        'rate': float(entry.rate) if entry.rate is not None else None,
        'amount': float(financial.money(financial.to_decimal(entry.hours) * financial.to_decimal(entry.rate))),
        'description': entry.description,
        'billable': bool(entry.billable),
        'billed': bool(entry.billed),
        'bill_id': str(entry.bill_id) if entry.bill_id else None,
    }


def charge_to_dict(charge):
    return {
        'id': str(charge.id),
        'project_id': str(charge.project_id),
        'description': charge.description,
        'amount': float(charge.amount or 0),
        'charge_date': charge.charge_date.isoformat() if charge.charge_date else None,
        'billed': bool(charge.billed),
        'bill_id': str(charge.bill_id) if charge.bill_id else None,
    }


def _scoped_query(ctx):
    query = Project.query
    if ctx.is_client:
        return query.join(Client, Client.id == Project.client_id).filter(Client.email == ctx.email)
    if can_view_all_clients(ctx):
        return query
    managed = db.session.query(ProjectManager.project_id).filter(ProjectManager.user_id == ctx.user_id)
    return query.join(Client, Client.id == Project.client_id).filter(or_(
        Project.id.in_(managed),
        Client.client_manager_id == ctx.user_id,
    ))


def get_all_projects(ctx, client_id=None, status=None):
    try:
        query = _scoped_query(ctx).filter(Project.deleted_at.is_(None))
        if client_id:
            query = query.filter(Project.client_id == client_id)
        if status:
            query = query.filter(Project.status == status)
        return [project_to_dict(p) for p in query.order_by(Project.created_at.desc()).all()]
    except SQLAlchemyError as e:
        logger.error(f"Error listing projects: {e}")
        raise


def get_project(ctx, project_id):
    project = get_record(Project, project_id, 'Project')
    if not _scoped_query(ctx).filter(Project.id == project.id).first():
        raise NotFound('Project not found')
    return project


def _staff_ids(user_ids, label):
    users = User.query.filter(User.id.in_(user_ids)).all() if user_ids else []
    if len(users) != len(set(user_ids)) or any(u.role == 'CLIENT' for u in users):
        raise ValidationFailed(f"One or more selected {label} are invalid")
    return [u.id for u in users]


def add_project(ctx, payload):
    if ctx.is_client:
        raise Forbidden('Forbidden')
    get_record(Client, payload.client_id, 'Client')
    if payload.proposal_id:
        get_record(Proposal, payload.proposal_id, 'Proposal')
    manager_ids = _staff_ids(payload.manager_ids, 'project managers')
    try:
        project = Project(
            name=payload.name,
            description=payload.description,
            client_id=payload.client_id,
            proposal_id=payload.proposal_id,
            currency=payload.currency.upper(),
            status='ACTIVE',
            start_date=utc_now(),
        )
        for user_id in manager_ids:
            project.managers.append(ProjectManager(user_id=user_id))
        db.session.add(project)
        db.session.flush()
        log_action(ctx, 'CREATE', 'projects', project.id, None, payload.model_dump(), commit=False)
        db.session.commit()
        return project
    except SQLAlchemyError as e:
        logger.error(f"Database error adding project: {e}")
        db.session.rollback()
        raise


def set_project_managers(ctx, project_id, manager_ids):
    if ctx.role not in ('ADMIN', 'MANAGER'):
        raise Forbidden('Only administrators and managers can change project managers')
    project = get_project(ctx, project_id)
    manager_ids = _staff_ids(manager_ids, 'project managers')
    try:
        old_values = {'managers': [str(m.user_id) for m in project.managers]}
        keep = {str(i) for i in manager_ids}
        for link in list(project.managers):
            if str(link.user_id) not in keep:
                project.managers.remove(link)
        current = {str(m.user_id) for m in project.managers}
        for user_id in manager_ids:
            if str(user_id) not in current:
                project.managers.append(ProjectManager(user_id=user_id))
        log_action(ctx, 'UPDATE', 'projects', project.id, old_values,
                   {'managers': [str(i) for i in manager_ids]}, commit=False)
        db.session.commit()
        return project
    except SQLAlchemyError as e:
        logger.error(f"Database error updating managers of project {project_id}: {e}")
        db.session.rollback()
        raise


# ---- time and charges -------------------------------------------------------

def get_timesheet_entries(ctx, project_id, unbilled_only=False):
    project = get_project(ctx, project_id)
    entries = [e for e in project.timesheet_entries if not unbilled_only or (e.billable and not e.billed)]
    return [timesheet_entry_to_dict(e) for e in sorted(entries, key=lambda e: e.date)]


def add_timesheet_entry(ctx, project_id, payload):
    if ctx.is_client:
        raise Forbidden('Forbidden')
    project = get_project(ctx, project_id)
    if project.status != 'ACTIVE':
        raise BusinessRuleViolation('Time can only be logged on active projects')
    user_id = payload.user_id or ctx.user_id
    if str(user_id) != str(ctx.user_id) and ctx.role not in ('ADMIN', 'MANAGER'):
        raise Forbidden('You can only log your own time')
    get_record(User, user_id, 'User')
    try:
        entry = TimesheetEntry(
            project_id=project.id,
            user_id=user_id,
            date=payload.date,
            hours=payload.hours,
            rate=payload.rate,
            description=payload.description,
            billable=payload.billable,
            billed=False,
        )
        db.session.add(entry)
        db.session.flush()
        log_action(ctx, 'CREATE', 'timesheet_entries', entry.id, None, payload.model_dump(), commit=False)
        db.session.commit()
        return entry
    except SQLAlchemyError as e:
        logger.error(f"Database error adding timesheet entry to project {project_id}: {e}")
        db.session.rollback()
        raise


def get_charges(ctx, project_id, unbilled_only=False):
    project = get_project(ctx, project_id)
    return [charge_to_dict(c) for c in project.charges if not unbilled_only or not c.billed]


def add_charge(ctx, project_id, payload):
    if ctx.is_client:
        raise Forbidden('Forbidden')
    project = get_project(ctx, project_id)
    try:
        charge = ProjectCharge(
            project_id=project.id,
            description=payload.description,
            amount=financial.money(payload.amount),
            charge_date=payload.charge_date or utc_now(),
            billed=False,
            created_by=ctx.user_id,
        )
        db.session.add(charge)
        db.session.flush()
        log_action(ctx, 'CREATE', 'project_charges', charge.id, None, payload.model_dump(), commit=False)
        db.session.commit()
        return charge
    except SQLAlchemyError as e:
        logger.error(f"Database error adding charge to project {project_id}: {e}")
        db.session.rollback()
        raise


def get_unbilled(ctx, project_id):
    project = get_project(ctx, project_id)
    entries = [e for e in project.timesheet_entries if e.billable and not e.billed]
    charges = [c for c in project.charges if not c.billed]
    return {
        'project_id': str(project.id),
        'timesheet_entries': [timesheet_entry_to_dict(e) for e in entries],
        'charges': [charge_to_dict(c) for c in charges],
        'timesheet_total': float(financial.unbilled_timesheet_amount(entries)),
        'charges_total': float(financial.unbilled_charges_amount(charges)),
        'total': float(financial.unbilled_amount(project)),
    }


# ---- invoice generation -----------------------------------------------------

def _upfront_bills(project):
    """Paid upfront invoices of the project or of the proposal it came from, oldest first"""
    filters = [Bill.project_id == project.id]
    if project.proposal_id:
        filters.append(Bill.proposal_id == project.proposal_id)
    return Bill.query.filter(
        or_(*filters),
        Bill.is_upfront_payment.is_(True),
        Bill.status == 'PAID',
        Bill.deleted_at.is_(None),
    ).order_by(Bill.paid_at, Bill.created_at).all()


def _consume_credit(upfront_bills, wanted):
    """Draw `wanted` from the upfront invoices in order; returns what was drawn"""
    drawn = financial.ZERO
    for upfront in upfront_bills:
        if drawn >= wanted:
            break
        left = financial.to_decimal(upfront.amount) - financial.to_decimal(upfront.credit_applied)
        if left <= 0:
            continue
        take = min(left, wanted - drawn)
        upfront.credit_applied = financial.money(financial.to_decimal(upfront.credit_applied) + take)
        drawn += take
    return financial.money(drawn)


def generate_invoice(ctx, project_id, payload):
    """
    Draft invoice from the project's unbilled time and charges.

    Paid upfront invoices are credited first (never more than the subtotal),
    then the proposal's client discount and tax settings apply. Every entry
    and charge picked up is marked billed against the new invoice.
    """
    if ctx.is_client:
        raise Forbidden('Forbidden')
    project = get_project(ctx, project_id)
    entries = [e for e in project.timesheet_entries if e.billable and not e.billed]
    charges = [c for c in project.charges if not c.billed]
    if not entries and not charges:
        raise BusinessRuleViolation('Project has no unbilled time or charges')

    proposal = project.proposal
    subtotal = financial.unbilled_amount(project)

    try:
        bill = Bill(
            invoice_number=generate_invoice_number(),
            client_id=project.client_id,
            project_id=project.id,
            proposal_id=project.proposal_id,
            created_by=ctx.user_id,
            status='DRAFT',
            currency=project.currency or 'EUR',
            due_date=payload.due_date,
            tax_rate=proposal.tax_rate if proposal else None,
            tax_inclusive=bool(proposal.tax_inclusive) if proposal else False,
            discount_percent=proposal.client_discount_percent if proposal else None,
            discount_amount=proposal.client_discount_amount if proposal else None,
            required_approver_ids=[],
            reminder_count=0,
        )
        db.session.add(bill)
        for entry in entries:
            bill.items.append(BillItem(
                type='TIMESHEET',
                description=entry.description or f"Time on {entry.date.date().isoformat()}",
                quantity=entry.hours,
                unit_price=entry.rate or 0,
                amount=financial.money(financial.to_decimal(entry.hours) * financial.to_decimal(entry.rate)),
                person_id=entry.user_id,
            ))
        for charge in charges:
            bill.items.append(BillItem(
                type='CHARGE',
                description=charge.description,
                quantity=1,
                unit_price=charge.amount,
                amount=financial.money(charge.amount),
            ))

        upfront_bills = _upfront_bills(project)
        available = financial.available_upfront_credit(upfront_bills)
        if available > 0 and subtotal > 0:
            credit = _consume_credit(upfront_bills, min(available, subtotal))
            bill.items.append(BillItem(
                type='FEE',
                description='Credit from upfront payment',
                quantity=1,
                unit_price=-credit,
                amount=-credit,
                is_credit=True,
            ))
        totals = apply_totals(bill)
        db.session.flush()

        for entry in entries:
            entry.billed = True
            entry.bill_id = bill.id
        for charge in charges:
            charge.billed = True
            charge.bill_id = bill.id

        log_action(ctx, 'GENERATE_INVOICE', 'bills', bill.id, None, {
            'project_id': project.id,
            'timesheet_entries': len(entries),
            'charges': len(charges),
            **totals,
        }, commit=False)
        db.session.commit()
        logger.info(f"Generated invoice {bill.invoice_number} for project {project.id}")
        return bill
    except SQLAlchemyError as e:
        logger.error(f"Database error generating invoice for project {project_id}: {e}")
        db.session.rollback()
        raise
