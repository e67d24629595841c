from chambers import db
from chambers.errors import BusinessRuleViolation, Forbidden, NotFound, ValidationFailed
from chambers.models import (
    Bill, BillItem, CompensationEntry, FinderFee, FringeBenefit, OfficeAdvance, Project, ProjectManager,
    TimesheetEntry, User, UserCompensation, UserFinancialTransaction,
)
from chambers.services import financial
from chambers.utils.date_utils import month_bounds, utc_now
from chambers.utils.logging_utils import log_action
from chambers.utils.permissions import can_manage_accounts, can_view_account
from chambers.utils.record_resolver import get_record
from chambers.utils.request_context import parse_uuid
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
import logging

logger = logging.getLogger(__name__)


def transaction_to_dict(entry):
    return {
        'id': str(entry.id),
        'user_id': str(entry.user_id),
        'type': entry.type,
        'amount': float(entry.amount),
        'currency': entry.currency,
        'description': entry.description,
        'notes': entry.notes,
        'related_id': str(entry.related_id) if entry.related_id else None,
        'related_type': entry.related_type,
        'transaction_date': entry.transaction_date.isoformat() if entry.transaction_date else None,
        'created_at': entry.created_at.isoformat() if entry.created_at else None,
    }


def add_transaction(user_id, type, amount, description, related_id=None, related_type=None,
                    currency='EUR', transaction_date=None, notes=None, ctx=None, commit=True):
    """
    Adds an entry to a staff member's account.

    Positive amounts are owed to the user, negative amounts are owed by the user.
    """
    try:
        entry = UserFinancialTransaction(
            user_id=user_id,
            type=type,
            amount=financial.money(amount),
            currency=currency,
            description=description,
            notes=notes,
            related_id=related_id,
            related_type=related_type,
            transaction_date=transaction_date or utc_now(),
            created_by=ctx.user_id if ctx else None,
        )
        db.session.add(entry)
        db.session.flush()
        if ctx:
            log_action(ctx, 'CREATE', 'user_financial_transactions', entry.id, None,
                       {'user_id': user_id, 'type': type, 'amount': entry.amount}, commit=False)
        if commit:
            db.session.commit()
        return entry
    except SQLAlchemyError as e:
        logger.error(f"Database error adding transaction for user {user_id}: {e}")
        db.session.rollback()
        raise


def _account_owner(ctx, user_id, manage=False):
    user = get_record(User, user_id, 'User')
    allowed = can_manage_accounts(ctx) if manage else can_view_account(ctx, user.id)
    if not allowed:
        raise Forbidden('Forbidden')
    return user


def get_transactions(ctx, user_id, limit=100, offset=0):
    user = _account_owner(ctx, user_id)
    entries = UserFinancialTransaction.query.filter_by(user_id=user.id).order_by(
        UserFinancialTransaction.transaction_date.desc()
    ).limit(limit).offset(offset).all()
    return [transaction_to_dict(entry) for entry in entries]


def get_balance(ctx, user_id):
    user = _account_owner(ctx, user_id)
    entries = UserFinancialTransaction.query.filter_by(user_id=user.id).all()
    by_type = {}
    for entry in entries:
        by_type[entry.type] = by_type.get(entry.type, financial.ZERO) + financial.to_decimal(entry.amount)
    return {
        'user_id': str(user.id),
        'balance': float(financial.balance(entries)),
        'by_type': {name: float(financial.money(value)) for name, value in by_type.items()},
        'transaction_count': len(entries),
    }


# ---- advances ---------------------------------------------------------------

def advance_to_dict(advance):
    return {
        'id': str(advance.id),
        'user_id': str(advance.user_id),
        'type': advance.type,
        'description': advance.description,
        'amount': float(advance.amount),
        'currency': advance.currency,
        'start_date': advance.start_date.isoformat() if advance.start_date else None,
        'end_date': advance.end_date.isoformat() if advance.end_date else None,
        'frequency': advance.frequency,
        'is_active': bool(advance.is_active),
        'created_at': advance.created_at.isoformat() if advance.created_at else None,
    }


def get_advances(ctx, user_id):
    user = _account_owner(ctx, user_id)
    advances = OfficeAdvance.query.filter_by(user_id=user.id).order_by(OfficeAdvance.start_date.desc()).all()
    return [advance_to_dict(a) for a in advances]


def add_advance(ctx, user_id, payload):
    """One-off advances hit the account at once; recurring ones wait for processing"""
    user = _account_owner(ctx, user_id, manage=True)
    try:
        advance = OfficeAdvance(
            user_id=user.id,
            type=payload.type,
            description=payload.description,
            amount=financial.money(payload.amount),
            currency=payload.currency,
            start_date=payload.start_date,
            end_date=payload.end_date,
            frequency=payload.frequency if payload.type == 'RECURRING' else None,
            is_active=payload.is_active,
            created_by=ctx.user_id,
        )
        db.session.add(advance)
        db.session.flush()
        if payload.type == 'ONE_OFF':
            add_transaction(user.id, 'ADVANCE', -advance.amount, advance.description,
                            related_id=advance.id, related_type='ADVANCE', currency=advance.currency,
                            transaction_date=advance.start_date, ctx=ctx, commit=False)
        log_action(ctx, 'CREATE', 'office_advances', advance.id, None, payload.model_dump(), commit=False)
        db.session.commit()
        return advance
    except SQLAlchemyError as e:
        logger.error(f"Database error adding advance for user {user_id}: {e}")
        db.session.rollback()
        raise


def process_advance(advance, now, ctx=None):
    """
    Post the next installment of a recurring advance when it is due.

    Returns ('deactivated' | 'not_due' | 'processed', transaction or next date).
    The caller commits.
    """
    if advance.end_date is not None and now > advance.end_date:
        advance.is_active = False
        return 'deactivated', None

    last = UserFinancialTransaction.query.filter(
        UserFinancialTransaction.user_id == advance.user_id,
        UserFinancialTransaction.related_id == advance.id,
        UserFinancialTransaction.related_type == 'ADVANCE',
    ).order_by(UserFinancialTransaction.transaction_date.desc()).first()

    next_date = financial.next_recurring_date(
        last.transaction_date if last else None, advance.start_date, advance.frequency)
    if now < next_date:
        return 'not_due', next_date

    entry = add_transaction(
        advance.user_id, 'ADVANCE', -financial.to_decimal(advance.amount), advance.description,
        related_id=advance.id, related_type='ADVANCE', currency=advance.currency,
        transaction_date=next_date, notes=f"Recurring advance payment - {advance.frequency}",
        ctx=ctx, commit=False,
    )
    return 'processed', entry


def process_advance_now(ctx, user_id, advance_id):
    if ctx.role not in ('ADMIN', 'MANAGER'):
        raise Forbidden('Forbidden - Admin or Manager access required')
    user = get_record(User, user_id, 'User')
    advance = OfficeAdvance.query.filter_by(
        id=parse_uuid(advance_id, 'Advance'),
        user_id=user.id,
        is_active=True,
        type='RECURRING',
    ).first()
    if advance is None:
        raise NotFound('Recurring advance not found or inactive')
    try:
        outcome, value = process_advance(advance, utc_now(), ctx)
        db.session.commit()
        return outcome, value
    except SQLAlchemyError as e:
        logger.error(f"Database error processing advance {advance_id}: {e}")
        db.session.rollback()
        raise


# ---- fringe benefits --------------------------------------------------------

def fringe_benefit_to_dict(benefit):
    return {
        'id': str(benefit.id),
        'user_id': str(benefit.user_id),
        'type': benefit.type,
        'description': benefit.description,
        'amount': float(benefit.amount),
        'currency': benefit.currency,
        'benefit_date': benefit.benefit_date.isoformat() if benefit.benefit_date else None,
        'end_date': benefit.end_date.isoformat() if benefit.end_date else None,
        'frequency': benefit.frequency,
        'category': benefit.category,
    }


def get_fringe_benefits(ctx, user_id):
    user = _account_owner(ctx, user_id)
    benefits = FringeBenefit.query.filter_by(user_id=user.id).order_by(FringeBenefit.benefit_date.desc()).all()
    return [fringe_benefit_to_dict(b) for b in benefits]


def add_fringe_benefit(ctx, user_id, payload):
    user = _account_owner(ctx, user_id, manage=True)
    try:
        benefit = FringeBenefit(
            user_id=user.id,
            type=payload.type,
            description=payload.description,
            amount=financial.money(payload.amount),
            currency=payload.currency,
            benefit_date=payload.benefit_date,
            end_date=payload.end_date,
            frequency=payload.frequency if payload.type == 'RECURRING' else None,
            category=payload.category,
            created_by=ctx.user_id,
        )
        db.session.add(benefit)
        db.session.flush()
        log_action(ctx, 'CREATE', 'fringe_benefits', benefit.id, None, payload.model_dump(), commit=False)
        db.session.commit()
        return benefit
    except SQLAlchemyError as e:
        logger.error(f"Database error adding fringe benefit for user {user_id}: {e}")
        db.session.rollback()
        raise


# ---- compensation -----------------------------------------------------------

def compensation_to_dict(compensation):
    return {
        'id': str(compensation.id),
        'user_id': str(compensation.user_id),
        'compensation_type': compensation.compensation_type,
        'base_salary': float(compensation.base_salary) if compensation.base_salary is not None else None,
        'max_bonus_multiplier': compensation.max_bonus_multiplier,
        'percentage_type': compensation.percentage_type,
        'project_percentage': float(compensation.project_percentage) if compensation.project_percentage is not None else None,
        'direct_work_percentage': float(compensation.direct_work_percentage) if compensation.direct_work_percentage is not None else None,
        'effective_from': compensation.effective_from.isoformat() if compensation.effective_from else None,
        'effective_to': compensation.effective_to.isoformat() if compensation.effective_to else None,
    }


def compensation_entry_to_dict(entry):
    return {
        'id': str(entry.id),
        'user_id': str(entry.user_id),
        'compensation_id': str(entry.compensation_id),
        'period_year': entry.period_year,
        'period_month': entry.period_month,
        'base_salary': float(entry.base_salary) if entry.base_salary is not None else None,
        'bonus_multiplier': entry.bonus_multiplier,
        'bonus_amount': float(entry.bonus_amount) if entry.bonus_amount is not None else None,
        'percentage_earnings': float(entry.percentage_earnings) if entry.percentage_earnings is not None else None,
        'total_earned': float(entry.total_earned),
        'total_paid': float(entry.total_paid),
        'balance': float(entry.balance),
        'calculated_at': entry.calculated_at.isoformat() if entry.calculated_at else None,
    }


def get_compensations(ctx, user_id):
    user = _account_owner(ctx, user_id)
    rows = UserCompensation.query.filter_by(user_id=user.id).order_by(UserCompensation.effective_from.desc()).all()
    return [compensation_to_dict(c) for c in rows]


def get_compensation_entries(ctx, user_id):
    user = _account_owner(ctx, user_id)
    rows = CompensationEntry.query.filter_by(user_id=user.id).order_by(
        CompensationEntry.period_year.desc(), CompensationEntry.period_month.desc()).all()
    return [compensation_entry_to_dict(e) for e in rows]


def add_compensation(ctx, user_id, payload):
    if not ctx.is_admin:
        raise Forbidden('Only administrators can set compensation')
    user = get_record(User, user_id, 'User')
    try:
        compensation = UserCompensation(
            user_id=user.id,
            created_by=ctx.user_id,
            **payload.model_dump(),
        )
        db.session.add(compensation)
        db.session.flush()
        log_action(ctx, 'CREATE', 'user_compensations', compensation.id, None, payload.model_dump(), commit=False)
        db.session.commit()
        return compensation
    except SQLAlchemyError as e:
        logger.error(f"Database error adding compensation for user {user_id}: {e}")
        db.session.rollback()
        raise


def active_compensation(user_id, period_start, period_end):
    return UserCompensation.query.filter(
        UserCompensation.user_id == user_id,
        UserCompensation.effective_from < period_end,
        or_(UserCompensation.effective_to.is_(None), UserCompensation.effective_to >= period_start),
    ).order_by(UserCompensation.effective_from.desc()).first()


def period_work(user_id, period_start, period_end):
    """
    (project_total, direct_work_total) for one month.

    Projects count when the user manages them, logged time on them in the
    period, or appears on one of their invoice lines. Only invoices paid in the
    period contribute.
    """
    projects = Project.query.filter(or_(
        Project.managers.any(ProjectManager.user_id == user_id),
        Project.timesheet_entries.any(
            (TimesheetEntry.user_id == user_id)
            & (TimesheetEntry.date >= period_start)
            & (TimesheetEntry.date < period_end)
        ),
        Project.bills.any(Bill.items.any(BillItem.person_id == user_id)),
    )).all()

    project_total = financial.ZERO
    direct_total = financial.ZERO
    for project in projects:
        paid_bills = [
            b for b in project.bills
            if b.paid_at is not None and period_start <= b.paid_at < period_end and b.deleted_at is None
        ]
        project_total += sum((financial.to_decimal(b.amount) for b in paid_bills), financial.ZERO)
        direct_total += sum(
            (financial.to_decimal(e.hours) * financial.to_decimal(e.rate)
             for e in project.timesheet_entries
             if e.user_id == user_id and period_start <= e.date < period_end),
            financial.ZERO,
        )
        direct_total += sum(
            (financial.to_decimal(i.amount) for b in paid_bills for i in b.items if i.person_id == user_id),
            financial.ZERO,
        )
    return financial.money(project_total), financial.money(direct_total)


def calculate_compensation(ctx, user_id, payload):
    if not ctx.is_admin:
        raise Forbidden('Only administrators can calculate compensation')
    user = get_record(User, user_id, 'User')
    period_start, period_end = month_bounds(payload.year, payload.month)

    compensation = active_compensation(user.id, period_start, period_end)
    if compensation is None:
        raise NotFound('No active compensation found for this period')

    existing = CompensationEntry.query.filter_by(
        user_id=user.id, period_year=payload.year, period_month=payload.month).first()
    if existing:
        raise BusinessRuleViolation('Compensation entry already exists for this period')

    base_salary = financial.money(compensation.base_salary)
    bonus_amount = None
    percentage_earned = None
    if compensation.compensation_type == 'SALARY_BONUS':
        try:
            bonus_amount = financial.salary_bonus(base_salary, payload.bonus_multiplier or 0,
                                                  compensation.max_bonus_multiplier)
        except ValueError:
            raise ValidationFailed(
                f"Bonus multiplier must be between 0 and {compensation.max_bonus_multiplier}")
        total = base_salary + bonus_amount
    else:
        project_total, direct_total = period_work(user.id, period_start, period_end)
        percentage_earned = financial.percentage_earnings(
            project_total, compensation.project_percentage,
            direct_total, compensation.direct_work_percentage,
            compensation.percentage_type,
        )
        total = percentage_earned

    try:
        entry = CompensationEntry(
            user_id=user.id,
            compensation_id=compensation.id,
            period_year=payload.year,
            period_month=payload.month,
            base_salary=compensation.base_salary,
            bonus_multiplier=payload.bonus_multiplier,
            bonus_amount=bonus_amount,
            percentage_earnings=percentage_earned,
            total_earned=total,
            total_paid=0,
            balance=total,
            calculated_at=utc_now(),
        )
        db.session.add(entry)
        db.session.flush()
        add_transaction(user.id, 'COMPENSATION', total,
                        f"Compensation for {payload.year}-{payload.month:02d}",
                        related_id=entry.id, related_type='COMPENSATION_ENTRY',
                        transaction_date=period_start, ctx=ctx, commit=False)
        db.session.commit()
        logger.info(f"Compensation of {total} calculated for user {user.id} ({payload.year}-{payload.month:02d})")
        return entry
    except SQLAlchemyError as e:
        logger.error(f"Database error calculating compensation for user {user_id}: {e}")
        db.session.rollback()
        raise


# ---- finder fees ------------------------------------------------------------

def finder_fee_to_dict(fee):
    return {
        'id': str(fee.id),
        'bill_id': str(fee.bill_id),
        'invoice_number': fee.bill.invoice_number if fee.bill else None,
        'client_id': str(fee.client_id),
        'client_name': fee.client.name if fee.client else None,
        'finder_id': str(fee.finder_id),
        'invoice_net_amount': float(fee.invoice_net_amount),
        'finder_fee_percent': float(fee.finder_fee_percent),
        'finder_fee_amount': float(fee.finder_fee_amount),
        'paid_amount': float(fee.paid_amount),
        'remaining_amount': float(fee.remaining_amount),
        'status': fee.status,
        'earned_at': fee.earned_at.isoformat() if fee.earned_at else None,
    }


def create_finder_fees(bill):
    """Stage one fee per client finder for a paid invoice; a bill earns fees only once"""
    if bill.status != 'PAID' or bill.paid_at is None:
        raise BusinessRuleViolation('Invoice is not paid')
    if FinderFee.query.filter_by(bill_id=bill.id).first():
        return []
    client = bill.client
    if client is None or not client.finders:
        return []
    net = financial.invoice_net_amount(bill)
    if net <= 0:
        return []

    fees = []
    for finder in client.finders:
        percent = financial.to_decimal(finder.finder_fee_percent)
        if percent <= 0:
            continue
        amount = financial.finder_fee_amount(net, percent)
        fee = FinderFee(
            bill_id=bill.id,
            client_id=client.id,
            finder_id=finder.user_id,
            client_finder_id=finder.id,
            invoice_net_amount=net,
            finder_fee_percent=percent,
            finder_fee_amount=amount,
            paid_amount=0,
            remaining_amount=amount,
            status='PENDING',
            earned_at=bill.paid_at,
        )
        db.session.add(fee)
        fees.append(fee)
    if fees:
        logger.info(f"Created {len(fees)} finder fee(s) for bill {bill.id}")
    return fees


def get_finder_fees(ctx, finder_id=None, status=None):
    query = FinderFee.query
    if finder_id:
        if not can_view_account(ctx, finder_id):
            raise Forbidden('Forbidden')
        query = query.filter(FinderFee.finder_id == finder_id)
    elif not can_manage_accounts(ctx):
        query = query.filter(FinderFee.finder_id == ctx.user_id)
    if status:
        query = query.filter(FinderFee.status == status)
    return [finder_fee_to_dict(f) for f in query.order_by(FinderFee.earned_at.desc()).all()]


def pay_finder_fee(ctx, fee_id, payload):
    if not ctx.is_admin:
        raise Forbidden('Forbidden - Only admins can record payments')
    fee = get_record(FinderFee, fee_id, 'Finder fee')
    amount = financial.money(payload.amount)
    remaining = financial.to_decimal(fee.remaining_amount)
    if amount > remaining:
        raise BusinessRuleViolation(f"Payment amount exceeds remaining amount. Maximum payment: {remaining}")
    try:
        fee.paid_amount = financial.money(financial.to_decimal(fee.paid_amount) + amount)
        fee.remaining_amount = financial.money(remaining - amount)
        fee.status = 'PAID' if fee.remaining_amount <= 0 else 'PARTIALLY_PAID'
        add_transaction(fee.finder_id, 'FINDER_FEE', amount,
                        f"Finder fee payment for invoice {fee.bill.invoice_number if fee.bill else fee.bill_id}",
                        related_id=fee.id, related_type='FINDER_FEE',
                        transaction_date=payload.payment_date, notes=payload.notes, ctx=ctx, commit=False)
        db.session.commit()
        return fee
    except SQLAlchemyError as e:
        logger.error(f"Database error paying finder fee {fee_id}: {e}")
        db.session.rollback()
        raise
