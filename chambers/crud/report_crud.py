from chambers.errors import Forbidden
from chambers.models import Bill, Project, Proposal
from chambers.services import financial
from chambers.utils.date_utils import utc_now
from sqlalchemy.exc import SQLAlchemyError
import logging

logger = logging.getLogger(__name__)


def get_financial_summary(ctx):
    """Unbilled work, approved proposal value not yet invoiced and outstanding invoices"""
    if ctx.role not in ('ADMIN', 'MANAGER'):
        raise Forbidden('Forbidden')
    now = utc_now()
    try:
        projects = Project.query.filter(Project.deleted_at.is_(None)).all()
        proposals = Proposal.query.filter(Proposal.status == 'APPROVED', Proposal.deleted_at.is_(None)).all()
        overdue_bills = Bill.query.filter(
            Bill.deleted_at.is_(None),
            Bill.status != 'PAID',
            Bill.due_date < now,
        ).all()
    except SQLAlchemyError as e:
        logger.error(f"Error building financial summary: {e}")
        raise

    unbilled_by_project = []
    unbilled_total = financial.ZERO
    for project in projects:
        amount = financial.unbilled_amount(project)
        if amount:
            unbilled_by_project.append({
                'project_id': str(project.id),
                'project_name': project.name,
                'amount': float(amount),
            })
            unbilled_total += amount

    outstanding = [b for b in overdue_bills if financial.is_outstanding(b, now)]
    outstanding_total = financial.money(sum((financial.to_decimal(b.amount) for b in outstanding), financial.ZERO))

    return {
        'unbilled_total': float(financial.money(unbilled_total)),
        'unbilled_by_project': unbilled_by_project,
        'closed_proposals_not_charged': float(financial.closed_proposals_not_charged(proposals)),
        'outstanding_total': float(outstanding_total),
        'outstanding_count': len(outstanding),
        'outstanding_invoices': [
            {
                'id': str(b.id),
                'invoice_number': b.invoice_number,
                'client_name': b.client.name if b.client else None,
                'amount': float(b.amount or 0),
                'due_date': b.due_date.isoformat() if b.due_date else None,
                'days_overdue': (now - b.due_date).days,
                'reminder_count': b.reminder_count or 0,
            }
            for b in sorted(outstanding, key=lambda b: b.due_date)
        ],
    }
