"""
Counts of the rows that still point at a record.

Used by the validate and the delete code paths alike so both always agree on
whether a user, proposal, bill or client can go.
"""

from sqlalchemy import func, or_

from chambers import db
from chambers.models import (
    Bill, Client, FinderFee, Lead, Project, ProjectManager, Proposal, TimesheetEntry, Todo,
    TodoReassignment, UserDeletionRequest,
)


class Census(dict):
    """relation name -> count"""

    @property
    def total(self):
        return sum(self.values())

    @property
    def blocking(self):
        return {name: count for name, count in self.items() if count}

    def is_clear(self):
        return self.total == 0


def _count(query):
    return query.order_by(None).count()


def user_census(user_id):
    """Everything a user owns or authored that a hard delete would orphan"""
    return Census(
        proposals=_count(Proposal.query.filter(Proposal.created_by == user_id)),
        bills=_count(Bill.query.filter(Bill.created_by == user_id)),
        clients=_count(Client.query.filter(Client.created_by == user_id)),
        leads=_count(Lead.query.filter(Lead.created_by == user_id)),
        timesheet_entries=_count(TimesheetEntry.query.filter(TimesheetEntry.user_id == user_id)),
        todos=_count(Todo.query.filter(Todo.assigned_to == user_id)),
        created_todos=_count(Todo.query.filter(Todo.created_by == user_id, Todo.assigned_to != user_id)),
        todo_reassignments=_count(TodoReassignment.query.filter(
            or_(TodoReassignment.reassigned_by == user_id, TodoReassignment.to_user_id == user_id))),
        project_managers=_count(ProjectManager.query.filter(ProjectManager.user_id == user_id)),
        finder_fees=_count(FinderFee.query.filter(FinderFee.finder_id == user_id)),
        deletion_requests=_count(UserDeletionRequest.query.filter(UserDeletionRequest.requested_by == user_id)),
    )


def proposal_census(proposal):
    project_ids = [p.id for p in proposal.projects]
    bills = Bill.query.filter(
        Bill.deleted_at.is_(None),
        or_(Bill.proposal_id == proposal.id, Bill.project_id.in_(project_ids)) if project_ids
        else Bill.proposal_id == proposal.id,
    )
    settled_bills = _count(bills.filter(Bill.status.in_(('APPROVED', 'PAID'))))
    active_projects = sum(1 for p in proposal.projects if p.status == 'ACTIVE' and p.deleted_at is None)
    census = Census(
        approved_or_paid_bills=settled_bills,
        active_projects=active_projects,
    )
    if proposal.status == 'APPROVED':
        census['bills_on_approved_proposal'] = _count(bills)
    return census


def bill_census(bill):
    return Census(
        finder_fees=_count(FinderFee.query.filter(FinderFee.bill_id == bill.id)),
        paid=1 if bill.status == 'PAID' else 0,
    )


def client_census(client):
    return Census(
        proposals=_count(Proposal.query.filter(Proposal.client_id == client.id, Proposal.deleted_at.is_(None))),
        bills=_count(Bill.query.filter(Bill.client_id == client.id, Bill.deleted_at.is_(None))),
        projects=_count(Project.query.filter(Project.client_id == client.id, Project.deleted_at.is_(None))),
    )


def describe(census):
    """Human readable reason, e.g. '2 proposals, 1 bills'"""
    return ', '.join(f"{count} {name.replace('_', ' ')}" for name, count in census.blocking.items())


def session_is_reachable():
    """Cheap probe used before a bulk operation so an unreachable database fails the whole batch"""
    db.session.execute(db.select(func.count()).select_from(Proposal.__table__))
