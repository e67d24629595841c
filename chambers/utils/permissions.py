"""
Authorization predicates.

Every function takes the acting `RequestContext` (or a user-like object with
`id`, `role` and capability attributes) and returns a bool. Capability flags
override the role default when they are explicitly set.
"""

ROLE_RANK = {
    'ADMIN': 4,
    'MANAGER': 3,
    'STAFF': 2,
    'CLIENT': 1,
}

STAFF_ROLES = ('ADMIN', 'MANAGER', 'STAFF')


def _override(actor, flag):
    if hasattr(actor, 'capability'):
        return actor.capability(flag)
    return getattr(actor, flag, None)

def _actor_id(actor):
    return getattr(actor, 'user_id', None) or getattr(actor, 'id', None)

def _with_override(actor, flag, default_roles):
    value = _override(actor, flag)
    if value is not None:
        return bool(value)
    return actor.role in default_roles


def can_approve_proposals(actor):
    return _with_override(actor, 'can_approve_proposals', ('ADMIN', 'MANAGER'))

def can_approve_invoices(actor):
    return _with_override(actor, 'can_approve_invoices', ('ADMIN', 'MANAGER'))

def can_edit_all_proposals(actor):
    return _with_override(actor, 'can_edit_all_proposals', ('ADMIN', 'MANAGER'))

def can_edit_all_invoices(actor):
    return _with_override(actor, 'can_edit_all_invoices', ('ADMIN', 'MANAGER'))

def can_view_all_clients(actor):
    return _with_override(actor, 'can_view_all_clients', STAFF_ROLES)

def can_create_users(actor):
    # Only a positive override widens this
    if _override(actor, 'can_create_users') is True:
        return True
    return actor.role == 'ADMIN'

def can_manage_accounts(actor):
    return actor.role in ('ADMIN', 'MANAGER')

def can_view_account(actor, user_id):
    return str(_actor_id(actor)) == str(user_id) or can_manage_accounts(actor)


def can_approve_item(creator_role, approver_role):
    """
    Role hierarchy for internal approval of a proposal or invoice:
    STAFF work goes to a MANAGER or ADMIN, MANAGER work to an ADMIN,
    and an ADMIN may approve anything.
    """
    if approver_role == 'ADMIN':
        return True
    if creator_role == 'STAFF' and approver_role == 'MANAGER':
        return True
    return False

def can_submit(actor, created_by):
    if actor.role == 'CLIENT':
        return False
    return str(_actor_id(actor)) == str(created_by) or actor.role == 'ADMIN'

def _can_edit(actor, record, edit_all):
    if actor.role == 'ADMIN':
        return True
    if edit_all(actor):
        return True
    if str(record.created_by) == str(_actor_id(actor)):
        return record.status in ('DRAFT', 'SUBMITTED')
    return False

def can_edit_proposal(actor, proposal):
    return _can_edit(actor, proposal, can_edit_all_proposals)

def can_edit_invoice(actor, bill):
    return _can_edit(actor, bill, can_edit_all_invoices)


def role_rank(role):
    return ROLE_RANK.get(role, 0)

def has_higher_rank(user1, user2):
    return role_rank(user1.role) > role_rank(user2.role)

def can_reassign_todo(creator, assignee, actor):
    """
    Admins and the creator may always reassign; the assignee only when the
    creator outranks them.
    """
    if actor.role == 'ADMIN':
        return True
    actor_id = str(_actor_id(actor))
    if str(creator.id) == actor_id:
        return True
    if str(assignee.id) == actor_id:
        return has_higher_rank(creator, assignee)
    return False
