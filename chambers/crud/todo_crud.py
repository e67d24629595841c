from chambers import db
from chambers.errors import Forbidden, NotFound, ValidationFailed
from chambers.models import Client, Project, Todo, TodoReassignment, User
from chambers.services.notification_service import NotificationRef, create_notification
from chambers.utils.date_utils import utc_now
from chambers.utils.logging_utils import log_action
from chambers.utils.permissions import can_reassign_todo
from chambers.utils.record_resolver import get_record, user_label
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
import logging

logger = logging.getLogger(__name__)


def todo_to_dict(todo, detail=False):
    data = {
        'id': str(todo.id),
        'title': todo.title,
        'description': todo.description,
        'status': todo.status,
        'priority': todo.priority,
        'due_date': todo.due_date.isoformat() if todo.due_date else None,
        'created_by': str(todo.created_by),
        'creator_name': user_label(todo.creator),
        'assigned_to': str(todo.assigned_to),
        'assignee_name': user_label(todo.assignee),
        'project_id': str(todo.project_id) if todo.project_id else None,
        'client_id': str(todo.client_id) if todo.client_id else None,
        'completed_at': todo.completed_at.isoformat() if todo.completed_at else None,
        'read': todo.read_at is not None,
        'created_at': todo.created_at.isoformat() if todo.created_at else None,
    }
    if detail:
        data['reassignments'] = [
            {
                'from_user_id': str(r.from_user_id) if r.from_user_id else None,
                'to_user_id': str(r.to_user_id),
                'reassigned_by': str(r.reassigned_by),
                'reason': r.reason,
                'created_at': r.created_at.isoformat() if r.created_at else None,
            }
            for r in sorted(todo.reassignments, key=lambda r: r.created_at)
        ]
    return data


def get_all_todos(ctx, status=None, scope=None):
    """scope: 'assigned', 'created' or None for both"""
    if ctx.is_client:
        raise Forbidden('Forbidden')
    try:
        query = Todo.query
        if scope == 'assigned':
            query = query.filter(Todo.assigned_to == ctx.user_id)
        elif scope == 'created':
            query = query.filter(Todo.created_by == ctx.user_id)
        elif not ctx.is_admin:
            query = query.filter(or_(Todo.assigned_to == ctx.user_id, Todo.created_by == ctx.user_id))
        if status:
            query = query.filter(Todo.status == status)
        todos = query.order_by(Todo.due_date.is_(None), Todo.due_date, Todo.created_at.desc()).all()
        return [todo_to_dict(t) for t in todos]
    except SQLAlchemyError as e:
        logger.error(f"Error listing todos: {e}")
        raise


def get_todo(ctx, todo_id):
    todo = get_record(Todo, todo_id, 'Todo')
    if ctx.is_admin or str(ctx.user_id) in (str(todo.created_by), str(todo.assigned_to)):
        return todo
    raise NotFound('Todo not found')


def _assignee(user_id):
    user = get_record(User, user_id, 'Assignee')
    if user.role == 'CLIENT' or not user.is_active:
        raise ValidationFailed('Todos can only be assigned to active staff members')
    return user


def _notify_assignee(ctx, todo, assignee):
    if str(assignee.id) == str(ctx.user_id):
        return
    create_notification(
        assignee.id,
        'TODO_ASSIGNED',
        'New todo assigned to you',
        todo.title,
        ref=NotificationRef.todo(todo.id),
        due_date=todo.due_date,
    )


def add_todo(ctx, payload):
    if ctx.is_client:
        raise Forbidden('Forbidden')
    assignee = _assignee(payload.assigned_to)
    if payload.project_id:
        get_record(Project, payload.project_id, 'Project')
    if payload.client_id:
        get_record(Client, payload.client_id, 'Client')
    try:
        todo = Todo(
            title=payload.title,
            description=payload.description,
            status='OPEN',
            priority=payload.priority,
            due_date=payload.due_date,
            created_by=ctx.user_id,
            assigned_to=assignee.id,
            project_id=payload.project_id,
            client_id=payload.client_id,
        )
        db.session.add(todo)
        db.session.flush()
        _notify_assignee(ctx, todo, assignee)
        log_action(ctx, 'CREATE', 'todos', todo.id, None, payload.model_dump(), commit=False)
        db.session.commit()
        return todo
    except SQLAlchemyError as e:
        logger.error(f"Database error adding todo: {e}")
        db.session.rollback()
        raise


def update_todo(ctx, todo_id, payload):
    todo = get_todo(ctx, todo_id)
    changes = payload.model_dump(exclude_unset=True)
    if str(ctx.user_id) != str(todo.created_by) and not ctx.is_admin:
        # The assignee only moves the todo along
        if set(changes) - {'status'}:
            raise Forbidden('Only the creator can edit this todo')
    try:
        old_values = {name: getattr(todo, name) for name in changes}
        for name, value in changes.items():
            setattr(todo, name, value)
        if 'status' in changes:
            todo.completed_at = utc_now() if changes['status'] == 'COMPLETED' else None
        log_action(ctx, 'UPDATE', 'todos', todo.id, old_values, changes, commit=False)
        db.session.commit()
        return todo
    except SQLAlchemyError as e:
        logger.error(f"Database error updating todo {todo_id}: {e}")
        db.session.rollback()
        raise


def complete_todo(ctx, todo_id):
    todo = get_todo(ctx, todo_id)
    if todo.status == 'COMPLETED':
        return todo
    try:
        old_status = todo.status
        todo.status = 'COMPLETED'
        todo.completed_at = utc_now()
        log_action(ctx, 'COMPLETE', 'todos', todo.id, {'status': old_status}, {'status': 'COMPLETED'}, commit=False)
        db.session.commit()
        return todo
    except SQLAlchemyError as e:
        logger.error(f"Database error completing todo {todo_id}: {e}")
        db.session.rollback()
        raise


def mark_todo_read(ctx, todo_id):
    todo = get_todo(ctx, todo_id)
    if str(todo.assigned_to) == str(ctx.user_id) and todo.read_at is None:
        todo.read_at = utc_now()
        db.session.commit()
    return todo


def reassign_todo(ctx, todo_id, payload):
    todo = get_todo(ctx, todo_id)
    if not can_reassign_todo(todo.creator, todo.assignee, ctx):
        raise Forbidden('You do not have permission to reassign this todo')
    new_assignee = _assignee(payload.assigned_to)
    if str(new_assignee.id) == str(todo.assigned_to):
        raise ValidationFailed('Todo is already assigned to this user')
    try:
        previous = todo.assigned_to
        db.session.add(TodoReassignment(
            todo_id=todo.id,
            from_user_id=previous,
            to_user_id=new_assignee.id,
            reassigned_by=ctx.user_id,
            reason=payload.reason,
        ))
        todo.assigned_to = new_assignee.id
        todo.assignee = new_assignee
        todo.read_at = None
        _notify_assignee(ctx, todo, new_assignee)
        log_action(ctx, 'REASSIGN', 'todos', todo.id, {'assigned_to': previous},
                   {'assigned_to': new_assignee.id, 'reason': payload.reason}, commit=False)
        db.session.commit()
        return todo
    except SQLAlchemyError as e:
        logger.error(f"Database error reassigning todo {todo_id}: {e}")
        db.session.rollback()
        raise
