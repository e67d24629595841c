import pytest

from chambers.crud import todo_crud
from chambers.errors import Forbidden, NotFound
from chambers.models import Notification, TodoReassignment
from chambers.schemas import TodoCreate, TodoUpdate


def test_create_notifies_the_assignee(client, headers, users):
    response = client.post('/api/todos', json={
        'title': 'File the appeal', 'assigned_to': str(users['staff'].id), 'priority': 'HIGH',
    }, headers=headers('manager'))
    assert response.status_code == 201
    todo = response.get_json()
    assert todo['status'] == 'OPEN'
    assert todo['assignee_name'] == 'Sam Staff'
    assert todo['reassignments'] == []

    notice = Notification.query.filter_by(user_id=users['staff'].id).one()
    assert notice.type == 'TODO_ASSIGNED'
    assert notice.message == 'File the appeal'

    mine = client.get('/api/todos?scope=assigned', headers=headers('staff')).get_json()
    assert [t['id'] for t in mine] == [todo['id']]


def test_clients_cannot_receive_todos(client, headers, users):
    response = client.post('/api/todos', json={'title': 'Sign', 'assigned_to': str(users['client'].id)},
                           headers=headers('manager'))
    assert response.status_code == 400


def test_outsiders_do_not_see_the_todo(app, ctx, users):
    todo = todo_crud.add_todo(ctx['manager'], TodoCreate(title='Review', assigned_to=users['staff'].id))
    with pytest.raises(NotFound):
        todo_crud.get_todo(ctx['staff2'], todo.id)
    assert todo_crud.get_todo(ctx['admin'], todo.id) is todo


def test_assignee_may_only_move_status(app, ctx, users):
    todo = todo_crud.add_todo(ctx['manager'], TodoCreate(title='Review', assigned_to=users['staff'].id))
    with pytest.raises(Forbidden):
        todo_crud.update_todo(ctx['staff'], todo.id, TodoUpdate(title='Renamed'))
    todo_crud.update_todo(ctx['staff'], todo.id, TodoUpdate(status='IN_PROGRESS'))
    assert todo.status == 'IN_PROGRESS'


def test_complete_and_read(client, headers, ctx, users):
    todo = todo_crud.add_todo(ctx['manager'], TodoCreate(title='Review', assigned_to=users['staff'].id))
    response = client.post(f'/api/todos/{todo.id}/read', headers=headers('staff'))
    assert response.get_json()['read'] is True
    response = client.post(f'/api/todos/{todo.id}/complete', headers=headers('staff'))
    body = response.get_json()
    assert body['status'] == 'COMPLETED'
    assert body['completed_at'] is not None


class TestReassign:

    def test_assignee_passes_on_work_from_a_manager(self, client, headers, ctx, users):
        todo = todo_crud.add_todo(ctx['manager'], TodoCreate(title='Draft', assigned_to=users['staff'].id))
        todo_crud.mark_todo_read(ctx['staff'], todo.id)

        response = client.post(f'/api/todos/{todo.id}/reassign', json={
            'assigned_to': str(users['staff2'].id), 'reason': 'On leave',
        }, headers=headers('staff'))
        assert response.status_code == 200
        body = response.get_json()
        assert body['assigned_to'] == str(users['staff2'].id)
        assert body['read'] is False
        assert body['reassignments'][0]['from_user_id'] == str(users['staff'].id)
        assert body['reassignments'][0]['reason'] == 'On leave'
        assert Notification.query.filter_by(user_id=users['staff2'].id, type='TODO_ASSIGNED').count() == 1

    def test_peer_created_work_stays_put(self, client, headers, ctx, users):
        todo = todo_crud.add_todo(ctx['staff'], TodoCreate(title='Draft', assigned_to=users['staff2'].id))
        response = client.post(f'/api/todos/{todo.id}/reassign', json={'assigned_to': str(users['manager'].id)},
                               headers=headers('staff2'))
        assert response.status_code == 403
        assert TodoReassignment.query.count() == 0

    def test_same_assignee_is_rejected(self, client, headers, ctx, users):
        todo = todo_crud.add_todo(ctx['manager'], TodoCreate(title='Draft', assigned_to=users['staff'].id))
        response = client.post(f'/api/todos/{todo.id}/reassign', json={'assigned_to': str(users['staff'].id)},
                               headers=headers('manager'))
        assert response.status_code == 400
