import pytest

from chambers import db
from chambers.auth import issue_token
from chambers.crud import todo_crud, user_crud
from chambers.errors import BusinessRuleViolation, Forbidden
from chambers.models import ClientFinder, Lead, User, UserDeletionRequest
from chambers.schemas import TodoCreate
from chambers.services.reference_census import Census
from chambers.utils.request_context import context_for_user


def test_only_admins_request(app, ctx, users):
    with pytest.raises(Forbidden):
        user_crud.request_user_deletion(ctx['manager'], users['staff2'].id)


def test_cannot_request_own_deletion(app, ctx, users):
    with pytest.raises(BusinessRuleViolation):
        user_crud.request_user_deletion(ctx['admin'], users['admin'].id)


def test_one_pending_request_per_user(app, ctx, users):
    user_crud.request_user_deletion(ctx['admin'], users['staff2'].id)
    with pytest.raises(BusinessRuleViolation, match='already pending'):
        user_crud.request_user_deletion(ctx['admin2'], users['staff2'].id)


def test_requester_cannot_approve(app, ctx, users):
    request = user_crud.request_user_deletion(ctx['admin'], users['staff2'].id)
    with pytest.raises(BusinessRuleViolation, match='your own deletion request'):
        user_crud.approve_user_deletion(ctx['admin'], request.id)


def test_two_distinct_approvals_delete_an_unreferenced_user(app, ctx, users, acme, third_admin):
    target_id = users['staff2'].id
    request = user_crud.request_user_deletion(ctx['admin'], target_id)

    user_crud.approve_user_deletion(ctx['admin2'], request.id)
    assert request.status == 'PENDING'
    assert db.session.get(User, target_id) is not None
    with pytest.raises(BusinessRuleViolation, match='already approved'):
        user_crud.approve_user_deletion(ctx['admin2'], request.id)

    user_crud.approve_user_deletion(context_for_user(third_admin), request.id)
    request = db.session.get(UserDeletionRequest, request.id)
    assert request.status == 'COMPLETED'
    assert request.completed_at is not None
    assert db.session.get(User, target_id) is None
    # finder link on the client is an optional reference and goes with the user
    assert ClientFinder.query.filter_by(user_id=target_id).count() == 0


def test_referenced_user_is_kept_and_request_rejected(app, ctx, users, third_admin):
    target = users['staff2']
    todo_crud.add_todo(ctx['manager'], TodoCreate(title='Prepare bundle', assigned_to=target.id))
    request = user_crud.request_user_deletion(ctx['admin'], target.id)
    user_crud.approve_user_deletion(ctx['admin2'], request.id)

    third = context_for_user(third_admin)
    with pytest.raises(BusinessRuleViolation) as raised:
        user_crud.approve_user_deletion(third, request.id)
    assert raised.value.details == {'todos': 1}

    request = db.session.get(UserDeletionRequest, request.id)
    assert request.status == 'REJECTED'
    assert request.report['counts']['todos'] == 1
    assert db.session.get(User, target.id) is not None


@pytest.fixture
def lead_by_staff2(users):
    lead = Lead(name='Initech', email='ops@initech.test', created_by=users['staff2'].id)
    db.session.add(lead)
    db.session.commit()
    return lead


def test_authored_records_also_block_deletion(app, ctx, users, third_admin, lead_by_staff2):
    target_id = users['staff2'].id
    request = user_crud.request_user_deletion(ctx['admin'], target_id)
    user_crud.approve_user_deletion(ctx['admin2'], request.id)

    with pytest.raises(BusinessRuleViolation) as raised:
        user_crud.approve_user_deletion(context_for_user(third_admin), request.id)
    assert raised.value.details == {'leads': 1}
    assert db.session.get(UserDeletionRequest, request.id).status == 'REJECTED'
    assert db.session.get(User, target_id) is not None


def test_failed_delete_rejects_the_request(app, ctx, users, third_admin, lead_by_staff2, monkeypatch):
    # a reference the census does not know about is caught by the foreign key
    monkeypatch.setattr(user_crud, 'user_census', lambda user_id: Census(leads=0))
    target_id = users['staff2'].id
    request = user_crud.request_user_deletion(ctx['admin'], target_id)
    user_crud.approve_user_deletion(ctx['admin2'], request.id)

    with pytest.raises(BusinessRuleViolation, match='Failed to delete user') as raised:
        user_crud.approve_user_deletion(context_for_user(third_admin), request.id)
    assert 'FOREIGN KEY' in raised.value.details['error']

    request = db.session.get(UserDeletionRequest, request.id)
    assert request.status == 'REJECTED'
    assert len(request.approved_by) == 2
    assert db.session.get(User, target_id) is not None


def test_http_flow(client, headers, users, third_admin):
    target_id = str(users['staff2'].id)
    response = client.post(f'/api/users/{target_id}/deletion-requests', headers=headers('admin'))
    assert response.status_code == 201
    request_id = response.get_json()['id']
    assert response.get_json()['approvals_needed'] == 2

    response = client.post(f'/api/user-deletion-requests/{request_id}/approve', headers=headers('admin2'))
    assert response.status_code == 200
    assert response.get_json()['status'] == 'PENDING'
    assert response.get_json()['approvals_needed'] == 1

    third = {'Authorization': f"Bearer {issue_token(third_admin)}"}
    response = client.post(f'/api/user-deletion-requests/{request_id}/approve', headers=third)
    assert response.status_code == 200
    assert response.get_json()['status'] == 'COMPLETED'

    listed = client.get('/api/user-deletion-requests', headers=headers('admin')).get_json()
    assert [r['status'] for r in listed] == ['COMPLETED']
    assert client.get('/api/user-deletion-requests', headers=headers('manager')).status_code == 403
