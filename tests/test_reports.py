from datetime import datetime, timedelta

from chambers import db
from chambers.crud import bill_crud, project_crud, proposal_crud, todo_crud
from chambers.schemas import BillCreate, ProposalCreate, SubmitRequest, TimesheetEntryCreate, TodoCreate
from chambers.utils.date_utils import utc_now


def test_financial_summary(client, headers, ctx, acme, project):
    project_crud.add_timesheet_entry(ctx['staff'], project.id, TimesheetEntryCreate(
        date=datetime(2024, 3, 4), hours=2, rate=100))
    proposal = proposal_crud.add_proposal(ctx['staff'], ProposalCreate(title='Retainer', client_id=acme.id,
                                                                      amount='1000'))
    proposal.status = 'APPROVED'
    db.session.commit()
    bill = bill_crud.add_bill(ctx['manager'], BillCreate(client_id=acme.id, amount='250',
                                                         due_date=utc_now() - timedelta(days=10)))
    bill_crud.submit_bill(ctx['manager'], bill.id, SubmitRequest())

    response = client.get('/api/reports/financial-summary', headers=headers('manager'))
    assert response.status_code == 200
    summary = response.get_json()
    assert summary['unbilled_total'] == 200.0
    assert summary['unbilled_by_project'][0]['project_id'] == str(project.id)
    assert summary['closed_proposals_not_charged'] == 1000.0
    assert summary['outstanding_count'] == 1
    assert summary['outstanding_total'] == 250.0
    assert summary['outstanding_invoices'][0]['days_overdue'] == 10

    assert client.get('/api/reports/financial-summary', headers=headers('staff')).status_code == 403


def test_audit_log_listing(client, headers, ctx, users):
    todo_crud.add_todo(ctx['manager'], TodoCreate(title='Review', assigned_to=users['staff'].id))

    response = client.get('/api/logs?filter_table_name=todos', headers=headers('admin'))
    assert response.status_code == 200
    body = response.get_json()
    assert body['total'] == 1
    entry = body['items'][0]
    assert entry['action'] == 'CREATE'
    assert entry['user_name'] == 'Mia Manager'
    assert entry['new_values']['title'] == 'Review'

    assert client.get('/api/logs?q=Mia', headers=headers('admin')).get_json()['total'] == 1
    assert client.get('/api/logs', headers=headers('manager')).status_code == 403


def test_notifications_read_all(client, headers, ctx, users):
    for title in ('One', 'Two'):
        todo_crud.add_todo(ctx['manager'], TodoCreate(title=title, assigned_to=users['staff'].id))

    body = client.get('/api/notifications', headers=headers('staff')).get_json()
    assert body['unread_count'] == 2
    first = body['notifications'][0]['id']
    assert client.post(f'/api/notifications/{first}/read', headers=headers('staff')).get_json()['read'] is True
    assert client.post(f'/api/notifications/{first}/read', headers=headers('manager')).status_code == 404

    response = client.post('/api/notifications/read-all', headers=headers('staff'))
    assert response.get_json()['updated'] == 1
    assert client.get('/api/notifications?unread=1', headers=headers('staff')).get_json()['notifications'] == []
