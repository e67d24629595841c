import io

import openpyxl

from chambers import db
from chambers.crud import client_crud
from chambers.models import Client, Lead
from chambers.schemas import ClientCreate, LeadCreate


def upload(client, headers, content, filename='clients.csv'):
    return client.post('/api/clients/import', data={'file': (io.BytesIO(content), filename)},
                       content_type='multipart/form-data', headers=headers('manager'))


def test_import_reports_bad_rows_by_line(client, headers, acme):
    content = (
        b"Name,Email,Company\n"
        b"Beta LLP,Ops@Beta.test,Beta\n"
        b",nobody@x.test,\n"
        b"Gamma,buyer@acme.test,\n"
        b"Delta,not-an-email,\n"
    )
    response = upload(client, headers, content)
    assert response.status_code == 200
    result = response.get_json()
    assert result['total_records'] == 4
    assert result['success_count'] == 1
    assert result['created'][0]['email'] == 'ops@beta.test'
    assert {row['row']: row['errors'] for row in result['errors']} == {
        3: ['Missing required field: name'],
        4: ['A client with this email already exists'],
        5: ['Invalid email format'],
    }


def test_import_rejects_unknown_formats(client, headers, users):
    assert upload(client, headers, b'name\nBeta', filename='clients.txt').status_code == 400
    assert upload(client, headers, b'email\nops@beta.test').status_code == 400


def test_import_template(client, headers, users):
    response = client.get('/api/clients/import/template', headers=headers('staff'))
    assert response.status_code == 200
    sheet = openpyxl.load_workbook(io.BytesIO(response.data)).active
    assert [cell.value for cell in sheet[1]] == client_crud.IMPORT_COLUMNS


def test_client_users_see_only_their_company(app, ctx, acme):
    client_crud.add_client(ctx['manager'], ClientCreate(name='Other Co', email='ops@other.test'))
    assert [c['name'] for c in client_crud.get_all_clients(ctx['client'])] == ['Acme Ltd']
    assert len(client_crud.get_all_clients(ctx['staff'])) == 2


def test_convert_lead(client, headers, ctx):
    lead = client_crud.add_lead(ctx['staff'], LeadCreate(name='Zeta', email='Legal@Zeta.test'))
    response = client.post(f'/api/leads/{lead.id}/convert', headers=headers('staff'))
    assert response.status_code == 201
    assert response.get_json()['email'] == 'legal@zeta.test'

    lead = Lead.query.one()
    assert lead.status == 'CONVERTED'
    assert db.session.get(Client, lead.converted_to_client_id).name == 'Zeta'
    assert client.post(f'/api/leads/{lead.id}/convert', headers=headers('staff')).status_code == 400
