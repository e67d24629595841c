from flask import jsonify, request, send_file
from flask_jwt_extended import jwt_required
from chambers.crud import client_crud
from chambers.schemas import ClientCreate, ClientFinderIn, ClientUpdate, LeadCreate
from chambers.utils.request_context import flag, request_context, parse_body
from pydantic import TypeAdapter
from openpyxl.comments import Comment
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter
import openpyxl
import pandas as pd
import io
import logging
import os
from . import main

logger = logging.getLogger(__name__)

ALLOWED_IMPORT_EXTENSIONS = ('.csv', '.xls', '.xlsx')


@main.route('/clients', methods=['GET'])
@jwt_required()
def get_clients():
    ctx = request_context()
    clients = client_crud.get_all_clients(ctx, q=request.args.get('q'), include_deleted=flag('include_deleted'))
    return jsonify(clients), 200


@main.route('/clients', methods=['POST'])
@jwt_required()
def add_client():
    client = client_crud.add_client(request_context(), parse_body(ClientCreate))
    return jsonify(client_crud.client_to_dict(client)), 201


@main.route('/clients/<string:id>', methods=['GET'])
@jwt_required()
def get_client(id):
    client = client_crud.get_client(request_context(), id)
    return jsonify(client_crud.client_to_dict(client)), 200


@main.route('/clients/<string:id>', methods=['PUT'])
@jwt_required()
def update_client(id):
    client = client_crud.update_client(request_context(), id, parse_body(ClientUpdate))
    return jsonify(client_crud.client_to_dict(client)), 200


@main.route('/clients/<string:id>/finders', methods=['PUT'])
@jwt_required()
def set_client_finders(id):
    ctx = request_context()
    finders = TypeAdapter(list[ClientFinderIn]).validate_python(request.get_json(silent=True) or [])
    client = client_crud.set_client_finders(ctx, id, finders)
    return jsonify(client_crud.client_to_dict(client)), 200


@main.route('/clients/<string:id>', methods=['DELETE'])
@jwt_required()
def delete_client(id):
    client_crud.delete_client(request_context(), id)
    return jsonify({'message': 'Client deleted successfully'}), 200


@main.route('/clients/import', methods=['POST'])
@jwt_required()
def import_clients():
    ctx = request_context()
    if 'file' not in request.files:
        return jsonify({'error': 'No file provided'}), 400

    file = request.files['file']
    if file.filename == '':
        return jsonify({'error': 'No file selected'}), 400

    file_ext = os.path.splitext(file.filename)[1].lower()
    if file_ext not in ALLOWED_IMPORT_EXTENSIONS:
        return jsonify({'error': 'Invalid file format. Please upload a CSV or Excel file'}), 400

    try:
        df = pd.read_csv(file.stream) if file_ext == '.csv' else pd.read_excel(file.stream)
    except (ValueError, pd.errors.ParserError) as e:
        logger.error(f"Could not read client import file {file.filename}: {e}")
        return jsonify({'error': 'Could not read the uploaded file', 'message': str(e)}), 400

    results = client_crud.import_clients(ctx, df)
    return jsonify(results), 200


IMPORT_TEMPLATE_COMMENTS = {
    'name': 'Client or company name (required)',
    'email': 'Valid email address; must be unique',
    'company': 'Registered company name',
    'contact_info': 'Phone number or postal address',
    'tax_number': 'VAT or tax registration number',
}


@main.route('/clients/import/template', methods=['GET'])
@jwt_required()
def get_client_import_template():
    """Excel template for the bulk client import"""
    request_context()
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "Client Import Template"

    header_font = Font(bold=True, color="FFFFFF")
    header_fill = PatternFill(start_color="366092", end_color="366092", fill_type="solid")
    for col_idx, column in enumerate(client_crud.IMPORT_COLUMNS, 1):
        ws.column_dimensions[get_column_letter(col_idx)].width = 24
        cell = ws.cell(row=1, column=col_idx, value=column)
        cell.font = header_font
        cell.fill = header_fill
        cell.alignment = Alignment(horizontal='center', vertical='center')
        cell.comment = Comment(IMPORT_TEMPLATE_COMMENTS[column], "System")

    buffer = io.BytesIO()
    wb.save(buffer)
    buffer.seek(0)
    return send_file(
        buffer,
        as_attachment=True,
        download_name='client_import_template.xlsx',
        mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'
    )


@main.route('/leads', methods=['GET'])
@jwt_required()
def get_leads():
    return jsonify(client_crud.get_all_leads(request_context(), status=request.args.get('status'))), 200


@main.route('/leads', methods=['POST'])
@jwt_required()
def add_lead():
    lead = client_crud.add_lead(request_context(), parse_body(LeadCreate))
    return jsonify(client_crud.lead_to_dict(lead)), 201


@main.route('/leads/<string:id>/convert', methods=['POST'])
@jwt_required()
def convert_lead(id):
    client = client_crud.convert_lead(request_context(), id)
    return jsonify(client_crud.client_to_dict(client)), 201
