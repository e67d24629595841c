from flask import jsonify, request
from flask_jwt_extended import jwt_required
from chambers.crud import bill_crud, project_crud
from chambers.schemas import (
    GenerateInvoiceRequest, ProjectChargeCreate, ProjectCreate, ProjectManagersUpdate, TimesheetEntryCreate,
)
from chambers.utils.request_context import flag, parse_body, request_context, uuid_arg
from . import main


@main.route('/projects', methods=['GET'])
@jwt_required()
def get_projects():
    ctx = request_context()
    projects = project_crud.get_all_projects(
        ctx, client_id=uuid_arg('client_id'), status=request.args.get('status'))
    return jsonify(projects), 200


@main.route('/projects', methods=['POST'])
@jwt_required()
def add_project():
    project = project_crud.add_project(request_context(), parse_body(ProjectCreate))
    return jsonify(project_crud.project_to_dict(project, detail=True)), 201


@main.route('/projects/<string:id>', methods=['GET'])
@jwt_required()
def get_project(id):
    project = project_crud.get_project(request_context(), id)
    return jsonify(project_crud.project_to_dict(project, detail=True)), 200


@main.route('/projects/<string:id>/managers', methods=['PUT'])
@jwt_required()
def set_project_managers(id):
    ctx = request_context()
    payload = parse_body(ProjectManagersUpdate)
    project = project_crud.set_project_managers(ctx, id, payload.manager_ids)
    return jsonify(project_crud.project_to_dict(project, detail=True)), 200


@main.route('/projects/<string:id>/timesheets', methods=['GET'])
@jwt_required()
def get_timesheet_entries(id):
    entries = project_crud.get_timesheet_entries(request_context(), id, unbilled_only=flag('unbilled'))
    return jsonify(entries), 200


@main.route('/projects/<string:id>/timesheets', methods=['POST'])
@jwt_required()
def add_timesheet_entry(id):
    entry = project_crud.add_timesheet_entry(request_context(), id, parse_body(TimesheetEntryCreate))
    return jsonify(project_crud.timesheet_entry_to_dict(entry)), 201


@main.route('/projects/<string:id>/charges', methods=['GET'])
@jwt_required()
def get_charges(id):
    return jsonify(project_crud.get_charges(request_context(), id, unbilled_only=flag('unbilled'))), 200


@main.route('/projects/<string:id>/charges', methods=['POST'])
@jwt_required()
def add_charge(id):
    charge = project_crud.add_charge(request_context(), id, parse_body(ProjectChargeCreate))
    return jsonify(project_crud.charge_to_dict(charge)), 201


@main.route('/projects/<string:id>/unbilled', methods=['GET'])
@jwt_required()
def get_unbilled(id):
    return jsonify(project_crud.get_unbilled(request_context(), id)), 200


@main.route('/projects/<string:id>/generate-invoice', methods=['POST'])
@jwt_required()
def generate_invoice(id):
    bill = project_crud.generate_invoice(request_context(), id, parse_body(GenerateInvoiceRequest))
    return jsonify(bill_crud.bill_to_dict(bill, detail=True)), 201
