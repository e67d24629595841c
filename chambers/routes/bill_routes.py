from flask import jsonify, request
from flask_jwt_extended import jwt_required
from chambers.crud import bill_crud
from chambers.schemas import BillCreate, BillUpdate, BulkDeleteRequest, GenerateInvoiceRequest, SubmitRequest
from chambers.utils.request_context import flag, parse_body, request_context, uuid_arg
import logging
from . import main

logger = logging.getLogger(__name__)


@main.route('/bills', methods=['GET'])
@jwt_required()
def get_bills():
    ctx = request_context()
    bills = bill_crud.get_all_bills(
        ctx,
        status=request.args.get('status'),
        client_id=uuid_arg('client_id'),
        project_id=uuid_arg('project_id'),
        include_deleted=flag('include_deleted'),
        q=request.args.get('q'),
    )
    return jsonify(bills), 200


@main.route('/bills', methods=['POST'])
@jwt_required()
def add_bill():
    bill = bill_crud.add_bill(request_context(), parse_body(BillCreate))
    return jsonify(bill_crud.bill_to_dict(bill, detail=True)), 201


@main.route('/bills/<string:id>', methods=['GET'])
@jwt_required()
def get_bill(id):
    bill = bill_crud.get_bill(request_context(), id)
    return jsonify(bill_crud.bill_to_dict(bill, detail=True)), 200


@main.route('/bills/<string:id>', methods=['PUT'])
@jwt_required()
def update_bill(id):
    bill = bill_crud.update_bill(request_context(), id, parse_body(BillUpdate))
    return jsonify(bill_crud.bill_to_dict(bill, detail=True)), 200


@main.route('/bills/<string:id>/submit', methods=['POST'])
@jwt_required()
def submit_bill(id):
    bill = bill_crud.submit_bill(request_context(), id, parse_body(SubmitRequest))
    return jsonify({'message': 'Invoice submitted successfully', 'bill': bill_crud.bill_to_dict(bill, detail=True)}), 200


@main.route('/bills/<string:id>/resubmit', methods=['POST'])
@jwt_required()
def resubmit_bill(id):
    bill = bill_crud.resubmit_bill(request_context(), id, parse_body(SubmitRequest))
    return jsonify(bill_crud.bill_to_dict(bill, detail=True)), 200


@main.route('/bills/<string:id>/mark-paid', methods=['POST'])
@jwt_required()
def mark_bill_paid(id):
    bill = bill_crud.mark_paid(request_context(), id)
    return jsonify(bill_crud.bill_to_dict(bill)), 200


@main.route('/bills/<string:id>/cancel', methods=['POST'])
@jwt_required()
def cancel_bill(id):
    bill = bill_crud.cancel_bill(request_context(), id)
    return jsonify(bill_crud.bill_to_dict(bill)), 200


@main.route('/bills/<string:id>/write-off', methods=['POST'])
@jwt_required()
def write_off_bill(id):
    bill = bill_crud.write_off_bill(request_context(), id)
    return jsonify(bill_crud.bill_to_dict(bill)), 200


@main.route('/bills/<string:id>/send-reminder', methods=['POST'])
@jwt_required()
def send_bill_reminder(id):
    bill = bill_crud.send_reminder(request_context(), id)
    return jsonify({'message': f"Reminder sent for invoice {bill.invoice_number}"}), 200


@main.route('/payment-terms/<string:term_id>/installments/<int:number>/invoice', methods=['POST'])
@jwt_required()
def invoice_installment(term_id, number):
    ctx = request_context()
    bill = bill_crud.invoice_installment(ctx, term_id, number, parse_body(GenerateInvoiceRequest))
    return jsonify(bill_crud.bill_to_dict(bill, detail=True)), 201


@main.route('/proposals/<string:id>/generate-upfront-invoice', methods=['POST'])
@jwt_required()
def invoice_upfront(id):
    bill = bill_crud.invoice_upfront(request_context(), id)
    return jsonify(bill_crud.bill_to_dict(bill, detail=True)), 201


@main.route('/bills/<string:id>', methods=['DELETE'])
@jwt_required()
def delete_bill(id):
    bill_crud.delete_bill(request_context(), id)
    return jsonify({'message': 'Invoice deleted successfully'}), 200


@main.route('/bills/<string:id>/restore', methods=['POST'])
@jwt_required()
def restore_bill(id):
    bill = bill_crud.restore_bill(request_context(), id)
    return jsonify(bill_crud.bill_to_dict(bill)), 200


@main.route('/bills/<string:id>/permanent', methods=['DELETE'])
@jwt_required()
def permanent_delete_bill(id):
    bill_crud.permanent_delete_bill(request_context(), id)
    return jsonify({'message': 'Invoice permanently deleted'}), 200


@main.route('/bills/bulk-delete', methods=['POST'])
@jwt_required()
def bulk_delete_bills():
    result = bill_crud.bulk_delete(request_context(), parse_body(BulkDeleteRequest))
    return jsonify(result), 200
