from flask import jsonify
from flask_jwt_extended import jwt_required
from chambers.crud import approval_crud
from chambers.schemas import ApprovalDecision
from chambers.utils.request_context import parse_body, request_context
from . import main


@main.route('/approvals', methods=['POST'])
@jwt_required()
def record_approval():
    approval = approval_crud.record_decision(request_context(), parse_body(ApprovalDecision))
    return jsonify(approval_crud.approval_to_dict(approval)), 200


@main.route('/approvals/pending', methods=['GET'])
@jwt_required()
def pending_approvals():
    return jsonify(approval_crud.list_pending_approvals(request_context())), 200
