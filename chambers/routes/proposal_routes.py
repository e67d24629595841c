from flask import jsonify, request
from flask_jwt_extended import jwt_required
from chambers.crud import proposal_crud
from chambers.schemas import (
    AuthenticatedClientDecision, BulkDeleteRequest, ClientDecision, ProposalCreate, ProposalUpdate, SubmitRequest,
)
from chambers.utils.request_context import flag, parse_body, request_context
import logging
from . import main

logger = logging.getLogger(__name__)


@main.route('/proposals', methods=['GET'])
@jwt_required()
def get_proposals():
    ctx = request_context()
    proposals = proposal_crud.get_all_proposals(
        ctx,
        status=request.args.get('status'),
        include_deleted=flag('include_deleted'),
        q=request.args.get('q'),
    )
    return jsonify(proposals), 200


@main.route('/proposals', methods=['POST'])
@jwt_required()
def add_proposal():
    ctx = request_context()
    proposal = proposal_crud.add_proposal(ctx, parse_body(ProposalCreate))
    return jsonify(proposal_crud.proposal_to_dict(proposal, detail=True)), 201


@main.route('/proposals/<string:id>', methods=['GET'])
@jwt_required()
def get_proposal(id):
    proposal = proposal_crud.get_proposal(request_context(), id)
    return jsonify(proposal_crud.proposal_to_dict(proposal, detail=True)), 200


@main.route('/proposals/<string:id>', methods=['PUT'])
@jwt_required()
def update_proposal(id):
    ctx = request_context()
    proposal = proposal_crud.update_proposal(ctx, id, parse_body(ProposalUpdate))
    return jsonify(proposal_crud.proposal_to_dict(proposal, detail=True)), 200


@main.route('/proposals/<string:id>/clone', methods=['POST'])
@jwt_required()
def clone_proposal(id):
    clone = proposal_crud.clone_proposal(request_context(), id)
    return jsonify(proposal_crud.proposal_to_dict(clone, detail=True)), 201


@main.route('/proposals/<string:id>/submit', methods=['POST'])
@jwt_required()
def submit_proposal(id):
    ctx = request_context()
    proposal = proposal_crud.submit_proposal(ctx, id, parse_body(SubmitRequest))
    return jsonify({
        'message': 'Proposal submitted successfully',
        'proposal': proposal_crud.proposal_to_dict(proposal, detail=True),
    }), 200


@main.route('/proposals/<string:id>/resubmit', methods=['POST'])
@jwt_required()
def resubmit_proposal(id):
    ctx = request_context()
    proposal = proposal_crud.resubmit_proposal(ctx, id, parse_body(SubmitRequest))
    return jsonify(proposal_crud.proposal_to_dict(proposal, detail=True)), 200


@main.route('/proposals/<string:id>/send-client-email', methods=['POST'])
@jwt_required()
def send_client_email(id):
    proposal = proposal_crud.send_client_email(request_context(), id)
    return jsonify({
        'message': 'Approval email sent to client',
        'client_approval_token_expiry': proposal.client_approval_token_expiry.isoformat(),
    }), 200


# Reached from the emailed link; the token is the only credential
@main.route('/proposals/<string:id>/review', methods=['GET'])
def review_proposal(id):
    proposal = proposal_crud.get_client_review(id, request.args.get('token'))
    return jsonify(proposal_crud.public_proposal_to_dict(proposal)), 200


@main.route('/proposals/<string:id>/client-approve', methods=['POST'])
def client_approve(id):
    proposal = proposal_crud.client_decision(id, parse_body(ClientDecision))
    return jsonify({
        'message': f"Proposal {proposal.client_approval_status.lower()} successfully",
        'client_approval_status': proposal.client_approval_status,
        'status': proposal.status,
    }), 200


@main.route('/proposals/<string:id>/client-decision', methods=['POST'])
@jwt_required()
def client_decision_as_user(id):
    ctx = request_context()
    proposal = proposal_crud.client_decision_as_user(ctx, id, parse_body(AuthenticatedClientDecision))
    return jsonify(proposal_crud.proposal_to_dict(proposal)), 200


@main.route('/proposals/<string:id>/approve-on-behalf', methods=['POST'])
@jwt_required()
def approve_on_behalf(id):
    ctx = request_context()
    proposal = proposal_crud.approve_on_behalf(ctx, id, parse_body(AuthenticatedClientDecision))
    return jsonify(proposal_crud.proposal_to_dict(proposal)), 200


@main.route('/proposals/<string:id>/request-deletion', methods=['POST'])
@jwt_required()
def request_proposal_deletion(id):
    proposal = proposal_crud.request_deletion(request_context(), id)
    return jsonify(proposal_crud.proposal_to_dict(proposal)), 200


@main.route('/proposals/<string:id>/approve-deletion', methods=['POST'])
@jwt_required()
def approve_proposal_deletion(id):
    proposal = proposal_crud.approve_deletion(request_context(), id)
    return jsonify(proposal_crud.proposal_to_dict(proposal)), 200


@main.route('/proposals/<string:id>/restore', methods=['POST'])
@jwt_required()
def restore_proposal(id):
    proposal = proposal_crud.restore_proposal(request_context(), id)
    return jsonify(proposal_crud.proposal_to_dict(proposal)), 200


@main.route('/proposals/<string:id>', methods=['DELETE'])
@jwt_required()
def permanent_delete_proposal(id):
    proposal_crud.permanent_delete(request_context(), id)
    return jsonify({'message': 'Proposal permanently deleted'}), 200


@main.route('/proposals/bulk-delete', methods=['POST'])
@jwt_required()
def bulk_delete_proposals():
    ctx = request_context()
    result = proposal_crud.bulk_delete(ctx, parse_body(BulkDeleteRequest))
    return jsonify(result), 200
