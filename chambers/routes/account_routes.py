from flask import jsonify, request
from flask_jwt_extended import jwt_required
from chambers.crud import account_crud
from chambers.schemas import (
    AdvanceCreate, CompensationCalculate, CompensationCreate, FinderFeePayment, FringeBenefitCreate,
)
from chambers.utils.request_context import parse_body, request_context, uuid_arg
from . import main


@main.route('/users/<string:user_id>/transactions', methods=['GET'])
@jwt_required()
def get_transactions(user_id):
    ctx = request_context()
    limit = request.args.get('limit', 100, type=int)
    offset = request.args.get('offset', 0, type=int)
    return jsonify(account_crud.get_transactions(ctx, user_id, limit=limit, offset=offset)), 200


@main.route('/users/<string:user_id>/balance', methods=['GET'])
@jwt_required()
def get_balance(user_id):
    return jsonify(account_crud.get_balance(request_context(), user_id)), 200


@main.route('/users/<string:user_id>/advances', methods=['GET'])
@jwt_required()
def get_advances(user_id):
    return jsonify(account_crud.get_advances(request_context(), user_id)), 200


@main.route('/users/<string:user_id>/advances', methods=['POST'])
@jwt_required()
def add_advance(user_id):
    advance = account_crud.add_advance(request_context(), user_id, parse_body(AdvanceCreate))
    return jsonify(account_crud.advance_to_dict(advance)), 201


@main.route('/users/<string:user_id>/advances/<string:advance_id>/process', methods=['POST'])
@jwt_required()
def process_advance(user_id, advance_id):
    outcome, value = account_crud.process_advance_now(request_context(), user_id, advance_id)
    if outcome == 'processed':
        return jsonify({'message': 'Advance installment posted',
                        'transaction': account_crud.transaction_to_dict(value)}), 200
    if outcome == 'not_due':
        return jsonify({'message': 'Next installment is not due yet',
                        'next_payment_date': value.isoformat() if value else None}), 200
    return jsonify({'message': 'Advance has ended and was deactivated'}), 200


@main.route('/users/<string:user_id>/fringe-benefits', methods=['GET'])
@jwt_required()
def get_fringe_benefits(user_id):
    return jsonify(account_crud.get_fringe_benefits(request_context(), user_id)), 200


@main.route('/users/<string:user_id>/fringe-benefits', methods=['POST'])
@jwt_required()
def add_fringe_benefit(user_id):
    benefit = account_crud.add_fringe_benefit(request_context(), user_id, parse_body(FringeBenefitCreate))
    return jsonify(account_crud.fringe_benefit_to_dict(benefit)), 201


@main.route('/users/<string:user_id>/compensation', methods=['GET'])
@jwt_required()
def get_compensations(user_id):
    return jsonify(account_crud.get_compensations(request_context(), user_id)), 200


@main.route('/users/<string:user_id>/compensation', methods=['POST'])
@jwt_required()
def add_compensation(user_id):
    compensation = account_crud.add_compensation(request_context(), user_id, parse_body(CompensationCreate))
    return jsonify(account_crud.compensation_to_dict(compensation)), 201


@main.route('/users/<string:user_id>/compensation/entries', methods=['GET'])
@jwt_required()
def get_compensation_entries(user_id):
    return jsonify(account_crud.get_compensation_entries(request_context(), user_id)), 200


@main.route('/users/<string:user_id>/compensation/calculate', methods=['POST'])
@jwt_required()
def calculate_compensation(user_id):
    entry = account_crud.calculate_compensation(request_context(), user_id, parse_body(CompensationCalculate))
    return jsonify(account_crud.compensation_entry_to_dict(entry)), 201


@main.route('/finder-fees', methods=['GET'])
@jwt_required()
def get_finder_fees():
    ctx = request_context()
    fees = account_crud.get_finder_fees(
        ctx, finder_id=uuid_arg('finder_id'), status=request.args.get('status'))
    return jsonify(fees), 200


@main.route('/finder-fees/<string:id>/pay', methods=['POST'])
@jwt_required()
def pay_finder_fee(id):
    fee = account_crud.pay_finder_fee(request_context(), id, parse_body(FinderFeePayment))
    return jsonify(account_crud.finder_fee_to_dict(fee)), 200
