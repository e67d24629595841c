from flask import jsonify, request
from flask_jwt_extended import jwt_required
from chambers.schemas import UserCreate
from chambers.utils.request_context import parse_body, request_context
from . import main
from ..crud import user_crud


@main.route('/users', methods=['GET'])
@jwt_required()
def get_users():
    users = user_crud.get_all_users(request_context(), role=request.args.get('role'))
    return jsonify(users), 200


@main.route('/users', methods=['POST'])
@jwt_required()
def add_user():
    user = user_crud.add_user(request_context(), parse_body(UserCreate))
    return jsonify({'message': 'User created successfully', 'user': user_crud.user_to_dict(user)}), 201


@main.route('/users/<string:id>', methods=['GET'])
@jwt_required()
def get_user(id):
    user = user_crud.get_user_by_id(request_context(), id)
    return jsonify(user_crud.user_to_dict(user)), 200


@main.route('/users/<string:id>/deletion-requests', methods=['POST'])
@jwt_required()
def request_user_deletion(id):
    deletion = user_crud.request_user_deletion(request_context(), id)
    return jsonify(user_crud.deletion_request_to_dict(deletion)), 201


@main.route('/user-deletion-requests', methods=['GET'])
@jwt_required()
def get_deletion_requests():
    requests = user_crud.get_deletion_requests(request_context(), status=request.args.get('status'))
    return jsonify(requests), 200


@main.route('/user-deletion-requests/<string:id>/approve', methods=['POST'])
@jwt_required()
def approve_user_deletion(id):
    deletion = user_crud.approve_user_deletion(request_context(), id)
    return jsonify(user_crud.deletion_request_to_dict(deletion)), 200
