from flask import jsonify, request
from flask_jwt_extended import jwt_required
from chambers.crud import todo_crud
from chambers.schemas import TodoCreate, TodoReassign, TodoUpdate
from chambers.utils.request_context import parse_body, request_context
from . import main


@main.route('/todos', methods=['GET'])
@jwt_required()
def get_todos():
    ctx = request_context()
    todos = todo_crud.get_all_todos(ctx, status=request.args.get('status'), scope=request.args.get('scope'))
    return jsonify(todos), 200


@main.route('/todos', methods=['POST'])
@jwt_required()
def add_todo():
    todo = todo_crud.add_todo(request_context(), parse_body(TodoCreate))
    return jsonify(todo_crud.todo_to_dict(todo, detail=True)), 201


@main.route('/todos/<string:id>', methods=['GET'])
@jwt_required()
def get_todo(id):
    todo = todo_crud.get_todo(request_context(), id)
    return jsonify(todo_crud.todo_to_dict(todo, detail=True)), 200


@main.route('/todos/<string:id>', methods=['PUT'])
@jwt_required()
def update_todo(id):
    todo = todo_crud.update_todo(request_context(), id, parse_body(TodoUpdate))
    return jsonify(todo_crud.todo_to_dict(todo, detail=True)), 200


@main.route('/todos/<string:id>/complete', methods=['POST'])
@jwt_required()
def complete_todo(id):
    todo = todo_crud.complete_todo(request_context(), id)
    return jsonify(todo_crud.todo_to_dict(todo)), 200


@main.route('/todos/<string:id>/read', methods=['POST'])
@jwt_required()
def mark_todo_read(id):
    todo = todo_crud.mark_todo_read(request_context(), id)
    return jsonify(todo_crud.todo_to_dict(todo)), 200


@main.route('/todos/<string:id>/reassign', methods=['POST'])
@jwt_required()
def reassign_todo(id):
    todo = todo_crud.reassign_todo(request_context(), id, parse_body(TodoReassign))
    return jsonify(todo_crud.todo_to_dict(todo, detail=True)), 200
