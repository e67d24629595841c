from flask import jsonify, request
from flask_jwt_extended import jwt_required
from chambers.crud import notification_crud
from chambers.services.notification_service import notification_to_dict
from chambers.utils.request_context import flag, request_context
from . import main


@main.route('/notifications', methods=['GET'])
@jwt_required()
def get_notifications():
    ctx = request_context()
    limit = request.args.get('limit', 50, type=int)
    return jsonify(notification_crud.get_notifications(ctx, unread_only=flag('unread'), limit=limit)), 200


@main.route('/notifications/<string:id>/read', methods=['POST'])
@jwt_required()
def mark_notification_read(id):
    notification = notification_crud.mark_read(request_context(), id)
    return jsonify(notification_to_dict(notification)), 200


@main.route('/notifications/read-all', methods=['POST'])
@jwt_required()
def mark_all_notifications_read():
    count = notification_crud.mark_all_read(request_context())
    return jsonify({'message': 'Notifications marked as read', 'updated': count}), 200
