from flask import Blueprint, jsonify, request
from flask_jwt_extended import create_access_token, jwt_required
from chambers import db
from chambers.models import User
from chambers.crud.user_crud import user_to_dict
from chambers.errors import BusinessRuleViolation, NotFound, Unauthorized
from chambers.schemas import LoginRequest, PasswordChange
from chambers.utils.logging_utils import log_action
from chambers.utils.request_context import capabilities_for, context_for_user, parse_body, request_context
from datetime import timedelta
import logging

logger = logging.getLogger(__name__)

auth = Blueprint('auth', __name__)

TOKEN_LIFETIME = timedelta(hours=12)


def issue_token(user):
    return create_access_token(
        identity=str(user.id),
        additional_claims={
            "id": str(user.id),
            "role": user.role,
            "email": user.email,
            "capabilities": capabilities_for(user),
        },
        expires_delta=TOKEN_LIFETIME,
    )


@auth.route('/login', methods=['POST'])
def login():
    data = parse_body(LoginRequest)
    user = User.query.filter(db.func.lower(User.email) == data.email.lower()).first()
    if user and user.is_active and user.check_password(data.password):
        ctx = context_for_user(user, request.remote_addr, request.headers.get('User-Agent'))
        log_action(ctx, 'LOGIN', 'users', user.id, None, None)
        return jsonify(token=issue_token(user), role=user.role, id=str(user.id)), 200
    logger.warning(f"Failed login for {data.email} from {request.remote_addr}")
    raise Unauthorized('Invalid credentials')


@auth.route('/logout', methods=['POST'])
@jwt_required()
def logout():
    # Tokens are stateless; the client drops its copy
    return jsonify({"message": "Successfully logged out"}), 200


@auth.route('/me', methods=['GET'])
@jwt_required()
def me():
    user = db.session.get(User, request_context().user_id)
    if user is None:
        raise NotFound('User not found')
    return jsonify(user_to_dict(user)), 200


@auth.route('/change-password', methods=['POST'])
@jwt_required()
def change_password():
    ctx = request_context()
    data = parse_body(PasswordChange)
    user = db.session.get(User, ctx.user_id)
    if user is None:
        raise NotFound('User not found')
    if not user.check_password(data.current_password):
        raise BusinessRuleViolation('Current password is incorrect')
    user.set_password(data.new_password)
    log_action(ctx, 'CHANGE_PASSWORD', 'users', user.id, None, None, commit=False)
    db.session.commit()
    return jsonify({"message": "Password changed successfully"}), 200
