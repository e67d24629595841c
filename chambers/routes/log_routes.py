from flask import jsonify, request
from flask_jwt_extended import jwt_required
from chambers.utils.request_context import request_context
from . import main
from ..crud import log_crud


@main.route('/logs', methods=['GET'])
@jwt_required()
def list_logs_paginated():
    ctx = request_context()

    page = request.args.get('page', 1, type=int)
    page_size = request.args.get('page_size', 20, type=int)
    sort_by = request.args.get('sort_by', 'created_at')
    sort_dir = request.args.get('sort_dir', 'desc')
    q = request.args.get('q', '')

    # Column filters
    filters = {k.replace('filter_', ''): v for k, v in request.args.items()
               if k.startswith('filter_') and v}

    items, total = log_crud.get_logs_paginated(
        ctx,
        page=page,
        page_size=page_size,
        sort_by=sort_by,
        sort_dir=sort_dir,
        q=q,
        filters=filters,
    )
    return jsonify({'items': items, 'total': total, 'page': page, 'page_size': page_size}), 200
