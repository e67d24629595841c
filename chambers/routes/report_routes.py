from flask import jsonify
from flask_jwt_extended import jwt_required
from chambers.crud import report_crud
from chambers.utils.request_context import request_context
from . import main


@main.route('/reports/financial-summary', methods=['GET'])
@jwt_required()
def financial_summary():
    return jsonify(report_crud.get_financial_summary(request_context())), 200
