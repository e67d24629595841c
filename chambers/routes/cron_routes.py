from flask import current_app, jsonify, request
from chambers.errors import Unauthorized
from chambers.jobs import reminder_jobs
import hmac
import logging
from . import main

logger = logging.getLogger(__name__)


def _check_cron_secret():
    """Scheduler calls carry `Authorization: Bearer <CRON_SECRET>`"""
    secret = current_app.config.get('CRON_SECRET')
    header = request.headers.get('Authorization', '')
    if not secret or not hmac.compare_digest(header, f"Bearer {secret}"):
        logger.warning(f"Rejected cron call to {request.path} from {request.remote_addr}")
        raise Unauthorized('Unauthorized')


@main.route('/cron/check-outstanding-invoices', methods=['GET'])
def cron_check_outstanding_invoices():
    _check_cron_secret()
    results = reminder_jobs.check_outstanding_invoices()
    return jsonify({'success': True, **results}), 200


@main.route('/cron/check-installments', methods=['GET'])
def cron_check_installments():
    _check_cron_secret()
    results = reminder_jobs.check_installments()
    return jsonify({'success': True, **results}), 200


@main.route('/cron/process-recurring-advances', methods=['GET'])
def cron_process_recurring_advances():
    _check_cron_secret()
    results = reminder_jobs.process_recurring_advances()
    return jsonify({'success': True, **results}), 200
