from flask import Blueprint

main = Blueprint('main', __name__)

from . import proposal_routes
from . import bill_routes
from . import approval_routes
from . import client_routes
from . import project_routes
from . import todo_routes
from . import notification_routes
from . import user_routes
from . import account_routes
from . import report_routes
from . import log_routes
from . import cron_routes
