from chambers import db
from chambers.models import DetailedLog
import json


def _jsonable(values):
    if values is None:
        return None
    # Round-trip through json so UUIDs, Decimals and datetimes become plain values
    return json.loads(json.dumps(values, default=str))

def log_action(ctx, action, table_name, record_id, old_values, new_values, commit=True):
    """Write an audit row for a mutation performed under the given request context"""
    log = DetailedLog(
        user_id=ctx.user_id if ctx else None,
        action=action,
        table_name=table_name,
        record_id=record_id,
        old_values=_jsonable(old_values),
        new_values=_jsonable(new_values),
        ip_address=ctx.ip_address if ctx else None,
        user_agent=ctx.user_agent if ctx else None,
    )
    db.session.add(log)
    if commit:
        db.session.commit()
