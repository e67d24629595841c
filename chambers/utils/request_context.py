import uuid
from dataclasses import dataclass, field

from flask import request
from flask_jwt_extended import get_jwt

from chambers.errors import Unauthorized, ValidationFailed, NotFound

CAPABILITY_FLAGS = (
    'can_approve_proposals',
    'can_approve_invoices',
    'can_edit_all_proposals',
    'can_edit_all_invoices',
    'can_view_all_clients',
    'can_create_users',
)


@dataclass(frozen=True)
class RequestContext:
    """Who is acting on this request; passed explicitly into every crud call"""
    user_id: uuid.UUID
    role: str
    email: str = None
    capabilities: dict = field(default_factory=dict)
    ip_address: str = None
    user_agent: str = None

    @property
    def is_admin(self):
        return self.role == 'ADMIN'

    @property
    def is_client(self):
        return self.role == 'CLIENT'

    def capability(self, name):
        """Explicit override for a capability flag, or None to use the role default"""
        return self.capabilities.get(name)


def capabilities_for(user):
    return {flag: getattr(user, flag) for flag in CAPABILITY_FLAGS}

def context_for_user(user, ip_address=None, user_agent=None):
    return RequestContext(
        user_id=user.id,
        role=user.role,
        email=user.email,
        capabilities=capabilities_for(user),
        ip_address=ip_address,
        user_agent=user_agent,
    )

def request_context():
    """Build the context from the verified JWT of the current request"""
    claims = get_jwt()
    if not claims or 'id' not in claims:
        raise Unauthorized('Unauthorized')
    return RequestContext(
        user_id=uuid.UUID(claims['id']),
        role=claims['role'],
        email=claims.get('email'),
        capabilities=claims.get('capabilities') or {},
        ip_address=request.remote_addr,
        user_agent=request.headers.get('User-Agent'),
    )

def parse_uuid(value, label='id', missing=NotFound):
    """Coerce to UUID; malformed ids are reported as missing records unless told otherwise"""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        if missing is ValidationFailed:
            raise ValidationFailed(f"Invalid {label}")
        raise missing(f"{label} not found")

def parse_body(schema):
    """Validate the JSON body of the current request against a pydantic model"""
    return schema.model_validate(request.get_json(silent=True) or {})

def flag(name, default=False):
    value = request.args.get(name)
    if value is None:
        return default
    return value.lower() in ('1', 'true', 'yes')

def uuid_arg(name):
    """Optional UUID query parameter; malformed values are a 400"""
    value = request.args.get(name)
    return parse_uuid(value, name, missing=ValidationFailed) if value else None
