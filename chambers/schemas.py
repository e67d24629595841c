"""Request payload schemas"""

from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from chambers.errors import Forbidden


class RequestModel(BaseModel):
    model_config = ConfigDict(extra='ignore', str_strip_whitespace=True)


# ---- workflow ---------------------------------------------------------------

class SubmitRequest(RequestModel):
    approver_ids: list[UUID] = Field(default_factory=list)
    approval_requirement: Literal['ALL', 'ANY', 'MAJORITY'] = 'ALL'


class ApprovalDecision(RequestModel):
    proposal_id: Optional[UUID] = None
    bill_id: Optional[UUID] = None
    status: Literal['APPROVED', 'REJECTED']
    comments: Optional[str] = None


class ClientDecision(RequestModel):
    token: str = Field(min_length=1)
    action: Literal['approve', 'reject']
    reason: Optional[str] = None


class AuthenticatedClientDecision(RequestModel):
    action: Literal['approve', 'reject']
    reason: Optional[str] = None


class BulkDeleteRequest(RequestModel):
    ids: list[UUID] = Field(min_length=1)
    action: Literal['validate', 'delete']


# ---- proposals --------------------------------------------------------------

class ProposalItemIn(RequestModel):
    description: str = Field(min_length=1)
    quantity: float = Field(default=1, gt=0)
    unit_price: Decimal = Field(default=Decimal('0'), ge=0)


class MilestoneIn(RequestModel):
    title: str = Field(min_length=1)
    due_date: Optional[datetime] = None


class PaymentTermIn(RequestModel):
    upfront_type: Optional[Literal['PERCENT', 'FIXED']] = None
    upfront_value: Optional[Decimal] = Field(default=None, ge=0)
    installment_type: Optional[Literal['TIME_BASED', 'MILESTONE_BASED']] = None
    installment_count: Optional[int] = Field(default=None, ge=1)
    installment_frequency: Optional[Literal['WEEKLY', 'MONTHLY', 'QUARTERLY']] = None
    installment_maturity_dates: list[datetime] = Field(default_factory=list)
    # Indexes into the proposal's milestone list
    milestone_indexes: list[int] = Field(default_factory=list)

    @model_validator(mode='after')
    def check_upfront(self):
        if self.upfront_type == 'PERCENT' and self.upfront_value is not None and self.upfront_value > 100:
            raise ValueError('upfront percentage cannot exceed 100')
        if self.installment_type and not self.installment_count:
            raise ValueError('installment_count is required with installment_type')
        return self


class ProposalCreate(RequestModel):
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    client_id: Optional[UUID] = None
    lead_id: Optional[UUID] = None
    amount: Optional[Decimal] = Field(default=None, ge=0)
    currency: str = Field(default='EUR', min_length=3, max_length=3)
    expiry_date: Optional[datetime] = None
    tax_rate: Optional[Decimal] = Field(default=None, ge=0)
    tax_inclusive: bool = False
    client_discount_percent: Optional[Decimal] = Field(default=None, ge=0, le=100)
    client_discount_amount: Optional[Decimal] = Field(default=None, ge=0)
    items: list[ProposalItemIn] = Field(default_factory=list)
    milestones: list[MilestoneIn] = Field(default_factory=list)
    payment_terms: list[PaymentTermIn] = Field(default_factory=list)

    @model_validator(mode='after')
    def check_recipient(self):
        if not self.client_id and not self.lead_id:
            raise ValueError('Either client_id or lead_id is required')
        return self


class ProposalUpdate(RequestModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    amount: Optional[Decimal] = Field(default=None, ge=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    expiry_date: Optional[datetime] = None
    tax_rate: Optional[Decimal] = Field(default=None, ge=0)
    tax_inclusive: Optional[bool] = None
    client_discount_percent: Optional[Decimal] = Field(default=None, ge=0, le=100)
    client_discount_amount: Optional[Decimal] = Field(default=None, ge=0)
    client_id: Optional[UUID] = None


# ---- bills ------------------------------------------------------------------

class BillItemIn(RequestModel):
    type: Literal['TIMESHEET', 'CHARGE', 'EXPENSE', 'FEE'] = 'FEE'
    description: str = Field(min_length=1)
    quantity: float = Field(default=1, gt=0)
    unit_price: Decimal
    is_credit: bool = False
    person_id: Optional[UUID] = None


class BillCreate(RequestModel):
    client_id: UUID
    project_id: Optional[UUID] = None
    proposal_id: Optional[UUID] = None
    due_date: Optional[datetime] = None
    currency: str = Field(default='EUR', min_length=3, max_length=3)
    tax_rate: Optional[Decimal] = Field(default=None, ge=0)
    tax_inclusive: bool = False
    discount_percent: Optional[Decimal] = Field(default=None, ge=0, le=100)
    discount_amount: Optional[Decimal] = Field(default=None, ge=0)
    notes: Optional[str] = None
    is_upfront_payment: bool = False
    items: list[BillItemIn] = Field(default_factory=list)
    amount: Optional[Decimal] = Field(default=None, ge=0)


class BillUpdate(RequestModel):
    due_date: Optional[datetime] = None
    notes: Optional[str] = None
    tax_rate: Optional[Decimal] = Field(default=None, ge=0)
    tax_inclusive: Optional[bool] = None
    discount_percent: Optional[Decimal] = Field(default=None, ge=0, le=100)
    discount_amount: Optional[Decimal] = Field(default=None, ge=0)
    amount: Optional[Decimal] = Field(default=None, ge=0)


class GenerateInvoiceRequest(RequestModel):
    due_date: Optional[datetime] = None


# ---- clients, leads, projects ----------------------------------------------

class ClientFinderIn(RequestModel):
    user_id: UUID
    finder_fee_percent: Decimal = Field(default=Decimal('0'), ge=0, le=100)


class ClientCreate(RequestModel):
    name: str = Field(min_length=1, max_length=200)
    email: Optional[str] = None
    company: Optional[str] = None
    contact_info: Optional[str] = None
    tax_number: Optional[str] = None
    kyc_completed: bool = False
    client_manager_id: Optional[UUID] = None
    finders: list[ClientFinderIn] = Field(default_factory=list)

    @field_validator('email')
    @classmethod
    def check_email(cls, value):
        if value in (None, ''):
            return None
        if '@' not in value:
            raise ValueError('Invalid email address')
        return value.lower()


class ClientUpdate(RequestModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    email: Optional[str] = None
    company: Optional[str] = None
    contact_info: Optional[str] = None
    tax_number: Optional[str] = None
    kyc_completed: Optional[bool] = None
    client_manager_id: Optional[UUID] = None


class LeadCreate(RequestModel):
    name: str = Field(min_length=1, max_length=200)
    email: Optional[str] = None
    company: Optional[str] = None
    contact_info: Optional[str] = None


class ProjectCreate(RequestModel):
    name: str = Field(min_length=1, max_length=255)
    client_id: UUID
    proposal_id: Optional[UUID] = None
    description: Optional[str] = None
    currency: str = Field(default='EUR', min_length=3, max_length=3)
    manager_ids: list[UUID] = Field(default_factory=list)


class ProjectManagersUpdate(RequestModel):
    manager_ids: list[UUID] = Field(default_factory=list)


class TimesheetEntryCreate(RequestModel):
    user_id: Optional[UUID] = None
    date: datetime
    hours: float = Field(gt=0, le=24)
    rate: Optional[Decimal] = Field(default=None, ge=0)
    description: Optional[str] = None
    billable: bool = True


class ProjectChargeCreate(RequestModel):
    description: str = Field(min_length=1)
    amount: Decimal
    charge_date: Optional[datetime] = None


# ---- todos ------------------------------------------------------------------

class TodoCreate(RequestModel):
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    assigned_to: UUID
    priority: Literal['LOW', 'MEDIUM', 'HIGH', 'URGENT'] = 'MEDIUM'
    due_date: Optional[datetime] = None
    project_id: Optional[UUID] = None
    client_id: Optional[UUID] = None


class TodoUpdate(RequestModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    status: Optional[Literal['OPEN', 'IN_PROGRESS', 'COMPLETED']] = None
    priority: Optional[Literal['LOW', 'MEDIUM', 'HIGH', 'URGENT']] = None
    due_date: Optional[datetime] = None


class TodoReassign(RequestModel):
    assigned_to: UUID
    reason: Optional[str] = None


# ---- users and staff accounts ----------------------------------------------

class LoginRequest(RequestModel):
    email: str = Field(min_length=1)
    password: str = Field(min_length=1)


class PasswordChange(RequestModel):
    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=8)


class UserCreate(RequestModel):
    email: str = Field(min_length=3)
    name: Optional[str] = None
    password: str = Field(min_length=8)
    role: Literal['ADMIN', 'MANAGER', 'STAFF', 'CLIENT', 'EXTERNAL'] = 'STAFF'


class AdvanceCreate(RequestModel):
    type: Literal['RECURRING', 'ONE_OFF']
    description: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    currency: str = 'EUR'
    start_date: datetime
    end_date: Optional[datetime] = None
    frequency: Optional[Literal['MONTHLY', 'QUARTERLY', 'YEARLY']] = None
    is_active: bool = True

    @model_validator(mode='after')
    def check_recurring(self):
        if self.type == 'RECURRING':
            if not self.frequency:
                raise ValueError('Frequency is required for recurring advances')
            if not self.end_date:
                raise ValueError('End date is required for recurring advances')
        return self


class FringeBenefitCreate(RequestModel):
    type: Literal['ONE_OFF', 'RECURRING'] = 'ONE_OFF'
    description: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    currency: str = 'EUR'
    benefit_date: datetime
    end_date: Optional[datetime] = None
    frequency: Optional[Literal['MONTHLY', 'QUARTERLY', 'YEARLY']] = None
    category: Literal['HEALTH', 'TRANSPORT', 'MEAL', 'OTHER']

    @model_validator(mode='after')
    def check_recurring(self):
        if self.type == 'RECURRING':
            if not self.frequency:
                raise ValueError('Frequency is required for recurring benefits')
            if not self.end_date:
                raise ValueError('End date is required for recurring benefits')
        return self


class CompensationCreate(RequestModel):
    compensation_type: Literal['SALARY_BONUS', 'PERCENTAGE_BASED']
    base_salary: Optional[Decimal] = Field(default=None, ge=0)
    max_bonus_multiplier: Optional[float] = Field(default=None, ge=0)
    percentage_type: Optional[Literal['PROJECT_TOTAL', 'DIRECT_WORK', 'BOTH']] = None
    project_percentage: Optional[Decimal] = Field(default=None, ge=0, le=100)
    direct_work_percentage: Optional[Decimal] = Field(default=None, ge=0, le=100)
    effective_from: datetime
    effective_to: Optional[datetime] = None

    @model_validator(mode='after')
    def check_type(self):
        if self.compensation_type == 'SALARY_BONUS' and self.base_salary is None:
            raise ValueError('base_salary is required for salary compensation')
        if self.compensation_type == 'PERCENTAGE_BASED' and not self.percentage_type:
            raise ValueError('percentage_type is required for percentage compensation')
        return self


class CompensationCalculate(RequestModel):
    year: int = Field(ge=2000, le=2100)
    month: int = Field(ge=1, le=12)
    bonus_multiplier: Optional[float] = Field(default=None, ge=0)


class FinderFeePayment(RequestModel):
    amount: Decimal = Field(gt=0)
    payment_date: Optional[datetime] = None
    notes: Optional[str] = None


# ---- per-role update whitelists --------------------------------------------

PROPOSAL_FIELDS_BY_ROLE = {
    'ADMIN': frozenset(ProposalUpdate.model_fields),
    'MANAGER': frozenset(ProposalUpdate.model_fields),
    'STAFF': frozenset({
        'title', 'description', 'amount', 'currency', 'expiry_date',
        'tax_rate', 'tax_inclusive', 'client_id',
    }),
}

BILL_FIELDS_BY_ROLE = {
    'ADMIN': frozenset(BillUpdate.model_fields),
    'MANAGER': frozenset(BillUpdate.model_fields),
    'STAFF': frozenset({'due_date', 'notes', 'tax_rate', 'tax_inclusive', 'amount'}),
}


def whitelisted_changes(payload, fields_by_role, role):
    """
    The fields the caller actually sent, restricted to what their role may change.

    Raises Forbidden naming the first field outside the whitelist.
    """
    allowed = fields_by_role.get(role, frozenset())
    changes = payload.model_dump(exclude_unset=True)
    for name in changes:
        if name not in allowed:
            raise Forbidden(f"Your role cannot change '{name}'")
    return changes
