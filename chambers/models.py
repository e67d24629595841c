import uuid
from sqlalchemy import Uuid, UniqueConstraint
from sqlalchemy.orm import relationship
from chambers import db, bcrypt
from chambers.utils.date_utils import utc_now

user_role = db.Enum('ADMIN', 'MANAGER', 'STAFF', 'CLIENT', 'EXTERNAL', name='user_role')
proposal_status = db.Enum('DRAFT', 'SUBMITTED', 'APPROVED', 'REJECTED', name='proposal_status')
client_approval_status = db.Enum('PENDING', 'APPROVED', 'REJECTED', name='client_approval_status')
bill_status = db.Enum('DRAFT', 'SUBMITTED', 'APPROVED', 'REJECTED', 'PAID', 'CANCELLED', 'WRITTEN_OFF', name='bill_status')
approval_status = db.Enum('PENDING', 'APPROVED', 'REJECTED', name='approval_status')
approval_requirement = db.Enum('ALL', 'ANY', 'MAJORITY', name='approval_requirement')
deletion_request_status = db.Enum('PENDING', 'APPROVED', 'REJECTED', 'COMPLETED', name='deletion_request_status')
lead_status = db.Enum('NEW', 'CONTACTED', 'QUALIFIED', 'CONVERTED', 'LOST', name='lead_status')
project_status = db.Enum('ACTIVE', 'ON_HOLD', 'COMPLETED', 'CANCELLED', 'ARCHIVED', name='project_status')
upfront_type = db.Enum('PERCENT', 'FIXED', name='upfront_type')
installment_type = db.Enum('TIME_BASED', 'MILESTONE_BASED', name='installment_type')
installment_frequency = db.Enum('WEEKLY', 'MONTHLY', 'QUARTERLY', name='installment_frequency')
notification_type = db.Enum(
    'APPROVAL_REQUEST', 'PROPOSAL_APPROVAL', 'INVOICE_OUTSTANDING',
    'INSTALLMENT_DUE', 'TODO_ASSIGNED', 'GENERAL', name='notification_type'
)
todo_status = db.Enum('OPEN', 'IN_PROGRESS', 'COMPLETED', name='todo_status')
todo_priority = db.Enum('LOW', 'MEDIUM', 'HIGH', 'URGENT', name='todo_priority')
entry_type = db.Enum('ONE_OFF', 'RECURRING', name='entry_type')
entry_frequency = db.Enum('MONTHLY', 'QUARTERLY', 'YEARLY', name='entry_frequency')
benefit_category = db.Enum('HEALTH', 'TRANSPORT', 'MEAL', 'OTHER', name='benefit_category')
compensation_type = db.Enum('SALARY_BONUS', 'PERCENTAGE_BASED', name='compensation_type')
percentage_type = db.Enum('PROJECT_TOTAL', 'DIRECT_WORK', 'BOTH', name='percentage_type')
transaction_type = db.Enum(
    'ADVANCE', 'COMPENSATION', 'FRINGE_BENEFIT', 'FINDER_FEE', 'PAYMENT', 'ADJUSTMENT',
    name='transaction_type'
)
finder_fee_status = db.Enum('PENDING', 'PARTIALLY_PAID', 'PAID', name='finder_fee_status')
bill_item_type = db.Enum('TIMESHEET', 'CHARGE', 'EXPENSE', 'FEE', name='bill_item_type')


class User(db.Model):
    __tablename__ = 'users'
    id = db.Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = db.Column(db.String(255), unique=True, nullable=False)
    name = db.Column(db.String(150))
    password = db.Column(db.String(255), nullable=False)
    role = db.Column(user_role, nullable=False, default='STAFF')
    timezone = db.Column(db.String(64), default='UTC')
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    # Capability overrides; NULL falls back to the role default
    can_approve_proposals = db.Column(db.Boolean)
    can_approve_invoices = db.Column(db.Boolean)
    can_edit_all_proposals = db.Column(db.Boolean)
    can_edit_all_invoices = db.Column(db.Boolean)
    can_view_all_clients = db.Column(db.Boolean)
    can_create_users = db.Column(db.Boolean)

    def set_password(self, password):
        self.password = bcrypt.generate_password_hash(password).decode('utf-8')

    def check_password(self, password):
        return bcrypt.check_password_hash(self.password, password)

    notifications = relationship('Notification', back_populates='user', cascade='all, delete-orphan')
    financial_transactions = relationship('UserFinancialTransaction', back_populates='user',
                                          cascade='all, delete-orphan',
                                          foreign_keys='UserFinancialTransaction.user_id')
    advances = relationship('OfficeAdvance', cascade='all, delete-orphan', foreign_keys='OfficeAdvance.user_id')
    fringe_benefits = relationship('FringeBenefit', cascade='all, delete-orphan', foreign_keys='FringeBenefit.user_id')
    compensations = relationship('UserCompensation', cascade='all, delete-orphan', foreign_keys='UserCompensation.user_id')
    compensation_entries = relationship('CompensationEntry', cascade='all, delete-orphan',
                                        foreign_keys='CompensationEntry.user_id')


class Client(db.Model):
    __tablename__ = 'clients'
    id = db.Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(255))
    company = db.Column(db.String(200))
    contact_info = db.Column(db.Text)
    tax_number = db.Column(db.String(50))
    kyc_completed = db.Column(db.Boolean, default=False)
    client_manager_id = db.Column(Uuid, db.ForeignKey('users.id'))
    created_by = db.Column(Uuid, db.ForeignKey('users.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)
    deleted_at = db.Column(db.DateTime)

    client_manager = relationship('User', foreign_keys=[client_manager_id])
    creator = relationship('User', foreign_keys=[created_by])
    finders = relationship('ClientFinder', back_populates='client', cascade='all, delete-orphan')
    projects = relationship('Project', back_populates='client')


class ClientFinder(db.Model):
    """Staff member credited with originating a client relationship"""
    __tablename__ = 'client_finders'
    id = db.Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = db.Column(Uuid, db.ForeignKey('clients.id'), nullable=False)
    user_id = db.Column(Uuid, db.ForeignKey('users.id'), nullable=False)
    finder_fee_percent = db.Column(db.Numeric(5, 2), default=0)

    client = relationship('Client', back_populates='finders')
    user = relationship('User')


class Lead(db.Model):
    __tablename__ = 'leads'
    id = db.Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(255))
    company = db.Column(db.String(200))
    contact_info = db.Column(db.Text)
    status = db.Column(lead_status, nullable=False, default='NEW')
    converted_to_client_id = db.Column(Uuid, db.ForeignKey('clients.id'))
    converted_at = db.Column(db.DateTime)
    created_by = db.Column(Uuid, db.ForeignKey('users.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=utc_now)
    deleted_at = db.Column(db.DateTime)


class Proposal(db.Model):
    __tablename__ = 'proposals'
    id = db.Column(Uuid, primary_key=True, default=uuid.uuid4)
    proposal_number = db.Column(db.String(50), unique=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    client_id = db.Column(Uuid, db.ForeignKey('clients.id'))
    lead_id = db.Column(Uuid, db.ForeignKey('leads.id'))
    created_by = db.Column(Uuid, db.ForeignKey('users.id'), nullable=False)
    status = db.Column(proposal_status, nullable=False, default='DRAFT')
    amount = db.Column(db.Numeric(12, 2), default=0)
    currency = db.Column(db.String(3), default='EUR')
    issue_date = db.Column(db.DateTime, default=utc_now)
    expiry_date = db.Column(db.DateTime)
    tax_rate = db.Column(db.Numeric(5, 2))
    tax_inclusive = db.Column(db.Boolean, default=False)
    client_discount_percent = db.Column(db.Numeric(5, 2))
    client_discount_amount = db.Column(db.Numeric(12, 2))

    submitted_at = db.Column(db.DateTime)
    approved_at = db.Column(db.DateTime)
    internal_approval_required = db.Column(db.Boolean, default=False)
    internal_approval_type = db.Column(approval_requirement)
    required_approver_ids = db.Column(db.JSON, default=list)
    internal_approvals_complete = db.Column(db.Boolean, default=False)

    client_approval_status = db.Column(client_approval_status, nullable=False, default='PENDING')
    client_approval_token = db.Column(db.String(128), unique=True)
    client_approval_token_expiry = db.Column(db.DateTime)
    client_approval_email_sent = db.Column(db.Boolean, default=False)
    client_approval_email_sent_by = db.Column(Uuid, db.ForeignKey('users.id'))
    client_approved_at = db.Column(db.DateTime)
    client_rejected_at = db.Column(db.DateTime)
    client_rejection_reason = db.Column(db.Text)

    deleted_at = db.Column(db.DateTime)
    deletion_requested_at = db.Column(db.DateTime)
    deletion_requested_by = db.Column(Uuid, db.ForeignKey('users.id'))
    deletion_approved_at = db.Column(db.DateTime)
    deletion_approved_by = db.Column(Uuid, db.ForeignKey('users.id'))

    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    client = relationship('Client', foreign_keys=[client_id])
    lead = relationship('Lead', foreign_keys=[lead_id])
    creator = relationship('User', foreign_keys=[created_by])
    items = relationship('ProposalItem', back_populates='proposal', cascade='all, delete-orphan')
    payment_terms = relationship('PaymentTerm', back_populates='proposal', cascade='all, delete-orphan')
    milestones = relationship('Milestone', back_populates='proposal', cascade='all, delete-orphan')
    approvals = relationship('Approval', back_populates='proposal', cascade='all, delete-orphan')
    projects = relationship('Project', back_populates='proposal')
    bills = relationship('Bill', back_populates='proposal')


class ProposalItem(db.Model):
    __tablename__ = 'proposal_items'
    id = db.Column(Uuid, primary_key=True, default=uuid.uuid4)
    proposal_id = db.Column(Uuid, db.ForeignKey('proposals.id'), nullable=False)
    description = db.Column(db.Text, nullable=False)
    quantity = db.Column(db.Float, default=1)
    unit_price = db.Column(db.Numeric(12, 2), default=0)
    amount = db.Column(db.Numeric(12, 2), default=0)

    proposal = relationship('Proposal', back_populates='items')


class Milestone(db.Model):
    __tablename__ = 'milestones'
    id = db.Column(Uuid, primary_key=True, default=uuid.uuid4)
    proposal_id = db.Column(Uuid, db.ForeignKey('proposals.id'), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    due_date = db.Column(db.DateTime)

    proposal = relationship('Proposal', back_populates='milestones')


class PaymentTerm(db.Model):
    __tablename__ = 'payment_terms'
    id = db.Column(Uuid, primary_key=True, default=uuid.uuid4)
    proposal_id = db.Column(Uuid, db.ForeignKey('proposals.id'), nullable=False)
    proposal_item_id = db.Column(Uuid, db.ForeignKey('proposal_items.id'))
    upfront_type = db.Column(upfront_type)
    upfront_value = db.Column(db.Numeric(12, 2))
    installment_type = db.Column(installment_type)
    installment_count = db.Column(db.Integer)
    installment_frequency = db.Column(installment_frequency)
    installment_maturity_dates = db.Column(db.JSON, default=list)  # ISO dates
    milestone_ids = db.Column(db.JSON, default=list)

    proposal = relationship('Proposal', back_populates='payment_terms')
    proposal_item = relationship('ProposalItem')
    installment_invoices = relationship('InstallmentInvoice', back_populates='payment_term',
                                        cascade='all, delete-orphan')


class InstallmentInvoice(db.Model):
    __tablename__ = 'installment_invoices'
    id = db.Column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_term_id = db.Column(Uuid, db.ForeignKey('payment_terms.id'), nullable=False)
    installment_number = db.Column(db.Integer, nullable=False)
    due_date = db.Column(db.DateTime)
    invoiced_at = db.Column(db.DateTime)
    bill_id = db.Column(Uuid, db.ForeignKey('bills.id'))

    payment_term = relationship('PaymentTerm', back_populates='installment_invoices')


class Project(db.Model):
    __tablename__ = 'projects'
    id = db.Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    client_id = db.Column(Uuid, db.ForeignKey('clients.id'), nullable=False)
    proposal_id = db.Column(Uuid, db.ForeignKey('proposals.id'))
    status = db.Column(project_status, nullable=False, default='ACTIVE')
    currency = db.Column(db.String(3), default='EUR')
    start_date = db.Column(db.DateTime, default=utc_now)
    created_at = db.Column(db.DateTime, default=utc_now)
    deleted_at = db.Column(db.DateTime)

    client = relationship('Client', back_populates='projects')
    proposal = relationship('Proposal', back_populates='projects')
    managers = relationship('ProjectManager', back_populates='project', cascade='all, delete-orphan')
    timesheet_entries = relationship('TimesheetEntry', back_populates='project')
    charges = relationship('ProjectCharge', back_populates='project')
    bills = relationship('Bill', back_populates='project')


class ProjectManager(db.Model):
    __tablename__ = 'project_managers'
    id = db.Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = db.Column(Uuid, db.ForeignKey('projects.id'), nullable=False)
    user_id = db.Column(Uuid, db.ForeignKey('users.id'), nullable=False)

    project = relationship('Project', back_populates='managers')
    user = relationship('User')

    __table_args__ = (UniqueConstraint('project_id', 'user_id', name='uq_project_manager'),)


class Bill(db.Model):
    __tablename__ = 'bills'
    id = db.Column(Uuid, primary_key=True, default=uuid.uuid4)
    invoice_number = db.Column(db.String(50), unique=True)
    proposal_id = db.Column(Uuid, db.ForeignKey('proposals.id'))
    project_id = db.Column(Uuid, db.ForeignKey('projects.id'))
    client_id = db.Column(Uuid, db.ForeignKey('clients.id'), nullable=False)
    created_by = db.Column(Uuid, db.ForeignKey('users.id'), nullable=False)
    status = db.Column(bill_status, nullable=False, default='DRAFT')
    subtotal = db.Column(db.Numeric(12, 2), default=0)
    amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    currency = db.Column(db.String(3), default='EUR')
    tax_rate = db.Column(db.Numeric(5, 2))
    tax_inclusive = db.Column(db.Boolean, default=False)
    discount_percent = db.Column(db.Numeric(5, 2))
    discount_amount = db.Column(db.Numeric(12, 2))
    due_date = db.Column(db.DateTime)
    notes = db.Column(db.Text)

    submitted_at = db.Column(db.DateTime)
    approved_at = db.Column(db.DateTime)
    paid_at = db.Column(db.DateTime)
    internal_approval_required = db.Column(db.Boolean, default=False)
    internal_approval_type = db.Column(approval_requirement)
    required_approver_ids = db.Column(db.JSON, default=list)
    internal_approvals_complete = db.Column(db.Boolean, default=False)

    became_outstanding_at = db.Column(db.DateTime)
    last_reminder_sent_at = db.Column(db.DateTime)
    reminder_count = db.Column(db.Integer, default=0)

    is_upfront_payment = db.Column(db.Boolean, default=False)
    credit_applied = db.Column(db.Numeric(12, 2), default=0)

    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)
    deleted_at = db.Column(db.DateTime)

    client = relationship('Client')
    creator = relationship('User', foreign_keys=[created_by])
    proposal = relationship('Proposal', back_populates='bills')
    project = relationship('Project', back_populates='bills')
    items = relationship('BillItem', back_populates='bill', cascade='all, delete-orphan')
    approvals = relationship('Approval', back_populates='bill', cascade='all, delete-orphan')


class BillItem(db.Model):
    __tablename__ = 'bill_items'
    id = db.Column(Uuid, primary_key=True, default=uuid.uuid4)
    bill_id = db.Column(Uuid, db.ForeignKey('bills.id'), nullable=False)
    type = db.Column(bill_item_type, nullable=False, default='FEE')
    description = db.Column(db.Text)
    quantity = db.Column(db.Float, default=1)
    unit_price = db.Column(db.Numeric(12, 2), default=0)
    amount = db.Column(db.Numeric(12, 2), default=0)
    is_credit = db.Column(db.Boolean, default=False)
    person_id = db.Column(Uuid, db.ForeignKey('users.id'))

    bill = relationship('Bill', back_populates='items')


class TimesheetEntry(db.Model):
    __tablename__ = 'timesheet_entries'
    id = db.Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = db.Column(Uuid, db.ForeignKey('projects.id'), nullable=False)
    user_id = db.Column(Uuid, db.ForeignKey('users.id'), nullable=False)
    date = db.Column(db.DateTime, nullable=False, default=utc_now)
    hours = db.Column(db.Float, nullable=False)
    rate = db.Column(db.Numeric(12, 2))
    description = db.Column(db.Text)
    billable = db.Column(db.Boolean, default=True)
    billed = db.Column(db.Boolean, default=False)
    bill_id = db.Column(Uuid, db.ForeignKey('bills.id'))
    created_at = db.Column(db.DateTime, default=utc_now)

    project = relationship('Project', back_populates='timesheet_entries')
    user = relationship('User')


class ProjectCharge(db.Model):
    __tablename__ = 'project_charges'
    id = db.Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = db.Column(Uuid, db.ForeignKey('projects.id'), nullable=False)
    description = db.Column(db.Text, nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    charge_date = db.Column(db.DateTime, default=utc_now)
    billed = db.Column(db.Boolean, default=False)
    bill_id = db.Column(Uuid, db.ForeignKey('bills.id'))
    created_by = db.Column(Uuid, db.ForeignKey('users.id'))
    created_at = db.Column(db.DateTime, default=utc_now)

    project = relationship('Project', back_populates='charges')


class Approval(db.Model):
    """An approver's decision on exactly one proposal or bill"""
    __tablename__ = 'approvals'
    id = db.Column(Uuid, primary_key=True, default=uuid.uuid4)
    proposal_id = db.Column(Uuid, db.ForeignKey('proposals.id'))
    bill_id = db.Column(Uuid, db.ForeignKey('bills.id'))
    approver_id = db.Column(Uuid, db.ForeignKey('users.id'), nullable=False)
    status = db.Column(approval_status, nullable=False, default='PENDING')
    comments = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    proposal = relationship('Proposal', back_populates='approvals')
    bill = relationship('Bill', back_populates='approvals')
    approver = relationship('User')


class Notification(db.Model):
    __tablename__ = 'notifications'
    id = db.Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = db.Column(Uuid, db.ForeignKey('users.id'), nullable=False)
    type = db.Column(notification_type, nullable=False, default='GENERAL')
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text)
    proposal_id = db.Column(Uuid, db.ForeignKey('proposals.id'))
    bill_id = db.Column(Uuid, db.ForeignKey('bills.id'))
    todo_id = db.Column(Uuid, db.ForeignKey('todos.id'))
    payment_term_id = db.Column(Uuid, db.ForeignKey('payment_terms.id'))
    due_date = db.Column(db.DateTime)
    read_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)

    user = relationship('User', back_populates='notifications')


class Todo(db.Model):
    __tablename__ = 'todos'
    id = db.Column(Uuid, primary_key=True, default=uuid.uuid4)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    status = db.Column(todo_status, nullable=False, default='OPEN')
    priority = db.Column(todo_priority, nullable=False, default='MEDIUM')
    due_date = db.Column(db.DateTime)
    created_by = db.Column(Uuid, db.ForeignKey('users.id'), nullable=False)
    assigned_to = db.Column(Uuid, db.ForeignKey('users.id'), nullable=False)
    project_id = db.Column(Uuid, db.ForeignKey('projects.id'))
    client_id = db.Column(Uuid, db.ForeignKey('clients.id'))
    completed_at = db.Column(db.DateTime)
    read_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    creator = relationship('User', foreign_keys=[created_by])
    assignee = relationship('User', foreign_keys=[assigned_to])
    reassignments = relationship('TodoReassignment', back_populates='todo', cascade='all, delete-orphan')


class TodoReassignment(db.Model):
    __tablename__ = 'todo_reassignments'
    id = db.Column(Uuid, primary_key=True, default=uuid.uuid4)
    todo_id = db.Column(Uuid, db.ForeignKey('todos.id'), nullable=False)
    from_user_id = db.Column(Uuid, db.ForeignKey('users.id'))
    to_user_id = db.Column(Uuid, db.ForeignKey('users.id'), nullable=False)
    reassigned_by = db.Column(Uuid, db.ForeignKey('users.id'), nullable=False)
    reason = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)

    todo = relationship('Todo', back_populates='reassignments')


class UserDeletionRequest(db.Model):
    """
    Two-person rule for removing a user account.
    The target is kept as a plain id so the request outlives the deleted row.
    """
    __tablename__ = 'user_deletion_requests'
    id = db.Column(Uuid, primary_key=True, default=uuid.uuid4)
    target_user_id = db.Column(Uuid, nullable=False, index=True)
    target_email = db.Column(db.String(255))
    requested_by = db.Column(Uuid, db.ForeignKey('users.id'), nullable=False)
    approved_by = db.Column(db.JSON, default=list)  # ordered approver ids
    status = db.Column(deletion_request_status, nullable=False, default='PENDING')
    report = db.Column(db.JSON)
    completed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    requester = relationship('User', foreign_keys=[requested_by])


class OfficeAdvance(db.Model):
    __tablename__ = 'office_advances'
    id = db.Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = db.Column(Uuid, db.ForeignKey('users.id'), nullable=False)
    type = db.Column(entry_type, nullable=False)
    description = db.Column(db.Text, nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), default='EUR')
    start_date = db.Column(db.DateTime, nullable=False)
    end_date = db.Column(db.DateTime)
    frequency = db.Column(entry_frequency)
    is_active = db.Column(db.Boolean, default=True)
    created_by = db.Column(Uuid, db.ForeignKey('users.id'))
    created_at = db.Column(db.DateTime, default=utc_now)


class FringeBenefit(db.Model):
    __tablename__ = 'fringe_benefits'
    id = db.Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = db.Column(Uuid, db.ForeignKey('users.id'), nullable=False)
    type = db.Column(entry_type, nullable=False, default='ONE_OFF')
    description = db.Column(db.Text, nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), default='EUR')
    benefit_date = db.Column(db.DateTime, nullable=False)
    end_date = db.Column(db.DateTime)
    frequency = db.Column(entry_frequency)
    category = db.Column(benefit_category, nullable=False)
    created_by = db.Column(Uuid, db.ForeignKey('users.id'))
    created_at = db.Column(db.DateTime, default=utc_now)


class UserCompensation(db.Model):
    __tablename__ = 'user_compensations'
    id = db.Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = db.Column(Uuid, db.ForeignKey('users.id'), nullable=False)
    compensation_type = db.Column(compensation_type, nullable=False)
    base_salary = db.Column(db.Numeric(12, 2))
    max_bonus_multiplier = db.Column(db.Float)
    percentage_type = db.Column(percentage_type)
    project_percentage = db.Column(db.Numeric(5, 2))
    direct_work_percentage = db.Column(db.Numeric(5, 2))
    effective_from = db.Column(db.DateTime, nullable=False)
    effective_to = db.Column(db.DateTime)
    created_by = db.Column(Uuid, db.ForeignKey('users.id'))
    created_at = db.Column(db.DateTime, default=utc_now)


class CompensationEntry(db.Model):
    __tablename__ = 'compensation_entries'
    id = db.Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = db.Column(Uuid, db.ForeignKey('users.id'), nullable=False)
    compensation_id = db.Column(Uuid, db.ForeignKey('user_compensations.id'), nullable=False)
    period_year = db.Column(db.Integer, nullable=False)
    period_month = db.Column(db.Integer, nullable=False)
    base_salary = db.Column(db.Numeric(12, 2))
    bonus_multiplier = db.Column(db.Float)
    bonus_amount = db.Column(db.Numeric(12, 2))
    percentage_earnings = db.Column(db.Numeric(12, 2))
    total_earned = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_paid = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    balance = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    calculated_at = db.Column(db.DateTime, default=utc_now)

    compensation = relationship('UserCompensation')

    __table_args__ = (UniqueConstraint('user_id', 'period_year', 'period_month', name='uq_compensation_period'),)


class UserFinancialTransaction(db.Model):
    """
    Ledger of a staff member's account with the firm.
    Positive amounts are owed to the user, negative amounts are owed by the user.
    """
    __tablename__ = 'user_financial_transactions'
    id = db.Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = db.Column(Uuid, db.ForeignKey('users.id'), nullable=False)
    type = db.Column(transaction_type, nullable=False)
    related_id = db.Column(Uuid)
    related_type = db.Column(db.String(50))
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), default='EUR')
    transaction_date = db.Column(db.DateTime, nullable=False, default=utc_now)
    description = db.Column(db.Text)
    notes = db.Column(db.Text)
    created_by = db.Column(Uuid, db.ForeignKey('users.id'))
    created_at = db.Column(db.DateTime, default=utc_now)

    user = relationship('User', back_populates='financial_transactions', foreign_keys=[user_id])


class FinderFee(db.Model):
    __tablename__ = 'finder_fees'
    id = db.Column(Uuid, primary_key=True, default=uuid.uuid4)
    bill_id = db.Column(Uuid, db.ForeignKey('bills.id'), nullable=False)
    client_id = db.Column(Uuid, db.ForeignKey('clients.id'), nullable=False)
    finder_id = db.Column(Uuid, db.ForeignKey('users.id'), nullable=False)
    client_finder_id = db.Column(Uuid, db.ForeignKey('client_finders.id'))
    invoice_net_amount = db.Column(db.Numeric(12, 2), nullable=False)
    finder_fee_percent = db.Column(db.Numeric(5, 2), nullable=False)
    finder_fee_amount = db.Column(db.Numeric(12, 2), nullable=False)
    paid_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    remaining_amount = db.Column(db.Numeric(12, 2), nullable=False)
    status = db.Column(finder_fee_status, nullable=False, default='PENDING')
    earned_at = db.Column(db.DateTime, nullable=False)
    created_at = db.Column(db.DateTime, default=utc_now)

    bill = relationship('Bill')
    client = relationship('Client')


class DetailedLog(db.Model):
    __tablename__ = 'detailed_logs'
    id = db.Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = db.Column(Uuid)
    action = db.Column(db.String(255), nullable=False)
    table_name = db.Column(db.String(50), nullable=False)
    record_id = db.Column(Uuid, nullable=False)
    old_values = db.Column(db.JSON)
    new_values = db.Column(db.JSON)
    ip_address = db.Column(db.String(45))
    user_agent = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=utc_now)
