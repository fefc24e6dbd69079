import os
from datetime import datetime
from flask import Flask, request, jsonify, send_file
from flask_sqlalchemy import SQLAlchemy
from flask_login import LoginManager, UserMixin, login_user, logout_user, login_required, current_user
from werkzeug.security import generate_password_hash, check_password_hash
from sqlalchemy import func
from functools import wraps
import click
import pandas as pd
import io

from storage_service import get_storage, allowed_file, validate_file_size, StorageError
from budget_helpers import (
    BudgetLine,
    CAP_TOLERANCE,
    FUNDING_ALLOCATED,
    FUNDING_COMMITTED,
    FUNDING_UNASSIGNED,
    STATUS_ACTIVE,
    STATUS_APPROVED,
    STATUS_COMPLETED,
    STATUS_PENDING,
    STATE_ALIASES,
    activity_serials,
    active_tranche,
    exceeds_headroom,
    grant_display_key,
    is_committed,
    normalize_reporting_status,
    normalize_state,
    sum_expenses,
    tally_usage,
    tranche_headroom,
)
from serial_utils import (
    build_grant_serial,
    file_extension,
    financial_report_file_key,
    generate_mou_code,
    is_assigned_grant_id,
    mou_document_key,
    next_serial_number,
    pad_sequence,
    program_report_file_key,
    safe_path_segment,
    serial_prefix,
    validate_mmyy,
    workplan_file_key,
    workplan_grant_id,
)
from date_utils import format_date, format_datetime_iso, parse_date, clean_report_date
from mou_document import render_mou_html
import permissions
from permissions import ROLE_SUPERADMIN, ROLE_ADMIN, ROLE_STATE_ERR, ROLE_BASE_ERR, ALL_ROLES, ADMIN_ROLES

app = Flask(__name__)
app.secret_key = os.environ.get("SECRET_KEY", "dev-secret")
db_url = os.environ.get("DATABASE_URL", "sqlite:///fsystem.sqlite3")
app.config["SQLALCHEMY_DATABASE_URI"] = db_url
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
app.config["UPLOAD_FOLDER"] = os.environ.get("UPLOAD_FOLDER", "uploads")
app.config["MAX_UPLOAD_MB"] = int(os.environ.get("MAX_UPLOAD_MB", 10))
app.config["PERMISSIONS_DATA_DIR"] = os.environ.get("PERMISSIONS_DATA_DIR")
app.config["USER_OVERRIDES_PATH"] = os.environ.get("USER_OVERRIDES_PATH")
db = SQLAlchemy(app)

HISTORICAL_PREFIX = "historical_"
DEFAULT_PARTNER_NAME = "Localization Hub"

# ---------- Models ----------
class User(UserMixin, db.Model):
    __tablename__ = 'user'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(256), nullable=False)
    full_name = db.Column(db.String(200), nullable=True)
    role = db.Column(db.String(50), nullable=False, default=ROLE_BASE_ERR)  # superadmin, admin, state_err, base_err
    state = db.Column(db.String(120), nullable=True)  # Home state for state_err / base_err users
    can_see_all_states = db.Column(db.Boolean, default=False, nullable=False)
    visible_states = db.Column(db.JSON, nullable=True)  # extra state names for ERR users
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    last_login_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def set_password(self, password):
        """Hash and set the user's password"""
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    def get_id(self):
        return str(self.id)

    @property
    def display_name(self):
        return self.full_name or self.email

    @property
    def is_admin(self):
        return self.role in ADMIN_ROLES

class Donor(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False, unique=True)
    short_name = db.Column(db.String(20), nullable=False)  # Used in grant serials, e.g. "P2H"

class State(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    state_name = db.Column(db.String(120), unique=True, nullable=False)
    state_name_ar = db.Column(db.String(120), nullable=True)
    state_short = db.Column(db.String(10), nullable=False)  # e.g. "KH"

class EmergencyRoom(db.Model):
    __tablename__ = 'emergency_room'
    id = db.Column(db.Integer, primary_key=True)
    err_code = db.Column(db.String(50), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=True)
    name_ar = db.Column(db.String(200), nullable=True)
    state = db.Column(db.String(120), nullable=True)
    status = db.Column(db.String(20), nullable=False, default='active')

class Partner(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    status = db.Column(db.String(20), nullable=False, default='active')  # active, inactive
    contact_person = db.Column(db.String(200), nullable=True)
    email = db.Column(db.String(200), nullable=True)
    phone = db.Column(db.String(50), nullable=True)

class GrantCall(db.Model):
    __tablename__ = 'grant_call'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    shortname = db.Column(db.String(50), nullable=True)
    donor_id = db.Column(db.Integer, db.ForeignKey("donor.id"), nullable=False)
    amount = db.Column(db.Float, nullable=True)  # NULL means uncapped
    status = db.Column(db.String(20), nullable=False, default='open')  # open, closed
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    donor = db.relationship("Donor")

class FundingCycle(db.Model):
    __tablename__ = 'funding_cycle'
    __table_args__ = (
        db.UniqueConstraint('cycle_number', 'year', name='uq_cycle_number_year'),
    )

    id = db.Column(db.Integer, primary_key=True)
    cycle_number = db.Column(db.Integer, nullable=False)
    year = db.Column(db.Integer, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    status = db.Column(db.String(20), nullable=False, default='open')  # open, closed
    type = db.Column(db.String(20), nullable=False, default='one_off')  # one_off, tranches
    tranche_count = db.Column(db.Integer, nullable=True)
    pool_amount = db.Column(db.Float, nullable=True)
    tranche_splits = db.Column(db.JSON, nullable=True)  # planned cap per tranche, as submitted
    created_by_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    inclusions = db.relationship("CycleGrantInclusion", back_populates="cycle", cascade="all, delete-orphan")
    allocations = db.relationship("CycleStateAllocation", back_populates="cycle", cascade="all, delete-orphan")
    tranches = db.relationship("CycleTranche", back_populates="cycle", cascade="all, delete-orphan",
                               order_by="CycleTranche.tranche_no")

class CycleGrantInclusion(db.Model):
    __tablename__ = 'cycle_grant_inclusion'
    id = db.Column(db.Integer, primary_key=True)
    cycle_id = db.Column(db.Integer, db.ForeignKey("funding_cycle.id"), nullable=False)
    grant_call_id = db.Column(db.Integer, db.ForeignKey("grant_call.id"), nullable=False)
    amount_included = db.Column(db.Float, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    cycle = db.relationship("FundingCycle", back_populates="inclusions")
    grant_call = db.relationship("GrantCall")

class CycleTranche(db.Model):
    __tablename__ = 'cycle_tranche'
    __table_args__ = (
        db.UniqueConstraint('cycle_id', 'tranche_no', name='uq_cycle_tranche_no'),
    )
    id = db.Column(db.Integer, primary_key=True)
    cycle_id = db.Column(db.Integer, db.ForeignKey("funding_cycle.id"), nullable=False)
    tranche_no = db.Column(db.Integer, nullable=False)
    planned_cap = db.Column(db.Float, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default='closed')  # open, closed

    cycle = db.relationship("FundingCycle", back_populates="tranches")

class CycleStateAllocation(db.Model):
    __tablename__ = 'cycle_state_allocation'
    id = db.Column(db.Integer, primary_key=True)
    cycle_id = db.Column(db.Integer, db.ForeignKey("funding_cycle.id"), nullable=False)
    state_name = db.Column(db.String(120), nullable=False)
    amount = db.Column(db.Float, nullable=False, default=0)
    decision_no = db.Column(db.Integer, nullable=False, default=1)  # Tranche the allocation was decided in
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    cycle = db.relationship("FundingCycle", back_populates="allocations")
    projects = db.relationship("Project", back_populates="state_allocation")

class Grant(db.Model):
    """Received grant as reported by finance; activities lists the workplan serials it funds"""
    __tablename__ = 'grant'
    id = db.Column(db.Integer, primary_key=True)
    grant_id = db.Column(db.String(100), nullable=False, index=True)
    project_name = db.Column(db.String(200), nullable=True)
    donor_id = db.Column(db.Integer, db.ForeignKey("donor.id"), nullable=True)
    donor_name = db.Column(db.String(200), nullable=True)
    status = db.Column(db.String(20), nullable=True)  # Active, Complete
    grant_start_date = db.Column(db.Date, nullable=True)
    grant_end_date = db.Column(db.Date, nullable=True)
    sum_activity_amount = db.Column(db.Float, nullable=True)
    total_transferred_amount_usd = db.Column(db.Float, nullable=True)
    sum_transfer_fee_amount = db.Column(db.Float, nullable=True)
    activities = db.Column(db.Text, nullable=True)  # comma-separated workplan serials
    max_workplan_sequence = db.Column(db.Integer, nullable=False, default=0)

    donor = db.relationship("Donor")

class Project(db.Model):
    """Workplan (F1) submitted by an Emergency Response Room"""
    __tablename__ = 'err_projects'
    id = db.Column(db.Integer, primary_key=True)
    err_id = db.Column(db.String(50), nullable=True)
    emergency_room_id = db.Column(db.Integer, db.ForeignKey("emergency_room.id"), nullable=True)
    state = db.Column(db.String(120), nullable=True, index=True)
    locality = db.Column(db.String(200), nullable=True)
    status = db.Column(db.String(20), nullable=False, default=STATUS_PENDING)  # pending, approved, active, completed
    funding_status = db.Column(db.String(20), nullable=False, default=FUNDING_UNASSIGNED)  # unassigned, allocated, committed
    expenses = db.Column(db.JSON, nullable=True)  # [{activity, total_cost}, ...]

    grant_call_id = db.Column(db.Integer, db.ForeignKey("grant_call.id"), nullable=True)
    donor_id = db.Column(db.Integer, db.ForeignKey("donor.id"), nullable=True)
    funding_cycle_id = db.Column(db.Integer, db.ForeignKey("funding_cycle.id"), nullable=True)
    cycle_state_allocation_id = db.Column(db.Integer, db.ForeignKey("cycle_state_allocation.id"), nullable=True)
    grant_serial_id = db.Column(db.String(100), nullable=True, index=True)
    workplan_number = db.Column(db.Integer, nullable=True)
    grant_id = db.Column(db.String(120), nullable=True, index=True)
    grant_row_id = db.Column(db.Integer, db.ForeignKey("grant.id"), nullable=True)
    mou_id = db.Column(db.Integer, db.ForeignKey("mou.id"), nullable=True)

    temp_file_key = db.Column(db.String(500), nullable=True)
    file_key = db.Column(db.String(500), nullable=True)

    project_objectives = db.Column(db.Text, nullable=True)
    intended_beneficiaries = db.Column(db.Text, nullable=True)
    planned_activities = db.Column(db.JSON, nullable=True)
    banking_details = db.Column(db.Text, nullable=True)
    f4_status = db.Column(db.String(20), nullable=True)
    f5_status = db.Column(db.String(20), nullable=True)

    submitted_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    emergency_room = db.relationship("EmergencyRoom")
    grant_call = db.relationship("GrantCall")
    donor = db.relationship("Donor")
    funding_cycle = db.relationship("FundingCycle")
    state_allocation = db.relationship("CycleStateAllocation", back_populates="projects")
    grant_row = db.relationship("Grant")
    mou = db.relationship("Mou", back_populates="projects")

    @property
    def amount(self):
        return sum_expenses(self.expenses)

    def to_dict(self):
        return {
            "id": self.id,
            "err_id": self.err_id,
            "err_name": self.emergency_room.name if self.emergency_room else None,
            "state": self.state,
            "locality": self.locality,
            "status": self.status,
            "funding_status": self.funding_status,
            "expenses": self.expenses or [],
            "amount": self.amount,
            "grant_call_id": self.grant_call_id,
            "grant_call_name": self.grant_call.name if self.grant_call else None,
            "donor_id": self.donor_id,
            "donor_name": self.donor.name if self.donor else None,
            "funding_cycle_id": self.funding_cycle_id,
            "cycle_state_allocation_id": self.cycle_state_allocation_id,
            "grant_serial_id": self.grant_serial_id,
            "workplan_number": self.workplan_number,
            "grant_id": self.grant_id,
            "mou_id": self.mou_id,
            "file_key": self.file_key,
            "temp_file_key": self.temp_file_key,
            "f4_status": self.f4_status,
            "f5_status": self.f5_status,
            "submitted_at": format_datetime_iso(self.submitted_at),
        }

class GrantSerial(db.Model):
    __tablename__ = 'grant_serial'
    id = db.Column(db.Integer, primary_key=True)
    grant_serial = db.Column(db.String(100), unique=True, nullable=False)
    grant_call_id = db.Column(db.Integer, db.ForeignKey("grant_call.id"), nullable=True)
    funding_cycle_id = db.Column(db.Integer, db.ForeignKey("funding_cycle.id"), nullable=True)
    cycle_state_allocation_id = db.Column(db.Integer, db.ForeignKey("cycle_state_allocation.id"), nullable=True)
    state_name = db.Column(db.String(120), nullable=False)
    yymm = db.Column(db.String(4), nullable=False)  # MMYY as typed on the form
    serial_number = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

class GrantWorkplanSeq(db.Model):
    __tablename__ = 'grant_workplan_seq'
    grant_serial = db.Column(db.String(100), primary_key=True)
    last_workplan_number = db.Column(db.Integer, nullable=False, default=0)
    funding_cycle_id = db.Column(db.Integer, db.ForeignKey("funding_cycle.id"), nullable=True)
    last_used = db.Column(db.DateTime, nullable=True)

class GrantIdSequence(db.Model):
    __tablename__ = 'grant_id_sequence'
    id = db.Column(db.Integer, primary_key=True)
    base_pattern = db.Column(db.String(150), unique=True, nullable=False)
    last_sequence_number = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

class Mou(db.Model):
    """Memorandum of understanding (F3) covering one or more committed workplans"""
    id = db.Column(db.Integer, primary_key=True)
    mou_code = db.Column(db.String(60), unique=True, nullable=False)
    partner_name = db.Column(db.String(200), nullable=False)
    err_name = db.Column(db.String(200), nullable=False)
    state = db.Column(db.String(120), nullable=True)
    total_amount = db.Column(db.Float, nullable=False, default=0)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    file_key = db.Column(db.String(500), nullable=True)
    signed_mou_file_key = db.Column(db.String(500), nullable=True)
    payment_confirmation_file = db.Column(db.String(500), nullable=True)
    banking_details_override = db.Column(db.Text, nullable=True)
    partner_contact_override = db.Column(db.Text, nullable=True)
    err_contact_override = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    projects = db.relationship("Project", back_populates="mou")

    def to_dict(self):
        return {
            "id": self.id,
            "mou_code": self.mou_code,
            "partner_name": self.partner_name,
            "err_name": self.err_name,
            "state": self.state,
            "total_amount": self.total_amount,
            "start_date": format_date(self.start_date) or None,
            "end_date": format_date(self.end_date) or None,
            "file_key": self.file_key,
            "signed_mou_file_key": self.signed_mou_file_key,
            "payment_confirmation_file": self.payment_confirmation_file,
            "banking_details_override": self.banking_details_override,
            "partner_contact_override": self.partner_contact_override,
            "err_contact_override": self.err_contact_override,
            "created_at": format_datetime_iso(self.created_at),
        }

class HistoricalActivity(db.Model):
    """Commitments recorded before the portal existed (imported from the activities sheet)"""
    __tablename__ = 'historical_activity'
    id = db.Column(db.Integer, primary_key=True)
    err_code = db.Column(db.String(50), nullable=True)
    err_name = db.Column(db.String(200), nullable=True)
    state = db.Column(db.String(120), nullable=True, index=True)
    serial_number = db.Column(db.String(120), nullable=True)
    usd = db.Column(db.Float, nullable=True)
    project_donor = db.Column(db.String(200), nullable=True)
    mou_signed = db.Column(db.String(100), nullable=True)
    f4_status = db.Column(db.String(50), nullable=True)  # as typed in the sheet, e.g. "Completed"
    f5_status = db.Column(db.String(50), nullable=True)
    date_report_completed = db.Column(db.String(50), nullable=True)
    target_individuals = db.Column(db.Integer, nullable=True)
    target_families = db.Column(db.Integer, nullable=True)
    imported_at = db.Column(db.DateTime, default=datetime.utcnow)

class FinancialReport(db.Model):
    """F4 financial report summary"""
    __tablename__ = 'err_summary'
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("err_projects.id"), nullable=True)
    historical_activity_id = db.Column(db.Integer, db.ForeignKey("historical_activity.id"), nullable=True)
    err_id = db.Column(db.String(50), nullable=True)
    report_date = db.Column(db.Date, nullable=True)
    total_grant = db.Column(db.Float, nullable=True)
    total_expenses = db.Column(db.Float, nullable=True)
    total_expenses_sdg = db.Column(db.Float, nullable=True)
    remainder = db.Column(db.Float, nullable=True)
    beneficiaries = db.Column(db.Text, nullable=True)
    lessons = db.Column(db.Text, nullable=True)
    training = db.Column(db.Text, nullable=True)
    project_objectives = db.Column(db.Text, nullable=True)
    language = db.Column(db.String(10), nullable=False, default='en')
    created_by_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    project = db.relationship("Project")
    historical_activity = db.relationship("HistoricalActivity")
    expenses = db.relationship("ReportExpense", back_populates="report", cascade="all, delete-orphan")
    attachments = db.relationship("ReportAttachment", back_populates="report", cascade="all, delete-orphan")

class ReportExpense(db.Model):
    __tablename__ = 'err_expense'
    id = db.Column(db.Integer, primary_key=True)
    report_id = db.Column(db.Integer, db.ForeignKey("err_summary.id"), nullable=False)
    expense_activity = db.Column(db.String(300), nullable=True)
    expense_description = db.Column(db.Text, nullable=True)
    expense_amount = db.Column(db.Float, nullable=True)
    expense_amount_sdg = db.Column(db.Float, nullable=True)
    payment_date = db.Column(db.Date, nullable=True)
    payment_method = db.Column(db.String(50), nullable=True)
    receipt_no = db.Column(db.String(100), nullable=True)
    seller = db.Column(db.String(200), nullable=True)

    report = db.relationship("FinancialReport", back_populates="expenses")

class ReportAttachment(db.Model):
    __tablename__ = 'err_summary_attachment'
    id = db.Column(db.Integer, primary_key=True)
    report_id = db.Column(db.Integer, db.ForeignKey("err_summary.id"), nullable=False)
    file_key = db.Column(db.String(500), nullable=False)
    file_type = db.Column(db.String(50), nullable=False, default='summary_pdf')
    uploaded_by_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)

    report = db.relationship("FinancialReport", back_populates="attachments")

class ProgramReport(db.Model):
    """F5 program (narrative) report"""
    __tablename__ = 'err_program_report'
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("err_projects.id"), nullable=False)
    report_date = db.Column(db.Date, nullable=True)
    positive_changes = db.Column(db.Text, nullable=True)
    negative_results = db.Column(db.Text, nullable=True)
    unexpected_results = db.Column(db.Text, nullable=True)
    lessons_learned = db.Column(db.Text, nullable=True)
    suggestions = db.Column(db.Text, nullable=True)
    reporting_person = db.Column(db.String(200), nullable=True)
    is_draft = db.Column(db.Boolean, nullable=False, default=False)
    language = db.Column(db.String(10), nullable=False, default='en')
    created_by_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    project = db.relationship("Project")
    reach = db.relationship("ProgramReach", back_populates="report", cascade="all, delete-orphan")
    files = db.relationship("ProgramFile", back_populates="report", cascade="all, delete-orphan")

class ProgramReach(db.Model):
    __tablename__ = 'err_program_reach'
    id = db.Column(db.Integer, primary_key=True)
    report_id = db.Column(db.Integer, db.ForeignKey("err_program_report.id"), nullable=False)
    activity_name = db.Column(db.String(300), nullable=True)
    activity_goal = db.Column(db.Text, nullable=True)
    location = db.Column(db.String(200), nullable=True)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    individual_count = db.Column(db.Integer, nullable=True)
    household_count = db.Column(db.Integer, nullable=True)
    male_count = db.Column(db.Integer, nullable=True)
    female_count = db.Column(db.Integer, nullable=True)
    under18_male = db.Column(db.Integer, nullable=True)
    under18_female = db.Column(db.Integer, nullable=True)
    people_with_disabilities = db.Column(db.Integer, nullable=True)
    is_draft = db.Column(db.Boolean, nullable=False, default=False)

    report = db.relationship("ProgramReport", back_populates="reach")

class ProgramFile(db.Model):
    __tablename__ = 'err_program_file'
    id = db.Column(db.Integer, primary_key=True)
    report_id = db.Column(db.Integer, db.ForeignKey("err_program_report.id"), nullable=False)
    file_name = db.Column(db.String(255), nullable=False)
    file_key = db.Column(db.String(500), nullable=False)
    file_type = db.Column(db.String(50), nullable=False, default='program_report')
    uploaded_by_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)

    report = db.relationship("ProgramReport", back_populates="files")

# ---------- Flask-Login Configuration ----------
login_manager = LoginManager()
login_manager.init_app(app)

@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, int(user_id))

@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({"success": False, "error": "Unauthorized"}), 401

# ---------- Utility ----------
def json_error(message, status=400, **extra):
    payload = {"success": False, "error": message}
    payload.update(extra)
    return jsonify(payload), status

def role_required(*allowed_roles):
    """Decorator to restrict an endpoint to specific roles"""
    def decorator(f):
        @wraps(f)
        @login_required
        def decorated_function(*args, **kwargs):
            if current_user.role not in allowed_roles:
                return json_error("You don't have permission to access this resource.", 403)
            return f(*args, **kwargs)
        return decorated_function
    return decorator

def permission_required(function_code):
    """Decorator checking a function-level permission (role defaults plus user overrides)"""
    def decorator(f):
        @wraps(f)
        @login_required
        def decorated_function(*args, **kwargs):
            if not permissions.can(current_user, function_code):
                app.logger.warning("Permission denied: user %s lacks %s", current_user.id, function_code)
                return json_error("Permission denied", 403, code="PERMISSION_DENIED", functionCode=function_code)
            return f(*args, **kwargs)
        return decorated_function
    return decorator

def allowed_state_names(user):
    """None when the user sees every state, otherwise the set of canonical state names they may see"""
    if user.role in ADMIN_ROLES or user.can_see_all_states:
        return None
    names = {normalize_state(s) for s in (user.visible_states or [])}
    if user.state:
        names.add(normalize_state(user.state))
    names.discard('')
    return names

def can_access_state(user, state_name):
    """Admins see every state; ERR users their home state plus any granted visible states"""
    allowed = allowed_state_names(user)
    if allowed is None:
        return True
    return normalize_state(state_name) in allowed

def restrict_to_visible_states(query, column):
    """Filter a query on a state column down to what the current user may see"""
    allowed = allowed_state_names(current_user)
    if allowed is None:
        return query
    spellings = set(allowed)
    spellings.update(alias for alias, canonical in STATE_ALIASES.items() if canonical in allowed)
    return query.filter(column.in_(sorted(spellings)))

def inaccessible_project_ids(projects):
    return [p.id for p in projects if not can_access_state(current_user, p.state)]

def request_json():
    return request.get_json(silent=True) or {}

def to_float(value, default=None):
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default

def to_int(value, default=None):
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default

def split_historical_id(project_id):
    """Return (is_historical, numeric_id) for ids such as 42 or "historical_42" """
    raw = str(project_id or "").strip()
    if raw.startswith(HISTORICAL_PREFIX):
        return True, to_int(raw[len(HISTORICAL_PREFIX):])
    return False, to_int(raw)

def ensure_seed_data():
    # Seed states used in serials
    if State.query.count() == 0:
        for name, short in [
            ("Khartoum", "KH"), ("Al Jazirah", "JZ"), ("Sennar", "SN"), ("Gadaref", "GD"),
            ("North Darfur", "ND"), ("South Darfur", "SD"), ("North Kordofan", "NK"),
            ("South Kordofan", "SK"), ("Kassala", "KS"), ("Red Sea", "RS"),
            ("Blue Nile", "BN"), ("White Nile", "WN"), ("River Nile", "RN"),
            ("Northern", "NO"), ("West Darfur", "WD"), ("Central Darfur", "CD"),
            ("East Darfur", "ED"), ("West Kordofan", "WK"),
        ]:
            db.session.add(State(state_name=name, state_short=short))
    if Partner.query.count() == 0:
        db.session.add(Partner(name=DEFAULT_PARTNER_NAME, status='active'))
    db.session.commit()

def state_short_for(state_name):
    state = State.query.filter_by(state_name=state_name).first()
    if not state and state_name:
        state = State.query.filter_by(state_name=normalize_state(state_name)).first()
    return state.state_short if state else "XX"

# ---------- Budget Helper Functions ----------

def included_by_grant_call():
    """Sum of cycle inclusions keyed by grant call id"""
    rows = db.session.query(
        CycleGrantInclusion.grant_call_id,
        func.sum(CycleGrantInclusion.amount_included)
    ).group_by(CycleGrantInclusion.grant_call_id).all()
    return {grant_call_id: float(total or 0) for grant_call_id, total in rows}

def historical_by_state():
    totals = {}
    for activity in HistoricalActivity.query.all():
        state = normalize_state(activity.state)
        if not state or not activity.usd or activity.usd <= 0:
            continue
        totals[state] = totals.get(state, 0.0) + activity.usd
    return totals

def grant_call_budget(grant_call_id, exclude_project_id=None):
    """
    Budget position of a grant call across all cycles

    Args:
        grant_call_id: GrantCall id
        exclude_project_id: project left out of the usage totals (the one being placed)

    Returns:
        BudgetLine with total = included amount
    """
    included = db.session.query(func.sum(CycleGrantInclusion.amount_included)).filter(
        CycleGrantInclusion.grant_call_id == grant_call_id
    ).scalar() or 0
    query = Project.query.filter(Project.grant_call_id == grant_call_id)
    if exclude_project_id is not None:
        query = query.filter(Project.id != exclude_project_id)
    usage = tally_usage(query.all(), allocated_only=True).get(None, BudgetLine())
    return BudgetLine(total=float(included), committed=usage.committed, pending=usage.pending)

def grant_call_uncommitted_amount(grant_call):
    """Amount of a grant call not yet included in any cycle; None when uncapped"""
    if grant_call.amount is None:
        return None
    included = db.session.query(func.sum(CycleGrantInclusion.amount_included)).filter(
        CycleGrantInclusion.grant_call_id == grant_call.id
    ).scalar() or 0
    return grant_call.amount - float(included)

def allocation_usage(allocation):
    """Committed (approved/active) and pending (pending + allocated) for one state allocation"""
    committed = 0.0
    pending = 0.0
    for project in allocation.projects:
        if project.funding_status == FUNDING_COMMITTED and project.status in (STATUS_APPROVED, STATUS_ACTIVE):
            committed += project.amount
        elif project.funding_status == FUNDING_ALLOCATED and project.status == STATUS_PENDING:
            pending += project.amount
    return committed, pending

def state_allocation_for(cycle_id, state_name):
    """Allocation of a cycle for a state, matching spelling variants of the state name"""
    key = normalize_state(state_name)
    if not key:
        return None
    for allocation in CycleStateAllocation.query.filter_by(cycle_id=cycle_id).order_by(CycleStateAllocation.id.asc()):
        if normalize_state(allocation.state_name) == key:
            return allocation
    return None

def allocation_to_dict(allocation):
    committed, pending = allocation_usage(allocation)
    return {
        "id": allocation.id,
        "cycle_id": allocation.cycle_id,
        "state_name": allocation.state_name,
        "amount": allocation.amount,
        "decision_no": allocation.decision_no,
        "total_committed": committed,
        "total_pending": pending,
        "remaining": allocation.amount - committed - pending,
    }

def cycle_to_dict(cycle, detail=False):
    data = {
        "id": cycle.id,
        "cycle_number": cycle.cycle_number,
        "year": cycle.year,
        "name": cycle.name,
        "start_date": format_date(cycle.start_date) or None,
        "end_date": format_date(cycle.end_date) or None,
        "status": cycle.status,
        "type": cycle.type,
        "tranche_count": cycle.tranche_count,
        "pool_amount": cycle.pool_amount,
        "tranche_splits": cycle.tranche_splits,
        "total_included": sum(inc.amount_included or 0 for inc in cycle.inclusions),
        "created_at": format_datetime_iso(cycle.created_at),
    }
    if detail:
        data["grant_inclusions"] = [inclusion_to_dict(inc) for inc in cycle.inclusions]
        data["state_allocations"] = [allocation_to_dict(a) for a in cycle.allocations]
        data["tranches"] = [tranche_to_dict(t) for t in cycle.tranches]
    return data

def inclusion_to_dict(inclusion):
    grant_call = inclusion.grant_call
    return {
        "id": inclusion.id,
        "cycle_id": inclusion.cycle_id,
        "grant_call_id": inclusion.grant_call_id,
        "amount_included": inclusion.amount_included,
        "grant_call_name": grant_call.name if grant_call else None,
        "grant_call_shortname": grant_call.shortname if grant_call else None,
        "grant_call_amount": grant_call.amount if grant_call else None,
        "donor_name": grant_call.donor.name if grant_call and grant_call.donor else None,
        "donor_short_name": grant_call.donor.short_name if grant_call and grant_call.donor else None,
    }

def tranche_to_dict(tranche):
    return {
        "id": tranche.id,
        "cycle_id": tranche.cycle_id,
        "tranche_no": tranche.tranche_no,
        "planned_cap": tranche.planned_cap,
        "status": tranche.status,
    }

def validate_inclusion(grant_call, amount, cycle=None):
    """
    Check a grant inclusion request

    Returns:
        tuple: (ok: bool, message: str or None, available: float or None)
    """
    if amount is None or amount <= 0:
        return (False, "amount_included must be greater than zero", None)
    if cycle is not None:
        duplicate = CycleGrantInclusion.query.filter_by(cycle_id=cycle.id, grant_call_id=grant_call.id).first()
        if duplicate:
            return (False, "Grant call is already included in this cycle", None)
    available = grant_call_uncommitted_amount(grant_call)
    if available is not None and amount > available + CAP_TOLERANCE:
        return (False, "Amount exceeds available grant amount", available)
    return (True, None, available)

def allocated_in_cycle(cycle_id, *criteria, exclude_allocation_id=None):
    query = db.session.query(func.sum(CycleStateAllocation.amount)).filter(
        CycleStateAllocation.cycle_id == cycle_id, *criteria
    )
    if exclude_allocation_id is not None:
        query = query.filter(CycleStateAllocation.id != exclude_allocation_id)
    return float(query.scalar() or 0)

def decision_headroom(cycle_id, decision_no, exclude_allocation_id=None):
    """
    Cap position of one tranche decision

    Args:
        cycle_id: FundingCycle id
        decision_no: tranche the allocations are recorded against
        exclude_allocation_id: allocation left out of the totals (the one being edited)

    Returns:
        tuple: (headroom: float or None when uncapped, already: float allocated in the decision)
    """
    tranches = CycleTranche.query.filter_by(cycle_id=cycle_id).order_by(CycleTranche.tranche_no.asc()).all()
    earlier = allocated_in_cycle(cycle_id, CycleStateAllocation.decision_no < decision_no,
                                 exclude_allocation_id=exclude_allocation_id)
    headroom = tranche_headroom([t.planned_cap for t in tranches], decision_no, earlier)
    already = allocated_in_cycle(cycle_id, CycleStateAllocation.decision_no == decision_no,
                                 exclude_allocation_id=exclude_allocation_id)
    return headroom, already

# ---------- Serial and Sequence Helper Functions ----------

def resolve_serial_donor(grant_call_id, funding_cycle_id):
    """
    Find the grant call and donor a new serial is issued under

    A cycle-only request uses the grant call of the cycle's first inclusion.

    Raises:
        ValueError: when no grant call or donor short name can be resolved
    """
    grant_call = None
    if grant_call_id:
        grant_call = db.session.get(GrantCall, grant_call_id)
        if not grant_call:
            raise ValueError("Grant call not found")
    elif funding_cycle_id:
        inclusion = CycleGrantInclusion.query.filter_by(cycle_id=funding_cycle_id).order_by(CycleGrantInclusion.id.asc()).first()
        if not inclusion:
            raise ValueError("No grants found in funding cycle")
        grant_call = inclusion.grant_call
    if not grant_call or not grant_call.donor:
        raise ValueError("Grant call has no donor")
    if not grant_call.donor.short_name:
        raise ValueError("Donor short name missing")
    return grant_call, grant_call.donor

def create_grant_serial(state_name, yymm, grant_call_id=None, funding_cycle_id=None, cycle_state_allocation_id=None):
    """
    Issue the next grant serial for a donor/state/month and start its workplan sequence at 0

    Returns:
        GrantSerial (flushed, not committed)

    Raises:
        ValueError: on missing parameters or unresolvable donor
    """
    if not state_name or not yymm:
        raise ValueError("Missing required parameters: state_name and yymm")
    if not validate_mmyy(yymm):
        raise ValueError("MMYY must be 4 digits")
    if not grant_call_id and not funding_cycle_id:
        raise ValueError("Missing required parameter: grant_call_id or funding_cycle_id")
    if funding_cycle_id and not cycle_state_allocation_id:
        raise ValueError("Missing required parameter: cycle_state_allocation_id")

    grant_call, donor = resolve_serial_donor(grant_call_id, funding_cycle_id)
    prefix = serial_prefix(donor.short_name, state_short_for(state_name), yymm)
    existing = [row.grant_serial for row in GrantSerial.query.filter(GrantSerial.grant_serial.like(prefix + "%")).all()]
    number = next_serial_number(existing, prefix)

    serial = GrantSerial(
        grant_serial=f"{prefix}{pad_sequence(number, 4)}",
        grant_call_id=grant_call.id,
        funding_cycle_id=funding_cycle_id,
        cycle_state_allocation_id=cycle_state_allocation_id,
        state_name=state_name,
        yymm=yymm,
        serial_number=number,
    )
    db.session.add(serial)
    db.session.add(GrantWorkplanSeq(grant_serial=serial.grant_serial, last_workplan_number=0,
                                    funding_cycle_id=funding_cycle_id))
    db.session.flush()
    return serial

def workplan_sequence(grant_serial, lock=False):
    query = GrantWorkplanSeq.query.filter_by(grant_serial=grant_serial)
    if lock:
        query = query.with_for_update()
    return query.first()

def issue_workplan_number(grant_serial, funding_cycle_id=None):
    """Consume the next workplan number for a serial"""
    seq = workplan_sequence(grant_serial, lock=True)
    if not seq:
        seq = GrantWorkplanSeq(grant_serial=grant_serial, last_workplan_number=0, funding_cycle_id=funding_cycle_id)
        db.session.add(seq)
    seq.last_workplan_number = (seq.last_workplan_number or 0) + 1
    seq.last_used = datetime.utcnow()
    db.session.flush()
    return seq.last_workplan_number

def release_workplan_number(grant_serial, workplan_number):
    """Give back a workplan number when it is still the last one issued for the serial"""
    seq = workplan_sequence(grant_serial, lock=True)
    if seq and workplan_number and seq.last_workplan_number == workplan_number:
        seq.last_workplan_number = workplan_number - 1
        db.session.flush()
        return True
    return False

def relocate_file(storage, src_key, dst_key):
    """Move a stored file to its final key; no source key is a no-op, a missing source file raises StorageError"""
    if not src_key:
        return None
    return storage.move_file(src_key, dst_key)

def assign_project_to_serial(project, grant_serial, grant_call, mmyy, funding_cycle_id, storage):
    """
    Give a committed workplan its number under grant_serial and move its form to the final key

    Returns:
        str: the new workplan grant id

    Raises:
        StorageError: when the form file cannot be moved (the issued number is released)
    """
    workplan_number = issue_workplan_number(grant_serial, funding_cycle_id)
    grant_id = workplan_grant_id(grant_serial, workplan_number)
    source_key = project.temp_file_key or project.file_key
    final_key = project.file_key
    if source_key:
        final_key = workplan_file_key(grant_call.donor.short_name, state_short_for(project.state), mmyy,
                                      grant_id, file_extension(source_key))
        try:
            relocate_file(storage, source_key, final_key)
        except StorageError:
            release_workplan_number(grant_serial, workplan_number)
            raise

    allocation = state_allocation_for(funding_cycle_id, project.state)
    project.grant_call_id = grant_call.id
    project.donor_id = grant_call.donor_id
    project.funding_cycle_id = funding_cycle_id
    project.grant_serial_id = grant_serial
    project.workplan_number = workplan_number
    project.cycle_state_allocation_id = allocation.id if allocation else None
    project.grant_id = grant_id
    project.file_key = final_key
    project.temp_file_key = None
    db.session.flush()
    return grant_id

# ---------- MOU Helper Functions ----------

def mou_is_assigned(mou):
    return any(is_assigned_grant_id(p.grant_id) for p in mou.projects)

def recompute_mou_total(mou):
    mou.total_amount = sum(p.amount for p in mou.projects)
    return mou.total_amount

def store_mou_document(mou):
    """Render the MOU and save it under f3-mous/; returns the storage key"""
    html = render_mou_html(mou, list(mou.projects))
    key = mou_document_key(mou.id, mou.mou_code)
    get_storage().save_bytes(html, key)
    mou.file_key = key
    return key

def find_grant(grant_id, donor_name):
    return Grant.query.filter_by(grant_id=grant_id, donor_name=donor_name).first()

def grant_donor_short_name(grant, donor_name):
    donor = grant.donor or Donor.query.filter_by(name=donor_name).first()
    return donor.short_name if donor and donor.short_name else None

def remove_serial_from_grants(serial):
    """Drop a workplan serial from whichever grant lists it"""
    for grant in Grant.query.filter(Grant.activities.like(f"%{serial}%")).all():
        serials = activity_serials(grant.activities)
        if serial not in serials:
            continue
        grant.activities = ",".join(s for s in serials if s != serial) or None
        return grant
    return None

def assign_mou_projects(mou, projects, grant, donor_short, mmyy, storage):
    """
    Number each MOU workplan under a received grant

    Workplan serials continue from the grant's max_workplan_sequence and are
    appended to the grant's activities list.

    Returns:
        tuple: (assigned_count: int, errors: list of str)
    """
    assigned = 0
    errors = []
    for project in projects:
        next_number = (grant.max_workplan_sequence or 0) + 1
        serial = build_grant_serial(donor_short, state_short_for(project.state), mmyy, next_number)
        source_key = project.temp_file_key or project.file_key
        final_key = project.file_key
        try:
            if source_key:
                final_key = workplan_file_key(donor_short, state_short_for(project.state), mmyy, serial,
                                              file_extension(source_key))
                relocate_file(storage, source_key, final_key)
        except StorageError as e:
            app.logger.error("Error assigning F1 %s: %s", project.id, e)
            errors.append(f"F1 {project.id}: {e}")
            continue

        project.grant_id = serial
        project.grant_row_id = grant.id
        project.donor_id = grant.donor_id or project.donor_id
        project.workplan_number = next_number
        project.file_key = final_key
        project.temp_file_key = None
        project.status = STATUS_ACTIVE

        grant.max_workplan_sequence = next_number
        grant.activities = f"{grant.activities},{serial}" if grant.activities else serial
        assigned += 1
    db.session.flush()
    return assigned, errors

# ---------- Authentication ----------
@app.route("/api/login", methods=["POST"])
def api_login():
    data = request_json()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    if not email or not password:
        return json_error("Email and password are required", 400)

    user = User.query.filter_by(email=email).first()
    if not user or not user.check_password(password):
        return json_error("Invalid email or password", 401)
    if not user.is_active:
        return json_error("Account is inactive", 403)

    user.last_login_at = datetime.utcnow()
    db.session.commit()
    login_user(user)
    return jsonify({"success": True, "user": user_to_dict(user)})

@app.route("/api/logout", methods=["POST"])
@login_required
def api_logout():
    logout_user()
    return jsonify({"success": True})

def user_to_dict(user):
    return {
        "id": user.id,
        "email": user.email,
        "display_name": user.display_name,
        "role": user.role,
        "state": user.state,
        "is_active": user.is_active,
        "can_see_all_states": user.can_see_all_states,
        "visible_states": user.visible_states or [],
    }

@app.route("/api/users/me")
@login_required
def api_users_me():
    data = user_to_dict(current_user)
    data["allowed_functions"] = permissions.allowed_functions(current_user)
    return jsonify(data)

ACCESS_RIGHTS_ROLES = (ROLE_ADMIN, ROLE_STATE_ERR, ROLE_BASE_ERR)

@app.route("/api/users/<int:user_id>/access-rights", methods=["PUT"])
@role_required(ROLE_ADMIN, ROLE_SUPERADMIN)
def api_user_access_rights(user_id):
    """Set a user's role and which states they may see"""
    user = db.session.get(User, user_id)
    if not user:
        return json_error("User not found", 404)
    if user.role == ROLE_SUPERADMIN:
        return json_error("Superadmin access rights cannot be changed", 403)

    data = request_json()
    role = data.get("role", user.role)
    if role not in ACCESS_RIGHTS_ROLES:
        return json_error("Invalid role. Must be admin, state_err, or base_err", 400)
    can_see_all = data.get("can_see_all_states", user.can_see_all_states)
    if not isinstance(can_see_all, bool):
        return json_error("can_see_all_states must be a boolean", 400)
    requested = data.get("visible_states", user.visible_states or [])
    if not isinstance(requested, list):
        return json_error("visible_states must be an array", 400)

    known = {s.state_name for s in State.query.all()}
    visible, unknown = [], []
    for value in requested:
        name = normalize_state(value)
        if name not in known:
            unknown.append(value)
        elif name not in visible:
            visible.append(name)
    if unknown:
        return json_error("Unknown states", 400, states=unknown)

    user.role = role
    user.can_see_all_states = can_see_all
    user.visible_states = visible
    db.session.commit()
    app.logger.info("User %s set access rights for user %s: role=%s all_states=%s states=%s",
                    current_user.id, user.id, role, can_see_all, visible)
    return jsonify({"success": True, "user": user_to_dict(user)})

# ---------- Reference Data ----------
@app.route("/api/states")
@login_required
def api_states():
    states = State.query.order_by(State.state_name.asc()).all()
    return jsonify([{
        "id": s.id,
        "state_name": s.state_name,
        "state_name_ar": s.state_name_ar,
        "state_short": s.state_short,
    } for s in states])

@app.route("/api/donors")
@login_required
def api_donors():
    donors = Donor.query.order_by(Donor.name.asc()).all()
    return jsonify([{"id": d.id, "name": d.name, "short_name": d.short_name} for d in donors])

@app.route("/api/grants")
@login_required
def api_grants():
    """Received grants, newest start date first; ?status=Active or Complete narrows the list"""
    status = (request.args.get("status") or "all").strip()
    query = Grant.query
    if status.lower() != "all":
        query = query.filter(func.lower(Grant.status) == status.lower())
    grants = query.order_by(Grant.grant_start_date.desc(), Grant.id.desc()).all()
    return jsonify([{
        "id": g.id,
        "grant_id": g.grant_id,
        "project_name": g.project_name,
        "donor_name": g.donor_name,
        "grant_start_date": format_date(g.grant_start_date) or None,
        "grant_end_date": format_date(g.grant_end_date) or None,
        "status": g.status,
        "total_transferred_amount_usd": g.total_transferred_amount_usd,
        "sum_activity_amount": g.sum_activity_amount,
        "sum_transfer_fee_amount": g.sum_transfer_fee_amount,
    } for g in grants])

@app.route("/api/grant-calls", methods=["GET"])
@login_required
def api_grant_calls():
    """Open grant calls that still have money to include in a cycle"""
    rows = []
    for grant_call in GrantCall.query.filter_by(status='open').order_by(GrantCall.name.asc()).all():
        available = grant_call_uncommitted_amount(grant_call)
        if available is not None and available <= 0:
            continue
        rows.append({
            "id": grant_call.id,
            "name": grant_call.name,
            "shortname": grant_call.shortname,
            "amount": grant_call.amount,
            "available_amount": available,
            "donor_id": grant_call.donor_id,
            "donor_name": grant_call.donor.name if grant_call.donor else None,
        })
    return jsonify(rows)

@app.route("/api/grant-calls", methods=["POST"])
@role_required(ROLE_ADMIN, ROLE_SUPERADMIN)
def api_grant_call_create():
    data = request_json()
    name = (data.get("name") or "").strip()
    donor_id = to_int(data.get("donor_id"))
    if not name or not donor_id:
        return json_error("name and donor_id are required", 400)
    if not db.session.get(Donor, donor_id):
        return json_error("Donor not found", 404)
    amount = to_float(data.get("amount"))
    if amount is not None and amount < 0:
        return json_error("amount cannot be negative", 400)

    grant_call = GrantCall(
        name=name,
        shortname=(data.get("shortname") or "").strip() or None,
        donor_id=donor_id,
        amount=amount,
        status=data.get("status") or 'open',
    )
    db.session.add(grant_call)
    db.session.commit()
    return jsonify({"success": True, "id": grant_call.id}), 201

# ---------- Permissions API ----------
@app.route("/api/permissions/functions")
@role_required(ROLE_ADMIN, ROLE_SUPERADMIN)
def api_permission_functions():
    return jsonify({
        "functions": permissions.function_list(),
        "by_module": permissions.functions_by_module(),
        "role_defaults": {role: permissions.role_base(role) for role in ALL_ROLES},
    })

@app.route("/api/permissions/user/<int:user_id>")
@role_required(ROLE_ADMIN, ROLE_SUPERADMIN)
def api_permission_user(user_id):
    user = db.session.get(User, user_id)
    if not user:
        return json_error("User not found", 404)
    override = permissions.read_overrides().get(str(user.id)) or {}
    return jsonify({
        "user_id": user.id,
        "role": user.role,
        "role_base": permissions.role_base(user.role),
        "overrides": {"add": override.get("add") or [], "remove": override.get("remove") or []},
        "allowed": permissions.allowed_functions(user),
    })

@app.route("/api/permissions/user/<int:user_id>/overrides", methods=["PUT"])
@role_required(ROLE_ADMIN, ROLE_SUPERADMIN)
def api_permission_user_overrides(user_id):
    user = db.session.get(User, user_id)
    if not user:
        return json_error("User not found", 404)
    if user.role == ROLE_SUPERADMIN and current_user.role != ROLE_SUPERADMIN:
        return json_error("Only a superadmin can change superadmin permissions", 403)

    data = request_json()
    add = data.get("add") or []
    remove = data.get("remove") or []
    if not isinstance(add, list) or not isinstance(remove, list):
        return json_error("add and remove must be lists", 400)
    known = set(permissions.all_codes())
    unknown = sorted(set(add + remove) - known)
    if unknown:
        return json_error("Unknown function codes", 400, codes=unknown)

    try:
        permissions.set_user_override(user.id, add, remove)
    except OSError as e:
        app.logger.error("Failed to save permission overrides for user %s: %s", user.id, e)
        return json_error("Failed to save overrides", 500)
    return jsonify({"success": True, "allowed": permissions.allowed_functions(user)})

# ---------- Pool API ----------
@app.route("/api/pool/summary")
@login_required
def api_pool_summary():
    open_calls = GrantCall.query.filter_by(status='open').all()
    total_grants = sum(gc.amount or 0 for gc in open_calls)
    total_included = float(db.session.query(func.sum(CycleGrantInclusion.amount_included)).scalar() or 0)
    usage = tally_usage(Project.query.all(), allocated_only=True).get(None, BudgetLine())
    return jsonify({
        "total_grants": total_grants,
        "total_included": total_included,
        "total_not_included": total_grants - total_included,
        "total_committed": usage.committed,
        "total_pending": usage.pending,
        "remaining": total_included - usage.committed - usage.pending,
    })

def pool_by_state_rows():
    allocated = {}
    for allocation in CycleStateAllocation.query.all():
        state = normalize_state(allocation.state_name)
        allocated[state] = allocated.get(state, 0.0) + (allocation.amount or 0)
    historical = historical_by_state()
    usage = tally_usage(Project.query.all(), key=lambda p: normalize_state(p.state) or "Unknown")

    rows = []
    for state in sorted(set(allocated) | set(usage) | set(historical)):
        line = usage.get(state, BudgetLine())
        line.total = allocated.get(state, 0.0)
        line.historical = historical.get(state, 0.0)
        rows.append({
            "state_name": state,
            "allocated": line.total,
            "historical": line.historical,
            "committed": line.committed,
            "pending": line.pending,
            "remaining": line.remaining,
        })
    return rows

@app.route("/api/pool/by-state")
@login_required
def api_pool_by_state():
    return jsonify(pool_by_state_rows())

@app.route("/api/pool/by-state.csv")
@login_required
def api_pool_by_state_csv():
    df = pd.DataFrame(pool_by_state_rows(),
                      columns=["state_name", "allocated", "historical", "committed", "pending", "remaining"])
    buffer = io.BytesIO()
    df.to_csv(buffer, index=False)
    buffer.seek(0)
    return send_file(buffer, as_attachment=True, download_name="pool_by_state.csv", mimetype="text/csv")

@app.route("/api/pool/by-donor")
@login_required
def api_pool_by_donor():
    included = included_by_grant_call()
    committed = {}
    pending = {}
    for project in Project.query.filter(Project.grant_call_id.isnot(None)).all():
        # Anything assigned to the grant call but not committed is pending
        bucket = committed if is_committed(project.funding_status) else pending
        bucket[project.grant_call_id] = bucket.get(project.grant_call_id, 0.0) + project.amount

    rows = []
    for grant_call_id, amount in included.items():
        grant_call = db.session.get(GrantCall, grant_call_id)
        donor = grant_call.donor if grant_call else None
        c = committed.get(grant_call_id, 0.0)
        p = pending.get(grant_call_id, 0.0)
        rows.append({
            "donor_id": donor.id if donor else None,
            "donor_name": donor.name if donor else None,
            "grant_call_id": grant_call_id,
            "grant_call_name": grant_call.name if grant_call else None,
            "included": amount,
            "committed": c,
            "pending": p,
            "remaining": amount - c - p,
        })
    return jsonify(rows)

@app.route("/api/pool/by-grant-for-state")
@login_required
def api_pool_by_grant_for_state():
    state = (request.args.get("state") or "").strip()
    if not state:
        return json_error("state is required", 400)
    state_key = normalize_state(state)

    projects = Project.query.all()
    by_grant = tally_usage([p for p in projects if p.grant_call_id], key=lambda p: p.grant_call_id,
                           allocated_only=True)
    state_usage = tally_usage([p for p in projects if normalize_state(p.state) == state_key],
                              allocated_only=True).get(None, BudgetLine())
    state_usage.total = sum(a.amount or 0 for a in CycleStateAllocation.query.all()
                            if normalize_state(a.state_name) == state_key)
    state_remaining = state_usage.remaining

    rows = []
    for grant_call_id, amount in included_by_grant_call().items():
        grant_call = db.session.get(GrantCall, grant_call_id)
        line = by_grant.get(grant_call_id, BudgetLine())
        line.total = amount
        remaining_for_state = min(line.remaining, state_remaining)
        if remaining_for_state <= 0:
            continue
        donor = grant_call.donor if grant_call else None
        rows.append({
            "grant_call_id": grant_call_id,
            "grant_call_name": grant_call.name if grant_call else None,
            "donor_id": donor.id if donor else None,
            "donor_name": donor.name if donor else None,
            "donor_short": donor.short_name if donor else None,
            "included": amount,
            "remaining_for_state": remaining_for_state,
        })
    return jsonify(rows)

@app.route("/api/pool/grant-remaining")
@login_required
def api_pool_grant_remaining():
    """Remaining on a received grant; all FCDO-* grants report under FCDO"""
    grant_id = (request.args.get("grantId") or "").strip()
    if not grant_id:
        return json_error("grantId is required", 400)
    display_key = grant_display_key(grant_id)

    total = 0.0
    serials = []
    grant_row_ids = set()
    for grant in Grant.query.all():
        raw_id = (grant.grant_id or "").strip()
        if not raw_id or grant_display_key(raw_id) != display_key:
            continue
        grant_row_ids.add(grant.id)
        transferred = grant.total_transferred_amount_usd or 0
        fee = grant.sum_transfer_fee_amount or 0
        total += max(0.0, transferred - fee)
        for serial in activity_serials(grant.activities):
            if serial not in serials:
                serials.append(serial)

    linked = [p for p in Project.query.all()
              if (p.grant_row_id and p.grant_row_id in grant_row_ids) or (p.grant_id and p.grant_id in serials)]
    line = tally_usage(linked).get(None, BudgetLine())
    line.total = total
    return jsonify({
        "total": total,
        "committed": line.committed,
        "allocated": line.pending,
        "remaining": line.remaining,
    })

@app.route("/api/pool/state-allocation-remaining")
@login_required
def api_pool_state_allocation_remaining():
    state_param = (request.args.get("state") or "").strip()
    if not state_param:
        return json_error("state is required", 400)
    state_key = normalize_state(state_param)
    if not state_key:
        return json_error("Invalid state", 400)

    total = sum(a.amount for a in CycleStateAllocation.query.all()
                if normalize_state(a.state_name) == state_key and (a.amount or 0) > 0)
    projects = [p for p in Project.query.all() if normalize_state(p.state) == state_key]
    line = tally_usage(projects).get(None, BudgetLine())
    line.total = total
    line.historical = historical_by_state().get(state_key, 0.0)
    return jsonify({
        "total": line.total,
        "historical": line.historical,
        "committed": line.committed,
        "allocated": line.pending,
        "remaining": line.remaining,
    })

# ---------- Funding Cycles API ----------
def apply_tranche_splits(cycle, splits):
    """Create missing tranche rows from a list of planned caps; the first tranche opens"""
    existing = {t.tranche_no: t for t in cycle.tranches}
    for index, cap in enumerate(splits or [], start=1):
        if index in existing:
            existing[index].planned_cap = to_float(cap, 0)
            continue
        cycle.tranches.append(CycleTranche(tranche_no=index, planned_cap=to_float(cap, 0),
                                           status='open' if index == 1 else 'closed'))

@app.route("/api/cycles", methods=["GET"])
@login_required
def api_cycles():
    query = FundingCycle.query
    status = request.args.get("status")
    year = to_int(request.args.get("year"))
    if status:
        query = query.filter(FundingCycle.status == status)
    if year:
        query = query.filter(FundingCycle.year == year)
    cycles = query.order_by(FundingCycle.year.desc(), FundingCycle.cycle_number.desc()).all()
    return jsonify([cycle_to_dict(c) for c in cycles])

@app.route("/api/cycles", methods=["POST"])
@permission_required("grant_create_cycle")
def api_cycle_create():
    data = request_json()
    cycle_number = to_int(data.get("cycle_number"))
    year = to_int(data.get("year"))
    name = (data.get("name") or "").strip()
    if not cycle_number or not year or not name:
        return json_error("cycle_number, year and name are required", 400)
    if FundingCycle.query.filter_by(cycle_number=cycle_number, year=year).first():
        return json_error(f"Cycle {cycle_number} already exists for {year}", 400)

    try:
        start_date = parse_date(data.get("start_date"))
        end_date = parse_date(data.get("end_date"))
    except ValueError:
        return json_error("Dates must be YYYY-MM-DD", 400)

    inclusions = data.get("grant_inclusions") or []
    if len(inclusions) > 1:
        return json_error("Only one grant call per cycle is allowed", 400)

    cycle = FundingCycle(
        cycle_number=cycle_number,
        year=year,
        name=name,
        start_date=start_date,
        end_date=end_date,
        status=data.get("status") or 'open',
        type=data.get("type") or 'one_off',
        tranche_count=to_int(data.get("tranche_count")),
        pool_amount=to_float(data.get("pool_amount")),
        tranche_splits=data.get("tranche_splits"),
        created_by_id=current_user.id,
    )
    db.session.add(cycle)
    db.session.flush()
    apply_tranche_splits(cycle, data.get("tranche_splits"))

    for inclusion in inclusions:
        grant_call = db.session.get(GrantCall, to_int(inclusion.get("grant_call_id")))
        if not grant_call:
            db.session.rollback()
            return json_error("Grant call not found", 404)
        amount = to_float(inclusion.get("amount_included"))
        ok, message, available = validate_inclusion(grant_call, amount, cycle)
        if not ok:
            db.session.rollback()
            return json_error(message, 400, grant_call_id=grant_call.id, available_amount=available)
        db.session.add(CycleGrantInclusion(cycle_id=cycle.id, grant_call_id=grant_call.id, amount_included=amount))

    db.session.commit()
    app.logger.info("Funding cycle %s/%s created by %s", cycle.cycle_number, cycle.year, current_user.email)
    return jsonify(cycle_to_dict(cycle, detail=True)), 201

@app.route("/api/cycles/<int:cycle_id>", methods=["GET"])
@login_required
def api_cycle_detail(cycle_id):
    cycle = db.session.get(FundingCycle, cycle_id)
    if not cycle:
        return json_error("Cycle not found", 404)
    return jsonify(cycle_to_dict(cycle, detail=True))

@app.route("/api/cycles/<int:cycle_id>", methods=["PUT"])
@permission_required("grant_create_cycle")
def api_cycle_update(cycle_id):
    cycle = db.session.get(FundingCycle, cycle_id)
    if not cycle:
        return json_error("Cycle not found", 404)
    data = request_json()

    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            return json_error("name cannot be empty", 400)
        cycle.name = name
    if "status" in data:
        if data["status"] not in ("open", "closed"):
            return json_error("status must be open or closed", 400)
        cycle.status = data["status"]
    try:
        if "start_date" in data:
            cycle.start_date = parse_date(data.get("start_date"))
        if "end_date" in data:
            cycle.end_date = parse_date(data.get("end_date"))
    except ValueError:
        return json_error("Dates must be YYYY-MM-DD", 400)
    if "type" in data:
        cycle.type = data.get("type") or cycle.type
    if "tranche_count" in data:
        cycle.tranche_count = to_int(data.get("tranche_count"))
    if "pool_amount" in data:
        cycle.pool_amount = to_float(data.get("pool_amount"))
    if "tranche_splits" in data:
        cycle.tranche_splits = data.get("tranche_splits")
        apply_tranche_splits(cycle, data.get("tranche_splits"))

    db.session.commit()
    return jsonify(cycle_to_dict(cycle, detail=True))

@app.route("/api/cycles/<int:cycle_id>", methods=["DELETE"])
@permission_required("grant_create_cycle")
def api_cycle_delete(cycle_id):
    cycle = db.session.get(FundingCycle, cycle_id)
    if not cycle:
        return json_error("Cycle not found", 404)
    in_use = Project.query.filter_by(funding_cycle_id=cycle.id).count()
    if in_use:
        return json_error(f"Cannot delete cycle: {in_use} project(s) reference it", 400)
    db.session.delete(cycle)
    db.session.commit()
    return jsonify({"success": True})

@app.route("/api/cycles/<int:cycle_id>/grants", methods=["GET"])
@login_required
def api_cycle_grants(cycle_id):
    cycle = db.session.get(FundingCycle, cycle_id)
    if not cycle:
        return json_error("Cycle not found", 404)
    return jsonify([inclusion_to_dict(inc) for inc in cycle.inclusions])

@app.route("/api/cycles/<int:cycle_id>/grants", methods=["POST"])
@permission_required("grant_add_grant")
def api_cycle_grants_add(cycle_id):
    cycle = db.session.get(FundingCycle, cycle_id)
    if not cycle:
        return json_error("Cycle not found", 404)
    inclusions = request_json().get("grant_inclusions") or []
    if not inclusions:
        return json_error("At least one grant inclusion is required", 400)
    if len(inclusions) > 1:
        return json_error("Only one grant call per cycle is allowed", 400)

    inclusion = inclusions[0]
    grant_call = db.session.get(GrantCall, to_int(inclusion.get("grant_call_id")))
    if not grant_call:
        return json_error("Grant call not found", 404)
    amount = to_float(inclusion.get("amount_included"))
    ok, message, available = validate_inclusion(grant_call, amount, cycle)
    if not ok:
        return json_error(message, 400, grant_call_id=grant_call.id, available_amount=available)

    row = CycleGrantInclusion(cycle_id=cycle.id, grant_call_id=grant_call.id, amount_included=amount)
    db.session.add(row)
    db.session.commit()
    return jsonify({"success": True, "inclusion": inclusion_to_dict(row)}), 201

@app.route("/api/cycles/<int:cycle_id>/grants/<int:inclusion_id>", methods=["DELETE"])
@permission_required("grant_remove_grant")
def api_cycle_grants_remove(cycle_id, inclusion_id):
    inclusion = CycleGrantInclusion.query.filter_by(id=inclusion_id, cycle_id=cycle_id).first()
    if not inclusion:
        return json_error("Grant inclusion not found", 404)
    in_use = Project.query.filter_by(funding_cycle_id=cycle_id, grant_call_id=inclusion.grant_call_id).count()
    if in_use:
        return json_error(f"Cannot remove grant: {in_use} project(s) in this cycle use it", 400)
    db.session.delete(inclusion)
    db.session.commit()
    return jsonify({"success": True})

@app.route("/api/cycles/<int:cycle_id>/allocations", methods=["GET"])
@login_required
def api_cycle_allocations(cycle_id):
    cycle = db.session.get(FundingCycle, cycle_id)
    if not cycle:
        return json_error("Cycle not found", 404)
    allocations = CycleStateAllocation.query.filter_by(cycle_id=cycle.id).order_by(CycleStateAllocation.state_name.asc()).all()
    return jsonify([allocation_to_dict(a) for a in allocations])

@app.route("/api/cycles/<int:cycle_id>/allocations", methods=["POST"])
@permission_required("grant_add_state_allocation")
def api_cycle_allocations_add(cycle_id):
    """
    Record state allocations against the cycle's active tranche

    The active tranche is the lowest open tranche, otherwise the latest decision.
    Allocations may not push the tranche past its cumulative cap minus what
    earlier tranches already allocated.
    """
    cycle = FundingCycle.query.filter_by(id=cycle_id).with_for_update().first()
    if not cycle:
        return json_error("Cycle not found", 404)
    allocations = request_json().get("allocations")
    if not allocations or not isinstance(allocations, list):
        return json_error("Invalid allocations data", 400)
    for allocation in allocations:
        if not (allocation.get("state_name") or "").strip():
            return json_error("state_name is required for every allocation", 400)
        amount = to_float(allocation.get("amount"))
        if amount is None or amount <= 0:
            return json_error("Allocation amount must be greater than zero", 400)

    tranches = CycleTranche.query.filter_by(cycle_id=cycle.id).order_by(CycleTranche.tranche_no.asc()).all()
    max_decision = db.session.query(func.max(CycleStateAllocation.decision_no)).filter(
        CycleStateAllocation.cycle_id == cycle.id
    ).scalar()
    active = active_tranche([(t.tranche_no, t.status) for t in tranches], max_decision)

    headroom, already = decision_headroom(cycle.id, active)
    to_add = sum(to_float(a.get("amount"), 0) for a in allocations)
    if exceeds_headroom(already, to_add, headroom):
        return json_error("Allocation exceeds available cap for this tranche", 400,
                          available=max(0.0, headroom - already))

    created = []
    for allocation in allocations:
        row = CycleStateAllocation(
            cycle_id=cycle.id,
            state_name=allocation["state_name"].strip(),
            amount=to_float(allocation.get("amount")),
            decision_no=active,
        )
        db.session.add(row)
        created.append(row)
    db.session.commit()
    return jsonify([allocation_to_dict(a) for a in created]), 201

@app.route("/api/cycles/<int:cycle_id>/allocations/<int:allocation_id>", methods=["PUT"])
@permission_required("grant_edit_state_allocation")
def api_cycle_allocation_update(cycle_id, allocation_id):
    """Edit one allocation; the new amount must fit the cap of the tranche it was decided in"""
    cycle = FundingCycle.query.filter_by(id=cycle_id).with_for_update().first()
    allocation = CycleStateAllocation.query.filter_by(id=allocation_id, cycle_id=cycle_id).first()
    if not cycle or not allocation:
        return json_error("Allocation not found", 404)
    data = request_json()
    amount = to_float(data.get("amount"))
    if amount is None or amount <= 0:
        return json_error("Amount must be greater than zero", 400)
    headroom, already = decision_headroom(cycle.id, allocation.decision_no, exclude_allocation_id=allocation.id)
    if exceeds_headroom(already, amount, headroom):
        return json_error("Allocation exceeds available cap for this tranche", 400,
                          available=max(0.0, headroom - already))
    allocation.amount = amount
    if data.get("state_name"):
        allocation.state_name = data["state_name"].strip()
    db.session.commit()
    return jsonify(allocation_to_dict(allocation))

@app.route("/api/cycles/<int:cycle_id>/allocations/<int:allocation_id>", methods=["DELETE"])
@permission_required("grant_delete_state_allocation")
def api_cycle_allocation_delete(cycle_id, allocation_id):
    allocation = CycleStateAllocation.query.filter_by(id=allocation_id, cycle_id=cycle_id).first()
    if not allocation:
        return json_error("Allocation not found", 404)
    blocking = [p for p in allocation.projects
                if p.status == STATUS_APPROVED and p.funding_status == FUNDING_COMMITTED]
    if blocking:
        return json_error("Cannot delete allocation with approved committed projects", 400)
    for project in allocation.projects:
        project.cycle_state_allocation_id = None
    db.session.delete(allocation)
    db.session.commit()
    return jsonify({"success": True})

@app.route("/api/cycles/<int:cycle_id>/tranches", methods=["GET"])
@login_required
def api_cycle_tranches(cycle_id):
    cycle = db.session.get(FundingCycle, cycle_id)
    if not cycle:
        return json_error("Cycle not found", 404)
    return jsonify([tranche_to_dict(t) for t in cycle.tranches])

@app.route("/api/cycles/<int:cycle_id>/tranches", methods=["POST", "PATCH"])
@permission_required("grant_manage_tranches")
def api_cycle_tranches_upsert(cycle_id):
    """Upsert tranches by tranche_no; rows created here start closed unless a status is given"""
    cycle = db.session.get(FundingCycle, cycle_id)
    if not cycle:
        return json_error("Cycle not found", 404)
    tranches = request_json().get("tranches")
    if not isinstance(tranches, list) or not tranches:
        return json_error("tranches must be a non-empty list", 400)

    existing = {t.tranche_no: t for t in cycle.tranches}
    for item in tranches:
        tranche_no = to_int(item.get("tranche_no"))
        if not tranche_no or tranche_no < 1:
            return json_error("tranche_no must be a positive integer", 400)
        status = item.get("status")
        if status is not None and status not in ("open", "closed"):
            return json_error("status must be open or closed", 400)
        tranche = existing.get(tranche_no)
        if tranche is None:
            tranche = CycleTranche(tranche_no=tranche_no, planned_cap=0, status='closed')
            cycle.tranches.append(tranche)
            existing[tranche_no] = tranche
        if "planned_cap" in item:
            cap = to_float(item.get("planned_cap"))
            if cap is None or cap < 0:
                return json_error("planned_cap must be zero or more", 400)
            tranche.planned_cap = cap
        if status:
            tranche.status = status

    db.session.commit()
    return jsonify([tranche_to_dict(t) for t in cycle.tranches])

@app.route("/api/cycles/budget-summary/<int:cycle_id>")
@login_required
def api_cycle_budget_summary(cycle_id):
    cycle = db.session.get(FundingCycle, cycle_id)
    if not cycle:
        return json_error("Cycle not found", 404)

    total_available = sum(inc.amount_included or 0 for inc in cycle.inclusions)
    total_allocated = sum(a.amount or 0 for a in cycle.allocations)
    committed = 0.0
    pending = 0.0
    for project in Project.query.filter_by(funding_cycle_id=cycle.id).all():
        if project.status == STATUS_APPROVED and project.funding_status == FUNDING_COMMITTED:
            committed += project.amount
        elif project.status == STATUS_PENDING and project.funding_status == FUNDING_ALLOCATED:
            pending += project.amount

    unused_from_previous = 0.0
    previous = FundingCycle.query.filter(
        FundingCycle.year == cycle.year,
        FundingCycle.cycle_number < cycle.cycle_number,
        FundingCycle.status == 'closed'
    ).all()
    for prev in previous:
        prev_available = sum(inc.amount_included or 0 for inc in prev.inclusions)
        prev_allocated = sum(a.amount or 0 for a in prev.allocations)
        unused_from_previous += prev_available - prev_allocated

    return jsonify({
        "cycle": cycle_to_dict(cycle),
        "total_available": total_available,
        "total_allocated": total_allocated,
        "total_committed": committed,
        "total_pending": pending,
        "remaining": total_available - committed - pending,
        "unused_from_previous": unused_from_previous,
    })

# ---------- F1 / F2 Workflow API ----------
@app.route("/api/f1/pre-assign", methods=["POST"])
@permission_required("f1_pre_assign")
def api_f1_pre_assign():
    """
    Place a workplan on a grant call if the call has room for it

    The grant call row is locked for the duration of the transaction and the
    remaining amount is checked again after the write; an overdrawn call rolls back.
    """
    data = request_json()
    workplan_id = to_int(data.get("workplan_id"))
    grant_call_id = to_int(data.get("grant_call_id"))
    if not workplan_id or not grant_call_id:
        return json_error("workplan_id and grant_call_id are required", 400)

    grant_call = GrantCall.query.filter_by(id=grant_call_id).with_for_update().first()
    if not grant_call:
        return json_error("Grant call not found", 404)
    project = db.session.get(Project, workplan_id)
    if not project:
        return json_error("Workplan not found", 404)
    if not can_access_state(current_user, project.state):
        return json_error("You do not have access to this project", 403)
    if is_committed(project.funding_status):
        return json_error("Workplan is already committed", 400)

    workplan_amount = project.amount
    remaining = grant_call_budget(grant_call.id, exclude_project_id=project.id).remaining
    if workplan_amount > remaining + CAP_TOLERANCE:
        return json_error("Insufficient remaining in grant", 409, remaining=remaining)

    project.grant_call_id = grant_call.id
    project.donor_id = grant_call.donor_id
    project.funding_status = FUNDING_ALLOCATED
    db.session.flush()

    remaining_after = grant_call_budget(grant_call.id).remaining
    if remaining_after < -CAP_TOLERANCE:
        db.session.rollback()
        app.logger.warning("Pre-assign of workplan %s overdrew grant call %s", workplan_id, grant_call_id)
        return json_error("Overdrawn due to concurrent updates", 409, remaining=remaining)

    db.session.commit()
    return jsonify({"ok": True, "remaining_after": remaining_after})

def visible_projects(query):
    return restrict_to_visible_states(query, Project.state)

@app.route("/api/f2/uncommitted", methods=["GET"])
@login_required
def api_f2_uncommitted():
    query = Project.query.filter(
        Project.status == STATUS_PENDING,
        Project.funding_status != FUNDING_COMMITTED
    )
    projects = visible_projects(query).order_by(Project.submitted_at.desc(), Project.id.desc()).all()
    return jsonify([p.to_dict() for p in projects])

F2_EDITABLE_FIELDS = (
    "expenses", "locality", "project_objectives", "intended_beneficiaries",
    "planned_activities", "banking_details", "funding_cycle_id", "cycle_state_allocation_id",
)

@app.route("/api/f2/uncommitted", methods=["PATCH"])
@permission_required("f2_edit")
def api_f2_uncommitted_update():
    data = request_json()
    project = db.session.get(Project, to_int(data.get("id")))
    if not project:
        return json_error("Project not found", 404)
    if is_committed(project.funding_status):
        return json_error("Committed projects cannot be edited here", 400)
    if not can_access_state(current_user, project.state):
        return json_error("You do not have access to this project", 403)

    if "expenses" in data and not isinstance(data["expenses"], list):
        return json_error("expenses must be a list", 400)
    for field in F2_EDITABLE_FIELDS:
        if field in data:
            setattr(project, field, data[field])
    if "grant_call_id" in data:
        grant_call_id = to_int(data.get("grant_call_id"))
        if grant_call_id:
            grant_call = db.session.get(GrantCall, grant_call_id)
            if not grant_call:
                return json_error("Grant call not found", 404)
            project.grant_call_id = grant_call.id
            project.donor_id = grant_call.donor_id
        else:
            project.grant_call_id = None
            project.donor_id = None
            if project.funding_status == FUNDING_ALLOCATED:
                project.funding_status = FUNDING_UNASSIGNED

    db.session.commit()
    return jsonify({"success": True, "project": project.to_dict()})

@app.route("/api/f2/uncommitted", methods=["DELETE"])
@permission_required("f2_delete")
def api_f2_uncommitted_delete():
    project_id = to_int(request.args.get("id") or request_json().get("id"))
    project = db.session.get(Project, project_id) if project_id else None
    if not project:
        return json_error("Project not found", 404)
    if not can_access_state(current_user, project.state):
        return json_error("You do not have access to this project", 403)
    if project.status != STATUS_PENDING or is_committed(project.funding_status):
        return json_error("Only pending, uncommitted projects can be deleted", 400)

    storage = get_storage()
    for key in (project.temp_file_key, project.file_key):
        if not key:
            continue
        try:
            storage.delete_file(key)
        except StorageError as e:
            app.logger.warning("Could not remove file %s for project %s: %s", key, project.id, e)

    db.session.delete(project)
    db.session.commit()
    return jsonify({"success": True})

@app.route("/api/f2/uncommitted/commit", methods=["POST"])
@permission_required("f2_commit")
def api_f2_commit():
    f1_ids = request_json().get("f1_ids")
    if not f1_ids or not isinstance(f1_ids, list):
        return json_error("F1 IDs array is required", 400)
    projects = Project.query.filter(Project.id.in_(f1_ids)).all()
    if len(projects) != len(set(f1_ids)):
        return json_error("Some F1s not found", 404)
    denied = inaccessible_project_ids(projects)
    if denied:
        return json_error("You do not have access to some F1s", 403, f1_ids=denied)
    already = [p.id for p in projects if is_committed(p.funding_status)]
    if already:
        return json_error("Some F1s are already committed", 400, f1_ids=already)

    for project in projects:
        project.funding_status = FUNDING_COMMITTED
        project.status = STATUS_APPROVED
    db.session.commit()
    return jsonify({"success": True, "committed_count": len(projects)})

@app.route("/api/f2/committed", methods=["GET"])
@login_required
def api_f2_committed():
    query = Project.query.filter(Project.funding_status == FUNDING_COMMITTED)
    projects = visible_projects(query).order_by(Project.updated_at.desc(), Project.id.desc()).all()
    rows = []
    for project in projects:
        row = project.to_dict()
        row["mou_code"] = project.mou.mou_code if project.mou else None
        row["funding_cycle_name"] = project.funding_cycle.name if project.funding_cycle else None
        rows.append(row)
    return jsonify(rows)

@app.route("/api/f2/committed/decommit", methods=["POST"])
@permission_required("f2_decommit")
def api_f2_decommit():
    project = db.session.get(Project, to_int(request_json().get("id")))
    if not project:
        return json_error("Project not found", 404)
    if not can_access_state(current_user, project.state):
        return json_error("You do not have access to this project", 403)
    if not is_committed(project.funding_status):
        return json_error("Only committed projects can be decommitted", 400)
    if project.mou_id:
        return json_error("Project is part of an MOU and cannot be decommitted", 400)

    if project.grant_serial_id:
        release_workplan_number(project.grant_serial_id, project.workplan_number)
        project.grant_serial_id = None
        project.workplan_number = None
        project.grant_id = None
    project.funding_status = FUNDING_UNASSIGNED
    project.status = STATUS_PENDING
    db.session.commit()
    return jsonify({"success": True})

def load_assignment_request(require_unassigned):
    """
    Validate an assign/reassign body

    Returns:
        tuple: (context dict, None) or (None, error response)
    """
    data = request_json()
    f1_ids = data.get("f1_ids")
    funding_cycle_id = to_int(data.get("funding_cycle_id"))
    grant_call_id = to_int(data.get("grant_call_id"))
    mmyy = str(data.get("mmyy") or "")
    grant_serial = data.get("grant_serial")
    if not f1_ids or not isinstance(f1_ids, list):
        return None, json_error("F1 IDs array is required", 400)
    if not funding_cycle_id or not grant_call_id or not mmyy or not grant_serial:
        return None, json_error("Missing required assignment fields", 400)
    if not validate_mmyy(mmyy):
        return None, json_error("MMYY must be 4 digits", 400)

    projects = Project.query.filter(
        Project.id.in_(f1_ids),
        Project.funding_status == FUNDING_COMMITTED
    ).order_by(Project.id.asc()).all()
    if len(projects) != len(set(f1_ids)):
        return None, json_error("Some F1s not found or not committed", 400)
    denied = inaccessible_project_ids(projects)
    if denied:
        return None, json_error("You do not have access to some F1s", 403, f1_ids=denied)
    if require_unassigned and any(p.grant_serial_id for p in projects):
        return None, json_error("Some F1s are already assigned", 400)

    grant_call = db.session.get(GrantCall, grant_call_id)
    if not grant_call:
        return None, json_error("Grant call not found", 404)
    if not grant_call.donor or not grant_call.donor.short_name:
        return None, json_error("Donor not found", 404)
    if not db.session.get(FundingCycle, funding_cycle_id):
        return None, json_error("Funding cycle not found", 404)

    if grant_serial == "new":
        state_name = projects[0].state
        allocation = state_allocation_for(funding_cycle_id, state_name)
        try:
            serial = create_grant_serial(state_name, mmyy, grant_call_id=grant_call.id,
                                         funding_cycle_id=funding_cycle_id,
                                         cycle_state_allocation_id=allocation.id if allocation else None)
        except ValueError as e:
            db.session.rollback()
            return None, json_error(f"Failed to create grant serial: {e}", 400)
        grant_serial = serial.grant_serial
    elif not GrantSerial.query.filter_by(grant_serial=grant_serial).first():
        return None, json_error("Grant serial not found", 404)

    return {
        "projects": projects,
        "grant_call": grant_call,
        "funding_cycle_id": funding_cycle_id,
        "mmyy": mmyy,
        "grant_serial": grant_serial,
    }, None

@app.route("/api/f2/committed/assign", methods=["POST"])
@permission_required("f2_assign")
def api_f2_assign():
    ctx, error = load_assignment_request(require_unassigned=True)
    if error:
        return error

    storage = get_storage()
    assigned = 0
    errors = []
    for project in ctx["projects"]:
        try:
            assign_project_to_serial(project, ctx["grant_serial"], ctx["grant_call"], ctx["mmyy"],
                                     ctx["funding_cycle_id"], storage)
            assigned += 1
        except StorageError as e:
            app.logger.error("Error assigning F1 %s: %s", project.id, e)
            errors.append(f"F1 {project.id}: {e}")

    if assigned == 0:
        db.session.rollback()
        return json_error("Failed to assign any F1s", 500, details=errors)
    db.session.commit()
    return jsonify({
        "success": True,
        "assigned_count": assigned,
        "grant_serial": ctx["grant_serial"],
        "errors": errors or None,
    })

@app.route("/api/f2/committed/reassign", methods=["POST"])
@permission_required("f2_reassign")
def api_f2_reassign():
    ctx, error = load_assignment_request(require_unassigned=False)
    if error:
        return error
    locked = [p.id for p in ctx["projects"] if is_assigned_grant_id(p.grant_id) and p.grant_row_id]
    if locked:
        return json_error("Some F1s are already assigned to a received grant through an MOU", 400, f1_ids=locked)

    storage = get_storage()
    reassigned = 0
    errors = []
    for project in ctx["projects"]:
        old_serial, old_number = project.grant_serial_id, project.workplan_number
        try:
            assign_project_to_serial(project, ctx["grant_serial"], ctx["grant_call"], ctx["mmyy"],
                                     ctx["funding_cycle_id"], storage)
            reassigned += 1
        except StorageError as e:
            app.logger.error("Error reassigning F1 %s: %s", project.id, e)
            errors.append(f"F1 {project.id}: {e}")
            continue
        # Only a successful move gives the old number back
        if old_serial:
            release_workplan_number(old_serial, old_number)

    if reassigned == 0:
        db.session.rollback()
        return json_error("Failed to reassign any F1s", 500, details=errors)
    db.session.commit()
    return jsonify({
        "success": True,
        "reassigned_count": reassigned,
        "grant_serial": ctx["grant_serial"],
        "errors": errors or None,
    })

@app.route("/api/f2/grant-calls")
@login_required
def api_f2_grant_calls():
    """Open grant calls with their cycle inclusions and remaining budget"""
    rows = []
    for grant_call in GrantCall.query.filter_by(status='open').order_by(GrantCall.name.asc()).all():
        inclusions = CycleGrantInclusion.query.filter_by(grant_call_id=grant_call.id).all()
        line = grant_call_budget(grant_call.id)
        rows.append({
            "id": grant_call.id,
            "name": grant_call.name,
            "shortname": grant_call.shortname,
            "donor_id": grant_call.donor_id,
            "donor_name": grant_call.donor.name if grant_call.donor else None,
            "donor_short_name": grant_call.donor.short_name if grant_call.donor else None,
            "inclusions": [{
                "cycle_id": inc.cycle_id,
                "cycle_name": inc.cycle.name if inc.cycle else None,
                "amount_included": inc.amount_included,
            } for inc in inclusions],
            "included": line.total,
            "committed": line.committed,
            "pending": line.pending,
            "remaining": line.remaining,
        })
    return jsonify(rows)

@app.route("/api/f2/move-file", methods=["POST"])
@permission_required("f2_assign")
def api_f2_move_file():
    """Move a workplan's uploaded form from its temporary key to its final f1-forms/ key"""
    data = request_json()
    project_id = to_int(data.get("project_id"))
    temp_file_key = data.get("temp_file_key")
    donor_id = to_int(data.get("donor_id"))
    state_short = (data.get("state_short") or "").strip()
    mmyy = str(data.get("mmyy") or "")
    grant_id = (data.get("grant_id") or "").strip()
    if not project_id or not temp_file_key or not donor_id or not state_short or not mmyy or not grant_id:
        return json_error("Missing required parameters", 400)
    if not validate_mmyy(mmyy):
        return json_error("MMYY must be 4 digits", 400)

    project = db.session.get(Project, project_id)
    if not project:
        return json_error("Project not found", 404)
    if not can_access_state(current_user, project.state):
        return json_error("You do not have access to this project", 403)
    if not project.temp_file_key or project.temp_file_key != temp_file_key:
        return json_error("temp_file_key is not this project's upload", 400)
    donor = db.session.get(Donor, donor_id)
    if not donor or not donor.short_name:
        return json_error("Donor not found", 404)

    final_key = workplan_file_key(donor.short_name, safe_path_segment(state_short), mmyy,
                                  safe_path_segment(grant_id), file_extension(temp_file_key))
    try:
        get_storage().move_file(temp_file_key, final_key)
    except StorageError as e:
        app.logger.error("Error moving F1 file for project %s: %s", project.id, e)
        return json_error(f"Failed to move file: {e}", 500)

    project.file_key = final_key
    project.temp_file_key = None
    project.donor_id = donor.id
    db.session.commit()
    return jsonify({"success": True, "final_path": final_key})


# ---------- F-system Serial API ----------
def grant_serial_to_dict(serial):
    seq = workplan_sequence(serial.grant_serial)
    return {
        "id": serial.id,
        "grant_serial": serial.grant_serial,
        "grant_call_id": serial.grant_call_id,
        "funding_cycle_id": serial.funding_cycle_id,
        "cycle_state_allocation_id": serial.cycle_state_allocation_id,
        "state_name": serial.state_name,
        "yymm": serial.yymm,
        "serial_number": serial.serial_number,
        "last_workplan_number": seq.last_workplan_number if seq else 0,
        "created_at": format_datetime_iso(serial.created_at),
    }

@app.route("/api/fsystem/grant-serials")
@login_required
def api_fsystem_grant_serials():
    state_name = request.args.get("state_name")
    yymm = request.args.get("yymm")
    grant_call_id = to_int(request.args.get("grant_call_id"))
    funding_cycle_id = to_int(request.args.get("funding_cycle_id"))
    if not state_name or not yymm:
        return json_error("Missing required parameters: state_name and yymm", 400)
    if not grant_call_id and not funding_cycle_id:
        return json_error("Missing required parameter: grant_call_id or funding_cycle_id", 400)

    query = GrantSerial.query.filter_by(state_name=state_name, yymm=yymm)
    if funding_cycle_id:
        query = query.filter_by(funding_cycle_id=funding_cycle_id)
    else:
        query = query.filter_by(grant_call_id=grant_call_id)
    return jsonify([grant_serial_to_dict(s) for s in query.order_by(GrantSerial.serial_number.asc()).all()])

@app.route("/api/fsystem/grant-serials/create", methods=["POST"])
@permission_required("f2_assign")
def api_fsystem_grant_serial_create():
    data = request_json()
    try:
        serial = create_grant_serial(
            data.get("state_name"),
            str(data.get("yymm") or ""),
            grant_call_id=to_int(data.get("grant_call_id")),
            funding_cycle_id=to_int(data.get("funding_cycle_id")),
            cycle_state_allocation_id=to_int(data.get("cycle_state_allocation_id")),
        )
    except ValueError as e:
        db.session.rollback()
        return json_error(str(e), 400)
    db.session.commit()
    return jsonify(grant_serial_to_dict(serial)), 201

@app.route("/api/fsystem/next-sequence", methods=["POST"])
@login_required
def api_fsystem_next_sequence():
    data = request_json()
    base_pattern = (data.get("base_pattern") or "").strip()
    if not base_pattern:
        return json_error("base_pattern is required", 400)
    preview_only = bool(data.get("preview_only", False))

    row = GrantIdSequence.query.filter_by(base_pattern=base_pattern).with_for_update().first()
    next_number = (row.last_sequence_number if row else 0) + 1
    if not preview_only:
        if row is None:
            row = GrantIdSequence(base_pattern=base_pattern)
            db.session.add(row)
        row.last_sequence_number = next_number
        db.session.commit()
    return jsonify({"sequence_number": next_number, "padded_number": pad_sequence(next_number)})

@app.route("/api/fsystem/workplans/preview", methods=["GET", "POST"])
@login_required
def api_fsystem_workplan_preview():
    grant_serial = request.args.get("grant_serial_id") or request_json().get("grant_serial")
    if not grant_serial:
        return json_error("Missing grant_serial", 400)
    seq = workplan_sequence(grant_serial)
    next_number = (seq.last_workplan_number if seq else 0) + 1
    return jsonify({"next_number": pad_sequence(next_number), "preview_id": workplan_grant_id(grant_serial, next_number)})

@app.route("/api/fsystem/workplans/commit", methods=["POST"])
@permission_required("f2_assign")
def api_fsystem_workplan_commit():
    data = request_json()
    grant_serial = data.get("grant_serial") or data.get("grant_serial_id")
    if not grant_serial:
        return json_error("Missing grant_serial", 400)
    number = issue_workplan_number(grant_serial)
    db.session.commit()
    return jsonify({"workplan_number": pad_sequence(number), "grant_id": workplan_grant_id(grant_serial, number)})

def allocation_commitment(allocation):
    committed = sum(p.amount for p in allocation.projects if p.funding_status == FUNDING_COMMITTED)
    allocated = sum(p.amount for p in allocation.projects if p.funding_status == FUNDING_ALLOCATED)
    return {
        "allocation_id": allocation.id,
        "state_name": allocation.state_name,
        "amount": allocation.amount,
        "committed": committed,
        "allocated": allocated,
        "total_used": committed + allocated,
    }

@app.route("/api/fsystem/state-allocations/committed")
@login_required
def api_fsystem_state_allocations_committed():
    allocation_id = to_int(request.args.get("allocation_id"))
    funding_cycle_id = to_int(request.args.get("funding_cycle_id"))
    if allocation_id:
        allocation = db.session.get(CycleStateAllocation, allocation_id)
        if not allocation:
            return json_error("Allocation not found", 404)
        return jsonify(allocation_commitment(allocation))
    if funding_cycle_id:
        allocations = CycleStateAllocation.query.filter_by(cycle_id=funding_cycle_id).order_by(CycleStateAllocation.state_name.asc()).all()
        return jsonify([allocation_commitment(a) for a in allocations])
    return json_error("Missing allocation_id or funding_cycle_id", 400)

# ---------- F3 MOU API ----------
def mou_detail(mou):
    data = mou.to_dict()
    data["projects"] = [p.to_dict() for p in sorted(mou.projects, key=lambda p: p.id)]
    data["assigned"] = mou_is_assigned(mou)
    return data

def load_mou(mou_id):
    """Fetch an MOU the current user may act on; returns (mou, error response)"""
    mou = db.session.get(Mou, mou_id)
    if not mou:
        return None, json_error("MOU not found", 404)
    if mou.state and not can_access_state(current_user, mou.state):
        return None, json_error("You do not have access to this MOU", 403)
    return mou, None

def render_and_store(mou):
    try:
        store_mou_document(mou)
    except StorageError as e:
        app.logger.error("Could not store MOU document for %s: %s", mou.mou_code, e)
        return False
    return True

@app.route("/api/f3/mous", methods=["GET"])
@login_required
def api_f3_mous():
    search = (request.args.get("search") or "").strip()
    state = (request.args.get("state") or "").strip()
    query = Mou.query
    if search:
        like = f"%{search}%"
        query = query.filter(db.or_(
            Mou.mou_code.ilike(like),
            Mou.partner_name.ilike(like),
            Mou.err_name.ilike(like)
        ))
    if state:
        query = query.filter(Mou.state == state)
    query = restrict_to_visible_states(query, Mou.state)
    mous = query.order_by(Mou.created_at.desc(), Mou.id.desc()).all()
    return jsonify([mou.to_dict() for mou in mous])

@app.route("/api/f3/mous", methods=["POST"])
@permission_required("f3_create_mou")
def api_f3_mou_create():
    """
    Create an MOU over committed, approved workplans not yet linked to another MOU

    The partner comes from partner_id (must be active) or defaults to the first
    active partner; a code is generated when none is supplied.
    """
    data = request_json()
    project_ids = data.get("project_ids")
    if not project_ids or not isinstance(project_ids, list):
        return json_error("project_ids array is required", 400)

    projects = Project.query.filter(Project.id.in_(project_ids)).order_by(Project.id.asc()).all()
    if len(projects) != len(set(project_ids)):
        return json_error("Some projects not found", 404)
    invalid = [p.id for p in projects
               if not is_committed(p.funding_status) or p.status != STATUS_APPROVED or p.mou_id]
    if invalid:
        return json_error("Projects must be committed, approved and not already in an MOU", 400, project_ids=invalid)

    state = data.get("state") or projects[0].state
    if not can_access_state(current_user, state):
        return json_error("You do not have access to this state", 403)

    partner_name = data.get("partner_name")
    if data.get("partner_id"):
        partner = Partner.query.filter_by(id=to_int(data.get("partner_id")), status='active').first()
        if not partner:
            return json_error("Invalid partner selected", 400)
        partner_name = partner.name
    if not partner_name:
        partner = Partner.query.filter_by(status='active').order_by(Partner.id.asc()).first()
        partner_name = partner.name if partner else DEFAULT_PARTNER_NAME

    err_name = data.get("err_name")
    if not err_name:
        room = projects[0].emergency_room
        err_name = room.name if room and room.name else f"{state} Emergency Room"

    mou_code = (data.get("mou_code") or "").strip() or generate_mou_code(partner_name, state)
    if Mou.query.filter_by(mou_code=mou_code).first():
        return json_error("MOU code already exists", 400)

    try:
        start_date = parse_date(data.get("start_date"))
        end_date = parse_date(data.get("end_date"))
    except ValueError:
        return json_error("Dates must be YYYY-MM-DD", 400)

    mou = Mou(mou_code=mou_code, partner_name=partner_name, err_name=err_name, state=state,
              start_date=start_date, end_date=end_date)
    db.session.add(mou)
    for project in projects:
        project.mou = mou
    recompute_mou_total(mou)
    db.session.flush()
    render_and_store(mou)
    db.session.commit()
    return jsonify(mou_detail(mou)), 201

@app.route("/api/f3/mous/<int:mou_id>", methods=["GET"])
@login_required
def api_f3_mou_detail(mou_id):
    mou, error = load_mou(mou_id)
    if error:
        return error
    return jsonify(mou_detail(mou))

MOU_TEXT_FIELDS = ("partner_name", "err_name", "banking_details_override",
                   "partner_contact_override", "err_contact_override")

@app.route("/api/f3/mous/<int:mou_id>", methods=["PATCH"])
@permission_required("f3_edit_mou")
def api_f3_mou_update(mou_id):
    mou, error = load_mou(mou_id)
    if error:
        return error
    data = request_json()
    for field in MOU_TEXT_FIELDS:
        if field in data:
            value = data[field]
            if field in ("partner_name", "err_name") and not value:
                return json_error(f"{field} cannot be empty", 400)
            setattr(mou, field, value if value != "" else None)
    try:
        if "start_date" in data:
            mou.start_date = parse_date(data["start_date"])
        if "end_date" in data:
            mou.end_date = parse_date(data["end_date"])
    except ValueError:
        return json_error("Dates must be YYYY-MM-DD", 400)
    db.session.commit()
    return jsonify(mou_detail(mou))

@app.route("/api/f3/mous/<int:mou_id>/projects/add", methods=["POST"])
@permission_required("f3_edit_mou")
def api_f3_mou_add_projects(mou_id):
    mou, error = load_mou(mou_id)
    if error:
        return error
    if mou_is_assigned(mou):
        return json_error("Cannot change projects of an MOU assigned to a grant", 400)
    project_ids = request_json().get("project_ids")
    if not project_ids or not isinstance(project_ids, list):
        return json_error("project_ids array is required", 400)

    projects = Project.query.filter(Project.id.in_(project_ids)).all()
    if len(projects) != len(set(project_ids)):
        return json_error("Some projects not found", 404)
    invalid = [p.id for p in projects if not is_committed(p.funding_status) or (p.mou_id and p.mou_id != mou.id)]
    if invalid:
        return json_error("Projects must be committed and not in another MOU", 400, project_ids=invalid)

    for project in projects:
        project.mou = mou
    recompute_mou_total(mou)
    db.session.commit()
    return jsonify(mou_detail(mou))

@app.route("/api/f3/mous/<int:mou_id>/projects/remove", methods=["POST"])
@permission_required("f3_edit_mou")
def api_f3_mou_remove_projects(mou_id):
    mou, error = load_mou(mou_id)
    if error:
        return error
    if mou_is_assigned(mou):
        return json_error("Cannot change projects of an MOU assigned to a grant", 400)
    project_ids = request_json().get("project_ids")
    if not project_ids or not isinstance(project_ids, list):
        return json_error("project_ids array is required", 400)

    for project in list(mou.projects):
        if project.id in project_ids:
            project.mou = None
    recompute_mou_total(mou)
    db.session.commit()
    return jsonify(mou_detail(mou))

def load_grant_assignment(data):
    """Validate {grant_id, donor_name, mmyy}; returns ((grant, donor_short, mmyy), error response)"""
    grant_id = (data.get("grant_id") or "").strip()
    donor_name = (data.get("donor_name") or "").strip()
    mmyy = str(data.get("mmyy") or "")
    if not grant_id or not donor_name or not mmyy:
        return None, json_error("grant_id, donor_name and mmyy are required", 400)
    if not validate_mmyy(mmyy):
        return None, json_error("MMYY must be 4 digits", 400)
    grant = find_grant(grant_id, donor_name)
    if not grant:
        return None, json_error("Grant not found", 404)
    donor_short = grant_donor_short_name(grant, donor_name)
    if not donor_short:
        return None, json_error("Donor short name missing", 400)
    return (grant, donor_short, mmyy), None

def run_mou_assignment(mou, grant, donor_short, mmyy):
    projects = sorted(mou.projects, key=lambda p: p.id)
    if not projects:
        return json_error("MOU has no projects", 400)
    assigned, errors = assign_mou_projects(mou, projects, grant, donor_short, mmyy, get_storage())
    if assigned == 0:
        db.session.rollback()
        return json_error("Failed to assign any F1s", 500, details=errors)
    db.session.commit()
    return jsonify({
        "success": True,
        "assigned_count": assigned,
        "grant_id": grant.grant_id,
        "errors": errors or None,
    })

@app.route("/api/f3/mous/<int:mou_id>/assign", methods=["POST"])
@permission_required("f3_assign_mou")
def api_f3_mou_assign(mou_id):
    mou, error = load_mou(mou_id)
    if error:
        return error
    if mou_is_assigned(mou):
        return json_error("MOU is already assigned; use reassign", 400)
    target, error = load_grant_assignment(request_json())
    if error:
        return error
    return run_mou_assignment(mou, *target)

@app.route("/api/f3/mous/<int:mou_id>/reassign", methods=["POST"])
@permission_required("f3_reassign_mou")
def api_f3_mou_reassign(mou_id):
    mou, error = load_mou(mou_id)
    if error:
        return error
    target, error = load_grant_assignment(request_json())
    if error:
        return error

    for project in mou.projects:
        if is_assigned_grant_id(project.grant_id):
            remove_serial_from_grants(project.grant_id)
        project.grant_id = None
        project.grant_row_id = None
        project.status = STATUS_APPROVED
    db.session.flush()
    return run_mou_assignment(mou, *target)

@app.route("/api/f3/mous/<int:mou_id>/regenerate", methods=["POST"])
@permission_required("f3_edit_mou")
def api_f3_mou_regenerate(mou_id):
    mou, error = load_mou(mou_id)
    if error:
        return error
    recompute_mou_total(mou)
    if not render_and_store(mou):
        db.session.rollback()
        return json_error("Failed to store MOU document", 500)
    db.session.commit()
    return jsonify({"success": True, "file_key": mou.file_key})

@app.route("/api/f3/mous/<int:mou_id>/document")
@login_required
def api_f3_mou_document(mou_id):
    mou, error = load_mou(mou_id)
    if error:
        return error
    if not mou.file_key:
        return json_error("MOU document has not been generated", 404)
    try:
        content = get_storage().read_bytes(mou.file_key)
    except StorageError:
        return json_error("MOU document file is missing", 404)
    return send_file(io.BytesIO(content), mimetype="text/html",
                     download_name=f"{mou.mou_code}.html")

def save_mou_upload(mou, folder):
    """Validate and store the multipart 'file' field; returns (key, error response)"""
    upload = request.files.get("file")
    if not upload or not upload.filename:
        return None, json_error("No file uploaded", 400)
    if not allowed_file(upload.filename):
        return None, json_error("File type not allowed", 400)
    if not validate_file_size(upload):
        return None, json_error(f"File exceeds {app.config['MAX_UPLOAD_MB']} MB", 400)
    try:
        key, _ = get_storage().save_file(upload, upload.filename, folder=f"f3-mous/{mou.id}/{folder}")
    except StorageError as e:
        app.logger.error("Upload for MOU %s failed: %s", mou.mou_code, e)
        return None, json_error("Failed to store file", 500)
    return key, None

@app.route("/api/f3/mous/<int:mou_id>/signed-mou", methods=["POST"])
@permission_required("f3_upload_signed")
def api_f3_mou_signed(mou_id):
    mou, error = load_mou(mou_id)
    if error:
        return error
    key, error = save_mou_upload(mou, "signed")
    if error:
        return error
    mou.signed_mou_file_key = key
    db.session.commit()
    return jsonify({"success": True, "file_key": key})

@app.route("/api/f3/mous/<int:mou_id>/payment-confirmation", methods=["POST"])
@permission_required("f3_upload_payment")
def api_f3_mou_payment(mou_id):
    mou, error = load_mou(mou_id)
    if error:
        return error
    key, error = save_mou_upload(mou, "payment")
    if error:
        return error
    mou.payment_confirmation_file = key
    db.session.commit()
    return jsonify({"success": True, "file_key": key})

# ---------- F4 / F5 Reports API ----------
def resolve_report_target(project_id):
    """
    Find the project (or historical activity) a report is filed against

    Returns:
        tuple: (target dict, error response); the dict carries project, historical,
        state, err and serial used for access checks and file keys
    """
    historical, numeric_id = split_historical_id(project_id)
    if not numeric_id:
        return None, json_error("project_id is required", 400)
    if historical:
        activity = db.session.get(HistoricalActivity, numeric_id)
        if not activity:
            return None, json_error("Historical activity not found", 404)
        target = {"project": None, "historical": activity, "state": activity.state,
                  "err": activity.err_code, "serial": activity.serial_number}
    else:
        project = db.session.get(Project, numeric_id)
        if not project:
            return None, json_error("Project not found", 404)
        room = project.emergency_room
        target = {"project": project, "historical": None, "state": project.state,
                  "err": room.err_code if room else project.err_id,
                  "serial": project.grant_serial_id or project.grant_id}
    if not can_access_state(current_user, target["state"]):
        return None, json_error("You do not have access to this project", 403)
    return target, None

def report_date_value(value):
    cleaned = clean_report_date(value) if isinstance(value, str) else value
    return parse_date(cleaned) if cleaned else None

FINANCIAL_TEXT_FIELDS = ("beneficiaries", "lessons", "training", "project_objectives")
FINANCIAL_AMOUNT_FIELDS = ("total_grant", "total_expenses", "total_expenses_sdg", "remainder")

def apply_financial_summary(report, summary):
    for field in FINANCIAL_TEXT_FIELDS:
        if field in summary:
            setattr(report, field, summary[field])
    for field in FINANCIAL_AMOUNT_FIELDS:
        if field in summary:
            setattr(report, field, to_float(summary[field]))
    if "report_date" in summary:
        report.report_date = report_date_value(summary["report_date"])
    if summary.get("language"):
        report.language = summary["language"]

def build_report_expenses(report, expenses):
    rows = []
    for item in expenses or []:
        row = ReportExpense(
            expense_activity=item.get("expense_activity"),
            expense_description=item.get("expense_description"),
            expense_amount=to_float(item.get("expense_amount")),
            expense_amount_sdg=to_float(item.get("expense_amount_sdg")),
            payment_date=report_date_value(item.get("payment_date")),
            payment_method=item.get("payment_method"),
            receipt_no=item.get("receipt_no"),
            seller=item.get("seller"),
        )
        report.expenses.append(row)
        rows.append(row)
    return rows

def financial_report_to_dict(report, detail=False):
    project = report.project
    activity = report.historical_activity
    data = {
        "id": report.id,
        "project_id": report.project_id if project else f"{HISTORICAL_PREFIX}{report.historical_activity_id}",
        "err_id": report.err_id,
        "state": project.state if project else (activity.state if activity else None),
        "grant_id": project.grant_id if project else (activity.serial_number if activity else None),
        "report_date": format_date(report.report_date) or None,
        "total_grant": report.total_grant,
        "total_expenses": report.total_expenses,
        "total_expenses_sdg": report.total_expenses_sdg,
        "remainder": report.remainder,
        "language": report.language,
        "created_at": format_datetime_iso(report.created_at),
    }
    if detail:
        for field in FINANCIAL_TEXT_FIELDS:
            data[field] = getattr(report, field)
        data["expenses"] = [{
            "id": e.id,
            "expense_activity": e.expense_activity,
            "expense_description": e.expense_description,
            "expense_amount": e.expense_amount,
            "expense_amount_sdg": e.expense_amount_sdg,
            "payment_date": format_date(e.payment_date) or None,
            "payment_method": e.payment_method,
            "receipt_no": e.receipt_no,
            "seller": e.seller,
        } for e in report.expenses]
        data["attachments"] = [{"id": a.id, "file_key": a.file_key, "file_type": a.file_type}
                               for a in report.attachments]
    return data

def move_report_file(temp_key, final_key):
    try:
        get_storage().move_file(temp_key, final_key)
    except StorageError as e:
        app.logger.error("Could not move report file %s: %s", temp_key, e)
        return False
    return True

@app.route("/api/f4/save", methods=["POST"])
@permission_required("f4_save")
def api_f4_save():
    data = request_json()
    target, error = resolve_report_target(data.get("project_id"))
    if error:
        return error
    summary = data.get("summary") or {}
    expenses = data.get("expenses") or []
    if not isinstance(expenses, list):
        return json_error("expenses must be a list", 400)

    report = FinancialReport(
        project_id=target["project"].id if target["project"] else None,
        historical_activity_id=target["historical"].id if target["historical"] else None,
        err_id=target["err"],
        created_by_id=current_user.id,
    )
    try:
        apply_financial_summary(report, summary)
        rows = build_report_expenses(report, expenses)
    except ValueError:
        return json_error("Invalid date in report", 400)
    db.session.add(report)
    db.session.flush()

    temp_key = data.get("file_key_temp")
    if temp_key:
        final_key = financial_report_file_key(target["state"], target["err"], target["serial"],
                                              report.id, file_extension(temp_key))
        if not move_report_file(temp_key, final_key):
            db.session.rollback()
            return json_error("Failed to store report file", 500)
        report.attachments.append(ReportAttachment(file_key=final_key, uploaded_by_id=current_user.id))

    db.session.commit()
    return jsonify({"success": True, "summary_id": report.id, "expense_ids": [r.id for r in rows]})

@app.route("/api/f4/list")
@login_required
def api_f4_list():
    query = FinancialReport.query
    project_id = request.args.get("project_id")
    if project_id:
        historical, numeric_id = split_historical_id(project_id)
        if historical:
            query = query.filter(FinancialReport.historical_activity_id == numeric_id)
        else:
            query = query.filter(FinancialReport.project_id == numeric_id)
    reports = query.order_by(FinancialReport.created_at.desc(), FinancialReport.id.desc()).all()
    rows = [financial_report_to_dict(r) for r in reports]
    return jsonify([row for row in rows if can_access_state(current_user, row["state"])])

@app.route("/api/f4/summary/<int:summary_id>")
@login_required
def api_f4_summary(summary_id):
    report = db.session.get(FinancialReport, summary_id)
    if not report:
        return json_error("Summary not found", 404)
    data = financial_report_to_dict(report, detail=True)
    if not can_access_state(current_user, data["state"]):
        return json_error("You do not have access to this report", 403)
    return jsonify(data)

@app.route("/api/f4/update", methods=["POST"])
@permission_required("f4_edit")
def api_f4_update():
    data = request_json()
    report = db.session.get(FinancialReport, to_int(data.get("summary_id")))
    if not report:
        return json_error("Summary not found", 404)
    if not can_access_state(current_user, financial_report_to_dict(report)["state"]):
        return json_error("You do not have access to this report", 403)
    try:
        apply_financial_summary(report, data.get("summary") or {})
        if "expenses" in data:
            report.expenses.clear()
            build_report_expenses(report, data.get("expenses"))
    except ValueError:
        db.session.rollback()
        return json_error("Invalid date in report", 400)
    db.session.commit()
    return jsonify({"success": True, "summary": financial_report_to_dict(report, detail=True)})

PROGRAM_TEXT_FIELDS = ("positive_changes", "negative_results", "unexpected_results",
                       "lessons_learned", "suggestions", "reporting_person")
REACH_COUNT_FIELDS = ("individual_count", "household_count", "male_count", "female_count",
                      "under18_male", "under18_female", "people_with_disabilities")

def apply_program_summary(report, summary):
    for field in PROGRAM_TEXT_FIELDS:
        if field in summary:
            setattr(report, field, summary[field])
    if "report_date" in summary:
        report.report_date = report_date_value(summary["report_date"])
    if "is_draft" in summary:
        report.is_draft = bool(summary["is_draft"])
    if summary.get("language"):
        report.language = summary["language"]

def build_reach_rows(report, reach):
    rows = []
    for item in reach or []:
        row = ProgramReach(
            activity_name=item.get("activity_name"),
            activity_goal=item.get("activity_goal"),
            location=item.get("location"),
            start_date=report_date_value(item.get("start_date")),
            end_date=report_date_value(item.get("end_date")),
            is_draft=bool(item.get("is_draft", report.is_draft)),
        )
        for field in REACH_COUNT_FIELDS:
            setattr(row, field, to_int(item.get(field)))
        report.reach.append(row)
        rows.append(row)
    return rows

def program_report_to_dict(report, detail=False):
    project = report.project
    data = {
        "id": report.id,
        "project_id": report.project_id,
        "state": project.state if project else None,
        "grant_id": project.grant_id if project else None,
        "report_date": format_date(report.report_date) or None,
        "reporting_person": report.reporting_person,
        "is_draft": report.is_draft,
        "language": report.language,
        "created_at": format_datetime_iso(report.created_at),
    }
    if detail:
        for field in PROGRAM_TEXT_FIELDS:
            data[field] = getattr(report, field)
        reach_rows = []
        for r in report.reach:
            row = {
                "id": r.id,
                "activity_name": r.activity_name,
                "activity_goal": r.activity_goal,
                "location": r.location,
                "start_date": format_date(r.start_date) or None,
                "end_date": format_date(r.end_date) or None,
                "is_draft": r.is_draft,
            }
            for field in REACH_COUNT_FIELDS:
                row[field] = getattr(r, field)
            reach_rows.append(row)
        data["reach"] = reach_rows
        data["files"] = [{"id": f.id, "file_name": f.file_name, "file_key": f.file_key, "file_type": f.file_type}
                         for f in report.files]
    return data

@app.route("/api/f5/save", methods=["POST"])
@permission_required("f5_save")
def api_f5_save():
    data = request_json()
    target, error = resolve_report_target(data.get("project_id"))
    if error:
        return error
    if target["historical"]:
        return json_error("Program reports can only be filed against portal projects", 400)
    reach = data.get("reach") or []
    if not isinstance(reach, list):
        return json_error("reach must be a list", 400)

    report = ProgramReport(project_id=target["project"].id, created_by_id=current_user.id)
    try:
        apply_program_summary(report, data.get("summary") or {})
        rows = build_reach_rows(report, reach)
    except ValueError:
        return json_error("Invalid date in report", 400)
    db.session.add(report)
    db.session.flush()

    temp_key = data.get("file_key_temp")
    if temp_key:
        final_key = program_report_file_key(target["state"], target["err"], target["serial"],
                                            report.id, file_extension(temp_key))
        if not move_report_file(temp_key, final_key):
            db.session.rollback()
            return json_error("Failed to store report file", 500)
        report.files.append(ProgramFile(file_name=os.path.basename(final_key), file_key=final_key,
                                        uploaded_by_id=current_user.id))

    db.session.commit()
    return jsonify({"success": True, "report_id": report.id, "reach_ids": [r.id for r in rows]})

@app.route("/api/f5/list")
@login_required
def api_f5_list():
    query = ProgramReport.query
    project_id = to_int(request.args.get("project_id"))
    if project_id:
        query = query.filter(ProgramReport.project_id == project_id)
    reports = query.order_by(ProgramReport.created_at.desc(), ProgramReport.id.desc()).all()
    rows = [program_report_to_dict(r) for r in reports]
    return jsonify([row for row in rows if can_access_state(current_user, row["state"])])

@app.route("/api/f5/report/<int:report_id>")
@login_required
def api_f5_report(report_id):
    report = db.session.get(ProgramReport, report_id)
    if not report:
        return json_error("Report not found", 404)
    data = program_report_to_dict(report, detail=True)
    if not can_access_state(current_user, data["state"]):
        return json_error("You do not have access to this report", 403)
    return jsonify(data)

@app.route("/api/f5/update", methods=["POST"])
@permission_required("f5_edit")
def api_f5_update():
    data = request_json()
    report = db.session.get(ProgramReport, to_int(data.get("report_id")))
    if not report:
        return json_error("Report not found", 404)
    if not can_access_state(current_user, report.project.state if report.project else None):
        return json_error("You do not have access to this report", 403)
    try:
        apply_program_summary(report, data.get("summary") or {})
        if "reach" in data:
            report.reach.clear()
            build_reach_rows(report, data.get("reach"))
    except ValueError:
        db.session.rollback()
        return json_error("Invalid date in report", 400)
    db.session.commit()
    return jsonify({"success": True, "report": program_report_to_dict(report, detail=True)})

# ---------- Project Status API ----------
PROJECT_STATUSES = (STATUS_PENDING, STATUS_APPROVED, STATUS_ACTIVE, STATUS_COMPLETED)

def load_portal_project(project_id):
    historical, numeric_id = split_historical_id(project_id)
    if historical:
        return None, json_error("Historical projects cannot be updated", 400)
    project = db.session.get(Project, numeric_id) if numeric_id else None
    if not project:
        return None, json_error("Project not found", 404)
    if not can_access_state(current_user, project.state):
        return None, json_error("You do not have access to this project", 403)
    return project, None

@app.route("/api/projects/<project_id>/status", methods=["PATCH"])
@permission_required("project_update_status")
def api_project_status(project_id):
    project, error = load_portal_project(project_id)
    if error:
        return error
    status = (request_json().get("status") or STATUS_COMPLETED).strip().lower()
    if status not in PROJECT_STATUSES:
        return json_error(f"Invalid status. Must be one of: {', '.join(PROJECT_STATUSES)}", 400)
    project.status = status
    db.session.commit()
    return jsonify({"success": True, "project": project.to_dict()})

@app.route("/api/projects/<project_id>/reporting-status", methods=["PATCH"])
@permission_required("project_update_status")
def api_project_reporting_status(project_id):
    project, error = load_portal_project(project_id)
    if error:
        return error
    data = request_json()
    f4_status = normalize_reporting_status(data.get("f4_status"))
    f5_status = normalize_reporting_status(data.get("f5_status"))
    if f4_status is None and f5_status is None:
        return json_error("Provide at least one of f4_status or f5_status.", 400)
    if f4_status is not None:
        project.f4_status = f4_status
    if f5_status is not None:
        project.f5_status = f5_status
    db.session.commit()
    return jsonify({"success": True, "f4_status": project.f4_status, "f5_status": project.f5_status})

# ---------- Historical Activities ----------
# Sheet column (lower-cased, spaces as underscores) -> HistoricalActivity attribute
HISTORICAL_TEXT_COLUMNS = {
    "err_code": "err_code",
    "err_name": "err_name",
    "serial_number": "serial_number",
    "project_donor": "project_donor",
    "mou_signed": "mou_signed",
    "f4": "f4_status",
    "f5": "f5_status",
    "date_report_completed": "date_report_completed",
}
HISTORICAL_TARGET_COLUMNS = {"target_(ind.)": "target_individuals", "target_(fam.)": "target_families"}

def import_historical_frame(df, replace=False):
    """
    Load historical activities from a DataFrame

    Column names are matched case-insensitively with spaces read as underscores
    ("ERR Code" -> err_code). Rows without a state or a positive USD amount are skipped.

    Returns:
        tuple: (created, skipped)
    """
    df = df.rename(columns=lambda c: str(c).strip().lower().replace(" ", "_"))
    if "state" not in df.columns or "usd" not in df.columns:
        raise ValueError("CSV must contain at least State and USD columns")
    df["usd"] = pd.to_numeric(df["usd"].astype(str).str.replace(",", ""), errors="coerce")

    if replace:
        HistoricalActivity.query.delete()
    created, skipped = 0, 0
    for _, row in df.iterrows():
        state = normalize_state(str(row.get("state") or "")) if pd.notna(row.get("state")) else ""
        usd = row.get("usd")
        if not state or pd.isna(usd) or usd <= 0:
            skipped += 1
            continue
        values = {}
        for column, attr in HISTORICAL_TEXT_COLUMNS.items():
            value = row.get(column)
            values[attr] = str(value).strip() if value is not None and pd.notna(value) else None
        for column, attr in HISTORICAL_TARGET_COLUMNS.items():
            target = pd.to_numeric(row.get(column), errors="coerce")
            values[attr] = int(target) if pd.notna(target) else None
        db.session.add(HistoricalActivity(state=state, usd=float(usd), **values))
        created += 1
    db.session.commit()
    return created, skipped

@app.route("/api/historical/import", methods=["POST"])
@permission_required("historical_import")
def api_historical_import():
    f = request.files.get("file")
    if not f:
        return json_error("No file uploaded", 400)
    try:
        df = pd.read_csv(f)
        created, skipped = import_historical_frame(df, replace=request.form.get("replace") == "true")
    except (ValueError, pd.errors.ParserError) as e:
        db.session.rollback()
        return json_error(f"Import failed: {e}", 400)
    return jsonify({"success": True, "created": created, "skipped": skipped})

@app.route("/api/historical")
@login_required
def api_historical():
    query = HistoricalActivity.query
    state = request.args.get("state")
    if state:
        query = query.filter(HistoricalActivity.state == normalize_state(state))
    query = restrict_to_visible_states(query, HistoricalActivity.state)
    return jsonify([{
        "id": f"{HISTORICAL_PREFIX}{a.id}",
        "err_code": a.err_code,
        "err_name": a.err_name,
        "state": a.state,
        "serial_number": a.serial_number,
        "usd": a.usd,
        "project_donor": a.project_donor,
    } for a in query.order_by(HistoricalActivity.id.asc()).all()])

# ---------- Overview API ----------
OVERVIEW_STATUSES = (STATUS_APPROVED, STATUS_ACTIVE, STATUS_PENDING, STATUS_COMPLETED)
OVERVIEW_FUNDING = (FUNDING_COMMITTED, FUNDING_ALLOCATED)

def sheet_flag(value, expected=None):
    """Read a yes/no style cell from the activities sheet; with expected, match that word"""
    text = (value or "").strip().lower()
    if expected:
        return text == expected
    return bool(text) and text != "no"

def later_date(current, candidate):
    if not candidate:
        return current
    if not current:
        return candidate
    return max(current, candidate)

def financial_rollup():
    """F4 actuals, report counts and last report date keyed by project id or historical_<id>"""
    rollup = {}
    for report in FinancialReport.query.all():
        if report.project_id:
            key = report.project_id
        elif report.historical_activity_id:
            key = f"{HISTORICAL_PREFIX}{report.historical_activity_id}"
        else:
            continue
        entry = rollup.setdefault(key, {"actual": 0.0, "count": 0, "last": None})
        entry["actual"] += report.total_expenses or 0
        entry["count"] += 1
        entry["last"] = later_date(entry["last"], format_date(report.report_date) or None)
    return rollup

def rollup_row(project_id, plan, actual, **fields):
    row = {
        "project_id": project_id,
        "plan": plan,
        "actual": actual,
        "variance": plan - actual,
        "burn": actual / plan if plan > 0 else 0,
    }
    row.update(fields)
    return row

@app.route("/api/overview/rollup")
@login_required
def api_overview_rollup():
    """
    Plan against actual spend for every funded workplan the user may see

    Portal workplans plan their expense total and historical activities their USD
    amount; actuals are F4 expense totals. Historical activities carry no donor,
    grant call or room, so those filters leave them out.
    """
    donor_id = to_int(request.args.get("donor"))
    grant_call_id = to_int(request.args.get("grant"))
    room_id = to_int(request.args.get("err"))
    state = normalize_state(request.args.get("state"))

    query = Project.query.filter(Project.status.in_(OVERVIEW_STATUSES), Project.funding_status.in_(OVERVIEW_FUNDING))
    if donor_id:
        query = query.filter(Project.donor_id == donor_id)
    if grant_call_id:
        query = query.filter(Project.grant_call_id == grant_call_id)
    if room_id:
        query = query.filter(Project.emergency_room_id == room_id)
    projects = [p for p in visible_projects(query).order_by(Project.id.asc()).all()
                if not state or normalize_state(p.state) == state]

    f4 = financial_rollup()
    f5 = {}
    individuals = families = 0
    project_ids = {p.id for p in projects}
    for report in ProgramReport.query.filter(ProgramReport.is_draft.is_(False)).all():
        if report.project_id not in project_ids:
            continue
        entry = f5.setdefault(report.project_id, {"count": 0, "last": None})
        entry["count"] += 1
        entry["last"] = later_date(entry["last"], format_date(report.report_date) or None)
        for reach in report.reach:
            individuals += reach.individual_count or 0
            families += reach.household_count or 0

    empty = {"actual": 0.0, "count": 0, "last": None}
    rows = []
    for project in projects:
        reports = f4.get(project.id, empty)
        programs = f5.get(project.id, {"count": 0, "last": None})
        rows.append(rollup_row(
            project.id, project.amount, reports["actual"],
            state=normalize_state(project.state),
            err_id=project.emergency_room.err_code if project.emergency_room else project.err_id,
            grant_call_id=project.grant_call_id,
            grant_serial_id=project.grant_id,
            has_mou=bool(project.mou_id),
            mou_code=project.mou.mou_code if project.mou else None,
            f4_count=reports["count"],
            last_report_date=reports["last"],
            f5_count=programs["count"],
            last_f5_date=programs["last"],
            status=project.status,
            is_historical=False,
        ))

    if not (donor_id or grant_call_id or room_id):
        for activity in HistoricalActivity.query.order_by(HistoricalActivity.id.asc()).all():
            activity_state = normalize_state(activity.state)
            if (state and activity_state != state) or not can_access_state(current_user, activity_state):
                continue
            key = f"{HISTORICAL_PREFIX}{activity.id}"
            reports = f4.get(key, empty)
            has_mou = sheet_flag(activity.mou_signed)
            rows.append(rollup_row(
                key, activity.usd or 0, reports["actual"],
                state=activity_state,
                err_id=activity.err_code or activity.err_name,
                grant_call_id=None,
                grant_serial_id=activity.serial_number,
                project_donor=activity.project_donor,
                has_mou=has_mou,
                mou_code=activity.mou_signed if has_mou else None,
                f4_count=reports["count"] + (1 if sheet_flag(activity.f4_status, "completed") else 0),
                last_report_date=reports["last"] or activity.date_report_completed,
                f5_count=1 if sheet_flag(activity.f5_status, "completed") else 0,
                last_f5_date=activity.date_report_completed,
                status=None,
                is_historical=True,
            ))
            individuals += activity.target_individuals or 0
            families += activity.target_families or 0

    plan = sum(r["plan"] for r in rows)
    actual = sum(r["actual"] for r in rows)
    kpis = {
        "projects": len(rows),
        "plan": plan,
        "actual": actual,
        "variance": plan - actual,
        "burn": actual / plan if plan > 0 else 0,
        "f4_count": sum(r["f4_count"] for r in rows),
        "last_report_date": max((r["last_report_date"] for r in rows if r["last_report_date"]), default=None),
        "f5_count": sum(r["f5_count"] for r in rows),
        "last_f5_date": max((r["last_f5_date"] for r in rows if r["last_f5_date"]), default=None),
        "f5_total_individuals": individuals,
        "f5_total_families": families,
    }
    return jsonify({"kpis": kpis, "rows": rows})

@app.route("/api/overview/options")
@login_required
def api_overview_options():
    """Filter choices for the overview: donors, grant calls, states and rooms with funded workplans"""
    donor_id = to_int(request.args.get("donor"))
    grant_call_id = to_int(request.args.get("grant"))
    state = normalize_state(request.args.get("state"))

    grant_calls = GrantCall.query
    if donor_id:
        grant_calls = grant_calls.filter(GrantCall.donor_id == donor_id)
    grant_calls = grant_calls.order_by(GrantCall.created_at.desc(), GrantCall.id.desc()).all()

    funded = Project.query.filter(
        Project.funding_status == FUNDING_COMMITTED,
        Project.status.in_((STATUS_APPROVED, STATUS_ACTIVE))
    )
    if grant_call_id:
        funded = funded.filter(Project.grant_call_id == grant_call_id)
    funded = visible_projects(funded).all()

    rooms = {}
    for project in funded:
        if project.emergency_room and (not state or normalize_state(project.state) == state):
            rooms.setdefault(project.emergency_room.id, project.emergency_room)
    return jsonify({
        "donors": [{"id": d.id, "name": d.name, "short_name": d.short_name}
                   for d in Donor.query.order_by(Donor.name.asc()).all()],
        "grants": [{"id": g.id, "name": g.name, "shortname": g.shortname, "donor_id": g.donor_id}
                   for g in grant_calls],
        "states": sorted({normalize_state(p.state) for p in funded if p.state}),
        "rooms": [{"id": r.id, "name": r.name, "name_ar": r.name_ar, "err_code": r.err_code}
                  for r in sorted(rooms.values(), key=lambda r: r.id)],
    })

@app.route("/api/overview/project/<int:project_id>")
@login_required
def api_overview_project(project_id):
    project = db.session.get(Project, project_id)
    if not project:
        return json_error("Project not found", 404)
    if not can_access_state(current_user, project.state):
        return json_error("You do not have access to this project", 403)
    data = project.to_dict()
    data["err_code"] = project.emergency_room.err_code if project.emergency_room else None
    data["project_objectives"] = project.project_objectives
    data["intended_beneficiaries"] = project.intended_beneficiaries
    data["planned_activities"] = project.planned_activities or []
    reports = FinancialReport.query.filter_by(project_id=project.id).order_by(
        FinancialReport.created_at.desc(), FinancialReport.id.desc()
    ).all()
    return jsonify({"project": data, "summaries": [financial_report_to_dict(r, detail=True) for r in reports]})

# ---------- CLI Commands ----------
@app.cli.command("init-db")
def init_db():
    db.create_all()
    ensure_seed_data()
    print("Database initialized.")

@app.cli.command("create-admin")
def create_admin():
    """Create a superadmin user for the portal"""
    import getpass

    print("\n=== Create Administrator Account ===\n")

    email = input("Enter admin email: ").strip().lower()
    if not email:
        print("Error: Email cannot be empty")
        return

    if User.query.filter_by(email=email).first():
        print(f"Error: User with email '{email}' already exists")
        return

    full_name = input("Enter full name: ").strip()
    if not full_name:
        print("Error: Full name cannot be empty")
        return

    password = getpass.getpass("Enter password: ")
    password_confirm = getpass.getpass("Confirm password: ")

    if password != password_confirm:
        print("Error: Passwords do not match")
        return

    if len(password) < 8:
        print("Error: Password must be at least 8 characters")
        return

    admin = User(email=email, full_name=full_name, role=ROLE_SUPERADMIN, is_active=True)
    admin.set_password(password)
    db.session.add(admin)
    db.session.commit()

    print(f"\n✓ Admin user '{full_name}' created successfully!")
    print(f"  Email: {email}")
    print("  Role: Super Administrator\n")

@app.cli.command("seed-demo")
def seed_demo_command():
    """Load a demo cycle, grant call and workplans"""
    from seed_data import seed_demo
    db.create_all()
    ensure_seed_data()
    seed_demo()

@app.cli.command("import-historical")
@click.argument("csv_path")
@click.option("--replace", is_flag=True, help="Delete existing historical activities first")
def import_historical_command(csv_path, replace):
    """Import historical activities from a CSV export"""
    try:
        df = pd.read_csv(csv_path)
        created, skipped = import_historical_frame(df, replace=replace)
    except (OSError, ValueError) as e:
        db.session.rollback()
        print(f"Error: {e}")
        return
    print(f"Import complete. Created {created}, skipped {skipped} rows.")

# ---------- Error Handlers ----------

@app.errorhandler(400)
def bad_request(error):
    return json_error("Bad request", 400)

@app.errorhandler(401)
def unauthorized_error(error):
    return json_error("Unauthorized", 401)

@app.errorhandler(403)
def forbidden(error):
    return json_error("You don't have permission to access this resource.", 403)

@app.errorhandler(404)
def not_found(error):
    return json_error("Not found", 404)

@app.errorhandler(405)
def method_not_allowed(error):
    return json_error("Method not allowed", 405)

@app.errorhandler(500)
def internal_error(error):
    db.session.rollback()
    app.logger.error("Unhandled error: %s", getattr(error, "original_exception", error))
    return json_error("Internal server error", 500)

if __name__ == "__main__":
    with app.app_context():
        db.create_all()
        ensure_seed_data()
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 5000)), debug=True)
