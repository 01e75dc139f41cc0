from datetime import date, datetime
from decimal import Decimal

from extensions import db


class SerializerMixin:
    """Plain ``to_dict`` for JSON responses (Decimal -> float, dates -> ISO)."""

    _hidden_fields: tuple = ()

    def to_dict(self) -> dict:
        out = {}
        for column in self.__table__.columns:
            if column.key in self._hidden_fields:
                continue
            value = getattr(self, column.key)
            if isinstance(value, Decimal):
                value = float(value)
            elif isinstance(value, (date, datetime)):
                value = value.isoformat()
            out[column.key] = value
        return out


# --------------------------
# Access
# --------------------------

class User(SerializerMixin, db.Model):
    __tablename__ = 'users'
    _hidden_fields = ('password_hash',)

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    name = db.Column(db.String(150))
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(32), nullable=False, default='student')
    # Student accounts are linked to their cohort enrolment
    student_id = db.Column(db.Integer, db.ForeignKey('cohort_students.id'), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    last_login_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<User {self.email} ({self.role})>'


class AuditLog(SerializerMixin, db.Model):
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=True)
    username = db.Column(db.String(150))
    user_role = db.Column(db.String(64))
    action = db.Column(db.String(100), nullable=False, index=True)
    target = db.Column(db.String(100))
    detail = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


class CommunicationLog(SerializerMixin, db.Model):
    __tablename__ = 'communication_logs'

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('cohort_students.id'), nullable=True, index=True)
    channel = db.Column(db.String(20), nullable=False, default='email')
    message_type = db.Column(db.String(50), nullable=False)
    recipient = db.Column(db.String(255))
    subject = db.Column(db.String(255))
    body = db.Column(db.Text)
    status = db.Column(db.String(20), nullable=False)  # sent / failed / skipped
    error = db.Column(db.Text)
    # Dedupe key for scheduled reminders, e.g. "reminder:12:3:2025-01-10"
    reference_key = db.Column(db.String(120), index=True)
    sent_at = db.Column(db.DateTime, default=datetime.utcnow)


# --------------------------
# Cohorts & students
# --------------------------

class Cohort(SerializerMixin, db.Model):
    __tablename__ = 'cohorts'

    id = db.Column(db.Integer, primary_key=True)
    cohort_code = db.Column(db.String(50), unique=True, nullable=False)
    name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date)
    duration_months = db.Column(db.Integer)
    sessions_per_day = db.Column(db.Integer, nullable=False, default=1)
    max_students = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    students = db.relationship('CohortStudent', backref='cohort', cascade="all, delete-orphan")
    epics = db.relationship('CohortEpic', backref='cohort', cascade="all, delete-orphan",
                            order_by='CohortEpic.position')

    def __repr__(self):
        return f'<Cohort {self.cohort_code}>'


class CohortEpic(SerializerMixin, db.Model):
    __tablename__ = 'cohort_epics'

    id = db.Column(db.Integer, primary_key=True)
    cohort_id = db.Column(db.Integer, db.ForeignKey('cohorts.id'), nullable=False, index=True)
    name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text)
    position = db.Column(db.Integer, nullable=False, default=0)
    duration_months = db.Column(db.Integer)
    is_active = db.Column(db.Boolean, nullable=False, default=False)

    def __repr__(self):
        return f'<CohortEpic {self.name}>'


class CohortStudent(SerializerMixin, db.Model):
    __tablename__ = 'cohort_students'
    __table_args__ = (
        db.UniqueConstraint('cohort_id', 'email', name='uq_cohort_students_cohort_email'),
    )

    id = db.Column(db.Integer, primary_key=True)
    cohort_id = db.Column(db.Integer, db.ForeignKey('cohorts.id'), nullable=False, index=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100))
    email = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(20))
    postal_code = db.Column(db.String(10))
    dropped_out_status = db.Column(db.String(20), nullable=False, default='active')
    dropped_out_at = db.Column(db.DateTime)
    dropped_out_reason = db.Column(db.Text)
    dropped_out_by = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name or ''}".strip()

    @property
    def is_active(self) -> bool:
        return self.dropped_out_status != 'dropped_out'

    def to_dict(self) -> dict:
        out = super().to_dict()
        out['full_name'] = self.full_name
        return out

    def __repr__(self):
        return f'<CohortStudent {self.email}>'


# --------------------------
# Attendance & leave
# --------------------------

class Holiday(SerializerMixin, db.Model):
    __tablename__ = 'holidays'

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(150), nullable=False)
    date = db.Column(db.Date, nullable=False, index=True)
    description = db.Column(db.Text)
    holiday_type = db.Column(db.String(20), nullable=False, default='global')  # global / cohort_specific
    cohort_id = db.Column(db.Integer, db.ForeignKey('cohorts.id'), nullable=True)
    status = db.Column(db.String(20), nullable=False, default='draft')  # draft / published
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class AttendanceRecord(SerializerMixin, db.Model):
    __tablename__ = 'attendance_records'
    __table_args__ = (
        db.UniqueConstraint('student_id', 'epic_id', 'session_date', 'session_number',
                            name='uq_attendance_student_session'),
    )

    id = db.Column(db.Integer, primary_key=True)
    cohort_id = db.Column(db.Integer, db.ForeignKey('cohorts.id'), nullable=False, index=True)
    epic_id = db.Column(db.Integer, db.ForeignKey('cohort_epics.id'), nullable=False, index=True)
    student_id = db.Column(db.Integer, db.ForeignKey('cohort_students.id'), nullable=False, index=True)
    session_date = db.Column(db.Date, nullable=False)
    session_number = db.Column(db.Integer, nullable=False, default=1)
    status = db.Column(db.String(20), nullable=False)  # present / late / absent
    absence_type = db.Column(db.String(20))  # informed / uninformed / exempted
    reason = db.Column(db.Text)
    marked_by = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    student = db.relationship('CohortStudent')


class LeaveApplication(SerializerMixin, db.Model):
    __tablename__ = 'leave_applications'

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('cohort_students.id'), nullable=False, index=True)
    cohort_id = db.Column(db.Integer, db.ForeignKey('cohorts.id'), nullable=False, index=True)
    epic_id = db.Column(db.Integer, db.ForeignKey('cohort_epics.id'), nullable=True)
    session_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date)
    is_date_range = db.Column(db.Boolean, nullable=False, default=False)
    session_number = db.Column(db.Integer)
    reason = db.Column(db.Text, nullable=False)
    leave_status = db.Column(db.String(20), nullable=False, default='pending')
    approved_by = db.Column(db.Integer)
    approved_at = db.Column(db.DateTime)
    rejection_reason = db.Column(db.Text)
    approval_notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    student = db.relationship('CohortStudent')


# --------------------------
# Fees
# --------------------------

class FeeStructure(SerializerMixin, db.Model):
    __tablename__ = 'fee_structures'

    id = db.Column(db.Integer, primary_key=True)
    cohort_id = db.Column(db.Integer, db.ForeignKey('cohorts.id'), nullable=False, index=True)
    # NULL for the cohort structure; set for a student's custom structure
    student_id = db.Column(db.Integer, db.ForeignKey('cohort_students.id'), nullable=True, index=True)
    structure_type = db.Column(db.String(20), nullable=False, default='cohort')  # cohort / custom
    total_program_fee = db.Column(db.Numeric(12, 2), nullable=False)
    admission_fee = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    number_of_semesters = db.Column(db.Integer, nullable=False, default=1)
    instalments_per_semester = db.Column(db.Integer, nullable=False, default=1)
    one_shot_discount_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    program_fee_includes_gst = db.Column(db.Boolean, nullable=False, default=True)
    equal_scholarship_distribution = db.Column(db.Boolean, nullable=False, default=True)
    instalment_split = db.Column(db.String(20), nullable=False, default='equal')  # equal / weighted
    one_shot_dates = db.Column(db.JSON)
    sem_wise_dates = db.Column(db.JSON)
    instalment_wise_dates = db.Column(db.JSON)
    is_setup_complete = db.Column(db.Boolean, nullable=False, default=False)
    created_by = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def dates_for_plan(self, plan: str):
        return {
            'one_shot': self.one_shot_dates,
            'sem_wise': self.sem_wise_dates,
            'instalment_wise': self.instalment_wise_dates,
        }.get(plan)


class CohortScholarship(SerializerMixin, db.Model):
    __tablename__ = 'cohort_scholarships'

    id = db.Column(db.Integer, primary_key=True)
    cohort_id = db.Column(db.Integer, db.ForeignKey('cohorts.id'), nullable=False, index=True)
    name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text)
    amount_percentage = db.Column(db.Numeric(5, 2), nullable=False)
    start_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    end_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=100)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class StudentScholarship(SerializerMixin, db.Model):
    __tablename__ = 'student_scholarships'

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('cohort_students.id'), nullable=False, unique=True)
    scholarship_id = db.Column(db.Integer, db.ForeignKey('cohort_scholarships.id'), nullable=False)
    additional_discount_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    assigned_by = db.Column(db.Integer)
    assigned_at = db.Column(db.DateTime, default=datetime.utcnow)

    scholarship = db.relationship('CohortScholarship')


class StudentPayment(SerializerMixin, db.Model):
    """One payment record per student; the schedule lives in ``payment_schedule``."""

    __tablename__ = 'student_payments'

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('cohort_students.id'), nullable=False, unique=True)
    cohort_id = db.Column(db.Integer, db.ForeignKey('cohorts.id'), nullable=False, index=True)
    payment_plan = db.Column(db.String(20), nullable=False)  # one_shot / sem_wise / instalment_wise
    scholarship_id = db.Column(db.Integer, db.ForeignKey('cohort_scholarships.id'), nullable=True)
    payment_schedule = db.Column(db.JSON, nullable=False)
    total_amount_payable = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_amount_paid = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_amount_pending = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    admission_fee_paid = db.Column(db.Boolean, nullable=False, default=True)
    payment_status = db.Column(db.String(20), nullable=False, default='pending')
    next_due_date = db.Column(db.Date)
    last_payment_date = db.Column(db.Date)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    student = db.relationship('CohortStudent')
    transactions = db.relationship('PaymentTransaction', backref='payment', cascade="all, delete-orphan",
                                   order_by='PaymentTransaction.id')

    def __repr__(self):
        return f'<StudentPayment StudentID={self.student_id} Plan={self.payment_plan}>'


class PaymentTransaction(SerializerMixin, db.Model):
    __tablename__ = 'payment_transactions'

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey('student_payments.id'), nullable=False, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    approved_amount = db.Column(db.Numeric(12, 2))
    payment_method = db.Column(db.String(40), nullable=False)
    reference_number = db.Column(db.String(128))
    payment_date = db.Column(db.Date, nullable=False, default=date.today)
    installment_number = db.Column(db.Integer)
    semester_number = db.Column(db.Integer)
    # verification_pending / approved / partially_approved / rejected
    verification_status = db.Column(db.String(30), nullable=False, default='verification_pending')
    verified_by = db.Column(db.Integer)
    verified_at = db.Column(db.DateTime)
    verification_notes = db.Column(db.Text)
    rejection_reason = db.Column(db.Text)
    parent_transaction_id = db.Column(db.Integer, db.ForeignKey('payment_transactions.id'), nullable=True)
    partial_payment_sequence = db.Column(db.Integer, nullable=False, default=1)
    notes = db.Column(db.Text)
    recorded_by = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<PaymentTransaction PaymentID={self.payment_id} Amount={self.amount}>'


# --------------------------
# Equipment
# --------------------------

class EquipmentCategory(SerializerMixin, db.Model):
    __tablename__ = 'equipment_categories'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.Text)


class EquipmentLocation(SerializerMixin, db.Model):
    __tablename__ = 'equipment_locations'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.Text)


class Equipment(SerializerMixin, db.Model):
    __tablename__ = 'equipment'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text)
    serial_number = db.Column(db.String(100), unique=True)
    category_id = db.Column(db.Integer, db.ForeignKey('equipment_categories.id'), nullable=True)
    location_id = db.Column(db.Integer, db.ForeignKey('equipment_locations.id'), nullable=True)
    purchase_date = db.Column(db.Date)
    purchase_cost = db.Column(db.Numeric(12, 2))
    condition_status = db.Column(db.String(20), nullable=False, default='good')
    availability_status = db.Column(db.String(20), nullable=False, default='available')
    condition_notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    category = db.relationship('EquipmentCategory')
    location = db.relationship('EquipmentLocation')

    def __repr__(self):
        return f'<Equipment {self.name} ({self.availability_status})>'


class EquipmentBorrowing(SerializerMixin, db.Model):
    __tablename__ = 'equipment_borrowings'

    id = db.Column(db.Integer, primary_key=True)
    equipment_id = db.Column(db.Integer, db.ForeignKey('equipment.id'), nullable=False, index=True)
    student_id = db.Column(db.Integer, db.ForeignKey('cohort_students.id'), nullable=False, index=True)
    borrowed_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    expected_return_date = db.Column(db.Date, nullable=False)
    actual_return_date = db.Column(db.DateTime)
    status = db.Column(db.String(20), nullable=False, default='active')  # active / returned / overdue / cancelled
    reason = db.Column(db.Text)
    notes = db.Column(db.Text)
    issue_condition = db.Column(db.String(20))
    issued_by = db.Column(db.Integer)

    equipment = db.relationship('Equipment')
    student = db.relationship('CohortStudent')


class EquipmentReturn(SerializerMixin, db.Model):
    __tablename__ = 'equipment_returns'

    id = db.Column(db.Integer, primary_key=True)
    borrowing_id = db.Column(db.Integer, db.ForeignKey('equipment_borrowings.id'), nullable=False, index=True)
    return_date = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    condition = db.Column(db.String(20), nullable=False)
    notes = db.Column(db.Text)
    overdue_days = db.Column(db.Integer, nullable=False, default=0)
    processed_by = db.Column(db.Integer)

    borrowing = db.relationship('EquipmentBorrowing')


class StudentBlacklist(SerializerMixin, db.Model):
    __tablename__ = 'student_blacklist'

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('cohort_students.id'), nullable=False, index=True)
    reason = db.Column(db.Text, nullable=False)
    blacklisted_by = db.Column(db.Integer)
    blacklisted_at = db.Column(db.DateTime, default=datetime.utcnow)
    expires_at = db.Column(db.DateTime)
    is_active = db.Column(db.Boolean, nullable=False, default=True)


class DamageReport(SerializerMixin, db.Model):
    __tablename__ = 'equipment_damage_reports'

    id = db.Column(db.Integer, primary_key=True)
    equipment_id = db.Column(db.Integer, db.ForeignKey('equipment.id'), nullable=False, index=True)
    borrowing_id = db.Column(db.Integer, db.ForeignKey('equipment_borrowings.id'), nullable=True)
    student_id = db.Column(db.Integer, db.ForeignKey('cohort_students.id'), nullable=True)
    damage_type = db.Column(db.String(50), nullable=False, default='physical')
    description = db.Column(db.Text, nullable=False)
    estimated_cost = db.Column(db.Numeric(12, 2))
    status = db.Column(db.String(30), nullable=False, default='reported')
    resolution_notes = db.Column(db.Text)
    reported_by = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
