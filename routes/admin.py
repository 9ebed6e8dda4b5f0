"""Administrator oversight blueprint: complaint overrides, reporting, users and departments."""
from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from wtforms import IntegerField, PasswordField, SelectField, StringField
from wtforms.validators import DataRequired, Email, Length, Optional
from wtforms.validators import ValidationError as FormValidationError

from extensions import db
from models import USER_ROLES, Complaint, Department, Solver, User
from utils import complaint_lifecycle, reporting
from utils.decorators import roles_required
from utils.errors import ConflictError, NotFoundError, ValidationError
from utils.security import password_meets_policy, sanitize_input
from .auth import JSONForm, request_payload

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


class AdminUserForm(JSONForm):
    name = StringField("Name", validators=[DataRequired(), Length(max=150)])
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    role = SelectField("Role", choices=[(r, r) for r in USER_ROLES], validators=[DataRequired()])
    password = PasswordField("Password", validators=[Optional()])
    department_id = IntegerField("Department", validators=[Optional()])

    def validate_password(self, field):
        if field.data:
            ok, reason = password_meets_policy(field.data)
            if not ok:
                raise FormValidationError(reason)


class DepartmentForm(JSONForm):
    name = StringField("Name", validators=[DataRequired(), Length(max=150)])


def _keywords(payload) -> list[str]:
    raw = payload.get("keywords") if hasattr(payload, "get") else None
    if isinstance(raw, str):
        raw = raw.split(",")
    return [str(k).strip().lower() for k in (raw or []) if str(k).strip()]


@admin_bp.route("/complaints", methods=["GET"])
@roles_required("ADMIN")
def list_complaints():
    complaints = reporting.list_complaints(sanitize_input(request.args))
    return jsonify({"complaints": [c.to_payload() for c in complaints]})


@admin_bp.route("/complaints", methods=["PUT"])
@roles_required("ADMIN")
def override_complaint():
    payload = dict(request_payload().items())
    complaint_id = payload.pop("complaint_id", None)
    if not complaint_id:
        raise ValidationError("complaint_id is required", field="complaint_id")
    complaint = complaint_lifecycle.admin_override(complaint_id, payload, current_user.id)
    return jsonify({"complaint": complaint.to_payload(include_logs=True)})


@admin_bp.route("/dashboard", methods=["GET"])
@roles_required("ADMIN")
def dashboard():
    overview = reporting.dashboard_overview(current_app.config.get("RECENT_COMPLAINTS_LIMIT", 10))
    overview["recent_complaints"] = [c.to_payload() for c in overview["recent_complaints"]]
    return jsonify(overview)


@admin_bp.route("/analytics", methods=["GET"])
@roles_required("ADMIN")
def analytics():
    return jsonify(reporting.analytics_overview(current_app.config.get("ANALYTICS_WINDOW_DAYS", 30)))


@admin_bp.route("/daily-summary", methods=["GET"])
@roles_required("ADMIN")
def daily_summary():
    summary = reporting.daily_summary(reporting.parse_report_date(request.args.get("date")))
    summary["complaints"] = [c.to_payload() for c in summary["complaints"]]
    return jsonify(summary)


@admin_bp.route("/daily-summary", methods=["POST"])
@roles_required("ADMIN")
def send_daily_summary():
    payload = request_payload()
    day = reporting.parse_report_date(payload.get("date"))
    summary, result = reporting.send_daily_digest(day, admin=current_user, recipient=payload.get("admin_email"))
    body = {"date": summary["date"], "stats": summary["stats"], "delivered": result.delivered, "recipient": result.recipient}
    if not result.delivered:
        body["error"] = "Failed to send daily summary"
        return jsonify(body), 502
    return jsonify(body)


@admin_bp.route("/reference", methods=["GET"])
@roles_required("ADMIN")
def reference_data():
    departments = Department.query.order_by(Department.name.asc()).all()
    solvers = Solver.query.join(User).order_by(User.name.asc()).all()
    return jsonify(
        {
            "departments": [d.to_payload() for d in departments],
            "solvers": [s.to_payload() for s in solvers],
        }
    )


def _complaint_counts(column) -> dict:
    rows = db.session.query(column, func.count(Complaint.id)).filter(column.isnot(None)).group_by(column).all()
    return dict(rows)


@admin_bp.route("/users", methods=["GET"])
@roles_required("ADMIN")
def list_users():
    role = request.args.get("role")
    query = User.query
    if role:
        if role not in USER_ROLES:
            raise ValidationError("Invalid role", field="role", allowed=list(USER_ROLES))
        query = query.filter_by(role=role)
    users = query.order_by(User.created_at.desc()).all()
    filed = _complaint_counts(Complaint.citizen_id)
    assigned = _complaint_counts(Complaint.solver_id)
    payload = []
    for user in users:
        entry = user.to_payload()
        entry["counts"] = {"complaints": filed.get(user.id, 0), "assigned_complaints": assigned.get(user.id, 0)}
        payload.append(entry)
    return jsonify({"users": payload})


@admin_bp.route("/users", methods=["POST"])
@roles_required("ADMIN")
def create_user():
    form = AdminUserForm()
    form.validate_or_raise()

    email = form.email.data.lower().strip()
    if User.query.filter_by(email=email).first():
        raise ConflictError("User already exists")
    department_id = form.department_id.data
    if department_id is not None and not db.session.get(Department, department_id):
        raise NotFoundError("Department not found", department_id=department_id)

    user = User(name=form.name.data.strip(), email=email, role=form.role.data)
    if form.password.data:
        user.set_password(form.password.data)
    db.session.add(user)
    if user.is_solver:
        db.session.add(Solver(user=user, department_id=department_id))
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError("User already exists") from exc

    current_app.logger.info("user_created", extra={"user_id": user.id, "role": user.role, "admin_id": current_user.id})
    return jsonify({"user": user.to_payload()}), 201


@admin_bp.route("/departments", methods=["GET"])
@roles_required("ADMIN")
def list_departments():
    departments = Department.query.order_by(Department.name.asc()).all()
    return jsonify({"departments": [d.to_payload() for d in departments]})


@admin_bp.route("/departments", methods=["POST"])
@roles_required("ADMIN")
def create_department():
    form = DepartmentForm()
    form.validate_or_raise()
    name = form.name.data.strip()
    if Department.query.filter_by(name=name).first():
        raise ConflictError("Department already exists")

    department = Department(name=name, keywords=_keywords(request_payload()))
    db.session.add(department)
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError("Department already exists") from exc
    current_app.logger.info("department_created", extra={"department_id": department.id})
    return jsonify({"department": department.to_payload()}), 201
