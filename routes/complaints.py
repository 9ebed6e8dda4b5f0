"""Citizen complaint intake and tracking blueprint."""
from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required
from wtforms import FloatField, SelectField, StringField, TextAreaField
from wtforms.validators import DataRequired, Length, NumberRange, Optional

from extensions import db
from models import COMPLAINT_CATEGORIES, COMPLAINT_PRIORITIES, Complaint
from utils import complaint_lifecycle
from utils.decorators import roles_required
from utils.errors import AccessDeniedError, NotFoundError
from utils.security import sanitize_input
from .auth import JSONForm, request_payload

complaints_bp = Blueprint("complaints", __name__, url_prefix="/api/complaints")


class ComplaintIntakeForm(JSONForm):
    title = StringField("Title", validators=[DataRequired(), Length(max=200)])
    description = TextAreaField("Description", validators=[DataRequired(), Length(max=5000)])
    category = SelectField("Category", choices=[(c, c) for c in COMPLAINT_CATEGORIES], validators=[DataRequired()])
    priority = SelectField(
        "Priority",
        choices=[("", "Default")] + [(p, p) for p in COMPLAINT_PRIORITIES],
        validators=[Optional()],
        default="",
    )
    location = StringField("Location", validators=[Optional(), Length(max=255)])
    lat = FloatField("Latitude", validators=[Optional(), NumberRange(min=-90, max=90)])
    lng = FloatField("Longitude", validators=[Optional(), NumberRange(min=-180, max=180)])


def complaint_or_404(complaint_id: str) -> Complaint:
    complaint = db.session.get(Complaint, str(complaint_id))
    if not complaint:
        raise NotFoundError("Complaint not found")
    return complaint


def ensure_can_view(complaint: Complaint, user) -> None:
    if user.is_admin:
        return
    if user.is_citizen and complaint.citizen_id == user.id:
        return
    if user.is_solver and complaint.solver_id in (None, user.id):
        return
    current_app.logger.warning("complaint_access_denied", extra={"complaint_id": complaint.id, "user_id": user.id})
    raise AccessDeniedError("Access denied")


def _page_args() -> tuple[int, int]:
    try:
        page = int(request.args.get("page", 1))
    except (TypeError, ValueError):
        page = 1
    page = 1 if page < 1 else page
    default_page_size = int(current_app.config.get("COMPLAINTS_PER_PAGE", 20))
    return page, max(1, min(default_page_size, 100))


@complaints_bp.route("", methods=["GET"])
@login_required
def list_my_complaints():
    args = sanitize_input(request.args)
    user_id = current_user.id
    if args.get("user_id") and not current_user.is_citizen:
        user_id = args["user_id"]

    page, per_page = _page_args()
    pagination = (
        Complaint.query.filter_by(citizen_id=user_id)
        .order_by(Complaint.created_at.desc())
        .paginate(page=page, per_page=per_page, error_out=False)
    )
    return jsonify(
        {
            "complaints": [c.to_payload() for c in pagination.items],
            "page": pagination.page,
            "pages": pagination.pages,
            "total": pagination.total,
        }
    )


@complaints_bp.route("", methods=["POST"])
@roles_required("CITIZEN")
def submit_complaint():
    form = ComplaintIntakeForm()
    form.validate_or_raise()

    coordinates = None
    if form.lat.data is not None or form.lng.data is not None:
        coordinates = (form.lat.data, form.lng.data)

    complaint = complaint_lifecycle.submit_complaint(
        citizen_id=current_user.id,
        title=form.title.data,
        description=form.description.data,
        category=form.category.data,
        priority=form.priority.data or None,
        location=form.location.data,
        coordinates=coordinates,
        attachments=[f for f in request.files.getlist("media") if f and f.filename],
    )
    return jsonify({"complaint": complaint.to_payload()}), 201


@complaints_bp.route("/<string:complaint_id>", methods=["GET"])
@login_required
def view_complaint(complaint_id):
    complaint = complaint_or_404(complaint_id)
    ensure_can_view(complaint, current_user)
    return jsonify({"complaint": complaint.to_payload(include_logs=True)})


@complaints_bp.route("/<string:complaint_id>/notes", methods=["POST"])
@roles_required("CITIZEN")
def add_note(complaint_id):
    payload = request_payload()
    entry = complaint_lifecycle.add_progress_note(complaint_id, current_user.id, payload.get("note"))
    return jsonify({"progress_log": entry.to_payload()}), 201
