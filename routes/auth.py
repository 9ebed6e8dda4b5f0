"""Session authentication blueprint (JSON)."""
from datetime import datetime, timedelta
from typing import Mapping

from flask import Blueprint, abort, current_app, jsonify, request, session
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf import FlaskForm
from flask_wtf.csrf import generate_csrf
from sqlalchemy.exc import IntegrityError
from werkzeug.datastructures import ImmutableMultiDict
from wtforms import BooleanField, PasswordField, StringField
from wtforms.validators import DataRequired, Email, Length
from wtforms.validators import ValidationError as FormValidationError

from extensions import db
from models import User
from utils.decorators import record_audit
from utils.errors import ConflictError, ValidationError
from utils.security import password_meets_policy, reset_attempts, track_attempt

auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


SUBMIT_METHODS = ("POST", "PUT", "PATCH", "DELETE")


def request_payload() -> Mapping:
    """Return the JSON object or form body of the current request."""
    if not request.is_json:
        return request.form
    payload = request.get_json(silent=True)
    if not isinstance(payload, Mapping):
        raise ValidationError("Request body must be a JSON object")
    return payload


def _form_text(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def json_formdata(payload: Mapping) -> ImmutableMultiDict:
    """Flatten a JSON object into form data; nulls count as missing values."""
    items = []
    for key, value in payload.items():
        values = value if isinstance(value, list) else [value]
        items.extend((key, _form_text(v)) for v in values if v is not None)
    return ImmutableMultiDict(items)


class JSONForm(FlaskForm):
    """FlaskForm fed from JSON or form bodies; CSRF is enforced app-wide by CSRFProtect."""

    class Meta:
        csrf = False

        def wrap_formdata(self, form, formdata):
            if request.is_json and request.method in SUBMIT_METHODS:
                return json_formdata(request_payload())
            return super().wrap_formdata(form, formdata)

    def validate_or_raise(self) -> None:
        if not self.validate():
            raise ValidationError("Invalid input", fields=self.errors)


class RegistrationForm(JSONForm):
    name = StringField("Name", validators=[DataRequired(), Length(max=150)])
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    password = PasswordField("Password", validators=[DataRequired(), Length(min=12)])

    def validate_password(self, field):
        ok, reason = password_meets_policy(field.data or "")
        if not ok:
            raise FormValidationError(reason)


class LoginForm(JSONForm):
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    password = PasswordField("Password", validators=[DataRequired()])
    remember_me = BooleanField("Remember me")


@auth_bp.route("/csrf-token", methods=["GET"])
def csrf_token():
    return jsonify({"csrf_token": generate_csrf()})


@auth_bp.route("/register", methods=["POST"])
def register():
    form = RegistrationForm()
    form.validate_or_raise()

    email = form.email.data.lower().strip()
    if User.query.filter_by(email=email).first():
        raise ConflictError("An account with this email already exists")

    user = User(name=form.name.data.strip(), email=email, role="CITIZEN")
    user.set_password(form.password.data)
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError("An account with this email already exists") from exc

    record_audit("REGISTER", user_id=user.id)
    current_app.logger.info("user_registered", extra={"user_id": user.id, "role": user.role})
    login_user(user)
    return jsonify({"user": user.to_payload()}), 201


@auth_bp.route("/login", methods=["POST"])
def login():
    form = LoginForm()
    form.validate_or_raise()

    email = form.email.data.lower().strip()
    attempt_key = f"login:{request.remote_addr}:{email}"
    within_limit = track_attempt(
        attempt_key,
        limit=current_app.config.get("LOGIN_ATTEMPT_LIMIT", 10),
        window=current_app.config.get("LOGIN_ATTEMPT_WINDOW_SECONDS", 900),
    )
    if not within_limit:
        current_app.logger.warning("login_rate_limited", extra={"email": email, "ip": request.remote_addr})
        abort(429)

    user = User.query.filter_by(email=email).first()
    if not user or not user.check_password(form.password.data):
        record_audit("LOGIN_FAILED", user_id=user.id if user else None)
        current_app.logger.info("login_failed", extra={"email": email})
        return jsonify({"error": "Invalid credentials"}), 401

    login_user(user, remember=bool(form.remember_me.data), duration=timedelta(days=30))
    session.permanent = True
    reset_attempts(attempt_key)
    user.last_login_at = datetime.utcnow()
    db.session.commit()
    record_audit("LOGIN", user_id=user.id)
    return jsonify({"user": user.to_payload()})


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    user_id = current_user.id
    logout_user()
    session.clear()
    record_audit("LOGOUT", user_id=user_id)
    return jsonify({"status": "logged_out"})


@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    return jsonify({"user": current_user.to_payload()})
