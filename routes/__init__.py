"""Blueprint registration, health check, and access-checked attachment serving."""
from flask import Blueprint, abort, current_app, jsonify, send_file
from flask_login import current_user, login_required
from sqlalchemy import String, cast, text
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import Complaint
from utils.attachment_storage import PUBLIC_URL_PREFIX, mime_type_for, resolve_stored_path
from .admin import admin_bp
from .auth import auth_bp
from .complaints import complaints_bp, ensure_can_view
from .solvers import solvers_bp

main_bp = Blueprint("main", __name__)

__all__ = ["main_bp", "auth_bp", "complaints_bp", "solvers_bp", "admin_bp"]


@main_bp.route("/")
def index():
    return jsonify({"service": "metronix", "status": "ok"})


@main_bp.route("/health")
def health():
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        current_app.logger.exception("Health check database probe failed")
        return jsonify({"status": "degraded", "database": "unavailable"}), 503
    return jsonify({"status": "ok", "database": "ok"})


@main_bp.route("/uploads/complaints/<string:name>", methods=["GET"])
@login_required
def complaint_upload(name):
    path = resolve_stored_path(name, current_app.config["COMPLAINT_UPLOAD_FOLDER"])
    if not path:
        abort(404)
    reference = f"{PUBLIC_URL_PREFIX}/{name}"
    owner = next(
        (
            c
            for c in Complaint.query.filter(cast(Complaint.images, String).contains(reference)).all()
            if reference in (c.images or [])
        ),
        None,
    )
    if owner is None:
        abort(404)
    ensure_can_view(owner, current_user)
    return send_file(path, mimetype=mime_type_for(name), as_attachment=False, download_name=name)
