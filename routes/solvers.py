"""Solver work queue and complaint actions blueprint."""
from flask import Blueprint, jsonify
from flask_login import current_user

from utils import complaint_lifecycle
from utils.decorators import roles_required
from utils.errors import ValidationError
from utils.reporting import solver_queues
from .auth import request_payload
from .complaints import complaint_or_404, ensure_can_view

solvers_bp = Blueprint("solvers", __name__, url_prefix="/api/solvers")

SOLVER_ACTIONS = ("assign", "start", "resolve", "add_note")


@solvers_bp.route("/complaints", methods=["GET"])
@roles_required("SOLVER")
def list_queue():
    queues = solver_queues(current_user.id)
    return jsonify({name: [c.to_payload() for c in items] for name, items in queues.items()})


@solvers_bp.route("/complaints/<string:complaint_id>", methods=["GET"])
@roles_required("SOLVER")
def view_complaint(complaint_id):
    complaint = complaint_or_404(complaint_id)
    ensure_can_view(complaint, current_user)
    return jsonify({"complaint": complaint.to_payload(include_logs=True)})


@solvers_bp.route("/complaints/<string:complaint_id>", methods=["POST"])
@roles_required("SOLVER")
def act_on_complaint(complaint_id):
    payload = request_payload()
    action = payload.get("action")
    note = payload.get("note")

    if action == "assign":
        complaint = complaint_lifecycle.assign_complaint(complaint_id, current_user.id)
    elif action == "start":
        complaint = complaint_lifecycle.start_complaint(complaint_id, current_user.id)
    elif action == "resolve":
        complaint = complaint_lifecycle.resolve_complaint(complaint_id, current_user.id, note)
    elif action == "add_note":
        complaint_lifecycle.add_progress_note(complaint_id, current_user.id, note)
        complaint = complaint_or_404(complaint_id)
    else:
        raise ValidationError("Invalid action", field="action", allowed=list(SOLVER_ACTIONS))
    return jsonify({"complaint": complaint.to_payload(include_logs=True)})
