"""Complaint lifecycle: intake, role-gated transitions and the progress audit trail.

Every operation runs as one unit of work: the complaint change and its
ProgressLog entry are committed together, and notifications are attempted only
after that commit succeeds. Notification failures are logged by
``utils.notifications.deliver`` and never undo a transition.

Solver-path state machine::

    SUBMITTED --assign--> ASSIGNED --start--> ASSIGNED --resolve--> RESOLVED

``admin_override`` may set any state and bypasses these rules.
"""
from datetime import datetime
from typing import Iterable, Mapping, Optional, Tuple

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.datastructures import FileStorage

from extensions import db
from models import (
    COMPLAINT_CATEGORIES,
    COMPLAINT_PRIORITIES,
    COMPLAINT_STATUSES,
    DEFAULT_PRIORITY,
    Complaint,
    Department,
    ProgressLog,
    User,
)
from utils import notifications
from utils.attachment_storage import DEFAULT_MAX_ATTACHMENT_BYTES, persist_attachments
from utils.errors import AccessDeniedError, ConflictError, InternalError, NotFoundError, ValidationError

OVERRIDABLE_FIELDS: tuple[str, ...] = ("status", "solver_id", "department_id", "priority")

SUBMITTED_NOTE = "Complaint submitted"
ASSIGNED_NOTE = "Complaint assigned to solver"
STARTED_NOTE = "Work started on complaint"
RESOLVED_NOTE = "Complaint resolved"


def _optional_text(value, field: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{field.capitalize()} must be text", field=field)
    return value.strip()


def _require_text(value, field: str) -> str:
    cleaned = _optional_text(value, field)
    if not cleaned:
        raise ValidationError(f"{field.capitalize()} is required", field=field)
    return cleaned


def _require_member(value: Optional[str], allowed: tuple[str, ...], field: str) -> str:
    if value not in allowed:
        raise ValidationError(f"Invalid {field}", field=field, allowed=list(allowed))
    return value


def _parse_coordinates(coordinates) -> Tuple[Optional[float], Optional[float]]:
    if not coordinates:
        return None, None
    try:
        lat, lng = coordinates
        lat = float(lat) if lat not in (None, "") else None
        lng = float(lng) if lng not in (None, "") else None
    except (TypeError, ValueError) as exc:
        raise ValidationError("Invalid coordinates", field="coordinates") from exc
    if lat is not None and not -90 <= lat <= 90:
        raise ValidationError("Latitude out of range", field="lat")
    if lng is not None and not -180 <= lng <= 180:
        raise ValidationError("Longitude out of range", field="lng")
    return lat, lng


def _get_complaint(complaint_id: str) -> Complaint:
    complaint = db.session.get(Complaint, str(complaint_id)) if complaint_id else None
    if not complaint:
        raise NotFoundError("Complaint not found", complaint_id=complaint_id)
    return complaint


def _get_user(user_id: str) -> User:
    user = db.session.get(User, str(user_id)) if user_id else None
    if not user:
        raise NotFoundError("User not found", user_id=user_id)
    return user


def _require_assigned_solver(complaint: Complaint, acting_solver_id: str) -> None:
    if not complaint.solver_id or complaint.solver_id != acting_solver_id:
        current_app.logger.warning(
            "complaint_access_denied",
            extra={"complaint_id": complaint.id, "user_id": acting_solver_id},
        )
        raise AccessDeniedError("Access denied")


def _commit(event: str, **context) -> None:
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Database error during %s", event, extra=context)
        raise InternalError("Could not save complaint changes") from exc


def submit_complaint(
    citizen_id: str,
    title: str,
    description: str,
    category: str,
    priority: Optional[str] = None,
    location: Optional[str] = None,
    coordinates=None,
    attachments: Optional[Iterable[FileStorage]] = None,
) -> Complaint:
    citizen = _get_user(citizen_id)
    if not citizen.is_citizen:
        raise AccessDeniedError("Only citizens can submit complaints")

    title = _require_text(title, "title")
    description = _require_text(description, "description")
    category = _require_member(category, COMPLAINT_CATEGORIES, "category")
    priority = _require_member(priority, COMPLAINT_PRIORITIES, "priority") if priority else DEFAULT_PRIORITY
    lat, lng = _parse_coordinates(coordinates)

    # Files land on disk before the row exists so a complaint never points at a missing file.
    image_refs = persist_attachments(
        attachments or [],
        current_app.config["COMPLAINT_UPLOAD_FOLDER"],
        max_bytes=int(current_app.config.get("MAX_ATTACHMENT_BYTES", DEFAULT_MAX_ATTACHMENT_BYTES)),
    )

    now = datetime.utcnow()
    complaint = Complaint(
        title=title,
        description=description,
        category=category,
        priority=priority,
        status="SUBMITTED",
        location=(location or "").strip() or None,
        lat=lat,
        lng=lng,
        images=image_refs,
        citizen_id=citizen.id,
        created_at=now,
        updated_at=now,
    )
    db.session.add(complaint)
    complaint.record_progress(citizen.id, SUBMITTED_NOTE)
    _commit("complaint submission", citizen_id=citizen.id)

    current_app.logger.info(
        "complaint_submitted",
        extra={"complaint_id": complaint.id, "category": category, "priority": priority, "attachments": len(image_refs)},
    )
    notifications.send_complaint_confirmation(complaint)
    return complaint


def assign_complaint(complaint_id: str, solver_id: str, actor_id: Optional[str] = None) -> Complaint:
    """Claim a SUBMITTED complaint for `solver_id`.

    The claim is a compare-and-swap on the row, so of two concurrent solvers
    exactly one wins; the loser gets ConflictError. Re-assigning to the
    solver who already holds the complaint is a no-op.
    """
    complaint = _get_complaint(complaint_id)
    solver = _get_user(solver_id)
    if not solver.is_solver:
        raise ValidationError("Complaints can only be assigned to solvers", field="solver_id")
    actor = solver if actor_id in (None, solver.id) else _get_user(actor_id)
    if actor.id != solver.id and not actor.is_admin:
        raise AccessDeniedError("Solvers can only assign complaints to themselves")

    if complaint.solver_id == solver.id and complaint.status == "ASSIGNED":
        return complaint
    if complaint.status == "RESOLVED":
        raise ConflictError("Resolved complaints cannot be assigned", complaint_id=complaint.id)
    if complaint.solver_id and complaint.solver_id != solver.id:
        raise ConflictError("Complaint is already assigned to another solver", complaint_id=complaint.id)

    now = datetime.utcnow()
    try:
        claimed = (
            Complaint.query.filter(
                Complaint.id == complaint.id,
                Complaint.status == "SUBMITTED",
                or_(Complaint.solver_id.is_(None), Complaint.solver_id == solver.id),
            )
            .update(
                {Complaint.solver_id: solver.id, Complaint.status: "ASSIGNED", Complaint.updated_at: now},
                synchronize_session=False,
            )
        )
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Database error during assignment", extra={"complaint_id": complaint.id})
        raise InternalError("Could not assign complaint") from exc

    if claimed != 1:
        db.session.rollback()
        db.session.refresh(complaint)
        if complaint.solver_id == solver.id and complaint.status == "ASSIGNED":
            return complaint
        current_app.logger.info(
            "complaint_assignment_conflict",
            extra={"complaint_id": complaint.id, "solver_id": solver.id, "current_solver_id": complaint.solver_id},
        )
        raise ConflictError("Complaint is no longer open for assignment", complaint_id=complaint.id)

    db.session.expire(complaint)
    complaint.record_progress(actor.id, ASSIGNED_NOTE)
    _commit("complaint assignment", complaint_id=complaint.id)

    current_app.logger.info(
        "complaint_assigned",
        extra={"complaint_id": complaint.id, "solver_id": solver.id, "actor_id": actor.id},
    )
    notifications.send_complaint_assignment(complaint)
    return complaint


def start_complaint(complaint_id: str, acting_solver_id: str) -> Complaint:
    # There is no IN_PROGRESS status; starting work only leaves an audit entry.
    complaint = _get_complaint(complaint_id)
    _require_assigned_solver(complaint, acting_solver_id)
    if complaint.status != "ASSIGNED":
        raise ConflictError("Only assigned complaints can be started", status=complaint.status)

    complaint.record_progress(acting_solver_id, STARTED_NOTE)
    _commit("complaint start", complaint_id=complaint.id)

    current_app.logger.info("complaint_started", extra={"complaint_id": complaint.id, "solver_id": acting_solver_id})
    notifications.send_status_update(complaint, "ASSIGNED", "ASSIGNED", "Work has started on your complaint")
    return complaint


def resolve_complaint(complaint_id: str, acting_solver_id: str, note: Optional[str] = None) -> Complaint:
    complaint = _get_complaint(complaint_id)
    _require_assigned_solver(complaint, acting_solver_id)
    if complaint.status == "RESOLVED":
        raise ConflictError("Complaint is already resolved", complaint_id=complaint.id)

    supplied_note = _optional_text(note, "note")
    previous_status = complaint.status
    complaint.status = "RESOLVED"
    complaint.updated_at = datetime.utcnow()
    complaint.record_progress(acting_solver_id, supplied_note or RESOLVED_NOTE)
    _commit("complaint resolution", complaint_id=complaint.id)

    current_app.logger.info(
        "complaint_resolved",
        extra={"complaint_id": complaint.id, "solver_id": acting_solver_id, "previous_status": previous_status},
    )
    notifications.send_status_update(
        complaint,
        previous_status,
        "RESOLVED",
        supplied_note or "Your complaint has been resolved",
    )
    return complaint


def add_progress_note(complaint_id: str, acting_user_id: str, note: str) -> ProgressLog:
    note_text = _require_text(note, "note")
    complaint = _get_complaint(complaint_id)
    actor = _get_user(acting_user_id)
    if actor.is_solver and complaint.solver_id != actor.id:
        raise AccessDeniedError("Access denied")
    if actor.is_citizen and complaint.citizen_id != actor.id:
        raise AccessDeniedError("Access denied")

    entry = complaint.record_progress(actor.id, note_text)
    _commit("progress note", complaint_id=complaint.id)
    current_app.logger.info("progress_note_added", extra={"complaint_id": complaint.id, "user_id": actor.id})
    return entry


def admin_override(complaint_id: str, changes: Mapping, admin_id: str) -> Complaint:
    """Apply any subset of status, solver, department and priority directly.

    Bypasses the solver-path rules but not the enums. When at least one field
    actually changes, a single ProgressLog describing the changes is written.
    """
    admin = _get_user(admin_id)
    if not admin.is_admin:
        raise AccessDeniedError("Administrator role required")
    unknown = sorted(set(changes) - set(OVERRIDABLE_FIELDS))
    if unknown:
        raise ValidationError("Unsupported fields", fields=unknown)

    complaint = _get_complaint(complaint_id)
    updates: dict = {}

    if changes.get("status"):
        updates["status"] = _require_member(changes["status"], COMPLAINT_STATUSES, "status")

    if changes.get("priority"):
        updates["priority"] = _require_member(changes["priority"], COMPLAINT_PRIORITIES, "priority")

    if "solver_id" in changes:
        solver_id = changes["solver_id"] or None
        if solver_id is not None and not _get_user(solver_id).is_solver:
            raise ValidationError("Complaints can only be assigned to solvers", field="solver_id")
        updates["solver_id"] = solver_id

    if "department_id" in changes:
        department_id = changes["department_id"]
        if department_id in ("", None):
            department_id = None
        else:
            try:
                department_id = int(department_id)
            except (TypeError, ValueError) as exc:
                raise ValidationError("Invalid department", field="department_id") from exc
            if not db.session.get(Department, department_id):
                raise NotFoundError("Department not found", department_id=department_id)
        updates["department_id"] = department_id

    # Everything is validated before the complaint is touched.
    applied: list[str] = []
    for field, value in updates.items():
        current = getattr(complaint, field)
        if value != current:
            applied.append(f"{field.replace('_id', '')} {current or 'none'} -> {value or 'none'}")
            setattr(complaint, field, value)

    if not applied:
        return complaint

    complaint.updated_at = datetime.utcnow()
    complaint.record_progress(admin.id, "Administrative update: " + "; ".join(applied))
    _commit("admin override", complaint_id=complaint.id)

    current_app.logger.info(
        "complaint_admin_override",
        extra={"complaint_id": complaint.id, "admin_id": admin.id, "changes": applied},
    )
    return complaint
