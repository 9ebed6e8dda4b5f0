import io
import os

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.attributes import set_committed_value
from werkzeug.datastructures import FileStorage

from conftest import png_bytes
from extensions import db
from models import Complaint, ProgressLog
from utils import complaint_lifecycle as lifecycle
from utils import notifications
from utils.errors import AccessDeniedError, ConflictError, InternalError, NotFoundError, ValidationError


def _upload(name="pothole.png", content=None):
    return FileStorage(stream=io.BytesIO(content if content is not None else png_bytes()), filename=name)


def _submit(users, **overrides):
    params = {
        "citizen_id": users["citizen"],
        "title": "Pothole on Main St",
        "description": "Deep pothole near the bus stop",
        "category": "ROADS",
    }
    params.update(overrides)
    return lifecycle.submit_complaint(**params)


def _statuses(complaint):
    return [log.status for log in ProgressLog.query.filter_by(complaint_id=complaint.id).order_by(ProgressLog.id)]


def test_submit_creates_open_complaint_and_confirms(ctx, users, outbox):
    complaint = _submit(users, title="  Pothole on Main St  ", location=" Main St ", coordinates=(40.7, -74.0))

    assert complaint.status == "SUBMITTED"
    assert complaint.priority == "NORMAL"
    assert complaint.solver_id is None
    assert complaint.department_id is None
    assert complaint.title == "Pothole on Main St"
    assert complaint.location == "Main St"
    assert (complaint.lat, complaint.lng) == (40.7, -74.0)
    assert complaint.created_at == complaint.updated_at
    assert _statuses(complaint) == ["SUBMITTED"]

    assert len(outbox) == 1
    assert outbox[0]["to"] == ["cora@example.com"]
    assert outbox[0]["subject"] == "Complaint Submitted - Pothole on Main St"


def test_submit_rejects_unknown_category_without_side_effects(ctx, users, outbox):
    with pytest.raises(ValidationError):
        _submit(users, category="POTHOLES")
    assert Complaint.query.count() == 0
    assert outbox == []


@pytest.mark.parametrize("field", ["title", "description"])
def test_submit_requires_non_blank_text(ctx, users, field):
    with pytest.raises(ValidationError) as excinfo:
        _submit(users, **{field: "   "})
    assert excinfo.value.details["field"] == field


def test_submit_rejects_bad_priority_and_coordinates(ctx, users):
    with pytest.raises(ValidationError):
        _submit(users, priority="URGENT")
    with pytest.raises(ValidationError):
        _submit(users, coordinates=(123.0, 0.0))


def test_only_citizens_submit(ctx, users):
    with pytest.raises(AccessDeniedError):
        _submit(users, citizen_id=users["solver"])


def test_submit_stores_attachments(ctx, users, outbox):
    complaint = _submit(users, attachments=[_upload(), _upload("clip.mp4", b"\x00\x00\x00\x18ftypmp42")])

    assert len(complaint.images) == 2
    upload_dir = ctx.config["COMPLAINT_UPLOAD_FOLDER"]
    for ref in complaint.images:
        assert ref.startswith("/uploads/complaints/")
        assert os.path.isfile(os.path.join(upload_dir, ref.rsplit("/", 1)[1]))
    assert {ref.rsplit(".", 1)[1] for ref in complaint.images} == {"png", "mp4"}


def test_oversized_attachment_rejects_whole_submission(ctx, users, outbox):
    ctx.config["MAX_ATTACHMENT_BYTES"] = 1024
    with pytest.raises(ValidationError) as excinfo:
        _submit(users, attachments=[_upload(), _upload("big.mp4", b"x" * 2048)])

    assert excinfo.value.message == "File size too large"
    assert Complaint.query.count() == 0
    assert os.listdir(ctx.config["COMPLAINT_UPLOAD_FOLDER"]) == []
    assert outbox == []


def test_disallowed_attachment_type_is_rejected(ctx, users):
    with pytest.raises(ValidationError) as excinfo:
        _submit(users, attachments=[_upload("notes.exe", b"MZ")])
    assert excinfo.value.message == "File type not allowed"


def test_assign_moves_to_assigned_and_notifies_solver(ctx, users, outbox):
    complaint = _submit(users)
    outbox.clear()

    lifecycle.assign_complaint(complaint.id, users["solver"])

    complaint = db.session.get(Complaint, complaint.id)
    assert complaint.status == "ASSIGNED"
    assert complaint.solver_id == users["solver"]
    assert complaint.updated_at >= complaint.created_at
    assert _statuses(complaint) == ["SUBMITTED", "ASSIGNED"]
    assert complaint.ordered_progress()[0].note == "Complaint assigned to solver"
    assert [mail["to"] for mail in outbox] == [["sam@example.com"]]


def test_assign_is_idempotent_for_the_same_solver(ctx, users, outbox):
    complaint = _submit(users)
    lifecycle.assign_complaint(complaint.id, users["solver"])
    outbox.clear()

    lifecycle.assign_complaint(complaint.id, users["solver"])

    assert _statuses(complaint) == ["SUBMITTED", "ASSIGNED"]
    assert outbox == []


def test_assign_conflicts_when_another_solver_holds_it(ctx, users):
    complaint = _submit(users)
    lifecycle.assign_complaint(complaint.id, users["solver"])

    with pytest.raises(ConflictError):
        lifecycle.assign_complaint(complaint.id, users["other_solver"])

    complaint = db.session.get(Complaint, complaint.id)
    assert complaint.solver_id == users["solver"]
    assert _statuses(complaint) == ["SUBMITTED", "ASSIGNED"]


def test_assign_loses_race_against_committed_claim(ctx, users, outbox):
    complaint = _submit(users)
    lifecycle.assign_complaint(complaint.id, users["solver"])
    complaint = db.session.get(Complaint, complaint.id)
    # Simulate a reader that loaded the row before the other claim committed.
    set_committed_value(complaint, "solver_id", None)
    set_committed_value(complaint, "status", "SUBMITTED")
    outbox.clear()

    with pytest.raises(ConflictError):
        lifecycle.assign_complaint(complaint.id, users["other_solver"])

    complaint = db.session.get(Complaint, complaint.id)
    assert complaint.solver_id == users["solver"]
    assert complaint.status == "ASSIGNED"
    assert _statuses(complaint).count("ASSIGNED") == 1
    assert outbox == []


def test_assign_rejects_resolved_and_non_solvers(ctx, users):
    complaint = _submit(users)
    with pytest.raises(ValidationError):
        lifecycle.assign_complaint(complaint.id, users["citizen"])

    lifecycle.assign_complaint(complaint.id, users["solver"])
    lifecycle.resolve_complaint(complaint.id, users["solver"])
    with pytest.raises(ConflictError):
        lifecycle.assign_complaint(complaint.id, users["solver"])


def test_admin_may_assign_on_behalf_of_a_solver(ctx, users):
    complaint = _submit(users)
    with pytest.raises(AccessDeniedError):
        lifecycle.assign_complaint(complaint.id, users["solver"], actor_id=users["other_solver"])

    lifecycle.assign_complaint(complaint.id, users["solver"], actor_id=users["admin"])
    latest = db.session.get(Complaint, complaint.id).ordered_progress()[0]
    assert latest.user_id == users["admin"]


def test_unknown_complaint_is_not_found(ctx, users):
    with pytest.raises(NotFoundError):
        lifecycle.assign_complaint("missing", users["solver"])


def test_start_only_logs_and_notifies_citizen(ctx, users, outbox):
    complaint = _submit(users)
    lifecycle.assign_complaint(complaint.id, users["solver"])
    updated_at = db.session.get(Complaint, complaint.id).updated_at
    outbox.clear()

    lifecycle.start_complaint(complaint.id, users["solver"])

    complaint = db.session.get(Complaint, complaint.id)
    assert complaint.status == "ASSIGNED"
    assert complaint.updated_at == updated_at
    assert _statuses(complaint) == ["SUBMITTED", "ASSIGNED", "ASSIGNED"]
    assert complaint.ordered_progress()[0].note == "Work started on complaint"
    assert outbox[0]["to"] == ["cora@example.com"]
    assert "Work has started on your complaint" in outbox[0]["text"]


def test_start_requires_the_assigned_solver(ctx, users):
    complaint = _submit(users)
    with pytest.raises(AccessDeniedError):
        lifecycle.start_complaint(complaint.id, users["solver"])

    lifecycle.assign_complaint(complaint.id, users["solver"])
    with pytest.raises(AccessDeniedError):
        lifecycle.start_complaint(complaint.id, users["other_solver"])
    assert _statuses(complaint) == ["SUBMITTED", "ASSIGNED"]


def test_resolve_with_note(ctx, users, outbox):
    complaint = _submit(users)
    lifecycle.assign_complaint(complaint.id, users["solver"])
    outbox.clear()

    lifecycle.resolve_complaint(complaint.id, users["solver"], note="Filled and resurfaced")

    complaint = db.session.get(Complaint, complaint.id)
    assert complaint.status == "RESOLVED"
    latest = complaint.ordered_progress()[0]
    assert (latest.status, latest.note) == ("RESOLVED", "Filled and resurfaced")
    assert "Filled and resurfaced" in outbox[0]["text"]
    assert "RESOLVED" in outbox[0]["text"]


def test_resolve_without_note_uses_default(ctx, users, outbox):
    complaint = _submit(users)
    lifecycle.assign_complaint(complaint.id, users["solver"])
    outbox.clear()

    lifecycle.resolve_complaint(complaint.id, users["solver"], note="   ")

    complaint = db.session.get(Complaint, complaint.id)
    assert complaint.ordered_progress()[0].note == "Complaint resolved"
    assert "Your complaint has been resolved" in outbox[0]["text"]


def test_resolve_guards(ctx, users):
    complaint = _submit(users)
    with pytest.raises(AccessDeniedError):
        lifecycle.resolve_complaint(complaint.id, users["solver"])

    lifecycle.assign_complaint(complaint.id, users["solver"])
    with pytest.raises(AccessDeniedError):
        lifecycle.resolve_complaint(complaint.id, users["other_solver"])

    lifecycle.resolve_complaint(complaint.id, users["solver"])
    with pytest.raises(ConflictError):
        lifecycle.resolve_complaint(complaint.id, users["solver"])
    assert _statuses(complaint).count("RESOLVED") == 1


def test_progress_notes_respect_ownership(ctx, users, outbox):
    complaint = _submit(users)
    lifecycle.assign_complaint(complaint.id, users["solver"])
    outbox.clear()

    entry = lifecycle.add_progress_note(complaint.id, users["solver"], "  Crew scheduled  ")
    assert (entry.status, entry.note) == ("ASSIGNED", "Crew scheduled")
    lifecycle.add_progress_note(complaint.id, users["citizen"], "Still there this morning")

    with pytest.raises(AccessDeniedError):
        lifecycle.add_progress_note(complaint.id, users["other_solver"], "Not mine")
    with pytest.raises(AccessDeniedError):
        lifecycle.add_progress_note(complaint.id, users["other_citizen"], "Not mine either")
    with pytest.raises(ValidationError):
        lifecycle.add_progress_note(complaint.id, users["solver"], " ")

    assert db.session.get(Complaint, complaint.id).status == "ASSIGNED"
    assert len(_statuses(complaint)) == 4
    assert outbox == []


def test_admin_override_applies_changes_and_logs_once(ctx, users, department_id):
    complaint = _submit(users)

    lifecycle.admin_override(
        complaint.id,
        {"status": "RESOLVED", "priority": "HIGH", "department_id": department_id, "solver_id": users["solver"]},
        users["admin"],
    )

    complaint = db.session.get(Complaint, complaint.id)
    assert (complaint.status, complaint.priority) == ("RESOLVED", "HIGH")
    assert complaint.department_id == department_id
    assert complaint.solver_id == users["solver"]
    latest = complaint.ordered_progress()[0]
    assert latest.status == "RESOLVED"
    assert latest.user_id == users["admin"]
    assert "status SUBMITTED -> RESOLVED" in latest.note
    assert len(_statuses(complaint)) == 2


def test_admin_override_without_changes_writes_nothing(ctx, users):
    complaint = _submit(users)
    lifecycle.admin_override(complaint.id, {"status": "SUBMITTED", "priority": "NORMAL"}, users["admin"])
    assert _statuses(complaint) == ["SUBMITTED"]


def test_admin_override_validation(ctx, users):
    complaint = _submit(users)
    with pytest.raises(AccessDeniedError):
        lifecycle.admin_override(complaint.id, {"status": "RESOLVED"}, users["solver"])
    with pytest.raises(ValidationError):
        lifecycle.admin_override(complaint.id, {"status": "CLOSED"}, users["admin"])
    with pytest.raises(ValidationError):
        lifecycle.admin_override(complaint.id, {"solver_id": users["citizen"]}, users["admin"])
    with pytest.raises(NotFoundError):
        lifecycle.admin_override(complaint.id, {"department_id": 999}, users["admin"])
    with pytest.raises(ValidationError):
        lifecycle.admin_override(complaint.id, {"title": "Renamed"}, users["admin"])
    assert db.session.get(Complaint, complaint.id).status == "SUBMITTED"


def test_notification_failure_never_undoes_a_transition(ctx, users, monkeypatch):
    def broken_dispatch(*args, **kwargs):
        raise notifications.EmailDeliveryError("smtp down")

    monkeypatch.setattr(notifications, "_dispatch_email", broken_dispatch)

    complaint = _submit(users)
    lifecycle.assign_complaint(complaint.id, users["solver"])
    lifecycle.resolve_complaint(complaint.id, users["solver"])

    assert db.session.get(Complaint, complaint.id).status == "RESOLVED"


def test_progress_log_is_append_only(ctx, users):
    complaint = _submit(users)
    entry = ProgressLog.query.filter_by(complaint_id=complaint.id).one()

    entry.note = "rewritten"
    with pytest.raises(ValueError):
        db.session.commit()
    db.session.rollback()

    entry = ProgressLog.query.filter_by(complaint_id=complaint.id).one()
    db.session.delete(entry)
    with pytest.raises(ValueError):
        db.session.commit()
    db.session.rollback()


def test_citizen_cannot_be_reassigned(ctx, users):
    complaint = _submit(users)
    with pytest.raises(ValueError):
        complaint.citizen_id = users["other_citizen"]


def _failing_commit(monkeypatch):
    def commit():
        raise OperationalError("COMMIT", {}, Exception("database is locked"))

    monkeypatch.setattr(db.session(), "commit", commit)


def test_failed_assignment_commit_leaves_complaint_open(ctx, users, outbox, monkeypatch):
    complaint = _submit(users)
    outbox.clear()
    _failing_commit(monkeypatch)

    with pytest.raises(InternalError):
        lifecycle.assign_complaint(complaint.id, users["solver"])

    complaint = db.session.get(Complaint, complaint.id)
    assert (complaint.status, complaint.solver_id) == ("SUBMITTED", None)
    assert _statuses(complaint) == ["SUBMITTED"]
    assert outbox == []


def test_failed_resolution_commit_keeps_assignment(ctx, users, outbox, monkeypatch):
    complaint = _submit(users)
    lifecycle.assign_complaint(complaint.id, users["solver"])
    outbox.clear()
    _failing_commit(monkeypatch)

    with pytest.raises(InternalError):
        lifecycle.resolve_complaint(complaint.id, users["solver"], note="Patched")

    complaint = db.session.get(Complaint, complaint.id)
    assert complaint.status == "ASSIGNED"
    assert _statuses(complaint) == ["SUBMITTED", "ASSIGNED"]
    assert outbox == []


def test_notes_must_be_text(ctx, users):
    complaint = _submit(users)
    lifecycle.assign_complaint(complaint.id, users["solver"])

    with pytest.raises(ValidationError):
        lifecycle.resolve_complaint(complaint.id, users["solver"], note=5)
    with pytest.raises(ValidationError):
        lifecycle.add_progress_note(complaint.id, users["solver"], ["on", "site"])
    assert db.session.get(Complaint, complaint.id).status == "ASSIGNED"
