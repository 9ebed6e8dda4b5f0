"""Read-only aggregation over complaints for dashboards, analytics and the daily digest."""
from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional, Tuple

from flask import current_app
from sqlalchemy import case, func
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import (
    COMPLAINT_CATEGORIES,
    COMPLAINT_PRIORITIES,
    COMPLAINT_STATUSES,
    USER_ROLES,
    Complaint,
    Department,
    User,
)
from utils import notifications
from utils.errors import InternalError, NotFoundError, ValidationError

UNASSIGNED_DEPARTMENT = "Unassigned"

_ENUM_FILTERS = {
    "category": COMPLAINT_CATEGORIES,
    "priority": COMPLAINT_PRIORITIES,
    "status": COMPLAINT_STATUSES,
}
_ID_FILTERS = ("department_id", "solver_id", "citizen_id")

# HIGH first when ordering the open queue.
_PRIORITY_RANK = case({"HIGH": 0, "NORMAL": 1, "LOW": 2}, value=Complaint.priority, else_=3)


def _run(label: str, fn):
    try:
        return fn()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Reporting query failed", extra={"query": label})
        raise InternalError("Could not load report data") from exc


def _count_column(column, values: tuple[str, ...]) -> Dict[str, int]:
    rows = _run(str(column), lambda: db.session.query(column, func.count(Complaint.id)).group_by(column).all())
    counts = {value: 0 for value in values}
    for key, total in rows:
        counts[key] = total
    return counts


def count_by_status() -> Dict[str, int]:
    return _count_column(Complaint.status, COMPLAINT_STATUSES)


def count_by_priority() -> Dict[str, int]:
    return _count_column(Complaint.priority, COMPLAINT_PRIORITIES)


def count_by_category() -> Dict[str, int]:
    return _count_column(Complaint.category, COMPLAINT_CATEGORIES)


def count_by_department() -> Dict[str, int]:
    rows = _run(
        "department",
        lambda: db.session.query(Department.name, func.count(Complaint.id))
        .select_from(Complaint)
        .outerjoin(Department, Complaint.department_id == Department.id)
        .group_by(Department.name)
        .all(),
    )
    return {(name or UNASSIGNED_DEPARTMENT): total for name, total in rows}


def count_users_by_role() -> Dict[str, int]:
    rows = _run("users", lambda: db.session.query(User.role, func.count(User.id)).group_by(User.role).all())
    counts = {role: 0 for role in USER_ROLES}
    for role, total in rows:
        counts[role] = total
    return counts


def daily_counts(window_days: int = 30, now: Optional[datetime] = None) -> List[Tuple[date, int]]:
    """Complaints created in the trailing window, bucketed by UTC calendar date.

    Only dates with at least one complaint are returned, oldest first.
    """
    if window_days < 1:
        raise ValidationError("window_days must be positive", field="window_days")
    since = (now or datetime.utcnow()) - timedelta(days=window_days)
    created = _run(
        "daily",
        lambda: [row[0] for row in db.session.query(Complaint.created_at).filter(Complaint.created_at >= since).all()],
    )
    buckets: Dict[date, int] = {}
    for stamp in created:
        day = stamp.date()
        buckets[day] = buckets.get(day, 0) + 1
    return sorted(buckets.items())


def list_complaints(filters: Optional[Dict] = None, limit: Optional[int] = None) -> List[Complaint]:
    query = Complaint.query
    for field, allowed in _ENUM_FILTERS.items():
        value = (filters or {}).get(field)
        if value in (None, ""):
            continue
        if value not in allowed:
            raise ValidationError(f"Invalid {field}", field=field, allowed=list(allowed))
        query = query.filter(getattr(Complaint, field) == value)
    for field in _ID_FILTERS:
        value = (filters or {}).get(field)
        if value in (None, ""):
            continue
        if field == "department_id":
            try:
                value = int(value)
            except (TypeError, ValueError) as exc:
                raise ValidationError("Invalid department", field=field) from exc
        query = query.filter(getattr(Complaint, field) == value)
    query = query.order_by(Complaint.created_at.desc(), Complaint.id.desc())
    if limit:
        query = query.limit(limit)
    return _run("list", query.all)


def solver_queues(solver_id: str) -> Dict[str, List[Complaint]]:
    """Open complaints any solver may claim, and the ones `solver_id` holds."""
    available = _run(
        "available",
        Complaint.query.filter(Complaint.status == "SUBMITTED", Complaint.solver_id.is_(None))
        .order_by(_PRIORITY_RANK, Complaint.created_at.asc())
        .all,
    )
    assigned = _run(
        "assigned",
        Complaint.query.filter(Complaint.solver_id == solver_id).order_by(Complaint.updated_at.desc()).all,
    )
    return {"available": available, "assigned": assigned}


def dashboard_overview(recent_limit: int = 10) -> Dict:
    return {
        "complaints": {"total": sum(count_by_status().values()), "by_status": count_by_status()},
        "users": count_users_by_role(),
        "recent_complaints": list_complaints(limit=recent_limit),
    }


def analytics_overview(window_days: int = 30) -> Dict:
    return {
        "window_days": window_days,
        "daily": [{"date": day.isoformat(), "count": total} for day, total in daily_counts(window_days)],
        "by_priority": count_by_priority(),
        "by_category": count_by_category(),
        "by_department": count_by_department(),
    }


def parse_report_date(value: Optional[str]) -> date:
    if not value:
        return datetime.utcnow().date()
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValidationError("Invalid date, expected YYYY-MM-DD", field="date") from exc


def daily_summary(day: date) -> Dict:
    """Stats and complaints for one UTC calendar day, newest first."""
    start = datetime.combine(day, time.min)
    end = start + timedelta(days=1)
    complaints = _run(
        "daily_summary",
        Complaint.query.filter(Complaint.created_at >= start, Complaint.created_at < end)
        .order_by(Complaint.created_at.desc())
        .all,
    )
    stats = {"total": len(complaints)}
    for status in COMPLAINT_STATUSES:
        stats[status.lower()] = sum(1 for c in complaints if c.status == status)
    return {"date": day.isoformat(), "stats": stats, "complaints": complaints}


def send_daily_digest(day: date, admin: Optional[User] = None, recipient: Optional[str] = None):
    """Email the daily summary; returns (summary, NotificationResult)."""
    if admin is None:
        admin = User.query.filter_by(role="ADMIN").order_by(User.created_at.asc()).first()
    if admin is None and not recipient:
        raise NotFoundError("No administrator available to receive the summary")
    summary = daily_summary(day)
    result = notifications.send_daily_summary(
        recipient or admin.email,
        summary["complaints"],
        admin.name if admin else "Admin",
        summary["date"],
        summary["stats"],
    )
    return summary, result
