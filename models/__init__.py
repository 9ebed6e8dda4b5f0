"""Core data models: users and roles, departments, complaints and their progress trail."""
import uuid
from datetime import datetime

from flask_login import UserMixin
from sqlalchemy import event
from sqlalchemy.orm import object_session, validates
from werkzeug.security import check_password_hash, generate_password_hash

from extensions import db


def generate_uuid() -> str:
	return str(uuid.uuid4())


def _iso(value: datetime | None) -> str | None:
	return value.isoformat() if value else None


USER_ROLES: tuple[str, ...] = (
	"CITIZEN",
	"SOLVER",
	"ADMIN",
)

COMPLAINT_CATEGORIES: tuple[str, ...] = (
	"ROADS",
	"WATER",
	"ELECTRICITY",
	"SANITATION",
	"NOISE",
	"PARKING",
	"OTHER",
)

COMPLAINT_PRIORITIES: tuple[str, ...] = (
	"LOW",
	"NORMAL",
	"HIGH",
)

COMPLAINT_STATUSES: tuple[str, ...] = (
	"SUBMITTED",
	"ASSIGNED",
	"RESOLVED",
)

DEFAULT_PRIORITY = "NORMAL"


def _in_clause(values: tuple[str, ...]) -> str:
	return ",".join(f"'{v}'" for v in values)


class User(UserMixin, db.Model):
	__tablename__ = "users"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	name = db.Column(db.String(150), nullable=False)
	email = db.Column(db.String(255), unique=True, nullable=False, index=True)
	# Nullable for accounts provisioned without a local password.
	password_hash = db.Column(db.String(255), nullable=True)
	role = db.Column(db.String(20), nullable=False, default="CITIZEN", index=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
	last_login_at = db.Column(db.DateTime, nullable=True)

	__table_args__ = (
		db.CheckConstraint(f"role IN ({_in_clause(USER_ROLES)})", name="ck_user_role_valid"),
	)

	complaints = db.relationship(
		"Complaint",
		back_populates="citizen",
		foreign_keys="Complaint.citizen_id",
		lazy="dynamic",
	)
	assigned_complaints = db.relationship(
		"Complaint",
		back_populates="solver",
		foreign_keys="Complaint.solver_id",
		lazy="dynamic",
	)
	solver_profile = db.relationship("Solver", back_populates="user", uselist=False)
	audit_logs = db.relationship("AuditLog", back_populates="user", lazy="dynamic")

	@validates("role")
	def _validate_role(self, key, value):
		if value not in USER_ROLES:
			raise ValueError(f"Unknown role: {value}")
		if self.role is not None and self.role != value:
			raise ValueError("User role cannot be changed after creation")
		return value

	def set_password(self, password: str) -> None:
		self.password_hash = generate_password_hash(password, method="pbkdf2:sha256", salt_length=16)

	def check_password(self, password: str) -> bool:
		if not self.password_hash:
			return False
		return check_password_hash(self.password_hash, password)

	@property
	def is_admin(self) -> bool:
		return self.role == "ADMIN"

	@property
	def is_solver(self) -> bool:
		return self.role == "SOLVER"

	@property
	def is_citizen(self) -> bool:
		return self.role == "CITIZEN"

	def summary(self) -> dict:
		return {"id": self.id, "name": self.name, "email": self.email}

	def to_payload(self) -> dict:
		return {
			**self.summary(),
			"role": self.role,
			"created_at": _iso(self.created_at),
		}


class AuditLog(db.Model):
	__tablename__ = "audit_logs"

	id = db.Column(db.Integer, primary_key=True)
	user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
	action_type = db.Column(db.String(50), nullable=False)
	ip_address = db.Column(db.String(64), nullable=True)
	user_agent = db.Column(db.String(255), nullable=True)
	context_entity = db.Column(db.String(120), nullable=True)
	timestamp = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	user = db.relationship("User", back_populates="audit_logs")


class Department(db.Model):
	__tablename__ = "departments"

	id = db.Column(db.Integer, primary_key=True)
	name = db.Column(db.String(150), unique=True, nullable=False, index=True)
	keywords = db.Column(db.JSON, nullable=False, default=list)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

	complaints = db.relationship("Complaint", back_populates="department", lazy="dynamic")
	solvers = db.relationship("Solver", back_populates="department", lazy="dynamic")

	def to_payload(self) -> dict:
		return {"id": self.id, "name": self.name, "keywords": list(self.keywords or [])}


class Solver(db.Model):
	"""Role-specific profile for a SOLVER user."""

	__tablename__ = "solvers"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, unique=True)
	department_id = db.Column(db.Integer, db.ForeignKey("departments.id"), nullable=True, index=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

	user = db.relationship("User", back_populates="solver_profile")
	department = db.relationship("Department", back_populates="solvers")

	def to_payload(self) -> dict:
		return {
			"id": self.id,
			"user_id": self.user_id,
			"name": self.user.name if self.user else "Unknown",
			"email": self.user.email if self.user else None,
			"department_id": self.department_id,
		}


class Complaint(db.Model):
	__tablename__ = "complaints"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	title = db.Column(db.String(255), nullable=False)
	description = db.Column(db.Text, nullable=False)
	category = db.Column(db.String(20), nullable=False, index=True)
	priority = db.Column(db.String(10), nullable=False, default=DEFAULT_PRIORITY, index=True)
	status = db.Column(db.String(20), nullable=False, default="SUBMITTED", index=True)
	location = db.Column(db.String(500), nullable=True)
	lat = db.Column(db.Float, nullable=True)
	lng = db.Column(db.Float, nullable=True)
	images = db.Column(db.JSON, nullable=False, default=list)
	citizen_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
	department_id = db.Column(db.Integer, db.ForeignKey("departments.id"), nullable=True, index=True)
	solver_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True, index=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
	updated_at = db.Column(
		db.DateTime,
		default=datetime.utcnow,
		onupdate=datetime.utcnow,
		nullable=False,
		index=True,
	)

	__table_args__ = (
		db.CheckConstraint(f"category IN ({_in_clause(COMPLAINT_CATEGORIES)})", name="ck_complaint_category_valid"),
		db.CheckConstraint(f"priority IN ({_in_clause(COMPLAINT_PRIORITIES)})", name="ck_complaint_priority_valid"),
		db.CheckConstraint(f"status IN ({_in_clause(COMPLAINT_STATUSES)})", name="ck_complaint_status_valid"),
		db.Index("ix_complaints_status_solver", "status", "solver_id"),
	)

	citizen = db.relationship("User", back_populates="complaints", foreign_keys=[citizen_id])
	solver = db.relationship("User", back_populates="assigned_complaints", foreign_keys=[solver_id])
	department = db.relationship("Department", back_populates="complaints")
	progress_logs = db.relationship(
		"ProgressLog",
		back_populates="complaint",
		order_by="ProgressLog.created_at",
		cascade="all, delete-orphan",
	)

	@validates("citizen_id")
	def _validate_citizen(self, key, value):
		if self.citizen_id is not None and self.citizen_id != value:
			raise ValueError("Complaint owner cannot be reassigned")
		return value

	def record_progress(self, actor_id: str, note: str) -> "ProgressLog":
		"""Append an audit entry stamped with the complaint's current status."""
		entry = ProgressLog(user_id=actor_id, status=self.status, note=note)
		self.progress_logs.append(entry)
		return entry

	def ordered_progress(self) -> list["ProgressLog"]:
		return sorted(
			self.progress_logs,
			key=lambda log: (log.created_at or datetime.min, log.id or 0),
			reverse=True,
		)

	def to_payload(self, include_logs: bool = False) -> dict:
		payload = {
			"id": self.id,
			"title": self.title,
			"description": self.description,
			"category": self.category,
			"priority": self.priority,
			"status": self.status,
			"location": self.location,
			"lat": self.lat,
			"lng": self.lng,
			"images": list(self.images or []),
			"citizen_id": self.citizen_id,
			"department_id": self.department_id,
			"solver_id": self.solver_id,
			"citizen": self.citizen.summary() if self.citizen else None,
			"solver": self.solver.summary() if self.solver else None,
			"department": {"id": self.department.id, "name": self.department.name} if self.department else None,
			"created_at": _iso(self.created_at),
			"updated_at": _iso(self.updated_at),
		}
		if include_logs:
			payload["progress_logs"] = [log.to_payload() for log in self.ordered_progress()]
		return payload


class ProgressLog(db.Model):
	__tablename__ = "progress_logs"

	id = db.Column(db.Integer, primary_key=True)
	complaint_id = db.Column(db.String(36), db.ForeignKey("complaints.id"), nullable=False, index=True)
	user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
	status = db.Column(db.String(20), nullable=False, index=True)
	note = db.Column(db.Text, nullable=False)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	__table_args__ = (
		db.CheckConstraint(f"status IN ({_in_clause(COMPLAINT_STATUSES)})", name="ck_progress_log_status_valid"),
	)

	complaint = db.relationship("Complaint", back_populates="progress_logs")
	user = db.relationship("User")

	def to_payload(self) -> dict:
		return {
			"id": self.id,
			"complaint_id": self.complaint_id,
			"user_id": self.user_id,
			"status": self.status,
			"note": self.note,
			"created_at": _iso(self.created_at),
			"user": {"name": self.user.name, "role": self.user.role} if self.user else None,
		}


@event.listens_for(ProgressLog, "before_update")
def _refuse_progress_log_update(mapper, connection, target):
	session = object_session(target)
	if session is not None and not session.is_modified(target, include_collections=False):
		return
	raise ValueError("Progress log entries are append-only")


@event.listens_for(ProgressLog, "before_delete")
def _refuse_progress_log_delete(mapper, connection, target):
	raise ValueError("Progress log entries cannot be deleted")
