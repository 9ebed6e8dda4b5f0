"""Authorization decorators for role-based access control."""
from functools import wraps

from flask import abort, current_app, request
from flask_login import current_user, login_required

from extensions import db
from models import AuditLog


def record_audit(action_type: str, user_id=None, context_entity=None) -> None:
    audit = AuditLog(
        user_id=user_id,
        action_type=action_type,
        ip_address=request.remote_addr,
        user_agent=(request.headers.get("User-Agent") or "unknown")[:255],
        context_entity=context_entity,
    )
    db.session.add(audit)
    db.session.commit()


def roles_required(*roles):
    allowed = {r.upper() for r in roles}

    def decorator(view_func):
        @wraps(view_func)
        @login_required
        def wrapped(*args, **kwargs):
            if current_user.role in allowed:
                return view_func(*args, **kwargs)

            current_app.logger.warning(
                "Unauthorized role access attempt",
                extra={"user_id": current_user.id, "role": current_user.role, "path": request.path},
            )
            record_audit("UNAUTHORIZED_ACCESS", user_id=current_user.id, context_entity=request.path[:120])
            abort(403)

        return wrapped

    return decorator
