"""Flask application factory for the Metronix complaint tracking service."""
import os
from typing import Mapping, Optional

import click
from dotenv import load_dotenv
from flask import Flask, jsonify, request
from sqlalchemy import create_engine, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError
from werkzeug.exceptions import HTTPException

from extensions import csrf, db, login_manager, migrate
from utils.errors import MetronixError
from utils.logger import init_logging
from utils.security import apply_security_headers

DEFAULT_DEPARTMENTS: list[tuple[str, list[str]]] = [
    ("Public Works", ["road", "pothole", "bridge", "sidewalk", "pavement", "construction"]),
    ("Water Supply", ["water", "pipe", "leak", "supply", "drainage", "sewage"]),
    ("Electricity", ["electricity", "power", "streetlight", "outage", "wire", "transformer"]),
    ("Sanitation", ["garbage", "waste", "trash", "cleaning", "dump", "litter"]),
    ("Environmental", ["pollution", "noise", "air", "tree", "park", "environment"]),
    ("Transportation", ["traffic", "bus", "signal", "parking", "transport", "vehicle"]),
    ("General Administration", ["general", "administration", "service", "other"]),
]


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(MetronixError)
    def metronix_error(error: MetronixError):
        log = app.logger.error if error.status_code >= 500 else app.logger.info
        log(
            "request_failed",
            extra={"path": request.path, "method": request.method, "status": error.status_code, "error": error.message},
        )
        return jsonify(error.to_payload()), error.status_code

    @app.errorhandler(HTTPException)
    def http_error(error: HTTPException):
        if error.code and error.code >= 400:
            app.logger.warning(
                f"{error.code} {error.name}",
                extra={"path": request.path, "method": request.method},
            )
        return jsonify({"error": error.name, "details": {"description": error.description}}), error.code

    @app.errorhandler(500)
    def internal_error(error):
        app.logger.exception("500 Internal Server Error")
        return jsonify({"error": "Internal Server Error"}), 500


def ensure_default_admin(app: Flask) -> None:
    """Ensure an administrator can log in without registering."""
    from models import User  # Local import to avoid circular dependency

    admin_email = (app.config.get("DEFAULT_ADMIN_EMAIL") or "").lower().strip()
    admin_password = app.config.get("DEFAULT_ADMIN_PASSWORD") or ""
    if not admin_email or not admin_password:
        return

    admin_user = User.query.filter_by(email=admin_email).first()
    if admin_user:
        if not admin_user.is_admin:
            app.logger.warning("Default admin email belongs to a non-admin account", extra={"email": admin_email})
        return

    admin_user = User(name="System Administrator", email=admin_email, role="ADMIN")
    admin_user.set_password(admin_password)
    db.session.add(admin_user)
    db.session.commit()
    app.logger.info("Default admin created", extra={"email": admin_email})


def seed_departments() -> int:
    from models import Department

    created = 0
    for name, keywords in DEFAULT_DEPARTMENTS:
        if Department.query.filter_by(name=name).first():
            continue
        db.session.add(Department(name=name, keywords=keywords))
        created += 1
    db.session.commit()
    return created


def ensure_database_exists(database_uri: str) -> None:
    """Create the target database if it does not exist (PostgreSQL + SQLite support)."""
    url = make_url(database_uri)

    if url.drivername.startswith("sqlite"):
        if url.database and url.database != ":memory:":
            os.makedirs(os.path.dirname(url.database) or ".", exist_ok=True)
        return

    if url.drivername.startswith("postgres"):
        db_name = url.database
        admin_url = url.set(database=os.getenv("POSTGRES_DB_ADMIN", "postgres"))
        engine = create_engine(admin_url, isolation_level="AUTOCOMMIT")
        try:
            with engine.connect() as conn:
                exists = conn.execute(
                    text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": db_name}
                ).scalar()
                if not exists:
                    conn.execute(text(f'CREATE DATABASE "{db_name}"'))
        except OperationalError:
            # Startup fails loudly later on the real connection.
            pass
        finally:
            engine.dispose()


def register_cli(app: Flask) -> None:
    @app.cli.command("seed-departments")
    def seed_departments_command():
        """Create the default municipal departments."""
        created = seed_departments()
        click.echo(f"Departments created: {created}")

    @app.cli.command("send-daily-summary")
    @click.option("--date", "date_value", default=None, help="UTC day as YYYY-MM-DD (default: today).")
    @click.option("--to", "recipient", default=None, help="Override the recipient address.")
    def send_daily_summary_command(date_value, recipient):
        """Email the daily complaint summary (schedule this via cron)."""
        from utils.reporting import parse_report_date, send_daily_digest

        summary, result = send_daily_digest(parse_report_date(date_value), recipient=recipient)
        if not result.delivered:
            raise click.ClickException(f"Daily summary not sent: {result.error}")
        click.echo(f"Daily summary for {summary['date']} sent to {result.recipient}")


def create_app(config_name: Optional[str] = None, overrides: Optional[Mapping] = None) -> Flask:
    """Application factory with environment-aware configuration."""
    load_dotenv()

    app = Flask(__name__, instance_relative_config=True)

    from config import DevelopmentConfig, ProductionConfig, TestingConfig

    config_key = (config_name or os.getenv("FLASK_CONFIG") or os.getenv("FLASK_ENV") or "production").lower()
    config_map = {
        "development": DevelopmentConfig,
        "dev": DevelopmentConfig,
        "production": ProductionConfig,
        "prod": ProductionConfig,
        "testing": TestingConfig,
        "test": TestingConfig,
    }
    config_class = config_map.get(config_key, ProductionConfig)
    app.config.from_object(config_class())
    if config_class is not TestingConfig:
        app.config.from_pyfile("config.py", silent=True)
    if overrides:
        app.config.update(overrides)

    ensure_database_exists(app.config["SQLALCHEMY_DATABASE_URI"])
    os.makedirs(app.instance_path, exist_ok=True)
    os.makedirs(app.config["COMPLAINT_UPLOAD_FOLDER"], exist_ok=True)

    app.logger = init_logging(app)

    csrf.init_app(app)
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    login_manager.session_protection = "strong"

    @login_manager.user_loader
    def load_user(user_id):
        from models import User  # Local import to avoid circular dependency

        if not user_id:
            return None
        return db.session.get(User, str(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"error": "Authentication required"}), 401

    from routes import admin_bp, auth_bp, complaints_bp, main_bp, solvers_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(complaints_bp)
    app.register_blueprint(solvers_bp)
    app.register_blueprint(admin_bp)

    register_error_handlers(app)
    register_cli(app)

    @app.after_request
    def _after_request(response):
        return apply_security_headers(response, force_https=app.config.get("PREFERRED_URL_SCHEME") == "https")

    # First run creates the schema; Flask-Migrate owns changes after that.
    with app.app_context():
        db.create_all()
        ensure_default_admin(app)

    return app


if __name__ == "__main__":
    port = int(os.getenv("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port, use_reloader=False)
