import logging
import os

from flask import Flask
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

from . import models  # noqa: E402,F401  registers tables on db.metadata
from .shared.time import fmt_dt, fmt_long_date


def create_app():
    app = Flask(__name__)
    app.secret_key = os.getenv("SECRET_KEY", "dev")
    app.jinja_env.filters["fmt_dt"] = fmt_dt
    app.jinja_env.filters["fmt_long_date"] = fmt_long_date

    DB_USER = os.getenv("DB_USER", "certdesk")
    DB_PASSWORD = os.getenv("POSTGRES_PASSWORD", "postgres")
    DB_HOST = os.getenv("DB_HOST", "db")
    DB_NAME = os.getenv("DB_NAME", "certdesk")
    DATABASE_URL = os.getenv(
        "DATABASE_URL",
        f"postgresql+psycopg2://{DB_USER}:{DB_PASSWORD}@{DB_HOST}/{DB_NAME}",
    )

    app.config["SQLALCHEMY_DATABASE_URI"] = DATABASE_URL
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    app.config["SITE_ROOT"] = os.getenv("SITE_ROOT", "/srv")
    app.config["CERTIFICATE_BASE_URL"] = os.getenv("CERTIFICATE_BASE_URL", "/files")
    app.config["CERTIFICATE_NUMBER_PREFIX"] = os.getenv(
        "CERTIFICATE_NUMBER_PREFIX", "CERT"
    )
    app.config["CERTIFICATE_VERIFY_URL"] = os.getenv(
        "CERTIFICATE_VERIFY_URL", "/certificates/verify/{number}"
    )
    try:
        render_timeout = float(os.getenv("CERTIFICATE_RENDER_TIMEOUT", "30"))
    except ValueError:
        logging.warning("invalid CERTIFICATE_RENDER_TIMEOUT; using 30s")
        render_timeout = 30.0
    app.config["CERTIFICATE_RENDER_TIMEOUT"] = render_timeout

    db.init_app(app)
    app.logger.setLevel(logging.INFO)

    @app.get("/health")
    def health():  # pragma: no cover - simple healthcheck
        return "OK", 200

    return app
