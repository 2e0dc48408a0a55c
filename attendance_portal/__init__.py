import os
import logging
from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_mail import Mail
from attendance_portal.config import DevelopmentConfig, ProductionConfig, TestingConfig
from datetime import timedelta

logger = logging.getLogger(__name__)

app = Flask(__name__, instance_relative_config=True)

# Select config based on FLASK_ENV
env = os.environ.get("FLASK_ENV", "development").lower()
if env == "production":
    app.config.from_object(ProductionConfig)
elif env == "testing":
    app.config.from_object(TestingConfig)
else:
    app.config.from_object(DevelopmentConfig)

# Compute DB URI for development using instance path
if env == "development":
    os.makedirs(app.instance_path, exist_ok=True)
    app.config['SQLALCHEMY_DATABASE_URI'] = DevelopmentConfig.database_uri(app.instance_path)

db = SQLAlchemy(app)
mail = Mail(app)

# Configure session lifetime
timeout_minutes = app.config.get('SESSION_TIMEOUT_MINUTES', 120)
try:
    app.permanent_session_lifetime = timedelta(minutes=int(timeout_minutes))
except (TypeError, ValueError):
    app.permanent_session_lifetime = timedelta(minutes=120)


def bootstrap_admin():
    """Create the admin account named by ADMIN_EMAIL / ADMIN_PASSWORD if it is missing."""
    from attendance_portal.models import User, ROLE_ADMIN
    from attendance_portal.security import hash_password

    admin_email = (os.environ.get("ADMIN_EMAIL") or "").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD")
    if not admin_email or not admin_password:
        return None
    existing = User.query.filter_by(email=admin_email).first()
    if existing:
        return existing
    user = User(full_name="System Administrator", email=admin_email,
                password_hash=hash_password(admin_password), role=ROLE_ADMIN)
    db.session.add(user)
    db.session.commit()
    logger.info(f"Bootstrapped admin account {admin_email}")
    return user


if env != "testing":
    try:
        from attendance_portal import models  # noqa: F401
        with app.app_context():
            db.create_all()
            bootstrap_admin()
    except Exception:
        logger.exception("Database bootstrap failed")

from attendance_portal import routes  # noqa: E402,F401
