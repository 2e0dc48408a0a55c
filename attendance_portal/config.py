import os


def _flag(name, default):
    return os.environ.get(name, default).lower() in ("1", "true", "yes", "on")


class BaseConfig:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    PASSWORD_MIN_LENGTH = int(os.environ.get("PASSWORD_MIN_LENGTH", 8))
    REQUIRE_STRONG_PASSWORD = _flag("REQUIRE_STRONG_PASSWORD", "true")
    SESSION_TIMEOUT_MINUTES = int(os.environ.get("SESSION_TIMEOUT_MINUTES", 120))
    PASSWORD_RESET_ENABLED = _flag("PASSWORD_RESET_ENABLED", "true")
    PASSWORD_RESET_MAX_AGE_SECONDS = int(os.environ.get("PASSWORD_RESET_MAX_AGE_SECONDS", 3600))
    MAX_BULK_IMPORT_ROWS = int(os.environ.get("MAX_BULK_IMPORT_ROWS", 1000))
    GENERATED_PASSWORD_LENGTH = int(os.environ.get("GENERATED_PASSWORD_LENGTH", 10))
    # Attendance window governance (minutes after lecture start)
    ATTENDANCE_MARK_WINDOW_MINUTES = int(os.environ.get("ATTENDANCE_MARK_WINDOW_MINUTES", 10))
    ATTENDANCE_EDIT_WINDOW_MINUTES = int(os.environ.get("ATTENDANCE_EDIT_WINDOW_MINUTES", 20))
    EXTENSION_VALID_HOURS = int(os.environ.get("EXTENSION_VALID_HOURS", 24))
    EXTENSION_LOOKBACK_DAYS = int(os.environ.get("EXTENSION_LOOKBACK_DAYS", 7))
    # Scheduling
    LECTURE_GENERATION_MAX_DAYS = int(os.environ.get("LECTURE_GENERATION_MAX_DAYS", 90))
    # Reports
    DEFAULTER_THRESHOLD = float(os.environ.get("DEFAULTER_THRESHOLD", 75))
    # Mail (SMTP with STARTTLS)
    MAIL_SERVER = os.environ.get("MAIL_SERVER", "smtp.gmail.com")
    MAIL_PORT = int(os.environ.get("MAIL_PORT", 587))
    MAIL_USE_TLS = _flag("MAIL_USE_TLS", "true")
    MAIL_USE_SSL = False
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = (
        os.environ.get("MAIL_SENDER_NAME", "University Attendance System"),
        os.environ.get("MAIL_SENDER_EMAIL", "noreply@university.edu"),
    )
    MAIL_SEND_DELAY_SECONDS = float(os.environ.get("MAIL_SEND_DELAY_SECONDS", 0.5))
    LOGIN_URL = os.environ.get("LOGIN_URL", "http://localhost:5000/login")


class DevelopmentConfig(BaseConfig):
    # Default to instance/attendance.db unless overridden
    INSTANCE_PATH = os.environ.get("FLASK_INSTANCE_PATH")

    @staticmethod
    def database_uri(instance_path: str) -> str:
        db_path = os.environ.get("DATABASE_PATH")
        if db_path:
            return f"sqlite:///{db_path}"
        return "sqlite:///" + os.path.join(instance_path, "attendance.db")


class TestingConfig(BaseConfig):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URI", "sqlite:///:memory:")
    MAIL_SUPPRESS_SEND = True
    MAIL_SEND_DELAY_SECONDS = 0


class ProductionConfig(BaseConfig):
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URI", "sqlite:///attendance.db")
