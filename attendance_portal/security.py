import base64
import hashlib
import hmac
import logging
import re
import secrets

from attendance_portal import db
from attendance_portal.models import User

logger = logging.getLogger(__name__)

PBKDF2_PREFIX = 'PBKDF2'
PBKDF2_ITERATIONS = 100000
SALT_SIZE = 32
KEY_SIZE = 32

UPPERCASE = 'ABCDEFGHIJKLMNOPQRSTUVWXYZ'
LOWERCASE = 'abcdefghijklmnopqrstuvwxyz'
DIGITS = '0123456789'
SPECIAL_CHARS = '@#$!%*?&'


def hash_password(password: str) -> str:
    """Hash a password as ``PBKDF2$<iterations>$<b64 salt>$<b64 key>``."""
    if password is None:
        raise ValueError('password must not be None')
    salt = secrets.token_bytes(SALT_SIZE)
    key = hashlib.pbkdf2_hmac('sha256', password.encode('utf-8'), salt, PBKDF2_ITERATIONS, dklen=KEY_SIZE)
    return '$'.join([
        PBKDF2_PREFIX,
        str(PBKDF2_ITERATIONS),
        base64.b64encode(salt).decode('ascii'),
        base64.b64encode(key).decode('ascii'),
    ])


def verify_password(password: str, stored_hash: str) -> bool:
    if password is None:
        raise ValueError('password must not be None')
    if not stored_hash:
        return False
    parts = stored_hash.split('$')
    if len(parts) != 4 or parts[0] != PBKDF2_PREFIX:
        return False
    try:
        iterations = int(parts[1])
        salt = base64.b64decode(parts[2], validate=True)
        expected = base64.b64decode(parts[3], validate=True)
        actual = hashlib.pbkdf2_hmac('sha256', password.encode('utf-8'), salt, iterations, dklen=len(expected))
    except (ValueError, TypeError):
        return False
    return hmac.compare_digest(actual, expected)


def is_pbkdf2_hash(stored_hash) -> bool:
    return bool(stored_hash) and stored_hash.startswith(PBKDF2_PREFIX + '$')


def sha256_base64(value: str) -> str:
    return base64.b64encode(hashlib.sha256(value.encode('utf-8')).digest()).decode('ascii')


def authenticate(email, password):
    """Return the active User matching the credentials, or None.

    Stored values in the old plaintext or SHA-256 formats are accepted once
    and rewritten as PBKDF2 hashes in the same call.
    """
    if not email or not email.strip() or not password:
        return None
    user = User.query.filter_by(email=email.strip().lower()).first()
    if not user or not user.is_active:
        return None
    if verify_password(password, user.password_hash):
        return user
    # Only stored values in a legacy format may match the raw password
    if is_pbkdf2_hash(user.password_hash):
        return None
    legacy_match = (
        hmac.compare_digest(user.password_hash.encode('utf-8'), password.encode('utf-8'))
        or hmac.compare_digest(user.password_hash.encode('utf-8'), sha256_base64(password).encode('utf-8'))
    )
    if not legacy_match:
        return None
    try:
        user.password_hash = hash_password(password)
        db.session.commit()
        logger.info(f"Migrated legacy password hash for {user.email}")
    except Exception:
        db.session.rollback()
        logger.exception(f"Failed to migrate legacy password hash for {user.email}")
    return user


def generate_password(length=10):
    """Random password with at least one upper, lower, digit and special character."""
    if length < 8:
        length = 8
    chars = [
        secrets.choice(UPPERCASE),
        secrets.choice(LOWERCASE),
        secrets.choice(DIGITS),
        secrets.choice(SPECIAL_CHARS),
    ]
    pool = UPPERCASE + LOWERCASE + DIGITS + SPECIAL_CHARS
    chars.extend(secrets.choice(pool) for _ in range(length - 4))
    secrets.SystemRandom().shuffle(chars)
    return ''.join(chars)


def generate_passwords(count, length=10):
    passwords = set()
    while len(passwords) < count:
        passwords.add(generate_password(length))
    return list(passwords)


def password_policy_error(password, min_length=8, require_strong=True):
    """First policy violation for a user-chosen password, or None."""
    if not password:
        return 'New password is required.'
    if len(password) < int(min_length):
        return f'Password must be at least {min_length} characters.'
    if require_strong:
        if not re.search(r"[A-Z]", password) or not re.search(r"[a-z]", password) or not re.search(r"[0-9]", password):
            return 'Password must include uppercase, lowercase, and a number.'
    return None
