import base64
import hashlib
import hmac
import re
import secrets
from datetime import datetime


RECOVERY_CODE_LENGTH = 8
DEFAULT_HASH_ITERATIONS = 210000


def b64url_encode_no_pad(raw_bytes):
    return base64.urlsafe_b64encode(raw_bytes).decode('ascii').rstrip('=')


def b64url_decode_no_pad(raw_text):
    padded = raw_text + ('=' * (-len(raw_text) % 4))
    return base64.urlsafe_b64decode(padded.encode('ascii'))


def hash_password_pbkdf2(password, iterations=DEFAULT_HASH_ITERATIONS):
    salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac(
        'sha256',
        str(password).encode('utf-8'),
        salt,
        int(iterations)
    )
    return "pbkdf2_sha256${}${}${}".format(
        int(iterations),
        b64url_encode_no_pad(salt),
        b64url_encode_no_pad(digest)
    )


def verify_password_pbkdf2(password, password_hash):
    if not password_hash:
        return False
    try:
        algorithm, iterations_raw, salt_raw, digest_raw = str(password_hash).split('$', 3)
        if algorithm != 'pbkdf2_sha256':
            return False
        iterations = int(iterations_raw)
        if iterations <= 0:
            return False
        salt = b64url_decode_no_pad(salt_raw)
        expected_digest = b64url_decode_no_pad(digest_raw)
    except (TypeError, ValueError):
        return False
    actual_digest = hashlib.pbkdf2_hmac(
        'sha256',
        str(password).encode('utf-8'),
        salt,
        iterations
    )
    return hmac.compare_digest(actual_digest, expected_digest)


def generate_recovery_code():
    return secrets.token_hex(RECOVERY_CODE_LENGTH // 2).upper()


def normalize_recovery_code(raw_code):
    return str(raw_code or '').strip().upper()


def render_date_pattern(pattern, today=None):
    """Expand ``{YYYY}``, ``{YY}``, ``{MM}`` and ``{DD}`` with the server's local date."""
    if today is None:
        today = datetime.now()
    replacements = {
        '{YYYY}': today.strftime('%Y'),
        '{YY}': today.strftime('%y'),
        '{MM}': today.strftime('%m'),
        '{DD}': today.strftime('%d'),
    }
    result = str(pattern or '')
    for placeholder, value in replacements.items():
        result = result.replace(placeholder, value)
    return result


def verify_date_code(candidate, pattern, today=None):
    expected = render_date_pattern(pattern, today=today)
    if not expected:
        return False
    return hmac.compare_digest(
        str(candidate or '').encode('utf-8'),
        expected.encode('utf-8')
    )


def validate_password(password, min_length, require_uppercase=False,
                      require_lowercase=False, require_number=False):
    errors = []
    if len(password) < min_length:
        errors.append(f"at least {min_length} characters")
    if require_uppercase and not re.search(r'[A-Z]', password):
        errors.append("one uppercase letter")
    if require_lowercase and not re.search(r'[a-z]', password):
        errors.append("one lowercase letter")
    if require_number and not re.search(r'[0-9]', password):
        errors.append("one number")

    if errors:
        return "Password must contain: " + ", ".join(errors) + "."
    return None
