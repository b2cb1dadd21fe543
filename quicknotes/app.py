from flask import Flask, request, jsonify, g, has_request_context
from werkzeug.exceptions import HTTPException
import json
import logging
import os
import re
import secrets
import time
from collections import OrderedDict

from . import credentials, firewall, settings, storage, throttle


APP_START_TS = time.time()

REQUEST_ID_HEADER = 'X-Request-ID'
REQUEST_ID_MAX_LEN = 64
REQUEST_ID_PATTERN = re.compile(r'^[A-Za-z0-9._:-]+$')

PERSONAL_PASSWORDS_DISABLED = 'Personal passwords are disabled in global password mode.'


def generate_request_id():
    return secrets.token_hex(8)


def normalize_request_id(raw_value):
    candidate = str(raw_value or '').strip()
    if not candidate:
        return generate_request_id()
    if len(candidate) > REQUEST_ID_MAX_LEN:
        candidate = candidate[:REQUEST_ID_MAX_LEN]
    if not REQUEST_ID_PATTERN.match(candidate):
        return generate_request_id()
    return candidate


def get_request_id():
    if not has_request_context():
        return '-'
    value = getattr(g, 'request_id', '')
    return str(value) if value else '-'


def get_client_ip():
    if not has_request_context():
        return firewall.UNKNOWN_IP
    ip = getattr(g, 'client_ip', None)
    if ip is None:
        ip = firewall.resolve_client_ip(request.headers, request.remote_addr)
        g.client_ip = ip
    return ip


def get_request_login():
    if not has_request_context():
        return ''
    return storage.normalize_login(request.values.get('login'))


def audit_log(level, event, **fields):
    record = OrderedDict()
    record["event"] = event
    if has_request_context():
        record["request_id"] = get_request_id()
        record["ip"] = get_client_ip()
        record["actor"] = get_request_login() or 'anonymous'
        record["method"] = request.method
        record["path"] = request.path
    for key, value in fields.items():
        if value is None:
            continue
        record[key] = value

    kv_pairs = []
    for key, value in record.items():
        text = str(value).replace('\n', ' ').replace('\r', ' ')
        if len(text) > 256:
            text = text[:256] + '...'
        kv_pairs.append(f"{key}={text}")
    app.logger.log(level, "audit %s", " ".join(kv_pairs))


def setup_logging():
    level_name = str(settings.get_env('APP_LOG_LEVEL', 'INFO')).strip().upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s"
    )

    root_logger = logging.getLogger()
    if root_logger.handlers:
        for handler in root_logger.handlers:
            handler.setFormatter(formatter)
    else:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        root_logger.addHandler(stream_handler)

    root_logger.setLevel(level)
    app.logger.setLevel(level)


BASE_DIR = os.path.dirname(os.path.abspath(__file__))
app = Flask(
    __name__,
    static_folder=os.path.join(BASE_DIR, 'static'),
    static_url_path=''
)
setup_logging()

BRUTE_FORCE_REDIS_STORE = None


# ------------------- brute-force helpers -------------------
def get_brute_force_policy():
    return throttle.BruteForcePolicy(
        enabled=settings.APP_BRUTE_FORCE_PROTECTION,
        window_sec=settings.APP_BRUTE_FORCE_WINDOW_SEC,
        max_attempts=settings.APP_BRUTE_FORCE_MAX_ATTEMPTS,
        delay_sec=settings.APP_BRUTE_FORCE_DELAY_SEC,
        max_delay_sec=settings.APP_BRUTE_FORCE_MAX_DELAY_SEC,
        lockout_attempts=settings.APP_BRUTE_FORCE_LOCKOUT_ATTEMPTS,
        lockout_duration_sec=settings.APP_BRUTE_FORCE_LOCKOUT_DURATION_SEC,
    )


def get_brute_force_store():
    global BRUTE_FORCE_REDIS_STORE
    if settings.APP_BRUTE_FORCE_BACKEND == 'redis':
        if BRUTE_FORCE_REDIS_STORE is None:
            BRUTE_FORCE_REDIS_STORE = throttle.build_store(
                'redis',
                settings.APP_NOTES_DIR,
                redis_url=settings.APP_REDIS_URL,
                redis_key=settings.APP_BRUTE_FORCE_KEY,
                socket_timeout=settings.APP_REDIS_SOCKET_TIMEOUT_SEC,
            )
        return BRUTE_FORCE_REDIS_STORE
    return throttle.build_store('file', storage.ensure_notes_dir(settings.APP_NOTES_DIR))


def register_failed_attempt(reason):
    entry = throttle.record_failed_attempt(
        get_brute_force_store(),
        get_client_ip(),
        get_brute_force_policy(),
    )
    audit_log(
        logging.WARNING,
        "auth_failed",
        reason=reason,
        attempts=len(entry['attempts']) if entry else None,
        lockout_until=entry.get('lockout_until') if entry else None,
    )


def clear_failed_attempts():
    cleared = throttle.clear_failed_attempts(
        get_brute_force_store(),
        get_client_ip(),
        get_brute_force_policy(),
    )
    if cleared:
        audit_log(logging.INFO, "auth_throttle_cleared")


def verify_brute_force_backend():
    if settings.APP_BRUTE_FORCE_BACKEND != 'redis':
        return
    store = get_brute_force_store()
    try:
        store.client.ping()
    except Exception as exc:
        raise RuntimeError(f"Redis brute-force backend unavailable: {exc}")


# ------------------- responses -------------------
def api_error(message, status=200, **extra):
    payload = {"success": False, "message": message}
    payload.update(extra)
    return jsonify(payload), status


def api_success(message=None, **extra):
    payload = {"success": True}
    if message is not None:
        payload["message"] = message
    payload.update(extra)
    return jsonify(payload), 200


def strip_tags(raw_text):
    return re.sub(r"<[^>]*>", "", str(raw_text or ''))


def request_field(name):
    return str(request.values.get(name, '')).strip()


def personal_passwords_enabled():
    return settings.APP_PASSWORD_MODE == 'individual'


def password_policy_error(password):
    return credentials.validate_password(
        password,
        settings.APP_MIN_PASSWORD_LENGTH,
        require_uppercase=settings.APP_PASSWORD_REQUIRE_UPPERCASE,
        require_lowercase=settings.APP_PASSWORD_REQUIRE_LOWERCASE,
        require_number=settings.APP_PASSWORD_REQUIRE_NUMBER,
    )


def issue_credentials(document, password):
    """Set a new password hash and rotate the recovery code; returns the plain code."""
    recovery_code = credentials.generate_recovery_code()
    iterations = settings.APP_PASSWORD_HASH_ITERATIONS
    document['user']['password_hash'] = credentials.hash_password_pbkdf2(password, iterations)
    document['user']['recovery_code'] = credentials.hash_password_pbkdf2(recovery_code, iterations)
    return recovery_code


def load_user(login):
    return storage.load_user_document(settings.APP_NOTES_DIR, login)


def save_user(login, document):
    storage.save_user_document(settings.APP_NOTES_DIR, login, document)


def note_ip():
    return get_client_ip() if settings.APP_STORE_IP else None


def parse_note_data():
    try:
        data = json.loads(request.values.get('data', ''))
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def data_field(data, name):
    value = data.get(name)
    if value is None:
        return ''
    return str(value).strip()


# ------------------- request gate -------------------
def is_api_path(path):
    return path == '/api' or path.startswith('/api/')


@app.before_request
def protect_api():
    g.request_start = time.time()
    g.request_id = normalize_request_id(request.headers.get(REQUEST_ID_HEADER, ''))

    if not is_api_path(request.path or ''):
        return None

    client_ip = get_client_ip()
    allowed = firewall.check_ip_firewall(
        client_ip,
        settings.APP_IP_FIREWALL_MODE,
        whitelist=settings.APP_IP_WHITELIST,
        blacklist=settings.APP_IP_BLACKLIST,
    )
    if not allowed:
        audit_log(logging.WARNING, "firewall_blocked", mode=settings.APP_IP_FIREWALL_MODE)
        return api_error('Access denied.', 403, firewall=True)

    status = throttle.check_brute_force(
        get_brute_force_store(),
        client_ip,
        get_brute_force_policy(),
    )
    if not status['allowed']:
        remaining = status.get('remaining', 0)
        audit_log(logging.WARNING, "auth_lockout_rejected", retry_after=remaining)
        return api_error(
            'Too many failed attempts. Try again in '
            f'{throttle.lockout_minutes(remaining)} minutes.',
            429,
            lockout=True,
            retry_after=remaining,
        )

    delay = status.get('delay', 0)
    if delay:
        audit_log(
            logging.WARNING,
            "auth_throttle_delay",
            delay_sec=delay,
            attempts=status.get('attempts'),
        )
        time.sleep(delay)
    return None


# ------------------- public actions -------------------
def action_get_config(login):
    return api_success(config={
        "enable_pwa": settings.APP_ENABLE_PWA,
        "enable_offline_mode": settings.APP_ENABLE_OFFLINE_MODE,
        "require_global_code": settings.APP_REQUIRE_GLOBAL_CODE,
        "store_ip": settings.APP_STORE_IP,
    })


def action_check_user(login):
    if not login:
        return api_error('Login required.')

    document = load_user(login)
    if personal_passwords_enabled():
        has_password = document is not None and document['user'].get('password_hash') is not None
    else:
        has_password = True
    return api_success(
        user_exists=document is not None,
        has_password=has_password,
        require_global_code=settings.APP_REQUIRE_GLOBAL_CODE,
    )


# ------------------- actions gated by the global code -------------------
def action_set_password(login):
    if not personal_passwords_enabled():
        return api_error(PERSONAL_PASSWORDS_DISABLED)
    if not login:
        return api_error('Login required.')

    password = request_field('secret')
    policy_error = password_policy_error(password)
    if policy_error:
        return api_error(policy_error)

    document = load_user(login)
    if document is None:
        document = storage.default_user_document(login)

    if document['user'].get('password_hash') is not None:
        return api_error('User already has a password.')

    recovery_code = issue_credentials(document, password)
    save_user(login, document)
    audit_log(logging.INFO, "auth_password_set", username=login)
    return api_success('Password set successfully!', recovery_code=recovery_code)


def action_recover_password(login):
    if not personal_passwords_enabled():
        return api_error(PERSONAL_PASSWORDS_DISABLED)
    if not login:
        return api_error('Login required.')

    recovery_code = credentials.normalize_recovery_code(request.values.get('recovery_code'))
    new_password = request_field('secret')
    if not recovery_code or not new_password:
        return api_error('Recovery code and new password required.')

    policy_error = password_policy_error(new_password)
    if policy_error:
        return api_error(policy_error)

    document = load_user(login)
    stored_code = document['user'].get('recovery_code') if document else None
    if not credentials.verify_password_pbkdf2(recovery_code, stored_code):
        register_failed_attempt('bad_recovery_code')
        return api_error('Invalid recovery code.')

    clear_failed_attempts()
    new_recovery_code = issue_credentials(document, new_password)
    save_user(login, document)
    audit_log(logging.INFO, "auth_password_recovered", username=login)
    return api_success('Password reset successfully!', recovery_code=new_recovery_code)


# ------------------- actions requiring the password -------------------
def authenticate(login, password):
    """Return ``(document, None)`` on success or ``(None, error_response)``."""
    if not personal_passwords_enabled():
        if not credentials.verify_date_code(password, settings.APP_GLOBAL_PASSWORD_PATTERN):
            register_failed_attempt('bad_global_password')
            return None, api_error('Invalid password.', login_error=True)
        document = load_user(login)
        if document is None:
            document = storage.default_user_document(login)
        clear_failed_attempts()
        return document, None

    document = load_user(login)
    if document is None or document['user'].get('password_hash') is None:
        return None, api_error('Please set a password first.', login_error=True)
    if not credentials.verify_password_pbkdf2(password, document['user']['password_hash']):
        register_failed_attempt('bad_password')
        return None, api_error('Invalid password.', login_error=True)

    clear_failed_attempts()
    return document, None


def action_check_login(login, document):
    audit_log(logging.INFO, "auth_login_success", username=login)
    return api_success('Login successful.')


def action_change_password(login, document):
    if not personal_passwords_enabled():
        return api_error(PERSONAL_PASSWORDS_DISABLED)

    new_password = request_field('new_password')
    if not new_password:
        return api_error('New password required.')

    policy_error = password_policy_error(new_password)
    if policy_error:
        return api_error(policy_error)

    recovery_code = issue_credentials(document, new_password)
    save_user(login, document)
    audit_log(logging.INFO, "auth_password_changed", username=login)
    return api_success('Password changed successfully!', recovery_code=recovery_code)


# ------------------- note actions -------------------
def action_get_notes(login, document, data):
    return api_success(notes=document.get('notes', []))


def action_add_note(login, document, data):
    title = data_field(data, 'title')
    content = data_field(data, 'content')
    if not title or not content:
        return api_error('Title and content are required.')

    note = storage.add_note(document, title, content, ip=note_ip())
    save_user(login, document)
    audit_log(
        logging.INFO,
        "note_create_success",
        note_id=note['id'],
        title_len=len(title),
    )
    return api_success('Note added successfully.', note=note)


def action_update_note(login, document, data):
    note_id = data_field(data, 'id')
    title = data_field(data, 'title')
    content = data_field(data, 'content')
    if not note_id or not title or not content:
        return api_error('Note ID, title and content are required.')

    note = storage.update_note(document, note_id, title, content, ip=note_ip())
    if note is None:
        audit_log(logging.WARNING, "note_update_not_found", note_id=note_id)
        return api_error('Note not found.')

    save_user(login, document)
    audit_log(logging.INFO, "note_update_success", note_id=note_id, title_len=len(title))
    return api_success('Note updated successfully.')


def action_delete_note(login, document, data):
    note_id = data_field(data, 'id')
    if not note_id:
        return api_error('Note ID is required.')

    if not storage.delete_note(document, note_id):
        audit_log(logging.WARNING, "note_delete_not_found", note_id=note_id)
        return api_error('Note not found.')

    save_user(login, document)
    audit_log(logging.INFO, "note_delete", note_id=note_id)
    return api_success('Note deleted successfully.')


PUBLIC_ACTIONS = {
    'get_config': action_get_config,
    'check_user': action_check_user,
}
GLOBAL_CODE_ACTIONS = {
    'set_password': action_set_password,
    'recover_password': action_recover_password,
}
ACCOUNT_ACTIONS = {
    'check_login': action_check_login,
    'change_password': action_change_password,
}
NOTE_ACTIONS = {
    'get_notes': action_get_notes,
    'add_note': action_add_note,
    'update_note': action_update_note,
    'delete_note': action_delete_note,
}


# ------------------- API entry point -------------------
@app.route('/api', methods=['GET', 'POST'])
@app.route('/api/', methods=['GET', 'POST'])
def api_entry():
    action = request.values.get('action')
    if action is None:
        return api_error('No action specified.')

    login = get_request_login()
    if login and settings.APP_ALLOWED_USERNAMES and login not in settings.APP_ALLOWED_USERNAMES:
        return api_error('Username not allowed.')
    if login and login in settings.APP_BLOCKED_USERNAMES:
        return api_error('This username is reserved.')

    api_key = request.headers.get('X-API-Key') or request.values.get('api_key', '')
    api_key_ok = firewall.verify_api_key(
        request.headers,
        request.host,
        api_key,
        settings.APP_API_KEYS,
        settings.APP_REQUIRE_API_KEY,
    )
    if not api_key_ok:
        audit_log(logging.WARNING, "api_key_rejected")
        return api_error('Invalid or missing API key.', api_key_error=True)

    handler = PUBLIC_ACTIONS.get(action)
    if handler:
        return handler(login)

    if settings.APP_REQUIRE_GLOBAL_CODE:
        global_code = request_field('global_code')
        if not credentials.verify_date_code(global_code, settings.APP_GLOBAL_CODE_PATTERN):
            register_failed_attempt('bad_global_code')
            return api_error('Invalid access code.', code_error=True)

    handler = GLOBAL_CODE_ACTIONS.get(action)
    if handler:
        return handler(login)

    password = request_field('secret')
    if not login or not password:
        return api_error('Login and password required.', login_error=True)

    document, auth_error = authenticate(login, password)
    if auth_error:
        return auth_error

    handler = ACCOUNT_ACTIONS.get(action)
    if handler:
        return handler(login, document)

    if 'data' not in request.values:
        return api_error('No data specified.')

    handler = NOTE_ACTIONS.get(action)
    if handler:
        return handler(login, document, parse_note_data())

    return api_error(f'Invalid API call for action: "{strip_tags(action)}".')


@app.route('/healthz', methods=['GET'])
def healthz():
    try:
        storage.ensure_notes_dir(settings.APP_NOTES_DIR)
    except Exception as exc:
        app.logger.exception("healthz_failed reason=%s", exc)
        return jsonify({"status": "degraded"}), 503
    return jsonify({"status": "ok"}), 200


@app.route('/')
@app.route('/index.html')
def serve_index():
    return app.send_static_file('index.html')


@app.errorhandler(Exception)
def handle_unexpected_error(exc):
    if isinstance(exc, HTTPException):
        return exc
    app.logger.exception(
        "unhandled_error request_id=%s method=%s path=%s err=%s",
        get_request_id(),
        request.method,
        request.path,
        exc,
    )
    return jsonify({
        "success": False,
        "message": "Internal server error.",
        "request_id": get_request_id(),
    }), 500


@app.after_request
def log_request(response):
    response.headers[REQUEST_ID_HEADER] = get_request_id()

    start = getattr(g, 'request_start', None)
    duration_ms = int((time.time() - start) * 1000) if start else -1
    app.logger.info(
        "request request_id=%s method=%s path=%s status=%s duration_ms=%s ip=%s actor=%s",
        get_request_id(),
        request.method,
        request.path,
        response.status_code,
        duration_ms,
        get_client_ip(),
        get_request_login() or 'anonymous'
    )
    return response


def init_app():
    storage.ensure_notes_dir(settings.APP_NOTES_DIR)
    verify_brute_force_backend()
    app.logger.info(
        "app_boot env=%s notes_dir=%s password_mode=%s global_code=%s firewall=%s brute_force=%s backend=%s window=%ss max_attempts=%s lockout_attempts=%s api_key=%s store_ip=%s",
        settings.APP_ENV,
        settings.APP_NOTES_DIR,
        settings.APP_PASSWORD_MODE,
        settings.APP_REQUIRE_GLOBAL_CODE,
        settings.APP_IP_FIREWALL_MODE,
        settings.APP_BRUTE_FORCE_PROTECTION,
        settings.APP_BRUTE_FORCE_BACKEND,
        settings.APP_BRUTE_FORCE_WINDOW_SEC,
        settings.APP_BRUTE_FORCE_MAX_ATTEMPTS,
        settings.APP_BRUTE_FORCE_LOCKOUT_ATTEMPTS,
        settings.APP_REQUIRE_API_KEY,
        settings.APP_STORE_IP,
    )


init_app()

if __name__ == '__main__':
    debug = os.getenv('FLASK_DEBUG', '0') == '1'
    port = int(os.getenv('PORT', '5000'))
    app.run(host='0.0.0.0', port=port, debug=debug)
