import fcntl
import glob
import hashlib
import json
import logging
import os
import secrets
import time
from contextlib import contextmanager
from datetime import datetime, timezone


logger = logging.getLogger(__name__)

USER_FILE_PREFIX = 'user_'
HTACCESS_CONTENT = (
    "Options -Indexes\n"
    "ServerSignature Off\n"
    "<Files \"*\">\n"
    "  Require all denied\n"
    "</Files>\n"
)


def now_utc_iso():
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace('+00:00', 'Z')


def normalize_login(login):
    return str(login or '').strip().lower()


# ------------------- JSON files -------------------
def read_json_file(file_path):
    with open(file_path, 'r', encoding='utf-8') as f:
        return json.load(f)


@contextmanager
def locked_file(file_path):
    lock_path = f"{file_path}.lock"
    lock_file = open(lock_path, 'a+', encoding='utf-8')
    try:
        # Cross-process serialization: gunicorn workers queue here.
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
        yield
    finally:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        lock_file.close()


def atomic_write_json(file_path, data):
    dir_path = os.path.dirname(file_path) or '.'
    tmp_path = os.path.join(
        dir_path,
        f".{os.path.basename(file_path)}.tmp.{os.getpid()}.{time.time_ns()}"
    )
    try:
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, ensure_ascii=False, indent=4)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, file_path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


def write_json_file(file_path, data):
    with locked_file(file_path):
        atomic_write_json(file_path, data)


# ------------------- notes directory -------------------
def ensure_notes_dir(notes_dir):
    if not os.path.exists(notes_dir):
        os.makedirs(notes_dir, mode=0o775, exist_ok=True)
        with open(os.path.join(notes_dir, '.htaccess'), 'w', encoding='utf-8') as f:
            f.write(HTACCESS_CONTENT)
        logger.info("notes_dir_created path=%s", notes_dir)
    if not os.access(notes_dir, os.W_OK):
        raise RuntimeError(f"Notes directory is not writable: {notes_dir}")
    return notes_dir


def user_file_path(notes_dir, login):
    digest = hashlib.md5(normalize_login(login).encode('utf-8')).hexdigest()
    return os.path.join(notes_dir, f"{USER_FILE_PREFIX}{digest}.json")


def list_user_files(notes_dir):
    if not os.path.isdir(notes_dir):
        return []
    return sorted(glob.glob(os.path.join(notes_dir, f"{USER_FILE_PREFIX}*.json")))


# ------------------- user documents -------------------
def default_user_document(login):
    return {
        "user": {
            "login": normalize_login(login),
            "password_hash": None,
            "recovery_code": None,
            "created_at": now_utc_iso(),
        },
        "notes": [],
    }


def normalize_user_document(payload, login):
    """Repair a loaded user document in place of a schema migration.

    Returns ``(document, changed)``; ``changed`` tells the caller whether the
    repaired document differs from what was on disk.
    """
    default = default_user_document(login)
    changed = False

    if not isinstance(payload.get('user'), dict):
        payload['user'] = default['user']
        changed = True
    if not isinstance(payload.get('notes'), list):
        payload['notes'] = []
        changed = True

    user = payload['user']
    for key, default_value in default['user'].items():
        if key not in user:
            user[key] = default_value
            changed = True

    if not user.get('login'):
        user['login'] = normalize_login(login)
        changed = True

    return payload, changed


def load_user_document(notes_dir, login):
    file_path = user_file_path(ensure_notes_dir(notes_dir), login)
    if not os.path.exists(file_path):
        return None
    try:
        payload = read_json_file(file_path)
    except ValueError as exc:
        logger.warning("user_document_unreadable file=%s err=%s", file_path, exc)
        return None
    if not isinstance(payload, dict):
        return None

    document, changed = normalize_user_document(payload, login)
    if changed:
        write_json_file(file_path, document)
        logger.info("user_document_repaired file=%s", file_path)
    return document


def save_user_document(notes_dir, login, document):
    file_path = user_file_path(ensure_notes_dir(notes_dir), login)
    write_json_file(file_path, document)
    return file_path


def read_user_file(file_path):
    try:
        payload = read_json_file(file_path)
    except (OSError, ValueError):
        return None
    if not isinstance(payload, dict) or not isinstance(payload.get('user'), dict):
        return None
    return payload


def delete_user_document(notes_dir, login):
    file_path = user_file_path(notes_dir, login)
    if not os.path.exists(file_path):
        return False
    os.remove(file_path)
    lock_path = f"{file_path}.lock"
    if os.path.exists(lock_path):
        os.remove(lock_path)
    return True


# ------------------- notes -------------------
def generate_note_id(existing_ids):
    while True:
        note_id = f"{int(time.time() * 1000000):x}{secrets.token_hex(2)}"
        if note_id not in existing_ids:
            return note_id


def find_note(document, note_id):
    return next((n for n in document['notes'] if n.get('id') == note_id), None)


def add_note(document, title, content, ip=None):
    now_iso = now_utc_iso()
    note = {
        "id": generate_note_id({n.get('id') for n in document['notes']}),
        "title": title,
        "content": content,
        "created_at": now_iso,
        "updated_at": now_iso,
    }
    if ip is not None:
        note['created_ip'] = ip
        note['updated_ip'] = ip
    document['notes'].append(note)
    return note


def update_note(document, note_id, title, content, ip=None):
    note = find_note(document, note_id)
    if note is None:
        return None
    note['title'] = title
    note['content'] = content
    note['updated_at'] = now_utc_iso()
    if ip is not None:
        note['updated_ip'] = ip
    return note


def delete_note(document, note_id):
    notes = document['notes']
    index = next((i for i, n in enumerate(notes) if n.get('id') == note_id), None)
    if index is None:
        return False
    del notes[index]
    return True
