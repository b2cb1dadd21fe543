import json
import logging
import math
import os
import time
from collections import namedtuple
from contextlib import contextmanager

from . import storage

try:
    import redis
except ImportError:
    redis = None


logger = logging.getLogger(__name__)

BRUTE_FORCE_FILE_NAME = '.brute_force_log.json'

BruteForcePolicy = namedtuple(
    'BruteForcePolicy',
    [
        'enabled',
        'window_sec',
        'max_attempts',
        'delay_sec',
        'max_delay_sec',
        'lockout_attempts',
        'lockout_duration_sec',
    ],
    defaults=(True, 900, 5, 2, 30, 20, 3600),
)


class FileBruteForceStore:
    def __init__(self, file_path):
        self.file_path = file_path

    def load(self):
        if not os.path.exists(self.file_path):
            return {}
        try:
            return storage.read_json_file(self.file_path)
        except (OSError, ValueError) as exc:
            logger.warning("brute_force_log_unreadable file=%s err=%s", self.file_path, exc)
            return {}

    def save(self, data):
        storage.atomic_write_json(self.file_path, data)

    @contextmanager
    def transaction(self):
        with storage.locked_file(self.file_path):
            yield


class RedisBruteForceStore:
    def __init__(self, client, key, lock_timeout_sec=5):
        self.client = client
        self.key = key
        self.lock_timeout_sec = lock_timeout_sec

    def load(self):
        raw = self.client.get(self.key)
        if not raw:
            return {}
        try:
            return json.loads(raw)
        except ValueError as exc:
            logger.warning("brute_force_log_unreadable key=%s err=%s", self.key, exc)
            return {}

    def save(self, data):
        self.client.set(self.key, json.dumps(data))

    @contextmanager
    def transaction(self):
        lock = self.client.lock(
            f"{self.key}:lock",
            timeout=self.lock_timeout_sec,
            blocking_timeout=self.lock_timeout_sec,
        )
        with lock:
            yield


def build_store(backend, notes_dir, redis_url=None, redis_key=None, socket_timeout=1.0):
    if backend == 'redis':
        if redis is None:
            raise RuntimeError("The redis brute-force backend requires the redis Python package")
        client = redis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
        )
        return RedisBruteForceStore(client, redis_key)
    return FileBruteForceStore(os.path.join(notes_dir, BRUTE_FORCE_FILE_NAME))


def is_timestamp(value):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def normalize_brute_force_data(payload):
    if not isinstance(payload, dict):
        return {}
    data = {}
    for ip, info in payload.items():
        if not isinstance(info, dict):
            continue
        attempts = info.get('attempts', [])
        if not isinstance(attempts, list):
            attempts = []
        entry = {"attempts": [int(ts) for ts in attempts if is_timestamp(ts)]}
        lockout_until = info.get('lockout_until')
        if is_timestamp(lockout_until):
            entry['lockout_until'] = int(lockout_until)
        data[str(ip)] = entry
    return data


def cleanup_brute_force_data(data, window_sec, now_ts):
    for ip in list(data.keys()):
        entry = data[ip]
        entry['attempts'] = [ts for ts in entry.get('attempts', []) if (now_ts - ts) < window_sec]
        if 'lockout_until' in entry and entry['lockout_until'] < now_ts:
            del entry['lockout_until']
        if not entry['attempts'] and 'lockout_until' not in entry:
            del data[ip]
    return data


def compute_delay(attempts, policy):
    if attempts < policy.max_attempts:
        return 0
    extra_attempts = attempts - policy.max_attempts
    return min(policy.delay_sec * (2 ** extra_attempts), policy.max_delay_sec)


def lockout_minutes(remaining_sec):
    return int(math.ceil(remaining_sec / 60.0))


def check_brute_force(store, ip, policy, now_ts=None):
    """Evaluate the throttle for ``ip``.

    Every call garbage-collects the whole log. The result carries ``allowed``
    and ``delay``; a locked-out IP also gets ``lockout`` and ``remaining``.
    """
    if not policy.enabled:
        return {"allowed": True, "delay": 0}
    if now_ts is None:
        now_ts = int(time.time())

    with store.transaction():
        data = normalize_brute_force_data(store.load())
        cleanup_brute_force_data(data, policy.window_sec, now_ts)
        store.save(data)

    entry = data.get(ip, {})
    lockout_until = entry.get('lockout_until')
    if lockout_until is not None and lockout_until > now_ts:
        return {
            "allowed": False,
            "lockout": True,
            "remaining": lockout_until - now_ts,
        }

    attempts = len(entry.get('attempts', []))
    delay = compute_delay(attempts, policy)
    if delay:
        return {"allowed": True, "delay": delay, "attempts": attempts}
    return {"allowed": True, "delay": 0}


def record_failed_attempt(store, ip, policy, now_ts=None):
    if not policy.enabled:
        return None
    if now_ts is None:
        now_ts = int(time.time())

    with store.transaction():
        data = normalize_brute_force_data(store.load())
        cleanup_brute_force_data(data, policy.window_sec, now_ts)

        entry = data.setdefault(ip, {"attempts": []})
        entry['attempts'].append(now_ts)

        if policy.lockout_attempts > 0 and len(entry['attempts']) >= policy.lockout_attempts:
            entry['lockout_until'] = now_ts + policy.lockout_duration_sec

        store.save(data)
    return entry


def clear_failed_attempts(store, ip, policy):
    if not policy.enabled:
        return False

    with store.transaction():
        data = normalize_brute_force_data(store.load())
        if ip not in data:
            return False
        del data[ip]
        store.save(data)
    return True
