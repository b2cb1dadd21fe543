import os


APP_ENV = os.getenv('APP_ENV', 'dev').strip().lower()
IS_PROD = APP_ENV in {'prod', 'production'}


def get_env(name, default=None, required_in_prod=False):
    value = os.getenv(name)
    if value is None or str(value).strip() == "":
        if IS_PROD and required_in_prod:
            raise RuntimeError(
                f"APP_ENV={APP_ENV} requires environment variable: {name}"
            )
        return default
    return value


def get_env_bool(name, default=False):
    raw = str(get_env(name, '1' if default else '0')).strip().lower()
    return raw in {'1', 'true', 'yes', 'on'}


def get_env_int(name, default):
    raw = str(get_env(name, str(default))).strip()
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got: {raw}")


def get_env_float(name, default):
    raw = str(get_env(name, str(default))).strip()
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number, got: {raw}")


def parse_csv_list_env(name, default=''):
    raw = str(get_env(name, default)).strip()
    if not raw:
        return []
    return [item.strip() for item in raw.split(',') if item.strip()]


def parse_csv_env(name, default=''):
    return set(parse_csv_list_env(name, default))


def parse_api_keys_env(name, default=''):
    # key=domain|*.domain,key2  ->  {"key": ["domain", "*.domain"], "key2": []}
    keys = {}
    for item in parse_csv_list_env(name, default):
        key, _, domains_raw = item.partition('=')
        key = key.strip()
        if not key:
            continue
        keys[key] = [d.strip().lower() for d in domains_raw.split('|') if d.strip()]
    return keys


APP_NOTES_DIR = os.path.expanduser(
    str(get_env('APP_NOTES_DIR', '~/quick-notes/notes')).strip()
)

APP_PASSWORD_MODE = str(get_env('APP_PASSWORD_MODE', 'individual')).strip().lower()
APP_GLOBAL_PASSWORD_PATTERN = str(get_env(
    'APP_GLOBAL_PASSWORD_PATTERN',
    default='#notes_{YYYY}{MM}',
    required_in_prod=APP_PASSWORD_MODE == 'global'
))
APP_REQUIRE_GLOBAL_CODE = get_env_bool('APP_REQUIRE_GLOBAL_CODE', default=False)
APP_GLOBAL_CODE_PATTERN = str(get_env('APP_GLOBAL_CODE_PATTERN', '')).strip()

APP_MIN_PASSWORD_LENGTH = get_env_int('APP_MIN_PASSWORD_LENGTH', 6)
APP_PASSWORD_REQUIRE_UPPERCASE = get_env_bool('APP_PASSWORD_REQUIRE_UPPERCASE')
APP_PASSWORD_REQUIRE_LOWERCASE = get_env_bool('APP_PASSWORD_REQUIRE_LOWERCASE')
APP_PASSWORD_REQUIRE_NUMBER = get_env_bool('APP_PASSWORD_REQUIRE_NUMBER')
APP_PASSWORD_HASH_ITERATIONS = get_env_int('APP_PASSWORD_HASH_ITERATIONS', 210000)

APP_ALLOWED_USERNAMES = {u.lower() for u in parse_csv_env('APP_ALLOWED_USERNAMES')}
APP_BLOCKED_USERNAMES = {u.lower() for u in parse_csv_env('APP_BLOCKED_USERNAMES')}

APP_IP_FIREWALL_MODE = str(get_env('APP_IP_FIREWALL_MODE', 'disabled')).strip().lower()
APP_IP_WHITELIST = parse_csv_list_env('APP_IP_WHITELIST')
APP_IP_BLACKLIST = parse_csv_list_env('APP_IP_BLACKLIST')

APP_BRUTE_FORCE_PROTECTION = get_env_bool('APP_BRUTE_FORCE_PROTECTION', default=True)
APP_BRUTE_FORCE_WINDOW_SEC = get_env_int('APP_BRUTE_FORCE_WINDOW_SEC', 900)
APP_BRUTE_FORCE_MAX_ATTEMPTS = get_env_int('APP_BRUTE_FORCE_MAX_ATTEMPTS', 5)
APP_BRUTE_FORCE_DELAY_SEC = get_env_int('APP_BRUTE_FORCE_DELAY_SEC', 2)
APP_BRUTE_FORCE_MAX_DELAY_SEC = get_env_int('APP_BRUTE_FORCE_MAX_DELAY_SEC', 30)
APP_BRUTE_FORCE_LOCKOUT_ATTEMPTS = get_env_int('APP_BRUTE_FORCE_LOCKOUT_ATTEMPTS', 20)
APP_BRUTE_FORCE_LOCKOUT_DURATION_SEC = get_env_int('APP_BRUTE_FORCE_LOCKOUT_DURATION_SEC', 3600)
APP_BRUTE_FORCE_BACKEND = str(get_env('APP_BRUTE_FORCE_BACKEND', 'file')).strip().lower()
APP_BRUTE_FORCE_KEY = str(get_env('APP_BRUTE_FORCE_KEY', 'quicknotes:brute_force')).strip()
APP_REDIS_URL = str(get_env('APP_REDIS_URL', 'redis://127.0.0.1:6379/0')).strip()
APP_REDIS_SOCKET_TIMEOUT_SEC = get_env_float('APP_REDIS_SOCKET_TIMEOUT_SEC', 1.0)

APP_REQUIRE_API_KEY = get_env_bool('APP_REQUIRE_API_KEY', default=False)
APP_API_KEYS = parse_api_keys_env('APP_API_KEYS')

APP_ENABLE_PWA = get_env_bool('APP_ENABLE_PWA', default=True)
APP_ENABLE_OFFLINE_MODE = get_env_bool('APP_ENABLE_OFFLINE_MODE', default=True)
APP_STORE_IP = get_env_bool('APP_STORE_IP', default=False)

if APP_PASSWORD_MODE not in {'individual', 'global'}:
    raise RuntimeError("APP_PASSWORD_MODE must be one of: individual / global")
if APP_PASSWORD_MODE == 'global' and not APP_GLOBAL_PASSWORD_PATTERN.strip():
    raise RuntimeError("APP_GLOBAL_PASSWORD_PATTERN must not be empty in global password mode")
if APP_REQUIRE_GLOBAL_CODE and not APP_GLOBAL_CODE_PATTERN:
    raise RuntimeError("APP_REQUIRE_GLOBAL_CODE=1 requires APP_GLOBAL_CODE_PATTERN")
if APP_MIN_PASSWORD_LENGTH < 1:
    raise RuntimeError("APP_MIN_PASSWORD_LENGTH must be greater than 0")
if APP_PASSWORD_HASH_ITERATIONS < 100000:
    raise RuntimeError("APP_PASSWORD_HASH_ITERATIONS must not be less than 100000")
if APP_IP_FIREWALL_MODE not in {'disabled', 'blacklist', 'whitelist'}:
    raise RuntimeError("APP_IP_FIREWALL_MODE must be one of: disabled / blacklist / whitelist")
if APP_BRUTE_FORCE_WINDOW_SEC <= 0:
    raise RuntimeError("APP_BRUTE_FORCE_WINDOW_SEC must be greater than 0")
if APP_BRUTE_FORCE_MAX_ATTEMPTS <= 0:
    raise RuntimeError("APP_BRUTE_FORCE_MAX_ATTEMPTS must be greater than 0")
if APP_BRUTE_FORCE_DELAY_SEC < 0 or APP_BRUTE_FORCE_MAX_DELAY_SEC < 0:
    raise RuntimeError("APP_BRUTE_FORCE_DELAY_SEC / APP_BRUTE_FORCE_MAX_DELAY_SEC must not be negative")
if APP_BRUTE_FORCE_LOCKOUT_ATTEMPTS < 0:
    raise RuntimeError("APP_BRUTE_FORCE_LOCKOUT_ATTEMPTS must not be negative")
if APP_BRUTE_FORCE_LOCKOUT_DURATION_SEC <= 0:
    raise RuntimeError("APP_BRUTE_FORCE_LOCKOUT_DURATION_SEC must be greater than 0")
if APP_BRUTE_FORCE_BACKEND not in {'file', 'redis'}:
    raise RuntimeError("APP_BRUTE_FORCE_BACKEND must be one of: file / redis")
if not APP_BRUTE_FORCE_KEY:
    raise RuntimeError("APP_BRUTE_FORCE_KEY must not be empty")
if APP_REQUIRE_API_KEY and not APP_API_KEYS:
    raise RuntimeError("APP_REQUIRE_API_KEY=1 requires APP_API_KEYS")
