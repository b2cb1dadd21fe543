import importlib
import os
import shutil
import sys
import tempfile


REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

_TMP_ROOT = None


def load_app_module():
    """Import quicknotes.app once per process against a throwaway notes dir."""
    global _TMP_ROOT
    if _TMP_ROOT is None:
        _TMP_ROOT = tempfile.mkdtemp(prefix="quick-notes-test-")
        os.environ["APP_ENV"] = "dev"
        os.environ["APP_NOTES_DIR"] = os.path.join(_TMP_ROOT, "notes")
        os.environ["APP_PASSWORD_HASH_ITERATIONS"] = "100000"
        os.environ["APP_PASSWORD_MODE"] = "individual"
        os.environ["APP_REQUIRE_GLOBAL_CODE"] = "0"
        os.environ["APP_IP_FIREWALL_MODE"] = "disabled"
        os.environ["APP_BRUTE_FORCE_PROTECTION"] = "1"
        os.environ["APP_BRUTE_FORCE_BACKEND"] = "file"
        os.environ["APP_REQUIRE_API_KEY"] = "0"
        os.environ["APP_STORE_IP"] = "0"
    return importlib.import_module("quicknotes.app")


def reset_notes_dir(app_module):
    notes_dir = app_module.settings.APP_NOTES_DIR
    if os.path.exists(notes_dir):
        shutil.rmtree(notes_dir)
    app_module.storage.ensure_notes_dir(notes_dir)
    return notes_dir
