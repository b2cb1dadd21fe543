import contextlib
import importlib.util
import io
import os
import sys
import tempfile
import unittest
from unittest import mock

REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, REPO_ROOT)

from quicknotes import credentials, storage  # noqa: E402


def load_admin_module():
    path = os.path.join(REPO_ROOT, "scripts", "notes_admin.py")
    spec = importlib.util.spec_from_file_location("notes_admin", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class NotesAdminCliTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.admin = load_admin_module()

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory(prefix="quick-notes-admin-")
        self.notes_dir = self._tmp.name

    def tearDown(self):
        self._tmp.cleanup()

    def run_cli(self, *argv):
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            code = self.admin.main(["--notes-dir", self.notes_dir, "--iterations", "100000"] + list(argv))
        return code, out.getvalue()

    def make_user(self, login, password=None, notes=0):
        document = storage.default_user_document(login)
        if password:
            document["user"]["password_hash"] = credentials.hash_password_pbkdf2(password, 100000)
        for i in range(notes):
            storage.add_note(document, f"t{i}", "c")
        storage.save_user_document(self.notes_dir, login, document)

    def test_list_empty(self):
        code, out = self.run_cli("list")
        self.assertEqual(code, 0)
        self.assertIn("No users found.", out)

    def test_list_users(self):
        self.make_user("alice", password="secret1", notes=2)
        self.make_user("bob")
        code, out = self.run_cli("list")
        self.assertEqual(code, 0)
        lines = out.splitlines()
        self.assertTrue(lines[0].startswith("Username"))
        alice = next(line for line in lines if line.startswith("alice"))
        bob = next(line for line in lines if line.startswith("bob"))
        self.assertTrue(alice.split()[1] == "2" and alice.endswith("Yes"))
        self.assertTrue(bob.split()[1] == "0" and bob.endswith("No"))

    def test_reset_clears_password_and_prints_code(self):
        self.make_user("alice", password="secret1")
        code, out = self.run_cli("reset", "Alice")
        self.assertEqual(code, 0)
        recovery_code = out.split("New recovery code: ")[1].split()[0]

        document = storage.load_user_document(self.notes_dir, "alice")
        self.assertIsNone(document["user"]["password_hash"])
        self.assertTrue(
            credentials.verify_password_pbkdf2(recovery_code, document["user"]["recovery_code"])
        )

    def test_reset_unknown_user(self):
        with self.assertRaises(ValueError):
            self.run_cli("reset", "ghost")

    def test_delete_with_confirmation(self):
        self.make_user("alice", notes=3)
        with mock.patch("builtins.input", return_value="no"):
            code, out = self.run_cli("delete", "alice")
        self.assertEqual(code, 1)
        self.assertIn("Cancelled.", out)
        self.assertIsNotNone(storage.load_user_document(self.notes_dir, "alice"))

        with mock.patch("builtins.input", return_value="yes"):
            code, out = self.run_cli("delete", "alice")
        self.assertEqual(code, 0)
        self.assertIn("all their notes have been deleted", out)
        self.assertIsNone(storage.load_user_document(self.notes_dir, "alice"))

    def test_delete_with_yes_flag(self):
        self.make_user("bob")
        code, _ = self.run_cli("delete", "bob", "--yes")
        self.assertEqual(code, 0)
        self.assertEqual(storage.list_user_files(self.notes_dir), [])


if __name__ == "__main__":
    unittest.main(verbosity=2)
