import os
import tempfile
import unittest

from messenger.credentials import (
    CredentialService,
    IssuedToken,
    SQLiteTokenStore,
    TokenStore,
    check_password,
    hash_password,
    validate_name,
    validate_phone,
)
from messenger.errors import InvalidCredential, InvalidRequest, PhoneTaken
from messenger.sqlite_backend import SQLiteBackend
from messenger.sqlite_store import SQLiteStore
from messenger.store import InMemoryStore


class TestValidators(unittest.TestCase):
    def test_phone(self):
        self.assertEqual(validate_phone("0912345678"), "0912345678")
        self.assertEqual(validate_phone("09123456789"), "09123456789")
        for bad in ("091234567", "091234567890", "09123abc78", 912345678, None):
            with self.assertRaises(InvalidRequest):
                validate_phone(bad)

    def test_name_is_trimmed(self):
        self.assertEqual(validate_name("  Al "), "Al")
        with self.assertRaises(InvalidRequest):
            validate_name(" A ")


class TestPasswordHash(unittest.TestCase):
    def test_hash_round_trip(self):
        encoded = hash_password("secret1", iterations=1000)
        self.assertTrue(encoded.startswith("pbkdf2_sha256$1000$"))
        self.assertTrue(check_password("secret1", encoded))
        self.assertFalse(check_password("secret2", encoded))

    def test_salts_differ(self):
        self.assertNotEqual(hash_password("secret1", iterations=1000), hash_password("secret1", iterations=1000))

    def test_malformed_hash_never_matches(self):
        self.assertFalse(check_password("secret1", "plain"))
        self.assertFalse(check_password("secret1", "md5$1$aa$bb"))


class TestCredentialService(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryStore()
        self.tokens = TokenStore()
        self.service = CredentialService(self.store, self.tokens, token_ttl_ms=60_000)

    def test_register_login_verify(self):
        user = self.service.register(" Alice ", "0900000001", "secret1")
        self.assertEqual(user.name, "Alice")

        token, logged_in = self.service.login("0900000001", "secret1")

        self.assertTrue(token.startswith("st_"))
        self.assertEqual(logged_in, user)
        self.assertEqual(self.service.verify(token), user)

    def test_register_duplicate_phone(self):
        self.service.register("Alice", "0900000001", "secret1")
        with self.assertRaises(PhoneTaken):
            self.service.register("Alicia", "0900000001", "secret2")

    def test_register_validation(self):
        with self.assertRaises(InvalidRequest):
            self.service.register("Alice", "0900000001", "short")
        self.assertIsNone(self.store.find_user_by_phone("0900000001"))

    def test_login_failures(self):
        self.service.register("Alice", "0900000001", "secret1")
        with self.assertRaises(InvalidCredential):
            self.service.login("0900000001", "wrong-password")
        with self.assertRaises(InvalidCredential):
            self.service.login("0999999999", "secret1")
        with self.assertRaises(InvalidRequest):
            self.service.login("0900000001", "")

    def test_verify_rejects_unknown_revoked_and_expired(self):
        user = self.store.create_user("Alice", "0900000001", "h")
        for bad in ("", None, 42, "st_unknown"):
            with self.assertRaises(InvalidCredential):
                self.service.verify(bad)

        token = self.service.issue(user)
        self.service.revoke(token)
        with self.assertRaises(InvalidCredential):
            self.service.verify(token)

        self.tokens.save(IssuedToken(token="st_old", user_id=user.id, expires_at_ms=1))
        with self.assertRaises(InvalidCredential):
            self.service.verify("st_old")
        self.assertIsNone(self.tokens.get("st_old"))

    def test_verify_token_for_missing_user(self):
        self.tokens.save(IssuedToken(token="st_orphan", user_id=99, expires_at_ms=2**62))
        with self.assertRaises(InvalidCredential):
            self.service.verify("st_orphan")


class TestSQLiteTokenStore(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.backend = SQLiteBackend(os.path.join(self.tmpdir.name, "tokens.db"))
        self.tokens = SQLiteTokenStore(self.backend)
        self.user_id = SQLiteStore(self.backend).create_user("Alice", "0900000001", "h").id

    def tearDown(self):
        self.backend.close()
        self.tmpdir.cleanup()

    def test_save_get_revoke(self):
        self.tokens.save(IssuedToken(token="st_a", user_id=self.user_id, expires_at_ms=2**62))
        self.assertEqual(self.tokens.get("st_a").user_id, self.user_id)
        self.tokens.revoke("st_a")
        self.assertIsNone(self.tokens.get("st_a"))

    def test_expired_token_is_dropped(self):
        self.tokens.save(IssuedToken(token="st_b", user_id=self.user_id, expires_at_ms=1))
        self.assertIsNone(self.tokens.get("st_b"))
        with self.backend.lock:
            row = self.backend.connection.execute("SELECT 1 FROM sessions WHERE token='st_b'").fetchone()
        self.assertIsNone(row)


if __name__ == "__main__":
    unittest.main()
