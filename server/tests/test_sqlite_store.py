import os
import sqlite3
import tempfile
import threading
import unittest

from messenger.errors import AlreadyFriends, NotFound, PhoneTaken
from messenger.sqlite_backend import SCHEMA_VERSION, SQLiteBackend
from messenger.sqlite_store import SQLiteStore


class SQLiteStoreTest(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmpdir.name, "nested", "messenger.db")
        self.backend = SQLiteBackend(self.db_path)
        self.store = SQLiteStore(self.backend)
        self.alice = self.store.create_user("Alice", "0900000001", "hash-a")
        self.bob = self.store.create_user("Bob", "0900000002", "hash-b")

    def tearDown(self):
        self.backend.close()
        self.tmpdir.cleanup()

    def test_schema_version_recorded(self):
        with self.backend.lock:
            version = self.backend.connection.execute("PRAGMA user_version").fetchone()[0]
        self.assertEqual(version, SCHEMA_VERSION)

    def test_unsupported_schema_version_rejected(self):
        self.backend.close()
        conn = sqlite3.connect(self.db_path)
        conn.execute("PRAGMA user_version = 99")
        conn.close()

        with self.assertRaises(ValueError):
            SQLiteBackend(self.db_path)
        self.backend = SQLiteBackend(":memory:")

    def test_users_and_credentials(self):
        self.assertEqual(self.store.get_user(self.alice.id).name, "Alice")
        self.assertEqual(self.store.find_user_by_phone("0900000002").id, self.bob.id)
        self.assertIsNone(self.store.get_user(1234))
        user, password_hash = self.store.credential_ref("0900000001")
        self.assertEqual((user.id, password_hash), (self.alice.id, "hash-a"))
        self.assertIsNone(self.store.credential_ref("0999999999"))
        with self.assertRaises(PhoneTaken):
            self.store.create_user("Clone", "0900000001", "x")

    def test_friendship_unique_in_either_direction(self):
        friendship = self.store.add_friendship(self.bob.id, self.alice.id)
        self.assertEqual((friendship.user1_id, friendship.user2_id), (self.alice.id, self.bob.id))

        with self.assertRaises(AlreadyFriends):
            self.store.add_friendship(self.bob.id, self.alice.id)
        with self.assertRaises(AlreadyFriends):
            self.store.add_friendship(self.alice.id, self.bob.id)

        self.assertTrue(self.store.are_friends(self.alice.id, self.bob.id))
        self.assertTrue(self.store.are_friends(self.bob.id, self.alice.id))
        self.assertFalse(self.store.are_friends(self.alice.id, self.alice.id))

    def test_friendship_with_unknown_user(self):
        with self.assertRaises(NotFound):
            self.store.add_friendship(self.alice.id, 999)

    def test_reversed_pair_violates_check_constraint(self):
        with self.backend.lock:
            with self.assertRaises(sqlite3.IntegrityError):
                self.backend.connection.execute(
                    "INSERT INTO friends (user1_id, user2_id, status, created_at) VALUES (?, ?, 'accepted', 'now')",
                    (self.bob.id, self.alice.id),
                )

    def test_list_friends_carries_friend_since(self):
        carol = self.store.create_user("Carol", "0900000003", "h")
        self.store.add_friendship(carol.id, self.alice.id)
        self.store.add_friendship(self.alice.id, self.bob.id)

        friends = self.store.list_friends(self.alice.id)

        self.assertEqual([f.name for f in friends], ["Bob", "Carol"])
        self.assertTrue(all(f.friend_since for f in friends))
        self.assertEqual([f.id for f in self.store.list_friends(carol.id)], [self.alice.id])

    def test_history_window_is_latest_ascending(self):
        sent = [self.store.insert_message(self.alice.id, self.bob.id, f"m{i}") for i in range(6)]
        self.store.insert_message(self.bob.id, self.alice.id, "reply")

        window = self.store.history(self.bob.id, self.alice.id, 4)

        self.assertEqual([m.content for m in window], ["m3", "m4", "m5", "reply"])
        self.assertEqual(window[-1].sender_name, "Bob")
        self.assertEqual(sent[0].sender_name, "Alice")
        self.assertTrue(sent[0].timestamp.endswith("Z"))
        self.assertEqual(self.store.history(self.alice.id, self.bob.id, 0), [])

    def test_message_to_unknown_user(self):
        with self.assertRaises(NotFound):
            self.store.insert_message(self.alice.id, 999, "hello")
        with self.assertRaises(NotFound):
            self.store.insert_message(999, self.alice.id, "hello")
        self.assertEqual(self.store.history(self.alice.id, 999, 10), [])

    def test_concurrent_inserts_keep_timestamps_in_id_order(self):
        def send_batch(prefix):
            for i in range(25):
                self.store.insert_message(self.alice.id, self.bob.id, f"{prefix}{i}")

        threads = [threading.Thread(target=send_batch, args=(prefix,)) for prefix in "wxyz"]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        window = self.store.history(self.alice.id, self.bob.id, 100)

        self.assertEqual(len(window), 100)
        self.assertEqual([m.id for m in window], sorted(m.id for m in window))

    def test_data_survives_reopen(self):
        self.store.insert_message(self.alice.id, self.bob.id, "persisted")
        self.backend.close()

        self.backend = SQLiteBackend(self.db_path)
        store = SQLiteStore(self.backend)

        self.assertEqual([m.content for m in store.history(self.alice.id, self.bob.id, 10)], ["persisted"])
        self.assertEqual(store.find_user_by_phone("0900000001").name, "Alice")


if __name__ == "__main__":
    unittest.main()
