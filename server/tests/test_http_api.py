import os
import tempfile
import unittest

from aiohttp.test_utils import TestClient, TestServer

from messenger.ws_transport import create_app


class HttpApiTestCase(unittest.IsolatedAsyncioTestCase):
    db_path = None

    async def asyncSetUp(self) -> None:
        self.app = create_app(db_path=self.db_path, ping_interval_s=3600)
        self.client = TestClient(TestServer(self.app))
        await self.client.start_server()

    async def asyncTearDown(self) -> None:
        await self.client.close()

    async def _register(self, name: str, phone: str, password: str = "secret1") -> dict:
        resp = await self.client.post("/api/auth/register", json={"name": name, "phone": phone, "password": password})
        self.assertEqual(resp.status, 201)
        return (await resp.json())["user"]

    async def _login(self, phone: str, password: str = "secret1") -> str:
        resp = await self.client.post("/api/auth/login", json={"phone": phone, "password": password})
        self.assertEqual(resp.status, 200)
        return (await resp.json())["token"]

    @staticmethod
    def _auth(token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}

    async def _expect_error(self, resp, *, status: int, code: str) -> None:
        self.assertEqual(resp.status, status)
        self.assertEqual((await resp.json())["code"], code)


class TestAccounts(HttpApiTestCase):
    async def test_health(self):
        resp = await self.client.get("/api/health")
        self.assertEqual(resp.status, 200)
        self.assertEqual(await resp.json(), {"status": "ok", "online": 0})

    async def test_register_login_me(self):
        user = await self._register("Alice", "0900000001")
        self.assertEqual(set(user), {"id", "name", "phone"})

        token = await self._login("0900000001")
        resp = await self.client.get("/api/auth/me", headers=self._auth(token))

        self.assertEqual(resp.status, 200)
        self.assertEqual((await resp.json())["user"], user)

    async def test_register_rejections(self):
        await self._register("Alice", "0900000001")

        resp = await self.client.post(
            "/api/auth/register", json={"name": "Again", "phone": "0900000001", "password": "secret1"}
        )
        await self._expect_error(resp, status=409, code="phone_taken")

        resp = await self.client.post("/api/auth/register", json={"name": "Bob", "phone": "12", "password": "secret1"})
        await self._expect_error(resp, status=400, code="invalid_request")

        resp = await self.client.post("/api/auth/register", data="not json")
        await self._expect_error(resp, status=400, code="invalid_request")

    async def test_login_and_token_failures(self):
        await self._register("Alice", "0900000001")

        resp = await self.client.post("/api/auth/login", json={"phone": "0900000001", "password": "wrong-one"})
        await self._expect_error(resp, status=401, code="invalid_credential")

        resp = await self.client.get("/api/auth/me")
        await self._expect_error(resp, status=401, code="invalid_credential")

        resp = await self.client.get("/api/auth/me", headers=self._auth("st_forged"))
        await self._expect_error(resp, status=401, code="invalid_credential")


class TestFriendsAndHistory(HttpApiTestCase):
    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.alice = await self._register("Alice", "0900000001")
        self.bob = await self._register("Bob", "0900000002")
        self.alice_token = await self._login("0900000001")
        self.bob_token = await self._login("0900000002")

    async def test_add_friend_is_mutual(self):
        resp = await self.client.post(
            "/api/friends/add", json={"phone": "0900000002"}, headers=self._auth(self.alice_token)
        )
        self.assertEqual(resp.status, 200)
        self.assertEqual((await resp.json())["friend"]["id"], self.bob["id"])

        resp = await self.client.get("/api/friends", headers=self._auth(self.bob_token))
        friends = (await resp.json())["friends"]
        self.assertEqual([f["id"] for f in friends], [self.alice["id"]])
        self.assertIn("friendSince", friends[0])

        resp = await self.client.post(
            "/api/friends/add", json={"phone": "0900000001"}, headers=self._auth(self.bob_token)
        )
        await self._expect_error(resp, status=409, code="already_friends")

    async def test_add_friend_rejections(self):
        headers = self._auth(self.alice_token)

        resp = await self.client.post("/api/friends/add", json={"phone": "0900000001"}, headers=headers)
        await self._expect_error(resp, status=400, code="invalid_request")

        resp = await self.client.post("/api/friends/add", json={"phone": "0999999999"}, headers=headers)
        await self._expect_error(resp, status=404, code="not_found")

        resp = await self.client.post("/api/friends/add", json={"phone": "0900000002"})
        await self._expect_error(resp, status=401, code="invalid_credential")

    async def test_history_window(self):
        ws = await self.client.ws_connect("/ws")
        await ws.send_json({"v": 1, "t": "authenticate", "body": {"credential": self.alice_token}})
        for i in range(3):
            await ws.send_json(
                {
                    "v": 1,
                    "t": "send_message",
                    "body": {"senderId": self.alice["id"], "receiverId": self.bob["id"], "content": f"m{i}"},
                }
            )
        await ws.close()

        resp = await self.client.get(f"/api/messages/{self.alice['id']}?limit=2", headers=self._auth(self.bob_token))
        self.assertEqual(resp.status, 200)
        messages = (await resp.json())["messages"]
        self.assertEqual([m["content"] for m in messages], ["m1", "m2"])
        self.assertEqual(messages[0]["senderName"], "Alice")

        resp = await self.client.get(f"/api/messages/{self.alice['id']}?limit=0", headers=self._auth(self.bob_token))
        await self._expect_error(resp, status=400, code="invalid_request")

        resp = await self.client.get("/api/messages/abc", headers=self._auth(self.bob_token))
        await self._expect_error(resp, status=400, code="invalid_request")


class TestSQLiteBackedApi(HttpApiTestCase):
    async def asyncSetUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.db_path = os.path.join(self.tmpdir.name, "messenger.db")
        await super().asyncSetUp()

    async def test_account_survives_restart(self):
        user = await self._register("Alice", "0900000001")
        await self.client.close()

        self.app = create_app(db_path=self.db_path, ping_interval_s=3600)
        self.client = TestClient(TestServer(self.app))
        await self.client.start_server()

        token = await self._login("0900000001")
        resp = await self.client.get("/api/auth/me", headers=self._auth(token))
        self.assertEqual((await resp.json())["user"], user)


if __name__ == "__main__":
    unittest.main()
