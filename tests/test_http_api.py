import unittest

from aiohttp.test_utils import TestClient, TestServer

from chat_fixtures import FakeClock

from chatline.config import ServerConfig
from chatline.lifecycle import DELETED_PLACEHOLDER
from chatline.runtime import RUNTIME_KEY
from chatline.ws_transport import create_app


class HttpApiTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.app = create_app(ServerConfig(ping_interval_s=3600), now_func=self.clock.now)
        self.runtime = self.app[RUNTIME_KEY]
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()

        self.alice = await self._register("alice", avatarUrl="https://example.test/a.png")
        self.bob = await self._register("bob")

    async def asyncTearDown(self):
        await self.client.close()
        await self.server.close()

    async def _register(self, username: str, **extra) -> str:
        resp = await self.client.post("/v1/users", json={"username": username, **extra})
        self.assertEqual(resp.status, 201)
        return (await resp.json())["user"]["id"]

    def _auth(self, user_id: str) -> dict:
        return {"Authorization": f"Bearer {user_id}"}

    async def _call(self, method: str, path: str, user_id: str | None = None, **kwargs):
        headers = self._auth(user_id) if user_id else {}
        resp = await self.client.request(method, path, headers=headers, **kwargs)
        return resp.status, await resp.json()

    async def _befriend(self) -> None:
        _, body = await self._call("POST", "/v1/friends/request", self.alice, json={"username": "bob"})
        await self._call("POST", f"/v1/friends/requests/{body['request']['id']}/accept", self.bob)

    def _send(self, content: str = "hi"):
        return self.runtime.lifecycle.send(self.alice, self.bob, content)

    async def test_registration_conflicts_and_validation(self):
        status, body = await self._call("POST", "/v1/users", json={"username": "ALICE"})
        self.assertEqual((status, body["code"]), (409, "duplicate_key"))

        status, body = await self._call("POST", "/v1/users", json={"username": ""})
        self.assertEqual((status, body["code"]), (400, "invalid_request"))

        resp = await self.client.post("/v1/users", data="{broken", headers={"Content-Type": "application/json"})
        self.assertEqual(resp.status, 400)

    async def test_requests_without_identity_are_rejected(self):
        status, body = await self._call("GET", "/v1/friends")
        self.assertEqual((status, body["code"]), (401, "auth_required"))
        status, _ = await self._call("GET", "/v1/friends", "u_nobody")
        self.assertEqual(status, 401)

    async def test_user_views_are_privacy_projected_for_others(self):
        await self._call("POST", "/v1/settings/privacy", self.alice, json={"profilePhoto": False, "lastSeen": False})

        status, body = await self._call("GET", f"/v1/users/{self.alice}", self.bob)
        self.assertEqual(status, 200)
        self.assertIsNone(body["user"]["avatarUrl"])
        self.assertIsNone(body["user"]["lastSeen"])
        self.assertNotIn("email", body["user"])

        _, own = await self._call("GET", f"/v1/users/{self.alice}", self.alice)
        self.assertEqual(own["user"]["avatarUrl"], "https://example.test/a.png")
        self.assertFalse(own["user"]["settings"]["privacy"]["profilePhoto"])

    async def test_search_excludes_self(self):
        await self._register("alina")
        status, body = await self._call("GET", "/v1/users/search?q=al", self.alice)
        self.assertEqual(status, 200)
        self.assertEqual([user["username"] for user in body["users"]], ["alina"])

    async def test_profile_update(self):
        status, body = await self._call("PUT", "/v1/users/profile", self.bob, json={"bio": "hello", "username": "bobby"})
        self.assertEqual(status, 200)
        self.assertEqual((body["user"]["bio"], body["user"]["username"]), ("hello", "bobby"))

        status, body = await self._call("PUT", "/v1/users/profile", self.bob, json={"username": "alice"})
        self.assertEqual(status, 409)

    async def test_friend_request_flow(self):
        status, body = await self._call("POST", "/v1/friends/request", self.alice, json={"username": "bob"})
        self.assertEqual(status, 201)
        request_id = body["request"]["id"]

        status, _ = await self._call("POST", "/v1/friends/request", self.alice, json={"username": "bob"})
        self.assertEqual(status, 409)

        _, pending = await self._call("GET", "/v1/friends/requests", self.bob)
        self.assertEqual([r["id"] for r in pending["requests"]], [request_id])
        self.assertEqual(pending["requests"][0]["requester"]["username"], "alice")

        status, _ = await self._call("POST", f"/v1/friends/requests/{request_id}/accept", self.alice)
        self.assertEqual(status, 403)
        status, body = await self._call("POST", f"/v1/friends/requests/{request_id}/accept", self.bob)
        self.assertEqual((status, body["friendship"]["status"]), (200, "accepted"))

        _, friends = await self._call("GET", "/v1/friends", self.alice)
        self.assertEqual([f["username"] for f in friends["friends"]], ["bob"])

        status, _ = await self._call("DELETE", f"/v1/friends/{self.alice}", self.bob)
        self.assertEqual(status, 200)
        _, friends = await self._call("GET", "/v1/friends", self.alice)
        self.assertEqual(friends["friends"], [])

    async def test_decline_removes_request(self):
        _, body = await self._call("POST", "/v1/friends/request", self.alice, json={"username": "bob"})
        status, _ = await self._call("POST", f"/v1/friends/requests/{body['request']['id']}/decline", self.bob)
        self.assertEqual(status, 200)
        _, pending = await self._call("GET", "/v1/friends/requests", self.bob)
        self.assertEqual(pending["requests"], [])

    async def test_history_requires_friendship(self):
        status, body = await self._call("GET", f"/v1/messages/conversation/{self.bob}", self.alice)
        self.assertEqual((status, body["code"]), (403, "forbidden"))
        status, body = await self._call("GET", "/v1/messages/conversation/u_nobody", self.alice)
        self.assertEqual((status, body["code"]), (404, "not_found"))

        await self._befriend()
        status, _ = await self._call("GET", f"/v1/messages/conversation/{self.bob}?since=abc", self.alice)
        self.assertEqual(status, 400)

    async def test_conversations_and_history(self):
        await self._befriend()
        self.clock.advance(1)
        first = self._send("one")
        self.clock.advance(1)
        self._send("two")

        _, conversations = await self._call("GET", "/v1/messages/conversations", self.bob)
        [row] = conversations["conversations"]
        self.assertEqual(row["friend"]["username"], "alice")
        self.assertEqual(row["lastMessage"]["content"], "two")

        _, history = await self._call("GET", f"/v1/messages/conversation/{self.alice}", self.bob)
        self.assertEqual([m["content"] for m in history["messages"]], ["one", "two"])
        _, newer = await self._call(
            "GET", f"/v1/messages/conversation/{self.alice}?since={first.created_at_ms}", self.bob
        )
        self.assertEqual([m["content"] for m in newer["messages"]], ["two"])

    async def test_reactions(self):
        await self._befriend()
        message = self._send()

        status, body = await self._call("POST", f"/v1/messages/{message.message_id}/react", self.bob, json={"emoji": "🎉"})
        self.assertEqual((status, body["message"]["reactions"]), (200, {self.bob: "🎉"}))
        status, body = await self._call("DELETE", f"/v1/messages/{message.message_id}/react", self.bob)
        self.assertEqual((status, body["message"]["reactions"]), (200, {}))
        status, _ = await self._call("POST", "/v1/messages/m_missing/react", self.bob, json={"emoji": "🎉"})
        self.assertEqual(status, 404)

    async def test_delete_for_me_hides_only_for_caller(self):
        await self._befriend()
        message = self._send()

        status, _ = await self._call("POST", f"/v1/messages/{message.message_id}/delete-for-me", self.bob)
        self.assertEqual(status, 200)

        _, bob_view = await self._call("GET", f"/v1/messages/conversation/{self.alice}", self.bob)
        _, alice_view = await self._call("GET", f"/v1/messages/conversation/{self.bob}", self.alice)
        self.assertEqual(bob_view["messages"], [])
        self.assertEqual(len(alice_view["messages"]), 1)

    async def test_delete_for_everyone_window(self):
        await self._befriend()
        early = self._send("early")
        self.clock.advance(60)
        status, body = await self._call("POST", f"/v1/messages/{early.message_id}/delete-for-everyone", self.alice)
        self.assertEqual((status, body["message"]["content"]), (200, DELETED_PLACEHOLDER))

        late = self._send("late")
        self.clock.advance(120)
        status, body = await self._call("POST", f"/v1/messages/{late.message_id}/delete-for-everyone", self.alice)
        self.assertEqual((status, body["code"]), (403, "expired"))

        status, _ = await self._call("POST", f"/v1/messages/{late.message_id}/delete-for-everyone", self.bob)
        self.assertEqual(status, 403)

    async def test_settings(self):
        status, body = await self._call("GET", "/v1/settings", self.alice)
        self.assertEqual(status, 200)
        self.assertTrue(all(body["privacy"].values()))
        self.assertTrue(all(body["notifications"].values()))

        _, privacy = await self._call("POST", "/v1/settings/privacy", self.alice, json={"readReceipts": False})
        self.assertFalse(privacy["privacy"]["readReceipts"])
        self.assertTrue(privacy["privacy"]["typingIndicator"])

        _, notifications = await self._call(
            "POST", "/v1/settings/notifications", self.alice, json={"friendRequests": False}
        )
        self.assertEqual(notifications["notifications"], {"messageNotifications": True, "friendRequests": False})

        status, body = await self._call("POST", "/v1/settings/privacy", self.alice, json={"readReceipts": "true"})
        self.assertEqual((status, body["code"]), (400, "invalid_request"))
        _, current = await self._call("GET", "/v1/settings", self.alice)
        self.assertFalse(current["privacy"]["readReceipts"])

    async def test_block_routes(self):
        status, body = await self._call("POST", f"/v1/block/{self.bob}", self.alice)
        self.assertEqual((status, body["blockedUserId"]), (200, self.bob))
        status, _ = await self._call("POST", f"/v1/block/{self.bob}", self.alice)
        self.assertEqual(status, 409)
        status, _ = await self._call("POST", f"/v1/block/{self.alice}", self.alice)
        self.assertEqual(status, 400)

        _, listing = await self._call("GET", "/v1/block", self.alice)
        self.assertEqual([u["id"] for u in listing["blockedUsers"]], [self.bob])
        _, check = await self._call("GET", f"/v1/block/{self.alice}", self.bob)
        self.assertEqual(check, {"isBlocked": False, "isBlockedBy": True})

        status, _ = await self._call("POST", f"/v1/unblock/{self.bob}", self.alice)
        self.assertEqual(status, 200)
        _, listing = await self._call("GET", "/v1/block", self.alice)
        self.assertEqual(listing["blockedUsers"], [])


if __name__ == "__main__":
    unittest.main()
