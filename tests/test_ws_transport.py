import asyncio
import os
import tempfile
import unittest

from aiohttp import WSMsgType
from aiohttp.test_utils import TestClient, TestServer

from ws_receive_util import assert_no_event, recv_event

from chatline import frames
from chatline.config import ServerConfig
from chatline.models import STATUS_DELIVERED, STATUS_READ, STATUS_SENT
from chatline.runtime import RUNTIME_KEY
from chatline.ws_transport import create_app


class ChatAppTestCase(unittest.IsolatedAsyncioTestCase):
    def make_config(self) -> ServerConfig:
        return ServerConfig(ping_interval_s=3600)

    async def asyncSetUp(self):
        self.app = create_app(self.make_config())
        self.runtime = self.app[RUNTIME_KEY]
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()

    async def asyncTearDown(self):
        await self.client.close()
        await self.server.close()

    async def _register(self, username: str) -> str:
        resp = await self.client.post("/v1/users", json={"username": username})
        self.assertEqual(resp.status, 201)
        return (await resp.json())["user"]["id"]

    def _auth(self, user_id: str) -> dict:
        return {"Authorization": f"Bearer {user_id}"}

    async def _befriend(self, requester_id: str, target_id: str, target_name: str) -> None:
        resp = await self.client.post(
            "/v1/friends/request", json={"username": target_name}, headers=self._auth(requester_id)
        )
        self.assertEqual(resp.status, 201)
        request_id = (await resp.json())["request"]["id"]
        resp = await self.client.post(f"/v1/friends/requests/{request_id}/accept", headers=self._auth(target_id))
        self.assertEqual(resp.status, 200)

    async def _connect(self, user_id: str):
        ws = await self.client.ws_connect("/v1/ws")
        await ws.send_json(frames.frame(frames.CONNECT, {"userId": user_id}, request_id="hello"))
        connected = await ws.receive_json(timeout=2)
        self.assertEqual(connected["t"], frames.CONNECTED)
        return ws, connected

    async def _send(self, ws, receiver_id: str, content: str, temp_id: str) -> None:
        await ws.send_json(
            frames.frame(
                frames.SEND_MESSAGE,
                {"receiverId": receiver_id, "content": content, "type": "text", "tempId": temp_id},
            )
        )


class WsTransportTests(ChatAppTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.alice = await self._register("alice")
        self.bob = await self._register("bob")
        await self._befriend(self.alice, self.bob, "bob")

    async def test_health(self):
        resp = await self.client.get("/healthz")
        self.assertEqual(resp.status, 200)
        self.assertEqual(await resp.text(), "ok")

    async def test_connect_returns_connected(self):
        ws, connected = await self._connect(self.alice)
        await ws.close()

        self.assertEqual(connected["id"], "hello")
        self.assertEqual(connected["body"], {"userId": self.alice, "onlineCount": 1})

    async def test_missing_identity_is_rejected_and_closed(self):
        ws = await self.client.ws_connect("/v1/ws")
        await ws.send_json(frames.frame(frames.CONNECT, {}))
        error = await ws.receive_json(timeout=2)
        closing = await ws.receive(timeout=2)

        self.assertEqual(error["t"], frames.ERROR)
        self.assertEqual(error["body"]["code"], "auth_required")
        self.assertIn(closing.type, {WSMsgType.CLOSE, WSMsgType.CLOSED})
        self.assertFalse(self.runtime.presence.is_online(self.alice))

    async def test_non_object_connect_body_is_rejected_with_error_frame(self):
        ws = await self.client.ws_connect("/v1/ws")
        await ws.send_json({"v": frames.PROTOCOL_VERSION, "t": frames.CONNECT, "id": "c1", "body": self.alice})
        error = await ws.receive_json(timeout=2)
        closing = await ws.receive(timeout=2)

        self.assertEqual(error["t"], frames.ERROR)
        self.assertEqual(error["id"], "c1")
        self.assertEqual(error["body"]["code"], "invalid_request")
        self.assertIn(closing.type, {WSMsgType.CLOSE, WSMsgType.CLOSED})
        self.assertFalse(self.runtime.presence.is_online(self.alice))

    async def test_unknown_user_is_rejected(self):
        ws = await self.client.ws_connect("/v1/ws")
        await ws.send_json(frames.frame(frames.CONNECT, {"userId": "u_nobody"}))
        error = await ws.receive_json(timeout=2)
        await ws.close()
        self.assertEqual(error["body"]["code"], "not_found")

    async def test_send_deliver_read_round_trip(self):
        alice_ws, _ = await self._connect(self.alice)
        bob_ws, _ = await self._connect(self.bob)

        await self._send(alice_ws, self.bob, "hi", "tmp-1")
        sent = await recv_event(alice_ws, frames.MESSAGE_SENT)
        delivered = await recv_event(alice_ws, frames.MESSAGE_DELIVERED)
        incoming = await recv_event(bob_ws, frames.NEW_MESSAGE)

        server_id = sent["body"]["serverId"]
        self.assertEqual(sent["body"]["tempId"], "tmp-1")
        self.assertEqual(sent["body"]["status"], STATUS_SENT)
        self.assertEqual((delivered["body"]["tempId"], delivered["body"]["serverId"]), ("tmp-1", server_id))
        self.assertEqual(incoming["body"]["message"]["id"], server_id)
        self.assertEqual(incoming["body"]["senderSummary"]["username"], "alice")

        await bob_ws.send_json(
            frames.frame(frames.MARK_AS_READ, {"messageIds": [server_id], "senderId": self.alice})
        )
        receipt = await recv_event(alice_ws, frames.MESSAGES_READ)
        self.assertEqual(receipt["body"]["messageIds"], [server_id])
        self.assertEqual(receipt["body"]["readBy"], self.bob)
        self.assertEqual(self.runtime.messages.find_by_id(server_id).status, STATUS_READ)

        await alice_ws.close()
        await bob_ws.close()

    async def test_offline_receiver_stays_sent(self):
        alice_ws, _ = await self._connect(self.alice)

        await self._send(alice_ws, self.bob, "are you there", "tmp-2")
        sent = await recv_event(alice_ws, frames.MESSAGE_SENT)
        await assert_no_event(alice_ws, frames.MESSAGE_DELIVERED)
        await alice_ws.close()

        self.assertEqual(self.runtime.messages.find_by_id(sent["body"]["serverId"]).status, STATUS_SENT)

    async def test_rejected_send_returns_error_and_keeps_connection(self):
        carol = await self._register("carol")
        alice_ws, _ = await self._connect(self.alice)

        await self._send(alice_ws, carol, "hello stranger", "tmp-3")
        error = await recv_event(alice_ws, frames.ERROR)
        self.assertEqual(error["body"]["code"], "forbidden")
        self.assertEqual(error["body"]["tempId"], "tmp-3")

        await alice_ws.send_json(frames.frame(frames.PING, request_id="p1"))
        pong = await recv_event(alice_ws, frames.PONG)
        self.assertEqual(pong["id"], "p1")
        await alice_ws.close()

    async def test_presence_changes_reach_online_friends(self):
        bob_ws, _ = await self._connect(self.bob)
        alice_ws, _ = await self._connect(self.alice)

        online = await recv_event(bob_ws, frames.FRIEND_STATUS_CHANGED)
        self.assertEqual(online["body"]["userId"], self.alice)
        self.assertTrue(online["body"]["isOnline"])

        await alice_ws.close()
        offline = await recv_event(bob_ws, frames.FRIEND_STATUS_CHANGED)
        self.assertFalse(offline["body"]["isOnline"])
        self.assertIsNotNone(offline["body"]["lastSeen"])
        await bob_ws.close()

    async def test_hidden_online_status_is_never_broadcast(self):
        resp = await self.client.post(
            "/v1/settings/privacy", json={"onlineStatus": False}, headers=self._auth(self.alice)
        )
        self.assertEqual(resp.status, 200)
        bob_ws, _ = await self._connect(self.bob)
        alice_ws, _ = await self._connect(self.alice)

        status = await recv_event(bob_ws, frames.FRIEND_STATUS_CHANGED)
        self.assertFalse(status["body"]["isOnline"])
        await alice_ws.close()
        await bob_ws.close()

    async def test_typing_is_relayed(self):
        alice_ws, _ = await self._connect(self.alice)
        bob_ws, _ = await self._connect(self.bob)

        await alice_ws.send_json(frames.frame(frames.TYPING_START, {"receiverId": self.bob}))
        typing = await recv_event(bob_ws, frames.USER_TYPING)
        self.assertEqual(typing["body"]["userId"], self.alice)
        self.assertTrue(typing["body"]["isTyping"])
        await alice_ws.close()
        await bob_ws.close()

    async def test_malformed_and_unknown_frames_yield_errors(self):
        alice_ws, _ = await self._connect(self.alice)

        await alice_ws.send_str("{not json")
        malformed = await recv_event(alice_ws, frames.ERROR)
        await alice_ws.send_json(frames.frame("conv.subscribe", {}, request_id="x1"))
        unknown = await recv_event(alice_ws, frames.ERROR)

        self.assertEqual(malformed["body"]["code"], "invalid_request")
        self.assertEqual((unknown["id"], unknown["body"]["code"]), ("x1", "invalid_request"))
        await alice_ws.close()

    async def test_reconnect_replaces_connection(self):
        first_ws, _ = await self._connect(self.bob)
        second_ws, _ = await self._connect(self.bob)
        await first_ws.close()
        await asyncio.sleep(0.05)

        self.assertTrue(self.runtime.presence.is_online(self.bob))
        alice_ws, _ = await self._connect(self.alice)
        await self._send(alice_ws, self.bob, "to the new socket", "tmp-4")
        incoming = await recv_event(second_ws, frames.NEW_MESSAGE)
        self.assertEqual(incoming["body"]["message"]["content"], "to the new socket")
        await alice_ws.close()
        await second_ws.close()

    async def test_global_delete_is_pushed_to_both(self):
        alice_ws, _ = await self._connect(self.alice)
        bob_ws, _ = await self._connect(self.bob)
        await self._send(alice_ws, self.bob, "oops", "tmp-5")
        sent = await recv_event(alice_ws, frames.MESSAGE_SENT)
        server_id = sent["body"]["serverId"]

        resp = await self.client.post(
            f"/v1/messages/{server_id}/delete-for-everyone", headers=self._auth(self.alice)
        )
        self.assertEqual(resp.status, 200)

        for ws in (alice_ws, bob_ws):
            deleted = await recv_event(ws, frames.MESSAGE_DELETED_EVERYONE)
            self.assertEqual(deleted["body"]["messageId"], server_id)
        await alice_ws.close()
        await bob_ws.close()


class ConfirmOnConnectTransportTests(ChatAppTestCase):
    def make_config(self) -> ServerConfig:
        return ServerConfig(ping_interval_s=3600, confirm_delivery_on_connect=True)

    async def test_sender_learns_delivery_when_receiver_connects(self):
        alice = await self._register("alice")
        bob = await self._register("bob")
        await self._befriend(alice, bob, "bob")
        alice_ws, _ = await self._connect(alice)
        await self._send(alice_ws, bob, "queued", "tmp-1")
        sent = await recv_event(alice_ws, frames.MESSAGE_SENT)

        bob_ws, _ = await self._connect(bob)
        delivered = await recv_event(alice_ws, frames.MESSAGE_DELIVERED)

        self.assertEqual(delivered["body"]["serverId"], sent["body"]["serverId"])
        self.assertIsNone(delivered["body"]["tempId"])
        self.assertEqual(self.runtime.messages.find_by_id(sent["body"]["serverId"]).status, STATUS_DELIVERED)
        await alice_ws.close()
        await bob_ws.close()


class SQLiteTransportTests(ChatAppTestCase):
    def make_config(self) -> ServerConfig:
        self.tmpdir = tempfile.TemporaryDirectory()
        return ServerConfig(ping_interval_s=3600, db_path=os.path.join(self.tmpdir.name, "chat.db"))

    async def asyncTearDown(self):
        await super().asyncTearDown()
        self.tmpdir.cleanup()

    async def test_messages_are_persisted(self):
        alice = await self._register("alice")
        bob = await self._register("bob")
        await self._befriend(alice, bob, "bob")
        alice_ws, _ = await self._connect(alice)
        await self._send(alice_ws, bob, "durable", "tmp-1")
        await recv_event(alice_ws, frames.MESSAGE_SENT)
        await alice_ws.close()

        resp = await self.client.get(f"/v1/messages/conversation/{alice}", headers=self._auth(bob))
        history = (await resp.json())["messages"]
        self.assertEqual([m["content"] for m in history], ["durable"])


class HeartbeatTests(ChatAppTestCase):
    def make_config(self) -> ServerConfig:
        return ServerConfig(ping_interval_s=1, ping_miss_limit=0)

    async def test_idle_connection_is_pinged_then_closed(self):
        alice = await self._register("alice")
        ws, _ = await self._connect(alice)

        ping = await ws.receive_json(timeout=3)
        self.assertEqual(ping["t"], frames.PING)
        closing = await ws.receive(timeout=3)
        self.assertIn(closing.type, {WSMsgType.CLOSE, WSMsgType.CLOSED})
        for _ in range(40):
            if not self.runtime.presence.is_online(alice):
                break
            await asyncio.sleep(0.05)
        self.assertFalse(self.runtime.presence.is_online(alice))


if __name__ == "__main__":
    unittest.main()
