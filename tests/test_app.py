import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient

from app import app, rendezvous
from backend import registry_backend


def sync(ws):
    """Round-trip a malformed frame; everything sent before it has been processed once the error comes back."""
    ws.send_json({"type": "bogus"})
    reply = ws.receive_json()
    assert reply["type"] == "error", reply
    return reply


def join(ws, room_code):
    ws.send_json({"type": "join-room", "roomId": room_code})
    sync(ws)


class TestHealth(unittest.TestCase):
    def setUp(self):
        # One portal (event loop) for every connection a test opens
        self.client = TestClient(app)
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

    def test_health(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.text, "Server is running")

    def test_status_reports_relay_and_registry(self):
        with patch.object(registry_backend, "ping", return_value=False):
            response = self.client.get("/api/status")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "ok")
        self.assertFalse(body["registry"])
        self.assertIn("rooms", body)
        self.assertIn("members", body)


class TestSignalingEndpoint(unittest.TestCase):
    def setUp(self):
        # One portal (event loop) for every connection a test opens
        self.client = TestClient(app)
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

    def test_welcome_carries_member_id(self):
        with self.client.websocket_connect("/ws") as ws:
            welcome = ws.receive_json()
        self.assertEqual(welcome["type"], "welcome")
        self.assertTrue(welcome["memberId"])

    def test_malformed_message_gets_error_and_connection_survives(self):
        with self.client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_text("not json")
            self.assertEqual(ws.receive_json()["type"], "error")
            ws.send_json({"type": "offer"})
            self.assertEqual(ws.receive_json()["type"], "error")

    def test_binary_frame_gets_error_and_connection_survives(self):
        with self.client.websocket_connect("/ws") as ws:
            member_id = ws.receive_json()["memberId"]
            ws.send_bytes(b"\x00\x01")
            self.assertEqual(ws.receive_json()["type"], "error")
            join(ws, "bin001")
            self.assertIn(member_id, rendezvous.room_members("bin001"))

    def test_host_and_two_viewers_scenario(self):
        offer_1 = {"type": "offer", "sdp": "v=0 one"}
        offer_2 = {"type": "offer", "sdp": "v=0 two"}
        with self.client.websocket_connect("/ws") as host:
            host_id = host.receive_json()["memberId"]
            join(host, "ab12cd")

            with self.client.websocket_connect("/ws") as v1, self.client.websocket_connect("/ws") as v2:
                v1_id = v1.receive_json()["memberId"]
                v2_id = v2.receive_json()["memberId"]

                join(v1, "ab12cd")
                self.assertEqual(host.receive_json(), {"type": "user-joined", "memberId": v1_id})
                host.send_json({"type": "offer", "roomId": "ab12cd", "offer": offer_1, "target": v1_id})
                self.assertEqual(v1.receive_json(), {"type": "offer", "sender": host_id, "offer": offer_1})

                join(v2, "ab12cd")
                self.assertEqual(host.receive_json(), {"type": "user-joined", "memberId": v2_id})
                # v1 hears about v2 as well; only the host acts on it
                self.assertEqual(v1.receive_json(), {"type": "user-joined", "memberId": v2_id})
                host.send_json({"type": "offer", "roomId": "ab12cd", "offer": offer_2, "target": v2_id})
                self.assertEqual(v2.receive_json(), {"type": "offer", "sender": host_id, "offer": offer_2})

                answer = {"type": "answer", "sdp": "v=0 answer"}
                v2.send_json({"type": "answer", "roomId": "ab12cd", "answer": answer, "target": host_id})
                self.assertEqual(host.receive_json(), {"type": "answer", "sender": v2_id, "answer": answer})

                # The targeted offer for v2 never reached v1
                sync(v1)

    def test_messages_do_not_leak_to_other_rooms(self):
        with self.client.websocket_connect("/ws") as a, self.client.websocket_connect("/ws") as b, \
                self.client.websocket_connect("/ws") as outsider:
            a.receive_json()
            b_id = b.receive_json()["memberId"]
            outsider.receive_json()
            join(a, "room-a")
            join(b, "room-a")
            join(outsider, "room-b")
            a.receive_json()  # user-joined for b

            candidate = {"candidate": "candidate:1 1 udp 1 10.0.0.1 5000 typ host", "sdpMid": "0", "sdpMLineIndex": 0}
            b.send_json({"type": "ice-candidate", "roomId": "room-a", "candidate": candidate})
            self.assertEqual(a.receive_json(), {"type": "ice-candidate", "sender": b_id, "candidate": candidate})

            # Claiming another room's code without joining it does not reach that room
            b.send_json({"type": "offer", "roomId": "room-b", "offer": {"sdp": "x"}})
            sync(b)
            sync(outsider)

    def test_disconnect_leaves_room(self):
        with self.client.websocket_connect("/ws") as ws:
            member_id = ws.receive_json()["memberId"]
            join(ws, "gone01")
            self.assertIn(member_id, rendezvous.room_members("gone01"))
        with self.client.websocket_connect("/ws") as other:
            other.receive_json()
            join(other, "other1")
        self.assertNotIn(member_id, rendezvous.members)
        self.assertNotIn(member_id, rendezvous.room_members("gone01"))


if __name__ == "__main__":
    unittest.main()
