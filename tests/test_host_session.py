import unittest
from unittest.mock import AsyncMock, MagicMock

from errors import ConnectivityLost, DiscoveryExhausted, NegotiationFailed, RegistrationFailed
from schemas.signaling import AnswerReceived, CandidateReceived, UserJoined
from session.host import HostSession, PeerState

from fakes import FakeCapture, FakeDiscovery, FakeSignaling, TransportFactory, settle


class HostSessionTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.capture = FakeCapture()
        self.signaling = FakeSignaling()
        self.discovery = FakeDiscovery(self.signaling)
        self.factory = TransportFactory()
        self.host = HostSession(self.capture, self.discovery, transport_factory=self.factory, room_code="ab12cd")
        self.transitions = []
        self.host.on_state_change(lambda viewer_id, state: self.transitions.append((viewer_id, state)))
        self.addAsyncCleanup(self.host.stop)

    async def viewer_joins(self, viewer_id):
        self.signaling.push(UserJoined(member_id=viewer_id))
        await settle()
        return self.host.sessions[viewer_id]


class TestHostStart(HostSessionTestCase):
    async def test_start_opens_room(self):
        code = await self.host.start()

        self.assertEqual(code, "ab12cd")
        joins = self.signaling.sent_of("join-room")
        self.assertEqual(len(joins), 1)
        self.assertEqual(joins[0].room_id, "ab12cd")

    async def test_generates_code_when_none_given(self):
        host = HostSession(FakeCapture(), FakeDiscovery(FakeSignaling()), transport_factory=self.factory)
        self.addAsyncCleanup(host.stop)
        code = await host.start()
        self.assertEqual(len(code), 6)
        self.assertTrue(code.isalnum())

    async def test_discovery_exhausted_releases_capture(self):
        self.discovery.error = DiscoveryExhausted(3, ConnectionRefusedError("refused"))

        with self.assertRaises(DiscoveryExhausted):
            await self.host.start()

        self.assertEqual(self.capture.stop_calls, 1)
        self.assertEqual(self.signaling.sent, [])

    async def test_registration_is_published(self):
        registry = MagicMock()
        registry.registration_address = AsyncMock(return_value=("198.51.100.4", "3001"))
        registry.register = AsyncMock()
        self.host.registry = registry

        await self.host.start()

        registry.register.assert_awaited_once_with("ab12cd", "198.51.100.4", "3001")
        self.assertTrue(self.host.registered)

    async def test_registration_failure_is_not_fatal(self):
        registry = MagicMock()
        registry.registration_address = AsyncMock(return_value=("198.51.100.4", "3001"))
        registry.register = AsyncMock(side_effect=RegistrationFailed("503"))
        self.host.registry = registry

        code = await self.host.start()

        self.assertEqual(code, "ab12cd")
        self.assertFalse(self.host.registered)
        session = await self.viewer_joins("v1")
        self.assertEqual(session.state, PeerState.OFFER_SENT)

    async def test_unusable_endpoint_port_does_not_abort_start(self):
        registry = MagicMock()
        registry.registration_address = AsyncMock(side_effect=ValueError("Port out of range 0-65535"))
        registry.register = AsyncMock()
        self.host.registry = registry

        code = await self.host.start()

        self.assertEqual(code, "ab12cd")
        self.assertFalse(self.host.registered)
        registry.register.assert_not_awaited()


class TestHostViewers(HostSessionTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        await self.host.start()

    async def test_offer_is_targeted_at_joining_viewer(self):
        session = await self.viewer_joins("v1")

        self.assertEqual(session.state, PeerState.OFFER_SENT)
        offers = self.signaling.sent_of("offer")
        self.assertEqual(len(offers), 1)
        self.assertEqual(offers[0].target, "v1")
        self.assertEqual(offers[0].offer["type"], "offer")
        candidates = self.signaling.sent_of("ice-candidate")
        self.assertEqual([c.target for c in candidates], ["v1"])

    async def test_each_viewer_gets_its_own_session_with_every_track(self):
        for viewer_id in ("v1", "v2", "v3"):
            await self.viewer_joins(viewer_id)

        self.assertEqual(set(self.host.sessions), {"v1", "v2", "v3"})
        self.assertEqual(len(self.factory.created), 3)
        for transport in self.factory.created:
            self.assertEqual(transport.track_count, len(self.capture.tracks))

    async def test_viewers_get_separate_subscriptions_of_the_capture(self):
        v1 = await self.viewer_joins("v1")
        v2 = await self.viewer_joins("v2")

        sources = self.capture.tracks
        for transport in (v1.transport, v2.transport):
            self.assertEqual([t.kind for t in transport.tracks], [s.kind for s in sources])
            for track in transport.tracks:
                self.assertNotIn(track, sources)
        self.assertTrue(set(map(id, v1.transport.tracks)).isdisjoint(map(id, v2.transport.tracks)))

    async def test_two_viewers_reach_connected(self):
        v1 = await self.viewer_joins("v1")
        v2 = await self.viewer_joins("v2")

        self.signaling.push(AnswerReceived(sender="v1", answer={"type": "answer", "sdp": "v=0 a1"}))
        self.signaling.push(AnswerReceived(sender="v2", answer={"type": "answer", "sdp": "v=0 a2"}))
        await settle()
        await v1.transport.set_state("connected")
        await v2.transport.set_state("connected")

        self.assertEqual(v1.transport.remote["sdp"], "v=0 a1")
        self.assertEqual(v2.transport.remote["sdp"], "v=0 a2")
        connected = [viewer_id for viewer_id, state in self.transitions if state == PeerState.CONNECTED]
        self.assertEqual(connected, ["v1", "v2"])
        self.assertEqual(len(self.signaling.sent_of("offer")), 2)

    async def test_closing_one_viewer_leaves_others_untouched(self):
        v1 = await self.viewer_joins("v1")
        v2 = await self.viewer_joins("v2")
        await v2.transport.set_state("connected")

        await self.host.close_viewer("v1")

        self.assertEqual(v1.state, PeerState.CLOSED)
        self.assertTrue(v1.transport.closed)
        self.assertNotIn("v1", self.host.sessions)
        self.assertEqual(v2.state, PeerState.CONNECTED)
        self.assertFalse(v2.transport.closed)
        self.assertEqual(self.capture.stop_calls, 0)

    async def test_connectivity_failure_is_isolated(self):
        v1 = await self.viewer_joins("v1")
        v2 = await self.viewer_joins("v2")

        await v1.transport.set_state("failed")

        self.assertEqual(v1.state, PeerState.FAILED)
        self.assertIsInstance(v1.error, ConnectivityLost)
        self.assertNotIn("v1", self.host.sessions)
        self.assertEqual(v2.state, PeerState.OFFER_SENT)

    async def test_disconnected_viewer_is_closed(self):
        v1 = await self.viewer_joins("v1")
        await v1.transport.set_state("connected")
        await v1.transport.set_state("disconnected")
        self.assertEqual(v1.state, PeerState.CLOSED)
        self.assertNotIn("v1", self.host.sessions)

    async def test_negotiation_failure_is_isolated(self):
        await self.viewer_joins("v1")

        def failing_factory():
            transport = TransportFactory.__call__(self.factory)
            transport.fail_offer = True
            return transport

        self.host.transport_factory = failing_factory
        self.signaling.push(UserJoined(member_id="v2"))
        await settle()

        self.assertNotIn("v2", self.host.sessions)
        failed = self.factory.created[1]
        self.assertTrue(failed.closed)
        self.assertIn(("v2", PeerState.FAILED), self.transitions)
        self.assertEqual(self.host.sessions["v1"].state, PeerState.OFFER_SENT)
        self.assertEqual([o.target for o in self.signaling.sent_of("offer")], ["v1"])

    async def test_bad_answer_fails_only_that_viewer(self):
        v1 = await self.viewer_joins("v1")
        v1.transport.fail_remote = True

        self.signaling.push(AnswerReceived(sender="v1", answer={"type": "answer", "sdp": "garbage"}))
        await settle()

        self.assertEqual(v1.state, PeerState.FAILED)
        self.assertIsInstance(v1.error, NegotiationFailed)

    async def test_messages_from_unknown_viewers_are_discarded(self):
        v1 = await self.viewer_joins("v1")

        self.signaling.push(AnswerReceived(sender="ghost", answer={"type": "answer", "sdp": "v=0"}))
        self.signaling.push(CandidateReceived(sender="ghost", candidate={"candidate": "candidate:1 1 udp 1 1.1.1.1 1 typ host"}))
        await settle()

        self.assertIsNone(v1.transport.remote)
        self.assertEqual(v1.transport.added_candidates, [])
        self.assertEqual(set(self.host.sessions), {"v1"})

    async def test_candidates_reach_the_right_session(self):
        v1 = await self.viewer_joins("v1")
        v2 = await self.viewer_joins("v2")
        candidate = {"candidate": "candidate:2 1 udp 2 10.0.0.9 6000 typ host", "sdpMid": "0", "sdpMLineIndex": 0}

        self.signaling.push(CandidateReceived(sender="v2", candidate=candidate))
        self.signaling.push(CandidateReceived(sender="v2", candidate=None))
        await settle()

        self.assertEqual(v2.transport.added_candidates, [candidate])
        self.assertEqual(v1.transport.added_candidates, [])

    async def test_rejoin_replaces_session(self):
        first = await self.viewer_joins("v1")
        second = await self.viewer_joins("v1")

        self.assertIsNot(first, second)
        self.assertTrue(first.transport.closed)
        self.assertIs(self.host.sessions["v1"], second)
        self.assertEqual(second.state, PeerState.OFFER_SENT)

    async def test_stop_releases_everything_once(self):
        v1 = await self.viewer_joins("v1")
        v2 = await self.viewer_joins("v2")

        await self.host.stop()
        await self.host.stop()

        self.assertEqual(self.capture.stop_calls, 1)
        self.assertTrue(all(track.stopped for track in self.capture.tracks))
        self.assertEqual(self.host.sessions, {})
        self.assertTrue(v1.transport.closed and v2.transport.closed)
        self.assertEqual((v1.state, v2.state), (PeerState.CLOSED, PeerState.CLOSED))
        self.assertTrue(self.signaling.closed)


if __name__ == "__main__":
    unittest.main()
