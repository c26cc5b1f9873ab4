import asyncio

import pytest

from peercall import CallClient, CallState
from peercall.audio import AudioPipeline
from peercall.errors import TransportLoss
from peercall.signaling import SignalingChannel
from peercall.webrtc import Peer

from conftest import FakeConnector, FakePeerConnection, FakeWebSocket, StubAcquirer, suppression_config, wait_for

OFFER = {"sdp": "v=0\r\nm=audio sendrecv\r\n", "type": "offer"}


@pytest.fixture
def socket():
    return FakeWebSocket()


@pytest.fixture
async def client(socket):
    channel = SignalingChannel(
        "ws://relay.test/ws",
        reconnect_delay=0,
        max_reconnect_attempts=1,
        connect_factory=FakeConnector(socket),
    )
    client = CallClient(
        "alice",
        channel=channel,
        pipeline=AudioPipeline(config=suppression_config(enabled=False)),
        acquirer=StubAcquirer(),
        decide=lambda peer: True,
        pc_factory=FakePeerConnection,
    )
    yield client
    await client.close()


def _sent(socket, message_type):
    return [m["data"] for m in socket.sent if m["type"] == message_type]


async def test_start_registers_identity(client, socket):
    socket.feed("registered", {"socketId": "sock-a"})

    assert await client.start(timeout=1) == "sock-a"

    await wait_for(lambda: _sent(socket, "register"))
    assert _sent(socket, "register") == [{"userId": "alice", "socketId": "sock-a"}]


async def test_start_without_registration_times_out(client):
    with pytest.raises(TransportLoss):
        await client.start(timeout=0.05)


async def test_roster_excludes_self(client, socket):
    rosters = []
    client.on_roster = rosters.append
    socket.feed("registered", {"socketId": "sock-a"})
    await client.start(timeout=1)

    socket.feed(
        "active-users",
        [
            {"userId": "alice", "socketId": "sock-a"},
            {"userId": "bob", "socketId": "sock-b"},
            {"socketId": "broken"},
        ],
    )

    peer = await client.wait_for_peer("bob", timeout=1)
    assert peer == Peer(peer_id="sock-b", display_name="bob")
    assert client.peers == [peer]
    assert rosters == [[peer]]


async def test_wait_for_peer_times_out(client, socket):
    socket.feed("registered", {"socketId": "sock-a"})
    await client.start(timeout=1)

    with pytest.raises(asyncio.TimeoutError):
        await client.wait_for_peer("nobody", timeout=0.05)


async def test_incoming_call_answered_through_channel(client, socket):
    socket.feed("registered", {"socketId": "sock-a"})
    await client.start(timeout=1)

    socket.feed("call-received", {"from": "sock-b", "offer": OFFER})

    await wait_for(lambda: client.state == CallState.CONNECTED)
    await wait_for(lambda: _sent(socket, "call-accepted"))
    accepted = _sent(socket, "call-accepted")[0]
    assert accepted["to"] == "sock-b"
    assert accepted["answer"]["type"] == "answer"


async def test_outgoing_call_and_hangup(client, socket):
    socket.feed("registered", {"socketId": "sock-a"})
    await client.start(timeout=1)

    await client.call("sock-b")
    assert client.state == CallState.AWAITING_ANSWER
    assert _sent(socket, "call-user")[0]["to"] == "sock-b"

    await client.hangup()
    assert client.state == CallState.IDLE
    assert _sent(socket, "end-call") == [{"to": "sock-b"}]


async def test_signaling_loss_tears_down_call(client, socket):
    socket.feed("registered", {"socketId": "sock-a"})
    await client.start(timeout=1)
    socket.feed("call-received", {"from": "sock-b", "offer": OFFER})
    await wait_for(lambda: client.state == CallState.CONNECTED)

    socket.drop()

    await wait_for(lambda: client.state == CallState.IDLE)


async def test_close_releases_everything(client, socket):
    socket.feed("registered", {"socketId": "sock-a"})
    await client.start(timeout=1)
    await client.call("sock-b")

    await client.close()

    assert client.state == CallState.IDLE
    assert socket.closed
    assert not client.channel.is_connected
    assert _sent(socket, "end-call") == [{"to": "sock-b"}]
