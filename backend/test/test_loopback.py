"""실제 aiortc RTCPeerConnection 두 개를 허브로 연결해 통화 협상을 검증합니다."""

from aiortc import RTCConfiguration, RTCPeerConnection

from peercall.webrtc import CallState

from conftest import StubAcquirer, wait_for


def _host_only_pc():
    # STUN 서버 없이 호스트 candidate만 수집
    return RTCPeerConnection(configuration=RTCConfiguration(iceServers=[]))


def _record_states(peer):
    states = []
    peer.store.subscribe(lambda session, previous: states.append(session.state))
    return states


async def test_real_peer_connections_complete_offer_answer(make_peer, hub):
    remote_tracks = []
    alice = make_peer("sock-a", pc_factory=_host_only_pc, acquirer=StubAcquirer(video=False))
    bob = make_peer(
        "sock-b",
        decide=lambda peer: True,
        pc_factory=_host_only_pc,
        acquirer=StubAcquirer(video=False),
        on_remote_track=lambda track, stream: remote_tracks.append(track.kind),
    )
    alice_states = _record_states(alice)
    bob_states = _record_states(bob)

    await alice.machine.initiate_call("sock-b")
    await hub.settle()

    # ICE 결과와 무관하게 offer/answer 교환만으로 connected에 도달
    assert CallState.CONNECTED in alice_states
    assert CallState.CONNECTED in bob_states
    assert alice.channel.types[0] == "call-user"
    assert bob.channel.types[0] == "call-accepted"

    offer = alice.channel.of_type("call-user")[0]["offer"]
    answer = bob.channel.of_type("call-accepted")[0]["answer"]
    assert offer["type"] == "offer" and "m=audio" in offer["sdp"]
    assert answer["type"] == "answer" and "m=audio" in answer["sdp"]
    assert isinstance(alice.pc, RTCPeerConnection)
    assert alice.pc.remoteDescription.type == "answer"
    assert bob.pc.remoteDescription.type == "offer"

    await wait_for(lambda: "audio" in remote_tracks)
