"""공용 테스트 픽스처.

실제 네트워크/장치 없이 협상 흐름을 검증하기 위한 가짜 객체들:
    - FakePeerConnection: RTCPeerConnection의 협상 관련 동작만 흉내냄
    - SignalingHub / LinkedChannel: 릴레이처럼 두 상태 머신을 직접 연결
    - FakeWebSocket: SignalingChannel용 websockets 연결 대역
"""

import asyncio
import inspect
import json
from collections import defaultdict
from typing import Dict, List, Optional

import pytest
from aiortc import MediaStreamTrack, RTCSessionDescription
from aiortc.mediastreams import AudioStreamTrack, MediaStreamError, VideoStreamTrack
from websockets.exceptions import ConnectionClosed

from peercall.audio import AudioPipeline, SuppressionConfig
from peercall.errors import MediaAcquisitionError, TransportLoss
from peercall.webrtc import CallSessionStore, MediaConstraints, MediaStream, NegotiationStateMachine


# ============================================================
# 가짜 피어 연결
# ============================================================

class RemoteTrack(MediaStreamTrack):
    """상대 피어에서 수신된 트랙 대역."""

    def __init__(self, kind: str):
        super().__init__()
        self.kind = kind

    async def recv(self):
        raise MediaStreamError


class FakeSender:
    def __init__(self, kind: str, track: Optional[MediaStreamTrack] = None):
        self.kind = kind
        self.track = track
        self.fail_replace = False

    def replaceTrack(self, track):
        if self.fail_replace and track is not None:
            raise RuntimeError("replaceTrack failed")
        self.track = track


class FakeTransceiver:
    def __init__(self, kind: str, direction: str = "sendrecv", track=None):
        self.kind = kind
        self.direction = direction
        self.sender = FakeSender(kind, track)


class FakePeerConnection:
    """협상 동작만 흉내내는 RTCPeerConnection 대역.

    SDP는 transceiver별 `m=<kind> <sendrecv|recvonly>` 줄로만 구성되며,
    remote description을 적용하면 송신 중인 종류마다 "track" 이벤트가 한 번 발생합니다.
    """

    def __init__(self):
        self.signalingState = "stable"
        self.connectionState = "new"
        self.iceConnectionState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.applied_candidates: List = []
        self.fail_on = set()
        self.closed = False
        self._transceivers: List[FakeTransceiver] = []
        self._handlers = defaultdict(list)
        self._remote_kinds = set()

    def on(self, event, f=None):
        def register(func):
            self._handlers[event].append(func)
            return func
        return register(f) if f is not None else register

    async def emit(self, event, *args):
        for handler in list(self._handlers[event]):
            result = handler(*args)
            if inspect.isawaitable(result):
                await result

    def getSenders(self):
        return [t.sender for t in self._transceivers]

    def getTransceivers(self):
        return list(self._transceivers)

    def addTrack(self, track):
        if "addTrack" in self.fail_on:
            raise RuntimeError("addTrack failed")
        for transceiver in self._transceivers:
            if transceiver.kind == track.kind and transceiver.sender.track is None:
                transceiver.sender.track = track
                transceiver.direction = "sendrecv"
                return transceiver.sender
        transceiver = FakeTransceiver(track.kind, track=track)
        self._transceivers.append(transceiver)
        return transceiver.sender

    def addTransceiver(self, kind, direction="sendrecv"):
        transceiver = FakeTransceiver(kind, direction=direction)
        self._transceivers.append(transceiver)
        return transceiver

    def _sdp(self, label: str) -> str:
        lines = ["v=0", f"s={label}"]
        for transceiver in self._transceivers:
            mode = "sendrecv" if transceiver.sender.track is not None else "recvonly"
            lines.append(f"m={transceiver.kind} {mode}")
        return "\r\n".join(lines) + "\r\n"

    async def createOffer(self):
        if "createOffer" in self.fail_on:
            raise RuntimeError("createOffer failed")
        return RTCSessionDescription(sdp=self._sdp("offer"), type="offer")

    async def createAnswer(self):
        if "createAnswer" in self.fail_on:
            raise RuntimeError("createAnswer failed")
        assert self.signalingState == "have-remote-offer"
        return RTCSessionDescription(sdp=self._sdp("answer"), type="answer")

    async def setLocalDescription(self, description):
        await asyncio.sleep(0)
        self.localDescription = description
        self.signalingState = "have-local-offer" if description.type == "offer" else "stable"

    async def setRemoteDescription(self, description):
        if "setRemoteDescription" in self.fail_on:
            raise RuntimeError("setRemoteDescription failed")
        await asyncio.sleep(0)
        self.remoteDescription = description
        if description.type == "offer":
            self.signalingState = "have-remote-offer"
        else:
            self.signalingState = "stable"

        for line in description.sdp.splitlines():
            if not line.startswith("m="):
                continue
            kind, mode = line[2:].split()
            if description.type == "offer" and not any(t.kind == kind for t in self._transceivers):
                self._transceivers.append(FakeTransceiver(kind, direction="recvonly"))
            if mode == "sendrecv" and kind not in self._remote_kinds:
                self._remote_kinds.add(kind)
                await self.emit("track", RemoteTrack(kind))

    async def addIceCandidate(self, candidate):
        assert self.remoteDescription is not None, "candidate applied before remote description"
        await asyncio.sleep(0)
        self.applied_candidates.append(candidate)

    async def close(self):
        self.closed = True
        self.signalingState = "closed"
        self.connectionState = "closed"


# ============================================================
# 가짜 시그널링
# ============================================================

class RecordingChannel:
    """전송 메시지만 기록하는 채널."""

    def __init__(self, session_id: str = "self-socket"):
        self.session_id = session_id
        self.sent: List[tuple] = []
        self.connected = True

    async def send(self, message_type, payload=None):
        if not self.connected:
            raise TransportLoss(f"not connected - {message_type}")
        self.sent.append((message_type, payload))

    def of_type(self, message_type: str) -> List[dict]:
        return [payload for kind, payload in self.sent if kind == message_type]

    @property
    def types(self) -> List[str]:
        return [kind for kind, _ in self.sent]


class SignalingHub:
    """릴레이처럼 `to`로 지정된 피어의 상태 머신에 메시지를 전달합니다."""

    FORWARD_TYPES = {"call-user": "call-received"}

    def __init__(self):
        self.machines: Dict[str, NegotiationStateMachine] = {}
        self.tasks: List[asyncio.Task] = []

    def channel(self, socket_id: str) -> "LinkedChannel":
        return LinkedChannel(self, socket_id)

    def deliver(self, from_id: str, message_type: str, payload: dict) -> None:
        target = self.machines.get(payload.get("to"))
        if target is None:
            return
        data = {k: v for k, v in payload.items() if k != "to"}
        data["from"] = from_id
        forward_type = self.FORWARD_TYPES.get(message_type, message_type)
        self.tasks.append(asyncio.ensure_future(target.dispatch(forward_type, data)))

    async def settle(self) -> None:
        """전달된 모든 메시지 처리가 끝날 때까지 기다립니다."""
        for _ in range(50):
            pending = [t for t in self.tasks if not t.done()]
            if not pending:
                await asyncio.sleep(0)
                if all(t.done() for t in self.tasks):
                    return
                continue
            await asyncio.gather(*pending)


class LinkedChannel(RecordingChannel):
    def __init__(self, hub: SignalingHub, socket_id: str):
        super().__init__(session_id=socket_id)
        self.hub = hub

    async def send(self, message_type, payload=None):
        await super().send(message_type, payload)
        self.hub.deliver(self.session_id, message_type, payload or {})


# ============================================================
# 가짜 WebSocket
# ============================================================

_END = object()
_DROP = object()


class FakeWebSocket:
    """websockets 클라이언트 연결 대역 (async 반복 + send/close)."""

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: List[dict] = []
        self.closed = False

    def feed(self, message_type: str, data=None) -> None:
        self.incoming.put_nowait(json.dumps({"type": message_type, "data": data}))

    def feed_raw(self, raw) -> None:
        self.incoming.put_nowait(raw)

    def drop(self) -> None:
        """서버 측에서 연결이 끊긴 상황을 흉내냅니다."""
        self.incoming.put_nowait(_DROP)

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionClosed(None, None)
        self.sent.append(json.loads(message))

    async def close(self) -> None:
        self.closed = True
        self.incoming.put_nowait(_END)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is _END:
            raise StopAsyncIteration
        if item is _DROP:
            self.closed = True
            raise ConnectionClosed(None, None)
        return item


class FakeConnector:
    """SignalingChannel의 connect_factory. 준비된 소켓을 순서대로 돌려줍니다."""

    def __init__(self, *sockets: FakeWebSocket):
        self.sockets = list(sockets)
        self.calls: List[tuple] = []

    async def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if not self.sockets:
            raise OSError("connection refused")
        return self.sockets.pop(0)


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """조건이 참이 될 때까지 이벤트 루프를 양보하며 기다립니다."""

    async def _poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout)


# ============================================================
# 미디어
# ============================================================

class StubAcquirer:
    """AudioStreamTrack/VideoStreamTrack으로 로컬 미디어를 만들어 주는 획득자."""

    def __init__(self, video: bool = True, fail: bool = False):
        self.video = video
        self.fail = fail
        self.calls = []
        self.streams: List[MediaStream] = []

    async def __call__(self, constraints):
        self.calls.append(constraints)
        if self.fail:
            raise MediaAcquisitionError("permission denied")
        tracks = [AudioStreamTrack()]
        if self.video and constraints.video is not None:
            tracks.append(VideoStreamTrack())
        stream = MediaStream(tracks)
        self.streams.append(stream)
        return stream


class FailingSuppressor:
    """모든 프레임 처리에서 실패하는 억제기."""

    def __init__(self, payload=None, sample_rate=48000, max_channels=2):
        self.calls = 0

    def process(self, samples):
        self.calls += 1
        raise RuntimeError("dsp failure")


def suppression_config(module="peercall.audio.suppression:SpectralGateSuppressor", *, enabled=True, payload=None):
    return SuppressionConfig(ENABLED=enabled, MODULE=module, PAYLOAD_PATH=payload)


# ============================================================
# 픽스처
# ============================================================

@pytest.fixture
async def pipeline():
    pipeline = AudioPipeline(config=suppression_config())
    yield pipeline
    pipeline.close()


@pytest.fixture
async def degraded_pipeline():
    pipeline = AudioPipeline(config=suppression_config("peercall.audio.missing_module:Nothing"))
    yield pipeline
    pipeline.close()


@pytest.fixture
def hub():
    return SignalingHub()


@pytest.fixture
async def make_peer(hub):
    """허브에 연결된 피어(store, machine, channel, pcs, acquirer)를 만듭니다."""
    created = []

    def _make(
        socket_id: str,
        *,
        decide=None,
        pipeline=None,
        acquirer=None,
        on_error=None,
        on_remote_track=None,
        fail_on=(),
        pc_factory=None,
    ):
        store = CallSessionStore()
        channel = hub.channel(socket_id)
        acquirer = acquirer or StubAcquirer()
        pcs: List = []

        def factory():
            if pc_factory is not None:
                pc = pc_factory()
            else:
                pc = FakePeerConnection()
                pc.fail_on.update(fail_on)
            pcs.append(pc)
            return pc

        machine = NegotiationStateMachine(
            store,
            channel,
            pipeline,
            acquirer,
            decide=decide,
            pc_factory=factory,
            constraints=MediaConstraints.for_devices(video=True),
            on_error=on_error,
            on_remote_track=on_remote_track,
        )
        hub.machines[socket_id] = machine
        peer = PeerHandle(socket_id, store, machine, channel, pcs, acquirer)
        created.append(peer)
        return peer

    yield _make

    for peer in created:
        await peer.machine.teardown(reason="test-cleanup")


class PeerHandle:
    def __init__(self, socket_id, store, machine, channel, pcs, acquirer):
        self.socket_id = socket_id
        self.store = store
        self.machine = machine
        self.channel = channel
        self.pcs = pcs
        self.acquirer = acquirer

    @property
    def pc(self) -> FakePeerConnection:
        return self.pcs[-1]

    @property
    def session(self):
        return self.store.session
