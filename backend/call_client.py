"""명령행 통화 클라이언트.

릴레이에 등록한 뒤 지정한 사용자에게 전화를 걸거나 들어오는 전화를 받고,
상대 미디어를 파일로 녹음(또는 버림)합니다.

사용 예시:
    # 수신 대기 (자동 수락, 상대 미디어를 파일로 저장)
    python call_client.py --user 고객B --auto-accept --record remote.mp4

    # 발신 (테스트 파일을 마이크 대신 사용)
    AUDIO_INPUT_FORMAT=file AUDIO_INPUT_DEVICE=sample.wav \\
        python call_client.py --user 상담원A --call 고객B --no-video --duration 30
"""

import argparse
import asyncio
import logging
from typing import Optional

from aiortc.contrib.media import MediaBlackhole, MediaRecorder

from peercall import CallClient, CallError, CallState
from peercall.signaling import SignalingChannel
from peercall.utils import setup_logging
from peercall.webrtc import MediaConstraints

logger = logging.getLogger("call_client")


class RemoteMediaSink:
    """원격 트랙을 모아 통화가 연결되면 녹음을 시작합니다."""

    def __init__(self, path: Optional[str] = None):
        self.recorder = MediaRecorder(path) if path else MediaBlackhole()
        self.started = False

    def add_track(self, track, stream) -> None:
        logger.info(f"[CLI] 원격 {track.kind} 트랙 수신 (stream={stream})")
        self.recorder.addTrack(track)

    async def start(self) -> None:
        if not self.started:
            self.started = True
            await self.recorder.start()
            logger.info("[CLI] 원격 미디어 기록 시작")

    async def stop(self) -> None:
        if self.started:
            self.started = False
            await self.recorder.stop()
            logger.info("[CLI] 원격 미디어 기록 종료")


async def run(args: argparse.Namespace) -> None:
    sink = RemoteMediaSink(args.record)
    call_ended = asyncio.Event()

    def decide(peer) -> bool:
        logger.info(f"[CLI] 수신 통화: {peer.display_name} ({peer.peer_id}) - 자동 수락={args.auto_accept}")
        return args.auto_accept

    def on_error(error: CallError) -> None:
        logger.error(f"[CLI] 통화 오류: {type(error).__name__}: {error}")

    def on_roster(peers) -> None:
        names = ", ".join(p.display_name for p in peers) or "(없음)"
        logger.info(f"[CLI] 접속자: {names}")

    client = CallClient(
        args.user,
        channel=SignalingChannel(args.url) if args.url else None,
        decide=decide,
        on_error=on_error,
        on_remote_track=sink.add_track,
        on_roster=on_roster,
    )
    client.machine.constraints = MediaConstraints.for_devices(
        args.audio_device, args.video_device, video=not args.no_video
    )

    tasks = set()

    def on_state(session, previous) -> None:
        if session.state == CallState.CONNECTED:
            task = asyncio.ensure_future(sink.start())
            tasks.add(task)
            task.add_done_callback(tasks.discard)
        elif session.is_idle and previous != CallState.IDLE:
            call_ended.set()

    client.store.subscribe(on_state)

    await client.start()
    try:
        if args.call:
            peer = await client.wait_for_peer(args.call, timeout=args.wait)
            await client.call(peer.peer_id)

        if args.duration:
            try:
                await asyncio.wait_for(call_ended.wait(), timeout=args.duration)
            except asyncio.TimeoutError:
                logger.info(f"[CLI] {args.duration}초 경과 - 통화 종료")
        else:
            await call_ended.wait()
    finally:
        await client.close()
        await sink.stop()


def main():
    parser = argparse.ArgumentParser(description="1:1 음성/영상 통화 클라이언트")
    parser.add_argument("--url", help="릴레이 WebSocket URL (기본: SIGNALING_URL)")
    parser.add_argument("--user", help="사용자 표시 이름 (기본: USER_ID)")
    parser.add_argument("--call", metavar="NAME", help="전화를 걸 상대 사용자 이름")
    parser.add_argument("--auto-accept", action="store_true", help="수신 통화 자동 수락")
    parser.add_argument("--record", metavar="PATH", help="상대 미디어 저장 파일 (없으면 버림)")
    parser.add_argument("--duration", type=float, help="통화 유지 시간 (초)")
    parser.add_argument("--wait", type=float, default=30.0, help="상대 접속 대기 시간 (초)")
    parser.add_argument("--audio-device", help="오디오 입력 장치")
    parser.add_argument("--video-device", help="비디오 입력 장치")
    parser.add_argument("--no-video", action="store_true", help="비디오 없이 음성만")
    args = parser.parse_args()

    setup_logging(prefix="client")
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("[CLI] 종료")


if __name__ == "__main__":
    main()
