"""풀메시 룸 통화 CLI 클라이언트.

릴레이에 연결해 룸에 입장하고, 룸의 다른 모든 세션과 피어 연결을 맺습니다.
중단(Ctrl+C)될 때까지 실행한 뒤 룸에서 퇴장합니다.

Usage:
    python client.py --room R1
    python client.py --room R1 --video --send-file ./report.pdf
    python client.py --room R1 --screen --url ws://relay.local:3001/ws
"""

import argparse
import asyncio
import logging
from pathlib import Path

from dotenv import load_dotenv
from websockets.exceptions import ConnectionClosed

# Load 환경변수 from config/.env
load_dotenv(Path(__file__).parent / "config" / ".env")

from meshcall.webrtc import (  # noqa: E402
    CaptureError,
    MediaTrackSynchronizer,
    MeshCoordinator,
    ReceivedFile,
    RemoteMediaSink,
    SignalingClient,
    storage_config,
)

logger = logging.getLogger("client")

# 파일 전송 전 데이터 채널이 열리기를 기다리는 최대 시간 (초)
CHANNEL_WAIT_TIMEOUT = 30.0


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Mesh call room client")
    parser.add_argument("--url", default="ws://localhost:3001/ws", help="relay WebSocket URL")
    parser.add_argument("--room", required=True, help="room id to join")
    parser.add_argument("--token", default=None, help="relay access token")
    parser.add_argument("--video", action="store_true", help="enable camera")
    parser.add_argument("--screen", action="store_true", help="share screen after joining")
    parser.add_argument("--mute", action="store_true", help="join muted")
    parser.add_argument("--send-file", type=Path, default=None, help="file to send to every peer")
    parser.add_argument("--downloads", type=Path, default=storage_config.DOWNLOADS_DIR, help="received files directory")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return parser.parse_args(argv)


async def wait_for_channels(coordinator: MeshCoordinator, timeout: float = CHANNEL_WAIT_TIMEOUT) -> bool:
    """열린 데이터 채널이 하나 이상 생길 때까지 기다립니다."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not coordinator.registry.open_channels():
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(0.5)
    return True


async def run(args: argparse.Namespace) -> None:
    signaling = SignalingClient(args.url, token=args.token)
    await signaling.connect()

    def on_file(artifact: ReceivedFile):
        path = artifact.save(args.downloads)
        logger.info(f"[File] 피어 {artifact.sender_id[:8]}에게서 '{artifact.name}' 수신 → {path}")

    sink = RemoteMediaSink()

    def on_track(remote_id: str, track):
        asyncio.ensure_future(sink.attach(remote_id, track))

    def on_peer_closed(remote_id: str):
        asyncio.ensure_future(sink.detach(remote_id))

    coordinator = MeshCoordinator(signaling, on_track=on_track, on_file=on_file, on_peer_closed=on_peer_closed)
    media = MediaTrackSynchronizer(coordinator)

    if args.mute:
        media.toggle_mute()

    try:
        await media.set_video_enabled(args.video)
    except CaptureError:
        logger.warning(f"[Media] 로컬 미디어 없이 입장 (상태: {media.media_status})")

    async def pump():
        async for message in signaling.messages():
            await coordinator.handle_message(message)

    reader = asyncio.create_task(pump())

    try:
        await coordinator.join(args.room)

        if args.screen:
            try:
                await media.start_screen_share()
            except CaptureError:
                logger.warning(f"[Media] 화면 공유 불가 (상태: {media.media_status})")

        if args.send_file is not None:
            if await wait_for_channels(coordinator):
                count = await coordinator.sender.send_file(args.send_file)
                logger.info(f"[File] '{args.send_file.name}' 전송 완료 ({count}개 피어)")
            else:
                logger.warning("[File] 열린 데이터 채널 없음, 파일 전송 생략")

        await reader
    finally:
        reader.cancel()
        try:
            await coordinator.leave()
        except ConnectionClosed:
            await coordinator.close_all()
        await sink.close()
        media.close()
        await signaling.close()
        logger.info("[Mesh] 클라이언트 종료")


def main(argv=None) -> None:
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler()],
    )

    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("중단됨")


if __name__ == "__main__":
    main()
