"""로컬 미디어 트랙 동기화 모듈.

로컬 캡처 스트림(마이크 / 카메라 / 화면)을 소유하고, 변경 사항을 모든
PeerLink 의 송신 트랙에 반영한 뒤 재협상을 요청합니다.

Classes:
    CaptureError: 캡처 장치 획득 실패
    MediaPlayerCapture: aiortc MediaPlayer(FFmpeg) 기반 장치 캡처
    MediaTrackSynchronizer: 캡처 스트림 소유 및 메시 전체 트랙 동기화
    RemoteMediaSink: 원격 피어에게서 받은 트랙 소비

Ownership:
    - 캡처 트랙은 MediaTrackSynchronizer 만 소유 (정지도 여기서만)
    - PeerLink 의 송신자(sender)는 트랙 참조만 가짐
    - 송신 비디오 슬롯에는 카메라 또는 화면 중 하나만 들어감
"""
import asyncio
import logging
from functools import partial
from typing import Dict, List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer

from .config import capture_config, connection_config, CaptureConfig
from .mesh_coordinator import MeshCoordinator
from .tracks import MutableAudioTrack

logger = logging.getLogger(__name__)

# 사용자에게 보이는 미디어 상태
STATUS_OK = "ok"
STATUS_CAMERA_UNAVAILABLE = "camera-unavailable"
STATUS_MICROPHONE_UNAVAILABLE = "microphone-unavailable"
STATUS_SCREEN_UNAVAILABLE = "screen-unavailable"


class CaptureError(RuntimeError):
    """캡처 장치(카메라 / 마이크 / 화면)를 열 수 없음."""


class MediaPlayerCapture:
    """FFmpeg 입력 장치를 aiortc MediaPlayer 로 여는 캡처 구현.

    MediaPlayer 생성은 장치를 동기적으로 열기 때문에 기본 executor 에서 실행해
    이벤트 루프를 막지 않습니다.
    """

    def __init__(self, config: CaptureConfig = capture_config):
        self.config = config

    async def open_user_media(self, audio: bool = True, video: bool = False) -> List[MediaStreamTrack]:
        """마이크(와 선택적으로 카메라) 트랙을 엽니다.

        Raises:
            CaptureError: 장치를 열 수 없거나 트랙이 없는 경우
        """
        tracks: List[MediaStreamTrack] = []
        try:
            if audio:
                player = await self._open(self.config.MIC_DEVICE, self.config.MIC_FORMAT)
                if player.audio is None:
                    raise CaptureError(f"no audio stream on {self.config.MIC_DEVICE}")
                tracks.append(player.audio)
            if video:
                player = await self._open(
                    self.config.CAMERA_DEVICE,
                    self.config.CAMERA_FORMAT,
                    {"framerate": "30", "video_size": "640x480"},
                )
                if player.video is None:
                    raise CaptureError(f"no video stream on {self.config.CAMERA_DEVICE}")
                tracks.append(player.video)
        except Exception as e:
            for track in tracks:
                track.stop()
            if isinstance(e, CaptureError):
                raise
            raise CaptureError(f"capture device unavailable: {e}") from e

        return tracks

    async def open_display(self) -> MediaStreamTrack:
        """화면 캡처 트랙을 엽니다."""
        try:
            player = await self._open(self.config.SCREEN_DEVICE, self.config.SCREEN_FORMAT, {"framerate": "15"})
        except Exception as e:
            raise CaptureError(f"display capture unavailable: {e}") from e

        if player.video is None:
            raise CaptureError(f"no video stream on {self.config.SCREEN_DEVICE}")
        return player.video

    async def _open(self, device: str, fmt: str, options: Optional[dict] = None) -> MediaPlayer:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(MediaPlayer, device, format=fmt, options=options or {}))


class MediaTrackSynchronizer:
    """로컬 캡처 스트림을 소유하고 모든 PeerLink 에 트랙 변경을 반영합니다.

    Attributes:
        coordinator (MeshCoordinator): 메시 코디네이터
        capture: open_user_media() / open_display() 를 제공하는 캡처 객체
        renegotiate_on_replace (bool): 같은 종류 트랙 교체만 있어도 재협상할지 여부
        audio (Optional[MutableAudioTrack]): 송신 오디오 트랙
        camera (Optional[MediaStreamTrack]): 카메라 트랙 (화면 공유 중에도 보관)
        screen (Optional[MediaStreamTrack]): 화면 공유 트랙
        muted (bool): 음소거 여부
        media_status (str): 사용자에게 보여줄 미디어 상태

    Examples:
        >>> sync = MediaTrackSynchronizer(coordinator)
        >>> await sync.set_video_enabled(True)
        >>> await sync.start_screen_share()
        >>> await sync.stop_screen_share()
    """

    def __init__(
        self,
        coordinator: MeshCoordinator,
        capture=None,
        renegotiate_on_replace: bool = connection_config.RENEGOTIATE_ON_REPLACE,
    ):
        self.coordinator = coordinator
        self.capture = capture or MediaPlayerCapture()
        self.renegotiate_on_replace = renegotiate_on_replace

        self.audio: Optional[MutableAudioTrack] = None
        self.camera: Optional[MediaStreamTrack] = None
        self.screen: Optional[MediaStreamTrack] = None
        self.muted = False
        self.media_status = STATUS_OK
        self._closed = False
        self._revocation_task: Optional[asyncio.Task] = None

        # 새 PeerLink 는 현재 송신 트랙으로 시작
        coordinator.local_tracks = self.outgoing_tracks

    @property
    def video_enabled(self) -> bool:
        return self.camera is not None

    @property
    def sharing_screen(self) -> bool:
        return self.screen is not None

    @property
    def video_track(self) -> Optional[MediaStreamTrack]:
        """송신 비디오 슬롯의 트랙 (화면 공유가 카메라보다 우선)."""
        return self.screen or self.camera

    def outgoing_tracks(self) -> List[MediaStreamTrack]:
        return [track for track in (self.audio, self.video_track) if track is not None]

    def outgoing_by_kind(self) -> Dict[str, Optional[MediaStreamTrack]]:
        return {"audio": self.audio, "video": self.video_track}

    async def set_video_enabled(self, enabled: bool) -> None:
        """오디오/비디오 조합으로 캡처 스트림을 다시 얻고 모든 링크에 반영합니다.

        장치 획득에 실패하면 CaptureError 를 그대로 올리고 기존 상태는 유지합니다.
        """
        try:
            tracks = await self.capture.open_user_media(audio=True, video=enabled)
        except CaptureError as e:
            self.media_status = STATUS_CAMERA_UNAVAILABLE if enabled else STATUS_MICROPHONE_UNAVAILABLE
            logger.error(f"[Media] 캡처 스트림 획득 실패 (video={enabled}): {e}")
            raise

        if self._closed:
            for track in tracks:
                track.stop()
            return

        source_audio = next((t for t in tracks if t.kind == "audio"), None)
        camera = next((t for t in tracks if t.kind == "video"), None)

        old_tracks = [t for t in (self.audio, self.camera) if t is not None]
        self.audio = MutableAudioTrack(source_audio, enabled=not self.muted) if source_audio else None
        self.camera = camera
        self.media_status = STATUS_OK

        changed = self.coordinator.set_outgoing_tracks(self.outgoing_by_kind())

        for track in old_tracks:
            track.stop()

        logger.info(f"[Media] 캡처 스트림 교체: audio={self.audio is not None}, video={self.video_enabled}")
        await self._renegotiate(changed)

    def toggle_mute(self) -> bool:
        """로컬 오디오 음소거를 토글합니다. 트랙 교체나 재협상은 없습니다.

        Returns:
            bool: 토글 후 음소거 여부
        """
        self.muted = not self.muted
        if self.audio is not None:
            self.audio.enabled = not self.muted
        logger.info(f"[Media] 음소거: {self.muted}")
        return self.muted

    async def start_screen_share(self) -> None:
        """화면 캡처 트랙으로 모든 링크의 송신 비디오를 교체합니다.

        이미 공유 중이면 아무 것도 하지 않습니다. 캡처 소스가 외부에서 종료되면
        (ended 이벤트) stop_screen_share() 와 동일하게 처리합니다.
        """
        if self.screen is not None:
            return

        try:
            track = await self.capture.open_display()
        except CaptureError as e:
            self.media_status = STATUS_SCREEN_UNAVAILABLE
            logger.error(f"[Media] 화면 캡처 획득 실패: {e}")
            raise

        if self._closed or self.screen is not None:
            track.stop()
            return

        self.screen = track

        @track.on("ended")
        def on_ended():
            if self.screen is track:
                logger.info("[Media] 화면 공유 소스 종료 감지")
                self._revocation_task = asyncio.ensure_future(self.stop_screen_share())

        changed = self.coordinator.set_outgoing_tracks(self.outgoing_by_kind())
        logger.info("[Media] 화면 공유 시작")
        await self._renegotiate(changed)

    async def stop_screen_share(self) -> None:
        """카메라 트랙(없으면 비디오 없음)으로 송신 비디오를 되돌립니다."""
        screen = self.screen
        if screen is None:
            return

        self.screen = None
        changed = self.coordinator.set_outgoing_tracks(self.outgoing_by_kind())
        screen.stop()

        logger.info("[Media] 화면 공유 종료")
        await self._renegotiate(changed)

    def close(self) -> None:
        """모든 캡처 트랙을 정지합니다 (룸 퇴장)."""
        self._closed = True
        for track in (self.screen, self.camera, self.audio):
            if track is not None:
                track.stop()
        self.screen = None
        self.camera = None
        self.audio = None
        logger.info("[Media] 캡처 트랙 정지")

    async def _renegotiate(self, changed: List[str]) -> None:
        if self.renegotiate_on_replace:
            await self.coordinator.renegotiate_all()
        elif changed:
            await self.coordinator.renegotiate_all(changed)


class RemoteMediaSink:
    """원격 피어에게서 받은 트랙을 읽어 내는 수신 측 싱크.

    aiortc 수신 트랙은 아무도 recv() 하지 않으면 디코딩된 프레임이 큐에 계속
    쌓이므로, 받은 트랙마다 싱크(기본 MediaBlackhole)를 붙여 소비합니다.
    링크가 닫히면 detach() 로 해당 피어의 싱크를 모두 멈춥니다.

    Attributes:
        sink_factory (Callable): addTrack() / start() / stop() 을 제공하는 싱크 생성자
        sinks (Dict[str, List]): 원격 세션 ID → 동작 중인 싱크 목록
    """

    def __init__(self, sink_factory=MediaBlackhole):
        self.sink_factory = sink_factory
        self.sinks: Dict[str, List] = {}

    async def attach(self, remote_id: str, track: MediaStreamTrack) -> None:
        sink = self.sink_factory()
        sink.addTrack(track)
        self.sinks.setdefault(remote_id, []).append(sink)
        await sink.start()
        logger.info(f"[Media] 피어 {remote_id[:8]}의 {track.kind} 트랙 수신 시작")

    async def detach(self, remote_id: str) -> None:
        sinks = self.sinks.pop(remote_id, [])
        for sink in sinks:
            await sink.stop()
        if sinks:
            logger.info(f"[Media] 피어 {remote_id[:8]} 수신 트랙 {len(sinks)}개 정지")

    async def close(self) -> None:
        for remote_id in list(self.sinks):
            await self.detach(remote_id)
