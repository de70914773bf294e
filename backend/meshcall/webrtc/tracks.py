"""로컬 오디오 트랙 래퍼 모듈.

마이크 트랙을 감싸 음소거(enabled 플래그)를 지원합니다. aiortc 의
MediaStreamTrack 에는 브라우저의 track.enabled 가 없으므로, 음소거 중에는
같은 포맷의 무음 프레임을 내보내 트랙 교체나 재협상 없이 전송만 멈춥니다.
"""

import logging

from aiortc import MediaStreamTrack

logger = logging.getLogger(__name__)


class MutableAudioTrack(MediaStreamTrack):
    """음소거 가능한 오디오 트랙.

    Attributes:
        kind (str): 트랙 종류 ("audio")
        track (MediaStreamTrack): 원본 캡처 오디오 트랙
        enabled (bool): False 이면 무음 프레임 전송

    Note:
        - 래퍼를 stop() 하면 원본 캡처 트랙도 함께 정지됨
        - 원본 트랙이 끝나면(ended) 래퍼도 끝남

    Examples:
        >>> mic = MutableAudioTrack(player.audio)
        >>> mic.enabled = False  # 음소거
        >>> frame = await mic.recv()  # 무음 프레임
    """
    kind = "audio"

    def __init__(self, track: MediaStreamTrack, enabled: bool = True):
        super().__init__()
        self.track = track
        self.enabled = enabled

        @track.on("ended")
        def on_source_ended():
            logger.info("[Media] 원본 오디오 트랙 종료")
            self.stop()

    async def recv(self):
        """원본 트랙에서 프레임을 받아 음소거 상태면 무음으로 바꿔 반환합니다."""
        frame = await self.track.recv()

        if not self.enabled:
            for plane in frame.planes:
                plane.update(bytes(plane.buffer_size))

        return frame

    def stop(self):
        super().stop()
        self.track.stop()
