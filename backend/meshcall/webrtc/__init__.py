"""WebRTC 풀메시 클라이언트 모듈.

Classes:
    MeshCoordinator: 룸의 모든 세션과 피어 연결 생성 / 재협상 / 정리
    PeerRegistry: 원격 세션 ID → PeerLink
    MediaTrackSynchronizer: 로컬 캡처 트랙을 모든 링크에 반영
    RemoteMediaSink: 수신 트랙 소비
    FileTransferSender / FileTransferReceiver: 데이터 채널 파일 전송
    SignalingClient: 릴레이 WebSocket 클라이언트
"""

from .peer_registry import PeerRegistry, PeerLink, LinkState, Role, PendingCandidate
from .mesh_coordinator import MeshCoordinator, parse_candidate, serialize_candidate
from .media import MediaTrackSynchronizer, MediaPlayerCapture, CaptureError, RemoteMediaSink
from .tracks import MutableAudioTrack
from .file_transfer import FileTransfer, FileTransferReceiver, FileTransferSender, ReceivedFile
from .signaling_client import SignalingClient
from .config import (
    ice_config,
    connection_config,
    transfer_config,
    capture_config,
    storage_config,
)

__all__ = [
    "PeerRegistry",
    "PeerLink",
    "LinkState",
    "Role",
    "PendingCandidate",
    "MeshCoordinator",
    "parse_candidate",
    "serialize_candidate",
    "MediaTrackSynchronizer",
    "MediaPlayerCapture",
    "CaptureError",
    "RemoteMediaSink",
    "MutableAudioTrack",
    "FileTransfer",
    "FileTransferReceiver",
    "FileTransferSender",
    "ReceivedFile",
    "SignalingClient",
    "ice_config",
    "connection_config",
    "transfer_config",
    "capture_config",
    "storage_config",
]
