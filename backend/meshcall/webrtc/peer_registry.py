"""피어 링크 레지스트리 모듈.

로컬 세션 하나가 보유한 원격 세션별 연결 상태를 관리합니다.
원격 세션 ID 하나당 PeerLink 레코드 하나(피어 연결 + 데이터 채널 + 파일 전송 상태)를
보관하므로, 정리는 remove() 한 번으로 끝납니다.
"""
import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Deque, Dict, Iterator, List, Optional

from aiortc import MediaStreamTrack, RTCDataChannel

if TYPE_CHECKING:
    from .file_transfer import FileTransfer

logger = logging.getLogger(__name__)


class LinkState(str, Enum):
    """PeerLink 협상 상태.

    initiator: new → offering → awaiting-answer → stable → closed
    responder: new → answering → stable → closed
    """
    NEW = "new"
    OFFERING = "offering"
    AWAITING_ANSWER = "awaiting-answer"
    ANSWERING = "answering"
    STABLE = "stable"
    CLOSED = "closed"


class Role(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


@dataclass
class PendingCandidate:
    """remote description 적용 전에 도착한 원격 ICE 후보."""
    candidate: Any
    received_at: float


@dataclass
class PeerLink:
    """원격 세션 하나에 대한 메시 상태.

    Attributes:
        remote_id (str): 원격 세션 ID
        pc: RTCPeerConnection (또는 같은 인터페이스의 객체)
        role (Role): 최초 협상에서의 역할
        state (LinkState): 협상 상태
        channel (Optional[RTCDataChannel]): 파일 전송용 데이터 채널
        local_candidates (List[dict]): 릴레이 대기 중인 로컬 ICE 후보
        pending_candidates (Deque[PendingCandidate]): 적용 대기 중인 원격 ICE 후보 (도착 순)
        remote_description_set (bool): remote description 적용 여부
        renegotiate_requested (bool): 협상 중 들어온 재협상 요청
        transfer (Optional[FileTransfer]): 수신 중인 파일 전송 상태
        remote_tracks (Dict[str, MediaStreamTrack]): 종류별 수신 트랙
        local_sources (Dict[str, MediaStreamTrack]): 종류별 송신 중인 원본 캡처 트랙
        held_offer: answer 가 올 때까지 local description 으로 적용하지 않은 재협상 offer
        expiry_handle: 대기 후보 만료 타이머
    """
    remote_id: str
    pc: Any
    role: Role
    state: LinkState = LinkState.NEW
    channel: Optional[RTCDataChannel] = None
    local_candidates: List[dict] = field(default_factory=list)
    pending_candidates: Deque[PendingCandidate] = field(default_factory=deque)
    remote_description_set: bool = False
    renegotiate_requested: bool = False
    transfer: Optional["FileTransfer"] = None
    remote_tracks: Dict[str, MediaStreamTrack] = field(default_factory=dict)
    local_sources: Dict[str, MediaStreamTrack] = field(default_factory=dict)
    held_offer: Any = None
    expiry_handle: Optional[asyncio.TimerHandle] = None

    @property
    def closed(self) -> bool:
        return self.state == LinkState.CLOSED

    @property
    def channel_open(self) -> bool:
        return self.channel is not None and self.channel.readyState == "open"


class PeerRegistry:
    """원격 세션 ID → PeerLink 매핑.

    한 원격 세션에 대해 PeerLink 는 최대 하나만 존재합니다. add() 는 중복을
    허용하지 않으므로 호출자는 항상 get() 으로 기존 링크를 먼저 재사용해야 합니다.
    """

    def __init__(self):
        self.links: Dict[str, PeerLink] = {}

    def get(self, remote_id: str) -> Optional[PeerLink]:
        return self.links.get(remote_id)

    def add(self, link: PeerLink) -> PeerLink:
        """링크를 등록합니다.

        Raises:
            ValueError: 같은 remote_id 의 링크가 이미 있는 경우
        """
        if link.remote_id in self.links:
            raise ValueError(f"peer link for {link.remote_id} already exists")
        self.links[link.remote_id] = link
        return link

    def remove(self, remote_id: str) -> Optional[PeerLink]:
        return self.links.pop(remote_id, None)

    def is_live(self, link: PeerLink) -> bool:
        """링크가 아직 등록되어 있고 닫히지 않았는지 (await 이후 재검증용)."""
        return self.links.get(link.remote_id) is link and not link.closed

    def open_channels(self) -> List[RTCDataChannel]:
        """현재 열려 있는 데이터 채널 목록."""
        return [link.channel for link in self.links.values() if link.channel_open]

    def __contains__(self, remote_id: str) -> bool:
        return remote_id in self.links

    def __iter__(self) -> Iterator[PeerLink]:
        return iter(list(self.links.values()))

    def __len__(self) -> int:
        return len(self.links)
