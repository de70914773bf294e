"""WebRTC 풀메시 연결 관리 모듈.

이 모듈은 릴레이 이벤트에 반응해 룸의 다른 모든 세션과 1:1 피어 연결을
만들고, 재협상하고, 정리합니다. 미디어와 데이터 채널 바이트는 연결이 맺어진 뒤
릴레이를 거치지 않고 피어 간에 직접 흐릅니다.

주요 기능:
    - all-users 수신 시 기존 멤버마다 initiator 로 연결 생성 및 offer 전송
    - offer / answer / ice 처리 (원격 세션 ID 당 PeerLink 하나, 중복 생성 없음)
    - remote description 적용 전 도착한 ICE 후보 대기열 (TTL 만료)
    - 트랙 변경 시 기존 연결 위에서 재협상
    - glare(동시 offer) 처리: 세션 ID 가 작은 쪽이 polite 로 양보
      (재협상 offer 는 answer 전까지 보류, 최초 offer 는 rollback)
    - peer-left / 룸 퇴장 시 연결, 데이터 채널, 파일 전송 상태 정리

PeerLink State Machine:
    initiator: new → offering → awaiting-answer → stable → closed
    responder: new → answering → stable → closed
    재협상: stable → offering → awaiting-answer → stable

Concurrency:
    - 단일 asyncio 이벤트 루프에서만 동작 (락 없음)
    - 모든 await 이후에는 링크가 아직 살아 있는지 재검증함
      (협상 중에 peer-left 가 도착할 수 있음)

Examples:
    >>> coordinator = MeshCoordinator(signaling_client)
    >>> await coordinator.join("R1")
    >>> async for message in signaling_client.messages():
    ...     await coordinator.handle_message(message)

See Also:
    aiortc Documentation: https://aiortc.readthedocs.io/
"""
import asyncio
import logging
import time
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaRelay
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp
from pydantic import ValidationError

from .config import connection_config, ice_config
from .file_transfer import FileTransferReceiver, FileTransferSender, ReceivedFile
from .peer_registry import LinkState, PeerLink, PeerRegistry, PendingCandidate, Role
from ..shared.dto import (
    SignalMessage,
    SESSION_ID,
    JOIN_ROOM,
    LEAVE_ROOM,
    ALL_USERS,
    PEER_LEFT,
    OFFER,
    ANSWER,
    ICE,
    ERROR,
)

logger = logging.getLogger(__name__)

MEDIA_KINDS = ("audio", "video")


class SignalingChannel(Protocol):
    """코디네이터가 사용하는 시그널링 송신 인터페이스."""

    session_id: Optional[str]

    async def send(self, message_type: str, data: dict) -> None:
        ...


def default_peer_connection_factory() -> RTCPeerConnection:
    """설정된 STUN 서버 하나를 사용하는 RTCPeerConnection 을 생성합니다."""
    config = RTCConfiguration(iceServers=[RTCIceServer(urls=[ice_config.STUN_SERVER_URL])])
    return RTCPeerConnection(configuration=config)


def parse_candidate(data) -> Optional[RTCIceCandidate]:
    """브라우저 형식의 ICE 후보 dict 를 RTCIceCandidate 로 변환합니다.

    Args:
        data: {"candidate": "candidate:...", "sdpMid": ..., "sdpMLineIndex": ...}

    Returns:
        Optional[RTCIceCandidate]: 후보. end-of-candidates (빈 문자열) 이면 None

    Raises:
        ValueError: 형식이 잘못된 경우
    """
    if not isinstance(data, dict):
        raise ValueError("candidate must be an object")

    candidate_str = data.get("candidate", "")
    if not isinstance(candidate_str, str):
        raise ValueError("candidate string missing")
    if not candidate_str:
        return None

    if candidate_str.startswith("candidate:"):
        candidate_str = candidate_str[10:]

    try:
        candidate = candidate_from_sdp(candidate_str)
    except (AssertionError, IndexError, KeyError, TypeError) as e:
        raise ValueError(f"unparseable candidate: {e}") from e

    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


def serialize_candidate(candidate: RTCIceCandidate) -> dict:
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def _stop_track(track: Optional[MediaStreamTrack]) -> None:
    """송신자에서 떼어낸 MediaRelay 복제 트랙을 멈춥니다 (원본 캡처 트랙은 유지)."""
    if track is not None:
        track.stop()


def _describe(description: RTCSessionDescription) -> dict:
    return {"sdp": description.sdp, "type": description.type}


def _parse_description(data, expected_type: str) -> RTCSessionDescription:
    if not isinstance(data, dict) or data.get("type") != expected_type:
        raise ValueError(f"expected {expected_type} description")
    sdp = data.get("sdp")
    if not isinstance(sdp, str) or not sdp:
        raise ValueError("description has no sdp")
    return RTCSessionDescription(sdp=sdp, type=expected_type)


class MeshCoordinator:
    """룸 안의 모든 원격 세션과의 피어 연결을 관리하는 클래스.

    Attributes:
        signaling (SignalingChannel): 릴레이로 메시지를 보내는 객체 (생성 시 주입)
        registry (PeerRegistry): 원격 세션 ID → PeerLink
        files (FileTransferReceiver): 데이터 채널 수신 처리
        sender (FileTransferSender): 데이터 채널 N-way 송신
        local_tracks (Callable): 새 연결에 붙일 로컬 트랙 목록 제공자
            (MediaTrackSynchronizer 가 설정)
        media_relay (MediaRelay): 캡처 트랙 하나를 여러 링크로 복제
        on_track (Optional[Callable]): 원격 트랙 수신 콜백 (remote_id, track)
        on_peer_closed (Optional[Callable]): 링크 종료 콜백 (remote_id)

    Note:
        - 각 링크의 송신자에는 MediaRelay.subscribe() 로 만든 독립 트랙을 붙임
        - 링크가 어떤 원본 트랙을 보내고 있는지는 PeerLink.local_sources 에 기록
    """

    def __init__(
        self,
        signaling: SignalingChannel,
        registry: Optional[PeerRegistry] = None,
        pc_factory: Optional[Callable[[], RTCPeerConnection]] = None,
        pending_candidate_ttl: float = connection_config.PENDING_CANDIDATE_TTL,
        on_track: Optional[Callable[[str, MediaStreamTrack], None]] = None,
        on_file: Optional[Callable[[ReceivedFile], None]] = None,
        on_peer_closed: Optional[Callable[[str], None]] = None,
    ):
        self.signaling = signaling
        self.registry = registry or PeerRegistry()
        self.pc_factory = pc_factory or default_peer_connection_factory
        self.pending_candidate_ttl = pending_candidate_ttl

        self.files = FileTransferReceiver(self.registry, on_file)
        self.sender = FileTransferSender(self.registry)
        self.media_relay = MediaRelay()

        self.local_tracks: Callable[[], List[MediaStreamTrack]] = lambda: []
        self.on_track = on_track
        self.on_peer_closed = on_peer_closed

        self.session_id: Optional[str] = getattr(signaling, "session_id", None)
        self.room_id: Optional[str] = None

    # ------------------------------------------------------------
    # 룸 입장 / 퇴장
    # ------------------------------------------------------------

    async def join(self, room_id: str) -> None:
        """룸 입장 요청. 기존 멤버 목록은 all-users 메시지로 도착합니다."""
        self.room_id = room_id
        await self.signaling.send(JOIN_ROOM, {"roomId": room_id})
        logger.info(f"[Mesh] 룸 '{room_id}' 입장 요청")

    async def leave(self) -> None:
        """룸 퇴장: 모든 PeerLink 를 즉시 닫고 릴레이에 알립니다."""
        await self.close_all()
        if self.room_id is not None:
            await self.signaling.send(LEAVE_ROOM, {})
            logger.info(f"[Mesh] 룸 '{self.room_id}' 퇴장")
            self.room_id = None

    # ------------------------------------------------------------
    # 시그널링 메시지 처리
    # ------------------------------------------------------------

    async def handle_message(self, raw: dict) -> None:
        """릴레이에서 받은 메시지 하나를 처리합니다.

        처리하는 메시지 타입:
            - session-id: 릴레이가 발급한 내 세션 ID
            - all-users: 기존 멤버 목록 → initiator 로 연결
            - offer / answer / ice: 협상
            - peer-left: 해당 링크 정리
            - error: 릴레이 오류 (로그만)
        """
        try:
            message = SignalMessage.model_validate(raw)
        except ValidationError:
            logger.warning("[Mesh] 잘못된 시그널링 메시지 무시")
            return

        data = message.data

        if message.type == SESSION_ID:
            self.session_id = data.get("sessionId")
        elif message.type == ALL_USERS:
            for remote_id in data.get("sessionIds") or []:
                if isinstance(remote_id, str):
                    await self.connect_to(remote_id)
        elif message.type == OFFER:
            await self.handle_offer(data.get("callerId"), data.get("sdp"))
        elif message.type == ANSWER:
            await self.handle_answer(data.get("callerId"), data.get("sdp"))
        elif message.type == ICE:
            await self.handle_candidate(data.get("callerId"), data.get("candidate"))
        elif message.type == PEER_LEFT:
            remote_id = data.get("sessionId")
            if isinstance(remote_id, str):
                await self.close_link(remote_id, reason="peer-left")
        elif message.type == ERROR:
            logger.warning(f"[Mesh] 릴레이 오류: {data.get('message')}")
        else:
            logger.warning(f"[Mesh] 알 수 없는 메시지 타입: {message.type}")

    async def connect_to(self, remote_id: str) -> None:
        """기존 멤버에게 initiator 로 연결합니다.

        이미 링크가 있으면 재사용하며, 협상 중인 링크는 건드리지 않습니다.
        """
        if remote_id == self.session_id:
            return

        link = self.registry.get(remote_id)
        if link is None:
            link = self._create_link(remote_id, Role.INITIATOR)
        elif link.state != LinkState.STABLE:
            logger.info(f"[Mesh] 피어 {remote_id[:8]} 이미 협상 중 ({link.state.value}), 연결 생략")
            return

        await self._offer(link)

    async def handle_offer(self, caller_id, sdp) -> None:
        """원격 offer 처리: 새 링크면 responder 로 생성, 기존 링크면 재사용."""
        if not isinstance(caller_id, str) or not caller_id:
            logger.warning("[Mesh] callerId 없는 offer 무시")
            return

        link = self.registry.get(caller_id)
        if link is None:
            link = self._create_link(caller_id, Role.RESPONDER)
        elif link.state in (LinkState.OFFERING, LinkState.AWAITING_ANSWER):
            link = await self._resolve_glare(link)
            if link is None:
                return

        pc = link.pc
        link.state = LinkState.ANSWERING
        try:
            description = _parse_description(sdp, "offer")
            await pc.setRemoteDescription(description)
            if not self.registry.is_live(link):
                return
            await self._on_remote_description(link)
            if not self.registry.is_live(link):
                return

            answer = await pc.createAnswer()
            if not self.registry.is_live(link):
                return
            await pc.setLocalDescription(answer)
        except Exception as e:
            logger.error(f"[Mesh] 피어 {caller_id[:8]} offer 처리 실패: {e}")
            await self.close_link(caller_id, reason="negotiation error")
            return

        if not self.registry.is_live(link):
            return

        link.state = LinkState.STABLE
        await self.signaling.send(ANSWER, {"target": caller_id, "sdp": _describe(pc.localDescription)})
        logger.info(f"[Mesh] 피어 {caller_id[:8]}에게 answer 전송 (stable)")

        await self._after_stable(link)

    async def handle_answer(self, caller_id, sdp) -> None:
        """awaiting-answer 상태의 링크에 answer 를 적용합니다."""
        if not isinstance(caller_id, str) or not caller_id:
            logger.warning("[Mesh] callerId 없는 answer 무시")
            return

        link = self.registry.get(caller_id)
        if link is None or link.state != LinkState.AWAITING_ANSWER:
            state = link.state.value if link else "none"
            logger.warning(f"[Mesh] 피어 {caller_id[:8]} 예상하지 않은 answer 무시 (state={state})")
            return

        try:
            answer = _parse_description(sdp, "answer")
            if link.held_offer is not None:
                offer, link.held_offer = link.held_offer, None
                await link.pc.setLocalDescription(offer)
                if not self.registry.is_live(link):
                    return
            await link.pc.setRemoteDescription(answer)
        except Exception as e:
            logger.error(f"[Mesh] 피어 {caller_id[:8]} answer 적용 실패: {e}")
            await self.close_link(caller_id, reason="negotiation error")
            return

        if not self.registry.is_live(link):
            return

        link.state = LinkState.STABLE
        logger.info(f"[Mesh] 피어 {caller_id[:8]} 연결 stable")
        await self._on_remote_description(link)
        await self._after_stable(link)

    async def handle_candidate(self, caller_id, data) -> None:
        """원격 ICE 후보 처리.

        remote description 이 아직 없으면 대기열에 넣고, 있으면 바로 적용합니다.
        형식이 잘못된 후보는 로그만 남기고 버립니다.
        """
        if not isinstance(caller_id, str) or not caller_id:
            return

        link = self.registry.get(caller_id)
        if link is None or link.closed:
            logger.debug(f"[Mesh] 알 수 없는 피어 {caller_id[:8]}의 ICE 후보 무시")
            return

        try:
            candidate = parse_candidate(data)
        except ValueError as e:
            logger.warning(f"[Mesh] 피어 {caller_id[:8]} ICE 후보 파싱 실패: {e}")
            return

        if candidate is None:
            return

        if not link.remote_description_set:
            link.pending_candidates.append(PendingCandidate(candidate, time.monotonic()))
            self._schedule_expiry(link)
            logger.debug(f"[Mesh] 피어 {caller_id[:8]} ICE 후보 대기 ({len(link.pending_candidates)}개)")
            return

        await self._apply_candidate(link, candidate)

    # ------------------------------------------------------------
    # 재협상 / 트랙 관리 (MediaTrackSynchronizer 에서 호출)
    # ------------------------------------------------------------

    async def renegotiate(self, remote_id: str) -> None:
        """기존 연결을 유지한 채 새 offer 를 보냅니다.

        링크가 협상 중이면 stable 에 도달한 뒤 다시 offer 하도록 표시만 합니다.
        """
        link = self.registry.get(remote_id)
        if link is None or link.closed:
            return

        if link.state == LinkState.STABLE:
            await self._offer(link)
        else:
            link.renegotiate_requested = True
            logger.info(f"[Mesh] 피어 {remote_id[:8]} 협상 중 ({link.state.value}), 재협상 예약")

    async def renegotiate_all(self, remote_ids: Optional[Iterable[str]] = None) -> None:
        targets = list(remote_ids) if remote_ids is not None else [link.remote_id for link in self.registry]
        for remote_id in targets:
            await self.renegotiate(remote_id)

    def set_outgoing_tracks(self, tracks: Dict[str, Optional[MediaStreamTrack]]) -> List[str]:
        """모든 링크의 송신 트랙을 종류별로 교체/추가/제거합니다.

        Args:
            tracks: {"audio": track 또는 None, "video": track 또는 None}

        Returns:
            List[str]: 토폴로지가 바뀐(트랙 종류가 추가/제거된) 원격 세션 ID
        """
        changed = []
        for link in self.registry:
            if link.closed:
                continue
            results = [self._set_outgoing_track(link, kind, tracks.get(kind)) for kind in MEDIA_KINDS]
            if any(results):
                changed.append(link.remote_id)
        return changed

    # ------------------------------------------------------------
    # 정리
    # ------------------------------------------------------------

    async def close_link(self, remote_id: str, reason: str = "closed") -> None:
        """PeerLink 를 닫고 레지스트리에서 제거합니다.

        Cleanup Steps:
            1. 상태 closed, 후보 대기열/만료 타이머 정리
            2. 미완료 파일 전송 폐기 (결과 없음)
            3. 데이터 채널 닫기
            4. RTCPeerConnection 종료
        """
        link = self.registry.remove(remote_id)
        if link is None:
            return

        await self._teardown(link)
        logger.info(f"[Mesh] 피어 {remote_id[:8]} 연결 종료 ({reason})")

        if self.on_peer_closed:
            self.on_peer_closed(remote_id)

    async def close_all(self) -> None:
        for link in self.registry:
            await self.close_link(link.remote_id, reason="room exit")

    # ------------------------------------------------------------
    # 상태 조회
    # ------------------------------------------------------------

    def state_of(self, remote_id: str) -> Optional[LinkState]:
        link = self.registry.get(remote_id)
        return link.state if link else None

    def is_polite(self, remote_id: str) -> bool:
        """glare 시 양보하는 쪽인지 여부 (세션 ID 가 사전순으로 작은 쪽)."""
        return (self.session_id or "") < remote_id

    # ------------------------------------------------------------
    # 내부
    # ------------------------------------------------------------

    def _create_link(self, remote_id: str, role: Role) -> PeerLink:
        pc = self.pc_factory()
        link = self.registry.add(PeerLink(remote_id=remote_id, pc=pc, role=role))
        self._bind_events(link)

        if role == Role.INITIATOR:
            channel = pc.createDataChannel(connection_config.DATA_CHANNEL_LABEL)
            self._bind_channel(link, channel)

        for track in self.local_tracks():
            pc.addTrack(self.media_relay.subscribe(track))
            link.local_sources[track.kind] = track

        logger.info(f"[Mesh] 피어 {remote_id[:8]} 링크 생성 ({role.value}, 총 {len(self.registry)}개)")
        return link

    def _bind_events(self, link: PeerLink) -> None:
        pc = link.pc
        remote_id = link.remote_id

        @pc.on("icecandidate")
        async def on_ice_candidate(candidate):
            """로컬 ICE 후보 생성 시 릴레이로 전달."""
            if candidate is None or not self.registry.is_live(link):
                return
            link.local_candidates.append(serialize_candidate(candidate))
            await self._flush_local_candidates(link)

        @pc.on("datachannel")
        def on_datachannel(channel):
            logger.info(f"[Mesh] 피어 {remote_id[:8]} 데이터 채널 수신: {channel.label}")
            self._bind_channel(link, channel)

        @pc.on("track")
        def on_track(track):
            logger.info(f"[Mesh] 피어 {remote_id[:8]} {track.kind} 트랙 수신")
            link.remote_tracks[track.kind] = track
            if self.on_track:
                self.on_track(remote_id, track)

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            logger.info(f"[Mesh] 피어 {remote_id[:8]} 연결 상태: {pc.connectionState}")
            if pc.connectionState == "failed" and self.registry.is_live(link):
                await self.close_link(remote_id, reason="connection failed")

    def _bind_channel(self, link: PeerLink, channel) -> None:
        link.channel = channel
        remote_id = link.remote_id

        @channel.on("open")
        def on_open():
            logger.info(f"[Mesh] 피어 {remote_id[:8]} 데이터 채널 열림")

        @channel.on("message")
        def on_message(message):
            self.files.handle_message(remote_id, message)

    async def _offer(self, link: PeerLink) -> None:
        """offer 생성 → local description 적용 → 릴레이 전송.

        polite 쪽의 재협상 offer 는 answer 가 올 때까지 local description 으로
        적용하지 않습니다 (held_offer). 그 사이 상대 offer 가 오면 연결이 stable 인
        상태이므로 보류한 offer 만 버리고 바로 answer 할 수 있습니다.
        """
        pc = link.pc
        link.state = LinkState.OFFERING
        link.renegotiate_requested = False
        link.held_offer = None
        hold = link.remote_description_set and self.is_polite(link.remote_id)

        try:
            offer = await pc.createOffer()
            if not self._still_offering(link):
                return
            if hold:
                link.held_offer = offer
            else:
                await pc.setLocalDescription(offer)
        except Exception as e:
            logger.error(f"[Mesh] 피어 {link.remote_id[:8]} offer 생성 실패: {e}")
            await self.close_link(link.remote_id, reason="negotiation error")
            return

        if not self._still_offering(link):
            return

        description = offer if hold else pc.localDescription
        link.state = LinkState.AWAITING_ANSWER
        await self.signaling.send(OFFER, {"target": link.remote_id, "sdp": _describe(description)})
        logger.info(f"[Mesh] 피어 {link.remote_id[:8]}에게 offer 전송")

    def _still_offering(self, link: PeerLink) -> bool:
        if not self.registry.is_live(link):
            return False
        if link.state != LinkState.OFFERING:
            # 협상 중 들어온 원격 offer 에 양보함 - stable 이후 다시 offer
            link.renegotiate_requested = True
            return False
        return True

    async def _resolve_glare(self, link: PeerLink) -> Optional[PeerLink]:
        """양쪽이 동시에 offer 한 경우 처리.

        Returns:
            Optional[PeerLink]: 들어온 offer 를 적용할 링크. 무시하면 None

        Note:
            - 재협상 중인 polite 쪽은 offer 를 보류(held_offer)하고 있으므로
              보류한 offer 만 버리면 되고, 연결과 데이터 채널은 그대로 유지됩니다.
            - 최초 협상에서는 로컬 offer 를 rollback 합니다. rollback 을 지원하지 않는
              구현(aiortc)에서는 아직 연결된 적 없는 피어 연결을 버리고
              responder 링크를 새로 만듭니다.
        """
        remote_id = link.remote_id
        if not self.is_polite(remote_id):
            logger.info(f"[Mesh] glare: 피어 {remote_id[:8]}의 offer 무시 (impolite)")
            return None

        link.renegotiate_requested = True

        if link.held_offer is not None or link.pc.signalingState != "have-local-offer":
            link.held_offer = None
            logger.info(f"[Mesh] glare: 피어 {remote_id[:8]}에 양보, 보류한 offer 폐기 (polite)")
            return link

        logger.info(f"[Mesh] glare: 피어 {remote_id[:8]}에 양보, 로컬 offer rollback (polite)")
        try:
            await link.pc.setLocalDescription(RTCSessionDescription(sdp="", type="rollback"))
        except Exception as e:
            if link.remote_description_set:
                logger.error(f"[Mesh] 피어 {remote_id[:8]} rollback 실패 ({e}), offer 무시")
                return None
            logger.warning(f"[Mesh] 피어 {remote_id[:8]} rollback 실패 ({e}), responder 링크로 재생성")
            return await self._recreate_as_responder(link)

        return link if self.registry.is_live(link) else None

    async def _recreate_as_responder(self, link: PeerLink) -> Optional[PeerLink]:
        remote_id = link.remote_id
        pending = list(link.pending_candidates)

        self.registry.remove(remote_id)
        await self._teardown(link)

        if remote_id in self.registry:
            return None

        fresh = self._create_link(remote_id, Role.RESPONDER)
        fresh.pending_candidates.extend(pending)
        fresh.renegotiate_requested = True
        if pending:
            self._schedule_expiry(fresh)
        return fresh

    async def _teardown(self, link: PeerLink) -> None:
        """레지스트리에서 빠진 링크의 자원을 정리합니다."""
        link.state = LinkState.CLOSED
        if link.expiry_handle is not None:
            link.expiry_handle.cancel()
            link.expiry_handle = None
        link.pending_candidates.clear()
        link.local_candidates.clear()

        self.files.cancel(link)

        if link.channel is not None:
            link.channel.close()

        for transceiver in link.pc.getTransceivers():
            _stop_track(transceiver.sender.track)
        link.local_sources.clear()

        await link.pc.close()

    async def _on_remote_description(self, link: PeerLink) -> None:
        """remote description 적용 직후 대기 후보를 도착 순서대로 적용합니다."""
        link.remote_description_set = True
        if link.expiry_handle is not None:
            link.expiry_handle.cancel()
            link.expiry_handle = None

        now = time.monotonic()
        while link.pending_candidates:
            entry = link.pending_candidates.popleft()
            if now - entry.received_at > self.pending_candidate_ttl:
                logger.warning(f"[Mesh] 피어 {link.remote_id[:8]} 만료된 ICE 후보 폐기")
                continue
            await self._apply_candidate(link, entry.candidate)
            if not self.registry.is_live(link):
                return

    async def _apply_candidate(self, link: PeerLink, candidate: RTCIceCandidate) -> None:
        try:
            await link.pc.addIceCandidate(candidate)
        except Exception as e:
            logger.warning(f"[Mesh] 피어 {link.remote_id[:8]} ICE 후보 적용 실패: {e}")

    def _schedule_expiry(self, link: PeerLink) -> None:
        if link.expiry_handle is not None:
            return
        loop = asyncio.get_running_loop()
        link.expiry_handle = loop.call_later(self.pending_candidate_ttl, self._expire_pending, link)

    def _expire_pending(self, link: PeerLink) -> None:
        """TTL 이 지난 대기 후보를 버립니다 (remote description 이 끝내 오지 않는 경우)."""
        link.expiry_handle = None
        if link.closed:
            return

        now = time.monotonic()
        dropped = 0
        while link.pending_candidates and now - link.pending_candidates[0].received_at >= self.pending_candidate_ttl:
            link.pending_candidates.popleft()
            dropped += 1

        if dropped:
            logger.warning(f"[Mesh] 피어 {link.remote_id[:8]} ICE 후보 {dropped}개 만료 (remote description 없음)")

        if link.pending_candidates:
            delay = self.pending_candidate_ttl - (now - link.pending_candidates[0].received_at)
            link.expiry_handle = asyncio.get_running_loop().call_later(max(delay, 0.0), self._expire_pending, link)

    async def _flush_local_candidates(self, link: PeerLink) -> None:
        while link.local_candidates and self.registry.is_live(link):
            candidate = link.local_candidates.pop(0)
            await self.signaling.send(ICE, {"target": link.remote_id, "candidate": candidate})

    async def _after_stable(self, link: PeerLink) -> None:
        if link.renegotiate_requested and self.registry.is_live(link):
            logger.info(f"[Mesh] 피어 {link.remote_id[:8]} 예약된 재협상 실행")
            await self._offer(link)

    def _set_outgoing_track(self, link: PeerLink, kind: str, track: Optional[MediaStreamTrack]) -> bool:
        """링크 하나의 특정 종류 송신 트랙을 설정합니다.

        Returns:
            bool: 트랙 종류가 새로 추가되거나 제거되었으면 True (교체만이면 False)
        """
        pc = link.pc
        transceivers = [t for t in pc.getTransceivers() if t.kind == kind and not t.stopped]
        active = next((t for t in transceivers if t.sender.track is not None), None)

        if track is None:
            link.local_sources.pop(kind, None)
            if active is None:
                return False
            previous = active.sender.track
            active.sender.replaceTrack(None)
            active.direction = "recvonly"
            _stop_track(previous)
            logger.info(f"[Mesh] 피어 {link.remote_id[:8]} {kind} 송신 트랙 제거")
            return True

        if active is not None:
            if link.local_sources.get(kind) is not track:
                previous = active.sender.track
                active.sender.replaceTrack(self.media_relay.subscribe(track))
                link.local_sources[kind] = track
                _stop_track(previous)
                logger.info(f"[Mesh] 피어 {link.remote_id[:8]} {kind} 송신 트랙 교체")
            return False

        link.local_sources[kind] = track
        if transceivers:
            idle = transceivers[0]
            idle.sender.replaceTrack(self.media_relay.subscribe(track))
            idle.direction = "sendrecv"
        else:
            pc.addTrack(self.media_relay.subscribe(track))
        logger.info(f"[Mesh] 피어 {link.remote_id[:8]} {kind} 송신 트랙 추가")
        return True

    async def broadcast_file(self, name: str, data: bytes) -> int:
        """열린 모든 데이터 채널로 파일을 보냅니다."""
        return await self.sender.broadcast(name, data)
