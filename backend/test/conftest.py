"""공용 테스트 픽스처.

실제 SignalingRelay 를 거치는 in-process 루프백 시그널링과, aiortc
RTCPeerConnection 인터페이스를 흉내내는 가짜 피어 연결을 제공합니다.

가짜 SDP 는 JSON 으로 (피어 연결 ID, 송신 트랙, 데이터 채널 라벨) 을 담으며
상대편 가짜 연결은 이를 해석해 track / datachannel 이벤트를 발생시킵니다.
"""
import asyncio
import itertools
import json
from typing import Dict, List, Optional

import pytest
from aiortc import AudioStreamTrack, RTCIceCandidate, RTCSessionDescription, VideoStreamTrack
from aiortc.exceptions import InvalidStateError
from pyee.asyncio import AsyncIOEventEmitter

from meshcall.signaling import SignalingRelay
from meshcall.webrtc import CaptureError, MeshCoordinator, MediaTrackSynchronizer


# ============================================================
# 가짜 피어 연결
# ============================================================

class FakeSender:
    def __init__(self, track=None):
        self.track = track

    def replaceTrack(self, track):
        self.track = track


class FakeTransceiver:
    def __init__(self, kind: str, sender: FakeSender, direction: str = "sendrecv"):
        self.kind = kind
        self.sender = sender
        self.direction = direction
        self.stopped = False


class RemoteTrack(AsyncIOEventEmitter):
    """상대편이 보내는 트랙 (종류와 ID 만 가짐)."""

    def __init__(self, kind: str, track_id: str):
        super().__init__()
        self.kind = kind
        self.id = track_id


class FakeDataChannel(AsyncIOEventEmitter):
    def __init__(self, label: str):
        super().__init__()
        self.label = label
        self.readyState = "connecting"
        self.bufferedAmount = 0
        self.bufferedAmountLowThreshold = 0
        self.remote: Optional["FakeDataChannel"] = None
        self.sent: List = []

    def send(self, data):
        if self.readyState != "open":
            raise InvalidStateError("data channel is not open")
        self.sent.append(data)
        if self.remote is not None and self.remote.readyState == "open":
            self.remote.emit("message", data)

    def close(self):
        if self.readyState == "closed":
            return
        self.readyState = "closed"
        self.emit("close")
        if self.remote is not None:
            self.remote.close()


class FakeNetwork:
    """가짜 피어 연결 ID → 객체 (SDP 에서 상대편을 찾는 데 사용)."""

    def __init__(self):
        self.pcs: Dict[int, "FakePeerConnection"] = {}
        self._ids = itertools.count(1)

    def next_id(self) -> int:
        return next(self._ids)

    def factory(self, supports_rollback: bool = True):
        return lambda: FakePeerConnection(self, supports_rollback=supports_rollback)


class FakePeerConnection(AsyncIOEventEmitter):
    """aiortc RTCPeerConnection 의 메시 코디네이터가 쓰는 부분만 흉내냅니다."""

    def __init__(self, network: FakeNetwork, supports_rollback: bool = True):
        super().__init__()
        self.network = network
        self.pc_id = network.next_id()
        network.pcs[self.pc_id] = self
        self.supports_rollback = supports_rollback

        self.signalingState = "stable"
        self.connectionState = "new"
        self.localDescription: Optional[RTCSessionDescription] = None
        self.remoteDescription: Optional[RTCSessionDescription] = None
        self.remote_pc: Optional["FakePeerConnection"] = None

        self.transceivers: List[FakeTransceiver] = []
        self.channels: List[FakeDataChannel] = []
        self.applied_remote: List[RTCSessionDescription] = []
        self.added_candidates: List[RTCIceCandidate] = []
        self.seen_track_ids = set()
        self.closed = False
        self._candidate_port = itertools.count(50000)

    # -- 트랙 / 채널 --------------------------------------------------

    def addTrack(self, track):
        sender = FakeSender(track)
        self.transceivers.append(FakeTransceiver(track.kind, sender))
        return sender

    def getTransceivers(self):
        return list(self.transceivers)

    def createDataChannel(self, label: str):
        channel = FakeDataChannel(label)
        self.channels.append(channel)
        return channel

    def sending_tracks(self) -> Dict[str, object]:
        return {
            t.kind: t.sender.track
            for t in self.transceivers
            if t.sender.track is not None and t.direction in ("sendrecv", "sendonly")
        }

    # -- 협상 ---------------------------------------------------------

    def _sdp(self) -> str:
        return json.dumps({
            "pc": self.pc_id,
            "tracks": [{"kind": kind, "id": track.id} for kind, track in self.sending_tracks().items()],
            "channels": [channel.label for channel in self.channels],
        })

    async def createOffer(self):
        self._check_open()
        return RTCSessionDescription(sdp=self._sdp(), type="offer")

    async def createAnswer(self):
        self._check_open()
        if self.signalingState != "have-remote-offer":
            raise InvalidStateError("no remote offer")
        return RTCSessionDescription(sdp=self._sdp(), type="answer")

    async def setLocalDescription(self, description):
        self._check_open()
        if description.type == "rollback":
            if not self.supports_rollback:
                raise InvalidStateError("rollback is not supported")
            if self.signalingState != "have-local-offer":
                raise InvalidStateError("nothing to roll back")
            self.signalingState = "stable"
            return

        if description.type == "offer":
            if self.signalingState != "stable":
                raise InvalidStateError(f"cannot apply local offer in {self.signalingState}")
            self.signalingState = "have-local-offer"
        else:
            if self.signalingState != "have-remote-offer":
                raise InvalidStateError(f"cannot apply local answer in {self.signalingState}")
            self.signalingState = "stable"

        first = self.localDescription is None
        self.localDescription = description
        if first:
            self.emit("icecandidate", self._make_candidate())

    async def setRemoteDescription(self, description):
        self._check_open()
        if description.type == "offer":
            if self.signalingState != "stable":
                raise InvalidStateError(f"cannot apply remote offer in {self.signalingState}")
            self.signalingState = "have-remote-offer"
        else:
            if self.signalingState != "have-local-offer":
                raise InvalidStateError(f"cannot apply remote answer in {self.signalingState}")
            self.signalingState = "stable"

        payload = json.loads(description.sdp)
        self.remote_pc = self.network.pcs.get(payload["pc"])
        self.remoteDescription = description
        self.applied_remote.append(description)

        for info in payload["tracks"]:
            if info["id"] not in self.seen_track_ids:
                self.seen_track_ids.add(info["id"])
                self.emit("track", RemoteTrack(info["kind"], info["id"]))

        if description.type == "answer":
            self._connect()

    async def addIceCandidate(self, candidate):
        if self.remoteDescription is None:
            raise InvalidStateError("remote description is not set")
        self.added_candidates.append(candidate)

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self.signalingState = "closed"
        self.connectionState = "closed"
        for channel in self.channels:
            channel.close()

    # -- 내부 ---------------------------------------------------------

    def _check_open(self):
        if self.closed:
            raise InvalidStateError("peer connection is closed")

    def _make_candidate(self) -> RTCIceCandidate:
        return RTCIceCandidate(
            component=1,
            foundation=str(self.pc_id),
            ip=f"192.0.2.{self.pc_id % 250 + 1}",
            port=next(self._candidate_port),
            priority=2130706431,
            protocol="udp",
            type="host",
            sdpMid="0",
            sdpMLineIndex=0,
        )

    def _connect(self):
        """answer 적용 시 아직 짝이 없는 데이터 채널을 상대편과 연결합니다."""
        remote = self.remote_pc
        if remote is None or remote.closed:
            return

        self.connectionState = "connected"
        remote.connectionState = "connected"

        for channel in self.channels:
            if channel.remote is not None:
                continue
            peer_channel = FakeDataChannel(channel.label)
            channel.remote = peer_channel
            peer_channel.remote = channel
            remote.channels.append(peer_channel)

            channel.readyState = "open"
            peer_channel.readyState = "open"
            remote.emit("datachannel", peer_channel)
            channel.emit("open")
            peer_channel.emit("open")


# ============================================================
# 가짜 캡처
# ============================================================

class FakeCapture:
    """aiortc 더미 트랙을 돌려주는 캡처 구현."""

    def __init__(self):
        self.fail_user_media = False
        self.fail_display = False
        self.user_media: List[List] = []
        self.displays: List = []

    async def open_user_media(self, audio: bool = True, video: bool = False):
        await asyncio.sleep(0)
        if self.fail_user_media:
            raise CaptureError("camera is busy")
        tracks = []
        if audio:
            tracks.append(AudioStreamTrack())
        if video:
            tracks.append(VideoStreamTrack())
        self.user_media.append(tracks)
        return tracks

    async def open_display(self):
        await asyncio.sleep(0)
        if self.fail_display:
            raise CaptureError("permission denied")
        track = VideoStreamTrack()
        self.displays.append(track)
        return track


# ============================================================
# 루프백 시그널링 + 메시 하네스
# ============================================================

class LoopbackSignaling:
    """실제 SignalingRelay 에 in-process 로 붙는 시그널링 클라이언트."""

    def __init__(self, relay: SignalingRelay):
        self.relay = relay
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.session_id: Optional[str] = None
        self.sent: List = []
        self.received: List[dict] = []

    def connect(self, session_id: Optional[str] = None) -> str:
        session = self.relay.register(self._deliver, session_id=session_id)
        self.session_id = session.session_id
        return self.session_id

    async def _deliver(self, message: dict):
        self.received.append(message)
        await self.inbox.put(message)

    async def send(self, message_type: str, data: dict):
        self.sent.append((message_type, data))
        self.relay.handle(self.session_id, {"type": message_type, "data": data})


class MeshClient:
    def __init__(self, signaling: LoopbackSignaling, coordinator: MeshCoordinator, media: MediaTrackSynchronizer,
                 capture: FakeCapture):
        self.signaling = signaling
        self.coordinator = coordinator
        self.media = media
        self.capture = capture
        self.files = []
        self.processing = False
        self.pump: Optional[asyncio.Task] = None

    @property
    def session_id(self) -> str:
        return self.signaling.session_id

    def link(self, other: "MeshClient"):
        return self.coordinator.registry.get(other.session_id)


class MeshHarness:
    """여러 클라이언트를 실제 릴레이 하나에 연결해 메시를 구성합니다."""

    def __init__(self):
        self.relay = SignalingRelay()
        self.network = FakeNetwork()
        self.clients: List[MeshClient] = []
        self.errors: List[BaseException] = []

    def add_client(self, session_id: Optional[str] = None, supports_rollback: bool = True,
                   renegotiate_on_replace: bool = True) -> MeshClient:
        signaling = LoopbackSignaling(self.relay)
        signaling.connect(session_id)
        coordinator = MeshCoordinator(signaling, pc_factory=self.network.factory(supports_rollback))
        capture = FakeCapture()
        media = MediaTrackSynchronizer(coordinator, capture, renegotiate_on_replace=renegotiate_on_replace)
        client = MeshClient(signaling, coordinator, media, capture)
        coordinator.files.on_file = client.files.append
        client.pump = asyncio.create_task(self._pump(client))
        self.clients.append(client)
        return client

    async def _pump(self, client: MeshClient):
        while True:
            message = await client.signaling.inbox.get()
            client.processing = True
            try:
                await client.coordinator.handle_message(message)
            except Exception as e:
                self.errors.append(e)
            finally:
                client.processing = False
                client.signaling.inbox.task_done()

    def _busy(self) -> bool:
        if any(s.busy or not s.outbox.empty() for s in self.relay.sessions.values()):
            return True
        return any(c.processing or not c.signaling.inbox.empty() for c in self.clients)

    async def settle(self):
        """릴레이 큐, 클라이언트 수신함, 예약된 이벤트 핸들러가 모두 빌 때까지 기다립니다."""
        idle = 0
        while idle < 5:
            busy = self._busy()
            await self.relay.drain()
            for client in self.clients:
                await client.signaling.inbox.join()
            await asyncio.sleep(0)
            idle = 0 if busy else idle + 1

    async def close(self):
        for client in self.clients:
            client.pump.cancel()
            client.media.close()
        await asyncio.gather(*(c.pump for c in self.clients), return_exceptions=True)
        await self.relay.close_all()


@pytest.fixture
async def mesh():
    harness = MeshHarness()
    yield harness
    await harness.close()
    assert not harness.errors


@pytest.fixture
def network():
    return FakeNetwork()
