"""데이터 채널 파일 전송 모듈.

피어 링크마다 하나씩 있는 순서 보장/신뢰성 데이터 채널 위에서 동작하는
간단한 파일 전송 프로토콜입니다.

Wire Format:
    1. 텍스트 핸드셰이크: {"type": "file-start", "name": ..., "size": ...}
    2. 고정 크기(기본 16 KiB) 바이너리 청크 연속 전송
    3. 종료 마커 없음 - 누적 크기가 선언 크기에 도달하면 완료

Classes:
    FileTransfer: 수신 중인 전송 상태 (PeerLink.transfer 에 보관)
    ReceivedFile: 수신 완료된 파일
    FileTransferReceiver: 데이터 채널 메시지 처리 및 재조립
    FileTransferSender: 열린 모든 데이터 채널로 N-way 전송
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Union

from aiortc import RTCDataChannel
from pydantic import ValidationError

from .config import transfer_config, storage_config
from .peer_registry import PeerLink, PeerRegistry
from ..shared.dto import FileStart

logger = logging.getLogger(__name__)


@dataclass
class FileTransfer:
    """원격 세션 하나로부터 수신 중인 파일."""
    name: str
    size: int
    sender_id: str
    received: int = 0
    chunks: List[bytes] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.received >= self.size


@dataclass
class ReceivedFile:
    """수신 완료된 파일 (다운로드 가능한 결과물)."""
    name: str
    data: bytes
    sender_id: str

    @property
    def size(self) -> int:
        return len(self.data)

    def save(self, directory: Optional[Path] = None) -> Path:
        """파일을 디렉토리에 저장합니다.

        선언된 이름에서 경로 성분은 제거하고, 같은 이름이 있으면
        `name (1).ext` 형식으로 겹치지 않는 이름을 사용합니다.

        Returns:
            Path: 저장된 파일 경로
        """
        if directory is None:
            storage_config.ensure_dirs()
            directory = storage_config.DOWNLOADS_DIR
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)

        base = Path(self.name).name or "download"
        target = directory / base
        counter = 1
        while target.exists():
            target = directory / f"{Path(base).stem} ({counter}){Path(base).suffix}"
            counter += 1

        target.write_bytes(self.data)
        logger.info(f"[File] '{self.name}' 저장: {target}")
        return target


class FileTransferReceiver:
    """데이터 채널로 들어온 메시지를 처리해 파일을 재조립합니다.

    전송 상태는 송신자의 PeerLink 에 보관되므로, 링크가 닫히면
    (레지스트리에서 제거되면) 미완료 전송도 함께 사라집니다.

    Attributes:
        registry (PeerRegistry): 피어 링크 레지스트리
        on_file (Optional[Callable]): 수신 완료 시 호출되는 콜백
        received (List[ReceivedFile]): 수신 완료된 파일 목록
    """

    def __init__(
        self,
        registry: PeerRegistry,
        on_file: Optional[Callable[[ReceivedFile], None]] = None,
    ):
        self.registry = registry
        self.on_file = on_file
        self.received: List[ReceivedFile] = []

    def handle_message(self, remote_id: str, message: Union[str, bytes]) -> None:
        """데이터 채널 메시지 하나를 처리합니다.

        텍스트는 제어 레코드, 바이너리는 청크로 처리합니다. 프로토콜 위반은
        로그만 남기고 버리며 채널이나 연결은 닫지 않습니다.
        """
        link = self.registry.get(remote_id)
        if link is None or link.closed:
            logger.warning(f"[File] 알 수 없는 피어 {remote_id[:8]}의 메시지 무시")
            return

        if isinstance(message, str):
            self._handle_control(link, message)
        elif isinstance(message, (bytes, bytearray, memoryview)):
            self._handle_chunk(link, bytes(message))
        else:
            logger.warning(f"[File] 지원하지 않는 메시지 타입: {type(message).__name__}")

    def cancel(self, link: PeerLink) -> None:
        """링크 종료 시 미완료 전송을 결과 없이 폐기합니다."""
        transfer = link.transfer
        if transfer is None:
            return
        link.transfer = None
        logger.info(
            f"[File] '{transfer.name}' 수신 취소 ({transfer.received}/{transfer.size} bytes, "
            f"피어 {link.remote_id[:8]})"
        )

    def _handle_control(self, link: PeerLink, text: str) -> None:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            logger.warning(f"[File] 피어 {link.remote_id[:8]}: 파싱할 수 없는 제어 레코드")
            return

        if not isinstance(payload, dict) or payload.get("type") != "file-start":
            logger.warning(f"[File] 피어 {link.remote_id[:8]}: 알 수 없는 제어 레코드")
            return

        try:
            start = FileStart.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"[File] 피어 {link.remote_id[:8]}: 잘못된 file-start ({e.error_count()}개 오류)")
            return

        if link.transfer is not None:
            logger.warning(f"[File] '{link.transfer.name}' 수신 중 새 전송 시작, 이전 전송 폐기")

        link.transfer = FileTransfer(name=start.name, size=start.size, sender_id=link.remote_id)
        logger.info(f"[File] '{start.name}' 수신 시작 ({start.size} bytes, 피어 {link.remote_id[:8]})")

        if link.transfer.complete:
            self._complete(link)

    def _handle_chunk(self, link: PeerLink, chunk: bytes) -> None:
        transfer = link.transfer
        if transfer is None:
            logger.warning(f"[File] 피어 {link.remote_id[:8]}: 진행 중인 전송 없이 청크 수신, 무시")
            return

        transfer.chunks.append(chunk)
        transfer.received += len(chunk)

        if transfer.complete:
            self._complete(link)

    def _complete(self, link: PeerLink) -> None:
        transfer = link.transfer
        link.transfer = None

        artifact = ReceivedFile(
            name=transfer.name,
            data=b"".join(transfer.chunks),
            sender_id=transfer.sender_id,
        )
        self.received.append(artifact)
        logger.info(f"[File] '{artifact.name}' 수신 완료 ({artifact.size} bytes, 피어 {link.remote_id[:8]})")

        if self.on_file:
            self.on_file(artifact)


class FileTransferSender:
    """열린 모든 데이터 채널로 같은 파일을 보냅니다 (멀티캐스트 없음, N-way 루프).

    채널별 bufferedAmount 가 high water 를 넘으면 bufferedamountlow 이벤트까지
    기다렸다가 다음 청크를 보냅니다.
    수신 측은 file-start 에 선언된 크기로 청크를 이어 붙이므로, 한 번에 한 파일만
    보내도록 broadcast 를 순서대로 실행합니다.
    """

    def __init__(
        self,
        registry: PeerRegistry,
        chunk_size: int = transfer_config.CHUNK_SIZE,
        high_water: int = transfer_config.HIGH_WATER,
        low_water: int = transfer_config.LOW_WATER,
    ):
        self.registry = registry
        self.chunk_size = chunk_size
        self.high_water = high_water
        self.low_water = min(low_water, high_water)
        self._lock = asyncio.Lock()

    async def broadcast(self, name: str, data: bytes) -> int:
        """파일을 모든 피어에게 전송합니다.

        Args:
            name: 선언할 파일 이름
            data: 파일 내용

        Returns:
            int: 전송을 시작한 채널 수 (열린 채널이 없으면 0)
        """
        async with self._lock:
            return await self._send(name, data)

    async def _send(self, name: str, data: bytes) -> int:
        channels = self.registry.open_channels()
        if not channels:
            logger.info(f"[File] 열린 데이터 채널 없음, '{name}' 전송 생략")
            return 0

        header = FileStart(name=name, size=len(data)).model_dump_json()
        for channel in channels:
            channel.send(header)

        logger.info(f"[File] '{name}' 전송 시작 ({len(data)} bytes → {len(channels)}개 채널)")

        for offset in range(0, len(data), self.chunk_size):
            chunk = data[offset:offset + self.chunk_size]
            for channel in channels:
                if channel.readyState != "open":
                    continue
                await self._wait_for_drain(channel)
                if channel.readyState == "open":
                    channel.send(chunk)

        logger.info(f"[File] '{name}' 전송 완료")
        return len(channels)

    async def send_file(self, path: Union[str, Path]) -> int:
        """디스크의 파일을 읽어 broadcast 합니다."""
        path = Path(path)
        data = await asyncio.get_running_loop().run_in_executor(None, path.read_bytes)
        return await self.broadcast(path.name, data)

    async def _wait_for_drain(self, channel: RTCDataChannel) -> None:
        if channel.bufferedAmount <= self.high_water:
            return

        drained = asyncio.Event()

        def on_low():
            drained.set()

        channel.bufferedAmountLowThreshold = self.low_water
        channel.on("bufferedamountlow", on_low)
        channel.on("close", on_low)
        try:
            while channel.readyState == "open" and channel.bufferedAmount > self.high_water:
                drained.clear()
                await drained.wait()
        finally:
            channel.remove_listener("bufferedamountlow", on_low)
            channel.remove_listener("close", on_low)
