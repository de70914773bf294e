"""meshcall - 시그널링 릴레이 기반 풀메시 룸 통화.

Subpackages:
    signaling: 릴레이 서버 (룸 멤버십, 메시지 중계)
    webrtc: 메시 클라이언트 (피어 연결, 미디어 트랙, 파일 전송)
    shared: 릴레이 / 클라이언트 공용 DTO
"""
