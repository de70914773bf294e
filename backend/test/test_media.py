"""MediaTrackSynchronizer / MutableAudioTrack 테스트."""
import asyncio

import pytest
from aiortc import MediaStreamTrack
from av import AudioFrame

from meshcall.webrtc import CaptureError, MutableAudioTrack, RemoteMediaSink

A = "aaaaaaaa-0000-4000-8000-000000000001"
B = "bbbbbbbb-0000-4000-8000-000000000002"


async def start_call(mesh, a_video=False, b_video=False, renegotiate_on_replace=True):
    a = mesh.add_client(A, renegotiate_on_replace=renegotiate_on_replace)
    b = mesh.add_client(B)
    await a.media.set_video_enabled(a_video)
    await b.media.set_video_enabled(b_video)

    await a.coordinator.join("R1")
    await mesh.settle()
    await b.coordinator.join("R1")
    await mesh.settle()
    return a, b


def offers(client) -> int:
    return len([s for s in client.signaling.sent if s[0] == "offer"])


def inbound_video(receiver, sender):
    return receiver.link(sender).remote_tracks.get("video")


def outbound_video(sender, receiver):
    return sender.link(receiver).pc.sending_tracks().get("video")


async def test_new_link_gets_current_tracks(mesh):
    a, b = await start_call(mesh, a_video=True)

    assert set(a.link(b).pc.sending_tracks()) == {"audio", "video"}
    assert a.link(b).local_sources["video"] is a.media.camera
    assert inbound_video(b, a).id == outbound_video(a, b).id
    assert "audio" in a.link(b).remote_tracks


async def test_enable_video_mid_call_renegotiates(mesh):
    a, b = await start_call(mesh)
    pc = b.link(a).pc
    descriptions = len(pc.applied_remote)
    old_audio = a.media.audio

    assert inbound_video(b, a) is None

    await a.media.set_video_enabled(True)
    await mesh.settle()

    assert b.link(a).pc is pc
    assert len(pc.applied_remote) == descriptions + 1
    assert inbound_video(b, a).id == outbound_video(a, b).id
    assert a.media.video_enabled
    assert old_audio.readyState == "ended"
    assert a.coordinator.state_of(B).value == "stable"


async def test_disable_video_removes_track(mesh):
    a, b = await start_call(mesh, a_video=True)
    camera = a.media.camera

    await a.media.set_video_enabled(False)
    await mesh.settle()

    assert camera.readyState == "ended"
    assert "video" not in a.link(b).pc.sending_tracks()
    assert "video" not in a.link(b).local_sources
    video = [t for t in a.link(b).pc.getTransceivers() if t.kind == "video"]
    assert video[0].direction == "recvonly"
    assert video[0].sender.track is None

    # 다시 켜면 비어 있는 트랜시버를 재사용
    await a.media.set_video_enabled(True)
    await mesh.settle()

    video = [t for t in a.link(b).pc.getTransceivers() if t.kind == "video"]
    assert len(video) == 1
    assert video[0].direction == "sendrecv"
    assert inbound_video(b, a).id == outbound_video(a, b).id


async def test_screen_share_swaps_source_without_teardown(mesh):
    a, b = await start_call(mesh, a_video=True)
    pc_a, pc_b = a.link(b).pc, b.link(a).pc
    camera = a.media.camera

    await a.media.start_screen_share()
    await mesh.settle()

    screen = a.capture.displays[0]
    assert a.media.sharing_screen
    assert a.link(b).local_sources["video"] is screen
    assert inbound_video(b, a).id == outbound_video(a, b).id
    assert a.link(b).pc is pc_a
    assert b.link(a).pc is pc_b

    await a.media.stop_screen_share()
    await mesh.settle()

    assert not a.media.sharing_screen
    assert screen.readyState == "ended"
    assert a.media.camera is camera
    assert a.link(b).local_sources["video"] is camera
    assert inbound_video(b, a).id == outbound_video(a, b).id
    assert b.link(a).pc is pc_b


async def test_detached_relay_copies_are_stopped(mesh):
    a, b = await start_call(mesh, a_video=True)
    camera_copy = outbound_video(a, b)
    audio_copy = a.link(b).pc.sending_tracks()["audio"]

    await a.media.start_screen_share()
    await mesh.settle()
    screen_copy = outbound_video(a, b)

    assert camera_copy.readyState == "ended"
    assert a.media.camera.readyState == "live"
    assert screen_copy.readyState == "live"

    await a.coordinator.close_link(B)

    assert screen_copy.readyState == "ended"
    assert audio_copy.readyState == "ended"
    assert a.media.screen.readyState == "live"
    assert a.media.audio.readyState == "live"


async def test_screen_share_start_twice_is_noop(mesh):
    a, b = await start_call(mesh)

    await a.media.start_screen_share()
    await mesh.settle()
    sent = offers(a)

    await a.media.start_screen_share()
    await mesh.settle()

    assert len(a.capture.displays) == 1
    assert offers(a) == sent


async def test_display_track_ended_stops_sharing(mesh):
    a, b = await start_call(mesh, a_video=True)
    await a.media.start_screen_share()
    await mesh.settle()

    a.capture.displays[0].stop()
    await mesh.settle()

    assert not a.media.sharing_screen
    assert a.link(b).local_sources["video"] is a.media.camera


async def test_screen_share_without_camera_removes_video_on_stop(mesh):
    a, b = await start_call(mesh)

    await a.media.start_screen_share()
    await mesh.settle()
    assert "video" in a.link(b).pc.sending_tracks()

    await a.media.stop_screen_share()
    await mesh.settle()

    assert "video" not in a.link(b).pc.sending_tracks()


async def test_camera_failure_keeps_previous_state(mesh):
    a, b = await start_call(mesh)
    audio = a.media.audio
    sent = offers(a)
    a.capture.fail_user_media = True

    with pytest.raises(CaptureError):
        await a.media.set_video_enabled(True)
    await mesh.settle()

    assert a.media.media_status == "camera-unavailable"
    assert a.media.audio is audio
    assert audio.readyState == "live"
    assert not a.media.video_enabled
    assert offers(a) == sent

    a.capture.fail_user_media = False
    await a.media.set_video_enabled(True)
    assert a.media.media_status == "ok"


async def test_display_failure_sets_status(mesh):
    a, b = await start_call(mesh, a_video=True)
    a.capture.fail_display = True

    with pytest.raises(CaptureError):
        await a.media.start_screen_share()

    assert a.media.media_status == "screen-unavailable"
    assert not a.media.sharing_screen
    assert a.link(b).local_sources["video"] is a.media.camera


async def test_toggle_mute_does_not_renegotiate(mesh):
    a, b = await start_call(mesh)
    sent = offers(a)

    assert a.media.toggle_mute() is True
    assert a.media.audio.enabled is False
    await mesh.settle()
    assert offers(a) == sent

    # 캡처 스트림을 바꿔도 음소거 상태는 유지
    await a.media.set_video_enabled(True)
    assert a.media.audio.enabled is False

    assert a.media.toggle_mute() is False
    assert a.media.audio.enabled is True


async def test_replace_only_skips_renegotiation_when_policy_off(mesh):
    a, b = await start_call(mesh, a_video=True, renegotiate_on_replace=False)
    sent = offers(a)

    await a.media.start_screen_share()
    await mesh.settle()
    assert offers(a) == sent
    assert a.link(b).local_sources["video"] is a.capture.displays[0]

    await a.media.stop_screen_share()
    await a.media.set_video_enabled(False)
    await mesh.settle()
    assert offers(a) == sent + 1


async def test_close_stops_all_tracks(mesh):
    a, b = await start_call(mesh, a_video=True)
    await a.media.start_screen_share()
    await mesh.settle()
    tracks = [a.media.audio, a.media.camera, a.media.screen]

    a.media.close()

    assert all(track.readyState == "ended" for track in tracks)
    assert a.media.outgoing_tracks() == []


# ============================================================
# MutableAudioTrack
# ============================================================

class ToneTrack(MediaStreamTrack):
    kind = "audio"

    async def recv(self):
        frame = AudioFrame(format="s16", layout="mono", samples=160)
        for plane in frame.planes:
            plane.update(b"\x01" * plane.buffer_size)
        frame.sample_rate = 8000
        return frame


async def test_muted_audio_sends_silence():
    track = MutableAudioTrack(ToneTrack())

    frame = await track.recv()
    assert any(bytes(frame.planes[0]))

    track.enabled = False
    frame = await track.recv()
    assert not any(bytes(frame.planes[0]))


async def test_wrapper_and_source_stop_together():
    source = ToneTrack()
    track = MutableAudioTrack(source)

    track.stop()
    assert source.readyState == "ended"

    other_source = ToneTrack()
    other = MutableAudioTrack(other_source)
    other_source.stop()
    assert other.readyState == "ended"


# ============================================================
# RemoteMediaSink
# ============================================================

class PacedTrack(MediaStreamTrack):
    kind = "audio"

    def __init__(self):
        super().__init__()
        self.frames = 0

    async def recv(self):
        await asyncio.sleep(0.001)
        self.frames += 1
        return None


async def test_remote_sink_reads_until_peer_is_detached():
    sink = RemoteMediaSink()
    audio, video = PacedTrack(), PacedTrack()

    await sink.attach(B, audio)
    await sink.attach(B, video)
    await sink.attach(A, PacedTrack())
    await asyncio.sleep(0.05)

    assert audio.frames > 0 and video.frames > 0

    await sink.detach(B)
    consumed = (audio.frames, video.frames)
    await asyncio.sleep(0.02)

    assert (audio.frames, video.frames) == consumed
    assert list(sink.sinks) == [A]

    await sink.close()
    assert sink.sinks == {}


async def test_remote_sink_detach_unknown_peer_is_noop():
    sink = RemoteMediaSink()

    await sink.detach(B)

    assert sink.sinks == {}
