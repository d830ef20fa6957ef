from fractions import Fraction

import av
import numpy as np
import pytest

from mediaflow_transcoder.remuxer.codec import CodecDescriptor, MediaType
from mediaflow_transcoder.remuxer.encoder import Encoder, OutputTarget
from mediaflow_transcoder.remuxer.frame_transformer import FrameParams
from mediaflow_transcoder.remuxer.metadata import Metadata
from mediaflow_transcoder.remuxer.status import ErrorKind, Status, StatusKind, StatusReporter
from mediaflow_transcoder.remuxer.timestamps import TimestampMode

MATROSKA_MAGIC = b"\x1a\x45\xdf\xa3"


def _video_info(width: int = 64, height: int = 48) -> CodecDescriptor:
    return CodecDescriptor(
        media_type=MediaType.VIDEO,
        codec_name="mpeg4",
        time_base=Fraction(1, 25),
        frame_rate=Fraction(25),
        pix_fmt="yuv420p",
        width=width,
        height=height,
    )


def _frames(count: int, width: int = 128, height: int = 96):
    for index in range(count):
        packed = np.full((height * 3 // 2, width), 128, dtype=np.uint8)
        packed[:height] = index * 8
        frame = av.VideoFrame.from_ndarray(packed, format="yuv420p")
        frame.pts = index
        frame.time_base = Fraction(1, 25)
        yield frame


def _open_encoder(encoder: Encoder, url: str | None = None, format_hint: str = "matroska") -> int:
    assert encoder.open_format(format_hint, url) == Status.OK
    dst_index = encoder.open_stream(_video_info())
    assert dst_index == 0
    return dst_index


def test_output_target_needs_hint_or_url():
    assert OutputTarget.by_hint("mp4").url is None
    assert OutputTarget.both("matroska", "out.mkv").format_hint == "matroska"
    with pytest.raises(ValueError):
        OutputTarget()


def test_open_format_without_target_is_invalid(status_events):
    reporter, _ = status_events
    encoder = Encoder(status=reporter)

    assert encoder.open_format() == Status.ERROR
    assert reporter.last_error is ErrorKind.INVALID_ARGUMENT
    assert encoder.container is None


def test_guess_format():
    assert Encoder.guess_format("matroska") == "matroska"
    assert Encoder.guess_format(url="clip.mkv") == "matroska"
    assert Encoder.guess_format(url="clip.no-such-extension") is None
    assert Encoder.guess_format() is None


def test_lifecycle_is_enforced(tmp_path, status_events):
    reporter, _ = status_events
    encoder = Encoder(status=reporter)

    assert encoder.open_stream(_video_info()) == Status.ERROR
    assert reporter.last_error is ErrorKind.LIFECYCLE_VIOLATION

    dst_index = _open_encoder(encoder, str(tmp_path / "out.mkv"))
    assert encoder.write_frame(next(_frames(1, 64, 48)), dst_index) == Status.ERROR
    assert reporter.last_error is ErrorKind.LIFECYCLE_VIOLATION

    assert encoder.open_output() == Status.OK
    assert encoder.open_output() == Status.ERROR
    assert encoder.write_header() == Status.ERROR
    assert encoder.open_stream(_video_info()) == Status.ERROR
    assert encoder.write_frame(None, 5) == Status.ERROR
    assert reporter.last_error is ErrorKind.STREAM_NOT_FOUND
    assert encoder.finish_write() == Status.OK
    assert encoder.finish_write() == Status.ERROR


def test_encode_scales_frames_and_attaches_metadata(tmp_path):
    path = tmp_path / "out.mkv"
    encoder = Encoder(timestamp_mode=TimestampMode.RESCALE)
    dst_index = _open_encoder(encoder, str(path))

    meta = Metadata()
    meta.add_field("title", "Encoder Test")
    assert encoder.add_meta(meta) == Status.OK
    assert meta.fields is None and meta.chapters is None
    assert encoder.add_meta(meta) == Status.ERROR

    assert encoder.open_output() == Status.OK
    for frame in _frames(10):
        assert encoder.write_frame_for_stream(frame, dst_index) == Status.OK
    assert encoder.finish_write(flush=True) == Status.OK

    with av.open(str(path)) as container:
        stream = container.streams.video[0]
        assert (stream.codec_context.width, stream.codec_context.height) == (64, 48)
        assert container.metadata.get("title") == "Encoder Test"
        packets = [packet for packet in container.demux(stream) if packet.size]
        frames = [frame for packet in packets for frame in packet.decode()]
    assert len(packets) == 10
    assert all((frame.width, frame.height) == (64, 48) for frame in frames)

    record = encoder.streams.by_dst_index(dst_index)
    assert record.packet_count == 10
    assert record.last_pts is not None


def test_codec_info_reflects_opened_encoder(tmp_path):
    encoder = Encoder()
    dst_index = _open_encoder(encoder, str(tmp_path / "out.mkv"))

    info = encoder.get_codec_info(dst_index)

    assert info.codec_name == "mpeg4"
    assert (info.width, info.height) == (64, 48)
    assert info.frame_rate == 25
    assert encoder.get_codec_info(3) is None
    encoder.close()


def test_custom_io_delivers_muxed_bytes():
    chunks: list[bytes] = []

    def sink(data: bytes) -> int:
        chunks.append(data)
        return len(data)

    encoder = Encoder(muxer_callback=sink, io_buffer_size=4096)
    dst_index = _open_encoder(encoder)
    assert encoder.open_output() == Status.OK
    for frame in _frames(5):
        assert encoder.write_frame_for_stream(frame, dst_index) == Status.OK
    assert encoder.finish_write() == Status.OK

    data = b"".join(chunks)
    assert data.startswith(MATROSKA_MAGIC)
    assert len(data) == sum(len(chunk) for chunk in chunks) > 0


def test_packet_callback_can_skip_and_abort(tmp_path):
    skipped = Encoder(packet_callback=lambda packet: 0)
    dst_index = _open_encoder(skipped, str(tmp_path / "skip.mkv"))
    skipped.open_output()
    for frame in _frames(3):
        assert skipped.write_frame_for_stream(frame, dst_index) == Status.OK
    skipped.finish_write()
    assert skipped.streams.by_dst_index(dst_index).packet_count == 0

    events = []
    aborted = Encoder(
        status=StatusReporter(lambda kind, message: events.append(message), StatusKind.ERROR),
        packet_callback=lambda packet: -1,
    )
    dst_index = _open_encoder(aborted, str(tmp_path / "abort.mkv"))
    aborted.open_output()
    result = Status.OK
    for frame in _frames(3):
        result = aborted.write_frame_for_stream(frame, dst_index)
        if result < 0:
            break
    aborted.finish_write(flush=False)
    assert result == Status.ERROR
    assert events[-1].startswith("Packet callback aborted")


@pytest.mark.skipif(
    not hasattr(av.container.OutputContainer, "set_chapters"), reason="PyAV without chapter support"
)
def test_chapters_are_written(tmp_path):
    path = tmp_path / "chapters.mkv"
    encoder = Encoder()
    dst_index = _open_encoder(encoder, str(path))
    meta = Metadata()
    meta.add_chapter_seconds(0, 1, "First")
    meta.add_chapter_seconds(1, 2, "Second")

    assert encoder.add_meta(meta) == Status.OK
    encoder.open_output()
    for frame in _frames(5):
        encoder.write_frame_for_stream(frame, dst_index)
    assert encoder.finish_write() == Status.OK

    with av.open(str(path)) as container:
        chapters = container.chapters()
    assert [chapter["metadata"].get("title") for chapter in chapters] == ["First", "Second"]


def test_restart_codec_resumes_after_drain(tmp_path, status_events):
    reporter, _ = status_events
    path = tmp_path / "restarted.mkv"
    encoder = Encoder(status=reporter)
    dst_index = _open_encoder(encoder, str(path))
    encoder.open_output()
    first_context = encoder.streams.by_dst_index(dst_index).codec_context

    frames = list(_frames(10, 64, 48))
    for frame in frames[:5]:
        assert encoder.write_frame_for_stream(frame, dst_index) == Status.OK
    assert encoder.flush_stream(dst_index) == Status.OK

    assert encoder.restart_codec(dst_index) == dst_index
    record = encoder.streams.by_dst_index(dst_index)
    assert record.codec_context is not first_context
    assert record.codec_open
    assert (record.descriptor.width, record.descriptor.height) == (64, 48)

    for frame in frames[5:]:
        assert encoder.write_frame_for_stream(frame, dst_index) == Status.OK
    assert encoder.finish_write() == Status.OK

    assert record.packet_count == 10
    with av.open(str(path)) as container:
        assert sum(1 for packet in container.demux(video=0) if packet.size) == 10

    assert encoder.restart_codec(4) == Status.ERROR
    assert reporter.last_error is ErrorKind.STREAM_NOT_FOUND


def test_restart_codec_needs_an_encoder(tmp_path, status_events):
    reporter, _ = status_events
    encoder = Encoder(status=reporter, mux_only=True)
    assert encoder.open_format("matroska", str(tmp_path / "copy.mkv")) == Status.OK
    dst_index = encoder.open_stream(_video_info())

    assert encoder.restart_codec(dst_index) == Status.ERROR
    assert reporter.last_error is ErrorKind.LIFECYCLE_VIOLATION
    assert encoder.flush_buffer(dst_index) == Status.ERROR
    encoder.close()


def test_flush_buffer_single_stream(tmp_path, status_events):
    reporter, _ = status_events
    encoder = Encoder(status=reporter)
    dst_index = _open_encoder(encoder, str(tmp_path / "out.mkv"))

    assert encoder.flush_buffer(dst_index) == Status.OK
    assert encoder.flush_buffer(9) == Status.ERROR
    assert reporter.last_error is ErrorKind.STREAM_NOT_FOUND
    encoder.close()


def test_transform_without_target_size_keeps_frame_size(tmp_path):
    encoder = Encoder()
    dst_index = _open_encoder(encoder, str(tmp_path / "converted.mkv"))
    encoder.open_output()
    rgb = av.VideoFrame.from_ndarray(np.zeros((48, 64, 3), dtype=np.uint8), format="rgb24")
    rgb.pts = 0
    rgb.time_base = Fraction(1, 25)
    params = FrameParams(media_type=MediaType.VIDEO, pix_fmt="yuv420p", index=dst_index)

    assert encoder.write_frame_transformed(rgb, params) == Status.OK
    assert encoder.finish_write() == Status.OK
    assert encoder.streams.by_dst_index(dst_index).packet_count == 1
