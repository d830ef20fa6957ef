from fractions import Fraction

import av
import numpy as np

from conftest import probe_packets
from mediaflow_transcoder.remuxer.codec import CodecDescriptor, MediaType
from mediaflow_transcoder.remuxer.decoder import Decoder, SeekFlag
from mediaflow_transcoder.remuxer.status import AVERROR_EOF, ErrorKind, Status


class FrameCollector:
    def __init__(self, result: int = Status.OK):
        self.result = result
        self.frames: dict[int, list] = {}

    def __call__(self, frame, src_index: int) -> int:
        self.frames.setdefault(src_index, []).append(frame)
        return self.result


def _decode_all(decoder: Decoder) -> None:
    while (packet := decoder.read_packet()) is not None:
        assert decoder.decode_packet(packet) >= 0
    assert decoder.at_eof
    assert decoder.drain() == Status.OK


def test_open_records_audio_and_video_streams(sample_mp4):
    decoder = Decoder()

    assert decoder.open(str(sample_mp4)) == Status.OK

    video, audio = decoder.streams.get(0), decoder.streams.get(1)
    assert video.descriptor.media_type is MediaType.VIDEO
    assert audio.descriptor.media_type is MediaType.AUDIO
    assert (video.src_index, audio.src_index) == (0, 1)
    assert video.codec_open and audio.codec_open
    assert video.descriptor.width == 320
    decoder.close()


def test_demux_only_reads_every_packet_without_decoders(sample_mp4):
    decoder = Decoder(demux_only=True)
    assert decoder.open(str(sample_mp4)) == Status.OK
    assert len(decoder.streams) == 2
    assert not any(record.codec_open for record in decoder.streams)

    counts: dict[int, int] = {}
    while (packet := decoder.read_packet()) is not None:
        counts[packet.stream_index] = counts.get(packet.stream_index, 0) + 1

    assert decoder.read_status == AVERROR_EOF
    assert counts == {index: len(packets) for index, packets in probe_packets(sample_mp4).items()}
    decoder.close()


def test_decode_emits_every_video_frame(sample_mp4):
    collector = FrameCollector()
    decoder = Decoder(collector)
    decoder.open(str(sample_mp4))

    _decode_all(decoder)

    frames = collector.frames[0]
    assert len(frames) == 25
    assert all((frame.width, frame.height) == (320, 240) for frame in frames)
    assert [frame.pts for frame in frames] == sorted(frame.pts for frame in frames)
    assert sum(frame.samples for frame in collector.frames[1]) >= 48000
    decoder.close()


def test_failing_frame_callback_fails_decode(sample_mp4, status_events):
    reporter, events = status_events
    decoder = Decoder(FrameCollector(result=-1), reporter)
    decoder.open(str(sample_mp4))

    result = Status.OK
    while result >= 0 and (packet := decoder.read_packet()) is not None:
        result = decoder.decode_packet(packet)

    assert result == Status.ERROR
    assert reporter.last_error is ErrorKind.RUNTIME_FAILURE
    assert "Frame callback failed" in events[-1][1]
    decoder.close()


def test_open_missing_input_reports_runtime_error(tmp_path, status_events):
    reporter, events = status_events
    decoder = Decoder(status=reporter)

    assert decoder.open(str(tmp_path / "missing.mp4")) == Status.ERROR
    assert reporter.last_error is ErrorKind.RUNTIME_FAILURE
    assert events[-1][1].startswith("Failed to open input")
    assert decoder.read_packet() is None
    assert reporter.last_error is ErrorKind.LIFECYCLE_VIOLATION


def test_seek_restarts_reading(sample_mp4):
    decoder = Decoder(demux_only=True)
    decoder.open(str(sample_mp4))
    first_pts: dict[int, int] = {}
    while (packet := decoder.read_packet()) is not None:
        first_pts.setdefault(packet.stream_index, packet.pts)

    assert decoder.seek(0, 0, SeekFlag.BACKWARD) == Status.OK
    again = decoder.read_packet()

    assert again is not None
    assert decoder.read_status == 0
    assert again.pts == first_pts[again.stream_index]
    decoder.close()


def test_unknown_stream_lookups(sample_mp4, status_events):
    reporter, _ = status_events
    decoder = Decoder(status=reporter)
    decoder.open(str(sample_mp4))

    assert decoder.get_codec_info(7) is None
    assert reporter.last_error is ErrorKind.STREAM_NOT_FOUND
    assert decoder.seek(7, 0) == Status.ERROR

    target = CodecDescriptor()
    assert decoder.copy_codec_info(1, target) == Status.OK
    assert target.is_audio and target.sample_rate == 48000
    decoder.close()


def _encode_mpeg4(count: int, width: int = 64, height: int = 48) -> list:
    ctx = av.CodecContext.create("mpeg4", "w")
    ctx.width, ctx.height, ctx.pix_fmt = width, height, "yuv420p"
    ctx.time_base = Fraction(1, 25)
    ctx.open()

    packets = []
    for index in range(count):
        packed = np.full((height * 3 // 2, width), 128, dtype=np.uint8)
        frame = av.VideoFrame.from_ndarray(packed, format="yuv420p")
        frame.pts = index
        packets.extend(ctx.encode(frame))
    packets.extend(ctx.encode(None))
    return packets


def test_open_codec_decodes_raw_elementary_stream():
    collector = FrameCollector()
    decoder = Decoder(collector)
    info = CodecDescriptor(
        media_type=MediaType.VIDEO,
        codec_name="mpeg4",
        time_base=Fraction(1, 25),
        width=64,
        height=48,
        pix_fmt="yuv420p",
    )

    src_index = decoder.open_codec(info)
    assert src_index == 0
    for encoded in _encode_mpeg4(3):
        packet = decoder.create_packet(bytes(encoded), src_index, pts=encoded.pts)
        assert decoder.decode_packet(packet, src_index) >= 0
    assert decoder.drain() == Status.OK

    frames = collector.frames[0]
    assert len(frames) == 3
    assert (frames[0].width, frames[0].height) == (64, 48)
    assert decoder.open_codec(CodecDescriptor(media_type=MediaType.VIDEO, codec_name="no-such-codec")) == Status.ERROR
    decoder.close()
