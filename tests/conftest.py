"""
Pytest configuration for the transcoder tests.

Media fixtures are synthesized with PyAV using codecs that every FFmpeg
build ships (mpeg4 video, AAC audio), so no sample files are needed.
Optional settings (e.g. LOG_LEVEL) can be put in the project's .env file.
"""

from fractions import Fraction
from pathlib import Path

import av
import numpy as np
import pytest
from dotenv import load_dotenv

from mediaflow_transcoder.remuxer.status import StatusKind, StatusReporter

# Load .env file from project root
project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env")

AUDIO_FRAME_SIZE = 1024


def _video_frame(index: int, width: int, height: int) -> av.VideoFrame:
    packed = np.empty((height * 3 // 2, width), dtype=np.uint8)
    packed[:height] = (np.arange(width, dtype=np.uint16)[None, :] + index * 4) % 256
    packed[height:] = 128
    return av.VideoFrame.from_ndarray(packed, format="yuv420p")


def _audio_frame(offset: int, sample_rate: int) -> av.AudioFrame:
    t = (np.arange(AUDIO_FRAME_SIZE) + offset) / sample_rate
    tone = (0.2 * np.sin(2 * np.pi * 440 * t)).astype(np.float32)
    frame = av.AudioFrame.from_ndarray(np.tile(tone, (2, 1)), format="fltp", layout="stereo")
    frame.sample_rate = sample_rate
    return frame


def write_sample_media(
    path: Path,
    seconds: float = 1.0,
    width: int = 320,
    height: int = 240,
    fps: int = 25,
    sample_rate: int = 48000,
    with_audio: bool = True,
    container_format: str | None = None,
) -> Path:
    """Write an mpeg4 (+ stereo AAC) file of the given duration."""
    with av.open(str(path), mode="w", format=container_format) as output:
        video = output.add_stream("mpeg4", rate=fps)
        video.codec_context.width = width
        video.codec_context.height = height
        video.codec_context.pix_fmt = "yuv420p"

        audio = None
        if with_audio:
            audio = output.add_stream("aac", rate=sample_rate)
            audio.codec_context.layout = "stereo"
            audio.codec_context.format = "fltp"

        audio_offset = 0
        for index in range(int(seconds * fps)):
            frame = _video_frame(index, width, height)
            frame.pts = index
            frame.time_base = Fraction(1, fps)
            output.mux(video.encode(frame))

            # Keep audio ahead of the video clock so the muxer interleaves
            while audio is not None and audio_offset < (index + 1) * sample_rate // fps:
                audio_frame = _audio_frame(audio_offset, sample_rate)
                audio_frame.pts = audio_offset
                audio_frame.time_base = Fraction(1, sample_rate)
                output.mux(audio.encode(audio_frame))
                audio_offset += AUDIO_FRAME_SIZE

        output.mux(video.encode(None))
        if audio is not None:
            output.mux(audio.encode(None))
    return path


def probe_packets(path: Path) -> dict[int, list]:
    """Demux *path* and return the non-empty packets' (pts, dts) per stream index."""
    packets: dict[int, list] = {}
    with av.open(str(path)) as container:
        for packet in container.demux():
            if packet.size == 0:
                continue
            packets.setdefault(packet.stream_index, []).append((packet.pts, packet.dts))
    return packets


@pytest.fixture
def make_media(tmp_path):
    """
    Factory fixture writing synthetic media into the test's tmp_path.

    Usage:
        def test_something(make_media):
            path = make_media("input.mp4", seconds=2)
    """

    def _make(name: str = "input.mp4", **kwargs) -> Path:
        return write_sample_media(tmp_path / name, **kwargs)

    return _make


@pytest.fixture
def sample_mp4(make_media) -> Path:
    return make_media("input.mp4")


@pytest.fixture
def status_events():
    """A StatusReporter delivering every kind into a list of (kind, message)."""
    events: list = []
    reporter = StatusReporter(lambda kind, message: events.append((kind, message)), StatusKind.ALL)
    return reporter, events
