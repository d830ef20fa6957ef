"""
Frame transformations between decoder output and encoder input.

- resample: audio sample format / channel layout / sample rate conversion
- stretch: scale to the target size and pixel format (bicubic)
- aspect: fit inside the target size, centred on a black YUV 4:2:0 canvas
- YUV helpers: black canvas synthesis, plane overlay, raw buffer wrapping

Failures are reported through ``FrameParams.status`` and yield None; the
caller drops the frame and carries on with the next one.
"""

import logging
import math
from dataclasses import dataclass, field
from fractions import Fraction

import av
import numpy as np
from av.audio.resampler import AudioResampler
from av.video.reformatter import Interpolation

from mediaflow_transcoder.remuxer.codec import ChannelLayout, CodecDescriptor, MediaType, ScalePolicy
from mediaflow_transcoder.remuxer.status import StatusReporter

logger = logging.getLogger(__name__)

YUV420P = "yuv420p"
_BLACK_LUMA = 0x00
_BLACK_CHROMA = 0x80


@dataclass(slots=True)
class FrameParams:
    """Target shape of a frame about to be encoded."""

    media_type: MediaType = MediaType.UNKNOWN
    # Video
    pix_fmt: str | None = None
    scale_policy: ScalePolicy = ScalePolicy.STRETCH
    width: int | None = None
    height: int | None = None
    # Audio
    sample_fmt: str | None = None
    sample_rate: int | None = None
    channels: int | None = None
    # Overrides the input frame pts when set
    pts: int | None = None
    index: int = -1
    status: StatusReporter = field(default_factory=StatusReporter)

    @classmethod
    def from_descriptor(cls, info: CodecDescriptor, index: int, status: StatusReporter) -> "FrameParams":
        return cls(
            media_type=info.media_type,
            pix_fmt=info.pix_fmt,
            scale_policy=info.scale_policy,
            width=info.width,
            height=info.height,
            sample_fmt=info.sample_fmt,
            sample_rate=info.sample_rate,
            channels=info.channels,
            index=index,
            status=status.clone(),
        )


def _carry_timing(src, dst, params: FrameParams) -> None:
    dst.pts = params.pts if params.pts is not None else src.pts
    if src.time_base is not None:
        dst.time_base = src.time_base


# ────────────────────────────────────────────────────────────────────
# Audio
# ────────────────────────────────────────────────────────────────────


def needs_resample(frame: av.AudioFrame, params: FrameParams) -> bool:
    if params.sample_rate and frame.sample_rate != params.sample_rate:
        return True
    if params.sample_fmt and frame.format.name != params.sample_fmt:
        return True
    if params.channels and len(frame.layout.channels) != params.channels:
        return True
    return False


def resample(frame: av.AudioFrame, params: FrameParams) -> list[av.AudioFrame] | None:
    """
    Convert an audio frame to ``params`` format, layout and rate.

    A resampler is built for this call and flushed before returning, so
    the output may be split over several frames. Output timestamps are in
    ``1/params.sample_rate``.
    """
    status = params.status
    if not params.sample_fmt or not params.sample_rate or not params.channels:
        status.error(
            "Invalid audio resample parameters: fmt(%s) rate(%s) channels(%s)",
            params.sample_fmt,
            params.sample_rate,
            params.channels,
        )
        return None

    layout = ChannelLayout.default(params.channels)
    expected = math.ceil(frame.samples * params.sample_rate / frame.sample_rate)

    try:
        resampler = AudioResampler(format=params.sample_fmt, layout=layout.name, rate=params.sample_rate)
        frames = resampler.resample(frame)
        frames.extend(resampler.resample(None))
    except av.error.FFmpegError as e:
        status.runtime_error(
            e,
            "Failed to resample audio frame: %s %dHz -> %s %dHz",
            frame.format.name,
            frame.sample_rate,
            params.sample_fmt,
            params.sample_rate,
        )
        return None
    except ValueError as e:
        status.error("Invalid audio resample target: %s", e)
        return None

    time_base = Fraction(1, params.sample_rate)
    if params.pts is not None:
        pts = params.pts
    elif frame.pts is not None:
        src_tb = frame.time_base or Fraction(1, frame.sample_rate)
        pts = round(frame.pts * src_tb / time_base)
    else:
        pts = None

    produced = 0
    for out in frames:
        out.time_base = time_base
        out.pts = pts + produced if pts is not None else None
        produced += out.samples

    status.debug(
        "Resampled audio: samples(%d -> %d, expected %d) rate(%d -> %d) fmt(%s -> %s) channels(%d -> %d)",
        frame.samples,
        produced,
        expected,
        frame.sample_rate,
        params.sample_rate,
        frame.format.name,
        params.sample_fmt,
        len(frame.layout.channels),
        params.channels,
    )
    return frames


def frame_from_pcm(data: bytes, sample_rate: int, channels: int) -> av.AudioFrame:
    """Wrap interleaved signed 16-bit PCM (e.g. decoded Opus) as an audio frame."""
    if channels <= 0 or sample_rate <= 0:
        raise ValueError(f"Invalid PCM shape: {sample_rate}Hz {channels}ch")
    if len(data) % (2 * channels):
        raise ValueError(f"PCM buffer of {len(data)} bytes is not a whole number of {channels}ch s16 samples")

    samples = np.frombuffer(data, dtype=np.int16).reshape(1, -1)
    frame = av.AudioFrame.from_ndarray(samples, format="s16", layout=ChannelLayout.default(channels).name)
    frame.sample_rate = sample_rate
    return frame


# ────────────────────────────────────────────────────────────────────
# Video
# ────────────────────────────────────────────────────────────────────


def needs_rescale(frame: av.VideoFrame, params: FrameParams) -> bool:
    """True when size or pixel format differ, or the plane strides look broken."""
    if params.width and params.height and (frame.width != params.width or frame.height != params.height):
        return True
    if params.pix_fmt and frame.format.name != params.pix_fmt:
        return True

    planes = frame.planes
    if len(planes) >= 3:
        half = frame.width // 2
        if planes[0].line_size < frame.width or planes[1].line_size < half or planes[2].line_size < half:
            return True
    return False


def stretch(frame: av.VideoFrame, params: FrameParams) -> av.VideoFrame | None:
    """Scale to exactly ``params.width`` x ``params.height`` with bicubic filtering."""
    status = params.status
    if not params.width or not params.height:
        status.error("Invalid scale size: %sx%s", params.width, params.height)
        return None

    pix_fmt = params.pix_fmt or frame.format.name
    try:
        out = frame.reformat(
            width=params.width,
            height=params.height,
            format=pix_fmt,
            interpolation=Interpolation.BICUBIC,
        )
    except av.error.FFmpegError as e:
        status.runtime_error(
            e,
            "Failed to scale frame: %dx%d(%s) -> %dx%d(%s)",
            frame.width,
            frame.height,
            frame.format.name,
            params.width,
            params.height,
            pix_fmt,
        )
        return None
    except ValueError as e:
        status.error("Invalid scale target: %s", e)
        return None

    _carry_timing(frame, out, params)
    return out


def fit_size(width: int, height: int, target_width: int, target_height: int) -> tuple[int, int]:
    """Largest size with the source aspect ratio that fits inside the target."""
    factor = min(Fraction(target_width, width), Fraction(target_height, height))
    return int(width * factor), int(height * factor)


def aspect(frame: av.VideoFrame, params: FrameParams) -> av.VideoFrame | None:
    """Aspect preserving scale: fit inside the target and letterbox on black."""
    status = params.status
    if not params.width or not params.height or not frame.width or not frame.height:
        status.error("Invalid aspect scale size: %sx%s", params.width, params.height)
        return None

    fitted_w, fitted_h = fit_size(frame.width, frame.height, params.width, params.height)
    if fitted_w == params.width and fitted_h == params.height:
        return stretch(frame, params)

    if params.width % 2 or params.height % 2:
        status.error("Letterbox canvas must have even dimensions: %dx%d", params.width, params.height)
        return None

    # 4:2:0 chroma needs even sizes
    fitted_w = max(fitted_w - fitted_w % 2, 2)
    fitted_h = max(fitted_h - fitted_h % 2, 2)

    inner_params = FrameParams(
        media_type=MediaType.VIDEO,
        pix_fmt=YUV420P,
        width=fitted_w,
        height=fitted_h,
        pts=params.pts,
        status=status,
    )
    fitted = stretch(frame, inner_params)
    if fitted is None:
        return None

    x = (params.width - fitted_w) // 2
    y = (params.height - fitted_h) // 2
    canvas = _black_planes(params.width, params.height)
    _overlay_planes(canvas, params.width, params.height, fitted.to_ndarray(), fitted_w, fitted_h, x, y)

    out = av.VideoFrame.from_ndarray(canvas, format=YUV420P)
    _carry_timing(frame, out, params)

    status.debug(
        "Letterboxed frame: %dx%d -> %dx%d inside %dx%d at (%d, %d)",
        frame.width,
        frame.height,
        fitted_w,
        fitted_h,
        params.width,
        params.height,
        x,
        y,
    )
    return out


def scale(frame: av.VideoFrame, params: FrameParams) -> av.VideoFrame | None:
    if params.scale_policy is ScalePolicy.ASPECT:
        return aspect(frame, params)
    return stretch(frame, params)


# ────────────────────────────────────────────────────────────────────
# YUV 4:2:0 planes
#
# PyAV packs yuv420p as one (height * 3 / 2, width) uint8 array: the Y
# plane followed by the U and V planes, each flattened.
# ────────────────────────────────────────────────────────────────────


def _split_planes(packed: np.ndarray, width: int, height: int) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    flat = packed.reshape(-1)
    luma = width * height
    chroma = luma // 4
    y = flat[:luma].reshape(height, width)
    u = flat[luma : luma + chroma].reshape(height // 2, width // 2)
    v = flat[luma + chroma : luma + 2 * chroma].reshape(height // 2, width // 2)
    return y, u, v


def _black_planes(width: int, height: int) -> np.ndarray:
    packed = np.empty((height * 3 // 2, width), dtype=np.uint8)
    packed[:height] = _BLACK_LUMA
    packed[height:] = _BLACK_CHROMA
    return packed


def _overlay_planes(
    canvas: np.ndarray,
    canvas_w: int,
    canvas_h: int,
    top: np.ndarray,
    top_w: int,
    top_h: int,
    x: int,
    y: int,
) -> None:
    w = min(top_w, canvas_w - x)
    h = min(top_h, canvas_h - y)
    if w <= 0 or h <= 0:
        return

    cy, cu, cv = _split_planes(canvas, canvas_w, canvas_h)
    ty, tu, tv = _split_planes(top, top_w, top_h)

    cy[y : y + h, x : x + w] = ty[:h, :w]

    x, y, w, h = x // 2, y // 2, w // 2, h // 2
    cu[y : y + h, x : x + w] = tu[:h, :w]
    cv[y : y + h, x : x + w] = tv[:h, :w]


def black_yuv(width: int, height: int) -> av.VideoFrame:
    """A black yuv420p frame (Y=0x00, U=V=0x80)."""
    if width <= 0 or height <= 0 or width % 2 or height % 2:
        raise ValueError(f"Invalid yuv420p size: {width}x{height}")
    return av.VideoFrame.from_ndarray(_black_planes(width, height), format=YUV420P)


def overlay_yuv(canvas: av.VideoFrame, frame: av.VideoFrame, x: int, y: int) -> av.VideoFrame:
    """Return a copy of ``canvas`` with ``frame`` pasted at (x, y); both yuv420p."""
    if canvas.format.name != YUV420P or frame.format.name != YUV420P:
        raise ValueError(f"Overlay needs yuv420p frames, got {canvas.format.name} and {frame.format.name}")

    packed = canvas.to_ndarray()
    _overlay_planes(packed, canvas.width, canvas.height, frame.to_ndarray(), frame.width, frame.height, x, y)
    out = av.VideoFrame.from_ndarray(packed, format=YUV420P)
    out.pts = canvas.pts
    if canvas.time_base is not None:
        out.time_base = canvas.time_base
    return out


def frame_from_yuv(data: bytes, width: int, height: int) -> av.VideoFrame:
    """Wrap a packed yuv420p buffer of exactly ``width * height * 3 / 2`` bytes."""
    expected = width * height * 3 // 2
    if width <= 0 or height <= 0 or len(data) != expected:
        raise ValueError(f"Invalid yuv420p buffer: {len(data)} bytes for {width}x{height} (expected {expected})")
    packed = np.frombuffer(data, dtype=np.uint8).reshape(height * 3 // 2, width)
    return av.VideoFrame.from_ndarray(packed, format=YUV420P)
