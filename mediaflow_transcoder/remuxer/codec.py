"""
Codec descriptor: the runtime-neutral description of one media stream.

A ``CodecDescriptor`` is filled from PyAV streams and codec contexts on
the input side, edited by the pipeline (codec, size, rate overrides) and
applied to encoder contexts and output streams on the output side.
Fields that are ``None`` are "unset" and never written to the runtime.

The JSON form keeps the historical wire layout (camelCase keys, rationals
as ``[num, den]`` pairs, ``-1`` for unset numbers) so descriptors can be
exchanged with other tools.
"""

import json
import logging
from dataclasses import dataclass, replace
from enum import Enum
from fractions import Fraction

import av

logger = logging.getLogger(__name__)

# Channel count -> FFmpeg default layout name
_CHANNEL_LAYOUT_MAP = {
    1: "mono",
    2: "stereo",
    3: "2.1",
    4: "quad",
    5: "5.0",
    6: "5.1",
    7: "6.1",
    8: "7.1",
}


class MediaType(Enum):
    VIDEO = "video"
    AUDIO = "audio"
    UNKNOWN = "unknown"

    @classmethod
    def from_av(cls, value: str | None) -> "MediaType":
        """Map PyAV's ``stream.type`` / ``codec_context.type`` strings."""
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class ScalePolicy(Enum):
    NONE = "none"
    STRETCH = "stretch"  # scale to the target size, ignoring the aspect ratio
    ASPECT = "aspect"  # fit inside the target size and letterbox the rest

    @classmethod
    def parse(cls, value: "str | ScalePolicy") -> "ScalePolicy":
        if isinstance(value, cls):
            return value
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown scale policy: {value}") from None


@dataclass(frozen=True, slots=True)
class ChannelLayout:
    """
    Audio channel layout, independent of how the runtime stores it.

    PyAV accepts layout names everywhere, so a layout is carried as its
    canonical FFmpeg name plus the channel count.
    """

    name: str
    channels: int

    @classmethod
    def mono(cls) -> "ChannelLayout":
        return cls("mono", 1)

    @classmethod
    def stereo(cls) -> "ChannelLayout":
        return cls("stereo", 2)

    @classmethod
    def default(cls, channels: int) -> "ChannelLayout":
        """Default layout for a channel count (``6`` -> ``5.1``); unusual counts get an unordered ``Nc`` layout."""
        if channels <= 0:
            raise ValueError(f"Invalid channel count: {channels}")
        return cls(_CHANNEL_LAYOUT_MAP.get(channels, f"{channels}c"), channels)

    @classmethod
    def from_av(cls, layout: av.AudioLayout) -> "ChannelLayout":
        return cls(layout.name, len(layout.channels))

    def copy_into(self, target) -> None:
        """Install this layout on an audio codec context or stream."""
        target.layout = self.name


def _to_fraction(value) -> Fraction | None:
    if not value:
        return None
    return Fraction(value)


def _rational_to_json(value: Fraction | None) -> list[int]:
    if value is None:
        return [-1, -1]
    return [value.numerator, value.denominator]


def _rational_from_json(value) -> Fraction | None:
    if not value or len(value) != 2:
        return None
    num, den = int(value[0]), int(value[1])
    if num < 0 or den <= 0:
        return None
    return Fraction(num, den)


def _int_from_json(value) -> int | None:
    if value is None:
        return None
    value = int(value)
    return value if value >= 0 else None


def _str_from_json(value) -> str | None:
    if value in (None, "", -1):
        return None
    return str(value)


@dataclass(slots=True)
class CodecDescriptor:
    """Codec parameters of one stream. ``None`` means unset."""

    media_type: MediaType = MediaType.UNKNOWN
    codec_name: str | None = None
    time_base: Fraction | None = None
    bit_rate: int | None = None
    frame_size: int | None = None
    profile: str | None = None
    compression_level: int | None = None
    # Video
    pix_fmt: str | None = None
    scale_policy: ScalePolicy = ScalePolicy.STRETCH
    aspect_ratio: Fraction | None = None
    frame_rate: Fraction | None = None
    width: int | None = None
    height: int | None = None
    # Audio
    sample_fmt: str | None = None
    sample_rate: int | None = None
    channels: int | None = None
    bits_per_sample: int | None = None
    channel_layout: ChannelLayout | None = None
    # Codec private data (SPS/PPS, AudioSpecificConfig, OpusHead, ...)
    extradata: bytes | None = None

    @property
    def is_video(self) -> bool:
        return self.media_type is MediaType.VIDEO

    @property
    def is_audio(self) -> bool:
        return self.media_type is MediaType.AUDIO

    def copy(self) -> "CodecDescriptor":
        return replace(self)

    def take_extradata(self) -> bytes | None:
        """Move the extradata out of this descriptor, leaving the slot empty."""
        data, self.extradata = self.extradata, None
        return data

    def init_channels(self, channels: int) -> None:
        self.channels = channels
        self.channel_layout = ChannelLayout.default(channels)

    # ── Runtime -> descriptor ──────────────────────────────────────

    @classmethod
    def from_codec_context(cls, ctx) -> "CodecDescriptor":
        info = cls(media_type=MediaType.from_av(ctx.type), codec_name=ctx.name)
        # Decoder contexts have no time base; the stream carries it
        if ctx.is_encoder:
            info.time_base = _to_fraction(ctx.time_base)
        info.bit_rate = ctx.bit_rate or None
        info.profile = ctx.profile or None
        if ctx.extradata:
            info.extradata = bytes(ctx.extradata)

        if info.is_video:
            info.width = ctx.width or None
            info.height = ctx.height or None
            info.pix_fmt = ctx.pix_fmt
            info.aspect_ratio = _to_fraction(ctx.sample_aspect_ratio)
            info.frame_rate = _to_fraction(ctx.framerate)
        elif info.is_audio:
            info.sample_rate = ctx.sample_rate or None
            info.frame_size = ctx.frame_size or None
            if ctx.format is not None:
                info.sample_fmt = ctx.format.name
                info.bits_per_sample = ctx.format.bits
            if ctx.layout is not None and ctx.layout.channels:
                info.channel_layout = ChannelLayout.from_av(ctx.layout)
                info.channels = info.channel_layout.channels
        return info

    @classmethod
    def from_stream(cls, stream) -> "CodecDescriptor":
        """Describe a container stream; the stream time base wins over the codec's."""
        ctx = stream.codec_context
        if ctx is not None:
            info = cls.from_codec_context(ctx)
        else:
            info = cls(media_type=MediaType.from_av(stream.type))

        info.time_base = _to_fraction(stream.time_base) or info.time_base
        if info.is_video and info.frame_rate is None:
            info.frame_rate = _to_fraction(stream.average_rate or stream.guessed_rate)
        return info

    # ── Descriptor -> runtime ──────────────────────────────────────

    def apply_to_codec_context(self, ctx) -> None:
        """Write every set field onto a (not yet opened) codec context."""
        if self.time_base is not None and ctx.is_encoder:
            ctx.time_base = self.time_base
        if self.bit_rate is not None:
            ctx.bit_rate = self.bit_rate
        if self.compression_level is not None:
            ctx.options = {**ctx.options, "compression_level": str(self.compression_level)}

        if self.is_video:
            if self.width is not None:
                ctx.width = self.width
            if self.height is not None:
                ctx.height = self.height
            if self.pix_fmt is not None:
                ctx.pix_fmt = self.pix_fmt
            if self.aspect_ratio is not None:
                ctx.sample_aspect_ratio = self.aspect_ratio
            if self.frame_rate is not None:
                ctx.framerate = self.frame_rate
        elif self.is_audio:
            if self.sample_rate is not None:
                ctx.sample_rate = self.sample_rate
            if self.sample_fmt is not None:
                ctx.format = self.sample_fmt
            layout = self.channel_layout
            if layout is None and self.channels is not None:
                layout = ChannelLayout.default(self.channels)
            if layout is not None:
                layout.copy_into(ctx)

    # ── Serialization ──────────────────────────────────────────────

    def dump_str(self) -> str:
        """One line summary for logs."""
        tb = f"{self.time_base.numerator}/{self.time_base.denominator}" if self.time_base else "-"
        kbps = f"{self.bit_rate // 1000}k" if self.bit_rate else "-"
        if self.is_video:
            fps = f"{float(self.frame_rate):.2f}" if self.frame_rate else "-"
            return (
                f"video codec={self.codec_name or '-'} size={self.width or -1}x{self.height or -1} "
                f"pix_fmt={self.pix_fmt or '-'} scale={self.scale_policy.value} fps={fps} tb={tb} bitrate={kbps}"
            )
        if self.is_audio:
            return (
                f"audio codec={self.codec_name or '-'} rate={self.sample_rate or -1} "
                f"fmt={self.sample_fmt or '-'} channels={self.channels or -1} tb={tb} bitrate={kbps}"
            )
        return f"{self.media_type.value} codec={self.codec_name or '-'} tb={tb}"

    def to_dict(self) -> dict:
        def num(value):
            return -1 if value is None else value

        data = {
            "mediaType": self.media_type.value,
            "codecId": self.codec_name or "",
            "timeBase": _rational_to_json(self.time_base),
            "compressLevel": num(self.compression_level),
            "frameSize": num(self.frame_size),
            "bitRate": num(self.bit_rate),
            "profile": self.profile or "",
        }
        if self.is_audio:
            data.update(
                {
                    "sampleFmt": self.sample_fmt or "",
                    "bitsPerSample": num(self.bits_per_sample),
                    "sampleRate": num(self.sample_rate),
                    "channels": num(self.channels),
                }
            )
            if self.channel_layout is not None:
                data["channelLayout"] = self.channel_layout.name
        elif self.is_video:
            data.update(
                {
                    "scaleFmt": self.scale_policy.value,
                    "pixFmt": self.pix_fmt or "",
                    "aspectRatio": _rational_to_json(self.aspect_ratio),
                    "frameRate": _rational_to_json(self.frame_rate),
                    "size": [num(self.width), num(self.height)],
                }
            )
        return data

    def to_json(self, indent: int | None = None) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, data: dict) -> "CodecDescriptor":
        info = cls(media_type=MediaType.from_av(data.get("mediaType")))
        info.codec_name = _str_from_json(data.get("codecId"))
        info.time_base = _rational_from_json(data.get("timeBase"))
        info.compression_level = _int_from_json(data.get("compressLevel"))
        info.frame_size = _int_from_json(data.get("frameSize"))
        info.bit_rate = _int_from_json(data.get("bitRate"))
        info.profile = _str_from_json(data.get("profile"))

        if info.is_audio:
            info.sample_fmt = _str_from_json(data.get("sampleFmt"))
            info.bits_per_sample = _int_from_json(data.get("bitsPerSample"))
            info.sample_rate = _int_from_json(data.get("sampleRate"))
            info.channels = _int_from_json(data.get("channels"))
            layout = _str_from_json(data.get("channelLayout"))
            if layout is not None and info.channels is not None:
                info.channel_layout = ChannelLayout(layout, info.channels)
            elif info.channels:
                info.channel_layout = ChannelLayout.default(info.channels)
        elif info.is_video:
            info.scale_policy = ScalePolicy.parse(data.get("scaleFmt") or ScalePolicy.STRETCH)
            info.pix_fmt = _str_from_json(data.get("pixFmt"))
            info.aspect_ratio = _rational_from_json(data.get("aspectRatio"))
            info.frame_rate = _rational_from_json(data.get("frameRate"))
            size = data.get("size") or [-1, -1]
            info.width = _int_from_json(size[0])
            info.height = _int_from_json(size[1])
        return info

    @classmethod
    def from_json(cls, text: str) -> "CodecDescriptor":
        return cls.from_dict(json.loads(text))


def parse_rational(value: str) -> Fraction:
    """Parse ``"num:den"``, ``"num/den"`` or a plain number (frame rates, aspect ratios)."""
    for sep in (":", "/"):
        if sep in value:
            num, den = value.split(sep, 1)
            return Fraction(int(num), int(den))
    return Fraction(value)
