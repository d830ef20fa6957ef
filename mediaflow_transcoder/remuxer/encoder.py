"""
Output side of the pipeline: encode frames and mux packets.

Lifecycle:
    encoder = Encoder(status=..., timestamp_mode=TimestampMode.RESCALE)
    encoder.open_format(format_hint="mp4", url="out.mp4")
    dst = encoder.open_stream(descriptor)          # once per output stream
    encoder.add_meta(meta)                         # optional
    encoder.open_output({"movflags": "faststart"})  # writes the header
    encoder.write_frame_for_stream(frame, dst)     # or write_packet() when remuxing
    encoder.finish_write(flush=True)               # drains encoders, writes trailer

Output I/O is a URL opened by FFmpeg, or a ``muxer_callback`` that gets
every chunk of muxed bytes (custom I/O, ``io_buffer_size`` bytes at a
time).
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace

import av

from mediaflow_transcoder.remuxer.codec import CodecDescriptor, MediaType
from mediaflow_transcoder.remuxer.frame_transformer import (
    FrameParams,
    needs_resample,
    needs_rescale,
    resample,
    scale,
)
from mediaflow_transcoder.remuxer.metadata import Chapter, Metadata
from mediaflow_transcoder.remuxer.status import ErrorKind, Status, StatusReporter
from mediaflow_transcoder.remuxer.stream import StreamRecord, StreamTable
from mediaflow_transcoder.remuxer.timestamps import TimestampController, TimestampMode

logger = logging.getLogger(__name__)

DEFAULT_IO_BUFFER_SIZE = 65536

# libavformat/avformat.h
AVFMT_NOFILE = 0x0001
AVFMT_GLOBALHEADER = 0x0040

PacketCallback = Callable[[av.Packet], int]
MuxerCallback = Callable[[bytes], int]


@dataclass(frozen=True, slots=True)
class OutputTarget:
    """Where the muxer writes: a format name, a URL, or both (never neither)."""

    format_hint: str | None = None
    url: str | None = None

    def __post_init__(self) -> None:
        if not self.format_hint and not self.url:
            raise ValueError("Output needs a format hint, a URL or both")

    @classmethod
    def by_hint(cls, format_hint: str) -> "OutputTarget":
        return cls(format_hint=format_hint)

    @classmethod
    def by_url(cls, url: str) -> "OutputTarget":
        return cls(url=url)

    @classmethod
    def both(cls, format_hint: str, url: str) -> "OutputTarget":
        return cls(format_hint=format_hint, url=url)


class MuxerSink:
    """
    Write-only file object handed to PyAV for custom output I/O.

    It has no ``seek``, so FFmpeg treats the output as a non-seekable stream.
    """

    def __init__(self, callback: MuxerCallback, name: str = "") -> None:
        self._callback = callback
        self.name = name  # lets FFmpeg guess the format from an extension
        self.bytes_written = 0

    def write(self, data) -> int:
        written = self._callback(bytes(data))
        if written is None:
            written = len(data)
        if written < 0:
            raise OSError(f"Muxer callback failed with status {written}")
        self.bytes_written += written
        return written


class Encoder:
    """
    PyAV backed encoder/muxer.

    Args:
        status: Reporter for diagnostics; a silent one is created if omitted.
        timestamp_mode: How packet timestamps are derived for the muxer.
        ts_fix: Monotonic fix-up delta; 0 disables the fix-up.
        mux_only: Streams carry already encoded packets (remux).
        io_buffer_size: Chunk size of custom output I/O.
        muxer_callback: Enables custom I/O; receives the muxed bytes.
        packet_callback: Inspects every encoded packet; negative aborts,
            zero skips the packet, positive writes it.
    """

    def __init__(
        self,
        status: StatusReporter | None = None,
        timestamp_mode: TimestampMode = TimestampMode.RESCALE,
        ts_fix: int = 0,
        mux_only: bool = False,
        io_buffer_size: int = DEFAULT_IO_BUFFER_SIZE,
        muxer_callback: MuxerCallback | None = None,
        packet_callback: PacketCallback | None = None,
    ) -> None:
        self.status = status or StatusReporter()
        self.timestamps = TimestampController(timestamp_mode, ts_fix)
        self.mux_only = mux_only
        self.io_buffer_size = io_buffer_size
        self.muxer_callback = muxer_callback
        self.packet_callback = packet_callback
        self.streams = StreamTable()
        self.container = None
        self.target: OutputTarget | None = None
        self.output_open = False
        self.header_written = False
        self._sink: MuxerSink | None = None
        self._chapters: list[Chapter] = []

    @property
    def format_name(self) -> str | None:
        return self.container.format.name if self.container is not None else None

    # ── Format and streams ──────────────────────────────────────────

    @staticmethod
    def guess_format(format_hint: str | None = None, url: str | None = None) -> str | None:
        """Resolve the muxer FFmpeg would pick for (hint, url) without opening anything."""
        if not format_hint and not url:
            return None
        try:
            with av.open(url or "", mode="w", format=format_hint) as probe:
                return probe.format.name
        except (ValueError, av.error.FFmpegError):
            return None

    def open_format(self, format_hint: str | None = None, url: str | None = None) -> Status:
        """Allocate the output container for a format hint and/or URL."""
        if self.container is not None:
            return self.status.error("Output format is already allocated", kind=ErrorKind.LIFECYCLE_VIOLATION)

        try:
            target = OutputTarget(format_hint=format_hint, url=url)
        except ValueError as e:
            return self.status.error("Invalid output: %s", e)

        if self.muxer_callback is not None:
            self._sink = MuxerSink(self.muxer_callback, name=target.url or "")
            file = self._sink
        else:
            file = target.url

        if file is None:
            return self.status.error("No output URL and no muxer callback for format: %s", target.format_hint)

        try:
            self.container = av.open(file, mode="w", format=target.format_hint, buffer_size=self.io_buffer_size)
        except av.error.FFmpegError as e:
            return self.status.runtime_error(e, "Failed to allocate output: format(%s) url(%s)", format_hint, url)
        except ValueError as e:
            return self.status.error("Failed to allocate output: format(%s) url(%s): %s", format_hint, url, e)

        self.target = target
        self.status.debug("Allocated output format: %s", self.container.format.name)
        return Status.OK

    def open_stream(self, descriptor: CodecDescriptor, template=None) -> int:
        """
        Add an output stream described by *descriptor*.

        In mux-only mode the stream copies the codec parameters of
        *template* (the input stream being remuxed), or of the descriptor
        when no template is given. Otherwise an encoder is opened.
        Returns the destination index, or ``Status.ERROR``.
        """
        if self.container is None:
            return self.status.error("Output format is not allocated", kind=ErrorKind.LIFECYCLE_VIOLATION)
        if self.header_written:
            return self.status.error("Cannot add streams after the header", kind=ErrorKind.LIFECYCLE_VIOLATION)
        if descriptor.media_type is MediaType.UNKNOWN:
            return self.status.error("Unsupported output media type: %s", descriptor.codec_name)

        info = descriptor.copy()
        extradata = descriptor.take_extradata()

        try:
            if self.mux_only and template is not None:
                # opaque: copy the codec parameters, no encoder for the codec is needed.
                # PyAV resets the codec tag of templated streams.
                av_stream = self.container.add_stream_from_template(template, opaque=True)
            else:
                if not descriptor.codec_name:
                    return self.status.error("Invalid output descriptor: missing codec")
                av_stream = self._add_codec_stream(info, extradata)
        except av.error.FFmpegError as e:
            return self.status.runtime_error(e, "Failed to add output stream: codec(%s)", info.codec_name)
        except ValueError as e:
            return self.status.error("Failed to add output stream: codec(%s): %s", info.codec_name, e)

        if info.time_base is not None:
            av_stream.time_base = info.time_base

        record = self.streams.new_stream(info)
        record.av_stream = av_stream
        record.dst_index = av_stream.index

        if not self.mux_only:
            ctx = av_stream.codec_context
            if self.container.format.flags & AVFMT_GLOBALHEADER:
                self.status.debug("Output format wants global headers: dst(%d)", record.dst_index)
            try:
                ctx.open()
            except av.error.FFmpegError as e:
                return self.status.runtime_error(
                    e, "Failed to open encoder: dst(%d) codec(%s)", record.dst_index, ctx.name
                )

            opened = CodecDescriptor.from_codec_context(ctx)
            opened.scale_policy = info.scale_policy
            opened.frame_rate = opened.frame_rate or info.frame_rate
            record.descriptor = opened
            record.codec_context = ctx
            record.codec_open = True

        self.status.info("Output stream: dst(%d) %s", record.dst_index, record.descriptor.dump_str())
        return record.dst_index

    def _add_codec_stream(self, info: CodecDescriptor, extradata: bytes | None):
        if info.is_video:
            rate = info.frame_rate
        else:
            rate = info.sample_rate
        av_stream = self.container.add_stream(info.codec_name, rate=rate)
        ctx = av_stream.codec_context
        info.apply_to_codec_context(ctx)
        if self.mux_only and extradata:
            ctx.extradata = extradata
        return av_stream

    # ── Output I/O and header ───────────────────────────────────────

    def open_output(self, options: dict[str, str] | None = None) -> Status:
        """Attach the output I/O and write the header with muxer *options*."""
        if self.container is None:
            return self.status.error("Output format is not allocated", kind=ErrorKind.LIFECYCLE_VIOLATION)
        if self.output_open:
            return self.status.error("Output is already open", kind=ErrorKind.LIFECYCLE_VIOLATION)

        muxer_options = dict(options or {})
        if self._sink is not None:
            muxer_options.setdefault("packetsize", str(self.io_buffer_size))
            self.status.debug("Using custom output I/O: buffer(%d)", self.io_buffer_size)
        elif self.container.format.flags & AVFMT_NOFILE:
            self.status.debug("Output format %s needs no file", self.container.format.name)
        else:
            self.status.debug("Output URL: %s", self.target.url)

        self.output_open = True
        return self.write_header(muxer_options)

    def write_header(self, options: dict[str, str] | None = None) -> Status:
        if not self.output_open:
            return self.status.error("Output is not open", kind=ErrorKind.LIFECYCLE_VIOLATION)
        if self.header_written:
            return self.status.error("Header is already written", kind=ErrorKind.LIFECYCLE_VIOLATION)

        if options:
            self.container.container_options.update(options)
        try:
            self.container.start_encoding()
        except av.error.FFmpegError as e:
            return self.status.runtime_error(e, "Failed to write header: format(%s)", self.format_name)
        except ValueError as e:
            return self.status.error("Failed to write header: format(%s): %s", self.format_name, e)

        self.header_written = True
        self.status.info("Output header written: format(%s) streams(%d)", self.format_name, len(self.streams))
        return Status.OK

    # ── Packets ─────────────────────────────────────────────────────

    def write_packet(self, packet, dst_index: int | None = None) -> Status:
        """
        Rewrite timestamps for the destination stream and interleave the
        packet into the muxer.
        """
        if not self.header_written:
            return self.status.error("Header is not written", kind=ErrorKind.LIFECYCLE_VIOLATION)

        index = packet.stream_index if dst_index is None else dst_index
        record = self.streams.by_dst_index(index)
        if record is None:
            return self.status.error("Stream is not found: dst(%d)", index, kind=ErrorKind.STREAM_NOT_FOUND)

        av_stream = record.av_stream
        dst_time_base = av_stream.time_base
        self.timestamps.apply(packet, record, dst_time_base, packet.time_base)
        packet.stream = av_stream
        packet.time_base = dst_time_base

        # The muxer takes the packet payload; remember what it was given
        pts, dts = packet.pts, packet.dts
        try:
            self.container.mux_one(packet)
        except av.error.FFmpegError as e:
            return self.status.runtime_error(e, "Failed to write packet: dst(%d) pts(%s) dts(%s)", index, pts, dts)

        record.last_pts = pts
        record.last_dts = dts
        record.packet_count += 1
        return Status.OK

    # ── Frames ──────────────────────────────────────────────────────

    def _encoder_record(self, dst_index: int) -> StreamRecord | None:
        record = self.streams.by_dst_index(dst_index)
        if record is None:
            self.status.error("Stream is not found: dst(%d)", dst_index, kind=ErrorKind.STREAM_NOT_FOUND)
            return None
        if not record.codec_open:
            self.status.error("Encoder is not open: dst(%d)", dst_index, kind=ErrorKind.LIFECYCLE_VIOLATION)
            return None
        return record

    def write_frame(self, frame, dst_index: int) -> Status:
        """Encode *frame* (None flushes) and write every packet it yields."""
        record = self._encoder_record(dst_index)
        if record is None:
            return Status.ERROR
        if not self.header_written:
            return self.status.error("Header is not written", kind=ErrorKind.LIFECYCLE_VIOLATION)

        try:
            packets = record.codec_context.encode(frame)
        except av.error.FFmpegError as e:
            return self.status.runtime_error(e, "Failed to encode frame: dst(%d)", dst_index)

        for packet in packets:
            if self.packet_callback is not None:
                ret = self.packet_callback(packet)
                if ret < 0:
                    self.status.reset()
                    return self.status.error(
                        "Packet callback aborted: dst(%d) status(%d)", dst_index, ret, kind=ErrorKind.RUNTIME_FAILURE
                    )
                if ret == 0:
                    continue

            if self.write_packet(packet, dst_index) < 0:
                return Status.ERROR
        return Status.OK

    def write_frame_transformed(self, frame, params: FrameParams) -> Status:
        """
        Bring *frame* to the shape in *params* (scale, letterbox or
        resample as needed), then encode it. A frame that cannot be
        transformed is dropped with ``Status.NONE``.
        """
        if frame is None:
            return self.write_frame(None, params.index)

        if isinstance(frame, av.AudioFrame):
            frames = [frame]
            if needs_resample(frame, params):
                frames = resample(frame, params)
                if frames is None:
                    return Status.NONE
        elif isinstance(frame, av.VideoFrame):
            if needs_rescale(frame, params):
                if not params.width or not params.height:
                    params = replace(params, width=frame.width, height=frame.height)
                frame = scale(frame, params)
                if frame is None:
                    return Status.NONE
            frames = [frame]
        else:
            return self.status.error("Unsupported frame type: %s", type(frame).__name__)

        for out in frames:
            if self.write_frame(out, params.index) < 0:
                return Status.ERROR
        return Status.OK

    def write_frame_for_stream(self, frame, dst_index: int) -> Status:
        """Encode *frame* into the output stream *dst_index*, transforming it to that stream's shape."""
        record = self._encoder_record(dst_index)
        if record is None:
            return Status.ERROR

        params = FrameParams.from_descriptor(record.descriptor, dst_index, self.status)
        return self.write_frame_transformed(frame, params)

    # ── Flushing and finishing ──────────────────────────────────────

    def flush_stream(self, dst_index: int) -> Status:
        """Drain one encoder by sending it the end-of-stream frame."""
        return self.write_frame(None, dst_index)

    def flush_streams(self) -> Status:
        for record in self.streams:
            if record.codec_open and self.flush_stream(record.dst_index) < 0:
                return Status.ERROR
        return Status.OK

    def flush_buffer(self, dst_index: int) -> Status:
        """Discard one encoder's internal state without draining it."""
        record = self._encoder_record(dst_index)
        if record is None:
            return Status.ERROR
        record.codec_context.flush_buffers()
        return Status.OK

    def flush_buffers(self) -> None:
        for record in self.streams:
            if record.codec_open:
                record.codec_context.flush_buffers()

    def restart_codec(self, dst_index: int) -> int:
        """
        Replace the encoder of output stream *dst_index* with a fresh one
        built from the stream's descriptor, e.g. after it was drained.

        The muxer stream keeps its parameters, so the new encoder must
        produce a compatible bitstream. Returns *dst_index* or ``Status.ERROR``.
        """
        record = self._encoder_record(dst_index)
        if record is None:
            return Status.ERROR

        info = record.descriptor
        try:
            ctx = av.CodecContext.create(info.codec_name, "w")
            info.apply_to_codec_context(ctx)
            if self.container is not None and self.container.format.flags & AVFMT_GLOBALHEADER:
                ctx.options = {**ctx.options, "flags": "+global_header"}
            ctx.open()
        except av.error.FFmpegError as e:
            return self.status.runtime_error(
                e, "Failed to restart encoder: dst(%d) codec(%s)", dst_index, info.codec_name
            )
        except ValueError as e:
            return self.status.error("Failed to restart encoder: dst(%d) codec(%s): %s", dst_index, info.codec_name, e)

        opened = CodecDescriptor.from_codec_context(ctx)
        opened.scale_policy = info.scale_policy
        opened.frame_rate = opened.frame_rate or info.frame_rate
        record.descriptor = opened
        record.codec_context = ctx
        self.status.info("Restarted encoder: dst(%d) %s", dst_index, opened.dump_str())
        return dst_index

    def finish_write(self, flush: bool = True) -> Status:
        """Optionally drain the encoders, then write the trailer and close the output."""
        if self.container is None:
            return self.status.error("Output format is not allocated", kind=ErrorKind.LIFECYCLE_VIOLATION)

        result = Status.OK
        if flush and self.header_written:
            result = self.flush_streams()

        try:
            self.container.close()
        except av.error.FFmpegError as e:
            result = self.status.runtime_error(e, "Failed to write trailer: format(%s)", self.format_name)
        finally:
            self.container = None

        for record in self.streams:
            self.status.debug("Output stream done: dst(%d) packets(%d)", record.dst_index, record.packet_count)
        if self._sink is not None:
            self.status.debug("Custom output I/O wrote %d bytes", self._sink.bytes_written)
        return result

    # ── Metadata ────────────────────────────────────────────────────

    def add_meta(self, meta: Metadata) -> Status:
        """Move *meta*'s fields and chapters into the output; *meta* owns nothing afterwards."""
        if self.container is None:
            return self.status.error("Output format is not allocated", kind=ErrorKind.LIFECYCLE_VIOLATION)
        if self.header_written:
            return self.status.error("Metadata must be added before the header", kind=ErrorKind.LIFECYCLE_VIOLATION)
        if not meta.owns_data:
            return self.status.error("Metadata was already transferred", kind=ErrorKind.LIFECYCLE_VIOLATION)

        fields, chapters = meta.take()
        self.container.metadata.update(fields)
        self.status.debug("Added %d metadata fields", len(fields))
        if chapters:
            return self.add_chapters(chapters)
        return Status.OK

    def add_chapter(self, chapter: Chapter) -> Status:
        return self.add_chapters([chapter])

    def add_chapters(self, chapters: list[Chapter]) -> Status:
        if self.container is None:
            return self.status.error("Output format is not allocated", kind=ErrorKind.LIFECYCLE_VIOLATION)
        # Container.set_chapters appeared in PyAV 14
        if not hasattr(self.container, "set_chapters"):
            return self.status.error("Chapters are not supported by the installed PyAV")

        self._chapters.extend(chapters)
        try:
            self.container.set_chapters([chapter.to_av() for chapter in self._chapters])
        except av.error.FFmpegError as e:
            return self.status.runtime_error(e, "Failed to add chapters")
        self.status.debug("Added %d chapters", len(chapters))
        return Status.OK

    # ── Introspection and teardown ──────────────────────────────────

    def get_codec_info(self, dst_index: int) -> CodecDescriptor | None:
        record = self.streams.by_dst_index(dst_index)
        if record is None:
            self.status.error("Stream is not found: dst(%d)", dst_index, kind=ErrorKind.STREAM_NOT_FOUND)
            return None
        return record.descriptor.copy()

    def close(self) -> None:
        self.streams.close()
        if self.container is not None:
            self.container.close()
            self.container = None

    def __del__(self) -> None:
        self.close()
