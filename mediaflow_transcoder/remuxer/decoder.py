"""
Input side of the pipeline: demux a container and decode its streams.

Every audio and video stream of the input gets a ``StreamRecord`` keyed by
its container index (``src_index``). Decoded frames are pushed to the
frame callback as ``callback(frame, src_index)``; a negative return
stops the drain and fails the decode call.

In ``demux_only`` mode no decoder is opened and packets are meant to be
handed straight to the encoder (remux).
"""

import logging
from collections.abc import Callable, Iterator
from enum import IntFlag

import av

from mediaflow_transcoder.remuxer.codec import CodecDescriptor, MediaType
from mediaflow_transcoder.remuxer.status import AVERROR_EOF, ErrorKind, Status, StatusReporter
from mediaflow_transcoder.remuxer.stream import StreamRecord, StreamTable

logger = logging.getLogger(__name__)

FrameCallback = Callable[["av.VideoFrame | av.AudioFrame", int], int]


class SeekFlag(IntFlag):
    NONE = 0
    BACKWARD = 1  # land on the closest keyframe at or before the target
    ANY = 4  # allow landing on a non-keyframe


class Decoder:
    """
    PyAV backed demuxer/decoder.

    Args:
        frame_callback: Receives every decoded frame with its source index.
        status: Reporter for diagnostics; a silent one is created if omitted.
        demux_only: Record streams without opening decoders.
    """

    def __init__(
        self,
        frame_callback: FrameCallback | None = None,
        status: StatusReporter | None = None,
        demux_only: bool = False,
    ) -> None:
        self.frame_callback = frame_callback
        self.status = status or StatusReporter()
        self.demux_only = demux_only
        self.streams = StreamTable()
        self.container = None
        self.read_status = 0  # 0 after a packet, negative FFmpeg code on EOF/error
        self._selected: list = []
        self._packets: Iterator | None = None

    @property
    def at_eof(self) -> bool:
        return self.read_status == AVERROR_EOF

    # ── Opening ─────────────────────────────────────────────────────

    def open(self, url: str, format_hint: str | None = None, options: dict | None = None) -> Status:
        """Open an input and every audio/video stream in it."""
        if self.container is not None:
            return self.status.error("Input is already open: %s", url, kind=ErrorKind.LIFECYCLE_VIOLATION)
        if not url:
            return self.status.error("Invalid input URL")

        try:
            self.container = av.open(url, mode="r", format=format_hint, options=options or {})
        except av.error.FFmpegError as e:
            return self.status.runtime_error(e, "Failed to open input: %s", url)

        for av_stream in self.container.streams:
            media_type = MediaType.from_av(av_stream.type)
            if media_type is MediaType.UNKNOWN:
                self.status.debug("Skipping %s stream: src(%d)", av_stream.type, av_stream.index)
                continue

            record = self.streams.new_stream()
            record.descriptor = CodecDescriptor.from_stream(av_stream)
            record.av_stream = av_stream
            record.src_index = av_stream.index
            self._selected.append(av_stream)

            if not self.demux_only and self._open_stream_decoder(record) < 0:
                self.close()
                return Status.ERROR

            self.status.info("Input stream: src(%d) %s", record.src_index, record.descriptor.dump_str())

        if not self._selected:
            self.close()
            return self.status.error("No audio or video streams in input: %s", url, kind=ErrorKind.STREAM_NOT_FOUND)

        self._packets = self.container.demux(*self._selected)
        logger.debug("[decoder] Opened %s (%s) with %d streams", url, self.container.format.name, len(self.streams))
        return Status.OK

    def _open_stream_decoder(self, record: StreamRecord) -> Status:
        av_stream = record.av_stream
        ctx = av_stream.codec_context
        if ctx is None:
            return self.status.error(
                "Unknown decoder: src(%d) codec(%s)",
                record.src_index,
                record.descriptor.codec_name,
                kind=ErrorKind.STREAM_NOT_FOUND,
            )

        if ctx.type == "video" and av_stream.guessed_rate:
            ctx.framerate = av_stream.guessed_rate

        try:
            ctx.open(strict=False)
        except av.error.FFmpegError as e:
            return self.status.runtime_error(e, "Failed to open decoder: src(%d) codec(%s)", record.src_index, ctx.name)

        record.codec_context = ctx
        record.codec_open = True
        return Status.OK

    def open_codec(self, descriptor: CodecDescriptor) -> int:
        """
        Create a decoder for a raw elementary stream.

        Returns the new source index, or ``Status.ERROR``. Extradata is
        moved from *descriptor* into the codec context.
        """
        if not descriptor.codec_name:
            return self.status.error("Invalid decoder descriptor: missing codec")

        try:
            ctx = av.CodecContext.create(descriptor.codec_name, "r")
        except ValueError:
            return self.status.error("Unknown decoder: %s", descriptor.codec_name, kind=ErrorKind.STREAM_NOT_FOUND)

        src_index = self.streams.next_src_index()
        info = descriptor.copy()

        try:
            descriptor.apply_to_codec_context(ctx)
            extradata = descriptor.take_extradata()
            if extradata:
                ctx.extradata = extradata
            ctx.open()
        except av.error.FFmpegError as e:
            return self.status.runtime_error(e, "Failed to open decoder: src(%d) codec(%s)", src_index, ctx.name)
        except (ValueError, RuntimeError) as e:
            return self.status.error("Parameters not applicable to decoder %s: %s", descriptor.codec_name, e)

        record = self.streams.new_stream(info)
        record.src_index = src_index
        record.codec_context = ctx
        record.codec_open = True
        self.status.info("Opened decoder: src(%d) %s", src_index, record.descriptor.dump_str())
        return src_index

    def create_packet(self, data: bytes, src_index: int, pts: int | None = None, dts: int | None = None):
        """Wrap elementary stream bytes as a packet for ``decode_packet(packet, src_index)``."""
        record = self.streams.by_src_index(src_index)
        if record is None:
            self.status.error("Stream is not found: src(%d)", src_index, kind=ErrorKind.STREAM_NOT_FOUND)
            return None

        packet = av.Packet(data)
        packet.pts = pts
        packet.dts = dts if dts is not None else pts
        if record.descriptor.time_base is not None:
            packet.time_base = record.descriptor.time_base
        return packet

    # ── Reading and decoding ────────────────────────────────────────

    def read_packet(self):
        """
        Pull the next demuxed packet, or None at end of input or on error.

        ``read_status`` tells the two apart (``AVERROR_EOF`` vs. another
        negative code).
        """
        if self._packets is None:
            self.read_status = Status.ERROR
            self.status.error("Input is not open", kind=ErrorKind.LIFECYCLE_VIOLATION)
            return None

        while True:
            try:
                packet = next(self._packets)
            except (StopIteration, av.error.EOFError):
                self.read_status = AVERROR_EOF
                return None
            except av.error.FFmpegError as e:
                self.read_status = self.status.capture(e)
                self.status.error("Failed to read packet", kind=ErrorKind.RUNTIME_FAILURE)
                return None

            # demux() yields empty flush packets once the input is exhausted
            if packet.size == 0:
                continue

            self.read_status = 0
            return packet

    def decode_packet(self, packet, src_index: int | None = None) -> Status:
        """Decode one packet and push every produced frame to the callback."""
        if src_index is None:
            src_index = packet.stream_index

        record = self.streams.by_src_index(src_index)
        if record is None:
            return self.status.error("Stream is not found: src(%d)", src_index, kind=ErrorKind.STREAM_NOT_FOUND)
        if not record.codec_open:
            return self.status.error("Decoder is not open: src(%d)", src_index, kind=ErrorKind.LIFECYCLE_VIOLATION)

        try:
            frames = record.codec_context.decode(packet)
        except av.error.InvalidDataError as e:
            # Corrupt packet: drop it and keep going
            self.status.runtime_error(e, "Failed to decode packet: src(%d) pts(%s)", src_index, packet.pts)
            return Status.NONE
        except av.error.FFmpegError as e:
            return self.status.runtime_error(e, "Failed to decode packet: src(%d) pts(%s)", src_index, packet.pts)

        return self._emit(record, frames, packet.pts)

    def drain(self) -> Status:
        """Flush every open decoder and push the frames they still hold."""
        result = Status.OK
        for record in self.streams:
            if not record.codec_open:
                continue
            try:
                frames = record.codec_context.decode(None)
            except av.error.FFmpegError as e:
                self.status.runtime_error(e, "Failed to drain decoder: src(%d)", record.src_index)
                result = Status.ERROR
                continue
            if self._emit(record, frames, None) < 0:
                return Status.ERROR
        return result

    def _emit(self, record: StreamRecord, frames, packet_pts: int | None) -> Status:
        result = Status.OK
        for frame in frames:
            if frame.pts is None and packet_pts is not None:
                frame.pts = packet_pts
            if frame.time_base is None and record.descriptor.time_base is not None:
                frame.time_base = record.descriptor.time_base
            if self.frame_callback is None:
                continue

            ret = self.frame_callback(frame, record.src_index)
            if ret < 0:
                self.status.reset()
                return self.status.error(
                    "Frame callback failed: src(%d) status(%d)",
                    record.src_index,
                    ret,
                    kind=ErrorKind.RUNTIME_FAILURE,
                )
            result = Status.OK if ret > 0 else Status.NONE
        return result

    # ── Seeking ─────────────────────────────────────────────────────

    def seek(self, src_index: int, timestamp: int, flags: SeekFlag = SeekFlag.BACKWARD) -> Status:
        """
        Seek the input; *timestamp* is in the stream's time base, or in
        microseconds when *src_index* is negative.
        """
        if self.container is None:
            return self.status.error("Input is not open", kind=ErrorKind.LIFECYCLE_VIOLATION)

        av_stream = None
        if src_index >= 0:
            record = self.streams.by_src_index(src_index)
            if record is None:
                return self.status.error("Stream is not found: src(%d)", src_index, kind=ErrorKind.STREAM_NOT_FOUND)
            av_stream = record.av_stream

        try:
            self.container.seek(
                timestamp,
                backward=bool(flags & SeekFlag.BACKWARD),
                any_frame=bool(flags & SeekFlag.ANY),
                stream=av_stream,
            )
        except av.error.FFmpegError as e:
            return self.status.runtime_error(e, "Failed to seek: src(%d) ts(%d)", src_index, timestamp)

        self._packets = self.container.demux(*self._selected)
        self.read_status = 0
        self.status.debug("Seeked input: src(%d) ts(%d) flags(%d)", src_index, timestamp, int(flags))
        return Status.OK

    def flush_buffers(self) -> None:
        """Discard decoder internal state, e.g. after a seek."""
        for record in self.streams:
            if record.codec_open:
                record.codec_context.flush_buffers()

    # ── Introspection and teardown ──────────────────────────────────

    def get_codec_info(self, src_index: int) -> CodecDescriptor | None:
        record = self.streams.by_src_index(src_index)
        if record is None:
            self.status.error("Stream is not found: src(%d)", src_index, kind=ErrorKind.STREAM_NOT_FOUND)
            return None
        return record.descriptor.copy()

    def copy_codec_info(self, src_index: int, target: CodecDescriptor) -> Status:
        """Copy the descriptor of *src_index* into *target* in place."""
        info = self.get_codec_info(src_index)
        if info is None:
            return Status.ERROR
        for name in CodecDescriptor.__slots__:
            setattr(target, name, getattr(info, name))
        return Status.OK

    def close(self) -> None:
        self.streams.close()
        self._selected = []
        self._packets = None
        if self.container is not None:
            self.container.close()
            self.container = None

    def __del__(self) -> None:
        self.close()
