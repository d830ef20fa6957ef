"""
Decoder -> Encoder pipeline driver.

Setup order: open the input, build one output stream per input stream
(copying the input descriptor and applying the option overrides), attach
metadata, open the output. The main loop then reads packets and either
remuxes them straight into the mapped output stream or decodes them, in
which case frames reach the encoder through the decoder's frame callback.
"""

import logging
import signal
from fractions import Fraction

import av

from mediaflow_transcoder.remuxer.codec import CodecDescriptor, ScalePolicy
from mediaflow_transcoder.remuxer.decoder import Decoder, SeekFlag
from mediaflow_transcoder.remuxer.encoder import Encoder
from mediaflow_transcoder.remuxer.metadata import Metadata, parse_metadata_file
from mediaflow_transcoder.remuxer.status import Status, StatusReporter
from mediaflow_transcoder.remuxer.stream import UNSET_INDEX
from mediaflow_transcoder.remuxer.timestamps import TimestampMode
from mediaflow_transcoder.schemas import TranscodeOptions

logger = logging.getLogger(__name__)

# Non-seekable outputs cannot get a moov atom patched in at the end
MP4_STREAMING_OPTIONS = {"movflags": "frag_keyframe+empty_moov"}
MPEGTS_STREAMING_OPTIONS = {"sdt_period": "0.5", "pat_period": "0.5"}


def muxer_defaults(format_name: str | None, custom_io: bool) -> dict[str, str]:
    """Muxer options the output format needs for the chosen I/O mode."""
    if not custom_io or not format_name:
        return {}
    names = format_name.split(",")
    if "mp4" in names or "mov" in names:
        return dict(MP4_STREAMING_OPTIONS)
    if "mpegts" in names:
        return dict(MPEGTS_STREAMING_OPTIONS)
    return {}


def _supported_format(codec_name: str, current: str | None, attr: str) -> str | None:
    """Keep *current* if the encoder takes it, else the encoder's first supported format."""
    try:
        codec = av.Codec(codec_name, "w")
    except ValueError:
        return current
    formats = getattr(codec, attr) or []
    names = [fmt.name for fmt in formats]
    if not names or current in names:
        return current
    return names[0]


class Transcoder:
    """
    Runs one input through the decoder/encoder pair.

    Args:
        options: Validated option set.
        status: Reporter shared (as clones) by the decoder, encoder and metadata.
    """

    def __init__(self, options: TranscodeOptions, status: StatusReporter | None = None) -> None:
        self.options = options
        self.status = status or StatusReporter()
        self.interrupted = False
        self._output_file = None

        self.decoder = Decoder(self._on_frame, self.status.clone(), demux_only=options.remux)
        self.encoder = Encoder(
            status=self.status.clone(),
            timestamp_mode=TimestampMode.parse(options.timestamp_mode),
            ts_fix=options.timestamp_fix,
            mux_only=options.remux,
            io_buffer_size=options.io_buffer_size,
            muxer_callback=self._write_output if options.custom_io else None,
        )
        self.meta = Metadata(self.status.clone())

    # ── Signals ─────────────────────────────────────────────────────

    def interrupt(self) -> None:
        """Stop the main loop before the next packet is read."""
        self.interrupted = True

    def install_signal_handlers(self) -> None:
        def handler(signum, _frame):
            logger.info("[pipeline] Received %s, stopping", signal.Signals(signum).name)
            self.interrupt()

        signal.signal(signal.SIGINT, handler)
        signal.signal(signal.SIGTERM, handler)

    # ── Setup ───────────────────────────────────────────────────────

    def setup(self) -> Status:
        opts = self.options
        if self.decoder.open(opts.input, opts.input_format) < 0:
            return Status.ERROR

        if opts.custom_io:
            try:
                self._output_file = open(opts.output, "wb")
            except OSError as e:
                return self.status.error("Failed to open output file %s: %s", opts.output, e)

        if self.encoder.open_format(opts.output_format, opts.output) < 0:
            return Status.ERROR

        for src in self.decoder.streams:
            info = self.output_descriptor(src.descriptor)
            dst_index = self.encoder.open_stream(info, template=src.av_stream)
            if dst_index < 0:
                return Status.ERROR

            dst = self.encoder.streams.by_dst_index(dst_index)
            dst.src_index = src.src_index
            src.dst_index = dst.dst_index
            self.status.debug("Mapped stream: src(%d) -> dst(%d)", src.src_index, dst.dst_index)

        if opts.metadata_file:
            try:
                self.meta = parse_metadata_file(opts.metadata_file, self.status.clone())
            except OSError as e:
                return self.status.error("Failed to read metadata file %s: %s", opts.metadata_file, e)
            if self.encoder.add_meta(self.meta) < 0:
                return Status.ERROR

        return self.encoder.open_output(muxer_defaults(self.encoder.format_name, opts.custom_io))

    def output_descriptor(self, source: CodecDescriptor) -> CodecDescriptor:
        """Input descriptor with the user overrides applied."""
        info = source.copy()
        if self.options.remux:
            return info

        # Encoder generated
        info.profile = None
        info.extradata = None
        info.frame_size = None

        if info.is_video:
            video = self.options.video
            info.codec_name = video.codec or info.codec_name
            info.pix_fmt = video.pix_fmt or info.pix_fmt
            info.scale_policy = ScalePolicy.parse(video.scale_policy)
            if video.width and video.height:
                info.width, info.height = video.width, video.height
            if video.frame_rate:
                info.frame_rate = video.frame_rate
            if info.frame_rate:
                info.time_base = 1 / Fraction(info.frame_rate)
            if not video.pix_fmt:
                info.pix_fmt = _supported_format(info.codec_name, info.pix_fmt, "video_formats")
        elif info.is_audio:
            audio = self.options.audio
            info.codec_name = audio.codec or info.codec_name
            info.sample_fmt = audio.sample_fmt or info.sample_fmt
            info.sample_rate = audio.sample_rate or info.sample_rate
            if audio.channels:
                info.init_channels(audio.channels)
            if info.sample_rate:
                info.time_base = Fraction(1, info.sample_rate)
            if not audio.sample_fmt:
                info.sample_fmt = _supported_format(info.codec_name, info.sample_fmt, "audio_formats")
        return info

    # ── Main loop ───────────────────────────────────────────────────

    def _on_frame(self, frame, src_index: int) -> int:
        src = self.decoder.streams.by_src_index(src_index)
        if src is None or src.dst_index == UNSET_INDEX:
            return Status.NONE
        return self.encoder.write_frame_for_stream(frame, src.dst_index)

    def _write_output(self, data: bytes) -> int:
        return self._output_file.write(data)

    def _restart(self) -> Status:
        first = self.decoder.streams.get(0)
        if self.decoder.seek(first.src_index, 0, SeekFlag.BACKWARD) < 0:
            return Status.ERROR
        if not self.options.remux:
            self.decoder.flush_buffers()
        return Status.OK

    def run(self) -> Status:
        """Read, dispatch and finalize; the trailer is written even when the loop fails."""
        remux = self.options.remux
        result = Status.OK
        packets = 0

        while not self.interrupted:
            packet = self.decoder.read_packet()
            if packet is None:
                if self.decoder.at_eof and self.options.loop:
                    if self._restart() < 0:
                        result = Status.ERROR
                        break
                    continue
                if not self.decoder.at_eof:
                    result = Status.ERROR
                elif not remux and self.decoder.drain() < 0:
                    result = Status.ERROR
                break

            if remux:
                src = self.decoder.streams.by_src_index(packet.stream_index)
                if src is None or src.dst_index == UNSET_INDEX:
                    continue
                if self.encoder.write_packet(packet, src.dst_index) < 0:
                    result = Status.ERROR
                    break
            elif self.decoder.decode_packet(packet) < 0:
                result = Status.ERROR
                break
            packets += 1

        if self.interrupted:
            logger.info("[pipeline] Interrupted after %d packets", packets)

        finished = self.encoder.finish_write(flush=not remux)
        self._close_output()
        logger.debug("[pipeline] Processed %d packets: %s -> %s", packets, self.options.input, self.options.output)
        return result if result < 0 else finished

    # ── Teardown ────────────────────────────────────────────────────

    def _close_output(self) -> None:
        if self._output_file is not None:
            self._output_file.close()
            self._output_file = None

    def close(self) -> None:
        self.decoder.close()
        self.encoder.close()
        self._close_output()
