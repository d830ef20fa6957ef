import argparse
import logging
import sys

import av.logging
from pydantic import ValidationError

from mediaflow_transcoder.configs import settings
from mediaflow_transcoder.remuxer.pipeline import Transcoder
from mediaflow_transcoder.remuxer.status import StatusKind, StatusReporter, logging_status_callback
from mediaflow_transcoder.schemas import AudioOptions, TranscodeOptions, VideoOptions

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mediaflow-transcoder", description="Transcode or remux media files with FFmpeg (PyAV)."
    )
    parser.add_argument("-i", "--input", required=True, help="Input URL or path")
    parser.add_argument("-o", "--output", required=True, help="Output URL or path")
    parser.add_argument("-e", "--input-format", help="Input format hint")
    parser.add_argument("-f", "--output-format", help="Output format hint")

    video = parser.add_argument_group("video")
    video.add_argument("-vc", "--video-codec", help="Video codec (e.g. h264, mpeg4)")
    video.add_argument("-vf", "--pix-fmt", help="Pixel format (e.g. yuv420p)")
    video.add_argument("-vs", "--scale", choices=["stretch", "aspect"], default="stretch", help="Scale policy")
    video.add_argument("-vw", "--width", type=int, help="Output width")
    video.add_argument("-vh", "--height", type=int, help="Output height")
    video.add_argument("-vr", "--frame-rate", help="Frame rate as num:den (e.g. 30000:1001)")

    audio = parser.add_argument_group("audio")
    audio.add_argument("-ac", "--audio-codec", help="Audio codec (e.g. aac, opus)")
    audio.add_argument("-af", "--sample-fmt", help="Sample format (e.g. fltp, s16)")
    audio.add_argument("-ar", "--sample-rate", type=int, help="Sample rate in Hz")
    audio.add_argument("-an", "--channels", type=int, help="Channel count")

    parser.add_argument("-b", "--buffer-size", type=int, default=settings.io_buffer_size, help="Custom I/O buffer size")
    parser.add_argument("-c", "--custom-io", action="store_true", help="Write the output through custom I/O")
    parser.add_argument(
        "-t",
        "--timestamp",
        choices=["calculate", "compute", "rescale", "round", "source"],
        default=settings.timestamp_mode.lower(),
        help="Timestamp mode",
    )
    parser.add_argument("-x", "--ts-fix", type=int, default=settings.timestamp_fix, help="Monotonic fix-up delta")
    parser.add_argument("-m", "--metadata", help="Metadata/chapter file")
    parser.add_argument("-r", "--remux", action="store_true", help="Copy packets without decoding")
    parser.add_argument("-l", "--loop", action="store_true", help="Loop the input until interrupted")
    parser.add_argument("-d", "--debug", action="store_true", help="Debug output")
    return parser


def options_from_args(args: argparse.Namespace) -> TranscodeOptions:
    return TranscodeOptions(
        input=args.input,
        output=args.output,
        input_format=args.input_format,
        output_format=args.output_format,
        video=VideoOptions(
            codec=args.video_codec,
            pix_fmt=args.pix_fmt,
            scale_policy=args.scale,
            width=args.width,
            height=args.height,
            frame_rate=args.frame_rate,
        ),
        audio=AudioOptions(
            codec=args.audio_codec,
            sample_fmt=args.sample_fmt,
            sample_rate=args.sample_rate,
            channels=args.channels,
        ),
        io_buffer_size=args.buffer_size,
        custom_io=args.custom_io,
        timestamp_mode=args.timestamp,
        timestamp_fix=args.ts_fix,
        metadata_file=args.metadata,
        remux=args.remux,
        loop=args.loop,
        debug=args.debug,
    )


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    level = "DEBUG" if args.debug else settings.log_level
    logging.basicConfig(level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    av.logging.set_level(av.logging.DEBUG if args.debug else av.logging.ERROR)

    try:
        options = options_from_args(args)
    except ValidationError as e:
        logger.error("[main] Invalid options: %s", e)
        return 1

    kinds = StatusKind.ALL if options.debug else StatusKind.parse(settings.status_kinds)
    status = StatusReporter(logging_status_callback(logging.getLogger("mediaflow_transcoder")), kinds)

    transcoder = Transcoder(options, status)
    try:
        transcoder.install_signal_handlers()
        if transcoder.setup() < 0:
            logger.error("[main] Failed to set up %s -> %s", options.input, options.output)
            return 1
        if transcoder.run() < 0:
            logger.error("[main] Transcoding %s failed", options.input)
            return 1
    finally:
        transcoder.close()

    logger.info("[main] Done: %s", options.output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
