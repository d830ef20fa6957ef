"""
Packet timestamp discipline for the muxer.

Five strategies decide the pts/dts handed to the muxer (see
``TimestampMode``); a monotonic fix-up then forces increasing timestamps
per stream when a positive ``ts_fix`` delta is configured.

Everything here works on plain attributes (``pts``, ``dts``, ``duration``)
so it applies equally to ``av.Packet`` and test doubles.
"""

import logging
import time
from enum import Enum
from fractions import Fraction

from mediaflow_transcoder.remuxer.codec import CodecDescriptor, MediaType
from mediaflow_transcoder.remuxer.stream import StreamRecord

logger = logging.getLogger(__name__)


class TimestampMode(Enum):
    CALCULATE = "calculate"  # wall clock since the first packet
    COMPUTE = "compute"  # packet counter times the nominal frame duration
    RESCALE = "rescale"  # source time base -> destination time base
    ROUND = "round"  # rescale pts and dts only, missing values pass through
    SOURCE = "source"  # keep whatever the source produced

    @classmethod
    def parse(cls, value: "str | TimestampMode") -> "TimestampMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown timestamp mode: {value}") from None


def rescale(value: int | None, src: Fraction, dst: Fraction) -> int | None:
    """
    Rescale an integer timestamp from time base *src* to *dst*.

    Rounds half away from zero; a missing timestamp stays None.
    """
    if value is None:
        return None
    scaled = value * Fraction(src) / Fraction(dst)
    if scaled >= 0:
        return int(scaled + Fraction(1, 2))
    return -int(-scaled + Fraction(1, 2))


class TimestampController:
    """
    Applies one ``TimestampMode`` plus the monotonic fix-up.

    Args:
        mode: Strategy for the destination timestamps.
        ts_fix: Delta added to the previous timestamp when a packet would
            not advance it. 0 disables the fix-up.
        clock: Microsecond clock for CALCULATE mode.
    """

    def __init__(self, mode: TimestampMode = TimestampMode.RESCALE, ts_fix: int = 0, clock=None) -> None:
        self.mode = mode
        self.ts_fix = ts_fix
        self._clock = clock or (lambda: time.monotonic_ns() // 1000)
        self._start_time: int | None = None

    def reset(self) -> None:
        self._start_time = None

    def apply(
        self,
        packet,
        record: StreamRecord,
        dst_time_base: Fraction,
        src_time_base: Fraction | None = None,
    ) -> None:
        """
        Rewrite ``packet`` timestamps in place for the destination stream.

        ``src_time_base`` defaults to the record descriptor's time base.
        """
        if record is None:
            return

        if self.mode is TimestampMode.CALCULATE:
            self._calculate(packet, dst_time_base)
        elif self.mode is TimestampMode.COMPUTE:
            self._compute(packet, record.descriptor, record.packet_count, dst_time_base)
        elif self.mode is TimestampMode.RESCALE:
            src = src_time_base or record.descriptor.time_base or dst_time_base
            packet.pts = rescale(packet.pts, src, dst_time_base)
            packet.dts = rescale(packet.dts, src, dst_time_base)
            if packet.duration:
                packet.duration = rescale(packet.duration, src, dst_time_base)
        elif self.mode is TimestampMode.ROUND:
            src = src_time_base or record.descriptor.time_base or dst_time_base
            packet.pts = rescale(packet.pts, src, dst_time_base)
            packet.dts = rescale(packet.dts, src, dst_time_base)

        self.fix(packet, record)

    def _calculate(self, packet, dst_time_base: Fraction) -> None:
        now = self._clock()
        if self._start_time is None:
            self._start_time = now
        elapsed = now - self._start_time
        packet.pts = packet.dts = elapsed * dst_time_base.denominator // 1_000_000

    def _compute(self, packet, info: CodecDescriptor, count: int, dst_time_base: Fraction) -> None:
        if info.media_type is MediaType.VIDEO and info.frame_rate:
            src = 1 / Fraction(info.frame_rate)
            packet.duration = rescale(1, src, dst_time_base)
            packet.pts = packet.dts = rescale(count, src, dst_time_base)
        elif info.media_type is MediaType.AUDIO and info.sample_rate:
            src = Fraction(1, info.sample_rate)
            frame_size = info.frame_size or 1
            packet.duration = rescale(frame_size, src, dst_time_base)
            packet.pts = packet.dts = rescale(count * frame_size, src, dst_time_base)
        else:
            logger.debug("[timestamps] Cannot compute timestamps for %s stream", info.media_type.value)

    def fix(self, packet, record: StreamRecord) -> None:
        """Force pts/dts past the values last written on *record*."""
        if self.ts_fix <= 0:
            return

        pts_stalled = record.last_pts is not None and packet.pts is not None and packet.pts <= record.last_pts
        dts_stalled = record.last_dts is not None and packet.dts is not None and packet.dts <= record.last_dts
        if pts_stalled or dts_stalled:
            if record.last_pts is not None:
                packet.pts = record.last_pts + self.ts_fix
            if record.last_dts is not None:
                packet.dts = record.last_dts + self.ts_fix
