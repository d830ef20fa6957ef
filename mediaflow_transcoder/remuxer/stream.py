"""
Stream records and the ordered stream table shared by decoder and encoder.

On the input side a record carries ``src_index`` (the container stream
index); on the output side it carries ``dst_index``. The pipeline fills in
the complementary index when it maps one side onto the other.
"""

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field

from mediaflow_transcoder.remuxer.codec import CodecDescriptor

logger = logging.getLogger(__name__)

UNSET_INDEX = -1


@dataclass(slots=True)
class StreamRecord:
    """One input or output stream with its runtime handles and counters."""

    descriptor: CodecDescriptor = field(default_factory=CodecDescriptor)
    codec_context: object = None  # av.CodecContext when a codec is attached
    av_stream: object = None  # av.stream.Stream of the owning container
    src_index: int = UNSET_INDEX
    dst_index: int = UNSET_INDEX
    codec_open: bool = False
    packet_count: int = 0
    last_pts: int | None = None
    last_dts: int | None = None

    def close(self) -> None:
        """Drop the runtime handles; PyAV frees the native objects with them."""
        self.codec_context = None
        self.av_stream = None
        self.codec_open = False
        self.descriptor.extradata = None


class StreamTable:
    """Ordered collection of ``StreamRecord`` with index lookups."""

    def __init__(self) -> None:
        self._records: list[StreamRecord] = []

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[StreamRecord]:
        return iter(self._records)

    def new_stream(self, descriptor: CodecDescriptor | None = None) -> StreamRecord:
        record = StreamRecord(descriptor=descriptor.copy() if descriptor is not None else CodecDescriptor())
        self._records.append(record)
        return record

    def get(self, position: int) -> StreamRecord | None:
        """Lookup by insertion order."""
        if 0 <= position < len(self._records):
            return self._records[position]
        return None

    def by_src_index(self, src_index: int) -> StreamRecord | None:
        if src_index < 0:
            return None
        for record in self._records:
            if record.src_index == src_index:
                return record
        return None

    def by_dst_index(self, dst_index: int) -> StreamRecord | None:
        if dst_index < 0:
            return None
        for record in self._records:
            if record.dst_index == dst_index:
                return record
        return None

    def next_src_index(self) -> int:
        return max((r.src_index for r in self._records), default=UNSET_INDEX) + 1

    def next_dst_index(self) -> int:
        return max((r.dst_index for r in self._records), default=UNSET_INDEX) + 1

    def close(self) -> None:
        for record in self._records:
            record.close()
        self._records.clear()
