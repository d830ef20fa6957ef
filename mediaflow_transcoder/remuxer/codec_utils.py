"""
Bitstream helpers for codec extradata.

- Annex B NAL unit enumeration (3- and 4-byte start codes)
- H.264 extradata assembly from the first SPS and PPS of a bitstream
- OpusHead synthesis for Opus streams muxed without a container header
"""

import logging
import struct
from dataclasses import dataclass

logger = logging.getLogger(__name__)

ANNEXB_START_CODE = b"\x00\x00\x00\x01"

H264_NAL_SLICE = 1
H264_NAL_IDR = 5
H264_NAL_SEI = 6
H264_NAL_SPS = 7
H264_NAL_PPS = 8
H264_NAL_AUD = 9

OPUS_HEAD_MAGIC = b"OpusHead"
OPUS_HEAD_SIZE = 19
# magic, version, channels, pre-skip, input rate, output gain, mapping family
_OPUS_HEAD_STRUCT = struct.Struct("<8sBBHIhB")


@dataclass(slots=True)
class NalUnit:
    """One NAL unit inside an Annex B buffer."""

    nal_pos: int  # offset of the start code
    data_pos: int  # offset of the NAL header byte
    unit_type: int
    ref_idc: int  # 1 when nal_ref_idc bit 5 is set
    size: int = 0  # payload bytes from data_pos to the next start code

    @property
    def prefix_len(self) -> int:
        return self.data_pos - self.nal_pos

    def payload(self, data: bytes) -> bytes:
        return bytes(data[self.data_pos : self.data_pos + self.size])


def parse_nal_units(data: bytes) -> list[NalUnit]:
    """
    Enumerate the NAL units of an Annex B buffer.

    Sizes are back-filled once the scan is complete: a unit runs up to the
    next unit's start code, the last one to the end of the buffer.
    """
    size = len(data)
    units: list[NalUnit] = []
    i = 0

    while i + 2 < size:
        if data[i] != 0:
            i += 1
            continue
        if data[i + 1] != 0:
            i += 2
            continue
        if data[i + 2] == 1:
            data_pos = i + 3
        elif data[i + 2] == 0 and i + 3 < size and data[i + 3] == 1:
            data_pos = i + 4
        else:
            i += 1
            continue

        if data_pos >= size:
            break

        header = data[data_pos]
        units.append(
            NalUnit(
                nal_pos=i,
                data_pos=data_pos,
                unit_type=header & 0x1F,
                ref_idc=1 if header & 0x20 else 0,
            )
        )
        i = data_pos

    for current, following in zip(units, units[1:]):
        current.size = following.nal_pos - current.data_pos
    if units:
        units[-1].size = size - units[-1].data_pos

    return units


def find_parameter_sets(data: bytes, units: list[NalUnit] | None = None) -> tuple[bytes | None, bytes | None]:
    """Return the first SPS and the first PPS payloads of an H.264 bitstream."""
    if units is None:
        units = parse_nal_units(data)

    sps = pps = None
    for unit in units:
        if unit.unit_type == H264_NAL_SPS and sps is None:
            sps = unit.payload(data)
        elif unit.unit_type == H264_NAL_PPS and pps is None:
            pps = unit.payload(data)
        if sps is not None and pps is not None:
            break
    return sps, pps


def build_h264_extradata(data: bytes) -> bytes | None:
    """
    Assemble Annex B extradata ``[SC] SPS [SC] PPS`` from a bitstream.

    Returns None when the buffer carries no SPS or no PPS.
    """
    sps, pps = find_parameter_sets(data)
    if sps is None or pps is None:
        logger.debug("[codec_utils] No SPS/PPS pair in %d byte buffer", len(data))
        return None
    return ANNEXB_START_CODE + sps + ANNEXB_START_CODE + pps


def build_opus_header(
    channels: int,
    sample_rate: int = 48000,
    pre_skip: int = 0,
    output_gain: int = 0,
    mapping_family: int = 0,
) -> bytes:
    """Build the 19 byte OpusHead identification header (RFC 7845, section 5.1)."""
    if not 0 < channels <= 255:
        raise ValueError(f"Invalid Opus channel count: {channels}")
    return _OPUS_HEAD_STRUCT.pack(OPUS_HEAD_MAGIC, 1, channels, pre_skip, sample_rate, output_gain, mapping_family)


def parse_opus_header(data: bytes) -> dict | None:
    """Decode an OpusHead header, or None if *data* is not one."""
    if len(data) < OPUS_HEAD_SIZE or not data.startswith(OPUS_HEAD_MAGIC):
        return None
    _, version, channels, pre_skip, sample_rate, output_gain, mapping_family = _OPUS_HEAD_STRUCT.unpack_from(data)
    return {
        "version": version,
        "channels": channels,
        "pre_skip": pre_skip,
        "sample_rate": sample_rate,
        "output_gain": output_gain,
        "mapping_family": mapping_family,
    }
