import pytest

from mediaflow_transcoder.remuxer.codec_utils import (
    ANNEXB_START_CODE,
    H264_NAL_IDR,
    H264_NAL_PPS,
    H264_NAL_SPS,
    OPUS_HEAD_SIZE,
    build_h264_extradata,
    build_opus_header,
    find_parameter_sets,
    parse_nal_units,
    parse_opus_header,
)

SPS = bytes([0x67, 0x42, 0xC0, 0x1E, 0xD9, 0x00, 0xA0, 0x47, 0xFE, 0xC8])
PPS = bytes([0x68, 0xCE, 0x3C, 0x80])
IDR = bytes([0x65, 0x88, 0x84, 0x00, 0x33, 0xFF])


def _annexb(*units: bytes, start_code: bytes = ANNEXB_START_CODE) -> bytes:
    return b"".join(start_code + unit for unit in units)


def test_parse_sps_pps_idr_sequence():
    data = _annexb(SPS, PPS, IDR)

    units = parse_nal_units(data)

    assert [unit.unit_type for unit in units] == [H264_NAL_SPS, H264_NAL_PPS, H264_NAL_IDR]
    assert [unit.size for unit in units] == [len(SPS), len(PPS), len(IDR)]
    assert [unit.ref_idc for unit in units] == [1, 1, 1]
    assert sum(unit.size + unit.prefix_len for unit in units) == len(data)


def test_h264_extradata_is_sps_and_pps_with_start_codes():
    data = _annexb(SPS, PPS, IDR)

    extradata = build_h264_extradata(data)

    assert extradata == ANNEXB_START_CODE + SPS + ANNEXB_START_CODE + PPS
    assert len(extradata) == len(SPS) + len(PPS) + 8


def test_three_byte_start_codes():
    data = _annexb(SPS, IDR, start_code=b"\x00\x00\x01")

    units = parse_nal_units(data)

    assert [(unit.nal_pos, unit.data_pos) for unit in units] == [(0, 3), (3 + len(SPS), 6 + len(SPS))]
    assert units[0].payload(data) == SPS
    assert units[1].payload(data) == IDR


def test_leading_garbage_and_mixed_start_codes():
    data = b"\xff\xfe" + ANNEXB_START_CODE + SPS + b"\x00\x00\x01" + PPS

    units = parse_nal_units(data)

    assert [unit.unit_type for unit in units] == [H264_NAL_SPS, H264_NAL_PPS]
    assert units[0].nal_pos == 2
    assert find_parameter_sets(data) == (SPS, PPS)


def test_missing_pps_yields_no_extradata():
    assert build_h264_extradata(_annexb(SPS, IDR)) is None
    assert parse_nal_units(b"") == []


def test_non_reference_unit_flag():
    sei = bytes([0x06, 0x05, 0x01])

    (unit,) = parse_nal_units(_annexb(sei))

    assert unit.unit_type == 6
    assert unit.ref_idc == 0


def test_opus_header_layout():
    header = build_opus_header(2, sample_rate=48000, pre_skip=312)

    assert len(header) == OPUS_HEAD_SIZE
    assert header[:8] == b"OpusHead"
    assert header[8] == 1
    assert header[9] == 2
    assert header[10:12] == (312).to_bytes(2, "little")
    assert header[12:16] == (48000).to_bytes(4, "little")
    assert header[16:] == b"\x00\x00\x00"
    assert parse_opus_header(header) == {
        "version": 1,
        "channels": 2,
        "pre_skip": 312,
        "sample_rate": 48000,
        "output_gain": 0,
        "mapping_family": 0,
    }


def test_opus_header_rejects_bad_input():
    with pytest.raises(ValueError):
        build_opus_header(0)
    assert parse_opus_header(b"OpusTags" + bytes(11)) is None
