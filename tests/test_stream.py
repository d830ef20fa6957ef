from mediaflow_transcoder.remuxer.codec import CodecDescriptor, MediaType
from mediaflow_transcoder.remuxer.stream import UNSET_INDEX, StreamTable


def test_new_stream_copies_descriptor():
    info = CodecDescriptor(media_type=MediaType.VIDEO, width=640, extradata=b"\x01")
    table = StreamTable()

    record = table.new_stream(info)
    info.width = 1920

    assert record.descriptor.width == 640
    assert record.src_index == UNSET_INDEX
    assert record.dst_index == UNSET_INDEX
    assert record.last_pts is None and record.last_dts is None


def test_lookups_by_position_and_index():
    table = StreamTable()
    video = table.new_stream()
    video.src_index, video.dst_index = 0, 1
    audio = table.new_stream()
    audio.src_index, audio.dst_index = 2, 0

    assert len(table) == 2
    assert table.get(1) is audio
    assert table.get(2) is None
    assert table.by_src_index(2) is audio
    assert table.by_dst_index(1) is video
    assert table.by_src_index(1) is None
    assert table.by_dst_index(UNSET_INDEX) is None
    assert table.next_src_index() == 3
    assert table.next_dst_index() == 2


def test_close_drops_runtime_handles():
    table = StreamTable()
    record = table.new_stream(CodecDescriptor(media_type=MediaType.AUDIO, extradata=b"\x12\x10"))
    record.codec_context = object()
    record.codec_open = True

    table.close()

    assert len(table) == 0
    assert record.codec_context is None
    assert not record.codec_open
    assert record.descriptor.extradata is None
