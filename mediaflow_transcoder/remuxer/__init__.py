"""
Media transcoding/remuxing pipeline on FFmpeg (via PyAV).

- status: Status sentinels and the severity filtered status reporter
- codec: Codec descriptor, channel layout and scale policy
- codec_utils: Annex-B NAL parsing, H.264 extradata and OpusHead synthesis
- stream: Stream records and the stream table
- timestamps: Packet timestamp modes and the monotonic fix-up
- frame_transformer: Audio resample, stretch/letterbox scaling, YUV helpers
- metadata: Container metadata fields, chapters and the metadata file parser
- decoder: Demuxer/decoder emitting frames through a callback
- encoder: Encoder/muxer with URL or callback (custom) output I/O
- pipeline: Decoder -> Encoder driver with stream mapping and looping
"""
