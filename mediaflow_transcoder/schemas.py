from fractions import Fraction
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from mediaflow_transcoder.configs import settings
from mediaflow_transcoder.remuxer.codec import parse_rational


class VideoOptions(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    codec: Optional[str] = Field(
        None, description="Output video codec name (e.g. h264, mpeg4). Defaults to the input codec."
    )
    pix_fmt: Optional[str] = Field(None, description="Output pixel format (e.g. yuv420p).")
    scale_policy: Literal["stretch", "aspect"] = Field(
        "stretch", description="stretch scales to the exact size, aspect fits inside it and letterboxes on black."
    )
    width: Optional[int] = Field(None, gt=0, description="Output width in pixels.")
    height: Optional[int] = Field(None, gt=0, description="Output height in pixels.")
    frame_rate: Optional[Fraction] = Field(None, description="Output frame rate, e.g. 30000:1001.")

    @field_validator("frame_rate", mode="before")
    @classmethod
    def parse_frame_rate(cls, value):
        if isinstance(value, str):
            try:
                value = parse_rational(value)
            except (ValueError, ZeroDivisionError):
                raise ValueError(f"Invalid frame rate: {value}") from None
        if value is not None and value <= 0:
            raise ValueError("Frame rate must be positive")
        return value

    @model_validator(mode="after")
    def check_size(self):
        if (self.width is None) != (self.height is None):
            raise ValueError("Width and height must be given together")
        return self


class AudioOptions(BaseModel):
    codec: Optional[str] = Field(
        None, description="Output audio codec name (e.g. aac, opus). Defaults to the input codec."
    )
    sample_fmt: Optional[str] = Field(None, description="Output sample format (e.g. fltp, s16).")
    sample_rate: Optional[int] = Field(None, gt=0, description="Output sample rate in Hz.")
    channels: Optional[int] = Field(None, gt=0, description="Output channel count.")


class TranscodeOptions(BaseModel):
    input: str = Field(..., min_length=1, description="Input URL or path.")
    output: str = Field(..., min_length=1, description="Output URL or path.")
    input_format: Optional[str] = Field(None, description="Input format hint (demuxer name).")
    output_format: Optional[str] = Field(None, description="Output format hint (muxer name).")
    video: VideoOptions = Field(default_factory=VideoOptions)
    audio: AudioOptions = Field(default_factory=AudioOptions)
    io_buffer_size: int = Field(
        default_factory=lambda: settings.io_buffer_size, gt=0, description="Chunk size of custom output I/O in bytes."
    )
    custom_io: bool = Field(
        False, description="Write the output through the muxer callback instead of FFmpeg's own I/O."
    )
    timestamp_mode: Literal["calculate", "compute", "rescale", "round", "source"] = Field(
        default_factory=lambda: settings.timestamp_mode.lower(), description="How output packet timestamps are derived."
    )
    timestamp_fix: int = Field(
        default_factory=lambda: settings.timestamp_fix,
        ge=0,
        description="Delta forced onto a timestamp that does not advance. 0 disables the fix-up.",
    )
    metadata_file: Optional[str] = Field(None, description="Path of a metadata/chapter file to attach.")
    remux: bool = Field(False, description="Copy packets without decoding (no codec overrides).")
    loop: bool = Field(False, description="Restart from the beginning at end of input until interrupted.")
    debug: bool = Field(False, description="Report debug events and enable FFmpeg logging.")
