from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    log_level: str = "INFO"  # The logging level to use.
    io_buffer_size: int = Field(65536, description="Default chunk size of custom output I/O in bytes.")
    timestamp_mode: str = Field(
        "rescale", description="Default timestamp mode: calculate, compute, rescale, round or source."
    )
    timestamp_fix: int = Field(0, description="Default monotonic fix-up delta. 0 disables it.")
    status_kinds: str = Field("all", description="Status events to surface: all, none or a list like info,error.")

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
