"""Configuration schema using Pydantic."""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ServerConfig(Base):
    """Listener configuration."""

    host: str = "0.0.0.0"
    port: int = 8080  # 0 = pick a free port
    advertise_address: str = ""  # Address handed to clients (auto-detected LAN IPv4 if empty)
    ws_path: str = "/ws"
    status_path: str = "/api/status"


class LimitsConfig(Base):
    """Caps on process-wide state. Declared sizes from clients are never trusted beyond these."""

    max_clients: int = 256
    max_rooms: int = 128
    max_room_name_len: int = 64
    max_room_id_len: int = 64
    max_message_bytes: int = 1024 * 1024  # Largest single WebSocket frame accepted
    max_transfers: int = 64  # In-flight relayed transfers tracked at once
    max_chunks_per_transfer: int = 65536
    max_file_size: int = 512 * 1024 * 1024
    send_timeout: float = 5.0  # Seconds before a slow recipient's message is dropped
    max_buffered_bytes: int = 1024 * 1024  # Outbound backlog above which sends are dropped


class TransferConfig(Base):
    """Chunked transfer settings (client sender and receiver, relay bookkeeping)."""

    chunk_size: int = 16384  # Raw bytes per chunk before base64
    chunk_timeout: float = 5.0  # Seconds allowed for each chunk send
    lenient_completion: bool = False  # True: last-chunk flag completes even with gaps
    idle_timeout: float = 300.0  # Relay forgets bookkeeping for transfers idle this long; 0 = never
    sweep_interval: float = 30.0


class LoggingConfig(Base):
    """Log sink configuration."""

    level: str = "INFO"
    file: str = ""  # Optional log file path; empty = console only
    rotation: str = "10 MB"


class Config(BaseSettings):
    """Root configuration for lanrelay."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    transfer: TransferConfig = Field(default_factory=TransferConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = ConfigDict(env_prefix="LANRELAY_", env_nested_delimiter="__")
