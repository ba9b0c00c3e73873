# transfer_common/config.py
from __future__ import annotations

from dataclasses import dataclass

from transfer_common.congestion import Algorithm
from transfer_common.errors import ConfigurationError
from transfer_common.protocol import (
    ACK_TIMEOUT, CLIENT_SELECT_TIMEOUT, DOWNLOAD_DIR, HOST, IDLE_TIMEOUT, MAX_WINDOW_SIZE,
    PING_INTERVAL, PORT, SERVER_SELECT_TIMEOUT, UPLOAD_DIR,
)


@dataclass(frozen=True)
class EngineConfig:
    host: str = HOST
    port: int = PORT
    storage_dir: str = UPLOAD_DIR
    algorithm: str = Algorithm.RENO.value
    idle_timeout: float = IDLE_TIMEOUT
    select_timeout: float = SERVER_SELECT_TIMEOUT
    ping_interval: float = 0.0  # 0 disables pings
    ack_timeout: float = ACK_TIMEOUT
    loss_rate: float = 0.0
    receive_window_cap: int = MAX_WINDOW_SIZE

    # port 0 lets the OS pick one; only meaningful for a listening socket
    allow_ephemeral_port = True

    def validate(self) -> "EngineConfig":
        if not isinstance(self.port, int) or isinstance(self.port, bool):
            raise ConfigurationError(f"Port must be an integer, got {self.port!r}")
        low = 0 if self.allow_ephemeral_port else 1
        if not low <= self.port <= 65535:
            raise ConfigurationError(f"Port out of range: {self.port}")
        if not self.host:
            raise ConfigurationError("Host must not be empty")
        try:
            Algorithm.parse(self.algorithm)
        except ValueError as e:
            raise ConfigurationError(str(e)) from None
        for name in ("idle_timeout", "select_timeout", "ack_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        if self.ping_interval < 0:
            raise ConfigurationError("ping_interval must not be negative")
        if not 0.0 <= self.loss_rate < 1.0:
            raise ConfigurationError(f"loss_rate must be in [0, 1), got {self.loss_rate}")
        if self.receive_window_cap < 1:
            raise ConfigurationError("receive_window_cap must be at least 1")
        return self


@dataclass(frozen=True)
class ServerConfig(EngineConfig):
    host: str = "0.0.0.0"
    storage_dir: str = UPLOAD_DIR


@dataclass(frozen=True)
class ClientConfig(EngineConfig):
    storage_dir: str = DOWNLOAD_DIR
    select_timeout: float = CLIENT_SELECT_TIMEOUT
    ping_interval: float = PING_INTERVAL

    allow_ephemeral_port = False
