from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8080

    # None keeps every store in memory.
    db_path: str | None = None

    ping_interval_s: int = 30
    ping_miss_limit: int = 2
    max_msg_size: int = 1_048_576
    outbound_queue_size: int = 1000

    delete_window_s: int = 120
    confirm_delivery_on_connect: bool = False

    log_level: str = "INFO"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    log_datefmt: str | None = None

    @property
    def delete_window_ms(self) -> int:
        return int(self.delete_window_s) * 1000
