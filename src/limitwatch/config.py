import os
from dataclasses import dataclass, field

DEFAULT_DATA_DIR = "~/.local/share/limitwatch"


def _split_ids(value: "str") -> "list[str]":
    return [part.strip().lower() for part in value.split(",") if part.strip()]


@dataclass
class Config:
    # listen_address: format ":9186" or
    # "0.0.0.0:9186", empty disables the metrics server
    listen_address: "str" = ":9186"
    # one of manual, 1m, 2m, 5m, 15m
    refresh_interval: "str" = "5m"
    log_level: "str" = "info"
    once: "bool" = False

    data_dir: "str" = DEFAULT_DATA_DIR
    enabled_providers: "list[str]" = field(default_factory=list)
    copilot_client_id: "str" = ""
    # empty means the gemini CLI default location
    gemini_credentials: "str" = ""

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            data_dir=os.environ.get("LIMITWATCH_DATA_DIR", DEFAULT_DATA_DIR),
            enabled_providers=_split_ids(
                os.environ.get("LIMITWATCH_ENABLED_PROVIDERS", "")
            ),
            copilot_client_id=os.environ.get("LIMITWATCH_COPILOT_CLIENT_ID", ""),
            gemini_credentials=os.environ.get("LIMITWATCH_GEMINI_CREDENTIALS", ""),
        )

    @property
    def data_path(self) -> "str":
        return os.path.expanduser(self.data_dir)

    @property
    def metrics_enabled(self) -> "bool":
        return bool(self.listen_address)
