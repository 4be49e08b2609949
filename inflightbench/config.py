"""
Run configuration.

Defaults are seeded from the environment into ``CONFIG`` / ``BENCH`` and
overridden by command-line flags; the validated result is a pydantic
``ScenarioConfig``.
"""

import os
import urllib.parse
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from inflightbench.errors import SetupError

# --------------------------------------------------------------------------- #
# Configuration
# --------------------------------------------------------------------------- #
CONFIG = {
    "broker_url":     os.environ.get("INFLIGHT_BROKER_URL", "mqtt://localhost:1883"),
    "username":       os.environ.get("INFLIGHT_USERNAME") or None,
    "password":       os.environ.get("INFLIGHT_PASSWORD") or None,
    "log_level":      os.environ.get("INFLIGHT_LOG_LEVEL", "INFO").upper(),
}

# Per-scenario defaults
BENCH = {
    "inflight": {
        "topic":              "testtopic/test",
        "qos":                2,
        "session_expiry":     5,
        "receive_maximum":    65535,
        "subscribers":        2,
        "publishers":         2,
        "messages_per_pub":   20,
        "fault_injection":    True,
        "fault_threshold":    0.2,
        "reconnect_delay":    3.0,
        "publish_interval":   0.2,
        "drain_window":       8.0,
        "log_file":           "./logs/inflight-test.log",
        "csv_file":           "./reports/inflight-report.csv",
    },
    "shared": {
        "topic":              "test/topic",
        "qos":                2,
        "session_expiry":     300,
        "receive_maximum":    16,
        "groups":             1,
        "subs_per_group":     2,
        "publishers":         1,
        "messages_per_pub":   10,
        "fault_injection":    False,
        "fault_threshold":    0.5,
        "reconnect_delay":    5.0,
        "publish_interval":   0.3,
        "drain_window":       5.0,
        "log_file":           "./logs/shared-test.log",
        "csv_file":           "./reports/shared-report.csv",
    },
}

_DEFAULT_PORTS = {"mqtt": 1883, "tcp": 1883, "mqtts": 8883, "ssl": 8883,
                  "ws": 80, "wss": 443}


class FaultMode(str, Enum):
    MASS = "mass"
    STAGGERED = "staggered"


class BrokerSettings(BaseModel):
    url: str = Field(default_factory=lambda: CONFIG["broker_url"])
    username: str | None = Field(default_factory=lambda: CONFIG["username"])
    password: str | None = Field(default_factory=lambda: CONFIG["password"])
    keepalive: int = Field(default=60, ge=1)
    ws_path: str = "/mqtt"
    reconnect_min_delay: int = Field(default=1, ge=1)
    reconnect_max_delay: int = Field(default=5, ge=1)

    @model_validator(mode="after")
    def _check_url(self):
        scheme = urllib.parse.urlsplit(self.url).scheme
        if scheme not in _DEFAULT_PORTS:
            raise ValueError(f"unsupported broker URL scheme {scheme!r}")
        return self

    @property
    def _parts(self) -> urllib.parse.SplitResult:
        return urllib.parse.urlsplit(self.url)

    @property
    def host(self) -> str:
        return self._parts.hostname or "localhost"

    @property
    def port(self) -> int:
        return self._parts.port or _DEFAULT_PORTS[self._parts.scheme]

    @property
    def transport(self) -> str:
        return "websockets" if self._parts.scheme in ("ws", "wss") else "tcp"

    @property
    def tls(self) -> bool:
        return self._parts.scheme in ("mqtts", "ssl", "wss")

    def redacted(self) -> str:
        return f"{self.username or '<none>'} / {'******' if self.password else '<none>'}"


class ScenarioConfig(BaseModel):
    """Everything a single run needs; immutable once validated."""

    model_config = ConfigDict(frozen=True)

    mode: Literal["inflight", "shared"] = "inflight"
    broker: BrokerSettings = Field(default_factory=BrokerSettings)

    topic: str = Field(default="testtopic/test", min_length=1)
    qos: int = Field(default=2, ge=0, le=2)

    # subscribers
    subscribers: int = Field(default=2, ge=1)
    groups: int = Field(default=1, ge=1)
    subs_per_group: int = Field(default=2, ge=1)
    session_expiry: int = Field(default=5, ge=0)
    receive_maximum: int = Field(default=65535, ge=1, le=65535)

    # publishers
    publishers: int = Field(default=2, ge=1)
    messages_per_pub: int = Field(default=20, ge=1)
    publish_interval: float = Field(default=0.2, ge=0)
    pace_jitter: float = Field(default=0.0, ge=0, lt=1)
    payload_size: int = Field(default=0, ge=0)
    message_expiry: int | None = Field(default=None, ge=1)

    # fault injection
    fault_injection: bool = True
    fault_mode: FaultMode = FaultMode.MASS
    fault_threshold: float = Field(default=0.2, gt=0, le=1)
    stagger_delay: float = Field(default=0.5, ge=0)
    reconnect_delay: float = Field(default=3.0, ge=0)

    # timing
    registration_delay: float = Field(default=2.0, ge=0)
    drain_window: float = Field(default=8.0, ge=0)
    connect_timeout: float = Field(default=10.0, gt=0)
    subscribe_timeout: float = Field(default=10.0, gt=0)
    ack_timeout: float = Field(default=10.0, gt=0)
    ready_timeout: float = Field(default=60.0, gt=0)
    connect_attempts: int = Field(default=2, ge=1)

    # launching
    batch_size: int = Field(default=100, ge=1)
    batch_delay: float = Field(default=1.0, ge=0)

    # output
    stats_interval: float = Field(default=1.0, ge=0)
    status_port: int | None = Field(default=None, ge=1, le=65535)
    log_file: str | None = None
    csv_file: str | None = None
    fail_exit_code: int = Field(default=0, ge=0, le=255)

    @classmethod
    def for_mode(cls, mode: str, **overrides) -> "ScenarioConfig":
        values = dict(BENCH[mode])
        values.update({k: v for k, v in overrides.items() if v is not None})
        values["mode"] = mode
        return cls(**values)

    @property
    def shared(self) -> bool:
        return self.mode == "shared"

    @property
    def total_messages(self) -> int:
        return self.publishers * self.messages_per_pub

    @property
    def total_subscribers(self) -> int:
        return self.groups * self.subs_per_group if self.shared else self.subscribers

    @property
    def fault_trigger_count(self) -> int:
        """Publish-attempt count at which fault injection fires."""
        return max(1, int(self.total_messages * self.fault_threshold))


def load_config(mode: str = "inflight", **overrides) -> ScenarioConfig:
    """Build a ``ScenarioConfig``, turning validation errors into ``SetupError``."""
    if mode not in BENCH:
        raise SetupError(f"unknown scenario {mode!r} (expected one of {', '.join(BENCH)})")
    try:
        return ScenarioConfig.for_mode(mode, **overrides)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
            for err in e.errors())
        raise SetupError(f"invalid configuration: {problems}") from e
