"""
Message fingerprints.

A publish carries ``MSG from <publisher> #<sequence>`` (optionally padded
with ``x`` filler up to a fixed byte size).  The ledger key for such a
payload is ``<publisher>:<sequence>``; anything that does not parse is keyed
by its own trimmed text so it is still visible in the report.
"""

import re
from dataclasses import dataclass
from typing import Iterator, NamedTuple

PUBLISHER_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")

_PAYLOAD_RE = re.compile(
    r"^MSG from (?P<publisher>[A-Za-z0-9_.-]+) #(?P<sequence>\d+)(?: x*)?$")


class Fingerprint(NamedTuple):
    publisher: str
    sequence: int

    @property
    def key(self) -> str:
        return fingerprint_key(self.publisher, self.sequence)


def fingerprint_key(publisher: str, sequence: int) -> str:
    return f"{publisher}:{sequence}"


def make_payload(publisher: str, sequence: int, size: int = 0) -> bytes:
    """Encode ``(publisher, sequence)``; pad with filler when *size* exceeds the text."""
    if not PUBLISHER_ID_RE.match(publisher):
        raise ValueError(f"invalid publisher identity {publisher!r}")
    if sequence < 1:
        raise ValueError(f"sequence must be >= 1, got {sequence}")
    text = f"MSG from {publisher} #{sequence}".encode()
    pad = size - len(text) - 1
    if pad > 0:
        text += b" " + b"x" * pad
    return text


def parse_payload(raw: bytes) -> Fingerprint | None:
    """Return the embedded fingerprint, or ``None`` for a foreign payload."""
    m = _PAYLOAD_RE.match(_text(raw))
    if m is None:
        return None
    seq = int(m.group("sequence"))
    if seq < 1:
        return None
    return Fingerprint(m.group("publisher"), seq)


def ledger_key(raw: bytes) -> tuple[str, bool]:
    """``(key, parsed)``; unparseable payloads fall back to their text."""
    fp = parse_payload(raw)
    if fp is None:
        return _text(raw), False
    return fp.key, True


def _text(raw: bytes | str) -> str:
    if isinstance(raw, str):
        return raw.strip()
    return raw.decode("utf-8", errors="replace").strip()


# --------------------------------------------------------------------------- #
# Expected universe
# --------------------------------------------------------------------------- #
@dataclass(frozen=True)
class ExpectedUniverse:
    """``{pub:seq | pub in publishers, 1 <= seq <= messages_per_pub}``."""

    publishers: tuple[str, ...]
    messages_per_pub: int

    def __post_init__(self):
        object.__setattr__(self, "publishers", tuple(self.publishers))
        object.__setattr__(self, "_keys", frozenset(k for _, _, k in self))

    def __iter__(self) -> Iterator[tuple[str, int, str]]:
        for pub in self.publishers:
            for seq in range(1, self.messages_per_pub + 1):
                yield pub, seq, fingerprint_key(pub, seq)

    def __len__(self) -> int:
        return len(self.publishers) * self.messages_per_pub

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    @property
    def keys(self) -> frozenset[str]:
        return self._keys
