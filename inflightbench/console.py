"""
Console narration and log-file mirroring.

Every line printed to the terminal goes through the ``inflightbench`` logger,
so a configured log file receives the same narration with an ISO timestamp
prefix and the colour codes stripped.
"""

import logging
import os
import re
import sys
from datetime import datetime
from pathlib import Path

log = logging.getLogger("inflightbench")


# --------------------------------------------------------------------------- #
# Pretty Printing
# --------------------------------------------------------------------------- #
class C:
    OK   = "\033[92m"
    FAIL = "\033[91m"
    WARN = "\033[93m"
    INFO = "\033[94m"
    CYAN = "\033[96m"
    BOLD = "\033[1m"
    DIM  = "\033[2m"
    END  = "\033[0m"


def log_pass(m):   log.info(f"{C.OK}✅ PASS{C.END}  {m}")
def log_fail(m):   log.error(f"{C.FAIL}❌ FAIL{C.END}  {m}")
def log_info(m):   log.info(f"{C.INFO}ℹ️   {m}{C.END}")
def log_warn(m):   log.warning(f"{C.WARN}⚠️   {m}{C.END}")
def log_metric(m): log.info(f"{C.CYAN}📊  {m}{C.END}")
def log_header(m): log.info(f"\n{C.BOLD}{'='*70}\n  {m}\n{'='*70}{C.END}")
def log_sub(m):    log.info(f"{C.DIM}    ↳ {m}{C.END}")


# --------------------------------------------------------------------------- #
# Handlers
# --------------------------------------------------------------------------- #
_ANSI = re.compile(r"\x1b\[[0-9;]*m")


class PlainFileFormatter(logging.Formatter):
    """``[2025-06-01T12:00:00.123456] message`` with colour codes removed."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).isoformat()
        text = _ANSI.sub("", record.getMessage())
        if record.exc_info:
            text = f"{text}\n{self.formatException(record.exc_info)}"
        return f"[{stamp}] {text}"


def setup_logging(log_file: str | None = None,
                  level: str | int = "INFO") -> logging.Logger:
    """Configure the console handler and, optionally, the mirrored log file."""
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    for h in list(log.handlers):
        log.removeHandler(h)
        h.close()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter("%(message)s"))
    log.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(os.fspath(path), mode="a", encoding="utf-8")
        fh.setFormatter(PlainFileFormatter())
        log.addHandler(fh)

    log.setLevel(level)
    log.propagate = False
    return log


def close_logging():
    for h in list(log.handlers):
        h.flush()
        if isinstance(h, logging.FileHandler):
            log.removeHandler(h)
            h.close()
