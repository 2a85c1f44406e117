from __future__ import annotations

import platform
import socket
from pathlib import Path

import psutil

from .schemas import Environment
from .utils import utc_now_iso

_CPUINFO = Path("/proc/cpuinfo")


def _cpu_model() -> str:
    if _CPUINFO.exists():
        for line in _CPUINFO.read_text(encoding="utf-8", errors="replace").splitlines():
            key, _, value = line.partition(":")
            if key.strip() == "model name":
                return value.strip()
    return platform.processor()


def capture_environment() -> Environment:
    uname = platform.uname()
    return Environment(
        hostname=socket.gethostname() or uname.node,
        os=uname.system,
        release=uname.release,
        version=uname.version,
        architecture=uname.machine,
        python_version=platform.python_version(),
        cpu_model=_cpu_model(),
        cpu_count=psutil.cpu_count(logical=True) or 0,
        memory_total_bytes=int(psutil.virtual_memory().total),
        captured_at=utc_now_iso(),
    )
