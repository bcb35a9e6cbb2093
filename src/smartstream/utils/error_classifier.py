"""Best-effort classification of FFmpeg diagnostic text.

Used to enrich operator-facing error messages. Classification never gates
control flow: every input maps to some category, "generic" at worst.
"""
from __future__ import annotations

import re
import signal
from enum import Enum
from typing import Final


class ErrorCategory(str, Enum):
    """Coarse FFmpeg failure categories."""

    NETWORK = "network"
    CODEC = "codec"
    PERMISSION = "permission"
    RTSP = "rtsp"
    AUTH = "auth"
    RESOURCE = "resource"
    GENERIC = "generic"


# Checked in order. Auth precedes rtsp so a 401 on DESCRIBE reads as auth, and
# network precedes rtsp because FFmpeg prefixes socket errors with the URL.
CATEGORY_PATTERNS: Final[list[tuple[ErrorCategory, re.Pattern[str]]]] = [
    (ErrorCategory.AUTH, re.compile(
        r'401|unauthori[sz]ed|authori[sz]ation failed|authentication|invalid (stream )?key|403 forbidden',
        re.IGNORECASE,
    )),
    (ErrorCategory.NETWORK, re.compile(
        r'connection (refused|reset|timed out)|network is unreachable|no route to host|'
        r'name or service not known|failed to resolve|temporary failure in name resolution|'
        r'broken pipe|i/o error|end of file|timed out',
        re.IGNORECASE,
    )),
    (ErrorCategory.RTSP, re.compile(
        r'rtsp|method (describe|setup|play) failed|nonmatching transport|454 session not found',
        re.IGNORECASE,
    )),
    (ErrorCategory.PERMISSION, re.compile(
        r'permission denied|operation not permitted|eacces|eperm',
        re.IGNORECASE,
    )),
    (ErrorCategory.RESOURCE, re.compile(
        r'cannot allocate memory|out of memory|resource temporarily unavailable|'
        r'too many open files|no space left on device|device or resource busy',
        re.IGNORECASE,
    )),
    (ErrorCategory.CODEC, re.compile(
        r'codec|decoder|encoder|invalid data found|could not find codec parameters|'
        r'unsupported|non-monotonous dts|error while decoding|could not write header',
        re.IGNORECASE,
    )),
]
"""Pattern table, first match wins."""

CATEGORY_HINTS: Final[dict[ErrorCategory, str]] = {
    ErrorCategory.NETWORK: "network problem reaching the camera or ingest server",
    ErrorCategory.CODEC: "unsupported or corrupt media stream",
    ErrorCategory.PERMISSION: "permission denied",
    ErrorCategory.RTSP: "RTSP negotiation with the camera failed",
    ErrorCategory.AUTH: "authentication rejected (check credentials or stream key)",
    ErrorCategory.RESOURCE: "host resources exhausted",
    ErrorCategory.GENERIC: "unclassified transcoder error",
}

EXIT_CODE_DESCRIPTIONS: Final[dict[int, str]] = {
    1: "generic transcoder error",
    126: "transcoder binary is not executable",
    127: "transcoder binary not found",
    137: "killed (out of memory or SIGKILL)",
    143: "terminated (SIGTERM)",
    255: "interrupted by a signal",
}
"""Well-known exit codes, including shell-style 128+N signal codes."""

SIGNAL_DESCRIPTIONS: Final[dict[str, str]] = {
    "SIGKILL": "killed",
    "SIGTERM": "terminated",
    "SIGINT": "interrupted",
    "SIGSEGV": "crashed (segmentation fault)",
    "SIGABRT": "aborted",
    "SIGPIPE": "broken pipe",
    "SIGHUP": "hung up",
}


# ============================================================================
# Classification
# ============================================================================

def classify_error(text: str | None) -> ErrorCategory:
    """Classify raw FFmpeg stderr text.

    Examples:
        >>> classify_error("Connection refused")
        <ErrorCategory.NETWORK: 'network'>
        >>> classify_error("")
        <ErrorCategory.GENERIC: 'generic'>
    """
    if not text:
        return ErrorCategory.GENERIC
    for category, pattern in CATEGORY_PATTERNS:
        if pattern.search(text):
            return category
    return ErrorCategory.GENERIC


def signal_to_name(signum: int) -> str:
    """Map a signal number to its name, e.g. 9 -> "SIGKILL"."""
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"SIG{signum}"


def describe_exit(exit_code: int | None, signal_name: str | None) -> str:
    """Human-readable reason for a process exit.

    Examples:
        >>> describe_exit(None, "SIGKILL")
        'Process killed (SIGKILL)'
        >>> describe_exit(1, None)
        'Process exited with exit code 1 (generic transcoder error)'
        >>> describe_exit(3, None)
        'Process exited with exit code 3'
    """
    if signal_name:
        description = SIGNAL_DESCRIPTIONS.get(signal_name, "stopped by signal")
        return f"Process {description} ({signal_name})"
    if exit_code is None:
        return "Process exited (unknown status)"
    known = EXIT_CODE_DESCRIPTIONS.get(exit_code)
    if known:
        return f"Process exited with exit code {exit_code} ({known})"
    return f"Process exited with exit code {exit_code}"
