"""
Audit Logger module for the hosts aggregator.

Provides structured, component-tagged logging with JSON and/or human-readable
text output, minimum level filtering, masking of secrets and URL credentials,
and an optional audit mode signing every entry with HMAC-SHA256.
"""

import hashlib
import hmac
import json
import re
import sys
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, TextIO

from .enums import LogLevel


LEVEL_ORDER = {
    LogLevel.DEBUG: 10,
    LogLevel.INFO: 20,
    LogLevel.WARN: 30,
    LogLevel.ERROR: 40,
}

# user:password@ in http(s) URLs
_URL_CREDENTIALS = re.compile(r"(?P<scheme>https?://)[^/\s:@]+(?::[^/\s@]*)?@", re.IGNORECASE)


@dataclass
class LogEntry:
    """Represents a single log entry with all metadata."""

    timestamp: str
    level: LogLevel
    component: str
    message: str
    data: dict = field(default_factory=dict)
    signature: Optional[str] = None


class AuditLogger:
    """
    Structured logger shared by every component.

    Entries below the minimum level are dropped before formatting. Kept
    entries are retained in a bounded in-memory buffer so that tests and the
    CLI can inspect what a pass did.
    """

    SENSITIVE_KEYS = frozenset({
        'token', 'secret', 'password', 'api_key', 'hmac_secret',
        'signing_key', 'auth', 'authorization', 'credential',
        'private_key', 'cookie',
    })

    MASK_VALUE = "***MASKED***"

    def __init__(
        self,
        output_format: str = "text",
        output_stream: Optional[TextIO] = None,
        min_level: LogLevel = LogLevel.INFO,
        max_entries: int = 10000,
    ):
        """
        Initialize the audit logger.

        Args:
            output_format: Output format - 'json', 'text', or 'both'
            output_stream: Output stream for log entries (defaults to sys.stderr)
            min_level: Entries below this level are discarded
            max_entries: Size of the in-memory entry buffer
        """
        if output_format not in ("json", "text", "both"):
            raise ValueError(f"Invalid output_format: {output_format}")

        self._output_format = output_format
        self._output_stream = output_stream or sys.stderr
        self._min_level = min_level
        self._audit_mode = False
        self._signing_key: Optional[bytes] = None
        self._entries: deque[LogEntry] = deque(maxlen=max_entries)

    @classmethod
    def from_config(cls, logging_config, output_stream: Optional[TextIO] = None) -> "AuditLogger":
        """Build a logger from a LoggingConfig."""
        logger = cls(
            output_format=logging_config.output_format,
            output_stream=output_stream,
            min_level=LogLevel(logging_config.level),
        )
        if logging_config.audit_mode and logging_config.audit_signing_key:
            logger.enable_audit_mode(logging_config.audit_signing_key)
        return logger

    @property
    def output_format(self) -> str:
        return self._output_format

    @property
    def min_level(self) -> LogLevel:
        return self._min_level

    @property
    def audit_mode(self) -> bool:
        return self._audit_mode

    @property
    def entries(self) -> list[LogEntry]:
        """Get retained log entries, oldest first."""
        return list(self._entries)

    def enable_audit_mode(self, signing_key: str) -> None:
        """
        Enable audit mode with HMAC signing of log entries.

        Args:
            signing_key: Secret key for HMAC-SHA256 signing
        """
        if not signing_key:
            raise ValueError("Signing key cannot be empty")

        self._audit_mode = True
        self._signing_key = signing_key.encode('utf-8')

    def is_enabled_for(self, level: LogLevel) -> bool:
        return LEVEL_ORDER[level] >= LEVEL_ORDER[self._min_level]

    def log(
        self,
        level: LogLevel,
        component: str,
        message: str,
        data: Optional[dict] = None,
    ) -> Optional[LogEntry]:
        """
        Log an entry in the configured format(s).

        Returns:
            The created LogEntry, or None when filtered by level
        """
        if not self.is_enabled_for(level):
            return None

        entry = LogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            level=level,
            component=component,
            message=self.mask_url_credentials(message),
            data=self.mask_sensitive_data(data or {}),
        )

        if self._audit_mode and self._signing_key:
            entry.signature = self._sign_entry(entry)

        self._entries.append(entry)
        self._output_entry(entry)
        return entry

    def debug(self, component: str, message: str, data: Optional[dict] = None) -> Optional[LogEntry]:
        return self.log(LogLevel.DEBUG, component, message, data)

    def info(self, component: str, message: str, data: Optional[dict] = None) -> Optional[LogEntry]:
        return self.log(LogLevel.INFO, component, message, data)

    def warn(self, component: str, message: str, data: Optional[dict] = None) -> Optional[LogEntry]:
        return self.log(LogLevel.WARN, component, message, data)

    def log_error(
        self,
        component: str,
        message: str,
        error: Optional[Exception] = None,
        source_url: Optional[str] = None,
        response_status_code: Optional[int] = None,
        additional_data: Optional[dict] = None,
    ) -> Optional[LogEntry]:
        """
        Log an error with full context.

        Args:
            component: Component name generating the log
            message: Human-readable error message
            error: Optional exception object
            source_url: Optional URL of the failed request
            response_status_code: Optional HTTP status code
            additional_data: Optional additional context data
        """
        data = additional_data.copy() if additional_data else {}

        if error is not None:
            data["error_message"] = str(error)
            data["error_type"] = type(error).__name__
            code = getattr(error, "code", None)
            if code is not None:
                data["error_code"] = code

        if source_url is not None:
            data["source_url"] = source_url

        if response_status_code is not None:
            data["response_status_code"] = response_status_code

        return self.log(LogLevel.ERROR, component, message, data)

    @staticmethod
    def mask_url_credentials(value: str) -> str:
        """Replace user-info in http(s) URLs with the mask value."""
        return _URL_CREDENTIALS.sub(lambda m: f"{m.group('scheme')}{AuditLogger.MASK_VALUE}@", value)

    def mask_sensitive_data(self, data: dict) -> dict:
        """
        Recursively mask sensitive keys and URL credentials in a dictionary.

        Returns:
            New dictionary with sensitive values masked
        """
        if not isinstance(data, dict):
            return data

        masked = {}
        for key, value in data.items():
            key_lower = str(key).lower()

            if any(sensitive in key_lower for sensitive in self.SENSITIVE_KEYS):
                masked[key] = self.MASK_VALUE
            elif isinstance(value, dict):
                masked[key] = self.mask_sensitive_data(value)
            elif isinstance(value, list):
                masked[key] = [self._mask_value(item) for item in value]
            else:
                masked[key] = self._mask_value(value)

        return masked

    def _mask_value(self, value):
        if isinstance(value, dict):
            return self.mask_sensitive_data(value)
        if isinstance(value, str):
            return self.mask_url_credentials(value)
        return value

    def _sign_entry(self, entry: LogEntry) -> str:
        if not self._signing_key:
            raise RuntimeError("Signing key not set")

        signable = {
            "timestamp": entry.timestamp,
            "level": entry.level.value,
            "component": entry.component,
            "message": entry.message,
            "data": entry.data,
        }
        content = json.dumps(signable, sort_keys=True, ensure_ascii=False, default=str)
        return hmac.new(self._signing_key, content.encode('utf-8'), hashlib.sha256).hexdigest()

    def verify_signature(self, entry: LogEntry) -> bool:
        """Verify the HMAC signature of a log entry."""
        if not entry.signature or not self._signing_key:
            return False
        return hmac.compare_digest(entry.signature, self._sign_entry(entry))

    def _output_entry(self, entry: LogEntry) -> None:
        if self._output_format in ("json", "both"):
            self._output_stream.write(self.format_json(entry) + "\n")
        if self._output_format in ("text", "both"):
            self._output_stream.write(self.format_text(entry) + "\n")
        self._output_stream.flush()

    def format_json(self, entry: LogEntry) -> str:
        obj = {
            "timestamp": entry.timestamp,
            "level": entry.level.value,
            "component": entry.component,
            "message": entry.message,
            "data": entry.data,
        }
        if entry.signature:
            obj["signature"] = entry.signature
        return json.dumps(obj, ensure_ascii=False, default=str)

    def format_text(self, entry: LogEntry) -> str:
        # [TIMESTAMP] LEVEL [COMPONENT] MESSAGE {data}
        parts = [
            f"[{entry.timestamp}]",
            entry.level.value.upper(),
            f"[{entry.component}]",
            entry.message,
        ]
        if entry.data:
            parts.append(json.dumps(entry.data, ensure_ascii=False, default=str))

        text = " ".join(parts)
        if entry.signature:
            text += f" [sig:{entry.signature[:16]}...]"
        return text

    def clear_entries(self) -> None:
        self._entries.clear()
