"""
Credential redaction for log records and run summaries.

The replication credential lives in process memory for one run. Nothing the
tool prints or logs may contain it, including command lines that carry it
through an environment assignment.

Per project patterns:
- Industry-standard detect-secrets library for ad-hoc string scanning
- Exact substitution of known secrets before any pattern matching
- Recursive handling of nested dictionaries
"""

import logging
import re
from typing import Any, Iterable

from detect_secrets.core.scan import scan_line
from detect_secrets.settings import default_settings

REDACTED = "[REDACTED]"


class SecretRedactor:
    """
    Scrubs known secrets and secret-looking assignments from text.

    Uses three detection strategies:
    1. Exact: values registered with ``register`` (the replication credential)
    2. Pattern-based: env var assignments (PGPASSWORD=xxx), password= in
       connection strings
    3. detect-secrets plugins, for ``redact_dict`` on summaries

    Example:
        redactor = SecretRedactor(["s3cret"])
        redactor.redact("PGPASSWORD=s3cret pg_basebackup -h idp01")
        # 'PGPASSWORD=[REDACTED] pg_basebackup -h idp01'
    """

    ENV_VAR_PATTERNS = [
        re.compile(r"\b(PGPASSWORD|REPL_PASSWORD|PASSWORD|SECRET|TOKEN)=([^\s'\"]+)", re.IGNORECASE),
        re.compile(r"\b(password\s*=\s*)'([^']*)'", re.IGNORECASE),
    ]

    SENSITIVE_KEYS = {"password", "passwd", "credential", "replication_password", "pgpassword"}

    def __init__(self, secrets: Iterable[str] = ()) -> None:
        self._secrets: set[str] = set()
        for secret in secrets:
            self.register(secret)

    def register(self, secret: str | None) -> None:
        """Add a value that must never appear in output."""
        if secret:
            self._secrets.add(secret)

    def redact(self, value: str) -> str:
        if not value:
            return value

        result = value
        # Longest first so a secret containing another is scrubbed whole
        for secret in sorted(self._secrets, key=len, reverse=True):
            result = result.replace(secret, REDACTED)

        result = self.ENV_VAR_PATTERNS[0].sub(rf"\1={REDACTED}", result)
        result = self.ENV_VAR_PATTERNS[1].sub(rf"\1'{REDACTED}'", result)
        return result

    def scan(self, value: str) -> str:
        """
        Redact with the detect-secrets plugin set in addition to ``redact``.

        Slower than ``redact``; used for one-off summaries rather than for
        every log record.
        """
        result = self.redact(value)
        with default_settings():
            found = {s.secret_value for s in scan_line(result) if s.secret_value}
        for secret in sorted(found, key=len, reverse=True):
            if secret != REDACTED:
                result = result.replace(secret, REDACTED)
        return result

    def redact_dict(self, data: dict[str, Any]) -> dict[str, Any]:
        """
        Redact secrets from a dictionary, recursing into dicts and lists.

        Args:
            data: Dictionary potentially containing secrets

        Returns:
            Dictionary with secrets replaced by '[REDACTED]'
        """
        result: dict[str, Any] = {}
        for key, value in data.items():
            if isinstance(value, dict):
                result[key] = self.redact_dict(value)
            elif key.lower() in self.SENSITIVE_KEYS:
                result[key] = REDACTED
            elif isinstance(value, list):
                result[key] = [self._redact_value(item) for item in value]
            else:
                result[key] = self._redact_value(value)
        return result

    def _redact_value(self, value: Any) -> Any:
        if isinstance(value, dict):
            return self.redact_dict(value)
        if isinstance(value, str):
            return self.scan(value)
        return value


class RedactingFilter(logging.Filter):
    """Logging filter that rewrites each record's message through a redactor."""

    def __init__(self, redactor: SecretRedactor) -> None:
        super().__init__()
        self.redactor = redactor

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self.redactor.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True
