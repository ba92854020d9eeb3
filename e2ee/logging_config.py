"""Logging set-up for processes embedding the E2EE core.

The core itself only obtains loggers via ``logging.getLogger(__name__)``; this
module is called once by the host process to decide where records go.

* Without ``LOG_PATH`` records are written to ``stderr``.
* With ``LOG_PATH`` records are written to a file rotated at midnight, each
  line encrypted with AES-256-GCM under the base64 key in
  ``ENCRYPTED_LOG_KEY``. ``LOG_RETENTION_DAYS`` controls how many rotated files
  are kept and may be ``0`` to disable rotation.
* ``LOGGING_DISABLED=true`` turns logging off entirely.

Every handler carries :class:`SensitiveDataFilter`, which strips recovery
codes, PEM key blocks and bearer tokens from messages before they are
formatted.

Example usage::

    from e2ee.logging_config import init_logging
    init_logging()
"""

from __future__ import annotations

import logging
import os
import re
import sys
import time
from base64 import b64decode, b64encode
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


class SensitiveDataFilter(logging.Filter):
    """Redact key material and credentials from log messages."""

    _pem_re = re.compile(
        r"-----BEGIN [A-Z ]+-----.*?-----END [A-Z ]+-----", re.DOTALL
    )
    _token_re = re.compile(r"Bearer\s+[A-Za-z0-9._-]+")
    # Eight or more lowercase words joined by a separator look like a
    # recovery code.
    _recovery_re = re.compile(r"\b[a-z]+(?:[-_][a-z]+){7,}\b")

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        sanitized = self._pem_re.sub("[REDACTED_KEY]", message)
        sanitized = self._token_re.sub("Bearer [REDACTED]", sanitized)
        sanitized = self._recovery_re.sub("[REDACTED_RECOVERY_CODE]", sanitized)
        if sanitized != message:
            record.msg = sanitized
            record.args = ()
        return True


class EncryptedFileHandler(TimedRotatingFileHandler):
    """Rotating file handler that encrypts each formatted record."""

    def __init__(self, *, key: bytes, **kwargs) -> None:
        """Create the handler.

        Parameters
        ----------
        key:
            Raw 32 byte AES key used to encrypt log lines.
        **kwargs:
            Forwarded to :class:`~logging.handlers.TimedRotatingFileHandler`.
        """

        if not key or len(key) != 32:
            raise ValueError("A 32 byte AES key is required for encrypted logs")

        super().__init__(**kwargs)
        self._aesgcm = AESGCM(key)

    def shouldRollover(self, record: logging.LogRecord) -> bool:
        if self.backupCount <= 0:
            return False
        return super().shouldRollover(record)

    def doRollover(self) -> None:
        if self.backupCount <= 0:
            # Nothing is kept, only schedule the next check
            self.rolloverAt = self.computeRollover(int(time.time()))
            return
        super().doRollover()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            nonce = os.urandom(12)
            ct = self._aesgcm.encrypt(nonce, msg.encode("utf-8"), None)
            line = b64encode(nonce + ct).decode("ascii")
            self.acquire()
            try:
                self.stream.write(line + self.terminator)
                self.flush()
            finally:
                self.release()
        except Exception:
            self.handleError(record)


def decrypt_log_line(line: str, key: bytes) -> str:
    """Return the plaintext of one line written by :class:`EncryptedFileHandler`."""

    data = b64decode(line)
    nonce, ct = data[:12], data[12:]
    return AESGCM(key).decrypt(nonce, ct, None).decode("utf-8")


def _file_handler(log_path: Path) -> logging.Handler:
    retention_raw = os.environ.get("LOG_RETENTION_DAYS", "7")
    try:
        retention = int(retention_raw)
    except ValueError as exc:
        raise ValueError("LOG_RETENTION_DAYS must be an integer") from exc
    if retention < 0:
        raise ValueError("LOG_RETENTION_DAYS cannot be negative")

    key_env = os.environ.get("ENCRYPTED_LOG_KEY")
    if not key_env:
        raise RuntimeError(
            "ENCRYPTED_LOG_KEY environment variable is required when LOG_PATH is set"
        )

    log_path.parent.mkdir(parents=True, exist_ok=True)
    return EncryptedFileHandler(
        filename=str(log_path),
        when="midnight",
        backupCount=retention,
        key=b64decode(key_env),
    )


def init_logging() -> None:
    """Configure the root logger from environment variables.

    ``LOG_LEVEL`` selects the threshold (``INFO`` by default). See the module
    docstring for the remaining variables.
    """

    if os.environ.get("LOGGING_DISABLED", "").lower() == "true":
        logging.disable(logging.CRITICAL)
        logging.getLogger().handlers.clear()
        return

    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    log_path = os.environ.get("LOG_PATH")
    if log_path:
        handler = _file_handler(Path(log_path))
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler.addFilter(SensitiveDataFilter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)
