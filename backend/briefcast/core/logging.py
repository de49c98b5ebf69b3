from __future__ import annotations
import logging
import re
import sys


class _OneLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        # ffmpeg stderr excerpts are multi-line; keep one record per line
        base = super().format(record)
        return base.replace("\n", " | ")


class RedactFilter(logging.Filter):
    # Storage credentials can leak through boto3/botocore error messages
    TOKEN_RE = re.compile(
        r"(?i)(aws_secret_access_key=\S+|aws_access_key_id=\S+|bearer\s+[A-Za-z0-9\-._~+/]+=*|secret[_-]?key=\w{16,})"
    )

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            msg = record.getMessage()
        except Exception:
            return True
        redacted = self.TOKEN_RE.sub("<redacted-secret>", msg)
        if redacted != msg:
            record.msg = redacted
            record.args = ()
        return True


def configure_logging(level: int = logging.INFO) -> None:
    logger = logging.getLogger()
    logger.setLevel(level)

    for h in list(logger.handlers):
        if getattr(h, "_briefcast_handler", False):
            logger.removeHandler(h)
    for f in list(logger.filters):
        if isinstance(f, RedactFilter):
            logger.removeFilter(f)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_OneLineFormatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s"))
    handler._briefcast_handler = True  # type: ignore[attr-defined]
    redact_filter = RedactFilter()
    handler.addFilter(redact_filter)
    logger.addFilter(redact_filter)
    logger.addHandler(handler)

    # Quiet noisy libraries a bit
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

