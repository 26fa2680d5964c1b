import json
import logging
import re
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional
from contextvars import ContextVar

# Context variables for correlation
run_id_var: ContextVar[Optional[str]] = ContextVar('run_id', default=None)
platform_var: ContextVar[Optional[str]] = ContextVar('platform', default=None)
playlist_var: ContextVar[Optional[str]] = ContextVar('playlist', default=None)
stage_var: ContextVar[Optional[str]] = ContextVar('stage', default=None)

_CONTEXT_VARS = {
    'run_id': run_id_var,
    'platform': platform_var,
    'playlist': playlist_var,
    'stage': stage_var,
}


class SecretMasker:
    """Masks sensitive information in log messages."""

    def __init__(self):
        self.patterns = [
            # API tokens and keys
            r'(?i)(token|key|secret|password|auth)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{10,})["\']?',
            # OAuth access tokens of any catalog
            r'(?i)(access_token|refresh_token)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{20,})["\']?',
            # Client secrets
            r'(?i)(client_secret)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{20,})["\']?',
            # Bearer headers
            r'(?i)(bearer)[\s]+([a-zA-Z0-9\-_\.]{20,})',
        ]
        self.compiled_patterns = [re.compile(pattern) for pattern in self.patterns]

    def mask_secrets(self, text: str) -> str:
        """Mask sensitive information in text."""
        if not text:
            return text

        masked_text = text
        for pattern in self.compiled_patterns:
            def replace_match(match):
                prefix = match.group(1)
                secret = match.group(2)
                # Keep first 4 and last 4 characters, mask the rest
                if len(secret) > 8:
                    masked_secret = secret[:4] + '*' * (len(secret) - 8) + secret[-4:]
                else:
                    masked_secret = '*' * len(secret)
                return f"{prefix}: {masked_secret}"

            masked_text = pattern.sub(replace_match, masked_text)

        return masked_text

    def mask_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Mask sensitive information in dictionary."""
        if not data:
            return data

        masked_data = {}
        for key, value in data.items():
            if isinstance(value, str):
                masked_data[key] = self.mask_secrets(value)
            elif isinstance(value, dict):
                masked_data[key] = self.mask_dict(value)
            elif isinstance(value, list):
                masked_data[key] = [self.mask_dict(item) if isinstance(item, dict)
                                    else self.mask_secrets(item) if isinstance(item, str)
                                    else item for item in value]
            else:
                masked_data[key] = value

        return masked_data


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self):
        super().__init__()
        self.masker = SecretMasker()

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            'ts': datetime.utcnow().isoformat() + 'Z',
            'level': record.levelname,
            'logger': record.name,
            'message': self.masker.mask_secrets(record.getMessage()),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        run_id = run_id_var.get()
        platform = platform_var.get()
        playlist = playlist_var.get()
        stage = stage_var.get()
        if run_id:
            log_entry['runId'] = run_id
        if platform:
            log_entry['platform'] = platform
        if playlist:
            log_entry['playlist'] = playlist
        if stage:
            log_entry['stage'] = stage

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        fields = getattr(record, 'fields', None)
        if fields:
            log_entry['fields'] = self.masker.mask_dict(fields)

        return json.dumps(log_entry, ensure_ascii=False)


class MaskingTextFormatter(logging.Formatter):
    """Plain text formatter that still masks secrets."""

    def __init__(self, fmt: str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'):
        super().__init__(fmt)
        self.masker = SecretMasker()

    def format(self, record: logging.LogRecord) -> str:
        return self.masker.mask_secrets(super().format(record))


class CorrelationContext:
    """Context manager for correlation data."""

    def __init__(self,
                 run_id: Optional[str] = None,
                 platform: Optional[str] = None,
                 playlist: Optional[str] = None,
                 stage: Optional[str] = None):
        self._values = {
            'run_id': run_id,
            'platform': platform,
            'playlist': playlist,
            'stage': stage,
        }
        self._tokens = {}

    def __enter__(self):
        for name, value in self._values.items():
            if value is not None:
                self._tokens[name] = _CONTEXT_VARS[name].set(value)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for name, token in self._tokens.items():
            _CONTEXT_VARS[name].reset(token)
        self._tokens = {}


def setup_logging(level: str = 'INFO',
                  log_file: Optional[str] = None,
                  json_format: bool = False) -> logging.Logger:
    """Configure the ``tunesync`` logger with a console and optional rotating file handler."""
    logger = logging.getLogger('tunesync')
    logger.setLevel(getattr(logging, level.upper()))
    logger.handlers.clear()
    logger.propagate = False

    formatter = StructuredFormatter() if json_format else MaskingTextFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        # Rotate at ~100MB with up to 14 backups
        file_handler = RotatingFileHandler(log_file, maxBytes=100 * 1024 * 1024, backupCount=14)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def log_with_fields(logger: logging.Logger, level: str, message: str,
                    fields: Optional[Dict[str, Any]] = None, **kwargs):
    """Log message with additional fields."""
    merged = dict(fields or {})
    merged.update(kwargs)
    logger.log(getattr(logging, level.upper()), message, extra={'fields': merged})


def log_run_start(logger: logging.Logger, run_id: str, source: str, destination: str, **kwargs):
    with CorrelationContext(run_id=run_id, stage='start'):
        log_with_fields(logger, 'INFO', f"Sync run {run_id} started: {source} -> {destination}", {
            'source': source,
            'destination': destination,
            **kwargs
        })


def log_playlist_start(logger: logging.Logger, playlist: str, track_count: int, **kwargs):
    with CorrelationContext(playlist=playlist, stage='playlist_start'):
        log_with_fields(logger, 'INFO', f"Playlist '{playlist}' started with {track_count} tracks", {
            'track_count': track_count,
            **kwargs
        })


def log_playlist_complete(logger: logging.Logger, playlist: str,
                          matched: int, unmatched: int, **kwargs):
    with CorrelationContext(playlist=playlist, stage='playlist_complete'):
        log_with_fields(logger, 'INFO',
                        f"Playlist '{playlist}' completed: {matched} matched, {unmatched} unmatched", {
                            'matched': matched,
                            'unmatched': unmatched,
                            **kwargs
                        })


def log_run_complete(logger: logging.Logger, run_id: str, total_playlists: int,
                     total_tracks: int, **kwargs):
    with CorrelationContext(run_id=run_id, stage='complete'):
        log_with_fields(logger, 'INFO',
                        f"Sync run {run_id} completed: {total_playlists} playlists, {total_tracks} tracks", {
                            'total_playlists': total_playlists,
                            'total_tracks': total_tracks,
                            **kwargs
                        })
