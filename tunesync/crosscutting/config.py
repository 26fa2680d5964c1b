import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Mapping, Optional

from dotenv import load_dotenv

from tunesync.crosscutting.ratelimit import DEFAULT_RATES
from tunesync.domain.errors import ConfigurationInvalid


PLATFORMS = ("spotify", "tidal", "ytmusic", "yandex")
IMPORT_SOURCE = "json"
SKIP_PLAYLIST_DELIMITER = "|"
ENV_PREFIX = "TUNESYNC_"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def parse_skip_playlists(value: Optional[str]) -> FrozenSet[str]:
    """Split a ``|``-delimited list of playlist names. Names are kept case-sensitive."""
    if not value:
        return frozenset()
    return frozenset(name.strip() for name in value.split(SKIP_PLAYLIST_DELIMITER) if name.strip())


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None or not str(value).strip():
        return default
    return str(value).strip().lower() in _TRUE_VALUES


def _parse_number(env: Mapping[str, str], key: str, cast, default):
    raw = env.get(key)
    if raw is None or not str(raw).strip():
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationInvalid(f"{key} must be a number, got '{raw}'")


@dataclass(frozen=True)
class SyncConfig:
    """Everything the orchestrator consumes for one run."""

    source: str
    destination: str
    owner_filter: Optional[str] = None
    skip_playlists: FrozenSet[str] = frozenset()
    sync_likes: bool = False
    like_all: bool = False
    diff_country: bool = False
    debug: bool = False
    debug_dir: str = "debug"
    duration_tolerance_ms: int = 5000
    match_threshold: float = 0.8
    title_weight: float = 0.7
    album_weight: float = 0.3
    batch_size: int = 100
    max_retries: int = 5
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    rate_limits: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_RATES))

    def validate(self) -> None:
        """Raise ConfigurationInvalid describing the first problem found."""
        if self.source not in PLATFORMS + (IMPORT_SOURCE,):
            raise ConfigurationInvalid(f"Unknown source platform '{self.source}'")
        if self.destination not in PLATFORMS:
            raise ConfigurationInvalid(f"Unknown destination platform '{self.destination}'")
        if self.source == self.destination:
            raise ConfigurationInvalid("Source and destination platforms must be different")
        if self.duration_tolerance_ms < 0:
            raise ConfigurationInvalid("duration_tolerance_ms must be >= 0")
        if not 0.0 < self.match_threshold <= 1.0:
            raise ConfigurationInvalid("match_threshold must be in (0, 1]")
        if self.title_weight <= 0 or self.album_weight <= 0:
            raise ConfigurationInvalid("title_weight and album_weight must be positive")
        if self.batch_size < 1:
            raise ConfigurationInvalid("batch_size must be >= 1")
        if self.max_retries < 1:
            raise ConfigurationInvalid("max_retries must be >= 1")
        if self.retry_base_delay < 0 or self.retry_max_delay < 0:
            raise ConfigurationInvalid("retry delays must be >= 0")
        for platform, rate in self.rate_limits.items():
            if rate <= 0:
                raise ConfigurationInvalid(f"rate limit for {platform} must be positive")

    @classmethod
    def from_env(cls,
                 env: Optional[Mapping[str, str]] = None,
                 dotenv_path: Optional[str] = None,
                 **overrides: Any) -> "SyncConfig":
        """Build a config from ``TUNESYNC_*`` variables; explicit overrides win.

        When ``env`` is not given the process environment is used, after loading
        a ``.env`` file with python-dotenv.
        """
        if env is None:
            load_dotenv(dotenv_path)
            env = os.environ

        rates = dict(DEFAULT_RATES)
        for platform in PLATFORMS:
            key = f"{ENV_PREFIX}{platform.upper()}_RATE"
            rates[platform] = _parse_number(env, key, float, rates[platform])

        values: Dict[str, Any] = {
            "source": env.get(f"{ENV_PREFIX}SOURCE", ""),
            "destination": env.get(f"{ENV_PREFIX}DESTINATION", ""),
            "owner_filter": env.get(f"{ENV_PREFIX}OWNER") or None,
            "skip_playlists": parse_skip_playlists(env.get(f"{ENV_PREFIX}SKIP_PLAYLISTS")),
            "sync_likes": _parse_bool(env.get(f"{ENV_PREFIX}SYNC_LIKES")),
            "like_all": _parse_bool(env.get(f"{ENV_PREFIX}LIKE_ALL")),
            "diff_country": _parse_bool(env.get(f"{ENV_PREFIX}DIFF_COUNTRY")),
            "debug": _parse_bool(env.get(f"{ENV_PREFIX}DEBUG")),
            "debug_dir": env.get(f"{ENV_PREFIX}DEBUG_DIR") or "debug",
            "duration_tolerance_ms": _parse_number(env, f"{ENV_PREFIX}DURATION_TOLERANCE_MS", int, 5000),
            "match_threshold": _parse_number(env, f"{ENV_PREFIX}MATCH_THRESHOLD", float, 0.8),
            "batch_size": _parse_number(env, f"{ENV_PREFIX}BATCH_SIZE", int, 100),
            "max_retries": _parse_number(env, f"{ENV_PREFIX}MAX_RETRIES", int, 5),
            "rate_limits": rates,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class CredentialStore:
    """Per-platform secrets from the environment, with tokens.json as fallback.

    Environment variables are named ``<PLATFORM>_<KEY>``, for example
    ``SPOTIFY_ACCESS_TOKEN``. The fallback file maps platform to a dict of
    lower-case keys: ``{"spotify": {"access_token": "..."}}``.
    """

    def __init__(self, config_dir: Optional[str] = None, env: Optional[Mapping[str, str]] = None):
        self.config_dir = Path(config_dir) if config_dir else Path.home() / '.tunesync'
        self.tokens_file = self.config_dir / 'tokens.json'
        self._env = env
        self._tokens: Optional[Dict[str, Any]] = None

    @property
    def env(self) -> Mapping[str, str]:
        return self._env if self._env is not None else os.environ

    def load_tokens(self) -> Dict[str, Any]:
        """Load tokens from tokens.json file."""
        if self._tokens is not None:
            return self._tokens
        if not self.tokens_file.exists():
            self._tokens = {}
            return self._tokens

        try:
            with open(self.tokens_file, 'r') as f:
                self._tokens = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            raise ConfigurationInvalid(f"Failed to load tokens from {self.tokens_file}: {e}")
        return self._tokens

    def get(self, platform: str, key: str) -> Optional[str]:
        env_var = f"{platform.upper()}_{key.upper()}"
        value = self.env.get(env_var)
        if value is not None and str(value).strip():
            return value

        stored = self.load_tokens().get(platform, {})
        value = stored.get(key.lower()) if isinstance(stored, dict) else None
        if value is None or not str(value).strip():
            return None
        return str(value)

    def get_token(self, platform: str, token_type: str = 'access') -> Optional[str]:
        return self.get(platform, f"{token_type}_token")

    def require(self, platform: str, key: str) -> str:
        value = self.get(platform, key)
        if not value:
            raise ConfigurationInvalid(
                f"{platform.upper()}_{key.upper()} environment variable or "
                f"'{platform}.{key.lower()}' in {self.tokens_file} is required"
            )
        return value
