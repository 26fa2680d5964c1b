import os
import sys

import pytest


def _ensure_project_root_on_sys_path() -> None:
    here = os.path.dirname(__file__)
    project_root = os.path.abspath(os.path.join(here, "..", ".."))
    if project_root not in sys.path:
        sys.path.insert(0, project_root)


_ensure_project_root_on_sys_path()

_SECRET_KEYS = [
    'SPOTIFY_ACCESS_TOKEN', 'SPOTIFY_REFRESH_TOKEN', 'SPOTIFY_CLIENT_ID', 'SPOTIFY_CLIENT_SECRET',
    'TIDAL_ACCESS_TOKEN', 'TIDAL_REFRESH_TOKEN', 'YANDEX_ACCESS_TOKEN', 'YTMUSIC_AUTH_FILE',
]


@pytest.fixture(autouse=True)
def _clear_platform_tokens_env():
    """Ensure platform tokens from a developer's .env do not leak into tests.

    Cleared before each test and restored afterwards so tests that set them
    explicitly stay deterministic.
    """
    backup = {k: os.environ.get(k) for k in _SECRET_KEYS}
    for k in _SECRET_KEYS:
        os.environ.pop(k, None)
    try:
        yield
    finally:
        for k, v in backup.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v
