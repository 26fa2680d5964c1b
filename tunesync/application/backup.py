import json
import logging
from typing import List, Optional

from tunesync.domain.entities import Playlist
from tunesync.domain.errors import ConfigurationInvalid
from tunesync.domain.ports import MusicProvider


logger = logging.getLogger(__name__)


def export_playlists(provider: MusicProvider,
                     path: str,
                     minify: bool = False,
                     owner_filter: Optional[str] = None) -> List[Playlist]:
    """Write every playlist of ``provider`` with its tracks to a JSON file.

    The file holds a JSON array of playlists, pretty-printed unless ``minify``
    is set, and can be fed back through ``JsonFileProvider``.
    """
    playlists = []
    for playlist in provider.list_playlists(owner_filter):
        tracks = provider.list_tracks(playlist)
        logger.info(f"Exporting playlist '{playlist.name}' ({len(tracks)} tracks)")
        playlists.append(playlist.with_tracks(tracks))

    payload = [p.to_json() for p in playlists]
    with open(path, 'w', encoding='utf-8') as f:
        if minify:
            json.dump(payload, f, ensure_ascii=False, separators=(',', ':'))
        else:
            json.dump(payload, f, ensure_ascii=False, indent=2)

    logger.info(f"Exported {len(playlists)} playlists to {path}")
    return playlists


def load_playlists(path: str) -> List[Playlist]:
    """Read an export file; accepts a bare array or ``{"playlists": [...]}``."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationInvalid(f"Cannot read playlists from {path}: {e}")

    if isinstance(data, dict):
        data = data.get("playlists")
    if not isinstance(data, list):
        raise ConfigurationInvalid(f"{path} must contain a JSON array of playlists")

    try:
        return [Playlist.from_json(item) for item in data]
    except (KeyError, TypeError, AttributeError) as e:
        raise ConfigurationInvalid(f"Malformed playlist entry in {path}: {e}")
