import json
import os
import tempfile

import pytest

from tunesync.domain.entities import Playlist, Track
from tunesync.domain.errors import CapabilityAbsent, NotFound, PermanentFailure
from tunesync.infrastructure.providers.json_file import JsonFileProvider


class TestJsonFileProvider:
    """Tests for the read-only export file source."""

    def setup_method(self):
        """Set up test fixtures."""
        self.tmpdir = tempfile.mkdtemp()
        self.path = os.path.join(self.tmpdir, "library.json")
        payload = [
            {"id": "p1", "name": "Mix", "ownerId": "me",
             "tracks": [{"id": "1", "title": "One", "artists": ["A"], "durationMs": 1000}]},
            {"id": "p2", "name": "Other", "ownerId": "someone", "tracks": []},
            {"id": "p1", "name": "Mix copy", "tracks": []},
        ]
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(payload, f)
        self.provider = JsonFileProvider(self.path)

    def test_lists_playlists_once_per_id(self):
        """Playlists are listed in file order, ignoring repeated ids."""
        playlists = self.provider.list_playlists()

        assert [p.name for p in playlists] == ["Mix", "Other"]
        assert playlists[0].track_count == 1

    def test_owner_filter(self):
        """The owner filter keeps matching playlists only."""
        assert [p.id for p in self.provider.list_playlists("me")] == ["p1"]

    def test_list_tracks(self):
        """Tracks are served from the file."""
        tracks = self.provider.list_tracks(Playlist(id="p1", name="Mix"))

        assert tracks == [Track(id="1", title="One", artists=("A",), duration_ms=1000)]

    def test_unknown_playlist(self):
        """Unknown playlist ids raise NotFound."""
        with pytest.raises(NotFound):
            self.provider.list_tracks(Playlist(id="nope", name="Nope"))

    def test_is_read_only(self):
        """Writes and searches are permanent failures, likes are unsupported."""
        playlist = Playlist(id="p1", name="Mix")
        with pytest.raises(PermanentFailure):
            self.provider.add_tracks(playlist, [Track(id="1")])
        with pytest.raises(PermanentFailure):
            self.provider.get_or_create_playlist("Mix")
        with pytest.raises(PermanentFailure):
            self.provider.search(Track(id="1", title="One"))
        with pytest.raises(CapabilityAbsent):
            self.provider.get_likes()
        with pytest.raises(CapabilityAbsent):
            self.provider.add_like(Track(id="1"))
