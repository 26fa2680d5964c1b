from unittest.mock import Mock, patch

import pytest

from tunesync.domain.entities import Playlist, Track
from tunesync.domain.errors import NotFound, PermanentFailure, RateLimited, TemporaryFailure, Unauthorized
from tunesync.infrastructure.providers.ytmusic import YtMusicProvider, translate_ytmusic_error


def song(video_id, title="Song", duration_seconds=200):
    return {
        "videoId": video_id,
        "title": title,
        "artists": [{"name": "Artist", "id": "a1"}],
        "album": {"name": "Album", "id": "b1"},
        "duration_seconds": duration_seconds,
    }


class TestTranslateYtMusicError:
    """Tests for the textual error classification."""

    def test_status_codes_in_message(self):
        """The status code embedded in the message drives the mapping."""
        assert isinstance(translate_ytmusic_error(Exception("Server returned HTTP 401"), "op"), Unauthorized)
        assert isinstance(translate_ytmusic_error(Exception("Server returned HTTP 429"), "op"), RateLimited)
        assert isinstance(translate_ytmusic_error(Exception("Server returned HTTP 404"), "op"), NotFound)
        assert isinstance(translate_ytmusic_error(Exception("Server returned HTTP 400"), "op"), PermanentFailure)
        assert isinstance(translate_ytmusic_error(Exception("connection reset"), "op"), TemporaryFailure)


class TestYtMusicProvider:
    """Tests for the YouTube Music adapter with a mocked ytmusicapi client."""

    def setup_method(self):
        """Set up test fixtures."""
        with patch('tunesync.infrastructure.providers.ytmusic.YTMusic') as mock_ytmusic_class:
            self.client = Mock()
            mock_ytmusic_class.return_value = self.client
            self.provider = YtMusicProvider("browser.json")

    def test_list_playlists_skips_generated(self):
        """Liked Music and Episodes for Later are not user playlists."""
        self.client.get_library_playlists.return_value = [
            {"playlistId": "LM", "title": "Liked Music"},
            {"playlistId": "SE", "title": "Episodes for Later"},
            {"playlistId": "PL1", "title": "Mix", "count": "1,204"},
        ]

        playlists = self.provider.list_playlists()

        assert playlists == [Playlist(id="PL1", name="Mix", platform="ytmusic", track_count=1204)]

    def test_owner_filter_excludes_ownerless_playlists(self):
        """Library playlists have no owner so a filter matches none."""
        self.client.get_library_playlists.return_value = [{"playlistId": "PL1", "title": "Mix"}]

        assert self.provider.list_playlists(owner_filter="me") == []

    def test_get_or_create_playlist_creates_missing(self):
        """A missing playlist is created and returned empty."""
        self.client.get_library_playlists.return_value = []
        self.client.create_playlist.return_value = "PLnew"

        playlist = self.provider.get_or_create_playlist("Mix")

        assert playlist.id == "PLnew"
        assert playlist.track_count == 0
        self.client.create_playlist.assert_called_once_with(title="Mix", description="Synced by tunesync")

    def test_get_or_create_playlist_rejects_error_payload(self):
        """A non-id response from create_playlist is a temporary failure."""
        self.client.get_library_playlists.return_value = []
        self.client.create_playlist.return_value = {"error": "busy"}

        with pytest.raises(TemporaryFailure):
            self.provider.get_or_create_playlist("Mix")

    def test_list_tracks_drops_unavailable_items(self):
        """Items without a videoId are skipped."""
        self.client.get_playlist.return_value = {"tracks": [song("v1"), {"title": "Gone", "videoId": None}]}

        tracks = self.provider.list_tracks(Playlist(id="PL1", name="Mix"))

        assert tracks == [Track(id="v1", title="Song", artists=("Artist",), album="Album",
                                duration_ms=200000, platform="ytmusic")]

    def test_add_tracks_reports_failed_status(self):
        """A non-successful status from the API raises a temporary failure."""
        self.client.get_playlist.return_value = {"tracks": []}
        self.client.add_playlist_items.return_value = {"status": "STATUS_FAILED"}

        with pytest.raises(TemporaryFailure):
            self.provider.add_tracks(Playlist(id="PL1", name="Mix"), [Track(id="v1")])

    def test_add_tracks_skips_present_videos(self):
        """Videos already in the playlist are counted as duplicates."""
        self.client.get_playlist.return_value = {"tracks": [song("v1")]}
        self.client.add_playlist_items.return_value = {"status": "STATUS_SUCCEEDED"}

        result = self.provider.add_tracks(Playlist(id="PL1", name="Mix"), [Track(id="v1"), Track(id="v2")])

        assert result.added == 1
        assert result.duplicates == 1
        self.client.add_playlist_items.assert_called_once_with("PL1", ["v2"], duplicates=False)

    def test_search_tags_isrc_hit(self):
        """The top song of an ISRC query carries the source ISRC."""
        self.client.search.return_value = [song("v1"), song("v2")]

        candidates = self.provider.search(Track(title="Song", artists=("Artist",), isrc="USABC1234567"))

        assert len(candidates) == 1
        assert candidates[0].isrc == "USABC1234567"
        self.client.search.assert_called_once_with('"USABC1234567"', filter="songs", limit=10)

    def test_search_by_text(self):
        """Without an ISRC the text queries are used."""
        self.client.search.return_value = [song("v1"), song("v1"), song("v2")]

        candidates = self.provider.search(Track(title="Song", artists=("Artist",)))

        assert [c.id for c in candidates] == ["v1", "v2"]
        assert candidates[0].isrc is None

    def test_likes(self):
        """Liked songs are read and rated through the client."""
        self.client.get_liked_songs.return_value = {"tracks": [song("v1")]}

        assert [t.id for t in self.provider.get_likes()] == ["v1"]

        self.provider.add_like(Track(id="v2"))
        self.client.rate_song.assert_called_once_with("v2", "LIKE")

    def test_country_code_unknown(self):
        """YouTube Music never reports an account country."""
        assert self.provider.country_code() is None
