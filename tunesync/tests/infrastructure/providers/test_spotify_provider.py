from unittest.mock import Mock, patch

import pytest
import requests
from spotipy import SpotifyException

from tunesync.domain.entities import Playlist, Track
from tunesync.domain.errors import NotFound, PermanentFailure, RateLimited, TemporaryFailure, Unauthorized
from tunesync.infrastructure.providers.spotify import SpotifyProvider, translate_spotify_error


def spotify_track(track_id, name="Song", isrc=None, album="Album", duration_ms=200000):
    return {
        "id": track_id,
        "name": name,
        "uri": f"spotify:track:{track_id}",
        "artists": [{"name": "Artist"}],
        "album": {"name": album},
        "duration_ms": duration_ms,
        "external_ids": {"isrc": isrc} if isrc else {},
        "type": "track",
    }


class TestTranslateSpotifyError:
    """Tests for mapping spotipy errors onto domain errors."""

    def test_status_codes(self):
        """HTTP statuses map onto the error taxonomy."""
        assert isinstance(translate_spotify_error(SpotifyException(401, -1, "expired"), "op"), Unauthorized)
        assert isinstance(translate_spotify_error(SpotifyException(404, -1, "missing"), "op"), NotFound)
        assert isinstance(translate_spotify_error(SpotifyException(400, -1, "bad"), "op"), PermanentFailure)
        assert isinstance(translate_spotify_error(SpotifyException(502, -1, "gateway"), "op"), TemporaryFailure)

    def test_rate_limit_uses_retry_after(self):
        """429 carries the Retry-After header in milliseconds."""
        error = translate_spotify_error(SpotifyException(429, -1, "slow down", headers={"Retry-After": "3"}), "op")

        assert isinstance(error, RateLimited)
        assert error.retry_after_ms == 3000

    def test_transport_errors_are_temporary(self):
        """Connection problems are retryable."""
        error = translate_spotify_error(requests.exceptions.ConnectionError("reset"), "op")

        assert isinstance(error, TemporaryFailure)


class TestSpotifyProvider:
    """Tests for the Spotify adapter with a mocked spotipy client."""

    def setup_method(self):
        """Set up test fixtures."""
        with patch('tunesync.infrastructure.providers.spotify.spotipy.Spotify') as mock_spotify_class:
            self.mock_client = Mock()
            mock_spotify_class.return_value = self.mock_client
            self.limiter = Mock()
            self.provider = SpotifyProvider("access", limiter=self.limiter)
        self.mock_client.current_user.return_value = {"id": "me"}

    def test_list_playlists_pages_and_filters_owner(self):
        """Playlists are paged and restricted to the owner filter."""
        first_page = {
            "items": [{"id": f"p{i}", "name": f"P{i}", "owner": {"id": "me" if i % 2 == 0 else "other"},
                       "tracks": {"total": i}} for i in range(50)],
            "next": "page-2",
        }
        second_page = {"items": [{"id": "last", "name": "Last", "owner": {"id": "me"}, "tracks": {"total": 3}}],
                       "next": None}
        self.mock_client.current_user_playlists.side_effect = [first_page, second_page]

        playlists = self.provider.list_playlists(owner_filter="me")

        assert len(playlists) == 26
        assert playlists[-1] == Playlist(id="last", name="Last", owner_id="me", platform="spotify", track_count=3)
        self.mock_client.current_user_playlists.assert_called_with(limit=50, offset=50)
        assert self.limiter.acquire.call_count == 2

    def test_list_tracks_skips_local_and_missing_items(self):
        """Local files and removed tracks are dropped."""
        self.mock_client.playlist_items.return_value = {
            "items": [
                {"track": spotify_track("t1", isrc="USABC1234567")},
                {"track": None},
                {"is_local": True, "track": spotify_track("local")},
                {"track": {"id": "ep", "type": "episode", "name": "Podcast"}},
            ],
            "next": None,
        }

        tracks = self.provider.list_tracks(Playlist(id="p1", name="Mix"))

        assert tracks == [Track(id="t1", title="Song", artists=("Artist",), album="Album", duration_ms=200000,
                                isrc="USABC1234567", uri="spotify:track:t1", platform="spotify")]

    def test_get_or_create_playlist_returns_existing(self):
        """An owned playlist with the exact name is reused."""
        self.mock_client.current_user_playlists.return_value = {
            "items": [{"id": "p1", "name": "Mix", "owner": {"id": "me"}, "tracks": {"total": 1}}],
            "next": None,
        }

        playlist = self.provider.get_or_create_playlist("Mix")

        assert playlist.id == "p1"
        self.mock_client.user_playlist_create.assert_not_called()

    def test_get_or_create_playlist_creates_private_playlist(self):
        """A missing playlist is created private and empty."""
        self.mock_client.current_user_playlists.return_value = {"items": [], "next": None}
        self.mock_client.user_playlist_create.return_value = {"id": "new", "name": "Mix", "owner": {"id": "me"}}

        playlist = self.provider.get_or_create_playlist("Mix")

        assert playlist == Playlist(id="new", name="Mix", owner_id="me", platform="spotify", track_count=0)
        args, kwargs = self.mock_client.user_playlist_create.call_args
        assert args == ("me", "Mix")
        assert kwargs["public"] is False

    def test_add_tracks_skips_existing_ids(self):
        """Tracks already in the playlist are not sent again."""
        self.mock_client.playlist_items.return_value = {"items": [{"track": spotify_track("t1")}], "next": None}
        tracks = [Track(id="t1", uri="spotify:track:t1"), Track(id="t2", uri="spotify:track:t2"),
                  Track(id="t2", uri="spotify:track:t2")]

        result = self.provider.add_tracks(Playlist(id="p1", name="Mix"), tracks)

        assert result.added == 1
        assert result.duplicates == 2
        self.mock_client.playlist_add_items.assert_called_once_with("p1", ["spotify:track:t2"])

    def test_add_tracks_chunks_by_one_hundred(self):
        """Large writes are split into requests of 100 uris."""
        self.mock_client.playlist_items.return_value = {"items": [], "next": None}
        tracks = [Track(id=f"t{i}", uri=f"spotify:track:t{i}") for i in range(150)]

        result = self.provider.add_tracks(Playlist(id="p1", name="Mix"), tracks)

        assert result.added == 150
        sizes = [len(call.args[1]) for call in self.mock_client.playlist_add_items.call_args_list]
        assert sizes == [100, 50]

    def test_search_tries_isrc_first(self):
        """An ISRC query that returns results ends the search."""
        self.mock_client.search.return_value = {"tracks": {"items": [spotify_track("t1"), spotify_track("t1")]}}

        candidates = self.provider.search(Track(title="Song", artists=("Artist",), isrc="USABC1234567"))

        assert [c.id for c in candidates] == ["t1"]
        self.mock_client.search.assert_called_once_with(q="isrc:USABC1234567", type="track", limit=10, market=None)

    def test_search_falls_back_to_free_text(self):
        """Empty result sets move on to the next, looser query."""
        self.mock_client.search.side_effect = [
            {"tracks": {"items": []}},
            {"tracks": {"items": [spotify_track("t2")]}},
        ]

        candidates = self.provider.search(Track(title="Song", artists=("Artist",)))

        assert [c.id for c in candidates] == ["t2"]
        queries = [call.kwargs["q"] for call in self.mock_client.search.call_args_list]
        assert queries == ['track:"Song" artist:"Artist"', "Song Artist"]

    def test_search_without_results(self):
        """No results across all queries yields an empty list."""
        self.mock_client.search.return_value = {"tracks": {"items": []}}

        assert self.provider.search(Track(title="Song")) == []

    def test_rate_limit_is_translated(self):
        """A 429 response becomes RateLimited with the server hint."""
        self.mock_client.search.side_effect = SpotifyException(429, -1, "rate", headers={"Retry-After": "2"})

        with pytest.raises(RateLimited) as exc_info:
            self.provider.search(Track(title="Song"))
        assert exc_info.value.retry_after_ms == 2000

    def test_unauthorized_without_refresh_credentials(self):
        """A rejected token without refresh data is fatal."""
        self.mock_client.current_user_saved_tracks.side_effect = SpotifyException(401, -1, "expired")

        with pytest.raises(Unauthorized):
            self.provider.get_likes()

    @patch('tunesync.infrastructure.providers.spotify.SpotifyOAuth')
    @patch('tunesync.infrastructure.providers.spotify.spotipy.Spotify')
    def test_token_refreshed_once_on_401(self, mock_spotify_class, mock_oauth_class):
        """With client credentials the token is refreshed and the call repeated."""
        expired_client = Mock()
        expired_client.current_user_saved_tracks.side_effect = SpotifyException(401, -1, "expired")
        fresh_client = Mock()
        fresh_client.current_user_saved_tracks.return_value = {"items": [{"track": spotify_track("t1")}],
                                                               "next": None}
        mock_spotify_class.side_effect = [expired_client, fresh_client]
        mock_oauth_class.return_value.refresh_access_token.return_value = {"access_token": "fresh"}

        provider = SpotifyProvider("stale", refresh_token="refresh", client_id="id", client_secret="secret")
        likes = provider.get_likes()

        assert [t.id for t in likes] == ["t1"]
        assert provider.access_token == "fresh"
        mock_oauth_class.return_value.refresh_access_token.assert_called_once_with("refresh")

    def test_add_like(self):
        """Liking saves the track id to the library."""
        self.provider.add_like(Track(id="t1"))

        self.mock_client.current_user_saved_tracks_add.assert_called_once_with(["t1"])

    def test_country_code_from_profile(self):
        """The account country comes from the cached profile."""
        self.mock_client.current_user.return_value = {"id": "me", "country": "SE"}

        assert self.provider.country_code() == "SE"
        assert self.provider._current_user_id() == "me"
        self.mock_client.current_user.assert_called_once()

    def test_country_code_missing_without_private_scope(self):
        """A profile without a country yields None."""
        assert self.provider.country_code() is None
