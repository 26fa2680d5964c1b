import hashlib

from tunesync.application.idempotency import DestinationIndex, calculate_snapshot_hash, dedup_tracks
from tunesync.application.matching import TrackMatcher
from tunesync.domain.entities import Track


class TestSnapshotHash:
    """Tests for snapshot hashing."""

    def test_hash_is_order_independent(self):
        """Reordering a playlist does not change its snapshot hash."""
        a = Track(id="1", title="One", duration_ms=100000)
        b = Track(id="2", title="Two", duration_ms=200000)

        assert calculate_snapshot_hash([a, b]) == calculate_snapshot_hash([b, a])

    def test_hash_changes_with_content(self):
        """Adding a track changes the hash."""
        a = Track(id="1", title="One", duration_ms=100000)
        b = Track(id="2", title="Two", duration_ms=200000)

        assert calculate_snapshot_hash([a]) != calculate_snapshot_hash([a, b])

    def test_empty_snapshot_has_fixed_hash(self):
        """Empty playlists hash to a stable sentinel value."""
        assert calculate_snapshot_hash([]) == calculate_snapshot_hash([])
        assert len(calculate_snapshot_hash([])) == 64


class TestDedupTracks:
    """Tests for in-source duplicate detection."""

    def test_later_repeats_are_split_off(self):
        """The first occurrence is kept and later ones reported as duplicates."""
        first = Track(id="1", title="Song", isrc="ISRC1")
        repeat = Track(id="2", title="Song (Remix)", isrc="isrc1")
        other = Track(id="3", title="Other")

        unique, duplicates = dedup_tracks([first, repeat, other])

        assert unique == [first, other]
        assert duplicates == [repeat]


class TestDestinationIndex:
    """Tests for destination membership checks."""

    def setup_method(self):
        """Set up test fixtures."""
        self.matcher = TrackMatcher()
        self.existing = Track(id="t1", title="Song", album="Album", duration_ms=200000, platform="tidal")
        self.index = DestinationIndex([self.existing], self.matcher, platform="tidal")

    def test_find_by_native_id_on_same_platform(self):
        """A track of the destination platform is found by id."""
        lookup = Track(id="t1", title="Renamed", platform="tidal")

        assert self.index.find(lookup) is self.existing

    def test_find_by_equivalence_across_platforms(self):
        """A source track from another catalog is found through the matcher."""
        lookup = Track(id="s9", title="Song", album="Album", duration_ms=201000, platform="spotify")

        assert self.index.find(lookup) is self.existing

    def test_foreign_id_collision_is_ignored(self):
        """Equal ids from different platforms are not treated as the same track."""
        lookup = Track(id="t1", title="Something Else", duration_ms=90000, platform="spotify")

        assert self.index.find(lookup) is None

    def test_add_and_contains_id(self):
        """Added tracks become visible to id lookups."""
        added = Track(id="t2", title="New", platform="tidal")

        self.index.add(added)

        assert self.index.contains_id("t2")
        assert not self.index.contains_id("")
        assert len(self.index) == 2
        assert self.index.ids == ["t1", "t2"]

    def test_empty_index_finds_nothing(self):
        """An empty destination never reports a match."""
        index = DestinationIndex([], self.matcher, platform="tidal")

        assert index.find(self.existing) is None


class CountingMatcher(TrackMatcher):
    """Matcher that records how many pairs it scored."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.scored = 0

    def score(self, source, candidate):
        self.scored += 1
        return super().score(source, candidate)


class TestDestinationIndexLookup:
    """Tests for the indexed lookup path on large destinations."""

    def setup_method(self):
        """Set up test fixtures."""
        self.matcher = CountingMatcher()
        self.filler = [
            Track(id=f"f{i}", title=hashlib.sha1(str(i).encode()).hexdigest()[:16], duration_ms=200000,
                  platform="tidal")
            for i in range(500)
        ]
        self.target = Track(id="t-needle", title="Needle In A Haystack", album="Hay", duration_ms=200000,
                            platform="tidal")
        self.index = DestinationIndex(self.filler + [self.target], self.matcher, platform="tidal")

    def test_lookup_scores_only_similar_titles(self):
        """Tracks whose title cannot reach the threshold are never scored."""
        lookup = Track(id="s1", title="Needle in a Haystack", album="Hay", duration_ms=201000, platform="spotify")

        assert self.index.find(lookup) is self.target
        assert self.matcher.scored == 1

    def test_lookup_with_no_similar_title_scores_nothing(self):
        """A title unlike every member returns None without scoring."""
        lookup = Track(id="s2", title="Completely Unrelated Ballad", duration_ms=200000, platform="spotify")

        assert self.index.find(lookup) is None
        assert self.matcher.scored == 0

    def test_isrc_lookup_uses_first_member_with_that_code(self):
        """ISRC membership is a dictionary hit and keeps the earliest member."""
        first = Track(id="a", title="One", isrc="USRC17607839", platform="tidal")
        second = Track(id="b", title="Two", isrc="US-RC1-76-07839", platform="tidal")
        index = DestinationIndex([first, second], self.matcher, platform="tidal")
        lookup = Track(id="s3", title="Different Title", isrc="usrc17607839", platform="spotify")

        assert index.find(lookup) is first
        assert self.matcher.scored == 0

    def test_tie_keeps_insertion_order(self):
        """Equal scores resolve to the member added first."""
        early = Track(id="e", title="Same Song", duration_ms=200000, platform="tidal")
        late = Track(id="l", title="Same Song", duration_ms=200000, platform="tidal")
        index = DestinationIndex(self.filler[:50] + [early] + self.filler[50:100] + [late], self.matcher,
                                 platform="tidal")

        assert index.find(Track(id="s4", title="Same Song", platform="spotify")) is early

    def test_punctuation_only_title_falls_back_to_full_scan(self):
        """A title that normalizes to nothing is still compared on its raw form."""
        odd = Track(id="o", title="(...)", duration_ms=200000, platform="tidal")
        index = DestinationIndex([self.target, odd], TrackMatcher(), platform="tidal")

        assert index.find(Track(id="s5", title="(...)", platform="spotify")) is odd
