"""Unit tests for music lookup: key fallback and soft failure."""

import pytest

from briefcast.services.audio.errors import PipelineCancelled
from briefcast.services.audio.ffmpeg import CancelToken
from briefcast.services.audio.models import MusicAbsent, MusicPresent
from briefcast.services.audio.music import MusicLibrary, candidate_keys
from tests.helpers.fake_tool import DictMusicStore, fake_music_bytes


@pytest.fixture
def library_for(fake_tool, scratch, settings):
    def build(store):
        return MusicLibrary(store, fake_tool, scratch, settings)

    return build


class TestCandidateKeys:
    def test_intro_and_outro(self):
        assert candidate_keys("assets/music/", "intro") == ["assets/music/intro.mp3"]
        assert candidate_keys("assets/music/", "outro") == ["assets/music/outro.mp3"]

    def test_transition_prefers_numbered_key(self):
        assert candidate_keys("m/", "transition", 2) == ["m/transition-2.mp3", "m/transition.mp3"]

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            candidate_keys("m/", "jingle")


class TestLookup:
    def test_present_music_is_downloaded_and_probed(self, library_for, scratch):
        store = DictMusicStore({"assets/music/intro.mp3": fake_music_bytes(duration=6.0)})
        result = library_for(store).lookup("intro")

        assert isinstance(result, MusicPresent)
        assert result.key == "assets/music/intro.mp3"
        assert result.asset.duration_seconds == 6.0
        assert result.asset.path in scratch.tracked

    def test_missing_music_is_absent_not_an_error(self, library_for, caplog):
        result = library_for(DictMusicStore()).lookup("outro")
        assert isinstance(result, MusicAbsent)
        assert result.key == "assets/music/outro.mp3"
        assert "outro unavailable" in caplog.text

    def test_transition_falls_back_to_generic_key(self, library_for):
        store = DictMusicStore({"assets/music/transition.mp3": fake_music_bytes()})
        result = library_for(store).lookup("transition", 3)
        assert isinstance(result, MusicPresent)
        assert result.key == "assets/music/transition.mp3"

    def test_numbered_transition_wins(self, library_for):
        store = DictMusicStore(
            {
                "assets/music/transition.mp3": fake_music_bytes(label="generic"),
                "assets/music/transition-1.mp3": fake_music_bytes(label="first"),
            }
        )
        result = library_for(store).lookup("transition", 1)
        assert result.key == "assets/music/transition-1.mp3"

    def test_store_errors_become_absent(self, library_for, caplog):
        store = DictMusicStore(broken=["assets/music/intro.mp3"])
        result = library_for(store).lookup("intro")
        assert isinstance(result, MusicAbsent)
        assert "store unreachable" in result.reason
        assert "lookup failed" in caplog.text

    def test_empty_object_is_absent(self, library_for):
        store = DictMusicStore({"assets/music/intro.mp3": b""})
        result = library_for(store).lookup("intro")
        assert isinstance(result, MusicAbsent)
        assert "empty" in result.reason

    def test_shared_key_is_fetched_once(self, library_for):
        store = DictMusicStore({"assets/music/transition.mp3": fake_music_bytes()})
        lib = library_for(store)
        first = lib.lookup("transition", 1)
        second = lib.lookup("transition", 2)
        assert first is second
        assert store.fetched == ["assets/music/transition.mp3"]

    def test_cancellation_still_propagates(self, library_for):
        store = DictMusicStore({"assets/music/intro.mp3": fake_music_bytes()})
        token = CancelToken()
        token.cancel()
        with pytest.raises(PipelineCancelled):
            library_for(store).lookup("intro", cancel=token)
