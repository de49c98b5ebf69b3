"""Tests for the local and R2 music stores (boto3 client mocked)."""

import io
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from infrastructure import music_store
from infrastructure.music_store import LocalMusicStore, R2MusicStore, music_store_from_env


def _client_error(code, op="HeadObject"):
    return ClientError({"Error": {"Code": code, "Message": "x"}}, op)


class TestLocalMusicStore:
    def test_exists_and_fetch(self, tmp_path):
        (tmp_path / "assets" / "music").mkdir(parents=True)
        (tmp_path / "assets" / "music" / "intro.mp3").write_bytes(b"ID3")
        store = LocalMusicStore(tmp_path)
        assert store.exists("assets/music/intro.mp3")
        assert not store.exists("assets/music/outro.mp3")
        assert store.fetch("assets/music/intro.mp3") == b"ID3"

    def test_keys_cannot_escape_the_directory(self, tmp_path):
        store = LocalMusicStore(tmp_path / "music")
        with pytest.raises(ValueError):
            store.exists("../secrets.txt")


class TestR2MusicStore:
    def test_exists_uses_head_object(self):
        client = MagicMock()
        store = R2MusicStore("media", client=client)
        assert store.exists("assets/music/intro.mp3") is True
        client.head_object.assert_called_once_with(Bucket="media", Key="assets/music/intro.mp3")

    def test_missing_object(self):
        client = MagicMock()
        client.head_object.side_effect = _client_error("404")
        assert R2MusicStore("media", client=client).exists("assets/music/outro.mp3") is False

    def test_other_client_errors_propagate(self):
        client = MagicMock()
        client.head_object.side_effect = _client_error("AccessDenied")
        with pytest.raises(ClientError):
            R2MusicStore("media", client=client).exists("assets/music/outro.mp3")

    def test_fetch_reads_body(self):
        client = MagicMock()
        client.get_object.return_value = {"Body": io.BytesIO(b"mp3-bytes")}
        assert R2MusicStore("media", client=client).fetch("k") == b"mp3-bytes"

    def test_fetch_missing_is_file_not_found(self):
        client = MagicMock()
        client.get_object.side_effect = _client_error("NoSuchKey", "GetObject")
        with pytest.raises(FileNotFoundError):
            R2MusicStore("media", client=client).fetch("k")

    def test_client_requires_credentials(self, monkeypatch):
        for key in ("R2_ACCOUNT_ID", "R2_ACCESS_KEY_ID", "R2_SECRET_ACCESS_KEY"):
            monkeypatch.delenv(key, raising=False)
        with pytest.raises(RuntimeError, match="Missing R2 credentials"):
            R2MusicStore("media").client

    def test_client_points_at_account_endpoint(self, monkeypatch):
        monkeypatch.setenv("R2_ACCOUNT_ID", "acct")
        monkeypatch.setenv("R2_ACCESS_KEY_ID", "key")
        monkeypatch.setenv("R2_SECRET_ACCESS_KEY", "secret")
        with patch.object(music_store.boto3, "client") as factory:
            R2MusicStore("media").client
        assert factory.call_args.kwargs["endpoint_url"] == "https://acct.r2.cloudflarestorage.com"
        assert factory.call_args.kwargs["region_name"] == "auto"


class TestMusicStoreFromEnv:
    def test_default_is_no_music(self):
        assert music_store_from_env() is None

    def test_local(self, monkeypatch, tmp_path):
        monkeypatch.setenv("MUSIC_STORE_BACKEND", "local")
        monkeypatch.setenv("MUSIC_LOCAL_DIR", str(tmp_path))
        store = music_store_from_env()
        assert isinstance(store, LocalMusicStore)

    def test_local_needs_a_directory(self, monkeypatch):
        monkeypatch.setenv("MUSIC_STORE_BACKEND", "local")
        with pytest.raises(RuntimeError):
            music_store_from_env()

    def test_r2(self, monkeypatch):
        monkeypatch.setenv("MUSIC_STORE_BACKEND", "r2")
        monkeypatch.setenv("R2_BUCKET", "briefcast-media")
        store = music_store_from_env()
        assert isinstance(store, R2MusicStore)
        assert store.bucket_name == "briefcast-media"

    def test_unknown_backend_disables_music(self, monkeypatch, caplog):
        monkeypatch.setenv("MUSIC_STORE_BACKEND", "ftp")
        assert music_store_from_env() is None
        assert "Invalid MUSIC_STORE_BACKEND" in caplog.text
