"""Durable music asset stores.

Both stores expose the two-call contract the pipeline needs: ``exists(key)``
and ``fetch(key)``. ``music_store_from_env`` picks one based on
``MUSIC_STORE_BACKEND``.

Environment Variables:
    MUSIC_STORE_BACKEND: "r2", "local" or "none" (default: "none")
    MUSIC_LOCAL_DIR: root directory for the local store
    R2_BUCKET: Cloudflare R2 bucket holding the music keys
    R2_ACCOUNT_ID, R2_ACCESS_KEY_ID, R2_SECRET_ACCESS_KEY: R2 credentials
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Union

import boto3
from botocore.client import Config
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


class LocalMusicStore:
    """Keys resolve to files below ``directory``."""

    def __init__(self, directory: Union[str, Path]) -> None:
        self.directory = Path(directory).resolve()

    def _path_for(self, key: str) -> Path:
        path = (self.directory / key.lstrip("/")).resolve()
        if path != self.directory and self.directory not in path.parents:
            raise ValueError(f"music key {key!r} escapes {self.directory}")
        return path

    def exists(self, key: str) -> bool:
        return self._path_for(key).is_file()

    def fetch(self, key: str) -> bytes:
        path = self._path_for(key)
        data = path.read_bytes()
        logger.debug(f"[music-store] read {len(data)} bytes from {path}")
        return data


def _build_r2_client():
    account_id = os.getenv("R2_ACCOUNT_ID")
    access_key_id = os.getenv("R2_ACCESS_KEY_ID")
    secret_access_key = os.getenv("R2_SECRET_ACCESS_KEY")

    if not all([account_id, access_key_id, secret_access_key]):
        raise RuntimeError(
            "Missing R2 credentials (R2_ACCOUNT_ID, R2_ACCESS_KEY_ID, R2_SECRET_ACCESS_KEY)"
        )

    # R2 endpoint format: https://<account_id>.r2.cloudflarestorage.com
    client = boto3.client(
        "s3",
        endpoint_url=f"https://{account_id}.r2.cloudflarestorage.com",
        aws_access_key_id=access_key_id,
        aws_secret_access_key=secret_access_key,
        config=Config(
            signature_version="s3v4",
            s3={"addressing_style": "path"},
        ),
        region_name="auto",
    )
    logger.info(f"R2 client initialized for account {account_id}")
    return client


class R2MusicStore:
    """Music keys in a Cloudflare R2 bucket via the S3-compatible API."""

    def __init__(self, bucket_name: str, client=None) -> None:
        self.bucket_name = bucket_name
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = _build_r2_client()
        return self._client

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket_name, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _MISSING_CODES:
                return False
            logger.error(f"[R2] Failed to check existence of {key}: {e}")
            raise

    def fetch(self, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket_name, Key=key)
            data = response["Body"].read()
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _MISSING_CODES:
                raise FileNotFoundError(f"r2://{self.bucket_name}/{key}") from e
            logger.error(f"[R2] Failed to download {key}: {e}")
            raise
        logger.info(f"[R2] Downloaded {len(data)} bytes from {key}")
        return data


def music_store_from_env() -> Optional[Union[LocalMusicStore, R2MusicStore]]:
    """Store selected by ``MUSIC_STORE_BACKEND``; ``None`` disables music."""
    backend = os.getenv("MUSIC_STORE_BACKEND", "none").strip().lower()
    if backend == "r2":
        return R2MusicStore(os.getenv("R2_BUCKET", "briefcast-media").strip())
    if backend == "local":
        directory = os.getenv("MUSIC_LOCAL_DIR", "").strip()
        if not directory:
            raise RuntimeError("MUSIC_STORE_BACKEND=local requires MUSIC_LOCAL_DIR")
        return LocalMusicStore(directory)
    if backend != "none":
        logger.warning(f"Invalid MUSIC_STORE_BACKEND '{backend}', music disabled")
    return None


__all__ = ["LocalMusicStore", "R2MusicStore", "music_store_from_env"]
