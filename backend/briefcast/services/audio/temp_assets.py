"""Run-scoped scratch files.

Every intermediate file of a run is allocated here, recorded in an explicit
manifest, and deleted by ``release_all`` whether the run succeeded or not.
Nothing is ever matched by filename pattern; only manifest entries are
touched.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from pathlib import Path
from typing import Dict, List, Optional, Union

from .errors import ScratchError

log = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def _sanitize(purpose: str) -> str:
    cleaned = _UNSAFE.sub("-", purpose or "asset").strip("-").lower()
    return cleaned or "asset"


class TemporaryAssetManager:
    def __init__(self, scratch_root: Union[str, Path], run_id: str) -> None:
        if not run_id or _UNSAFE.search(run_id) or set(run_id) == {"."}:
            raise ScratchError(f"invalid run id {run_id!r}")
        self.scratch_root = Path(scratch_root)
        self.run_id = run_id
        self.run_dir = self.scratch_root / run_id
        self._entries: List[Dict[str, str]] = []
        self._seq = 0
        self._lock = threading.Lock()
        self._open()

    def _open(self) -> None:
        manifest = self.run_dir / MANIFEST_NAME
        if manifest.exists():
            raise ScratchError(
                f"scratch directory for run {self.run_id} is already in use",
                assets=[str(self.run_dir)],
            )
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self._save()
        log.debug(f"[scratch] opened {self.run_dir}")

    @property
    def manifest_path(self) -> Path:
        return self.run_dir / MANIFEST_NAME

    @property
    def tracked(self) -> List[Path]:
        with self._lock:
            return [Path(e["path"]) for e in self._entries]

    def allocate(self, purpose: str, suffix: str = ".mp3") -> Path:
        """Reserve a unique path inside this run's scratch directory."""
        with self._lock:
            self._seq += 1
            name = f"{self.run_id}-{self._seq:04d}-{_sanitize(purpose)}{suffix}"
            path = self.run_dir / name
            self._entries.append({"path": str(path), "purpose": purpose, "origin": "allocated"})
            self._save()
        return path

    def adopt(self, path: Union[str, Path], purpose: str = "input") -> Path:
        """Track an externally created file so it is deleted with the run."""
        p = Path(path)
        with self._lock:
            if any(e["path"] == str(p) for e in self._entries):
                return p
            self._entries.append({"path": str(p), "purpose": purpose, "origin": "adopted"})
            self._save()
        return p

    def release_all(self, run_id: Optional[str] = None, keep_adopted: bool = False) -> List[Path]:
        """Best-effort delete of every tracked path.

        With ``keep_adopted`` the adopted files are dropped from the manifest
        but left on disk. Returns the paths that could not be deleted; each
        failure is logged.
        """
        if run_id is not None and run_id != self.run_id:
            raise ScratchError(f"run id mismatch: manager owns {self.run_id}, asked to release {run_id}")
        with self._lock:
            entries = list(self._entries)
        if keep_adopted:
            kept = [e for e in entries if e.get("origin") == "adopted"]
            entries = [e for e in entries if e.get("origin") != "adopted"]
            if kept:
                log.info(f"[scratch] run {self.run_id}: leaving {len(kept)} adopted file(s) in place")
        failed = _delete_entries(entries)
        with self._lock:
            self._entries = [e for e in self._entries if Path(e["path"]) in failed]
            if self._entries:
                self._save()
            else:
                _remove_run_dir(self.run_dir)
        log.info(f"[scratch] released run {self.run_id}: {len(entries) - len(failed)} deleted, {len(failed)} failed")
        return failed

    def _save(self) -> None:
        data = {"run_id": self.run_id, "entries": self._entries}
        with open(self.manifest_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

    @classmethod
    def recover(cls, scratch_root: Union[str, Path], run_id: str) -> List[Path]:
        """Delete leftovers of a run whose process died before releasing them.

        Adopted files are left alone: a crashed run never finished with them.
        """
        run_dir = Path(scratch_root) / run_id
        manifest = run_dir / MANIFEST_NAME
        if not manifest.exists():
            return []
        with open(manifest, "r", encoding="utf-8") as f:
            data = json.load(f)
        if data.get("run_id") != run_id:
            raise ScratchError(f"manifest at {manifest} belongs to run {data.get('run_id')!r}")
        entries = [e for e in data.get("entries") or [] if e.get("origin") != "adopted"]
        log.info(f"[scratch] recovering run {run_id}: {len(entries)} tracked paths")
        failed = _delete_entries(entries)
        if not failed:
            _remove_run_dir(run_dir)
        return failed

    def __enter__(self) -> "TemporaryAssetManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release_all()


def _delete_entries(entries: List[Dict[str, str]]) -> List[Path]:
    failed: List[Path] = []
    for entry in entries:
        p = Path(entry["path"])
        try:
            p.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning(f"[scratch] failed to delete {p}: {e}")
            failed.append(p)
    return failed


def _remove_run_dir(run_dir: Path) -> None:
    manifest = run_dir / MANIFEST_NAME
    try:
        manifest.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        log.warning(f"[scratch] failed to delete manifest {manifest}: {e}")
        return
    try:
        run_dir.rmdir()
    except FileNotFoundError:
        pass
    except OSError as e:
        # Something not tracked by this run lives here; leave it alone
        log.warning(f"[scratch] run directory {run_dir} not removed: {e}")


__all__ = ["TemporaryAssetManager", "MANIFEST_NAME"]
