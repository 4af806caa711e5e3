"""Durable session storage — one YAML file per session, advisory locked."""

from __future__ import annotations

import contextlib
import logging
import os
import re
import threading
import time
from collections.abc import Generator
from pathlib import Path
from typing import IO, Any

import yaml
from pydantic import ValidationError

from .context.session import TEMP_SESSION_NAME, Session, SessionRecord
from .context.tokens import TokenEstimator
from .errors import ConcurrentSaveConflict, InvalidSessionName, SessionCorrupt, SessionNotFound

try:
    import fcntl  # Unix file locking

    _HAS_FCNTL = True
except ImportError:
    _HAS_FCNTL = False

try:
    import msvcrt  # Windows file locking

    _HAS_MSVCRT = True
except ImportError:
    _HAS_MSVCRT = False

logger = logging.getLogger(__name__)

SESSION_SUFFIX = ".yaml"
AUTONAME_DIR = "_"

_NAME_PART_RE = re.compile(r"^\w[\w.\-]*$")
_LOCK_POLL_SEC = 0.05


def validate_session_name(name: str) -> str:
    """Return the stripped name or raise :class:`InvalidSessionName`.

    Plain names and ``_/<autoname>`` are accepted; nothing may escape the
    sessions directory.
    """
    name = name.strip()
    if not name:
        msg = "session name is required"
        raise InvalidSessionName(msg)
    if name == TEMP_SESSION_NAME:
        msg = f"session name '{TEMP_SESSION_NAME}' is reserved"
        raise InvalidSessionName(msg)
    parts = name.split("/")
    if len(parts) == 2 and parts[0] == AUTONAME_DIR:
        parts = parts[1:]
    if len(parts) != 1 or not _NAME_PART_RE.match(parts[0]) or ".." in parts[0]:
        msg = f"invalid session name: {name!r}"
        raise InvalidSessionName(msg)
    return name


class YamlSessionStorage:
    """Stores sessions as ``<root>/<name>.yaml``.

    Writes are atomic (temp file + rename) and serialized per session name:
    a thread lock inside the process and an exclusive advisory file lock
    across processes. Each save bumps ``revision``; saving over a file
    whose revision moved since the session was loaded is a conflict.
    """

    def __init__(self, root: Path | str, lock_timeout: float = 5.0) -> None:
        self._root = Path(root)
        self._lock_timeout = lock_timeout
        self._thread_locks: dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, name: str) -> Path:
        return self._root / f"{validate_session_name(name)}{SESSION_SUFFIX}"

    def exists(self, name: str) -> bool:
        return self.path_for(name).exists()

    def list_names(self) -> list[str]:
        """Saved session names, autonamed ones as ``_/<name>``. Read-only."""
        if not self._root.exists():
            return []
        names = [p.stem for p in self._root.glob(f"*{SESSION_SUFFIX}")]
        auto_dir = self._root / AUTONAME_DIR
        if auto_dir.exists():
            names.extend(
                f"{AUTONAME_DIR}/{p.stem}" for p in auto_dir.glob(f"*{SESSION_SUFFIX}")
            )
        return sorted(names)

    # ------------------------------------------------------------------
    # Load / save / delete
    # ------------------------------------------------------------------

    def load(self, name: str, estimator: TokenEstimator) -> Session:
        path = self.path_for(name)
        with self._locked(name, path):
            try:
                text = path.read_text(encoding="utf-8")
            except FileNotFoundError as exc:
                raise SessionNotFound(name, str(path)) from exc
            except OSError as exc:
                raise SessionCorrupt(name, str(exc)) from exc

        record = self._parse(name, text)
        try:
            session = Session.from_record(record, name, str(path), estimator)
        except ValueError as exc:
            raise SessionCorrupt(name, str(exc)) from exc
        logger.info("Loaded session '%s' (revision %d)", name, record.revision)
        return session

    def save(self, session: Session, name: str, force: bool = False) -> Path:
        """Persist *session* under *name* and mark it clean.

        Raises :class:`ConcurrentSaveConflict` when the lock cannot be taken
        or the file changed underneath, unless ``force`` is set.
        """
        path = self.path_for(name)
        with self._locked(name, path):
            found = self._peek_revision(path)
            if path.exists() and not force:
                bound_here = session.path == str(path)
                if not bound_here or found != session.revision:
                    raise ConcurrentSaveConflict(
                        name, expected=session.revision if bound_here else None, found=found
                    )
            revision = max(found or 0, session.revision) + 1
            data = session.to_record(revision=revision).to_data()
            self._write_atomic(path, data)
            session.mark_saved(name, str(path), revision)

        logger.info("Saved session '%s' to %s (revision %d)", name, path, revision)
        return path

    def delete(self, name: str) -> bool:
        path = self.path_for(name)
        with self._locked(name, path):
            if not path.exists():
                return False
            path.unlink()
        logger.info("Deleted session '%s'", name)
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _parse(self, name: str, text: str) -> SessionRecord:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise SessionCorrupt(name, f"invalid YAML: {exc}") from exc
        if not isinstance(data, dict):
            raise SessionCorrupt(name, "expected a mapping at the top level")
        try:
            return SessionRecord.model_validate(data)
        except ValidationError as exc:
            raise SessionCorrupt(name, str(exc)) from exc

    def _peek_revision(self, path: Path) -> int | None:
        if not path.exists():
            return None
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError):
            return None
        if isinstance(data, dict) and isinstance(data.get("revision"), int):
            return data["revision"]
        return None

    def _write_atomic(self, path: Path, data: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        text = yaml.safe_dump(data, sort_keys=False, allow_unicode=True)
        tmp_path = path.with_suffix(f"{SESSION_SUFFIX}.tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as fh:
                fh.write(text)
                fh.flush()
                os.fsync(fh.fileno())
            tmp_path.replace(path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise

    def _thread_lock(self, name: str) -> threading.RLock:
        with self._guard:
            lock = self._thread_locks.get(name)
            if lock is None:
                lock = threading.RLock()
                self._thread_locks[name] = lock
            return lock

    @contextlib.contextmanager
    def _locked(self, name: str, path: Path) -> Generator[None, None, None]:
        lock = self._thread_lock(name)
        if not lock.acquire(timeout=self._lock_timeout):
            raise ConcurrentSaveConflict(name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            lock_path = path.with_suffix(f"{SESSION_SUFFIX}.lock")
            with open(lock_path, "a+", encoding="utf-8") as fh:
                self._acquire_file_lock(fh, name)
                try:
                    yield
                finally:
                    self._release_file_lock(fh)
        finally:
            lock.release()

    def _acquire_file_lock(self, fh: IO[str], name: str) -> None:
        """Exclusive advisory lock, polled until ``lock_timeout``."""
        deadline = time.monotonic() + self._lock_timeout
        while True:
            try:
                if _HAS_FCNTL:
                    fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                elif _HAS_MSVCRT:
                    fh.seek(0)
                    msvcrt.locking(fh.fileno(), msvcrt.LK_NBLCK, 1)
                return
            except OSError as exc:
                if time.monotonic() >= deadline:
                    raise ConcurrentSaveConflict(name) from exc
                time.sleep(_LOCK_POLL_SEC)

    @staticmethod
    def _release_file_lock(fh: IO[str]) -> None:
        if _HAS_FCNTL:
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        elif _HAS_MSVCRT:
            fh.seek(0)
            msvcrt.locking(fh.fileno(), msvcrt.LK_UNLCK, 1)
