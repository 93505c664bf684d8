from __future__ import annotations

import dataclasses
import json
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from shield.logging import get_logger
from shield.storage.errors import ConstraintViolation, StoreError
from shield.storage.models import Session, User, utcnow

_TICK = timedelta(microseconds=1)


def _normalize_email(email: str) -> str:
    return email.strip().lower()


class MemoryStore:
    """In-memory backing store for tests and single-process development.

    A transaction holds the data lock for its whole scope, so concurrent
    transactions are fully serialized. When ``fs_root`` is given, committed
    state is mirrored to ``<fs_root>/state/memory_store.json``.
    """

    def __init__(
        self,
        fs_root: str | None = None,
        *,
        lock_timeout: float = 5.0,
        logger: Any = None,
    ) -> None:
        self.logger = logger or get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.lock_timeout = lock_timeout
        # Re-entrant: provisioning helpers may run inside an open transaction,
        # whose changes then commit with the outermost scope only
        self._data_lock = threading.RLock()
        self._depth = 0
        self._dirty = False
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    @contextmanager
    def transaction(self) -> Iterator["MemoryTransaction"]:
        if not self._data_lock.acquire(timeout=self.lock_timeout):
            self.logger.error("memory_store_lock_timeout", timeout=self.lock_timeout)
            raise StoreError(
                "timed out waiting for store transaction",
                {"timeout_seconds": self.lock_timeout},
            )
        outermost = self._depth == 0
        if outermost:
            # Records are replaced, never edited in place, so shallow copies suffice
            snapshot = (dict(self.users), dict(self.sessions), dict(self.credentials))
            self._dirty = False
        self._depth += 1
        try:
            yield MemoryTransaction(self)
            if outermost and self._dirty:
                self._persist_state()
        except BaseException:
            if outermost:
                self.users, self.sessions, self.credentials = snapshot
            raise
        finally:
            self._depth -= 1
            if outermost:
                self._dirty = False
            self._data_lock.release()

    def verify_connection(self) -> None:
        with self.transaction():
            pass

    def close(self) -> None:
        return None

    # provisioning
    def create_user(
        self,
        email: str,
        *,
        role: str = "user",
        tenant_id: str = "public",
        is_active: bool = True,
    ) -> User:
        normalized = _normalize_email(email)
        with self.transaction():
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                role=role,
                tenant_id=tenant_id,
                is_active=is_active,
            )
            self.users[user.id] = user
            self._dirty = True
            return user

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self.transaction():
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._dirty = True

    # persistence
    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
        }
        try:
            self._state_path().write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StoreError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.logger.info(
            "memory_store_loaded", users=len(self.users), sessions=len(self.sessions)
        )
        return True

    @staticmethod
    def _serialize_user(user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "role": user.role,
            "tenant_id": user.tenant_id,
            "created_at": user.created_at.isoformat(),
            "is_active": user.is_active,
        }

    @staticmethod
    def _deserialize_user(data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            role=data.get("role", "user"),
            tenant_id=data.get("tenant_id", "public"),
            created_at=datetime.fromisoformat(data["created_at"]),
            is_active=data.get("is_active", True),
        )

    @staticmethod
    def _serialize_session(session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "created_at": session.created_at.isoformat(),
            "updated_at": session.updated_at.isoformat(),
        }

    @staticmethod
    def _deserialize_session(data: dict) -> Session:
        return Session(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


class MemoryTransaction:
    """Operations available inside ``MemoryStore.transaction()``."""

    def __init__(self, store: MemoryStore) -> None:
        self._store = store

    # users
    def get_user(self, user_id: str) -> Optional[User]:
        return self._store.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = _normalize_email(email)
        return next(
            (u for u in self._store.users.values() if u.email == normalized), None
        )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        return self._store.credentials.get(user_id)

    # sessions
    def create_session(self, user_id: str) -> Session:
        if user_id not in self._store.users:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        sess = Session.new(user_id)
        self._store.sessions[sess.id] = sess
        self._store._dirty = True
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._store.sessions.get(session_id)

    def touch_session(self, session_id: str) -> Optional[Session]:
        sess = self._store.sessions.get(session_id)
        if sess is None:
            return None
        now = utcnow()
        if now <= sess.updated_at:
            now = sess.updated_at + _TICK
        touched = dataclasses.replace(sess, updated_at=now)
        self._store.sessions[session_id] = touched
        self._store._dirty = True
        return touched

    def delete_session(self, session_id: str) -> Optional[Session]:
        removed = self._store.sessions.pop(session_id, None)
        if removed is not None:
            self._store._dirty = True
        return removed
