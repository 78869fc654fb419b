"""
Persistent record store with the embedded admission controller.

The store is the single owner of users, API keys and the in-flight request
counters. One instance is built at startup and handed to every consumer;
all state changes go through its methods under one reader/writer lock.
"""
import os
import secrets
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from passlib.context import CryptContext
from pydantic import ValidationError

from keygate_server.errors import (
    ConcurrencyExceeded,
    ConfigurationError,
    DecodeError,
    DuplicateAPIKey,
    DuplicateUsername,
    InvalidCredentials,
    KeyDisabled,
    KeyNotFound,
    QuotaExceeded,
    RecordValidationError,
    UserNotFound,
)
from keygate_server.locking import ReadWriteLock
from keygate_server.logging_config import get_logger, log_store_event
from keygate_server.models import APIKey, RecordSet, Role, User

# Password hashing context
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

DEFAULT_KEY_PREFIX = "kg_"

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """Opaque record identifier such as ``usr_Xb3...``."""
    return f"{prefix}_{secrets.token_urlsafe(12)}"


def generate_api_key(prefix: str = DEFAULT_KEY_PREFIX) -> str:
    """Generate a new random credential string."""
    return f"{prefix}{secrets.token_urlsafe(24)}"


def hash_password(password: str) -> str:
    """
    Hash a password for storage.

    Raises:
        RecordValidationError: If the password is blank
    """
    password = (password or "").strip()
    if not password:
        raise RecordValidationError("empty password")
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Check ``password`` against a stored hash. Unknown hash formats never match."""
    if not password_hash:
        return False
    try:
        return pwd_context.verify(password, password_hash)
    except (ValueError, TypeError):
        return False


def _index_of(records: list, record_id: str) -> Optional[int]:
    for index, record in enumerate(records):
        if record.id == record_id:
            return index
    return None


class RecordStore:
    """
    Users, API keys and admission state backed by a JSON file.

    Lookups take the shared side of the lock; every mutation, including
    ``begin_request``/``end_request``, takes the exclusive side. Returned
    records are always copies.
    """

    def __init__(self, path: Union[str, Path, None] = None):
        self._lock = ReadWriteLock()
        self._path = str(path).strip() if path else ""
        self._data = RecordSet()
        self._inflight: Dict[str, int] = {}

    @property
    def path(self) -> str:
        with self._lock.read_lock():
            return self._path

    @path.setter
    def path(self, value: Union[str, Path, None]) -> None:
        with self._lock.write_lock():
            self._path = str(value).strip() if value else ""

    # Persistence

    def load(self) -> None:
        """
        Replace in-memory state with the contents of the backing file.

        A missing file is the normal first-run case and yields an empty
        version 1 record set.

        Raises:
            ConfigurationError: If no backing path is configured
            DecodeError: If the file exists but is not a valid record set
            OSError: On any other read failure
        """
        path = self.path
        if not path:
            raise ConfigurationError("data path not configured")

        try:
            raw = Path(path).read_bytes()
        except FileNotFoundError:
            with self._lock.write_lock():
                self._data = RecordSet(version=1, updated_at=_utcnow())
            log_store_event("store_initialized", path=path)
            return

        try:
            data = RecordSet.model_validate_json(raw)
        except ValidationError as exc:
            raise DecodeError(f"malformed data file {path}: {exc}") from exc

        with self._lock.write_lock():
            self._data = data
        log_store_event(
            "store_loaded",
            path=path,
            version=data.version,
            users=len(data.users),
            api_keys=len(data.api_keys),
        )

    def save(self) -> None:
        """
        Persist a point-in-time copy of the record set.

        The copy is written to a temporary file next to the target and renamed
        over it, so readers only ever see a complete file. On failure the
        temporary file is removed, the target is left untouched and the error
        propagates; in-memory state is kept either way.

        Raises:
            ConfigurationError: If no backing path is configured
            OSError: If writing or renaming fails
        """
        path = self.path
        if not path:
            raise ConfigurationError("data path not configured")

        with self._lock.read_lock():
            data = self._data.model_copy(deep=True)
        data.updated_at = _utcnow()
        payload = data.model_dump_json(indent=2)

        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix="keygate-", suffix=".json", dir=target.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise
        logger.debug("store_saved", path=path, version=data.version)

    def snapshot(self) -> RecordSet:
        """Deep copy of the current record set."""
        with self._lock.read_lock():
            return self._data.model_copy(deep=True)

    # Users

    def upsert_user(self, user: User) -> User:
        """
        Create or fully replace a user.

        An empty ``id`` creates a new record with a store-assigned id. A
        supplied id that matches no record is appended as a new record under
        that id, so a caller restoring a deleted user keeps its identifier.

        Raises:
            RecordValidationError: Blank username or unknown role
            DuplicateUsername: Username taken by another user (case-insensitive)
        """
        if not user.username.strip():
            raise RecordValidationError("username required")
        try:
            role = Role(user.role or Role.USER).value
        except ValueError:
            raise RecordValidationError(f"invalid role {user.role!r}") from None

        record = user.model_copy(update={"role": role, "created_at": user.created_at or _utcnow()})
        folded = record.username.casefold()

        with self._lock.write_lock():
            for existing in self._data.users:
                if existing.username.casefold() == folded and existing.id != record.id:
                    raise DuplicateUsername(f"username {record.username!r} already exists")

            if not record.id:
                record.id = new_id("usr")
                self._data.users.append(record)
            else:
                index = _index_of(self._data.users, record.id)
                if index is None:
                    self._data.users.append(record)
                else:
                    self._data.users[index] = record
            return record.model_copy()

    def delete_user(self, user_id: str) -> None:
        """
        Raises:
            UserNotFound: If no user has this id
        """
        user_id = (user_id or "").strip()
        if not user_id:
            raise UserNotFound()
        with self._lock.write_lock():
            index = _index_of(self._data.users, user_id)
            if index is None:
                raise UserNotFound(f"user {user_id} not found")
            del self._data.users[index]

    def find_user_by_id(self, user_id: str) -> Optional[User]:
        user_id = (user_id or "").strip()
        if not user_id:
            return None
        with self._lock.read_lock():
            for user in self._data.users:
                if user.id == user_id:
                    return user.model_copy()
        return None

    def find_user_by_username(self, username: str) -> Optional[User]:
        """Case-insensitive username lookup."""
        username = (username or "").strip()
        if not username:
            return None
        folded = username.casefold()
        with self._lock.read_lock():
            for user in self._data.users:
                if user.username.casefold() == folded:
                    return user.model_copy()
        return None

    def list_users(self) -> List[User]:
        with self._lock.read_lock():
            return [user.model_copy() for user in self._data.users]

    def authenticate_user(self, username: str, password: str) -> User:
        """
        Verify a username/password pair.

        Unknown, disabled and wrong-password cases raise the same error so
        callers cannot probe for valid usernames.

        Raises:
            InvalidCredentials: On any failure
        """
        user = self.find_user_by_username(username)
        if user is None or user.disabled:
            raise InvalidCredentials()
        if not verify_password(password, user.password_hash):
            raise InvalidCredentials()
        return user

    # API keys

    def upsert_api_key(self, key: APIKey, preserve_usage: bool = False) -> APIKey:
        """
        Create or fully replace an API key.

        Same id policy as ``upsert_user``. The credential string must be
        unique among all keys, checked on every upsert. With
        ``preserve_usage`` an existing record keeps its stored ``used_count``,
        read under the same lock as the write, so traffic counted since the
        caller fetched the key is not lost.

        Raises:
            RecordValidationError: Blank credential string
            DuplicateAPIKey: Credential string used by another key
        """
        value = key.key.strip()
        if not value:
            raise RecordValidationError("api key required")

        record = key.model_copy(update={"key": value, "created_at": key.created_at or _utcnow()})

        with self._lock.write_lock():
            for existing in self._data.api_keys:
                if existing.key == record.key and existing.id != record.id:
                    raise DuplicateAPIKey()

            if not record.id:
                record.id = new_id("key")
                self._data.api_keys.append(record)
            else:
                index = _index_of(self._data.api_keys, record.id)
                if index is None:
                    self._data.api_keys.append(record)
                else:
                    if preserve_usage:
                        record.used_count = self._data.api_keys[index].used_count
                    self._data.api_keys[index] = record
            return record.model_copy()

    def delete_api_key(self, key_id: str) -> None:
        """
        Raises:
            KeyNotFound: If no key has this id
        """
        key_id = (key_id or "").strip()
        if not key_id:
            raise KeyNotFound()
        with self._lock.write_lock():
            index = _index_of(self._data.api_keys, key_id)
            if index is None:
                raise KeyNotFound(f"api key {key_id} not found")
            del self._data.api_keys[index]
            self._inflight.pop(key_id, None)

    def reset_api_key_usage(self, key_id: str) -> APIKey:
        """
        Administrative reset of ``used_count`` to zero.

        Raises:
            KeyNotFound: If no key has this id
        """
        key_id = (key_id or "").strip()
        with self._lock.write_lock():
            index = _index_of(self._data.api_keys, key_id) if key_id else None
            if index is None:
                raise KeyNotFound(f"api key {key_id} not found")
            record = self._data.api_keys[index]
            record.used_count = 0
            return record.model_copy()

    def find_api_key(self, value: str) -> Optional[APIKey]:
        """Look up a key by its exact credential string."""
        value = (value or "").strip()
        if not value:
            return None
        with self._lock.read_lock():
            for key in self._data.api_keys:
                if key.key == value:
                    return key.model_copy()
        return None

    def find_api_key_by_id(self, key_id: str) -> Optional[APIKey]:
        key_id = (key_id or "").strip()
        if not key_id:
            return None
        with self._lock.read_lock():
            for key in self._data.api_keys:
                if key.id == key_id:
                    return key.model_copy()
        return None

    def list_api_keys(self) -> List[APIKey]:
        with self._lock.read_lock():
            return [key.model_copy() for key in self._data.api_keys]

    def list_api_keys_by_user(self, user_id: str) -> List[APIKey]:
        user_id = (user_id or "").strip()
        if not user_id:
            return []
        with self._lock.read_lock():
            return [key.model_copy() for key in self._data.api_keys if key.user_id == user_id]

    # Admission control

    def begin_request(self, value: str) -> APIKey:
        """
        Admit one request for the key with credential string ``value``.

        The enablement, quota and concurrency checks and the in-flight
        reservation happen under a single exclusive lock acquisition. Every
        successful call must be paired with exactly one ``end_request``.

        Raises:
            KeyNotFound: Unknown or blank credential
            KeyDisabled: Key is disabled
            QuotaExceeded: ``used_count`` reached ``total_limit``
            ConcurrencyExceeded: In-flight count reached ``concurrency_limit``
        """
        value = (value or "").strip()
        if not value:
            raise KeyNotFound()

        with self._lock.write_lock():
            for key in self._data.api_keys:
                if key.key != value:
                    continue
                if not key.enabled:
                    raise KeyDisabled()
                if key.total_limit > 0 and key.used_count >= key.total_limit:
                    raise QuotaExceeded()
                if key.concurrency_limit > 0:
                    current = self._inflight.get(key.id, 0)
                    if current >= key.concurrency_limit:
                        raise ConcurrencyExceeded()
                    self._inflight[key.id] = current + 1
                return key.model_copy()
        raise KeyNotFound()

    def end_request(self, value: str, count_as_used: bool) -> None:
        """
        Release the slot taken by ``begin_request`` and optionally count usage.

        Unknown credentials are ignored. The in-flight count never drops
        below zero.
        """
        value = (value or "").strip()
        if not value:
            return

        with self._lock.write_lock():
            for key in self._data.api_keys:
                if key.key != value:
                    continue
                if key.concurrency_limit > 0:
                    current = self._inflight.get(key.id, 0)
                    if current > 0:
                        self._inflight[key.id] = current - 1
                if count_as_used:
                    key.used_count += 1
                return

    def in_flight(self, key_id: str) -> int:
        """Number of admitted, not yet finished requests for a key."""
        with self._lock.read_lock():
            return self._inflight.get(key_id, 0)
