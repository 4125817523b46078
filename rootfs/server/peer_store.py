import copy
import ipaddress
import json
import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from wgdaemon_core.config import STORAGE_FILE_MODE
from wg_keys import KeyParseError, PrivateKey, PublicKey

_log = logging.getLogger("wgdaemon.store")

_RFC3339 = "%Y-%m-%dT%H:%M:%SZ"


class StorageError(Exception):
    pass


class KeyInUseError(ValueError):
    def __init__(self, public_key, owner):
        super().__init__(f"public key {public_key} already belongs to user '{owner}'")
        self.public_key = public_key
        self.owner = owner


def utcnow():
    return datetime.now(timezone.utc).replace(microsecond=0)


def _truncate(ts):
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).replace(microsecond=0)


def format_time(ts):
    # whole seconds only, some consumers reject fractional timestamps
    return _truncate(ts).strftime(_RFC3339)


def parse_time(text):
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    return _truncate(datetime.fromisoformat(text))


@dataclass
class ClientConfig:
    name: str
    ip: ipaddress.IPv4Address
    modified: datetime = field(default_factory=utcnow)
    info: str = ""

    def __post_init__(self):
        self.ip = ipaddress.ip_address(self.ip)
        self.modified = _truncate(self.modified)

    def to_dict(self):
        return {
            "name": self.name,
            "ip": str(self.ip),
            "info": self.info,
            "modified": format_time(self.modified),
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            name=data.get("name", ""),
            ip=data["ip"],
            modified=parse_time(data["modified"]),
            info=data.get("info", ""),
        )


@dataclass
class User:
    is_disabled: bool = False
    clients: dict = field(default_factory=dict)

    def to_dict(self):
        return {
            "isDisabled": self.is_disabled,
            "clients": {str(pk): c.to_dict() for pk, c in self.clients.items()},
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            is_disabled=bool(data.get("isDisabled", False)),
            clients={
                PublicKey.parse(pk): ClientConfig.from_dict(c)
                for pk, c in (data.get("clients") or {}).items()
            },
        )


class FileStorage:
    """Users and their client configs, persisted as one JSON document.

    Every mutation runs under a single lock and rewrites the whole file before
    the lock is released. If the write fails the in-memory change is undone,
    so memory and disk always agree. Callers only ever get copies.
    """

    def __init__(self, path, private_key, users=None):
        self.path = Path(path)
        self._private_key = private_key
        self._public_key = private_key.public_key()
        self._users = users if users is not None else {}
        self._reserved = set()
        self._lock = threading.RLock()

    @classmethod
    def create(cls, path, private_key):
        path = Path(path)
        if path.exists():
            raise FileExistsError(f"file '{path}' already exists")
        storage = cls(path, private_key)
        storage.write()
        _log.info("created storage file %s", path)
        return storage

    @classmethod
    def load(cls, path):
        path = Path(path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StorageError(f"could not read storage file: {e}") from e
        except json.JSONDecodeError as e:
            raise StorageError(f"failed to parse storage file: {e}") from e
        try:
            private_key = PrivateKey.parse(data["privateKey"])
            users = {uid: User.from_dict(u) for uid, u in (data.get("users") or {}).items()}
        except (KeyError, TypeError, ValueError, KeyParseError) as e:
            raise StorageError(f"failed to parse storage file: {e}") from e
        storage = cls(path, private_key, users)
        stored_pub = data.get("publicKey")
        if stored_pub and stored_pub != str(storage._public_key):
            _log.warning("stored public key does not match private key, using derived key")
        _log.info("loaded %d users from %s", len(users), path)
        return storage

    @property
    def server_private_key(self):
        return self._private_key

    @property
    def server_public_key(self):
        return self._public_key

    def reserve_ip(self, ip):
        with self._lock:
            self._reserved.add(ipaddress.ip_address(ip))

    def to_dict(self):
        with self._lock:
            return self._to_dict_unlocked()

    def _to_dict_unlocked(self):
        return {
            "privateKey": str(self._private_key),
            "publicKey": str(self._public_key),
            "users": {uid: u.to_dict() for uid, u in self._users.items()},
        }

    def write(self):
        with self._lock:
            self._write_unlocked()

    def _write_unlocked(self):
        payload = json.dumps(self._to_dict_unlocked(), indent=2)
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, STORAGE_FILE_MODE)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            tmp.chmod(STORAGE_FILE_MODE)
            tmp.replace(self.path)
        except OSError as e:
            try:
                tmp.unlink()
            except OSError:
                pass
            raise StorageError(f"could not write storage file {self.path}: {e}") from e

    @contextmanager
    def _commit(self):
        # caller holds self._lock
        snapshot = copy.deepcopy(self._users)
        try:
            yield
            self._write_unlocked()
        except BaseException:
            self._users = snapshot
            raise

    def _get_or_create_user(self, user_id):
        user = self._users.get(user_id)
        if user is None:
            user = User()
            self._users[user_id] = user
        return user

    def _allocated_ips_unlocked(self):
        ips = set()
        for user in self._users.values():
            for client in user.clients.values():
                ips.add(client.ip)
        return ips

    def _owner_unlocked(self, public_key):
        for uid, user in self._users.items():
            if public_key in user.clients:
                return uid
        return None

    def get_or_create_user(self, user_id):
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                with self._commit():
                    user = self._get_or_create_user(user_id)
            return copy.deepcopy(user)

    def get_user(self, user_id):
        with self._lock:
            user = self._users.get(user_id)
            return copy.deepcopy(user) if user is not None else None

    def get_user_clients(self, user_id):
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return {}
            return copy.deepcopy(user.clients)

    def get_username_and_config(self, public_key):
        with self._lock:
            for uid, user in self._users.items():
                config = user.clients.get(public_key)
                if config is not None:
                    return uid, copy.deepcopy(config)
        raise KeyError(f"no user found for public key {public_key}")

    def update_or_create_config(self, user_id, public_key, config):
        """Store config under user_id, refusing an IP that is already taken.

        The check runs against the allocation set at write time, so two
        callers that allocated the same free address cannot both win.
        """
        with self._lock:
            owner = self._owner_unlocked(public_key)
            if owner is not None and owner != user_id:
                raise KeyInUseError(public_key, owner)
            if config.ip in self._allocated_ips_unlocked() or config.ip in self._reserved:
                _log.info("ip %s already allocated, refusing config for %s", config.ip, user_id)
                return False
            with self._commit():
                self._get_or_create_user(user_id).clients[public_key] = copy.deepcopy(config)
            return True

    def edit_config(self, user_id, public_key, name=None, info=None):
        """Update name and note in place; the IP never changes.

        An empty or None name keeps the current one. A None note keeps the
        current one, an empty string clears it.
        """
        with self._lock:
            user = self._users.get(user_id)
            if user is None or public_key not in user.clients:
                return None
            with self._commit():
                client = user.clients[public_key]
                if name:
                    client.name = name
                if info is not None:
                    client.info = info
                client.modified = utcnow()
            return copy.deepcopy(self._users[user_id].clients[public_key])

    def delete_config(self, user_id, public_key):
        with self._lock:
            user = self._users.get(user_id)
            if user is None or public_key not in user.clients:
                return False
            with self._commit():
                del self._users[user_id].clients[public_key]
            return True

    def set_disabled(self, user_id, disabled):
        """Returns True when the flag changed, False when it already had that value."""
        with self._lock:
            user = self._users.get(user_id)
            current = user.is_disabled if user is not None else False
            if current == disabled:
                return False
            with self._commit():
                self._get_or_create_user(user_id).is_disabled = disabled
            return True

    def get_allocated_ips(self):
        with self._lock:
            return self._allocated_ips_unlocked()

    def get_enabled_users(self):
        with self._lock:
            return [copy.deepcopy(u) for u in self._users.values() if not u.is_disabled]

    def user_count(self):
        with self._lock:
            return len(self._users)

    def client_count(self):
        with self._lock:
            return sum(len(u.clients) for u in self._users.values())
