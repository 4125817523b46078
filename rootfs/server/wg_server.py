import logging
import threading

import ip_allocator
from connection_monitor import UnknownPeerError, get_connections
from peer_store import ClientConfig, KeyInUseError, StorageError
from wg_keys import KeyParseError, PublicKey
from wg_manager import WireGuardError, client_to_peer
from wgdaemon_core.config import WG_DEFAULT_NETWORK

_log = logging.getLogger("wgdaemon.server")

EXHAUSTED = "ip_range_exhausted"
USER_ALREADY_ENABLED = "user_already_enabled"
USER_ALREADY_DISABLED = "user_already_disabled"
CONFIG_NOT_FOUND = "config_not_found"
PUBLIC_KEY_IN_USE = "public_key_in_use"
INVALID_PUBLIC_KEY = "invalid_public_key"
MISSING_POST_PARAMETER = "missing_post_parameter"
USER_ID_NOT_SUPPLIED = "user_id_not_supplied"
PARTIAL_RECONCILIATION = "partial_reconciliation"
WIREGUARD_ERROR = "wireguard_error"
STORAGE_ERROR = "storage_error"
CONNECTION_ERROR = "connection_error"
INVALID_PARAMETER = "invalid_parameter"


def _fail(error_type, message, **extra):
    _log.warning("%s: %s", error_type, message)
    result = {"ok": False, "error": message, "error_type": error_type}
    result.update(extra)
    return result


def parse_public_key(value):
    if isinstance(value, PublicKey):
        return value, None
    if not value:
        return None, _fail(MISSING_POST_PARAMETER, "'public_key' was not supplied.")
    try:
        return PublicKey.parse(value), None
    except KeyParseError as e:
        return None, _fail(INVALID_PUBLIC_KEY, f"Invalid public key: '{value}'. {e}")


def _check_text(field, value, required=True):
    if value is None or value == "":
        if required:
            return _fail(MISSING_POST_PARAMETER, f"'{field}' was not supplied.")
        return None
    if not isinstance(value, str):
        return _fail(INVALID_PARAMETER, f"'{field}' must be a string, got {type(value).__name__}.")
    return None


def _check_user(user_id):
    if user_id is None or user_id == "":
        return _fail(USER_ID_NOT_SUPPLIED, "user_id was not supplied.")
    return _check_text("user_id", user_id)


class Server:
    """Ties the peer store, the IP allocator and the kernel interface together.

    Writes are serialised by one lock held across allocation, storage and the
    kernel push, so the interface never sees a state older than what is on
    disk. Storage is the source of truth: when the push fails after a
    successful store the change is kept and the error is reported.
    """

    def __init__(self, storage, wg, network=WG_DEFAULT_NETWORK):
        self.storage = storage
        self.wg = wg
        self.ip_addr, self.client_ip_range = ip_allocator.interface_address(network)
        self.storage.reserve_ip(self.ip_addr)
        self._lock = threading.Lock()

    @property
    def public_key(self):
        return self.storage.server_public_key

    def _desired_peers(self):
        peers = []
        for user in self.storage.get_enabled_users():
            for public_key, config in user.clients.items():
                peers.append(client_to_peer(public_key, config))
        return peers

    def _push(self, op, arg):
        try:
            result = op(self.storage.server_private_key, arg)
        except WireGuardError as e:
            return _fail(WIREGUARD_ERROR, f"Error reconfiguring WireGuard: {e}")
        if not result.ok:
            return _fail(PARTIAL_RECONCILIATION, result.message(),
                         applied=result.applied, rejected_keys=result.rejected_keys)
        return None

    def configure_wg(self):
        with self._lock:
            err = self._push(self.wg.configure_wg, self._desired_peers())
        return err or {"ok": True}

    def _allocate_ip(self):
        excluded = self.storage.get_allocated_ips()
        excluded.add(self.ip_addr)
        return ip_allocator.allocate(self.client_ip_range, excluded)

    def _new_config(self, user_id, public_key, name, info):
        # caller holds self._lock
        config = None
        for _ in range(ip_allocator.pool_size(self.client_ip_range)):
            ip = self._allocate_ip()
            if ip is None:
                break
            candidate = ClientConfig(name=name, ip=ip, info=info)
            try:
                stored = self.storage.update_or_create_config(user_id, public_key, candidate)
            except KeyInUseError as e:
                return None, _fail(PUBLIC_KEY_IN_USE, str(e))
            except StorageError as e:
                return None, _fail(STORAGE_ERROR, f"Error saving config: {e}")
            if stored:
                config = candidate
                break
            _log.info("ip %s was taken before commit, allocating again", ip)
        if config is None:
            return None, _fail(EXHAUSTED, "unable to allocate IP address, range exhausted")

        _log.info("user %s: new config '%s' at %s", user_id, name, config.ip)
        user = self.storage.get_user(user_id)
        if user is not None and not user.is_disabled:
            err = self._push(self.wg.add_peers, [client_to_peer(public_key, config)])
            if err:
                err["ip"] = str(config.ip)
                return config, err
        return config, None

    def create_config(self, user_id, public_key, name, info=""):
        err = _check_user(user_id)
        if err:
            return err
        public_key, err = parse_public_key(public_key)
        if err:
            return err
        err = _check_text("name", name) or _check_text("info", info, required=False)
        if err:
            return err
        with self._lock:
            config, err = self._new_config(user_id, public_key, name, info or "")
        if err:
            return err
        return {"ok": True, "ip": str(config.ip), "serverPublicKey": str(self.public_key)}

    def create_config_with_generated_key_pair(self, user_id, name, info=""):
        err = _check_user(user_id)
        if err:
            return err
        err = _check_text("name", name) or _check_text("info", info, required=False)
        if err:
            return err
        private_key = self.wg.generate_private_key()
        with self._lock:
            config, err = self._new_config(user_id, private_key.public_key(), name, info or "")
        if err:
            return err
        return {
            "ok": True,
            "clientPrivateKey": str(private_key),
            "ip": str(config.ip),
            "serverPublicKey": str(self.public_key),
        }

    def edit_config(self, user_id, public_key, name=None, info=None):
        """None leaves a field alone; an empty info clears the note."""
        err = _check_user(user_id)
        if err:
            return err
        public_key, err = parse_public_key(public_key)
        if err:
            return err
        err = _check_text("name", name, required=False) or _check_text("info", info, required=False)
        if err:
            return err
        try:
            config = self.storage.edit_config(user_id, public_key, name=name, info=info)
        except StorageError as e:
            return _fail(STORAGE_ERROR, f"Error editing config: {e}")
        if config is None:
            return _fail(CONFIG_NOT_FOUND,
                         f"Config not found: User '{user_id}' does not have a config with public key '{public_key}'")
        return {"ok": True, "config": config.to_dict()}

    def delete_config(self, user_id, public_key):
        err = _check_user(user_id)
        if err:
            return err
        public_key, err = parse_public_key(public_key)
        if err:
            return err
        with self._lock:
            try:
                deleted = self.storage.delete_config(user_id, public_key)
            except StorageError as e:
                return _fail(STORAGE_ERROR, f"Error deleting config: {e}")
            if not deleted:
                return _fail(CONFIG_NOT_FOUND,
                             f"Config not found: User '{user_id}' does not have a config with public key '{public_key}'")
            _log.info("user %s: deleted config %s", user_id, public_key)
            err = self._push(self.wg.remove_peers, [public_key])
        return err or {"ok": True}

    def _set_disabled(self, user_id, disabled):
        err = _check_user(user_id)
        if err:
            return err
        with self._lock:
            try:
                changed = self.storage.set_disabled(user_id, disabled)
            except StorageError as e:
                return _fail(STORAGE_ERROR, f"Error enabling/disabling user: {e}")
            if not changed:
                if disabled:
                    return _fail(USER_ALREADY_DISABLED, f"User {user_id} was already disabled.")
                return _fail(USER_ALREADY_ENABLED, f"User {user_id} was already enabled.")
            _log.info("user %s: %s", user_id, "disabled" if disabled else "enabled")
            if disabled:
                err = self._push(self.wg.configure_wg, self._desired_peers())
            else:
                clients = self.storage.get_user_clients(user_id)
                err = self._push(self.wg.add_peers, [client_to_peer(pk, c) for pk, c in clients.items()])
        return err or {"ok": True}

    # TODO: disabling a user keeps its addresses reserved, so a user can still
    # exhaust the pool by creating configs before being disabled.
    def disable_user(self, user_id):
        return self._set_disabled(user_id, True)

    def enable_user(self, user_id):
        return self._set_disabled(user_id, False)

    def list_configs(self, user_id):
        err = _check_user(user_id)
        if err:
            return err
        clients = self.storage.get_user_clients(user_id)
        return {"ok": True, "configs": {str(pk): c.to_dict() for pk, c in clients.items()}}

    def list_connections(self, now=None):
        try:
            connections = get_connections(self.wg, self.storage, now=now)
        except WireGuardError as e:
            return _fail(WIREGUARD_ERROR, f"Error getting WireGuard connections: {e}")
        except UnknownPeerError as e:
            return _fail(CONNECTION_ERROR, str(e))
        return {
            "ok": True,
            "connections": {uid: [c.to_dict() for c in conns] for uid, conns in connections.items()},
        }

    def status(self):
        return {
            "interface": self.wg.interface,
            "port": self.wg.listen_port,
            "network": str(self.client_ip_range),
            "server_ip": str(self.ip_addr),
            "public_key": str(self.public_key),
            "user_count": self.storage.user_count(),
            "config_count": self.storage.client_count(),
        }
