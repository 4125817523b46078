import ipaddress
import logging
import subprocess
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from wgdaemon_core.config import REJECT_AFTER_TIME, WG_CMD_TIMEOUT
from wg_keys import KeyParseError, PrivateKey, PublicKey

_log = logging.getLogger("wgdaemon.wg")


class WireGuardError(RuntimeError):
    pass


@dataclass
class PublicKeyParseError:
    public_key: str
    reason: str

    def __str__(self):
        return f"could not parse public key '{self.public_key}': {self.reason}"


@dataclass
class ReconcileResult:
    applied: int = 0
    errors: list = field(default_factory=list)

    @property
    def ok(self):
        return not self.errors

    @property
    def rejected_keys(self):
        return [e.public_key for e in self.errors]

    def message(self):
        if self.ok:
            return f"configured {self.applied} peers"
        return (f"configured {self.applied} peers, skipped {len(self.errors)}: "
                + "; ".join(str(e) for e in self.errors))


@dataclass
class Peer:
    public_key: object
    ip: object
    remove: bool = False


@dataclass
class DevicePeer:
    public_key: PublicKey
    allowed_ips: list
    last_handshake: datetime = None
    endpoint: str = None
    rx: int = 0
    tx: int = 0


@dataclass
class Device:
    public_key: PublicKey  # None while the interface has no private key
    listen_port: int
    peers: list = field(default_factory=list)


def _run(cmd, input=None, timeout=WG_CMD_TIMEOUT):
    try:
        r = subprocess.run(
            cmd, input=input, capture_output=True, text=True,
            timeout=timeout, check=True,
        )
        return r.stdout
    except subprocess.CalledProcessError as e:
        raise WireGuardError(f"Command failed: {' '.join(cmd)}: {(e.stderr or '').strip() or e}")
    except subprocess.TimeoutExpired:
        raise WireGuardError(f"Command timed out: {' '.join(cmd)}")
    except FileNotFoundError:
        raise WireGuardError(f"Command not found: {cmd[0]}")


def host_network(ip):
    ip = ipaddress.ip_address(ip)
    return ipaddress.ip_network(f"{ip}/{ip.max_prefixlen}")


def client_to_peer(public_key, config):
    return Peer(public_key=str(public_key), ip=config.ip)


def _parse_peers(peers):
    parsed = []
    errors = []
    for p in peers:
        text = str(p.public_key)
        try:
            key = p.public_key if isinstance(p.public_key, PublicKey) else PublicKey.parse(text)
        except KeyParseError as e:
            errors.append(PublicKeyParseError(text, str(e)))
            continue
        parsed.append((key, host_network(p.ip) if p.ip is not None else None, p.remove))
    return parsed, errors


def _parse_handshake(value):
    ts = int(value)
    if ts == 0:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def _parse_allowed_ips(value):
    if value in ("", "(none)"):
        return []
    return [s.strip() for s in value.split(",") if s.strip()]


def _parse_interface_key(value):
    # wg prints (none) until the interface has a private key
    if value == "(none)":
        return None
    return PublicKey.parse(value)


def parse_dump(out):
    lines = [l for l in out.splitlines() if l.strip()]
    if not lines:
        raise WireGuardError("empty output from wg show dump")
    head = lines[0].split("\t")
    if len(head) < 3:
        raise WireGuardError(f"unexpected interface line in wg dump: {len(head)} fields")
    try:
        device = Device(public_key=_parse_interface_key(head[1]), listen_port=int(head[2]))
        for line in lines[1:]:
            parts = line.split("\t")
            if len(parts) < 8:
                _log.warning("skipping malformed peer line in wg dump (%d fields)", len(parts))
                continue
            device.peers.append(DevicePeer(
                public_key=PublicKey.parse(parts[0]),
                endpoint=None if parts[2] == "(none)" else parts[2],
                allowed_ips=_parse_allowed_ips(parts[3]),
                last_handshake=_parse_handshake(parts[4]),
                rx=int(parts[5]),
                tx=int(parts[6]),
            ))
    except ValueError as e:
        raise WireGuardError(f"unparsable wg show dump: {e}") from e
    return device


def is_recent(peer, now, window=REJECT_AFTER_TIME):
    if peer.last_handshake is None:
        return False
    return now - peer.last_handshake < timedelta(seconds=window)


class WGManager:
    """Pushes peer tables to a kernel WireGuard interface through wg(8)."""

    def __init__(self, interface, listen_port, runner=None):
        self.interface = interface
        self.listen_port = listen_port
        self._run = runner or _run

    def generate_private_key(self):
        return PrivateKey.generate()

    def _render_config(self, private_key, parsed):
        lines = [
            "[Interface]",
            f"PrivateKey = {private_key}",
            f"ListenPort = {self.listen_port}",
        ]
        for key, allowed, _ in parsed:
            lines += ["", "[Peer]", f"PublicKey = {key}"]
            if allowed is not None:
                lines.append(f"AllowedIPs = {allowed}")
        return "\n".join(lines) + "\n"

    def _identity_args(self):
        return ["wg", "set", self.interface,
                "private-key", "/dev/stdin",
                "listen-port", str(self.listen_port)]

    def configure_wg(self, private_key, peers):
        """Replace the whole peer table of the interface with peers."""
        parsed, errors = _parse_peers(peers)
        parsed = [p for p in parsed if not p[2]]
        self._run(
            ["wg", "setconf", self.interface, "/dev/stdin"],
            input=self._render_config(private_key, parsed),
        )
        _log.info("%s: replaced peer table with %d peers", self.interface, len(parsed))
        for e in errors:
            _log.warning("%s: %s", self.interface, e)
        return ReconcileResult(applied=len(parsed), errors=errors)

    def _set_peers(self, private_key, peers):
        parsed, errors = _parse_peers(peers)
        for e in errors:
            _log.warning("%s: %s", self.interface, e)
        if not parsed:
            return ReconcileResult(applied=0, errors=errors)
        cmd = self._identity_args()
        for key, allowed, remove in parsed:
            cmd += ["peer", str(key)]
            if remove:
                cmd.append("remove")
            elif allowed is not None:
                cmd += ["allowed-ips", str(allowed)]
        self._run(cmd, input=f"{private_key}\n")
        return ReconcileResult(applied=len(parsed), errors=errors)

    def add_peers(self, private_key, peers):
        result = self._set_peers(private_key, [Peer(p.public_key, p.ip) for p in peers])
        _log.info("%s: added %d peers", self.interface, result.applied)
        return result

    def remove_peers(self, private_key, public_keys):
        result = self._set_peers(private_key, [Peer(pk, None, remove=True) for pk in public_keys])
        _log.info("%s: removed %d peers", self.interface, result.applied)
        return result

    def get_device(self):
        return parse_dump(self._run(["wg", "show", self.interface, "dump"]))

    def get_connections(self, now=None):
        """Peers with a handshake inside the reject-after window.

        Past that window the kernel drops the peer's traffic until it
        handshakes again, so it counts as disconnected.
        """
        now = now or datetime.now(timezone.utc)
        return [p for p in self.get_device().peers if is_recent(p, now)]
