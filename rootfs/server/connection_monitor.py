import logging
from dataclasses import dataclass, field

_log = logging.getLogger("wgdaemon.connections")


class UnknownPeerError(LookupError):
    def __init__(self, public_key):
        super().__init__(f"no user found for public key {public_key}")
        self.public_key = public_key


@dataclass
class Connection:
    public_key: object
    name: str
    allowed_ips: list = field(default_factory=list)

    def to_dict(self):
        return {
            "publicKey": str(self.public_key),
            "name": self.name,
            "allowedIPs": list(self.allowed_ips),
        }


def get_connections(wg, storage, now=None):
    """Map user id -> recently connected clients.

    A live peer that no stored user owns means the kernel and storage have
    drifted apart, which is reported instead of skipped.
    """
    result = {}
    for peer in wg.get_connections(now=now):
        try:
            user_id, config = storage.get_username_and_config(peer.public_key)
        except KeyError:
            _log.error("live peer %s has no owner in storage", peer.public_key)
            raise UnknownPeerError(peer.public_key)
        result.setdefault(user_id, []).append(
            Connection(public_key=peer.public_key, name=config.name, allowed_ips=list(peer.allowed_ips))
        )
    return result
