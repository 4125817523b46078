import ipaddress


def interface_address(cidr):
    """Split '10.0.0.1/8' into the server address and its client pool."""
    iface = ipaddress.ip_interface(cidr)
    return iface.ip, iface.network


def _increment(raw):
    for i in range(len(raw) - 1, -1, -1):
        raw[i] = (raw[i] + 1) & 0xFF
        if raw[i]:
            return True
    return False


def allocate(net, excluded):
    """Return the lowest free address of net in increment order, or None.

    The walk always restarts at the network base, so an address freed by a
    delete is handed out again by the next allocation. The base itself is
    never returned.
    """
    excluded = {ipaddress.ip_address(ip) for ip in excluded}
    raw = bytearray(net.network_address.packed)
    while _increment(raw):
        candidate = ipaddress.ip_address(bytes(raw))
        if candidate not in net:
            break
        if candidate not in excluded:
            return candidate
    return None


def pool_size(net):
    return net.num_addresses
