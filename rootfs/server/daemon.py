import argparse
import logging
import os
import sys

import gateway
from peer_store import FileStorage, StorageError
from wg_manager import WGManager
from wg_server import PARTIAL_RECONCILIATION, Server
from wgdaemon_core.config import (
    WG_DEFAULT_NETWORK, WG_DEFAULT_PORT, WG_INTERFACE, WG_LISTEN_ADDRESS, WG_STORAGE_FILE,
)

_log = logging.getLogger("wgdaemon.daemon")


def build_parser():
    parser = argparse.ArgumentParser(prog="wgdaemon")
    parser.add_argument("--init", action="store_true", help="Create the storage file and exit.")
    parser.add_argument("--storage-file", default=os.environ.get("WG_STORAGE_FILE", WG_STORAGE_FILE),
                        help="File used for storing data")
    parser.add_argument("--listen-address", default=os.environ.get("WG_LISTEN_ADDRESS", WG_LISTEN_ADDRESS),
                        help="Address to listen on")
    parser.add_argument("--wg-interface", default=os.environ.get("WG_INTERFACE", WG_INTERFACE),
                        help="WireGuard network interface name")
    parser.add_argument("--wg-port", type=int, default=int(os.environ.get("WG_PORT", WG_DEFAULT_PORT)))
    parser.add_argument("--network", default=os.environ.get("WG_NETWORK", WG_DEFAULT_NETWORK),
                        help="Server address and client pool, e.g. 10.0.0.1/8")
    return parser


def init_storage(path, wg):
    storage = FileStorage.create(path, wg.generate_private_key())
    _log.info("server public key: %s", storage.server_public_key)
    return storage


def build_server(args, runner=None):
    wg = WGManager(args.wg_interface, args.wg_port, runner=runner)
    storage = FileStorage.load(args.storage_file)
    return Server(storage, wg, network=args.network)


def main(argv=None):
    args = build_parser().parse_args(argv)
    if args.init:
        try:
            init_storage(args.storage_file, WGManager(args.wg_interface, args.wg_port))
        except FileExistsError as e:
            _log.error("Error creating file for storage: %s", e)
            return 1
        return 0

    try:
        server = build_server(args)
    except StorageError as e:
        _log.error("Error reading stored data. If you have not created a storage file yet, "
                   "create one using --init. Error: %s", e)
        return 1

    result = server.configure_wg()
    if not result["ok"]:
        _log.error("initial WireGuard configuration failed: %s", result["error"])
        if result["error_type"] != PARTIAL_RECONCILIATION:
            return 1

    gateway.run(server, args.listen_address)
    return 0


if __name__ == "__main__":
    sys.exit(main())
