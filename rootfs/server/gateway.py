import logging
from datetime import datetime, timezone

logging.basicConfig(level=logging.INFO, format="%(name)s: %(message)s", force=True)
logging.getLogger("wgdaemon").setLevel(logging.INFO)
logging.getLogger("werkzeug").setLevel(logging.WARNING)

from flask import Flask, jsonify, request

import wg_server
from wgdaemon_core.config import WG_LISTEN_ADDRESS

app = Flask(__name__)

_server = None

_STATUS_CODES = {
    wg_server.EXHAUSTED: 507,
    wg_server.USER_ALREADY_ENABLED: 409,
    wg_server.USER_ALREADY_DISABLED: 409,
    wg_server.PUBLIC_KEY_IN_USE: 409,
    wg_server.CONFIG_NOT_FOUND: 404,
    wg_server.INVALID_PUBLIC_KEY: 400,
    wg_server.MISSING_POST_PARAMETER: 400,
    wg_server.USER_ID_NOT_SUPPLIED: 400,
    wg_server.INVALID_PARAMETER: 400,
    wg_server.PARTIAL_RECONCILIATION: 500,
    wg_server.WIREGUARD_ERROR: 500,
    wg_server.STORAGE_ERROR: 500,
    wg_server.CONNECTION_ERROR: 500,
}


def init_app(server):
    global _server
    _server = server
    return app


def _param(key, default=""):
    data = request.get_json(silent=True)
    value = data.get(key) if isinstance(data, dict) else None
    if value is None:
        value = request.values.get(key, default)
    return value.strip() if isinstance(value, str) else value


def _reply(result, ok_code=200):
    if result.get("ok"):
        body = {k: v for k, v in result.items() if k != "ok"}
        return jsonify(body), ok_code
    body = {"errorType": result["error_type"], "errorDescription": result["error"]}
    for extra in ("ip", "applied", "rejected_keys"):
        if extra in result:
            body[extra] = result[extra]
    return jsonify(body), _STATUS_CODES.get(result["error_type"], 500)


@app.route("/api/health")
def health():
    return jsonify(status="ok", ts=datetime.now(timezone.utc).isoformat())


@app.route("/api/status")
def status():
    return jsonify(_server.status())


@app.route("/configs", methods=["GET"])
def configs():
    result = _server.list_configs(_param("user_id"))
    if not result.get("ok"):
        return _reply(result)
    return jsonify(result["configs"])


@app.route("/create_config", methods=["POST"])
def create_config():
    return _reply(_server.create_config(
        _param("user_id"), _param("public_key"), _param("name"), info=_param("info"),
    ))


@app.route("/create_config_and_key_pair", methods=["POST"])
def create_config_and_key_pair():
    return _reply(_server.create_config_with_generated_key_pair(
        _param("user_id"), _param("name"), info=_param("info"),
    ))


@app.route("/edit_config", methods=["POST"])
def edit_config():
    return _reply(_server.edit_config(
        _param("user_id"), _param("public_key"), name=_param("name", None), info=_param("info", None),
    ))


@app.route("/delete_config", methods=["POST"])
def delete_config():
    return _reply(_server.delete_config(_param("user_id"), _param("public_key")))


@app.route("/enable_user", methods=["POST"])
def enable_user():
    return _reply(_server.enable_user(_param("user_id")))


@app.route("/disable_user", methods=["POST"])
def disable_user():
    return _reply(_server.disable_user(_param("user_id")))


@app.route("/client_connections", methods=["GET"])
def client_connections():
    result = _server.list_connections()
    if not result.get("ok"):
        return _reply(result)
    return jsonify(result["connections"])


def split_listen_address(listen_address):
    host, _, port = listen_address.rpartition(":")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host or "0.0.0.0", int(port)


def run(server, listen_address=WG_LISTEN_ADDRESS):
    host, port = split_listen_address(listen_address)
    init_app(server)
    app.run(host=host, port=port)
