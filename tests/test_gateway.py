import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

from wg_fakes import SERVER_PRIV, FakeRunner, dump_line, key, make_dump

import gateway
from peer_store import FileStorage
from wg_manager import WGManager
from wg_server import Server

PETER = "Peter @ /K.org"


class GatewayEnv:
    def __init__(self, tmp, dump=""):
        self.runner = FakeRunner(dump)
        self.storage = FileStorage.create(Path(tmp) / "conf.json", SERVER_PRIV)
        self.server = Server(self.storage, WGManager("wg0", 51820, runner=self.runner))
        app = gateway.init_app(self.server)
        app.config["TESTING"] = True
        self.client = app.test_client()


def test_health():
    with tempfile.TemporaryDirectory() as tmp:
        resp = GatewayEnv(tmp).client.get("/api/health")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["status"] == "ok"
    assert "ts" in data


def test_status():
    with tempfile.TemporaryDirectory() as tmp:
        resp = GatewayEnv(tmp).client.get("/api/status")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["interface"] == "wg0"
    assert data["public_key"] == str(SERVER_PRIV.public_key())


def test_create_config_form():
    with tempfile.TemporaryDirectory() as tmp:
        env = GatewayEnv(tmp)
        resp = env.client.post("/create_config", data={
            "user_id": PETER, "public_key": str(key(1)), "name": "Phone",
        })
        assert resp.status_code == 200
        assert resp.get_json() == {"ip": "10.0.0.2", "serverPublicKey": str(SERVER_PRIV.public_key())}


def test_create_config_json():
    with tempfile.TemporaryDirectory() as tmp:
        env = GatewayEnv(tmp)
        resp = env.client.post("/create_config", json={
            "user_id": PETER, "public_key": str(key(1)), "name": "Phone",
        })
        assert resp.status_code == 200
        assert resp.get_json()["ip"] == "10.0.0.2"


def test_create_config_invalid_key():
    with tempfile.TemporaryDirectory() as tmp:
        resp = GatewayEnv(tmp).client.post("/create_config", data={
            "user_id": PETER, "public_key": "bogus", "name": "Phone",
        })
    assert resp.status_code == 400
    assert resp.get_json()["errorType"] == "invalid_public_key"


def test_missing_user_id():
    with tempfile.TemporaryDirectory() as tmp:
        resp = GatewayEnv(tmp).client.get("/configs")
    assert resp.status_code == 400
    assert resp.get_json()["errorType"] == "user_id_not_supplied"


def test_create_config_and_key_pair():
    with tempfile.TemporaryDirectory() as tmp:
        env = GatewayEnv(tmp)
        resp = env.client.post("/create_config_and_key_pair", data={"user_id": PETER, "name": "Laptop"})
        assert resp.status_code == 200
        data = resp.get_json()
        assert set(data) == {"clientPrivateKey", "ip", "serverPublicKey"}
        configs = env.client.get("/configs", query_string={"user_id": PETER}).get_json()
        assert len(configs) == 1
        assert list(configs.values())[0]["name"] == "Laptop"


def test_get_configs():
    with tempfile.TemporaryDirectory() as tmp:
        env = GatewayEnv(tmp)
        env.server.create_config(PETER, str(key(1)), "Phone")
        resp = env.client.get("/configs", query_string={"user_id": PETER})
        assert resp.status_code == 200
        data = resp.get_json()
        assert data[str(key(1))]["ip"] == "10.0.0.2"
        assert data[str(key(1))]["modified"].endswith("Z")


def test_delete_config():
    with tempfile.TemporaryDirectory() as tmp:
        env = GatewayEnv(tmp)
        env.server.create_config(PETER, str(key(1)), "Phone")
        resp = env.client.post("/delete_config", data={"user_id": PETER, "public_key": str(key(1))})
        assert resp.status_code == 200
        resp = env.client.post("/delete_config", data={"user_id": PETER, "public_key": str(key(1))})
        assert resp.status_code == 404
        assert resp.get_json()["errorType"] == "config_not_found"


def test_edit_config():
    with tempfile.TemporaryDirectory() as tmp:
        env = GatewayEnv(tmp)
        env.server.create_config(PETER, str(key(1)), "Phone")
        resp = env.client.post("/edit_config", data={
            "user_id": PETER, "public_key": str(key(1)), "name": "Tablet",
        })
        assert resp.status_code == 200
        assert resp.get_json()["config"]["name"] == "Tablet"


def test_enable_disable_user():
    with tempfile.TemporaryDirectory() as tmp:
        env = GatewayEnv(tmp)
        assert env.client.post("/enable_user", data={"user_id": PETER}).status_code == 409
        assert env.client.post("/disable_user", data={"user_id": PETER}).status_code == 200
        resp = env.client.post("/disable_user", data={"user_id": PETER})
        assert resp.status_code == 409
        assert resp.get_json()["errorType"] == "user_already_disabled"
        assert env.client.post("/enable_user", data={"user_id": PETER}).status_code == 200


def test_pool_exhausted_status():
    with tempfile.TemporaryDirectory() as tmp:
        env = GatewayEnv(tmp)
        env.server = Server(env.storage, env.server.wg, network="10.0.0.1/30")
        gateway.init_app(env.server)
        codes = [
            env.client.post("/create_config", data={
                "user_id": PETER, "public_key": str(key(n)), "name": "c",
            }).status_code
            for n in (1, 2, 3)
        ]
    assert codes == [200, 200, 507]


def test_kernel_failure_status():
    with tempfile.TemporaryDirectory() as tmp:
        env = GatewayEnv(tmp)
        env.runner.error = "No such device"
        resp = env.client.post("/create_config", data={
            "user_id": PETER, "public_key": str(key(1)), "name": "Phone",
        })
    assert resp.status_code == 500
    data = resp.get_json()
    assert data["errorType"] == "wireguard_error"
    assert data["ip"] == "10.0.0.2"


def test_client_connections():
    now = datetime.now(timezone.utc)
    dump = make_dump([
        dump_line(key(1), "10.0.0.2/32", now - timedelta(seconds=20)),
        dump_line(key(2), "10.0.0.3/32", now - timedelta(hours=1)),
    ])
    with tempfile.TemporaryDirectory() as tmp:
        env = GatewayEnv(tmp, dump=dump)
        env.server.create_config(PETER, str(key(1)), "Phone")
        env.server.create_config("Arthur", str(key(2)), "Notebook")
        resp = env.client.get("/client_connections")
    assert resp.status_code == 200
    assert resp.get_json() == {
        PETER: [{"publicKey": str(key(1)), "name": "Phone", "allowedIPs": ["10.0.0.2/32"]}],
    }


def test_client_connections_unknown_peer():
    now = datetime.now(timezone.utc)
    dump = make_dump([dump_line(key(7), "10.0.0.8/32", now - timedelta(seconds=20))])
    with tempfile.TemporaryDirectory() as tmp:
        resp = GatewayEnv(tmp, dump=dump).client.get("/client_connections")
    assert resp.status_code == 500
    assert resp.get_json()["errorType"] == "connection_error"


def test_method_not_allowed():
    with tempfile.TemporaryDirectory() as tmp:
        env = GatewayEnv(tmp)
        assert env.client.get("/create_config").status_code == 405
        assert env.client.post("/configs").status_code == 405
        assert env.client.get("/nope").status_code == 404


def test_non_string_user_id_rejected():
    with tempfile.TemporaryDirectory() as tmp:
        env = GatewayEnv(tmp)
        for user_id in (5, ["a"]):
            resp = env.client.post("/create_config", json={
                "user_id": user_id, "public_key": str(key(1)), "name": "Phone",
            })
            assert resp.status_code == 400
            assert resp.get_json()["errorType"] == "invalid_parameter"
        resp = env.client.post("/create_config", json={
            "user_id": PETER, "public_key": str(key(1)), "name": 12,
        })
        assert resp.status_code == 400
        assert env.storage.user_count() == 0
        assert env.client.get("/configs", query_string={"user_id": "5"}).get_json() == {}


def test_edit_config_clears_note_only_when_sent():
    with tempfile.TemporaryDirectory() as tmp:
        env = GatewayEnv(tmp)
        env.server.create_config(PETER, str(key(1)), "Phone", info="kitchen")
        resp = env.client.post("/edit_config", data={
            "user_id": PETER, "public_key": str(key(1)), "name": "Tablet",
        })
        assert resp.get_json()["config"]["info"] == "kitchen"
        resp = env.client.post("/edit_config", json={
            "user_id": PETER, "public_key": str(key(1)), "info": "",
        })
        assert resp.get_json()["config"] == {
            "name": "Tablet", "ip": "10.0.0.2", "info": "",
            "modified": resp.get_json()["config"]["modified"],
        }


def test_client_connections_interface_without_key():
    with tempfile.TemporaryDirectory() as tmp:
        resp = GatewayEnv(tmp, dump="(none)\t(none)\t51820\toff\n").client.get("/client_connections")
    assert resp.status_code == 200
    assert resp.get_json() == {}


def test_client_connections_garbled_dump():
    dump = make_dump(["garbled\t(none)\t(none)\t10.0.0.2/32\t0\t0\t0\toff"])
    with tempfile.TemporaryDirectory() as tmp:
        resp = GatewayEnv(tmp, dump=dump).client.get("/client_connections")
    assert resp.status_code == 500
    assert resp.get_json()["errorType"] == "wireguard_error"


def test_split_listen_address():
    assert gateway.split_listen_address(":8080") == ("0.0.0.0", 8080)
    assert gateway.split_listen_address("127.0.0.1:9000") == ("127.0.0.1", 9000)
    assert gateway.split_listen_address("[::]:8080") == ("::", 8080)
    assert gateway.split_listen_address("[fd00::1]:51821") == ("fd00::1", 51821)
