WG_INTERFACE = "wg0"
WG_DEFAULT_PORT = 51820
WG_DEFAULT_NETWORK = "10.0.0.1/8"
WG_STORAGE_FILE = "./conf.json"
WG_LISTEN_ADDRESS = ":8080"
WG_CMD_TIMEOUT = 15

# wireguard drops data-plane traffic once a handshake is this old
REJECT_AFTER_TIME = 180

STORAGE_FILE_MODE = 0o600
