import socket

LEDGER_RECORD = "http://127.0.0.1:14143/,0xAAA,0xBBB,0xCCC"
REWARDS_ADDRESS = "0x" + "ab" * 20


def free_port(kind: int = socket.SOCK_STREAM) -> int:
    with socket.socket(socket.AF_INET, kind) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def local_loopback():
    return {"127.0.0.1", "::1"}
