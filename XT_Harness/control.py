from __future__ import annotations

import itertools
import socket
import threading
from typing import Any, Dict, Optional, Tuple

from XT_Harness.codec import (
    ERR_NOT_AUTHENTICATED,
    decode_message,
    encode_request,
    parse_response,
    recv_frame,
    send_frame,
)
from XT_Harness.errors import AuthError, ControlConnectionError, ProtocolError, RemoteCallError


def parse_endpoint(endpoint: str) -> Tuple[str, int]:
    host, port_s = endpoint.rsplit(":", 1)
    return host.strip(), int(port_s)


def _expect(method: str, value: Any, kind: type) -> Any:
    # bool is an int subclass; never accept it where an amount is expected
    if kind is int and isinstance(value, bool):
        raise ProtocolError(f"{method} returned bool, expected int")
    if not isinstance(value, kind):
        raise ProtocolError(f"{method} returned {type(value).__name__}, expected {kind.__name__}")
    return value


class ControlSession:
    """Authenticated control-protocol client bound to a single node."""

    def __init__(self, name: str, connect_timeout: float = 5.0, request_timeout: float = 30.0):
        self.name = name
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout
        self.endpoint: Optional[str] = None
        self.authenticated = False
        self._sock: Optional[socket.socket] = None
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    @property
    def connected(self) -> bool:
        return self._sock is not None

    def connect(self, endpoint: str) -> None:
        host, port = parse_endpoint(endpoint)
        try:
            sock = socket.create_connection((host, port), timeout=self.connect_timeout)
        except OSError as exc:
            raise ControlConnectionError(f"{self.name}: cannot connect to {endpoint}: {exc}") from exc
        sock.settimeout(self.request_timeout)
        self._sock = sock
        self.endpoint = endpoint
        self.authenticated = False

    def close(self) -> None:
        if self._sock is not None:
            try:
                self._sock.close()
            finally:
                self._sock = None
                self.authenticated = False

    def __enter__(self) -> "ControlSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def call(self, method: str, *params: Any) -> Any:
        if self._sock is None:
            raise ControlConnectionError(f"{self.name}: session not connected")
        with self._lock:
            request_id = next(self._ids)
            send_frame(self._sock, encode_request(method, list(params), request_id))
            doc = parse_response(decode_message(recv_frame(self._sock)), request_id)
        if "error" in doc:
            err = doc["error"]
            if err["code"] == ERR_NOT_AUTHENTICATED:
                self.authenticated = False
                raise AuthError(f"{self.name}: {method} rejected: {err.get('message', 'not authenticated')}")
            raise RemoteCallError(method, err["code"], err.get("message", ""))
        return doc["result"]

    def _privileged(self, method: str, *params: Any) -> Any:
        if not self.authenticated:
            raise AuthError(f"{self.name}: {method} requires login")
        return self.call(method, *params)

    def login(self, user: str, password: str) -> bool:
        ok = _expect("login", self.call("login", user, password), bool)
        self.authenticated = ok
        return ok

    def get_balance(self, min_confirmations: int = 0) -> int:
        return _expect("getbalance", self._privileged("getbalance", min_confirmations), int)

    def get_new_address(self, account_label: str) -> str:
        return _expect("getnewaddress", self._privileged("getnewaddress", account_label), str)

    def list_receive_addresses(self) -> Dict[str, str]:
        result = _expect("listrecvaddresses", self._privileged("listrecvaddresses"), dict)
        return {str(addr): str(label) for addr, label in result.items()}

    def unlock_wallet(self, passphrase: str) -> bool:
        return _expect("walletpassphrase", self._privileged("walletpassphrase", passphrase), bool)

    def import_private_key(self, secret: str) -> None:
        self._privileged("importprivatekey", secret)

    def rescan(self, from_block_height: int = 0) -> None:
        self._privileged("rescan", from_block_height)

    def transfer(self, amount: int, destination_address: str) -> None:
        self._privileged("transfer", amount, destination_address)

