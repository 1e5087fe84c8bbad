import socketserver
import threading

import pytest

from XT_Harness.codec import (
    ERR_INVALID_PARAMS,
    ERR_NOT_AUTHENTICATED,
    decode_message,
    encode_error,
    encode_result,
    recv_frame,
    send_frame,
)
from XT_Harness.control import ControlSession, parse_endpoint
from XT_Harness.errors import AuthError, ControlConnectionError, ProtocolError, RemoteCallError


class _Handler(socketserver.BaseRequestHandler):
    def handle(self):
        state = {"authenticated": False}
        while True:
            try:
                request = decode_message(recv_frame(self.request))
            except ControlConnectionError:
                return
            self.server.seen.append(request["method"])
            send_frame(self.request, self.server.respond(state, request))


class ScriptedNode(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, respond):
        super().__init__(("127.0.0.1", 0), _Handler)
        self.respond = respond
        self.seen = []
        self._thread = threading.Thread(target=self.serve_forever, daemon=True)

    @property
    def endpoint(self) -> str:
        return f"127.0.0.1:{self.server_address[1]}"

    def __enter__(self):
        self._thread.start()
        return self

    def __exit__(self, *exc):
        self.shutdown()
        self.server_close()


def wallet_node(state, request):
    method, params, rid = request["method"], request["params"], request["id"]
    if method == "login":
        state["authenticated"] = params == ["test", "test"]
        return encode_result(rid, state["authenticated"])
    if not state["authenticated"]:
        return encode_error(rid, ERR_NOT_AUTHENTICATED, "login required")
    if method == "getbalance":
        return encode_result(rid, 100000000)
    if method == "listrecvaddresses":
        return encode_result(rid, {"0xaaa": "address_test_account"})
    if method == "walletpassphrase":
        return encode_result(rid, params[0] == "testtest")
    if method == "importprivatekey":
        return encode_error(rid, ERR_INVALID_PARAMS, "bad key")
    if method == "getnewaddress":
        return encode_result(rid, True)
    return encode_result(rid, None)


def test_parse_endpoint():
    assert parse_endpoint("127.0.0.1:20100") == ("127.0.0.1", 20100)
    with pytest.raises(ValueError):
        parse_endpoint("127.0.0.1")


def test_login_then_wallet_operations():
    with ScriptedNode(wallet_node) as node, ControlSession("client_000") as session:
        session.connect(node.endpoint)
        assert session.login("test", "test") is True
        assert session.authenticated
        assert session.get_balance(0) == 100000000
        assert session.list_receive_addresses() == {"0xaaa": "address_test_account"}
        assert session.unlock_wallet("wrong") is False
        assert session.unlock_wallet("testtest") is True
        session.transfer(1000000, "0xbbb")
        assert node.seen[-1] == "transfer"


def test_rejected_login_returns_false_and_blocks_privileged_calls():
    with ScriptedNode(wallet_node) as node, ControlSession("client_000") as session:
        session.connect(node.endpoint)
        assert session.login("test", "nope") is False
        with pytest.raises(AuthError):
            session.get_balance(0)
        # refused locally, nothing reached the node
        assert node.seen == ["login"]


def test_node_side_auth_error_maps_to_auth_error():
    with ScriptedNode(wallet_node) as node, ControlSession("client_000") as session:
        session.connect(node.endpoint)
        with pytest.raises(AuthError):
            session.call("getbalance", 0)
        assert not session.authenticated


def test_remote_error_carries_code_and_method():
    with ScriptedNode(wallet_node) as node, ControlSession("client_000") as session:
        session.connect(node.endpoint)
        session.login("test", "test")
        with pytest.raises(RemoteCallError) as info:
            session.import_private_key("zz")
        assert info.value.code == ERR_INVALID_PARAMS
        assert info.value.method == "importprivatekey"


def test_wrong_result_type_is_protocol_error():
    with ScriptedNode(wallet_node) as node, ControlSession("client_000") as session:
        session.connect(node.endpoint)
        session.login("test", "test")
        with pytest.raises(ProtocolError):
            session.get_new_address("circle_test")


def test_bool_is_not_a_balance():
    def node_fn(state, request):
        return encode_result(request["id"], True)

    with ScriptedNode(node_fn) as node, ControlSession("client_000") as session:
        session.connect(node.endpoint)
        session.login("test", "test")
        with pytest.raises(ProtocolError):
            session.get_balance(0)


def test_connect_to_closed_port_fails():
    with ScriptedNode(wallet_node) as node:
        endpoint = node.endpoint
    session = ControlSession("client_009", connect_timeout=1.0)
    with pytest.raises(ControlConnectionError):
        session.connect(endpoint)
    with pytest.raises(ControlConnectionError):
        session.call("getbalance", 0)


def test_slow_node_times_out():
    release = threading.Event()

    def node_fn(state, request):
        release.wait(5)
        return encode_result(request["id"], True)

    with ScriptedNode(node_fn) as node:
        session = ControlSession("client_000", request_timeout=0.3)
        session.connect(node.endpoint)
        try:
            with pytest.raises(ControlConnectionError):
                session.login("test", "test")
        finally:
            release.set()
            session.close()


def test_non_integer_error_code_is_protocol_error():
    def node_fn(state, request):
        if request["method"] == "login":
            return encode_result(request["id"], True)
        return encode_error(request["id"], "oops", "broken")

    with ScriptedNode(node_fn) as node, ControlSession("client_000") as session:
        session.connect(node.endpoint)
        session.login("test", "test")
        with pytest.raises(ProtocolError) as info:
            session.get_balance(0)
        assert not isinstance(info.value, RemoteCallError)
