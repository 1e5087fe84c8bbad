import json
import socket
import struct
from typing import Any, Dict, List, Optional

from XT_Harness.errors import ControlConnectionError, ProtocolError

FRAME_HEADER = struct.Struct("!I")
MAX_FRAME_BYTES = 16 * 1024 * 1024

JSONRPC_VERSION = "2.0"

ERR_NOT_AUTHENTICATED = -32001
ERR_PARSE = -32700
ERR_INVALID_REQUEST = -32600
ERR_METHOD_NOT_FOUND = -32601
ERR_INVALID_PARAMS = -32602
ERR_INTERNAL = -32603


def _dumps(doc: Dict[str, Any]) -> bytes:
    return json.dumps(doc, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def encode_request(method: str, params: List[Any], request_id: int) -> bytes:
    return _dumps({"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method, "params": params})


def encode_result(request_id: Any, result: Any) -> bytes:
    return _dumps({"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result})


def encode_error(request_id: Any, code: int, message: str) -> bytes:
    return _dumps({"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": {"code": code, "message": message}})


def decode_message(data: bytes) -> Dict[str, Any]:
    try:
        doc = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolError(f"invalid json frame: {exc}") from exc
    if not isinstance(doc, dict):
        raise ProtocolError("frame is not a json object")
    return doc


def frame(data: bytes) -> bytes:
    if len(data) > MAX_FRAME_BYTES:
        raise ProtocolError(f"frame too large: {len(data)} bytes")
    return FRAME_HEADER.pack(len(data)) + data


def _recv_exactly(sock: socket.socket, size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining:
        try:
            chunk = sock.recv(remaining)
        except socket.timeout as exc:
            raise ControlConnectionError("timed out waiting for response") from exc
        except OSError as exc:
            raise ControlConnectionError(f"receive failed: {exc}") from exc
        if not chunk:
            raise ControlConnectionError("connection closed by peer")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def send_frame(sock: socket.socket, data: bytes) -> None:
    try:
        sock.sendall(frame(data))
    except OSError as exc:
        raise ControlConnectionError(f"send failed: {exc}") from exc


def recv_frame(sock: socket.socket) -> bytes:
    (length,) = FRAME_HEADER.unpack(_recv_exactly(sock, FRAME_HEADER.size))
    if length > MAX_FRAME_BYTES:
        raise ProtocolError(f"frame too large: {length} bytes")
    return _recv_exactly(sock, length)


def parse_response(doc: Dict[str, Any], expected_id: Optional[int]) -> Dict[str, Any]:
    if doc.get("id") != expected_id:
        raise ProtocolError(f"response id {doc.get('id')!r} does not match request id {expected_id!r}")
    if "error" in doc:
        err = doc["error"]
        if not isinstance(err, dict) or "code" not in err:
            raise ProtocolError(f"malformed error object: {err!r}")
        if isinstance(err["code"], bool) or not isinstance(err["code"], int):
            raise ProtocolError(f"error code is not an integer: {err['code']!r}")
        if not isinstance(err.get("message", ""), str):
            raise ProtocolError(f"error message is not a string: {err['message']!r}")
    elif "result" not in doc:
        raise ProtocolError("response carries neither result nor error")
    return doc
