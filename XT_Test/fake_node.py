#!/usr/bin/env python3
"""
Stand-in node program for harness tests.

Two roles share this file:

- ``server``: the ledger. Reads ``genesis.json`` from its working directory,
  accepts transfer submissions and applies them only when a block is produced
  by a caller holding the trustee key.
- ``client``: a participant. Loads the wallet file the harness created,
  serves the control protocol on ``--rpcport`` and forwards balance queries
  and transfers to the ledger. With ``--trustee-private-key`` it also
  produces blocks unless ``--hold-blocks`` is given.

Both speak length-prefixed JSON-RPC frames (see ``XT_Harness.codec``).
"""

import argparse
import asyncio
import json
import sys
import time
from typing import Any, Dict, List, Optional

from XT_Harness.codec import (
    ERR_INVALID_PARAMS,
    ERR_METHOD_NOT_FOUND,
    ERR_NOT_AUTHENTICATED,
    FRAME_HEADER,
    ProtocolError,
    decode_message,
    encode_error,
    encode_request,
    encode_result,
)
from XT_Harness.crypto import address_from_public_key, keypair_from_secret, sign_message, verify_message
from XT_Harness.genesis import GENESIS_FILENAME, load_genesis
from XT_Harness.wallet_store import KIND_IMPORTED, KIND_RECEIVE, WalletStore

DEFAULT_LEDGER_PORT = 4569
ERR_WALLET_LOCKED = -32002
ERR_INSUFFICIENT_FUNDS = -32010
BLOCK_INTERVAL = 0.2


class RpcFailure(Exception):
    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def log(*parts: Any) -> None:
    print(time.strftime("%H:%M:%S"), *parts, flush=True)


async def read_frame(reader: asyncio.StreamReader) -> bytes:
    header = await reader.readexactly(FRAME_HEADER.size)
    (length,) = FRAME_HEADER.unpack(header)
    return await reader.readexactly(length)


async def write_frame(writer: asyncio.StreamWriter, data: bytes) -> None:
    writer.write(FRAME_HEADER.pack(len(data)) + data)
    await writer.drain()


async def serve_connection(reader, writer, dispatch) -> None:
    conn: Dict[str, Any] = {"authenticated": False}
    try:
        while True:
            raw = await read_frame(reader)
            try:
                request = decode_message(raw)
            except ProtocolError as exc:
                await write_frame(writer, encode_error(None, -32700, str(exc)))
                continue
            request_id = request.get("id")
            try:
                result = await dispatch(conn, request.get("method", ""), request.get("params", []))
            except RpcFailure as exc:
                await write_frame(writer, encode_error(request_id, exc.code, exc.message))
                continue
            await write_frame(writer, encode_result(request_id, result))
    except (asyncio.IncompleteReadError, ConnectionResetError):
        pass
    finally:
        writer.close()


class Ledger:
    def __init__(self, trustee_address: str):
        self.trustee_address = trustee_address
        allocation = load_genesis(GENESIS_FILENAME)
        self.balances: Dict[str, int] = dict(allocation.balances)
        self.pending: List[Dict[str, Any]] = []
        self.height = 0
        log("ledger loaded", len(self.balances), "genesis balances, supply", allocation.supply)

    def _available(self, address: str) -> int:
        reserved = sum(p["debits"].get(address, 0) for p in self.pending)
        return self.balances.get(address, 0) - reserved

    async def dispatch(self, conn, method: str, params: List[Any]) -> Any:
        if method == "balances":
            return {addr: self.balances.get(addr, 0) for addr in params[0]}
        if method == "height":
            return self.height
        if method == "submit":
            sources, destination, amount = params
            remaining = int(amount)
            debits: Dict[str, int] = {}
            for addr in sources:
                take = min(self._available(addr), remaining)
                if take > 0:
                    debits[addr] = take
                    remaining -= take
            if remaining > 0:
                raise RpcFailure(ERR_INSUFFICIENT_FUNDS, "insufficient funds")
            self.pending.append({"debits": debits, "destination": destination, "amount": int(amount)})
            log("queued transfer of", amount, "to", destination)
            return True
        if method == "produce_block":
            public_key_pem, height, signature = params
            if address_from_public_key(public_key_pem.encode("utf-8")) != self.trustee_address:
                raise RpcFailure(ERR_NOT_AUTHENTICATED, "not the trustee")
            if not verify_message(public_key_pem.encode("utf-8"), f"block:{height}".encode("utf-8"), signature):
                raise RpcFailure(ERR_NOT_AUTHENTICATED, "bad block signature")
            if height != self.height + 1:
                raise RpcFailure(ERR_INVALID_PARAMS, f"expected height {self.height + 1}")
            for p in self.pending:
                for addr, amount in p["debits"].items():
                    self.balances[addr] -= amount
                self.balances[p["destination"]] = self.balances.get(p["destination"], 0) + p["amount"]
            if self.pending:
                log("block", height, "applied", len(self.pending), "transfers")
            self.pending = []
            self.height = height
            return self.height
        raise RpcFailure(ERR_METHOD_NOT_FOUND, f"unknown method {method}")


class LedgerLink:
    def __init__(self, host: str, port: int, retry_seconds: float = 10.0):
        self.host = host
        self.port = port
        self.retry_seconds = retry_seconds
        self._ids = 0

    async def call(self, method: str, *params: Any) -> Any:
        deadline = time.monotonic() + self.retry_seconds
        while True:
            try:
                reader, writer = await asyncio.open_connection(self.host, self.port)
                break
            except OSError:
                if time.monotonic() > deadline:
                    raise
                await asyncio.sleep(0.1)
        try:
            self._ids += 1
            await write_frame(writer, encode_request(method, list(params), self._ids))
            doc = decode_message(await read_frame(reader))
        finally:
            writer.close()
        if "error" in doc:
            raise RpcFailure(doc["error"]["code"], doc["error"]["message"])
        return doc["result"]


class Participant:
    def __init__(self, args: argparse.Namespace, link: LedgerLink):
        self.args = args
        self.link = link
        self.wallet = WalletStore(args.data_dir)
        if not self.wallet.open_wallet(""):
            raise SystemExit("wallet requires a password")
        self.passphrase: Optional[str] = None
        self.scanned: set = set()

    def _require_unlocked(self) -> str:
        if self.passphrase is None:
            raise RpcFailure(ERR_WALLET_LOCKED, "wallet locked")
        return self.passphrase

    def _tracked(self) -> List[str]:
        receive = self.wallet.addresses(KIND_RECEIVE)
        imported = [a for a in self.wallet.addresses(KIND_IMPORTED) if a in self.scanned]
        return receive + imported

    async def _balance(self) -> int:
        tracked = self._tracked()
        if not tracked:
            return 0
        balances = await self.link.call("balances", tracked)
        return sum(balances.values())

    async def dispatch(self, conn, method: str, params: List[Any]) -> Any:
        if method == "login":
            user, password = params
            conn["authenticated"] = user == self.args.rpcuser and password == self.args.rpcpassword
            return conn["authenticated"]
        if not conn["authenticated"]:
            raise RpcFailure(ERR_NOT_AUTHENTICATED, "login required")

        if method == "getbalance":
            return await self._balance()
        if method == "getnewaddress":
            passphrase = self._require_unlocked()
            return self.wallet.new_receive_address(str(params[0]) if params else "", passphrase)
        if method == "listrecvaddresses":
            return self.wallet.receive_addresses()
        if method == "walletpassphrase":
            if self.wallet.check_passphrase(params[0]):
                self.passphrase = params[0]
                return True
            return False
        if method == "importprivatekey":
            passphrase = self._require_unlocked()
            try:
                keypair = keypair_from_secret(params[0])
            except ValueError as exc:
                raise RpcFailure(ERR_INVALID_PARAMS, str(exc))
            self.wallet.add_key(keypair, passphrase)
            return None
        if method == "rescan":
            self.scanned.update(self.wallet.addresses(KIND_IMPORTED))
            await self.link.call("height")
            return None
        if method == "transfer":
            self._require_unlocked()
            amount, destination = params
            await self.link.call("submit", self._tracked(), destination, amount)
            return None
        raise RpcFailure(ERR_METHOD_NOT_FOUND, f"unknown method {method}")


async def produce_blocks(link: LedgerLink, secret: str) -> None:
    keypair = keypair_from_secret(secret)
    pem = keypair.public_key_pem.decode("utf-8")
    while True:
        try:
            height = await link.call("height") + 1
            await link.call("produce_block", pem, height, sign_message(keypair, f"block:{height}".encode("utf-8")))
        except (OSError, RpcFailure) as exc:
            log("block production failed:", exc)
        await asyncio.sleep(BLOCK_INTERVAL)


def parse_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="fake xt node")
    parser.add_argument("role", choices=["server", "client"])
    parser.add_argument("--data-dir", default=".")
    parser.add_argument("--server", action="store_true")
    parser.add_argument("--rpcuser", default="")
    parser.add_argument("--rpcpassword", default="")
    parser.add_argument("--rpcport", type=int, default=None)
    parser.add_argument("--trustee-address", required=True)
    parser.add_argument("--trustee-private-key", default=None)
    parser.add_argument("--p2p", action="store_true")
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--connect-to", default=None)
    parser.add_argument("--hold-blocks", action="store_true", help="never produce blocks, so transfers stay pending")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> None:
    if args.role == "server":
        ledger = Ledger(args.trustee_address)
        port = args.port or DEFAULT_LEDGER_PORT
        server = await asyncio.start_server(
            lambda r, w: serve_connection(r, w, ledger.dispatch), "127.0.0.1", port
        )
        log("ledger listening on", port)
        async with server:
            await server.serve_forever()

    if args.p2p and args.connect_to:
        host, port_s = args.connect_to.rsplit(":", 1)
        link = LedgerLink(host, int(port_s))
    else:
        link = LedgerLink("127.0.0.1", DEFAULT_LEDGER_PORT)

    participant = Participant(args, link)
    tasks = []
    if args.trustee_private_key and not args.hold_blocks:
        tasks.append(asyncio.create_task(produce_blocks(link, args.trustee_private_key)))
    if not args.server or args.rpcport is None:
        raise SystemExit("client needs --server and --rpcport")
    server = await asyncio.start_server(
        lambda r, w: serve_connection(r, w, participant.dispatch), "127.0.0.1", args.rpcport
    )
    log("control endpoint listening on", args.rpcport, "trustee" if tasks else "")
    async with server:
        await server.serve_forever()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    log("starting", args.role, json.dumps({"trustee": args.trustee_address, "producer": bool(args.trustee_private_key)}))
    asyncio.run(run(args))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
