#!/usr/bin/env python3
"""
MCP server for multi-chain transfers.

Wraps tx_engine.TransactionEngine as MCP tools. The mnemonic is taken from
the tool arguments, or from WALLET_MNEMONIC when omitted; it is passed through
per call and never stored.
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Any, List

from dotenv import load_dotenv
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from tx_engine import TransactionEngine
from tx_types import TransactionRequest

REPO_ROOT = Path(__file__).resolve().parent
load_dotenv(REPO_ROOT / ".env")

app = Server("tx_engine")

_TRANSFER_PROPERTIES = {
    "token_symbol": {"type": "string", "description": "BTC, ETH or SOL"},
    "to_address": {"type": "string", "description": "Recipient address"},
    "amount": {
        "type": "string",
        "description": "Amount in the chain's major unit, as a decimal string",
    },
    "mnemonic": {
        "type": "string",
        "description": "BIP-39 seed phrase (defaults to WALLET_MNEMONIC)",
    },
}


def _engine() -> TransactionEngine:
    return TransactionEngine.from_env()


def _json_response(payload: dict[str, Any]) -> List[TextContent]:
    return [TextContent(type="text", text=json.dumps(payload))]


def _error_response(message: str) -> List[TextContent]:
    return _json_response({"success": False, "errorMessage": message})


def _mnemonic(arguments: dict[str, Any]) -> str:
    mnemonic = (arguments.get("mnemonic") or os.getenv("WALLET_MNEMONIC") or "").strip()
    if not mnemonic:
        raise ValueError("Missing mnemonic. Pass it as an argument or set WALLET_MNEMONIC.")
    return mnemonic


def _transfer_request(arguments: dict[str, Any]) -> TransactionRequest:
    token_symbol = (arguments.get("token_symbol") or "").strip()
    if not token_symbol:
        raise ValueError("Missing token_symbol.")
    to_address = (arguments.get("to_address") or "").strip()
    if not to_address:
        raise ValueError("Missing to_address.")
    amount = arguments.get("amount")
    if amount is None or str(amount).strip() == "":
        raise ValueError("Missing amount.")
    return TransactionRequest(
        token_symbol=token_symbol,
        recipient_address=to_address,
        amount=str(amount),
        mnemonic=_mnemonic(arguments),
    )


@app.list_tools()
async def list_tools() -> List[Tool]:
    return [
        Tool(
            name="tx_send",
            description=(
                "Build, sign and broadcast a transfer of BTC, ETH or SOL. "
                "Requires explicit user confirmation; call tx_estimate_fee first."
            ),
            inputSchema={
                "type": "object",
                "properties": _TRANSFER_PROPERTIES,
                "required": ["token_symbol", "to_address", "amount"],
            },
        ),
        Tool(
            name="tx_estimate_fee",
            description="Estimate the network fee for a transfer without signing it.",
            inputSchema={
                "type": "object",
                "properties": _TRANSFER_PROPERTIES,
                "required": ["token_symbol", "to_address", "amount"],
            },
        ),
        Tool(
            name="tx_get_address",
            description="Return the sending address the mnemonic controls on a chain.",
            inputSchema={
                "type": "object",
                "properties": {
                    "token_symbol": _TRANSFER_PROPERTIES["token_symbol"],
                    "mnemonic": _TRANSFER_PROPERTIES["mnemonic"],
                },
                "required": ["token_symbol"],
            },
        ),
        Tool(
            name="tx_validate_address",
            description="Check whether an address is valid for a chain.",
            inputSchema={
                "type": "object",
                "properties": {
                    "token_symbol": _TRANSFER_PROPERTIES["token_symbol"],
                    "address": {"type": "string", "description": "Address to check"},
                },
                "required": ["token_symbol", "address"],
            },
        ),
        Tool(
            name="tx_get_status",
            description="Report confirmations for a broadcast transaction (BTC).",
            inputSchema={
                "type": "object",
                "properties": {
                    "token_symbol": _TRANSFER_PROPERTIES["token_symbol"],
                    "tx_hash": {"type": "string", "description": "Transaction id"},
                },
                "required": ["token_symbol", "tx_hash"],
            },
        ),
        Tool(
            name="tx_decode_transaction",
            description="Decode a raw transaction's inputs and outputs without broadcasting (BTC).",
            inputSchema={
                "type": "object",
                "properties": {
                    "token_symbol": _TRANSFER_PROPERTIES["token_symbol"],
                    "raw_hex": {"type": "string", "description": "Serialized transaction hex"},
                },
                "required": ["token_symbol", "raw_hex"],
            },
        ),
        Tool(
            name="tx_supported_tokens",
            description="List the token symbols this server can send.",
            inputSchema={"type": "object", "properties": {}},
        ),
    ]


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> List[TextContent]:
    if not isinstance(arguments, dict):
        return _error_response("Invalid arguments. Expected an object.")

    if name == "tx_send":
        return await _handle_send(arguments)
    if name == "tx_estimate_fee":
        return await _handle_estimate_fee(arguments)
    if name == "tx_get_address":
        return await _handle_get_address(arguments)
    if name == "tx_validate_address":
        return await _handle_validate_address(arguments)
    if name == "tx_get_status":
        return await _handle_get_status(arguments)
    if name == "tx_decode_transaction":
        return await _handle_decode_transaction(arguments)
    if name == "tx_supported_tokens":
        return await _handle_supported_tokens()

    return _error_response(f"Unknown tool: {name}")


async def _handle_send(arguments: dict[str, Any]) -> List[TextContent]:
    try:
        request = _transfer_request(arguments)
        engine = await asyncio.to_thread(_engine)
        result = await asyncio.to_thread(engine.send, request)
        return _json_response(result.to_dict())
    except Exception as exc:  # noqa: BLE001
        return _error_response(str(exc))


async def _handle_estimate_fee(arguments: dict[str, Any]) -> List[TextContent]:
    try:
        request = _transfer_request(arguments)
        engine = await asyncio.to_thread(_engine)
        return _json_response(await asyncio.to_thread(engine.estimate_fee, request))
    except Exception as exc:  # noqa: BLE001
        return _error_response(str(exc))


async def _handle_get_address(arguments: dict[str, Any]) -> List[TextContent]:
    token_symbol = (arguments.get("token_symbol") or "").strip()
    if not token_symbol:
        return _error_response("Missing token_symbol.")
    try:
        mnemonic = _mnemonic(arguments)
        engine = await asyncio.to_thread(_engine)
        payload = await asyncio.to_thread(engine.get_address, token_symbol, mnemonic)
        return _json_response(payload)
    except Exception as exc:  # noqa: BLE001
        return _error_response(str(exc))


async def _handle_validate_address(arguments: dict[str, Any]) -> List[TextContent]:
    token_symbol = (arguments.get("token_symbol") or "").strip()
    address = (arguments.get("address") or "").strip()
    if not token_symbol or not address:
        return _error_response("Missing token_symbol or address.")
    try:
        engine = await asyncio.to_thread(_engine)
        return _json_response(engine.validate_address(token_symbol, address))
    except Exception as exc:  # noqa: BLE001
        return _error_response(str(exc))


async def _handle_get_status(arguments: dict[str, Any]) -> List[TextContent]:
    token_symbol = (arguments.get("token_symbol") or "").strip()
    tx_hash = (arguments.get("tx_hash") or "").strip()
    if not token_symbol or not tx_hash:
        return _error_response("Missing token_symbol or tx_hash.")
    try:
        engine = await asyncio.to_thread(_engine)
        payload = await asyncio.to_thread(engine.get_transaction_status, token_symbol, tx_hash)
        return _json_response(payload)
    except Exception as exc:  # noqa: BLE001
        return _error_response(str(exc))


async def _handle_decode_transaction(arguments: dict[str, Any]) -> List[TextContent]:
    token_symbol = (arguments.get("token_symbol") or "").strip()
    raw_hex = (arguments.get("raw_hex") or "").strip()
    if not token_symbol or not raw_hex:
        return _error_response("Missing token_symbol or raw_hex.")
    try:
        engine = await asyncio.to_thread(_engine)
        return _json_response(engine.decode_transaction(token_symbol, raw_hex))
    except Exception as exc:  # noqa: BLE001
        return _error_response(str(exc))


async def _handle_supported_tokens() -> List[TextContent]:
    try:
        engine = await asyncio.to_thread(_engine)
        return _json_response({"success": True, "tokens": engine.supported_tokens()})
    except Exception as exc:  # noqa: BLE001
        return _error_response(str(exc))


async def main() -> None:
    async with stdio_server() as (read_stream, write_stream):
        await app.run(read_stream, write_stream, app.create_initialization_options())


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
