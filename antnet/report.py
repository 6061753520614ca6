from __future__ import annotations

from typing import Sequence
from urllib.parse import quote

from antnet.ledger import LedgerConnection
from antnet.registry import RegistryEntry

RULE = "------------------------------------------------------"


def urlencode(value: str) -> str:
    """RFC 3986 percent-encoding; only unreserved characters pass through."""
    if not value:
        raise ValueError("nothing to encode")
    return quote(value, safe="-._~")


def connection_uri(ledger: LedgerConnection, bootstrap_url: str) -> str:
    return (
        f"autonomi:config:local?rpc_url={urlencode(ledger.rpc_url)}"
        f"&payment_token_addr={ledger.payment_token_address}"
        f"&data_payments_addr={ledger.data_payments_address}"
        f"&bootstrap_url={urlencode(bootstrap_url)}"
    )


def format_report(
    ledger: LedgerConnection,
    nodes: Sequence[RegistryEntry],
    bootstrap_list: Sequence[str],
    bootstrap_url: str,
) -> str:
    lines = [
        "",
        RULE,
        "evm testnet details",
        "",
        f"> RPC_URL: {ledger.rpc_url}",
        f"> PAYMENT_TOKEN_ADDRESS: {ledger.payment_token_address}",
        f"> DATA_PAYMENTS_ADDRESS: {ledger.data_payments_address}",
        f"> SECRET_KEY: {ledger.secret_key}",
        "",
        RULE,
        "node details",
        "",
    ]
    lines += [f"{entry.port}   {entry.peer_id}" for entry in nodes]
    lines += ["", RULE, "discovery list", ""]
    lines += list(bootstrap_list)
    lines += [
        "",
        RULE,
        "",
        f"Bootstrap URL: {bootstrap_url}",
        "",
        connection_uri(ledger, bootstrap_url),
        "",
        RULE,
        "",
    ]
    return "\n".join(lines)
