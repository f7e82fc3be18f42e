"""
Blockchain access for the multisig coordinator.

Two upstreams are used:

- a Bitcoin Core compatible JSON-RPC node for broadcasting, confirmation
  counts, fee estimates and chain height;
- a Blockbook (v2 API) indexer for UTXOs, balances and address history.

Every transport, HTTP or payload failure surfaces as ``UpstreamUnavailable``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import requests

from multisig_errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


class BlockchainClient:
    def __init__(
        self,
        rpc_url: str,
        blockbook_url: str,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.blockbook_url = blockbook_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    # -----------------------------------------------------------------------
    # Transport helpers
    # -----------------------------------------------------------------------

    def _rpc_call(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "method": method, "params": params, "id": 1}
        try:
            resp = self.session.post(self.rpc_url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise UpstreamUnavailable(
                f"Bitcoin RPC {method} failed: {exc}", endpoint=self.rpc_url, method=method
            ) from exc

        # bitcoind reports RPC errors with a non-2xx status and a JSON body.
        try:
            data = resp.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise UpstreamUnavailable(
                f"Bitcoin RPC error: {message}", endpoint=self.rpc_url, method=method
            )
        if not resp.ok or not isinstance(data, dict):
            error_msg = resp.text or f"HTTP {resp.status_code}"
            raise UpstreamUnavailable(
                f"Bitcoin RPC error: {resp.status_code} - {error_msg}",
                endpoint=self.rpc_url,
                method=method,
            )
        return data.get("result")

    def _blockbook_get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        url = f"{self.blockbook_url}/api/v2/{path}"
        try:
            resp = self.session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            raise UpstreamUnavailable(
                f"Blockbook request failed: {exc}", endpoint=url
            ) from exc
        if not resp.ok:
            error_msg = resp.text or f"HTTP {resp.status_code}"
            raise UpstreamUnavailable(
                f"Blockbook API error: {resp.status_code} - {error_msg}", endpoint=url
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamUnavailable(
                "Blockbook returned a non-JSON response.", endpoint=url
            ) from exc

    # -----------------------------------------------------------------------
    # Node RPC
    # -----------------------------------------------------------------------

    def estimate_fee_rate(self, target_blocks: int) -> float:
        """Fee rate in sat/vB for confirmation within ``target_blocks``."""
        result = self._rpc_call("estimatesmartfee", [target_blocks])
        feerate = (result or {}).get("feerate")
        if feerate is None:
            errors = (result or {}).get("errors") or ["no estimate available"]
            raise UpstreamUnavailable(
                f"Fee estimate unavailable: {'; '.join(errors)}",
                endpoint=self.rpc_url,
                method="estimatesmartfee",
            )
        # estimatesmartfee reports BTC/kvB.
        return float(feerate) * 100_000_000 / 1000

    def broadcast(self, raw_tx_hex: str) -> str:
        txid = self._rpc_call("sendrawtransaction", [raw_tx_hex])
        if not txid:
            raise UpstreamUnavailable(
                "Broadcast returned no transaction hash.",
                endpoint=self.rpc_url,
                method="sendrawtransaction",
            )
        return str(txid)

    def get_confirmations(self, tx_hash: str) -> int:
        details = self._rpc_call("getrawtransaction", [tx_hash, True]) or {}
        # Mempool transactions carry no confirmations field.
        return int(details.get("confirmations", 0) or 0)

    def get_chain_height(self) -> int:
        info = self._rpc_call("getblockchaininfo", []) or {}
        blocks = info.get("blocks")
        if blocks is None:
            raise UpstreamUnavailable(
                "Invalid response from Bitcoin RPC",
                endpoint=self.rpc_url,
                method="getblockchaininfo",
            )
        return int(blocks)

    # -----------------------------------------------------------------------
    # Blockbook indexer
    # -----------------------------------------------------------------------

    def get_unspent_outputs(self, address: str) -> list[dict[str, Any]]:
        """Confirmed UTXOs for ``address`` as ``{txid, vout, satoshis}``."""
        data = self._blockbook_get(f"utxo/{address}", {"confirmed": "true"})
        if not isinstance(data, list):
            raise UpstreamUnavailable(
                "Unexpected UTXO payload from Blockbook.", endpoint=self.blockbook_url
            )
        return [
            {
                "txid": u["txid"],
                "vout": int(u["vout"]),
                "satoshis": int(u["value"]),
            }
            for u in data
        ]

    def get_balance(self, address: str) -> dict[str, int]:
        data = self._blockbook_get(f"address/{address}", {"details": "basic"})
        return {
            "confirmed": int(data.get("balance", 0) or 0),
            "unconfirmed": int(data.get("unconfirmedBalance", 0) or 0),
        }

    def get_address_history(self, address: str, page: int = 1) -> list[dict[str, Any]]:
        """
        Simplified history for ``address``.

        A transaction is "sent" when one of its inputs spends an output of
        ``address``; the amount is then the value spent from the address,
        otherwise the value received by it.
        """
        data = self._blockbook_get(
            f"address/{address}", {"details": "txslight", "page": page}
        )
        transactions = []
        for tx in data.get("transactions") or []:
            received = sum(
                int(vout.get("value", 0) or 0)
                for vout in tx.get("vout", [])
                if address in (vout.get("addresses") or [])
            )

            sent = 0
            direction = "received"
            for vin in tx.get("vin", []):
                addresses, value = self._resolve_vin(vin)
                if address in addresses:
                    sent += value
                    direction = "sent"

            confirmations = int(tx.get("confirmations", 0) or 0)
            block_time = tx.get("blockTime")
            confirmation_time = None
            if confirmations > 0 and block_time:
                confirmation_time = datetime.fromtimestamp(
                    int(block_time), tz=timezone.utc
                ).isoformat()

            transactions.append(
                {
                    "tx_hash": tx.get("txid", ""),
                    "amount": sent if direction == "sent" else received,
                    "fee": int(tx.get("fees", 0) or 0),
                    "status": "confirmed" if confirmations > 0 else "unconfirmed",
                    "confirmation_time": confirmation_time,
                    "confirmations": confirmations,
                    "direction": direction,
                }
            )
        return transactions

    def _resolve_vin(self, vin: dict[str, Any]) -> tuple[list[str], int]:
        if vin.get("addresses") is not None and vin.get("value") is not None:
            return list(vin["addresses"]), int(vin["value"])
        prev_txid = vin.get("txid")
        if not prev_txid:
            return [], 0
        prev = self._blockbook_get(f"tx/{prev_txid}")
        vouts = prev.get("vout") or []
        index = int(vin.get("vout", 0) or 0)
        if index >= len(vouts):
            return [], 0
        prev_out = vouts[index]
        return list(prev_out.get("addresses") or []), int(prev_out.get("value", 0) or 0)
