"""Typed response shapes for the chain REST/RPC endpoints.

Every payload is decoded once at the edge into a frozen dataclass; a missing
required field raises :class:`~reserve_flow_tracker.net.http.DecodeError`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from reserve_flow_tracker.net.http import DecodeError


def _require(data: Any, key: str, where: str) -> Any:
    if not isinstance(data, dict):
        raise DecodeError(f"{where}: expected an object, got {type(data).__name__}")
    if key not in data or data[key] is None:
        raise DecodeError(f"{where}: missing field {key!r}")
    return data[key]


def _as_int(value: Any, where: str) -> int:
    if isinstance(value, bool):
        raise DecodeError(f"{where}: expected an integer, got bool")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise DecodeError(f"{where}: expected an integer, got {value!r}") from e


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _list(data: dict[str, Any], key: str) -> list[Any]:
    value = data.get(key)
    return value if isinstance(value, list) else []


# ---------------------------------------------------------------------------
# Esplora (Bitcoin)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EsploraStats:
    funded_txo_sum: int
    spent_txo_sum: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EsploraStats:
        return cls(
            funded_txo_sum=_as_int(_require(data, "funded_txo_sum", "esplora stats"), "funded_txo_sum"),
            spent_txo_sum=_as_int(_require(data, "spent_txo_sum", "esplora stats"), "spent_txo_sum"),
        )


@dataclass(frozen=True)
class EsploraAddress:
    """``GET /address/{address}`` summary."""

    chain_stats: EsploraStats
    mempool_stats: EsploraStats

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EsploraAddress:
        return cls(
            chain_stats=EsploraStats.from_dict(_require(data, "chain_stats", "esplora address")),
            mempool_stats=EsploraStats.from_dict(_require(data, "mempool_stats", "esplora address")),
        )

    @property
    def balance_sats(self) -> int:
        """Confirmed plus unconfirmed balance."""
        return (
            self.chain_stats.funded_txo_sum
            - self.chain_stats.spent_txo_sum
            + self.mempool_stats.funded_txo_sum
            - self.mempool_stats.spent_txo_sum
        )


@dataclass(frozen=True)
class EsploraOutput:
    """A transaction output (or an input's prevout)."""

    address: str | None
    value: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EsploraOutput:
        address = data.get("scriptpubkey_address")
        return cls(
            address=str(address) if address else None,
            value=_as_int(data.get("value", 0), "output value"),
        )


@dataclass(frozen=True)
class EsploraTx:
    """One entry of ``GET /address/{address}/txs``.

    ``prevouts`` holds the spent output of each input; coinbase inputs have
    none and are left out.
    """

    txid: str
    block_time: int | None
    prevouts: tuple[EsploraOutput, ...]
    outputs: tuple[EsploraOutput, ...]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EsploraTx:
        txid = str(_require(data, "txid", "esplora tx"))
        status = data.get("status") or {}
        block_time = _optional_int(status.get("block_time")) if isinstance(status, dict) else None
        prevouts = tuple(
            EsploraOutput.from_dict(vin["prevout"])
            for vin in _list(data, "vin")
            if isinstance(vin, dict) and isinstance(vin.get("prevout"), dict)
        )
        outputs = tuple(
            EsploraOutput.from_dict(vout) for vout in _list(data, "vout") if isinstance(vout, dict)
        )
        return cls(txid=txid, block_time=block_time or None, prevouts=prevouts, outputs=outputs)


# ---------------------------------------------------------------------------
# Solana JSON-RPC
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SignatureInfo:
    """One entry of ``getSignaturesForAddress``."""

    signature: str
    block_time: int | None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SignatureInfo:
        return cls(
            signature=str(_require(data, "signature", "signature info")),
            block_time=_optional_int(data.get("blockTime")),
        )


@dataclass(frozen=True)
class TokenBalance:
    """A ``preTokenBalances`` / ``postTokenBalances`` ledger entry."""

    owner: str
    mint: str
    amount: int
    decimals: int | None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenBalance:
        ui_amount = data.get("uiTokenAmount") or {}
        return cls(
            owner=str(data.get("owner") or ""),
            mint=str(_require(data, "mint", "token balance")),
            amount=_as_int(ui_amount.get("amount", 0), "token amount"),
            decimals=_optional_int(ui_amount.get("decimals")),
        )

    def matches(self, owner: str, mint: str) -> bool:
        return self.owner.lower() == owner.lower() and self.mint.lower() == mint.lower()


def _account_key(value: Any) -> str:
    # jsonParsed encoding returns {"pubkey": ...} objects instead of strings
    if isinstance(value, dict):
        return str(value.get("pubkey", ""))
    return str(value)


@dataclass(frozen=True)
class SolanaTransaction:
    """``getTransaction`` result with the fields needed for balance deltas.

    ``account_keys`` is the static key list followed by the writable and
    readonly addresses loaded from lookup tables, matching the index space
    of ``pre_balances`` / ``post_balances``.
    """

    block_time: int | None
    account_keys: tuple[str, ...]
    pre_balances: tuple[int, ...]
    post_balances: tuple[int, ...]
    pre_token_balances: tuple[TokenBalance, ...]
    post_token_balances: tuple[TokenBalance, ...]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SolanaTransaction:
        meta = data.get("meta") or {}
        transaction = _require(data, "transaction", "solana transaction")
        message = _require(transaction, "message", "solana transaction")
        keys = [_account_key(k) for k in _list(message, "accountKeys")]
        loaded = meta.get("loadedAddresses") or {}
        keys.extend(str(k) for k in _list(loaded, "writable"))
        keys.extend(str(k) for k in _list(loaded, "readonly"))
        return cls(
            block_time=_optional_int(data.get("blockTime")),
            account_keys=tuple(keys),
            pre_balances=tuple(_as_int(v, "preBalances") for v in _list(meta, "preBalances")),
            post_balances=tuple(_as_int(v, "postBalances") for v in _list(meta, "postBalances")),
            pre_token_balances=tuple(
                TokenBalance.from_dict(b) for b in _list(meta, "preTokenBalances")
            ),
            post_token_balances=tuple(
                TokenBalance.from_dict(b) for b in _list(meta, "postTokenBalances")
            ),
        )

    def account_index(self, owner: str) -> int | None:
        owner = owner.lower()
        for i, key in enumerate(self.account_keys):
            if key.lower() == owner:
                return i
        return None


@dataclass(frozen=True)
class TokenAccount:
    """Parsed token account from ``getTokenAccountsByOwner`` (jsonParsed)."""

    amount: int
    decimals: int | None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenAccount:
        account = _require(data, "account", "token account")
        parsed = _require(_require(account, "data", "token account"), "parsed", "token account")
        info = _require(parsed, "info", "token account")
        token_amount = _require(info, "tokenAmount", "token account")
        return cls(
            amount=_as_int(_require(token_amount, "amount", "token account"), "tokenAmount.amount"),
            decimals=_optional_int(token_amount.get("decimals")),
        )


# ---------------------------------------------------------------------------
# Tronscan REST
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TronTransfer:
    """One entry of ``/api/token_trc20/transfers``; ``block_ts`` is in milliseconds."""

    transaction_id: str
    block_ts: int | None
    from_address: str
    to_address: str
    amount: int
    decimals: int | None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TronTransfer:
        token_info = data.get("tokenInfo") or {}
        return cls(
            transaction_id=str(data.get("transaction_id", "")),
            block_ts=_optional_int(data.get("block_ts")) or None,
            from_address=str(data.get("from_address") or ""),
            to_address=str(data.get("to_address") or ""),
            amount=_as_int(_require(data, "quant", "tron transfer"), "quant"),
            decimals=_optional_int(token_info.get("tokenDecimal")),
        )


@dataclass(frozen=True)
class TronTokenBalance:
    """One entry of ``/api/account/tokens``."""

    token_id: str
    symbol: str
    amount: int
    decimals: int | None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TronTokenBalance:
        return cls(
            token_id=str(_require(data, "tokenId", "tron token balance")),
            symbol=str(data.get("tokenAbbr") or "").upper(),
            amount=_as_int(data.get("balance", 0) or 0, "balance"),
            decimals=_optional_int(data.get("tokenDecimal")),
        )


# ---------------------------------------------------------------------------
# Etherscan-compatible explorer API
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExplorerTx:
    """One normal transaction from ``module=account&action=txlist``."""

    hash: str
    block_number: int
    timestamp: int | None
    from_address: str
    to_address: str
    value: int
    gas_used: int
    gas_price: int
    is_error: bool

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExplorerTx:
        return cls(
            hash=str(data.get("hash", "")),
            block_number=_as_int(_require(data, "blockNumber", "explorer tx"), "blockNumber"),
            timestamp=_optional_int(data.get("timeStamp")),
            from_address=str(data.get("from") or "").lower(),
            # contract creations have an empty "to"
            to_address=str(data.get("to") or "").lower(),
            value=_as_int(data.get("value") or 0, "value"),
            gas_used=_as_int(data.get("gasUsed") or 0, "gasUsed"),
            gas_price=_as_int(data.get("gasPrice") or 0, "gasPrice"),
            is_error=str(data.get("isError", "0")) == "1",
        )

    @property
    def fee(self) -> int:
        return self.gas_used * self.gas_price


@dataclass(frozen=True)
class ExplorerTxList:
    txs: tuple[ExplorerTx, ...]


@dataclass(frozen=True)
class ExplorerError:
    message: str
    detail: str


ExplorerResponse = ExplorerTxList | ExplorerError


def decode_explorer_response(payload: Any) -> ExplorerResponse:
    """Decode an Etherscan-style ``{status, message, result}`` envelope.

    ``status == "0"`` with an empty list is the "No transactions found"
    answer and decodes to an empty success; any other non-list result is an
    error object.
    """
    if not isinstance(payload, dict):
        raise DecodeError(f"explorer response must be an object, got {type(payload).__name__}")
    result = payload.get("result")
    if isinstance(result, list):
        return ExplorerTxList(txs=tuple(ExplorerTx.from_dict(tx) for tx in result))
    return ExplorerError(message=str(payload.get("message", "")), detail=str(result or ""))
