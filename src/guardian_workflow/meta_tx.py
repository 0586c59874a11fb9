"""
EIP-712 meta-transactions for guardian custodians.

A meta-transaction is an owner-signed, deadline-bound authorization that a
separate broadcaster identity submits later. The signature covers the chain,
the handler contract and selector, the signer's nonce, the deadline and the
maximum gas price the signer accepts.

Key Components:
- MetaTransaction: the signed authorization and its canonical JSON form
- build_typed_data / compute_digest: EIP-712 structure and hash
- SignerIdentity / LocalAccountSigner: signing capability
- validate_meta_transaction: deadline, gas price and signature checks

Flow:
1. Signer builds a MetaTransaction for an existing record or a new payload
2. Signer signs the typed data off-chain and the result is stored locally
3. Broadcaster loads the stored authorization and submits it
4. Custodian verifies the signature, nonce, deadline and gas price
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Tuple, runtime_checkable

from eth_account import Account
from eth_account.messages import SignableMessage, encode_typed_data
from eth_utils import to_bytes
from web3 import Web3

from .exceptions import (
    ExpiredError,
    GasPriceExceededError,
    InvalidSignatureError,
    SerializationError,
)

logger = logging.getLogger(__name__)


EIP712_DOMAIN_NAME = "Guardian"
EIP712_DOMAIN_VERSION = "1"

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

META_TRANSACTION_TYPE = [
    {"name": "txId", "type": "uint256"},
    {"name": "operationType", "type": "bytes32"},
    {"name": "action", "type": "uint8"},
    {"name": "payloadHash", "type": "bytes32"},
    {"name": "chainId", "type": "uint256"},
    {"name": "handlerContract", "type": "address"},
    {"name": "handlerSelector", "type": "bytes4"},
    {"name": "nonce", "type": "uint256"},
    {"name": "deadline", "type": "uint256"},
    {"name": "maxGasPrice", "type": "uint256"},
    {"name": "signer", "type": "address"},
]


class MetaTxAction(str, Enum):
    """What a meta-transaction authorizes."""
    APPROVE = "approve"
    CANCEL = "cancel"
    REQUEST_AND_APPROVE = "request_and_approve"

    @property
    def code(self) -> int:
        return _ACTION_CODES[self]

    @classmethod
    def from_code(cls, code: int) -> "MetaTxAction":
        for action, c in _ACTION_CODES.items():
            if c == code:
                return action
        raise ValueError(f"Unknown meta-transaction action code: {code}")


_ACTION_CODES = {
    MetaTxAction.APPROVE: 0,
    MetaTxAction.CANCEL: 1,
    MetaTxAction.REQUEST_AND_APPROVE: 2,
}


@dataclass
class MetaTxParams:
    """Signed execution parameters of a meta-transaction."""
    chain_id: int
    nonce: int
    handler_contract: str
    handler_selector: str
    action: MetaTxAction
    deadline: int
    max_gas_price: int
    signer: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chainId": str(self.chain_id),
            "nonce": str(self.nonce),
            "handlerContract": self.handler_contract,
            "handlerSelector": self.handler_selector,
            "action": self.action.value,
            "deadline": str(self.deadline),
            "maxGasPrice": str(self.max_gas_price),
            "signer": self.signer,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetaTxParams":
        return cls(
            chain_id=int(data["chainId"]),
            nonce=int(data["nonce"]),
            handler_contract=Web3.to_checksum_address(data["handlerContract"]),
            handler_selector=data["handlerSelector"],
            action=MetaTxAction(data["action"]),
            deadline=int(data["deadline"]),
            max_gas_price=int(data["maxGasPrice"]),
            signer=Web3.to_checksum_address(data["signer"]),
        )


@dataclass
class MetaTransaction:
    """
    A meta-transaction for a guardian custodian.

    `tx_id` is 0 for single-phase request-and-approve authorizations, where no
    ledger record exists yet. `payload` is the ABI-encoded execution payload
    as hex; it is empty for approve/cancel of existing records.
    """
    tx_id: int
    operation_type: str
    params: MetaTxParams
    payload: str = "0x"
    signature: Optional[str] = None
    _digest: Optional[str] = field(default=None, init=False, repr=False, compare=False)

    @property
    def action(self) -> MetaTxAction:
        return self.params.action

    @property
    def signer(self) -> str:
        return self.params.signer

    @property
    def payload_bytes(self) -> bytes:
        return to_bytes(hexstr=self.payload or "0x")

    @property
    def payload_hash(self) -> bytes:
        return Web3.keccak(self.payload_bytes)

    @property
    def digest(self) -> str:
        """EIP-712 digest, as 0x-prefixed hex."""
        if self._digest is None:
            self._digest = Web3.to_hex(compute_digest(self))
        return self._digest

    def with_signature(self, signature: str) -> "MetaTransaction":
        return replace(self, signature=_normalize_hex(signature))

    def message(self) -> Dict[str, Any]:
        """EIP-712 message fields."""
        return {
            "txId": self.tx_id,
            "operationType": to_bytes(hexstr=self.operation_type),
            "action": self.action.code,
            "payloadHash": self.payload_hash,
            "chainId": self.params.chain_id,
            "handlerContract": Web3.to_checksum_address(self.params.handler_contract),
            "handlerSelector": to_bytes(hexstr=self.params.handler_selector),
            "nonce": self.params.nonce,
            "deadline": self.params.deadline,
            "maxGasPrice": self.params.max_gas_price,
            "signer": Web3.to_checksum_address(self.params.signer),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txId": str(self.tx_id),
            "operationType": self.operation_type,
            "payload": self.payload,
            "params": self.params.to_dict(),
            "digest": self.digest,
            "signature": self.signature,
        }

    def to_json(self) -> str:
        """Canonical JSON: sorted keys, compact separators, integers as decimal strings."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "MetaTransaction":
        """
        Parse the canonical JSON form.

        Raises:
            SerializationError: if the input is not a well-formed meta-transaction
        """
        try:
            data = json.loads(raw)
            meta_tx = cls(
                tx_id=int(data["txId"]),
                operation_type=data["operationType"],
                params=MetaTxParams.from_dict(data["params"]),
                payload=data.get("payload") or "0x",
                signature=data.get("signature"),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise SerializationError(
                f"Malformed meta-transaction: {e}",
                details={"raw_length": len(raw) if isinstance(raw, str) else None},
            ) from e

        stored_digest = data.get("digest")
        if stored_digest and stored_digest.lower() != meta_tx.digest.lower():
            raise SerializationError(
                "Stored meta-transaction digest does not match its fields",
                details={"stored": stored_digest, "computed": meta_tx.digest},
            )
        return meta_tx

    def to_call_tuple(self) -> Tuple[Any, ...]:
        """Argument tuple for the custodian's *WithMetaTx functions."""
        return (
            self.tx_id,
            to_bytes(hexstr=self.operation_type),
            self.action.code,
            self.payload_bytes,
            self.params.chain_id,
            Web3.to_checksum_address(self.params.handler_contract),
            to_bytes(hexstr=self.params.handler_selector),
            self.params.nonce,
            self.params.deadline,
            self.params.max_gas_price,
            Web3.to_checksum_address(self.params.signer),
            to_bytes(hexstr=self.signature or "0x"),
        )

    @classmethod
    def from_call_tuple(cls, values: Tuple[Any, ...]) -> "MetaTransaction":
        (tx_id, op_type, action, payload, chain_id, handler, selector,
         nonce, deadline, max_gas_price, signer, signature) = values
        return cls(
            tx_id=int(tx_id),
            operation_type=Web3.to_hex(op_type),
            params=MetaTxParams(
                chain_id=int(chain_id),
                nonce=int(nonce),
                handler_contract=Web3.to_checksum_address(handler),
                handler_selector=Web3.to_hex(selector),
                action=MetaTxAction.from_code(int(action)),
                deadline=int(deadline),
                max_gas_price=int(max_gas_price),
                signer=Web3.to_checksum_address(signer),
            ),
            payload=Web3.to_hex(payload) if payload else "0x",
            signature=Web3.to_hex(signature) if signature else None,
        )


def _normalize_hex(value: str) -> str:
    value = value.lower()
    return value if value.startswith("0x") else f"0x{value}"


def build_typed_data(meta_tx: MetaTransaction) -> Dict[str, Any]:
    """
    Build the EIP-712 structure for a meta-transaction.

    The domain's verifying contract is the handler contract, i.e. the
    custodian that will execute the authorization.
    """
    return {
        "types": {
            "EIP712Domain": EIP712_DOMAIN_TYPE,
            "MetaTransaction": META_TRANSACTION_TYPE,
        },
        "primaryType": "MetaTransaction",
        "domain": {
            "name": EIP712_DOMAIN_NAME,
            "version": EIP712_DOMAIN_VERSION,
            "chainId": meta_tx.params.chain_id,
            "verifyingContract": Web3.to_checksum_address(meta_tx.params.handler_contract),
        },
        "message": meta_tx.message(),
    }


def _signable(meta_tx: MetaTransaction) -> SignableMessage:
    return encode_typed_data(full_message=build_typed_data(meta_tx))


def hash_typed_data(typed_data: Dict[str, Any]) -> bytes:
    """32-byte EIP-712 digest: keccak256(0x19 0x01 || domainSeparator || structHash)."""
    signable = encode_typed_data(full_message=typed_data)
    return Web3.keccak(b"\x19" + signable.version + signable.header + signable.body)


def compute_digest(meta_tx: MetaTransaction) -> bytes:
    return hash_typed_data(build_typed_data(meta_tx))


@runtime_checkable
class SignerIdentity(Protocol):
    """A signing capability for typed data."""

    @property
    def address(self) -> str:
        ...

    def sign_typed_data(self, typed_data: Dict[str, Any]) -> str:
        """Sign an EIP-712 structure and return the 65-byte signature as hex."""
        ...


class LocalAccountSigner:
    """Signer backed by a local private key."""

    def __init__(self, private_key: str):
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    def sign_typed_data(self, typed_data: Dict[str, Any]) -> str:
        signed = self._account.sign_message(encode_typed_data(full_message=typed_data))
        return Web3.to_hex(signed.signature)

    def __repr__(self) -> str:
        return f"LocalAccountSigner({self.address})"


def sign_meta_transaction(meta_tx: MetaTransaction, signer: SignerIdentity) -> MetaTransaction:
    """
    Sign a meta-transaction with the signer named in its params.

    Raises:
        InvalidSignatureError: if the identity is not the declared signer
    """
    if signer.address.lower() != meta_tx.params.signer.lower():
        raise InvalidSignatureError(
            "Signing identity does not match the meta-transaction signer",
            expected=meta_tx.params.signer,
            recovered=signer.address,
        )
    signature = signer.sign_typed_data(build_typed_data(meta_tx))
    signed = meta_tx.with_signature(signature)
    logger.debug(
        f"Signed meta-transaction: txId={meta_tx.tx_id} action={meta_tx.action.value} "
        f"nonce={meta_tx.params.nonce} signature={signed.signature[:20]}..."
    )
    return signed


def recover_signer(meta_tx: MetaTransaction) -> Optional[str]:
    """Recover the address that produced the signature, or None if it is unusable."""
    if not meta_tx.signature:
        return None
    try:
        return Account.recover_message(_signable(meta_tx), signature=meta_tx.signature)
    except Exception as e:
        logger.warning(f"Signature recovery failed: {e}")
        return None


def validate_meta_transaction(
    meta_tx: MetaTransaction,
    now: int,
    gas_price: int,
    expected_nonce: Optional[int] = None,
) -> str:
    """
    Check a meta-transaction before broadcast.

    The deadline is checked first, so an expired authorization is rejected
    regardless of its signature.

    Returns:
        The recovered signer address

    Raises:
        ExpiredError: if now > deadline
        GasPriceExceededError: if gas_price > maxGasPrice
        InvalidSignatureError: if the signature is missing, does not recover to
            the declared signer, or the nonce is stale
    """
    if now > meta_tx.params.deadline:
        raise ExpiredError(deadline=meta_tx.params.deadline, now=now)

    if gas_price > meta_tx.params.max_gas_price:
        raise GasPriceExceededError(gas_price=gas_price, max_gas_price=meta_tx.params.max_gas_price)

    recovered = recover_signer(meta_tx)
    if recovered is None:
        raise InvalidSignatureError("Meta-transaction signature is missing or malformed")
    if recovered.lower() != meta_tx.params.signer.lower():
        raise InvalidSignatureError(
            "Signature was not produced by the declared signer",
            expected=meta_tx.params.signer,
            recovered=recovered,
        )

    if expected_nonce is not None and meta_tx.params.nonce != expected_nonce:
        raise InvalidSignatureError(
            f"Stale nonce {meta_tx.params.nonce}; signer nonce is {expected_nonce}",
            details={"nonce": meta_tx.params.nonce, "expected_nonce": expected_nonce},
        )

    return recovered


__all__ = [
    "MetaTxAction",
    "MetaTxParams",
    "MetaTransaction",
    "SignerIdentity",
    "LocalAccountSigner",
    "build_typed_data",
    "compute_digest",
    "hash_typed_data",
    "sign_meta_transaction",
    "recover_signer",
    "validate_meta_transaction",
]
