"""Signing authority for the smart account's root validator."""

from __future__ import annotations

from typing import Protocol

from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from .errors import ConfigurationError


class Signer(Protocol):
    """Protocol for objects able to authorise operations for the account."""

    @property
    def address(self) -> str:  # pragma: no cover - protocol
        """Checksummed owner address."""

    def sign_digest(self, digest: bytes) -> str:  # pragma: no cover - protocol
        """Sign a 32-byte digest and return the 0x-prefixed signature."""


class SignerIdentity:
    """Local ECDSA key wrapped in an ``eth_account`` account.

    Digests are signed as EIP-191 personal messages, which is what the
    Kernel ECDSA validators recover against.
    """

    def __init__(self, account) -> None:  # type: ignore[no-untyped-def]
        self._account = account

    @classmethod
    def from_private_key(cls, private_key: str) -> "SignerIdentity":
        try:
            account = Account.from_key(private_key)
        except (ValueError, TypeError) as exc:
            raise ConfigurationError("PRIVATE_KEY is not a valid secp256k1 key") from exc
        return cls(account)

    @property
    def address(self) -> str:
        return Web3.to_checksum_address(self._account.address)

    def sign_digest(self, digest: bytes) -> str:
        if len(digest) != 32:
            raise ValueError("digest must be 32 bytes")
        signed = self._account.sign_message(encode_defunct(primitive=digest))
        return Web3.to_hex(signed.signature)

    def __repr__(self) -> str:
        return f"SignerIdentity(address={self.address})"
