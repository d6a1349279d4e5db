"""Delegated agent key storage.

Each agent signs with its own keypair. The private key is stored
AES-256-GCM encrypted as `iv:tag:ciphertext`, all hex, under a single
deployment key (`AGENT_ENCRYPTION_KEY`, 64 hex chars or base64 of 32
bytes).
"""

from __future__ import annotations

import base64
import binascii
import os
import re
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from eth_account import Account

IV_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32

_HEX_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")


class AgentKeyError(Exception):
    """Raised when an agent key cannot be encrypted or decrypted."""


def load_encryption_key(raw: str) -> bytes:
    """Decode the deployment key from hex or base64."""
    raw = raw.strip()
    if _HEX_KEY_RE.match(raw):
        return bytes.fromhex(raw)
    try:
        key = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as e:
        raise AgentKeyError("AGENT_ENCRYPTION_KEY must be 64 hex chars or base64") from e
    if len(key) != KEY_LENGTH:
        raise AgentKeyError("AGENT_ENCRYPTION_KEY must be 32 bytes (64 hex chars or base64)")
    return key


@dataclass(frozen=True)
class AgentWallet:
    address: str
    encrypted_key: str


class AgentKeyVault:
    """Encrypts and decrypts delegated agent keys."""

    def __init__(self, encryption_key: str) -> None:
        self._aesgcm = AESGCM(load_encryption_key(encryption_key))

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, encrypted: str) -> str:
        """Decrypt an `iv:tag:ciphertext` string.

        Raises:
            AgentKeyError: If the format is invalid or authentication fails.
        """
        parts = encrypted.split(":")
        if len(parts) != 3 or not all(parts):
            raise AgentKeyError("Invalid encrypted key format")
        try:
            iv, tag, ciphertext = (bytes.fromhex(p) for p in parts)
        except ValueError as e:
            raise AgentKeyError("Invalid encrypted key format") from e
        if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
            raise AgentKeyError("Invalid encrypted key format")
        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            raise AgentKeyError("Agent key failed authentication") from e
        return plaintext.decode("utf-8")

    def generate_wallet(self) -> AgentWallet:
        """Create a fresh keypair and return its address and sealed key."""
        account = Account.create()
        return AgentWallet(
            address=str(account.address),
            encrypted_key=self.encrypt("0x" + bytes(account.key).hex()),
        )
