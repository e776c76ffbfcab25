"""
Identities and wallets for TixFlow.

A wallet wraps a secp256k1 key-pair and provides:
  - Address derivation (``"t"`` + 20-byte BLAKE2b digest of the public key)
  - Message signing and verification
  - Encrypted keystore import / export (AES-256-GCM, PBKDF2-HMAC-SHA256)

Ledger identities are plain strings.  Wallet-derived addresses are the
canonical form, but the ledger only requires an identity to be non-empty,
free of whitespace, and different from ``NULL_ADDRESS``.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
from pathlib import Path

from ecdsa import SECP256k1, BadSignatureError, SigningKey, VerifyingKey
from ecdsa.errors import MalformedPointError

logger = logging.getLogger("tixflow.wallet")

ADDRESS_PREFIX = "t"
NULL_ADDRESS = ADDRESS_PREFIX + "0" * 40

_KDF_ITERATIONS = 600_000


def is_valid_identity(identity) -> bool:
    """True for a usable holder identity (non-null, non-empty, no whitespace)."""
    if not isinstance(identity, str) or not identity:
        return False
    if identity == NULL_ADDRESS:
        return False
    return not any(ch.isspace() for ch in identity)


def derive_address(public_key: bytes) -> str:
    digest = hashlib.blake2b(public_key, digest_size=20).hexdigest()
    return ADDRESS_PREFIX + digest


def generate_keypair() -> tuple[bytes, bytes]:
    """Return (private_key, uncompressed_public_key)."""
    sk = SigningKey.generate(curve=SECP256k1)
    return sk.to_string(), b"\x04" + sk.get_verifying_key().to_string()


def sign(private_key: bytes, message: bytes) -> bytes:
    sk = SigningKey.from_string(private_key, curve=SECP256k1)
    return sk.sign_deterministic(message, hashfunc=hashlib.sha256)


def verify(public_key: bytes, message: bytes, signature: bytes) -> bool:
    raw = public_key[1:] if len(public_key) == 65 else public_key
    try:
        vk = VerifyingKey.from_string(raw, curve=SECP256k1)
        return vk.verify(signature, message, hashfunc=hashlib.sha256)
    except (BadSignatureError, MalformedPointError, ValueError, AssertionError):
        return False


class Wallet:
    """A secp256k1 key-pair with a derived ledger address."""

    def __init__(self, private_key: bytes, public_key: bytes, address: str | None = None):
        self.private_key = private_key
        self.public_key = public_key
        self.address = address or derive_address(public_key)

    # ---- factory methods ----

    @classmethod
    def create(cls) -> Wallet:
        priv, pub = generate_keypair()
        return cls(priv, pub)

    @classmethod
    def from_seed(cls, seed: str) -> Wallet:
        """Derive a wallet deterministically from a seed phrase (PBKDF2)."""
        priv = hashlib.pbkdf2_hmac(
            "sha256", seed.encode("utf-8"), b"TixFlow/seed/v1", _KDF_ITERATIONS,
        )
        sk = SigningKey.from_string(priv, curve=SECP256k1)
        return cls(priv, b"\x04" + sk.get_verifying_key().to_string())

    # ---- signing ----

    def sign_message(self, message: bytes) -> bytes:
        return sign(self.private_key, message)

    def verify_message(self, message: bytes, signature: bytes) -> bool:
        return verify(self.public_key, message, signature)

    # ---- serialisation ----

    def to_dict(self) -> dict:
        """Public view only; private material leaves via ``export_encrypted``."""
        return {
            "address": self.address,
            "public_key": self.public_key.hex(),
        }

    def export_encrypted(self, passphrase: str) -> dict:
        salt = os.urandom(16)
        key = hashlib.pbkdf2_hmac("sha256", passphrase.encode("utf-8"), salt, _KDF_ITERATIONS)
        ciphertext, nonce, tag = self._aes_gcm_encrypt(key, self.private_key)
        return {
            "version": 1,
            "address": self.address,
            "public_key": self.public_key.hex(),
            "encrypted_private_key": ciphertext.hex(),
            "nonce": nonce.hex(),
            "tag": tag.hex(),
            "salt": salt.hex(),
            "kdf": "pbkdf2-hmac-sha256",
            "kdf_iterations": _KDF_ITERATIONS,
        }

    @classmethod
    def import_encrypted(cls, data: dict, passphrase: str) -> Wallet:
        """Decrypt a keystore.  Raises ValueError on a wrong passphrase or tampering."""
        salt = bytes.fromhex(data["salt"])
        iterations = data.get("kdf_iterations", _KDF_ITERATIONS)
        key = hashlib.pbkdf2_hmac("sha256", passphrase.encode("utf-8"), salt, iterations)
        priv = cls._aes_gcm_decrypt(
            key,
            bytes.fromhex(data["nonce"]),
            bytes.fromhex(data["encrypted_private_key"]),
            bytes.fromhex(data["tag"]),
        )
        return cls(priv, bytes.fromhex(data["public_key"]), data.get("address"))

    @classmethod
    def load_or_create(cls, path: str, passphrase: str) -> Wallet:
        """Load the keystore at *path*, generating and saving one on first run."""
        p = Path(path)
        if p.exists():
            with open(p, encoding="utf-8") as f:
                wallet = cls.import_encrypted(json.load(f), passphrase)
            logger.info(f"Loaded wallet {wallet.address} from {path}")
            return wallet
        wallet = cls.create()
        p.parent.mkdir(parents=True, exist_ok=True)
        with open(p, "w", encoding="utf-8") as f:
            json.dump(wallet.export_encrypted(passphrase), f, indent=2)
        os.chmod(p, 0o600)
        logger.info(f"Generated new wallet {wallet.address} at {path}")
        return wallet

    # ---- AES-256-GCM authenticated encryption ----

    @staticmethod
    def _aes_gcm_encrypt(key: bytes, data: bytes) -> tuple[bytes, bytes, bytes]:
        from Crypto.Cipher import AES
        nonce = os.urandom(12)
        cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
        ciphertext, tag = cipher.encrypt_and_digest(data)
        return ciphertext, nonce, tag

    @staticmethod
    def _aes_gcm_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, tag: bytes) -> bytes:
        from Crypto.Cipher import AES
        cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
        return cipher.decrypt_and_verify(ciphertext, tag)

    def __repr__(self) -> str:
        return f"Wallet({self.address})"
