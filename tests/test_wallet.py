"""
Test suite for tixflow_core.wallet — identities and wallets.

Covers:
  - Identity validation and the null address
  - Wallet.create() and Wallet.from_seed()
  - Message signing and verification
  - Encrypted keystore export / import and load_or_create
"""

import json
import os
import stat
import unittest

import pytest

from tixflow_core.wallet import (
    NULL_ADDRESS,
    Wallet,
    derive_address,
    is_valid_identity,
    sign,
    verify,
)


class TestIdentity(unittest.TestCase):

    def test_valid(self):
        self.assertTrue(is_valid_identity("tAlice"))
        self.assertTrue(is_valid_identity(Wallet.create().address))

    def test_invalid(self):
        for bad in ("", NULL_ADDRESS, "t Alice", "tAlice\n", None, 42):
            self.assertFalse(is_valid_identity(bad), bad)

    def test_derive_address_format(self):
        addr = derive_address(b"\x04" + b"\x01" * 64)
        self.assertTrue(addr.startswith("t"))
        self.assertEqual(len(addr), 41)
        self.assertNotEqual(addr, NULL_ADDRESS)


class TestWalletCreate(unittest.TestCase):

    def test_create_generates_keys(self):
        w = Wallet.create()
        self.assertEqual(len(w.private_key), 32)
        self.assertEqual(len(w.public_key), 65)

    def test_create_unique(self):
        self.assertNotEqual(Wallet.create().address, Wallet.create().address)

    def test_from_seed_deterministic(self):
        a = Wallet.from_seed("correct horse battery staple")
        b = Wallet.from_seed("correct horse battery staple")
        c = Wallet.from_seed("another seed")
        self.assertEqual(a.address, b.address)
        self.assertNotEqual(a.address, c.address)

    def test_to_dict_hides_private_key(self):
        d = Wallet.create().to_dict()
        self.assertEqual(set(d), {"address", "public_key"})


class TestSigning(unittest.TestCase):

    def setUp(self):
        self.wallet = Wallet.create()

    def test_sign_and_verify(self):
        sig = self.wallet.sign_message(b"resell ticket 1")
        self.assertTrue(self.wallet.verify_message(b"resell ticket 1", sig))

    def test_tampered_message_fails(self):
        sig = self.wallet.sign_message(b"resell ticket 1")
        self.assertFalse(self.wallet.verify_message(b"resell ticket 2", sig))

    def test_other_key_fails(self):
        sig = sign(self.wallet.private_key, b"msg")
        other = Wallet.create()
        self.assertFalse(verify(other.public_key, b"msg", sig))

    def test_garbage_signature_fails(self):
        self.assertFalse(verify(self.wallet.public_key, b"msg", b"\x00" * 10))

    def test_garbage_public_key_fails(self):
        sig = self.wallet.sign_message(b"msg")
        self.assertFalse(verify(b"\x04" + b"\x00" * 64, b"msg", sig))


class TestKeystore:

    def test_export_import(self):
        w = Wallet.create()
        data = w.export_encrypted("hunter2")
        assert "private_key" not in data
        restored = Wallet.import_encrypted(data, "hunter2")
        assert restored.private_key == w.private_key
        assert restored.address == w.address

    def test_wrong_passphrase(self):
        data = Wallet.create().export_encrypted("hunter2")
        with pytest.raises(ValueError):
            Wallet.import_encrypted(data, "wrong")

    def test_load_or_create(self, tmp_path):
        path = tmp_path / "keys" / "admin.json"
        first = Wallet.load_or_create(str(path), "pw")
        assert path.exists()
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        assert json.loads(path.read_text())["address"] == first.address

        second = Wallet.load_or_create(str(path), "pw")
        assert second.address == first.address
        assert second.private_key == first.private_key


if __name__ == "__main__":
    unittest.main()
