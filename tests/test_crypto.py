import base64
import os
import unittest

from calhub.crypto import NONCE_LENGTH, TAG_LENGTH, AesGcmCipher
from calhub.errors import DecryptionFailedError, EncryptionKeyError


class AesGcmCipherTests(unittest.TestCase):
    def setUp(self) -> None:
        self.cipher = AesGcmCipher.from_base64_key(AesGcmCipher.generate_key())

    def test_round_trip_preserves_unicode(self) -> None:
        plaintext = '{"accessToken": "ya29.トークン"}'
        self.assertEqual(self.cipher.decrypt(self.cipher.encrypt(plaintext)), plaintext)

    def test_same_plaintext_gets_fresh_nonce(self) -> None:
        first = self.cipher.encrypt("secret")
        second = self.cipher.encrypt("secret")
        self.assertNotEqual(first, second)
        self.assertEqual(len(base64.b64decode(first)), NONCE_LENGTH + len(b"secret") + TAG_LENGTH)

    def test_wrong_key_fails_authentication(self) -> None:
        token = self.cipher.encrypt("secret")
        other = AesGcmCipher(os.urandom(32))
        with self.assertRaises(DecryptionFailedError):
            other.decrypt(token)

    def test_tampered_ciphertext_is_rejected(self) -> None:
        raw = bytearray(base64.b64decode(self.cipher.encrypt("secret")))
        raw[-1] ^= 0x01
        with self.assertRaises(DecryptionFailedError):
            self.cipher.decrypt(base64.b64encode(bytes(raw)).decode("ascii"))

    def test_truncated_and_malformed_input_is_rejected(self) -> None:
        short = base64.b64encode(b"\x00" * (NONCE_LENGTH + TAG_LENGTH - 1)).decode("ascii")
        with self.assertRaises(DecryptionFailedError):
            self.cipher.decrypt(short)
        with self.assertRaises(DecryptionFailedError):
            self.cipher.decrypt("not base64 !!")

    def test_key_validation(self) -> None:
        with self.assertRaisesRegex(EncryptionKeyError, "required"):
            AesGcmCipher.from_base64_key("")
        with self.assertRaises(EncryptionKeyError):
            AesGcmCipher.from_base64_key("%%%")
        with self.assertRaisesRegex(EncryptionKeyError, "32 bytes"):
            AesGcmCipher.from_base64_key(base64.b64encode(b"k" * 16).decode("ascii"))


if __name__ == "__main__":
    unittest.main()
