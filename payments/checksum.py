"""X-VERIFY checksums for the PhonePe pay, status and refund APIs.

    sha256(payload + endpoint_path + salt_key).hexdigest() + "###" + salt_index

The status API hashes the request path instead of a body. Everything here is
pure; verification never raises on malformed input.
"""

import hashlib
import hmac

SEPARATOR = "###"


def _bytes(value) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return str(value).encode("utf-8")


def _digest(*parts) -> str:
    return hashlib.sha256(b"".join(_bytes(p) for p in parts)).hexdigest()


def sign(payload, endpoint_path: str, salt_key: str, salt_index) -> str:
    return f"{_digest(payload, endpoint_path, salt_key)}{SEPARATOR}{salt_index}"


def sign_path(path: str, salt_key: str, salt_index) -> str:
    return f"{_digest(path, salt_key)}{SEPARATOR}{salt_index}"


def verify(signature, payload, salt_key: str, expected_salt_index, endpoint_path: str = "") -> bool:
    if not isinstance(signature, str) or SEPARATOR not in signature or payload is None:
        return False
    received_hash, _, received_index = signature.strip().rpartition(SEPARATOR)
    if received_index != str(expected_salt_index):
        return False
    try:
        expected = _digest(payload, endpoint_path, salt_key)
        return hmac.compare_digest(expected.encode("ascii"), received_hash.lower().encode("utf-8"))
    except (UnicodeError, TypeError):
        return False


class SignatureEngine:
    """Checksum helpers bound to one merchant's salt."""

    def __init__(self, salt_key: str, salt_index):
        self.salt_key = salt_key
        self.salt_index = str(salt_index)

    def sign(self, payload, endpoint_path: str) -> str:
        return sign(payload, endpoint_path, self.salt_key, self.salt_index)

    def sign_path(self, path: str) -> str:
        return sign_path(path, self.salt_key, self.salt_index)

    def verify(self, signature, payload, endpoint_path: str = "") -> bool:
        return verify(signature, payload, self.salt_key, self.salt_index, endpoint_path)
