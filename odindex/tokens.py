import base64
import hashlib
import hmac
import re
import secrets
import string
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from odindex.config import ConfigurationError

NONCE_ALPHABET = string.ascii_lowercase + string.digits
NONCE_LENGTH = 8
TOKEN_PATTERN = re.compile(r"^[a-z0-9]{8}-[0-9a-f]{128}$")
ITEM_ID_PATTERN = re.compile(r"^[A-Za-z0-9!]+$")


def make_nonce() -> str:
    return "".join(secrets.choice(NONCE_ALPHABET) for _ in range(NONCE_LENGTH))


class TokenCodec:
    """Per-file access tokens.

    A token proves that its holder knows a gate's password and is asking for
    one particular file: ``<nonce>-<hmac>``, where the HMAC-SHA512 covers
    ``nonce/password/file_id``. Nothing is stored; verification recomputes the
    MAC with the presented nonce.
    """

    def __init__(self, secret_key: Optional[str]):
        self.secret_key = secret_key

    def _key(self) -> bytes:
        if not self.secret_key:
            raise ConfigurationError("SECRET_KEY is not set, refusing to mint or verify access tokens.")
        return self.secret_key.encode()

    def _digest(self, nonce: str, password: str, file_id: str) -> str:
        raw = f"{nonce}/{password}/{file_id}".encode()
        return hmac.new(self._key(), raw, hashlib.sha512).hexdigest()

    def mint(self, password: str, file_id: str, nonce: Optional[str] = None) -> str:
        if nonce is None:
            nonce = make_nonce()
        return f"{nonce}-{self._digest(nonce, password, file_id)}"

    def verify(self, token: Optional[str], password: str, file_id: str) -> bool:
        # A missing key fails loudly even for tokens that would be rejected
        self._key()
        if not isinstance(token, str) or not TOKEN_PATTERN.match(token):
            return False
        nonce = token.split("-", 1)[0]
        expected = f"{nonce}-{self._digest(nonce, password, file_id)}"
        return hmac.compare_digest(expected, token)


class IdCipher:
    """Obfuscates drive item ids before they leave the server."""

    def __init__(self, secret_key: Optional[str]):
        self.secret_key = secret_key
        self._fernet = None

    @property
    def fernet(self) -> Fernet:
        if not self.secret_key:
            raise ConfigurationError("SECRET_KEY is not set, refusing to encode item ids.")
        if self._fernet is None:
            digest = hashlib.sha256(self.secret_key.encode()).digest()
            self._fernet = Fernet(base64.urlsafe_b64encode(digest))
        return self._fernet

    def encrypt(self, item_id: str) -> str:
        return self.fernet.encrypt(item_id.encode()).decode()

    def decrypt(self, token: str) -> Optional[str]:
        """Returns the item id, or None when the token is forged or malformed."""
        try:
            item_id = self.fernet.decrypt(token.encode()).decode()
        except (InvalidToken, UnicodeDecodeError):
            return None
        if not ITEM_ID_PATTERN.match(item_id):
            return None
        return item_id
