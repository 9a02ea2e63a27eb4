# vault.py
"""
Encrypted store for per-exchange API secrets.

Storage layout (one row per exchange in `exchange_credentials`):
  secrets_json -> {"<field>": "<hex-iv>:<hex-ciphertext>", ...}
  last_updated -> ISO timestamp

Every value is encrypted on its own with AES-256-CBC (PKCS7 padding) and a
fresh random 16-byte IV. Plaintext only ever exists in memory.

Reads are forgiving: a value that fails to decrypt comes back as the raw
stored string (logged, never raised) so one damaged field cannot lock the
user out of the others. Values without the "iv:ciphertext" separator are
legacy plaintext and are passed through while `allow_plaintext` is on.
"""
from __future__ import annotations

import datetime
import json
import logging
import os
import re
import threading
from typing import Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .db import db_session
from .errors import CredentialCorrupted
from .models import ExchangeCredential

logger = logging.getLogger(__name__)

KEY_BYTES = 32
IV_BYTES = 16
SEPARATOR = ":"

_HEX64 = re.compile(r"[0-9a-fA-F]{64}")


def derive_key(secret: str) -> bytes:
    """
    64 hex chars -> the raw 32 bytes.
    Anything else -> UTF-8 bytes, space-padded / truncated to 32.
    """
    s = secret.strip()
    if _HEX64.fullmatch(s):
        return bytes.fromhex(s)
    return secret.encode("utf-8")[:KEY_BYTES].ljust(KEY_BYTES, b" ")


def encrypt_value(key: bytes, plaintext: str) -> str:
    iv = os.urandom(IV_BYTES)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    data = padder.update(plaintext.encode("utf-8")) + padder.finalize()
    enc = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ct = enc.update(data) + enc.finalize()
    return f"{iv.hex()}{SEPARATOR}{ct.hex()}"


def decrypt_value(key: bytes, stored: str) -> str:
    """Raises ValueError when the value is not a well-formed ciphertext for `key`."""
    iv_hex, _, ct_hex = stored.partition(SEPARATOR)
    iv, ct = bytes.fromhex(iv_hex), bytes.fromhex(ct_hex)
    if len(iv) != IV_BYTES or not ct or len(ct) % IV_BYTES:
        raise ValueError("malformed ciphertext")
    dec = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    data = dec.update(ct) + dec.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    return (unpadder.update(data) + unpadder.finalize()).decode("utf-8")


def _now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


class CredentialVault:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        key: bytes | str,
        allow_plaintext: bool = True,
    ):
        self.session_factory = session_factory
        self._key = derive_key(key) if isinstance(key, str) else key
        if len(self._key) != KEY_BYTES:
            raise ValueError("vault key must be 32 bytes")
        self.allow_plaintext = allow_plaintext
        self._lock = threading.Lock()

    def save(self, exchange_id: str, credentials: dict[str, str]) -> None:
        """Encrypt every field independently and replace the stored record."""
        secrets = {k: encrypt_value(self._key, str(v)) for k, v in credentials.items()}
        with self._lock, db_session(self.session_factory) as db:
            db.merge(ExchangeCredential(
                exchange_id=exchange_id,
                secrets_json=json.dumps(secrets, sort_keys=True),
                last_updated=_now_iso(),
            ))
        logger.info("Saved %d credential field(s) for %s", len(secrets), exchange_id)

    def get_credentials(self, exchange_id: str) -> Optional[dict[str, str]]:
        """Decrypted fields plus `lastUpdated`, or None when the exchange is not configured."""
        with db_session(self.session_factory) as db:
            row = db.get(ExchangeCredential, exchange_id)
            if row is None:
                return None
            stored: dict[str, str] = json.loads(row.secrets_json)
            last_updated = row.last_updated

        out = {field: self._reveal(exchange_id, field, value) for field, value in stored.items()}
        out["lastUpdated"] = last_updated
        return out

    def delete(self, exchange_id: str) -> bool:
        with self._lock, db_session(self.session_factory) as db:
            row = db.get(ExchangeCredential, exchange_id)
            if row is None:
                return False
            db.delete(row)
        logger.info("Deleted credentials for %s", exchange_id)
        return True

    def list(self) -> list[str]:
        """Configured exchange ids; nothing is decrypted."""
        with db_session(self.session_factory) as db:
            return list(db.scalars(select(ExchangeCredential.exchange_id).order_by(ExchangeCredential.exchange_id)))

    def has(self, exchange_id: str) -> bool:
        return exchange_id in self.list()

    def _reveal(self, exchange_id: str, field: str, stored: str) -> str:
        if SEPARATOR not in stored:
            if self.allow_plaintext:
                return stored
            logger.warning("%s (legacy plaintext not allowed)", CredentialCorrupted(exchange_id, field).message)
            return stored
        try:
            return decrypt_value(self._key, stored)
        except ValueError:
            logger.warning("%s; returning stored value", CredentialCorrupted(exchange_id, field).message)
            return stored
