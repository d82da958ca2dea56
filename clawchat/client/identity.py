"""Device identity: a persistent Ed25519 key pair used to sign connect requests.

The key file is JSON with base64url (unpadded) encoded raw keys::

    {"version": 1, "deviceId": "...", "publicKey": "...", "privateKey": "..."}

The device id is the SHA-256 hex digest of the raw public key, so it is
stable for as long as the key file survives.
"""

import base64
import hashlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from clawchat.models import DeviceIdentityError

logger = logging.getLogger(__name__)

DEFAULT_IDENTITY_PATH = Path.home() / ".clawchat" / "device.json"

SIGNATURE_VERSION = "v2"


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


@dataclass
class DeviceIdentity:
    device_id: str
    public_key: str
    private_key: ed25519.Ed25519PrivateKey


def build_device_auth_payload(
    device_id: str,
    client_id: str,
    client_mode: str,
    role: str,
    scopes: List[str],
    signed_at_ms: int,
    token: Optional[str],
    nonce: str,
) -> str:
    """Build the pipe-delimited string the gateway expects to be signed."""
    return "|".join([
        SIGNATURE_VERSION,
        device_id,
        client_id,
        client_mode,
        role,
        ",".join(scopes),
        str(signed_at_ms),
        token or "",
        nonce,
    ])


def _raw_public_key(private_key: ed25519.Ed25519PrivateKey) -> bytes:
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def _raw_private_key(private_key: ed25519.Ed25519PrivateKey) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )


class DeviceIdentityStore:
    """Loads or creates the device key pair at ``path``.

    Any failure (unreadable file, corrupt JSON, missing Ed25519 support)
    surfaces as DeviceIdentityError so the handshake can fall back to
    token-only authentication.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self._path = Path(path).expanduser() if path else DEFAULT_IDENTITY_PATH
        self._identity: Optional[DeviceIdentity] = None

    @property
    def path(self) -> Path:
        return self._path

    def load_or_create(self) -> DeviceIdentity:
        """Return the cached identity, reading or generating it on first use."""
        if self._identity is None:
            if self._path.exists():
                self._identity = self._load()
            else:
                self._identity = self._create()
        return self._identity

    def sign(self, private_key: ed25519.Ed25519PrivateKey, payload: str) -> str:
        """Sign ``payload`` and return the base64url signature."""
        try:
            return b64url_encode(private_key.sign(payload.encode("utf-8")))
        except (UnsupportedAlgorithm, TypeError, ValueError) as e:
            raise DeviceIdentityError(f"Signing failed: {e}") from e

    def _load(self) -> DeviceIdentity:
        try:
            with open(self._path) as f:
                data = json.load(f)
            private_key = ed25519.Ed25519PrivateKey.from_private_bytes(
                b64url_decode(data["privateKey"])
            )
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError, UnsupportedAlgorithm) as e:
            raise DeviceIdentityError(f"Cannot load device identity from {self._path}: {e}") from e

        identity = self._identity_for(private_key)
        if data.get("deviceId") and data["deviceId"] != identity.device_id:
            logger.warning(f"Device id in {self._path} does not match its key; using derived id")
        return identity

    def _create(self) -> DeviceIdentity:
        try:
            private_key = ed25519.Ed25519PrivateKey.generate()
        except UnsupportedAlgorithm as e:
            raise DeviceIdentityError(f"Ed25519 unavailable: {e}") from e

        identity = self._identity_for(private_key)
        data = {
            "version": 1,
            "deviceId": identity.device_id,
            "publicKey": identity.public_key,
            "privateKey": b64url_encode(_raw_private_key(private_key)),
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self._path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            raise DeviceIdentityError(f"Cannot write device identity to {self._path}: {e}") from e

        logger.info(f"Created device identity {identity.device_id[:12]} at {self._path}")
        return identity

    @staticmethod
    def _identity_for(private_key: ed25519.Ed25519PrivateKey) -> DeviceIdentity:
        raw_public = _raw_public_key(private_key)
        return DeviceIdentity(
            device_id=hashlib.sha256(raw_public).hexdigest(),
            public_key=b64url_encode(raw_public),
            private_key=private_key,
        )
