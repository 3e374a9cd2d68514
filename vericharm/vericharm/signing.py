"""
Veri-Charm Wallet Signers

Ed25519 signers used to sign verification verdicts and commitment
proofs. The backend is selected explicitly by VERICHARM_SIGNER:

    ephemeral   in-process key generated at startup (dev/test)
    file        key JSON file {"kid", "private_key_b64"}
    aws_kms     AWS KMS Ed25519 key via boto3
"""

import hashlib
import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .config import Settings, is_production
from .util import b64d, b64e

logger = logging.getLogger(__name__)

ALGORITHM = "Ed25519"


def address_from_public_key(public_key: bytes) -> str:
    """Wallet address derived from an Ed25519 public key."""
    return "wallet:" + hashlib.sha256(public_key).hexdigest()[:40]


class Signer(ABC):
    """Wallet capability: sign bytes and report the wallet address."""

    @abstractmethod
    def sign(self, payload: bytes) -> str:
        """Sign payload and return the base64 signature."""
        pass

    @abstractmethod
    def get_address(self) -> str:
        pass

    @abstractmethod
    def public_key_b64(self) -> str:
        pass

    @property
    def kid(self) -> str:
        return self.get_address()

    def sign_envelope(self, payload: bytes) -> Dict[str, Any]:
        """Signature block attached to signed artifacts."""
        return {
            "alg": ALGORITHM,
            "kid": self.kid,
            "signer": self.get_address(),
            "public_key_b64": self.public_key_b64(),
            "sig_b64": self.sign(payload),
        }


class EphemeralSigner(Signer):
    """In-memory key. Lost on restart."""

    def __init__(self, signing_key: Optional[SigningKey] = None):
        self._sk = signing_key or SigningKey.generate()
        self._pk = bytes(self._sk.verify_key)

    def sign(self, payload: bytes) -> str:
        return b64e(self._sk.sign(payload).signature)

    def get_address(self) -> str:
        return address_from_public_key(self._pk)

    def public_key_b64(self) -> str:
        return b64e(self._pk)


class FileWalletSigner(EphemeralSigner):
    """Ed25519 key loaded once from a JSON file."""

    def __init__(self, signing_key_path: str):
        with open(signing_key_path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        super().__init__(SigningKey(b64d(raw["private_key_b64"])))
        self._kid = raw.get("kid") or self.get_address()

    @property
    def kid(self) -> str:
        return self._kid


class KmsWalletSigner(Signer):
    """
    AWS KMS signer using an Ed25519 SIGN_VERIFY key.

    Signs with SigningAlgorithm ED25519_SHA_512 and MessageType RAW. The
    public key is supplied out of band (AWS_KMS_PUBLIC_KEY_B64) so address
    derivation does not need a KMS round trip.
    """

    def __init__(
        self,
        kms_key_id: str,
        public_key_b64: str,
        region: Optional[str] = None,
        kid: Optional[str] = None
    ):
        self._kms_key_id = kms_key_id
        self._public_key_b64 = public_key_b64
        self._region = region or None
        self._kid = kid or "aws-kms-ed25519"
        self._client = None
        self._lock = threading.Lock()

    def _get_client(self):
        """Lazy-load boto3 client."""
        with self._lock:
            if self._client is None:
                try:
                    import boto3
                except ImportError as e:
                    raise RuntimeError(
                        "boto3 required for AWS KMS signing. Install with: pip install boto3"
                    ) from e
                self._client = boto3.client("kms", region_name=self._region)
            return self._client

    def sign(self, payload: bytes) -> str:
        resp = self._get_client().sign(
            KeyId=self._kms_key_id,
            Message=payload,
            MessageType="RAW",
            SigningAlgorithm="ED25519_SHA_512"
        )
        return b64e(resp["Signature"])

    def get_address(self) -> str:
        return address_from_public_key(b64d(self._public_key_b64))

    def public_key_b64(self) -> str:
        return self._public_key_b64

    @property
    def kid(self) -> str:
        return self._kid


def verify_signature(payload: bytes, signature_b64: str, public_key_b64: str) -> bool:
    """
    Verify an Ed25519 signature.

    Returns:
        True if signature is valid, False otherwise (including malformed input)
    """
    try:
        VerifyKey(b64d(public_key_b64)).verify(payload, b64d(signature_b64))
        return True
    except (BadSignatureError, ValueError, TypeError):
        return False


def generate_wallet_key(kid: Optional[str] = None) -> Dict[str, str]:
    """New Ed25519 wallet key in the FileWalletSigner JSON shape."""
    sk = SigningKey.generate()
    pk = bytes(sk.verify_key)
    address = address_from_public_key(pk)
    return {
        "kid": kid or address,
        "address": address,
        "private_key_b64": b64e(bytes(sk)),
        "public_key_b64": b64e(pk),
    }


def create_signer(settings: Optional[Settings] = None) -> Signer:
    """Factory selecting the signer backend named in configuration."""
    settings = settings or Settings()
    backend = settings.signer_backend

    if backend == "aws_kms":
        if not settings.aws_kms_key_id or not settings.aws_kms_public_key_b64:
            raise ValueError("AWS_KMS_KEY_ID and AWS_KMS_PUBLIC_KEY_B64 required for aws_kms signer")
        return KmsWalletSigner(
            kms_key_id=settings.aws_kms_key_id,
            public_key_b64=settings.aws_kms_public_key_b64,
            region=settings.aws_region,
        )
    if backend == "file":
        return FileWalletSigner(settings.signing_key_path)
    if backend == "ephemeral":
        if is_production(settings):
            raise ValueError("ephemeral signer is not allowed in prod; use VERICHARM_SIGNER=file or aws_kms")
        logger.info("Using ephemeral signing key")
        return EphemeralSigner()
    raise ValueError(f"Unknown VERICHARM_SIGNER: {backend}")
