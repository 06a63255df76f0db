# tenderly/services/signature_service.py
"""RSA-SHA256 signatures over canonical prescription JSON."""
import base64
import json
import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from ..config import get_settings

logger = logging.getLogger(__name__)

SIGNATURE_ALGORITHM = "RS256"


def canonical_json(data: Dict[str, Any]) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str).encode()


class SignatureService:

    def __init__(self, private_key: rsa.RSAPrivateKey, certificate_id: str):
        self.private_key = private_key
        self.certificate_id = certificate_id

    @classmethod
    def from_pem_file(cls, path: str, certificate_id: str) -> "SignatureService":
        with open(path, "rb") as f:
            key = serialization.load_pem_private_key(f.read(), password=None)
        return cls(key, certificate_id)

    @classmethod
    def ephemeral(cls, certificate_id: str) -> "SignatureService":
        logger.warning("No SIGNING_KEY_PATH configured; using a generated signing key (development only)")
        return cls(rsa.generate_private_key(public_exponent=65537, key_size=2048), certificate_id)

    def sign_data(self, data: Dict[str, Any], signed_at: Optional[datetime] = None) -> Dict[str, Any]:
        signature = self.private_key.sign(canonical_json(data), padding.PKCS1v15(), hashes.SHA256())
        return {
            "signature": base64.b64encode(signature).decode(),
            "algorithm": SIGNATURE_ALGORITHM,
            "certificateId": self.certificate_id,
            "signedAt": (signed_at or datetime.now(timezone.utc)).isoformat(),
        }

    def verify(self, data: Dict[str, Any], signature: str) -> bool:
        try:
            self.private_key.public_key().verify(
                base64.b64decode(signature), canonical_json(data), padding.PKCS1v15(), hashes.SHA256()
            )
            return True
        except (InvalidSignature, ValueError):
            return False


@lru_cache()
def get_signature_service() -> SignatureService:
    settings = get_settings()
    if settings.signing_key_path:
        return SignatureService.from_pem_file(settings.signing_key_path, settings.signing_certificate_id)
    return SignatureService.ephemeral(settings.signing_certificate_id)
