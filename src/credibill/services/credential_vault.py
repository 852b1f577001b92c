"""
Credential vault - encryption at rest for payment provider credentials

AES-256-GCM with a key derived from the injected master key (SHA-256).
Ciphertext format: iv_hex:ciphertext_hex:tag_hex
"""
import hashlib
import logging
import secrets
from datetime import datetime
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlalchemy.orm import Session

from ..exceptions import CredentialError, NotFoundError, BillingValidationError
from ..db.models import App, PaymentProviderCredential
from .payment_adapters.base import ProviderCredentials, ConnectionTestResult
from .payment_adapters.factory import ADAPTERS

logger = logging.getLogger(__name__)

IV_LENGTH = 12
TAG_LENGTH = 16


class CredentialEncryption:
    """Symmetric encryption of credential strings"""

    def __init__(self, master_key: str):
        """
        Args:
            master_key: Server-side secret supplied by the secret store
        """
        if not master_key:
            raise CredentialError("Encryption master key is not configured")
        self._key = hashlib.sha256(master_key.encode("utf-8")).digest()

    def encrypt(self, plaintext: str) -> str:
        iv = secrets.token_bytes(IV_LENGTH)
        sealed = AESGCM(self._key).encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{iv.hex()}:{ciphertext.hex()}:{tag.hex()}"

    def decrypt(self, encrypted: str) -> str:
        """
        Raises:
            CredentialError: malformed value, wrong key or tampered ciphertext
        """
        parts = encrypted.split(":") if encrypted else []
        if len(parts) != 3:
            raise CredentialError("Invalid encrypted credential format")

        try:
            iv, ciphertext, tag = (bytes.fromhex(part) for part in parts)
        except ValueError as e:
            raise CredentialError("Invalid encrypted credential format") from e

        try:
            plaintext = AESGCM(self._key).decrypt(iv, ciphertext + tag, None)
        except (InvalidTag, ValueError) as e:
            raise CredentialError("Failed to decrypt credential") from e
        return plaintext.decode("utf-8")


class CredentialVault:
    """Stores and loads each app's provider credential bundle"""

    def __init__(self, db: Session, encryption: CredentialEncryption):
        self.db = db
        self.encryption = encryption

    def save_credentials(
        self,
        app: App,
        provider: str,
        secret_key: str,
        public_key: Optional[str] = None,
        merchant_id: Optional[str] = None,
        api_url: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        environment: Optional[str] = None
    ) -> PaymentProviderCredential:
        if provider not in ADAPTERS:
            raise BillingValidationError(f"Unsupported payment provider: {provider}")
        if app.payment_provider and app.payment_provider != provider:
            raise BillingValidationError(
                f"App {app.id} is bound to {app.payment_provider}; the payment provider cannot be changed"
            )
        if not secret_key:
            raise BillingValidationError("secret_key is required")

        record = self.db.query(PaymentProviderCredential).filter(
            PaymentProviderCredential.app_id == app.id
        ).first()
        if record is None:
            record = PaymentProviderCredential(app_id=app.id, provider=provider)
            self.db.add(record)

        record.environment = environment or app.environment
        record.secret_key_encrypted = self.encryption.encrypt(secret_key)
        record.webhook_secret_encrypted = self.encryption.encrypt(webhook_secret) if webhook_secret else None
        record.public_key = public_key
        record.merchant_id = merchant_id
        record.api_url = api_url
        record.connection_status = "pending"
        record.last_error = None

        app.payment_provider = provider
        self.db.flush()

        logger.info(f"Saved {provider} credentials for app {app.id}")
        return record

    def get_record(self, app_id: int) -> PaymentProviderCredential:
        record = self.db.query(PaymentProviderCredential).filter(
            PaymentProviderCredential.app_id == app_id
        ).first()
        if record is None:
            raise NotFoundError(f"No payment provider credentials configured for app {app_id}")
        return record

    def load_credentials(self, app_id: int) -> ProviderCredentials:
        """Decrypted credential bundle for an app's adapter"""
        record = self.get_record(app_id)
        return ProviderCredentials(
            secret_key=self.encryption.decrypt(record.secret_key_encrypted),
            public_key=record.public_key,
            merchant_id=record.merchant_id,
            api_url=record.api_url,
            webhook_secret=(
                self.encryption.decrypt(record.webhook_secret_encrypted)
                if record.webhook_secret_encrypted else None
            ),
        )

    def record_connection_test(self, app_id: int, result: ConnectionTestResult) -> PaymentProviderCredential:
        record = self.get_record(app_id)
        record.connection_status = "connected" if result.success else "error"
        record.last_tested_at = datetime.utcnow()
        record.last_error = None if result.success else result.message[:1000]
        self.db.flush()
        return record


def get_credential_vault(db: Session) -> CredentialVault:
    """Vault wired with the master key from configuration"""
    from ..config import config
    return CredentialVault(db, CredentialEncryption(config.ENCRYPTION_KEY))
