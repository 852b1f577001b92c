"""
Encrypted payment provider credentials per app
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text
from datetime import datetime

from ..base import Base


class PaymentProviderCredential(Base):
    """
    Provider credential bundle for one app

    Secret material is stored encrypted (iv:ciphertext:tag hex) and only
    decrypted by CredentialVault.
    """
    __tablename__ = "provider_credentials"

    id = Column(Integer, primary_key=True)
    app_id = Column(Integer, ForeignKey("apps.id"), nullable=False, unique=True)
    provider = Column(String(30), nullable=False)
    environment = Column(String(10), nullable=False)

    secret_key_encrypted = Column(Text, nullable=False)
    webhook_secret_encrypted = Column(Text, nullable=True)
    public_key = Column(String(500), nullable=True)
    merchant_id = Column(String(200), nullable=True)
    api_url = Column(String(500), nullable=True)

    connection_status = Column(String(20), default="pending", nullable=False)
    last_tested_at = Column(DateTime, nullable=True)
    last_error = Column(String(1000), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<PaymentProviderCredential(app_id={self.app_id}, provider={self.provider}, status={self.connection_status})>"
