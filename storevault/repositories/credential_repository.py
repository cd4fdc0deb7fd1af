"""
Credential repository - Data access layer for DriveCredential model.
The records are created by the sign-in flow; the mirror client reads them
and writes refreshed tokens back.
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from storevault.models import DriveCredential


class CredentialRepository:
    """Repository for DriveCredential data access"""

    @staticmethod
    def get(db: Session, user_id: str) -> Optional[DriveCredential]:
        """Get credential for a user"""
        return db.query(DriveCredential).filter(DriveCredential.user_id == user_id).first()

    @staticmethod
    def get_connected(db: Session) -> List[DriveCredential]:
        """Get credentials of every user with Drive connected"""
        return db.query(DriveCredential).filter(
            DriveCredential.connected == True,
            DriveCredential.access_token.isnot(None)
        ).order_by(DriveCredential.user_id).all()

    @staticmethod
    def save_tokens(db: Session, user_id: str, access_token: str,
                    token_expiry_date: Optional[datetime],
                    refresh_token: Optional[str] = None) -> Optional[DriveCredential]:
        """
        Persist refreshed tokens.

        Keeps the stored refresh token when the provider does not return a new one.
        """
        credential = CredentialRepository.get(db, user_id)
        if not credential:
            return None

        credential.access_token = access_token
        credential.token_expiry_date = token_expiry_date
        if refresh_token:
            credential.refresh_token = refresh_token
        credential.connected = True
        db.commit()
        db.refresh(credential)
        return credential

    @staticmethod
    def mark_disconnected(db: Session, user_id: str) -> None:
        """Mark a credential unusable until the user reconnects"""
        credential = CredentialRepository.get(db, user_id)
        if not credential:
            return
        credential.connected = False
        credential.access_token = None
        db.commit()

    @staticmethod
    def set_folder_id(db: Session, user_id: str, folder_id: str) -> None:
        credential = CredentialRepository.get(db, user_id)
        if credential:
            credential.folder_id = folder_id
            db.commit()
