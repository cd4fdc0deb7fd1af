"""
Document repository - Data access layer for the live collections.
Documents are stored as tagged JSON bodies, one row per document.
"""
import uuid
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy.orm import Session

from storevault.constants import DOCUMENT_ID_KEY, OWNER_KEY
from storevault.models import Document
from storevault.services.snapshot_codec import decode_document, encode_document


def _owner_of(doc: dict) -> Optional[str]:
    owner = doc.get(OWNER_KEY)
    return str(owner) if owner is not None else None


def _to_row(collection: str, doc: dict) -> Document:
    body = dict(doc)
    if body.get(DOCUMENT_ID_KEY) is None:
        body[DOCUMENT_ID_KEY] = uuid.uuid4().hex
    return Document(
        collection=collection,
        doc_id=str(body[DOCUMENT_ID_KEY]),
        owner_id=_owner_of(body),
        body=encode_document(body),
    )


class DocumentRepository:
    """Repository for live collection documents"""

    @staticmethod
    def find(db: Session, collection: str, owner_id: Optional[str] = None) -> List[dict]:
        """Get documents of a collection, optionally only one owner's, in insertion order"""
        query = db.query(Document).filter(Document.collection == collection)
        if owner_id is not None:
            query = query.filter(Document.owner_id == owner_id)
        return [decode_document(row.body) for row in query.order_by(Document.id).all()]

    @staticmethod
    def insert(db: Session, collection: str, doc: dict) -> dict:
        """Insert a document; assigns an _id when missing"""
        row = _to_row(collection, doc)
        db.add(row)
        db.commit()
        db.refresh(row)
        return decode_document(row.body)

    @staticmethod
    def insert_many(db: Session, collection: str, docs: Iterable[dict]) -> int:
        """Insert several documents in one transaction"""
        rows = [_to_row(collection, doc) for doc in docs]
        db.add_all(rows)
        db.commit()
        return len(rows)

    @staticmethod
    def update(db: Session, collection: str, doc_id: str, changes: dict) -> Optional[dict]:
        """Merge changes into a document; returns None if it does not exist"""
        row = db.query(Document).filter(
            Document.collection == collection,
            Document.doc_id == str(doc_id)
        ).first()
        if not row:
            return None

        body = decode_document(row.body)
        body.update(changes)
        body[DOCUMENT_ID_KEY] = row.doc_id
        row.body = encode_document(body)
        row.owner_id = _owner_of(body)
        db.commit()
        db.refresh(row)
        return body

    @staticmethod
    def delete(db: Session, collection: str, doc_id: str) -> bool:
        """Delete a document by _id"""
        deleted = db.query(Document).filter(
            Document.collection == collection,
            Document.doc_id == str(doc_id)
        ).delete(synchronize_session=False)
        db.commit()
        return deleted > 0

    @staticmethod
    def snapshot(db: Session, collections: Sequence[str]) -> Dict[str, List[dict]]:
        """Read every document of the given collections using one session"""
        return {name: DocumentRepository.find(db, name) for name in collections}

    @staticmethod
    def replace_owner_documents(db: Session, collection: str, owner_id: str,
                                docs: Sequence[dict]) -> int:
        """
        Replace one owner's documents in a collection within a single transaction.

        Other owners' documents and unowned documents are not touched. On any
        error the transaction is rolled back and the collection is unchanged.

        Returns:
            Number of documents inserted
        """
        try:
            db.query(Document).filter(
                Document.collection == collection,
                Document.owner_id == owner_id
            ).delete(synchronize_session=False)
            db.flush()

            rows = [_to_row(collection, doc) for doc in docs]
            db.add_all(rows)
            db.commit()
            return len(rows)
        except Exception:
            db.rollback()
            raise
