from sqlalchemy import Column, Integer, String, DateTime, JSON, UniqueConstraint
from avr_tracker.models.base import Base
from datetime import datetime


class Document(Base):
    """One document of the document store.

    ``collection`` is the full collection path, e.g. ``projects`` or
    ``projects/<id>/expenses``.
    """
    __tablename__ = "documents"
    __table_args__ = (UniqueConstraint("collection", "doc_id", name="uq_documents_path"),)

    id = Column(Integer, primary_key=True, index=True)
    collection = Column(String(512), index=True, nullable=False)
    doc_id = Column(String(128), nullable=False)
    data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
