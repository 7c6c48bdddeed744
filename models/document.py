from sqlalchemy import Column, String, JSON, Index
from models.base import Base, TimestampMixin

class Document(Base, TimestampMixin):
    """Schemaless document addressed by (collection, id)."""
    __tablename__ = "documents"

    collection = Column(String(64), primary_key=True)
    id = Column(String(64), primary_key=True)
    data = Column(JSON, nullable=False)

Index("idx_documents_collection_created", Document.collection, Document.created_at)
