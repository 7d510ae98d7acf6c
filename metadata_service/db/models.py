"""
SQLAlchemy models for the program registry.
"""
from sqlalchemy import Column, Integer, Text

from metadata_service.db.database import Base


class Program(Base):
    """A registered program: artifact hash -> metadata document."""
    __tablename__ = "programs"

    # Insertion order, used for stable listing
    seq = Column(Integer, primary_key=True, autoincrement=True)
    hash = Column(Text, unique=True, nullable=False, index=True)  # hex BLAKE2b-256
    metadata_json = Column(Text, nullable=False)  # stored verbatim
    created_at = Column(Text, nullable=False)
