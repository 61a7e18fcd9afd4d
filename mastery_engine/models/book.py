from sqlalchemy import Column, String, Text, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
from mastery_engine.database import Base

class Book(Base):
    """A book whose concepts are practiced"""
    __tablename__ = "books"

    id = Column(String, primary_key=True, index=True)
    title = Column(String, nullable=False)
    author = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)

    concepts = relationship("Concept", back_populates="book", cascade="all, delete-orphan")


class Concept(Base):
    """Single extracted unit of book content, tracked independently for mastery"""
    __tablename__ = "concepts"

    id = Column(String, primary_key=True, index=True)  # e.g. "b1i3"
    book_id = Column(String, ForeignKey("books.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, default="")
    importance = Column(String)  # foundation, building_block, enhancement
    created_at = Column(DateTime, default=datetime.utcnow)

    book = relationship("Book", back_populates="concepts")
