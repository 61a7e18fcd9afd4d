from sqlalchemy.orm import Session
from mastery_engine.models import Book, Concept
from mastery_engine.schemas import BookCreate, ConceptCreate, numeric_id_sort_key
from mastery_engine.database import commit_or_raise
from typing import List, Optional

def create_book(db: Session, book: BookCreate) -> Book:
    """Create book record"""
    db_book = Book(**book.model_dump())
    db.add(db_book)
    commit_or_raise(db, "create book")
    db.refresh(db_book)
    return db_book

def get_book(db: Session, book_id: str) -> Optional[Book]:
    """Get book by ID"""
    return db.query(Book).filter(Book.id == book_id).first()

def create_concept(db: Session, concept: ConceptCreate) -> Concept:
    """Create concept record"""
    data = concept.model_dump()
    if concept.importance is not None:
        data["importance"] = concept.importance.value
    db_concept = Concept(**data)
    db.add(db_concept)
    commit_or_raise(db, "create concept")
    db.refresh(db_concept)
    return db_concept

def get_concept(db: Session, concept_id: str) -> Optional[Concept]:
    """Get concept by ID"""
    return db.query(Concept).filter(Concept.id == concept_id).first()

def list_concepts(db: Session, book_id: str) -> List[Concept]:
    """Get all concepts of a book in natural id order"""
    concepts = db.query(Concept).filter(Concept.book_id == book_id).all()
    return sorted(concepts, key=lambda c: numeric_id_sort_key(c.id))
