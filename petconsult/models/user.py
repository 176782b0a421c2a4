"""User model definitions."""

from sqlalchemy import Column, Integer, String
from petconsult.database import Base


class User(Base):
    """Represents an authenticated caller supplied by the identity provider."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String)
    role = Column(String, nullable=False, default="client")  # client/professional/admin
