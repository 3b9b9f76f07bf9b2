"""
Shared SQLAlchemy Base for companion database models.

All ORM models should import `Base` from this module to ensure a single
metadata registry across the application.
"""

from sqlalchemy.orm import declarative_base

Base = declarative_base()
