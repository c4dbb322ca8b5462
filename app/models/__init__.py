"""
Model package initializer.

This module exists to make sure SQLAlchemy's registry is populated in any runtime
that uses the ORM outside of `app/main.py` (scripts, workers, one-off jobs).
"""

# Import side-effects: register ORM mappings.
from app.models import billing  # noqa: F401
