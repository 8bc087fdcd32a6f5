# eventsight/core/database/base.py
"""
SQLAlchemy declarative base.

All ORM models in ``eventsight.core.database.models`` register against this base
so ``DatabaseService.init_db`` can create their tables.
"""

from sqlalchemy.orm import declarative_base

# Declarative base for all models
Base = declarative_base()
