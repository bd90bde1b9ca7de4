"""
Database management and data access layer.
"""

from .connection import DatabaseConnection
from .manager import IndexerStore
from .models import Base, IndexedEventModel, IndexerCheckpointModel, StakerPositionModel
from .sqlalchemy_manager import SQLAlchemyIndexerStore

__all__ = [
    'DatabaseConnection',
    'IndexerStore',
    'SQLAlchemyIndexerStore',
    'Base',
    'IndexedEventModel',
    'IndexerCheckpointModel',
    'StakerPositionModel',
]
