from .connection import (
    Base, get_engine, get_session_factory, build_engine,
    build_session_factory, init_db, create_tables, dispose_engine
)

# Import matching models to ensure they are registered with Base
from .matching_models import (
    TransactionDB, InboxDocumentDB, MatchSuggestionDB, MatchAuditLogDB, QueueJobDB
)

__all__ = [
    'Base', 'get_engine', 'get_session_factory', 'build_engine',
    'build_session_factory', 'init_db', 'create_tables', 'dispose_engine',
    # Matching models
    'TransactionDB', 'InboxDocumentDB', 'MatchSuggestionDB', 'MatchAuditLogDB',
    'QueueJobDB',
]
