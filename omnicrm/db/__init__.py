"""
Database access: the psycopg connection pool and query helpers.
"""

from omnicrm.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, fetch_val
from omnicrm.db.pool import db_pool

__all__ = ["DatabaseError", "db_pool", "execute_query", "fetch_all", "fetch_one", "fetch_val"]
