"""Database subsystem for notiflow.

Public API::

    from notiflow.db import init_database
"""

from notiflow.db.init import SchemaMismatchError, init_database, verify_status_table

__all__ = ["SchemaMismatchError", "init_database", "verify_status_table"]
