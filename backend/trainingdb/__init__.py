# backend/trainingdb/__init__.py
"""
Import ORM models from each app so that:

- Alembic and Base.metadata.create_all() see every relational table.
- DocumentBase.metadata carries the module document tables.

The actual model classes are kept in trainingdb/apps/*/models.py.
"""

from .apps.audit import models as audit_models        # audit trail
from .apps.modules import models as modules_models    # module documents (document store)
from .apps.programs import models as programs_models  # cycles/programs, registrations, presence, sync jobs

__all__ = [
    "audit_models",
    "modules_models",
    "programs_models",
]
