"""
Shared module for cross-cutting concerns of the allergen engine.

STRUCTURE:
- shared.config: Configuration
  - settings.py: Environment config (pydantic-settings)
  - logging.py: Structured logging
  - constants.py: AllergenTier, IngredientType, EngineState, field names

- shared.infrastructure: Database and correlation
  - db.py: SQLAlchemy sessions, safe_commit()
  - correlation.py: Recompute-pass ids attached to log records

- shared.utils: Utilities
  - exceptions.py: Engine exceptions with auto-logging

IMPORT EXAMPLES:
    from shared.config.settings import settings
    from shared.config.constants import AllergenTier
    from shared.infrastructure.db import get_db_context, safe_commit
    from shared.utils.exceptions import WriteConflictError
"""
