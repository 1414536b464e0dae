"""Application package.

Imports the store layer eagerly so ``lashbook.app.core.db`` and the ORM
models are registered before any service module is used.
"""

from .core import db
from .domain import models

__all__ = ["db", "models"]
