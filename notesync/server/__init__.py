"""HTTP API for notesync.

Exposes the push/pull sync endpoints and notes CRUD using FastAPI.
"""

from .app import create_app
from .auth import IdentityProvider, StaticTokenIdentity

__all__ = ["IdentityProvider", "StaticTokenIdentity", "create_app"]
