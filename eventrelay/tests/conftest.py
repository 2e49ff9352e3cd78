from __future__ import annotations

import os
import tempfile

# Point settings at a throwaway SQLite file before any eventrelay module builds the engine.
_DB_DIR = tempfile.mkdtemp(prefix="eventrelay-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/eventrelay.db"
os.environ["SECRETS_MASTER_KEY"] = "eventrelay-test-master-key"
os.environ["AUTH_ENABLED"] = "true"
os.environ["ADMIN_API_TOKEN"] = "test-admin-token"

from eventrelay.core.config import get_settings  # noqa: E402


get_settings.cache_clear()
