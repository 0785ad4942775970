"""Root pytest configuration.

The application package lives in ``voucher_portal/`` next to this file.
Settings are read when ``voucher_portal.core.config`` is first imported, so
the test environment (in-memory SQLite, stub Dramatiq broker, filesystem
storage) is put in place here before any test module imports the package.
"""

from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path

BACKEND_DIR = Path(__file__).resolve().parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["STORAGE_BACKEND"] = "filesystem"
os.environ.setdefault("STORAGE_DIRECTORY", tempfile.mkdtemp(prefix="voucher-portal-storage-"))
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ["DEV_AUTH_BYPASS"] = "false"
