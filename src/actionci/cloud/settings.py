from __future__ import annotations
import os

DATABASE_URL = os.environ.get("ACTIONCI_DATABASE_URL", "sqlite:///./actionci.db")
MAX_WORKERS = int(os.environ.get("ACTIONCI_MAX_WORKERS", "0")) or None
WORKSPACE = os.environ.get("ACTIONCI_WORKSPACE", ".")
