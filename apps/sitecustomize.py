"""Early bootstrapping for Mechiee when `apps/` is on `sys.path`.

This module is imported automatically by Python at startup if found on
`sys.path` (see the `site` module). It loads environment variables from `.env`
files (package-local first, then repo root) so `STORE_BACKEND`, `MONGO_URI`
and friends are visible before settings are built.

Guarded by `MECHIEE_ENV_LOADED` so repeated imports do not reload the file.
"""

from __future__ import annotations

import os
from pathlib import Path


def _load_env_once() -> None:
    if os.environ.get("MECHIEE_ENV_LOADED") == "1":
        return
    if (os.environ.get("APP_ENV") or "").strip().lower() in {"test", "ci"}:
        os.environ["MECHIEE_ENV_LOADED"] = "1"
        return

    from dotenv import load_dotenv

    apps_dir = Path(__file__).resolve().parent
    pkg_env = apps_dir / "mechiee" / ".env"
    root_env = apps_dir.parent / ".env"

    if pkg_env.exists():
        load_dotenv(pkg_env)
    elif root_env.exists():
        load_dotenv(root_env)
    os.environ["MECHIEE_ENV_LOADED"] = "1"


_load_env_once()
