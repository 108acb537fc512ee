from __future__ import annotations

from pathlib import Path


def app_base_dir() -> Path:
    """Repo root, where the .env file lives."""
    # .../src/fiscal_receipts/config/paths.py -> repo root is 3 parents up
    return Path(__file__).resolve().parents[3]


def env_file_path() -> Path:
    return app_base_dir() / ".env"
