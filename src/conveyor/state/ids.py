from __future__ import annotations

import re
from datetime import date
from pathlib import Path

_NON_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(text: str, fallback: str = "run") -> str:
    cleaned = _NON_SLUG_RE.sub("-", text.strip().lower()).strip("-")
    return cleaned or fallback


def default_run_id(intent: str, today: date | None = None) -> str:
    today = today or date.today()
    return f"{today.isoformat()}-{slugify(intent, 'task')}"


def ensure_unique_run_id(runs_dir: Path, base: str) -> str:
    """Return ``base`` (slugified) or the first free ``base-N`` under ``runs_dir``.

    The existence probe is not atomic: two processes may pick the same id, and
    the loser fails later when the run is created.
    """
    stem = slugify(base)
    candidate = stem
    counter = 2
    while (runs_dir / candidate).exists():
        candidate = f"{stem}-{counter}"
        counter += 1
    return candidate
