"""`.env` loading for local runs.

Credentials (BSKY_PASSWORD, S3 keys) are usually kept in a `.env` file next
to the repo rather than exported in the shell. Values already present in the
environment always win unless `override=True`.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import MutableMapping, Optional

ENV_FILE_VAR = "SKYWATCH_ENV_FILE"


def parse_env_line(line: str) -> Optional[tuple[str, str]]:
    """`KEY=value`, `export KEY=value`, quoted values, trailing `# comment` on unquoted values."""
    line = line.strip()
    if not line or line.startswith("#") or "=" not in line:
        return None
    if line.startswith("export "):
        line = line[len("export "):].lstrip()
    key, value = (part.strip() for part in line.split("=", 1))
    if not key or " " in key:
        return None
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return key, value[1:-1]
    if " #" in value:
        value = value.split(" #", 1)[0].rstrip()
    return key, value


def env_file_candidates(root: Optional[Path] = None) -> list[Path]:
    explicit = os.environ.get(ENV_FILE_VAR)
    if explicit:
        return [Path(explicit)]
    # backend/store/core/env.py -> repo root
    repo_root = root or Path(__file__).resolve().parents[3]
    return [repo_root / ".env", repo_root / "backend" / ".env"]


def load_env_if_present(
    *,
    override: bool = False,
    root: Optional[Path] = None,
    environ: Optional[MutableMapping[str, str]] = None,
) -> list[Path]:
    """Load `.env` files into the environment; returns the files that were read."""
    target = os.environ if environ is None else environ
    loaded: list[Path] = []
    for path in env_file_candidates(root):
        if not path.is_file():
            continue
        try:
            content = path.read_text(encoding="utf-8")
        except OSError:
            continue
        loaded.append(path)
        for raw in content.splitlines():
            parsed = parse_env_line(raw)
            if parsed is None:
                continue
            key, value = parsed
            if override or key not in target:
                target[key] = value
    return loaded
