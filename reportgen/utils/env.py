"""Lightweight .env loader for local configuration."""

from __future__ import annotations

import os
from pathlib import Path

ENV_FILE_VARIABLE = "REPORTGEN_ENV_FILE"


def default_env_path() -> Path:
  """Return ``$REPORTGEN_ENV_FILE`` when set, otherwise the .env at the repo root."""
  explicit = os.getenv(ENV_FILE_VARIABLE, "").strip()
  if explicit:
    return Path(explicit).expanduser()
  return Path(__file__).resolve().parents[2] / ".env"


def parse_env_line(raw_line: str) -> tuple[str, str] | None:
  """Split one ``KEY=value`` line; comments, blanks and malformed lines yield None."""
  line = raw_line.strip()
  if not line or line.startswith("#"):
    return None
  if line.startswith("export "):
    line = line[len("export ") :].lstrip()
  key, sep, value = line.partition("=")
  key = key.strip()
  if not sep or not key:
    return None
  value = value.strip()
  if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
    value = value[1:-1]
  return key, value


def load_env_file(path: Path, *, override: bool = False) -> int:
  """Load key=value pairs into the process environment and return how many were set."""
  if not path.is_file():
    return 0

  loaded = 0
  for raw_line in path.read_text(encoding="utf-8").splitlines():
    parsed = parse_env_line(raw_line)
    if parsed is None:
      continue
    key, value = parsed
    if not override and key in os.environ:
      continue
    os.environ[key] = value
    loaded += 1
  return loaded
