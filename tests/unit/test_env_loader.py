from __future__ import annotations

import os

import pytest

from reportgen.utils.env import default_env_path, load_env_file, parse_env_line


@pytest.mark.parametrize(
  ("line", "expected"),
  [
    ("REPORTGEN_LOG_LEVEL=DEBUG", ("REPORTGEN_LOG_LEVEL", "DEBUG")),
    ("export REPORTGEN_DEFAULT_MODEL = 'mistral-small'", ("REPORTGEN_DEFAULT_MODEL", "mistral-small")),
    ('REPORTGEN_LOG_DIR="/tmp/logs"', ("REPORTGEN_LOG_DIR", "/tmp/logs")),
    ("EMPTY=", ("EMPTY", "")),
    ("# comment", None),
    ("   ", None),
    ("NO_EQUALS_SIGN", None),
    ("=value", None),
  ],
)
def test_parse_env_line(line: str, expected: tuple[str, str] | None) -> None:
  assert parse_env_line(line) == expected


def test_load_env_file_respects_existing_values(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
  env_file = tmp_path / ".env"
  env_file.write_text("REPORTGEN_TEST_A=from-file\nREPORTGEN_TEST_B=from-file\n", encoding="utf-8")
  monkeypatch.setenv("REPORTGEN_TEST_A", "from-env")
  monkeypatch.setenv("REPORTGEN_TEST_B", "placeholder")
  monkeypatch.delenv("REPORTGEN_TEST_B")

  assert load_env_file(env_file) == 1

  assert os.environ["REPORTGEN_TEST_A"] == "from-env"
  assert os.environ["REPORTGEN_TEST_B"] == "from-file"


def test_missing_env_file_is_ignored(tmp_path) -> None:
  assert load_env_file(tmp_path / "absent.env") == 0


def test_default_env_path_honours_override(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setenv("REPORTGEN_ENV_FILE", str(tmp_path / "custom.env"))
  assert default_env_path() == tmp_path / "custom.env"

  monkeypatch.delenv("REPORTGEN_ENV_FILE")
  assert default_env_path().name == ".env"
