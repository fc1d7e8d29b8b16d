from __future__ import annotations

from dataclasses import replace

from herald.core.logging import rotated_log_name, resolve_log_dir


def test_rotated_log_name_uses_dash_suffix():
  assert rotated_log_name("/var/log/herald_20240101_000000.log.1") == "/var/log/herald_20240101_000000.log-1"
  assert rotated_log_name("/var/log/herald.log") == "/var/log/herald.log"


def test_resolve_log_dir_prefers_configured_directory(settings, tmp_path):
  assert resolve_log_dir(replace(settings, log_dir=str(tmp_path))) == tmp_path


def test_resolve_log_dir_defaults_to_repo_logs(settings):
  assert resolve_log_dir(replace(settings, log_dir=None)).name == "logs"
