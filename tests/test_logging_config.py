"""
Brief: Tests for switchboard.config.logging_config.init_logging and formatters.

Inputs:
  - None

Outputs:
  - None
"""

import logging
import logging.handlers
import re
from pathlib import Path

from switchboard.config.logging_config import (
    BracketLevelFormatter,
    SyslogFormatter,
    init_logging,
)


def _record(level=logging.WARNING, name="switchboard.dispatcher", msg="refused %s", args=("x",)):
    return logging.LogRecord(name, level, __file__, 1, msg, args, None)


def test_init_logging_adds_stderr_handler():
    """
    Brief: init_logging configures root logger with stderr handler by default.

    Inputs:
      - cfg: minimal dict with level

    Outputs:
      - None: Asserts StreamHandler present and level applied
    """
    init_logging({"level": "debug"})
    root = logging.getLogger()
    assert root.level == logging.DEBUG
    assert any(type(h) is logging.StreamHandler for h in root.handlers)


def test_init_logging_without_stderr():
    init_logging({"level": "warn", "stderr": False})
    root = logging.getLogger()
    assert root.level == logging.WARNING
    assert root.handlers == []


def test_init_logging_file_handler_writes(tmp_path):
    log_path = tmp_path / "nested" / "switchboard.log"
    init_logging({"level": "info", "file": str(log_path), "stderr": False})
    logging.getLogger("switchboard.test").info("file message")
    for h in logging.getLogger().handlers:
        h.flush()
    content = Path(log_path).read_text()
    assert "file message" in content
    assert "[info] switchboard.test:" in content


def test_init_logging_syslog(monkeypatch):
    created = {}

    class _FakeSyslog(logging.Handler):
        def __init__(self, address=None, facility=None):
            super().__init__()
            created["address"] = address
            created["facility"] = facility

        def emit(self, record):
            pass

    monkeypatch.setattr(logging.handlers, "SysLogHandler", _FakeSyslog)
    monkeypatch.setattr(_FakeSyslog, "LOG_USER", 1, raising=False)
    monkeypatch.setattr(_FakeSyslog, "LOG_DAEMON", 3, raising=False)
    init_logging({"stderr": False, "syslog": {"address": ["127.0.0.1", 514], "facility": "daemon"}})
    assert created == {"address": ("127.0.0.1", 514), "facility": 3}
    assert any(isinstance(h, _FakeSyslog) for h in logging.getLogger().handlers)


def test_bracket_formatter_format():
    fmt = BracketLevelFormatter(fmt="%(asctime)s %(level_tag)s %(name)s: %(message)s")
    line = fmt.format(_record())
    assert re.fullmatch(
        r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z \[warn\] switchboard\.dispatcher: refused x", line
    )


def test_syslog_formatter_has_tag_and_no_timestamp():
    line = SyslogFormatter().format(_record(level=logging.ERROR))
    assert line == "switchboard: [error] switchboard.dispatcher: refused x"
