import json
import logging

import pytest

from imagesweep.logger import LogLevelError, configure, parse_level


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.mark.parametrize(
    "name, expected",
    [
        ("debug", logging.DEBUG),
        ("DEBUG", logging.DEBUG),
        ("info", logging.INFO),
        ("", logging.INFO),
        ("warn", logging.WARNING),
        ("ERROR", logging.ERROR),
        ("fatal", logging.CRITICAL),
    ],
)
def test_parse_level(name, expected):
    assert parse_level(name) == expected


@pytest.mark.parametrize("name", ["Info", "verbose", "warning"])
def test_parse_level_rejects_unknown(name):
    with pytest.raises(LogLevelError) as info:
        parse_level(name)
    assert "unable to parse log level" in str(info.value)


def test_configure_info_emits_json(capsys):
    root = configure("info")
    assert root.level == logging.INFO
    logging.getLogger("collector").info("hello", extra={"runtime": "containerd"})
    line = capsys.readouterr().err.strip()
    entry = json.loads(line)
    assert entry["msg"] == "hello"
    assert entry["logger"] == "collector"
    assert entry["runtime"] == "containerd"
    assert entry["level"] == "info"


def test_configure_info_suppresses_debug(capsys):
    configure("info")
    logging.getLogger("collector").debug("quiet")
    assert capsys.readouterr().err == ""


def test_configure_debug_uses_console_format(capsys):
    root = configure("debug")
    assert root.level == logging.DEBUG
    logging.getLogger("eraser").debug("hello")
    line = capsys.readouterr().err.strip()
    assert "hello" in line
    with pytest.raises(ValueError):
        json.loads(line)


def test_configure_twice_keeps_one_handler():
    root = configure("info")
    before = len(root.handlers)
    configure("error")
    assert len(root.handlers) == before
    assert root.level == logging.ERROR


def test_configure_bad_level_leaves_logging_untouched():
    root = logging.getLogger()
    handlers = list(root.handlers)
    with pytest.raises(LogLevelError):
        configure("loud")
    assert root.handlers == handlers