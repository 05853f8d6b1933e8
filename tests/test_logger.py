from __future__ import annotations

import logging

import pytest
from rich.logging import RichHandler

from vitalis.utils import get_logger, setup_logging


@pytest.fixture(autouse=True)
def reset_vitalis_logger():
    logger = logging.getLogger("vitalis")
    saved = logger.handlers[:], logger.level
    logger.handlers.clear()
    yield
    for handler in logger.handlers:
        handler.close()
    logger.handlers[:], logger.level = saved


def test_setup_logging_installs_console_and_file_handlers(tmp_path):
    log_file = tmp_path / "logs" / "agent.log"

    logger = setup_logging("debug", log_file)
    get_logger("edge.sender").warning("batch buffered")
    for handler in logger.handlers:
        handler.flush()

    assert logger.level == logging.DEBUG
    assert any(isinstance(h, RichHandler) for h in logger.handlers)
    assert "vitalis.edge.sender - WARNING - batch buffered" in log_file.read_text()


def test_setup_logging_is_idempotent():
    setup_logging("INFO")
    setup_logging("INFO")

    assert len(logging.getLogger("vitalis").handlers) == 1


def test_get_logger_namespaces_names():
    assert get_logger("edge.buffer").name == "vitalis.edge.buffer"
    assert get_logger("vitalis.cli").name == "vitalis.cli"
