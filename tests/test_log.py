"""Tests for logger setup."""

import json
import logging

from subconvert.config import LoggingConfig
from subconvert.log import LOGGER_NAME, flush_logging, setup_logging


def test_text_logging_to_file(tmp_path):
    log_file = tmp_path / "logs" / "app.log"
    logger = setup_logging(LoggingConfig(level="info", file=str(log_file)))
    logging.getLogger(f"{LOGGER_NAME}.store").info("loaded %d outbounds", 3)
    logging.getLogger(f"{LOGGER_NAME}.store").debug("hidden")
    flush_logging()

    text = log_file.read_text(encoding="utf-8")
    assert "INFO loaded 3 outbounds" in text
    assert "hidden" not in text
    assert logger.level == logging.INFO
    assert not logger.propagate


def test_production_writes_json_lines(tmp_path):
    log_file = tmp_path / "app.log"
    setup_logging(LoggingConfig(level="debug", file=str(log_file), production=True))
    logging.getLogger(f"{LOGGER_NAME}.server").warning("unauthorized request from %s", "10.0.0.1")
    flush_logging()

    record = json.loads(log_file.read_text(encoding="utf-8").splitlines()[-1])
    assert record["level"] == "warning"
    assert record["logger"] == "subconvert.server"
    assert record["msg"] == "unauthorized request from 10.0.0.1"


def test_setup_is_repeatable(tmp_path):
    cfg = LoggingConfig(level="warn", file=str(tmp_path / "a.log"))
    setup_logging(cfg)
    logger = setup_logging(cfg)
    assert len(logger.handlers) == 2
    assert logger.level == logging.WARNING


def test_unknown_level_falls_back_to_info():
    assert setup_logging(LoggingConfig(level="chatty")).level == logging.INFO
