import logging

from shapebase.logger import LOGGER_NAME, create_log_config, logger


def test_log_config():
    config = create_log_config("WARNING")
    assert set(config) == {"version", "disable_existing_loggers", "formatters", "handlers", "loggers"}
    assert config["loggers"] == {LOGGER_NAME: {"handlers": ["default"], "level": "WARNING"}}


def test_logger_configured_on_import():
    assert logger is logging.getLogger("shapebase")
    assert logger.handlers
