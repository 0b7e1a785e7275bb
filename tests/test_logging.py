import logging

from quotakeeper._logging import get_logger


def test_get_logger_name():
    logger = get_logger("QuotaKeeper.Test")
    assert logger.name == "QuotaKeeper.Test"


def test_no_handlers_attached():
    """get_logger leaves handler configuration to the entry point."""
    root_logger = logging.getLogger()
    original_handlers = root_logger.handlers[:]
    root_logger.handlers = []

    try:
        logging.basicConfig(level=logging.INFO)
        logger = get_logger("QuotaKeeper.One")
        logger_2 = get_logger("QuotaKeeper.Two")

        assert len(root_logger.handlers) == 1
        assert len(logger.handlers) == 0
        assert len(logger_2.handlers) == 0
    finally:
        root_logger.handlers = original_handlers


def test_rotation_warning_logged(facade, caplog):
    facade.record_usage("openai", 900)
    with caplog.at_level(logging.WARNING, logger="QuotaKeeper.Facade"):
        facade.should_rotate_proactively("openai", {"tokens_per_day": 1000})
    assert "Proactive rotation recommended for openai" in caplog.text
    assert "daily=90.0%" in caplog.text


def test_invalid_usage_logged(facade, caplog):
    with caplog.at_level(logging.WARNING, logger="QuotaKeeper.Facade"):
        facade.record_usage("openai", -10)
    assert "Ignoring usage record" in caplog.text
