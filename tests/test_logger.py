import logging

from email_queue_worker.logger import configure_logging, get_logger


def test_get_logger_reuses_existing_logger():
    logger = get_logger("TestLogger")
    handler_count = len(logger.handlers)

    same_logger = get_logger("TestLogger")
    assert logger is same_logger
    assert len(same_logger.handlers) == handler_count


def test_configure_logging_sets_root_level():
    root = logging.getLogger()
    previous_level = root.level
    previous_handlers = list(root.handlers)
    try:
        configure_logging("debug")
        assert root.level == logging.DEBUG
        configure_logging("nonsense")
        assert root.level == logging.INFO
        assert len(root.handlers) == 1
    finally:
        root.handlers[:] = previous_handlers
        root.setLevel(previous_level)
