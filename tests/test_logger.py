import logging

from regwatch.logger import LOG_FILE, LOGGER_NAME, resolve_level, setup_logger


def test_resolve_level(monkeypatch):
    monkeypatch.setenv("REGWATCH_LOG_LEVEL", "debug")
    assert resolve_level() == logging.DEBUG
    assert resolve_level("warning") == logging.WARNING
    assert resolve_level(logging.ERROR) == logging.ERROR
    assert resolve_level("chatty") == logging.INFO


def test_setup_logger_writes_rotating_file(tmp_path):
    logger = logging.getLogger(LOGGER_NAME)
    saved = list(logger.handlers)
    logger.handlers = []
    try:
        log = setup_logger(str(tmp_path / "logs"), "INFO")
        log.info("[doe-circulars] Crawling https://doe.gov.ph/")
        for handler in log.handlers:
            handler.flush()

        assert len(log.handlers) == 2
        assert setup_logger(str(tmp_path / "logs")) is log
        assert len(log.handlers) == 2
        assert logging.getLogger("httpx").level >= logging.WARNING
        content = (tmp_path / "logs" / LOG_FILE).read_text()
        assert "[INFO] regwatch: [doe-circulars] Crawling" in content
    finally:
        for handler in logger.handlers:
            handler.close()
        logger.handlers = saved
