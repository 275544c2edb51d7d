import logging

from itemresearch.core.logging import SecretRedactingFilter


def _filtered_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    logger.filters = []
    logger.addFilter(SecretRedactingFilter())
    return logger


def test_bearer_token_redacted(caplog):
    logger = _filtered_logger("test.bearer")

    with caplog.at_level(logging.INFO, logger="test.bearer"):
        logger.info("gateway rejected Authorization: Bearer abc.def.ghi-123")

    assert "abc.def.ghi-123" not in caplog.text
    assert "[REDACTED]" in caplog.text


def test_api_key_assignment_keeps_key_name(caplog):
    logger = _filtered_logger("test.apikey")

    with caplog.at_level(logging.INFO, logger="test.apikey"):
        logger.info("calling comp_search with api_key=s3cr3tvalue&q=camera")

    assert "s3cr3tvalue" not in caplog.text
    assert "api_key=[REDACTED]" in caplog.text
    assert "q=camera" in caplog.text


def test_args_are_redacted(caplog):
    logger = _filtered_logger("test.args")

    with caplog.at_level(logging.INFO, logger="test.args"):
        logger.info("tool error: %s", "password=hunter2 for seller@example.com")

    assert "hunter2" not in caplog.text
    assert "seller@example.com" not in caplog.text


def test_non_string_args_untouched(caplog):
    logger = _filtered_logger("test.numbers")

    with caplog.at_level(logging.INFO, logger="test.numbers"):
        logger.info("run finished in %d step(s)", 8)

    assert "run finished in 8 step(s)" in caplog.text
