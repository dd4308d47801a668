"""
Test that backend_ivs.logging can be imported without circular import and logger works.
"""

from __future__ import annotations


def test_logging_import():
    """Import get_logger from backend_ivs.logging and use the logger."""
    from backend_ivs.logging import get_logger

    logger = get_logger("test")
    assert logger is not None
    assert hasattr(logger, "info")
    assert hasattr(logger, "debug")
    assert hasattr(logger, "warning")
    assert hasattr(logger, "error")
    # Smoke test: call info (should not raise)
    logger.info("test_message", key="value", request_id=2**255)


def test_request_ids_are_logged_as_strings():
    """uint256 ids are stringified so JSON consumers keep full precision."""
    from backend_ivs.logging.logger import _stringify_request_id

    event = _stringify_request_id(None, "info", {"event": "x", "request_id": 2**200})
    assert event["request_id"] == str(2**200)
    assert _stringify_request_id(None, "info", {"event": "x"}) == {"event": "x"}


def test_bind_request_attaches_context():
    from backend_ivs.logging import bind_request

    log = bind_request(7, 3)
    log.info("bound_message")
