import logging

from codeloop.core.logs import LogBuffer, LogBufferHandler, category_for_logger, mask_secret, redact


def test_redact_masks_api_keys_and_bearer_tokens() -> None:
    text = "key sk-abcdef1234567890 header Authorization: Bearer abc.def.ghi-123"
    cleaned = redact(text)
    assert "sk-abcdef1234567890" not in cleaned
    assert "sk-a…7890" in cleaned
    assert "Bearer ••••" in cleaned
    assert "abc.def.ghi-123" not in cleaned


def test_mask_secret_short_values() -> None:
    assert mask_secret("short") == "••••"


def test_log_buffer_redacts_messages() -> None:
    buffer = LogBuffer()
    entry = buffer.record("transport", "Using sk-supersecretkey99")
    assert "sk-supersecretkey99" not in entry.message


def test_log_buffer_recent_filters_and_limits() -> None:
    buffer = LogBuffer(max_entries=5)
    buffer.record("tool", "t1")
    buffer.record("agent", "a1")
    buffer.record("tool", "t2")
    buffer.record("permission", "p1")
    assert [entry.message for entry in buffer.recent(category="tool", limit=5)] == ["t1", "t2"]
    assert [entry.message for entry in buffer.recent(limit=2)] == ["t2", "p1"]
    latest = buffer.latest()
    assert latest is not None and latest.message == "p1"


def test_log_buffer_is_bounded() -> None:
    buffer = LogBuffer(max_entries=2)
    for index in range(4):
        buffer.record("agent", f"m{index}")
    assert [entry.message for entry in buffer.recent()] == ["m2", "m3"]


def test_log_buffer_normalizes_invalid_inputs() -> None:
    buffer = LogBuffer()
    entry = buffer.record("custom", "message", severity="verbose")
    assert entry.category == "system"
    assert entry.severity == "info"


def test_log_buffer_notifies_subscribers() -> None:
    buffer = LogBuffer()
    seen: list[str] = []
    callback = lambda entry: seen.append(entry.message)  # noqa: E731
    buffer.subscribe(callback)
    buffer.record("agent", "first")
    buffer.unsubscribe(callback)
    buffer.record("agent", "second")
    assert seen == ["first"]


def test_handler_bridges_package_warnings() -> None:
    buffer = LogBuffer()
    handler = LogBufferHandler(buffer)
    logger = logging.getLogger("codeloop.core.llm.client")
    logger.addHandler(handler)
    try:
        logger.info("ignored")
        logger.warning("retrying with Bearer abcdefghijklmnop")
        logging.getLogger("codeloop.core.tools.files").addHandler(handler)
        logging.getLogger("codeloop.core.tools.files").error("write failed")
    finally:
        logger.removeHandler(handler)
        logging.getLogger("codeloop.core.tools.files").removeHandler(handler)

    entries = buffer.recent()
    assert [(entry.category, entry.severity) for entry in entries] == [
        ("transport", "warning"),
        ("tool", "error"),
    ]
    assert "abcdefghijklmnop" not in entries[0].message
    assert buffer.severity_counts() == {"info": 0, "warning": 1, "error": 1}


def test_category_for_logger() -> None:
    assert category_for_logger("codeloop.core.permissions") == "permission"
    assert category_for_logger("codeloop.core.agent_loop") == "agent"
    assert category_for_logger("httpx") == "system"
