from skywrite.utils.error_monitoring import (
    ErrorHandler,
    ErrorSeverity,
    FeedParseError,
    PublishError,
    StorageError,
    TransportError,
    UpstreamStatusError,
)


FEED = "https://feed.com/rss"


def test_severity_classification():
    handler = ErrorHandler()
    assert handler.classify_severity(StorageError("x")) == ErrorSeverity.CRITICAL
    assert handler.classify_severity(TransportError(FEED, "reset")) == ErrorSeverity.MEDIUM
    assert handler.classify_severity(UpstreamStatusError(FEED, 500)) == ErrorSeverity.MEDIUM
    assert handler.classify_severity(FeedParseError("bad")) == ErrorSeverity.MEDIUM
    assert handler.classify_severity(PublishError("no")) == ErrorSeverity.LOW
    assert handler.classify_severity(ValueError("bug")) == ErrorSeverity.HIGH
    assert handler.is_fatal(StorageError("x"))
    assert not handler.is_fatal(PublishError("no"))


def test_handle_error_records_context():
    handler = ErrorHandler()
    ctx = handler.handle_error(UpstreamStatusError(FEED, 429), FEED, "fetch_feed", {"link": "https://feed.com/a"})

    assert ctx.error_type == "UpstreamStatusError"
    assert ctx.feed_url == FEED
    assert ctx.metadata == {"link": "https://feed.com/a"}
    assert "rate limiting" in ctx.recovery_action
    assert handler.get_error_statistics() == {"total_errors": 1, "error_types": {"UpstreamStatusError": 1}}


def test_repeated_errors_are_reported_as_pattern():
    handler = ErrorHandler()
    for _ in range(2):
        handler.handle_error(TransportError(FEED, "reset"), FEED, "fetch_feed")
    assert handler.detect_error_patterns() == []

    handler.handle_error(TransportError(FEED, "reset"), FEED, "fetch_feed")
    patterns = handler.detect_error_patterns()
    assert len(patterns) == 1
    assert FEED in patterns[0]


def test_history_is_bounded():
    handler = ErrorHandler(history_size=2)
    for i in range(5):
        handler.handle_error(PublishError(str(i)), FEED, "process_entry")
    assert len(handler.error_history) == 2
    assert handler.error_counts["PublishError"] == 5
