import asyncio
from datetime import timedelta

import pytest

from skywrite.main import (
    BotConfig,
    SkywriteBot,
    build_parser,
    insert_posts,
    load_config,
    remove_posts,
    split_list,
)
from skywrite.services.dedup_store import DedupStore
from skywrite.utils.error_monitoring import ConfigurationError, StorageError

from conftest import FakePublisher, FakeSession, page_html, run


FEED_A = "https://a.example/rss"
FEED_B = "https://b.example/rss"

RSS_TEMPLATE = (
    '<?xml version="1.0"?><rss version="2.0"><channel><title>F</title>'
    "<item><title>{title}</title><link>{link}</link><pubDate>{date}</pubDate></item>"
    "</channel></rss>"
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "APP_SERVICE", "APP_IDENTIFIER", "APP_PASSWORD", "RSS_FEED_URLS",
        "RSS_FEED_BACKDATE_HOURS", "RERUN_INTERVAL_SECONDS", "POST_LANGUAGES",
        "DISABLE_POST_COMMENTS", "DATABASE_PATH", "AGENT_SESSION_PATH",
    ):
        monkeypatch.delenv(name, raising=False)


def test_split_list_trims_and_drops_empty():
    assert split_list(" en, de ,,fr ") == ["en", "de", "fr"]
    assert split_list(None) == []


def test_load_config_from_environment(monkeypatch):
    monkeypatch.setenv("RSS_FEED_URLS", f"{FEED_A}, {FEED_B}")
    monkeypatch.setenv("RSS_FEED_BACKDATE_HOURS", "6")
    monkeypatch.setenv("POST_LANGUAGES", "en,ja")
    monkeypatch.setenv("DISABLE_POST_COMMENTS", "false")

    config = load_config()

    assert config.feed_urls == [FEED_A, FEED_B]
    assert config.backfill == timedelta(hours=6)
    assert config.interval_seconds == 300
    assert config.languages == ["en", "ja"]
    assert config.disable_comments is False
    assert config.service == "https://bsky.social"


def test_command_line_overrides_environment(monkeypatch):
    monkeypatch.setenv("RSS_FEED_URLS", FEED_A)
    args = build_parser().parse_args(
        ["--database-path", "/tmp/x.db", "start", "--rss-feed-urls", FEED_B, "--rerun-interval-seconds", "60", "--once"]
    )

    config = load_config(args)

    assert config.feed_urls == [FEED_B]
    assert config.interval_seconds == 60
    assert config.database_path == "/tmp/x.db"
    assert config.once is True


def test_invalid_feed_url_is_a_configuration_error(monkeypatch):
    monkeypatch.setenv("RSS_FEED_URLS", "not-a-url")
    with pytest.raises(ConfigurationError):
        load_config()


def test_invalid_number_is_a_configuration_error(monkeypatch):
    monkeypatch.setenv("RERUN_INTERVAL_SECONDS", "soon")
    with pytest.raises(ConfigurationError):
        load_config()


def test_insert_and_remove_posts(db_path, capsys):
    store = DedupStore(db_path=db_path)

    assert run(insert_posts(store, ["https://x.example/1", "https://x.example/2"])) == [
        "https://x.example/1", "https://x.example/2",
    ]
    assert run(insert_posts(store, ["https://x.example/1"])) == []
    assert run(remove_posts(store, ["https://x.example/1", "https://x.example/3"])) == ["https://x.example/1"]

    assert run(store.exists("https://x.example/1")) is False
    assert run(store.exists("https://x.example/2")) is True
    out = capsys.readouterr().out
    assert "https://x.example/3 is not marked as posted" in out


def test_bot_requires_feeds(db_path):
    with pytest.raises(ConfigurationError):
        SkywriteBot([], timedelta(hours=1), 60, ["en"], DedupStore(db_path), FakeSession(), FakePublisher())


def _feed(link):
    from datetime import datetime, timezone
    date = datetime.now(timezone.utc).strftime("%a, %d %b %Y %H:%M:%S GMT")
    return RSS_TEMPLATE.format(title="Entry", link=link, date=date)


def test_bot_runs_every_feed_once(db_path):
    session = FakeSession()
    session.add(FEED_A, _feed("https://a.example/post"))
    session.add(FEED_B, status=500)
    session.add("https://a.example/post", page_html())
    publisher = FakePublisher()
    store = DedupStore(db_path)
    bot = SkywriteBot([FEED_A, FEED_B], timedelta(hours=1), 60, ["en"], store, session, publisher, once=True)

    run(bot.run())

    assert [p.embed.uri for p in publisher.posts] == ["https://a.example/post"]
    assert run(store.exists("https://a.example/post")) is True
    assert set(session.requests) >= {FEED_A, FEED_B}


def test_bot_surfaces_storage_failure(tmp_path):
    session = FakeSession()
    session.add(FEED_A, _feed("https://a.example/post"))
    bot = SkywriteBot([FEED_A], timedelta(hours=1), 60, ["en"], DedupStore(str(tmp_path)), session, FakePublisher())

    with pytest.raises(StorageError):
        run(bot.run())


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_default_config_values():
    config = BotConfig()
    assert config.backfill == timedelta(hours=3)
    assert config.languages == ["en"]


def test_db_commands_ignore_malformed_feed_urls(monkeypatch):
    monkeypatch.setenv("RSS_FEED_URLS", "not-a-url")
    args = build_parser().parse_args(["db", "stats"])

    config = load_config(args)

    assert config.feed_urls == ["not-a-url"]

    with pytest.raises(ConfigurationError):
        load_config(build_parser().parse_args(["start"]))


class HangingPublisher:
    def __init__(self):
        self.started = asyncio.Event()
        self.cancelled = False

    async def publish(self, post):
        self.started.set()
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return "at://never"


def test_shutdown_cancels_in_flight_publish(db_path):
    session = FakeSession()
    session.add(FEED_A, _feed("https://a.example/post"))
    session.add("https://a.example/post", page_html())
    publisher = HangingPublisher()
    store = DedupStore(db_path)
    bot = SkywriteBot([FEED_A], timedelta(hours=1), 60, ["en"], store, session, publisher)

    async def scenario():
        task = asyncio.create_task(bot.run())
        await asyncio.wait_for(publisher.started.wait(), timeout=5)
        bot._handle_shutdown()
        await asyncio.wait_for(task, timeout=2)

    run(scenario())

    assert publisher.cancelled is True
    assert run(store.exists("https://a.example/post")) is False
