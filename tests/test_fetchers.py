"""
Tests for joke fetchers and the fetch scheduler.

Covers:
  - RedditFetcher parsing, truncation and per-subreddit failure isolation
  - AnekdotFetcher HTML extraction and error on bad status
  - clean_html entity handling
  - FetchScheduler cycle accounting and cancellable interval
"""
import asyncio
import time
from unittest.mock import AsyncMock

import httpx
import pytest

from ingestion.fetcher import (
    AnekdotFetcher, FetchError, JokeFetcher, RedditFetcher, clean_html, extract_anekdots,
    truncate_utf8, utf8_len,
)
from ingestion.fingerprint import fingerprint_text
from ingestion.scheduler import FetchScheduler
from job_queue.message_queue import PublishError, Topics
from models.schemas import JokeSource


def reddit_listing(*posts) -> dict:
    return {"data": {"children": [{"data": p} for p in posts]}}


# ──────────────────────────────────────────────────────────────
#  Reddit
# ──────────────────────────────────────────────────────────────

class TestRedditFetcher:
    @pytest.fixture
    def seen(self):
        return []

    @pytest.fixture
    def transport(self, seen):
        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.url.path == "/r/Jokes/hot.json":
                return httpx.Response(200, json=reddit_listing(
                    {"selftext": "To get to the other side!", "permalink": "/r/Jokes/comments/a1/"},
                    {"selftext": "", "permalink": "/r/Jokes/comments/a2/"},
                    {"selftext": "x" * 4000, "permalink": "/r/Jokes/comments/a3/"},
                ))
            return httpx.Response(503, text="busy")
        return httpx.MockTransport(handler)

    @pytest.mark.asyncio
    async def test_parses_self_posts(self, transport):
        fetcher = RedditFetcher(["Jokes"], limit=5, transport=transport)
        jokes = await fetcher.fetch()
        assert len(jokes) == 2
        first = jokes[0]
        assert first.content == "To get to the other side!"
        assert first.source is JokeSource.REDDIT
        assert first.source_url == "https://reddit.com/r/Jokes/comments/a1/"
        assert first.content_hash == fingerprint_text("To get to the other side!")

    @pytest.mark.asyncio
    async def test_long_posts_truncated(self, transport):
        jokes = await RedditFetcher(["Jokes"], transport=transport).fetch()
        assert len(jokes[1].content) == 3000

    @pytest.mark.asyncio
    async def test_cyrillic_post_truncated_by_bytes(self):
        transport = httpx.MockTransport(lambda r: httpx.Response(200, json=reddit_listing(
            {"selftext": "я" * 2000, "permalink": "/r/Jokes/comments/b1/"},
        )))
        [joke] = await RedditFetcher(["Jokes"], transport=transport).fetch()
        assert joke.content == "я" * 1500
        assert joke.content_hash == fingerprint_text("я" * 1500)

    @pytest.mark.asyncio
    async def test_request_shape(self, transport, seen):
        await RedditFetcher(["Jokes"], limit=7, transport=transport).fetch()
        [request] = seen
        assert request.url.host == "www.reddit.com"
        assert request.url.params["limit"] == "7"
        assert request.headers["User-Agent"] == "anek-bot/1.0"

    @pytest.mark.asyncio
    async def test_failing_subreddit_skipped(self, transport):
        jokes = await RedditFetcher(["broken", "Jokes"], transport=transport).fetch()
        assert len(jokes) == 2

    @pytest.mark.asyncio
    async def test_unparseable_listing_skipped(self):
        transport = httpx.MockTransport(lambda r: httpx.Response(200, text="<html>"))
        assert await RedditFetcher(["Jokes"], transport=transport).fetch() == []


# ──────────────────────────────────────────────────────────────
#  anekdot.ru
# ──────────────────────────────────────────────────────────────

PAGE = """
<html><body>
<div class="text">Ха-ха</div>
<div class="text">Штирлиц шёл по лесу.<br>&quot;Странно&quot;, подумал он &amp; пошёл дальше.</div>
<div class="text">Второй&nbsp;анекдот про программиста и&nbsp;кофе.</div>
<div class="text">Третий анекдот, который не влезет в лимит.</div>
</body></html>
"""


class TestCleanHtml:
    @pytest.mark.parametrize("raw,expected", [
        ("<p>Hello</p>", "Hello"),
        ('<div class="text"><b>Bold</b> and <i>italic</i></div>', "Bold and italic"),
        ("Hello&nbsp;World", "Hello World"),
        ("&quot;quoted&quot;", '"quoted"'),
        ("A &amp; B", "A & B"),
        ("&lt;div&gt;", "<div>"),
        ("Just plain text", "Just plain text"),
    ])
    def test_clean_html(self, raw, expected):
        assert clean_html(raw) == expected


class TestUtf8Limits:
    def test_utf8_len(self):
        assert utf8_len("abc") == 3
        assert utf8_len("анекдот") == 14

    def test_truncate_never_splits_a_character(self):
        cut = truncate_utf8("x" + "я" * 2000, 3000)
        assert cut == "x" + "я" * 1499
        assert utf8_len(cut) == 2999

    def test_short_text_untouched(self):
        assert truncate_utf8("анекдот", 3000) == "анекдот"


class TestAnekdotFetcher:
    def test_extract_skips_short_and_respects_limit(self):
        texts = extract_anekdots(PAGE, limit=2)
        assert texts == [
            'Штирлиц шёл по лесу."Странно", подумал он & пошёл дальше.',
            "Второй анекдот про программиста и кофе.",
        ]

    def test_length_bounds_count_utf8_bytes(self):
        page = (
            '<div class="text">Шутка</div>'                 # 5 chars, 10 bytes
            f'<div class="text">{"я" * 1501}</div>'         # 1501 chars, 3002 bytes
            f'<div class="text">{"a" * 3000}</div>'
        )
        assert extract_anekdots(page, limit=10) == ["Шутка", "a" * 3000]


    @pytest.mark.asyncio
    async def test_fetch_builds_candidates(self):
        transport = httpx.MockTransport(lambda r: httpx.Response(200, text=PAGE))
        jokes = await AnekdotFetcher(limit=20, transport=transport).fetch()
        assert len(jokes) == 3
        assert all(j.source is JokeSource.ANEKDOT for j in jokes)
        assert all(j.source_url == "https://anekdot.ru" for j in jokes)
        assert jokes[0].content_hash == fingerprint_text(jokes[0].content)

    @pytest.mark.asyncio
    async def test_bad_status_raises(self):
        transport = httpx.MockTransport(lambda r: httpx.Response(500, text="oops"))
        with pytest.raises(FetchError):
            await AnekdotFetcher(transport=transport).fetch()

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        with pytest.raises(FetchError):
            await AnekdotFetcher(transport=httpx.MockTransport(handler)).fetch()


# ──────────────────────────────────────────────────────────────
#  Scheduler
# ──────────────────────────────────────────────────────────────

class StaticFetcher(JokeFetcher):
    source = JokeSource.REDDIT

    def __init__(self, candidates=None, error=None):
        super().__init__()
        self.candidates = candidates or []
        self.error = error
        self.calls = 0

    async def fetch(self):
        self.calls += 1
        if self.error:
            raise self.error
        return list(self.candidates)


class TestFetchScheduler:
    @pytest.mark.asyncio
    async def test_cycle_isolates_fetcher_and_publish_errors(self, candidate_factory):
        broken = StaticFetcher(error=FetchError("down", "anekdot"))
        working = StaticFetcher([candidate_factory("a joke"), candidate_factory("another")])
        publisher = AsyncMock()
        publisher.publish_joke = AsyncMock(side_effect=[PublishError("full", Topics.JOKES), "1"])

        scheduler = FetchScheduler([broken, working], publisher)
        stats = await scheduler.run_cycle()

        assert stats == {"fetched": 2, "published": 1, "errors": 2}
        assert working.calls == 1
        assert publisher.publish_joke.await_count == 2

    @pytest.mark.asyncio
    async def test_publishes_onto_jokes_topic(self, memory_queue, candidate_factory):
        scheduler = FetchScheduler([StaticFetcher([candidate_factory("Why?")])], memory_queue)
        await scheduler.run_cycle()
        assert await memory_queue.queue_length(Topics.JOKES) == 1

    @pytest.mark.asyncio
    async def test_initial_cycle_then_cancellable_wait(self, stop_event, candidate_factory):
        fetcher = StaticFetcher([candidate_factory("Why?")])
        publisher = AsyncMock()
        scheduler = FetchScheduler([fetcher], publisher, interval_s=60.0, stop_event=stop_event)

        task = await scheduler.start()
        await asyncio.sleep(0.05)
        assert fetcher.calls == 1

        start = time.monotonic()
        await scheduler.stop()
        assert task.done()
        assert time.monotonic() - start < 1.0
        assert fetcher.calls == 1

    @pytest.mark.asyncio
    async def test_runs_again_after_interval(self, stop_event, candidate_factory, wait_until):
        fetcher = StaticFetcher([candidate_factory("Why?")])
        scheduler = FetchScheduler([fetcher], AsyncMock(), interval_s=0.02, stop_event=stop_event)
        await scheduler.start()

        async def ran_three_times():
            return fetcher.calls >= 3

        assert await wait_until(ran_three_times)
        await scheduler.stop()
