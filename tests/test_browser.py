import pytest

from leadscout.errors import BrowserClosedError
from leadscout.scrape import browser as browser_mod
from leadscout.scrape.browser import BrowserSession, is_browser_closed_error


class FakeChromium:
    def __init__(self, error=None):
        self.error = error
        self.launch_args = []

    async def launch(self, headless, args):
        self.launch_args.append(list(args))
        if self.error is not None:
            raise self.error
        return FakeChromiumBrowser()


class FakeChromiumBrowser:
    def __init__(self):
        self.closed = False

    def is_connected(self):
        return not self.closed

    async def close(self):
        self.closed = True


class FakeDriver:
    def __init__(self, chromium):
        self.chromium = chromium
        self.stopped = 0

    async def stop(self):
        self.stopped += 1


class FakeStarter:
    def __init__(self, driver):
        self.driver = driver

    async def start(self):
        return self.driver


@pytest.fixture
def driver(monkeypatch):
    def _driver(error=None):
        d = FakeDriver(FakeChromium(error))
        monkeypatch.setattr(browser_mod, "async_playwright", lambda: FakeStarter(d))
        return d

    return _driver


@pytest.mark.asyncio
async def test_failed_launch_stops_the_driver(driver, tracker):
    d = driver(RuntimeError("Executable doesn't exist"))
    session = BrowserSession("job-1", tracker)

    with pytest.raises(RuntimeError):
        await session.start()

    assert d.stopped == 1
    assert session._playwright is None
    assert not session.is_open


@pytest.mark.asyncio
async def test_launch_carries_job_tags_and_close_is_idempotent(driver, tracker):
    d = driver()
    session = await BrowserSession("job-1", tracker).start()

    assert session.is_open
    assert "--job-id=job-1" in d.chromium.launch_args[0]

    await session.close()
    await session.close()

    assert d.stopped == 1
    assert not session.is_open
    with pytest.raises(BrowserClosedError):
        await session.new_page()


def test_closed_browser_errors_are_recognized():
    assert is_browser_closed_error(BrowserClosedError("job-1"))
    assert is_browser_closed_error(RuntimeError("Target closed"))
    assert not is_browser_closed_error(RuntimeError("net::ERR_NAME_NOT_RESOLVED"))
