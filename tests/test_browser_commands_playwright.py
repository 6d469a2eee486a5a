import importlib.util
import os
import re
import threading
import time
from pathlib import Path
import sys

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
MODULE_PATH = PROJECT_ROOT / "oidc_browser_commands.py"
spec = importlib.util.spec_from_file_location("oidc_browser_commands", MODULE_PATH)
commands = importlib.util.module_from_spec(spec)
sys.modules["oidc_browser_commands"] = commands
assert spec.loader is not None  # for mypy/pylint
spec.loader.exec_module(commands)  # type: ignore[attr-defined]


pytestmark = pytest.mark.skipif(
    os.getenv("OIDC_E2E_PLAYWRIGHT") != "1",
    reason=(
        "Playwright E2E tests are opt-in. Set OIDC_E2E_PLAYWRIGHT=1 and run "
        "`python -m playwright install chromium` to enable."
    ),
)

ID_TOKEN = (
    "eyJhbGciOiJSUzI1NiJ9."
    "eyJzdWIiOiJqb2huLmRvZSIsImlzcyI6Imh0dHBzOi8vaWRzdnIuZXhhbXBsZS5jb20iLCJhdWQiOiJ0ZXN0LWNsaWVudCJ9."
    "VaG1QyN_etsHSFayUspDJ8wxPCEAr3bLz6hNExA87KcMurAbOWmmsIc8lTFxBNitPV7gov-aHf85vTiPUbefY8uQRF0BdNKF"
)
PARAMETERS = {"base_url": "https://idsvr.example.com/authorize", "client_id": "test-client"}
AUTHORIZE_PATTERN = re.compile(r"^https://idsvr\.example\.com/authorize")
CALLBACK_PORT = 8791


@pytest.fixture(scope="module")
def callback_url():
    thread = threading.Thread(
        target=commands.serve_callback_page,
        kwargs={"host": "127.0.0.1", "port": CALLBACK_PORT},
        daemon=True,
    )
    thread.start()
    # Best-effort wait for the dev server to come up.
    time.sleep(1.5)
    return f"http://127.0.0.1:{CALLBACK_PORT}/index.html"


@pytest.fixture(scope="module")
def browser():
    try:
        from playwright.sync_api import sync_playwright  # type: ignore[import]
    except Exception:  # pragma: no cover - environment-specific
        pytest.skip("playwright not available in this environment")

    with sync_playwright() as p:
        browser = p.chromium.launch()
        yield browser
        browser.close()


@pytest.fixture
def page(browser):
    page = browser.new_page()
    yield page
    page.close()


@pytest.fixture
def authorize_requests(page):
    requests = []

    def handle(route):
        requests.append(route.request.url)
        route.fulfill(status=200, body="", headers={"content-type": "text/html"})

    page.route(AUTHORIZE_PATTERN, handle)
    return requests


@pytest.fixture(scope="module", autouse=True)
def registered():
    commands.register_commands()
    commands.register_commands("custom")


def test_start_authorization_with_parameters(page, authorize_requests):
    commands.Chain(page).start_authorization(PARAMETERS)
    assert len(authorize_requests) == 1
    assert "client_id=test-client" in authorize_requests[0]


def test_start_authorization_with_chained_url(page, authorize_requests):
    commands.Chain(page).build_authorization_url(PARAMETERS).start_authorization()
    assert len(authorize_requests) == 1
    assert "prompt=login" in authorize_requests[0]


def test_get_id_token_from_callback_page(page, callback_url):
    chain = commands.Chain(page).visit(f"{callback_url}#id_token=abcdef")
    assert chain.get_id_token().subject == "abcdef"


def test_get_id_token_claims_from_callback_page(page, callback_url):
    chain = commands.Chain(page).visit(f"{callback_url}#id_token={ID_TOKEN}")
    assert chain.getIDTokenClaims().its("sub").subject == "john.doe"


def test_prefixed_get_id_token_claims_from_callback_page(page, callback_url):
    chain = commands.Chain(page).visit(f"{callback_url}#id_token={ID_TOKEN}")
    assert page.title() == commands.CALLBACK_PAGE_TITLE
    assert chain.customGetIDTokenClaims().its("sub").subject == "john.doe"
