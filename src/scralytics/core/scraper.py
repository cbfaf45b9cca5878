from __future__ import annotations

import importlib
import json
from collections.abc import Callable
from typing import Any, Protocol
from urllib.parse import urlparse

from scralytics.core.errors import AccountAuthError, TargetValidationError
from scralytics.db.models import Account
from scralytics.types import AccountCredentials, ScrapeKind, ScrapeOutcome


class Scraper(Protocol):
    async def scrape(self, url: str, credentials: AccountCredentials, kind: ScrapeKind) -> ScrapeOutcome: ...


class SearchExpander(Protocol):
    async def expand(self, query: str, credentials: AccountCredentials, max_results: int) -> list[str]: ...


class CredentialStore:
    """Turns a stored account into scraper credentials.

    ``decrypt`` receives the stored cookie blob and returns its plaintext; the
    default treats the blob as plaintext JSON.
    """

    def __init__(self, decrypt: Callable[[str], str] | None = None):
        self.decrypt = decrypt

    def get_credentials(self, account: Account) -> AccountCredentials:
        blob = account.cookies_json or "[]"
        try:
            if self.decrypt is not None:
                blob = self.decrypt(blob)
            cookies = json.loads(blob)
        except (ValueError, TypeError) as exc:
            raise AccountAuthError(f"invalid cookie payload for account {account.id}: {exc}") from exc

        if isinstance(cookies, dict):
            cookies = [{"name": name, "value": value} for name, value in cookies.items()]
        if not isinstance(cookies, list) or not cookies:
            raise AccountAuthError(f"no session cookies stored for account {account.id}")

        return AccountCredentials(
            account_id=account.id,
            email=account.email,
            cookies=cookies,
            user_agent=account.user_agent,
        )


def validate_target_url(url: str) -> str:
    value = (url or "").strip()
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise TargetValidationError(f"invalid target url '{url}'")
    return value


def load_object(path: str) -> Any:
    """Import ``package.module:attribute``."""
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"expected 'module:attribute', got '{path}'")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, attribute)
    except AttributeError as exc:
        raise ValueError(f"{module_name} has no attribute '{attribute}'") from exc


def load_scraper(path: str) -> Scraper:
    """Build the scraper named by ``path``; a class or factory is called with no arguments."""
    if not path:
        raise ValueError("scraper backend is not configured; set SCRAPER_BACKEND=module:factory")
    target = load_object(path)
    scraper = target() if callable(target) and not hasattr(target, "scrape") else target
    if isinstance(scraper, type):
        scraper = scraper()
    if not hasattr(scraper, "scrape"):
        raise ValueError(f"{path} did not produce an object with a scrape() method")
    return scraper
