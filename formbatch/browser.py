"""Playwright-backed form driver.

Field kinds form a closed set; each has one handler, chosen from the form
layout rather than by sniffing the element at runtime.
"""

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
import logging

from playwright.sync_api import Browser, Error as PlaywrightError, Locator, Page, Playwright, sync_playwright

from formbatch.config import Settings
from formbatch.detection import SubmissionEvidence, SubmitControlState
from formbatch.driver import (
    FieldNotFoundError,
    FieldWriteError,
    NavigationFailure,
    SessionError,
    SubmitControlMissing,
)
from formbatch.forms import FieldKind, FieldSpec, FormLayout


logger = logging.getLogger(__name__)

SUCCESS_SELECTOR = '.success, .alert-success, [class*="success"], .thank-you, .confirmation'
ERROR_SELECTOR = '.error, .alert-danger, [class*="error"], .invalid, .alert-error'
READY_TIMEOUT_MS = 15_000
FIELD_PAUSE_MS = 200
TEARDOWN_MARKERS = ("execution context was destroyed", "frame was detached", "navigating frame was detached")
CHECKED_VALUES = {"yes", "true", "1"}


@dataclass(frozen=True)
class OptionChoice:
    value: str
    text: str
    exact: bool


def choose_option(
    options: Sequence[Mapping[str, str]],
    wanted: str,
    fallback_hint: str | None = None,
) -> OptionChoice | None:
    if not options:
        return None

    needle = wanted.strip().lower()
    for option in options:
        text = option.get("text", "")
        value = option.get("value", "")
        if needle and (needle in text.lower() or needle in value.lower()):
            return OptionChoice(value=value, text=text, exact=True)

    fallback = options[0]
    if fallback_hint:
        hint = fallback_hint.lower()
        fallback = next((option for option in options if hint in option.get("text", "").lower()), fallback)
    return OptionChoice(value=fallback.get("value", ""), text=fallback.get("text", ""), exact=False)


def wants_checked(value: str) -> bool:
    return value.strip().lower() in CHECKED_VALUES


def split_teams(value: str) -> list[str]:
    return [team.strip().lower() for team in value.split(",") if team.strip()]


def matches_team(box_value: str, teams: Sequence[str]) -> bool:
    candidate = box_value.strip().lower()
    if not candidate:
        return False
    return any(candidate in team or team in candidate for team in teams)


def form_slug(url: str) -> str:
    return url.rstrip("/").rsplit("/", 1)[-1]


def _is_teardown(exc: Exception) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in TEARDOWN_MARKERS)


class PlaywrightFormDriver:
    def __init__(self, settings: Settings, layout: FormLayout) -> None:
        self.settings = settings
        self.layout = layout
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._page: Page | None = None
        self._handlers: dict[FieldKind, Callable[[Locator, FieldSpec, str], None]] = {
            FieldKind.TEXT: self._fill_text,
            FieldKind.SELECT: self._fill_select,
            FieldKind.CHECKBOX: self._fill_checkbox,
            FieldKind.CHECKBOX_GROUP: self._fill_checkbox_group,
        }

    def open(self) -> None:
        settings = self.settings
        try:
            self._playwright = sync_playwright().start()
            logger.info("launching chromium", extra={"headless": settings.headless})
            self._browser = self._playwright.chromium.launch(
                headless=settings.headless,
                args=[
                    "--no-sandbox",
                    "--disable-dev-shm-usage",
                    "--disable-blink-features=AutomationControlled",
                    f"--window-size={settings.browser_width},{settings.browser_height}",
                ],
            )
            context = self._browser.new_context(
                viewport={"width": settings.browser_width, "height": settings.browser_height},
                user_agent=settings.user_agent,
            )
            context.set_default_timeout(settings.form_timeout_ms)
            context.set_default_navigation_timeout(settings.form_timeout_ms)
            self._page = context.new_page()
            self._load_form()
        except PlaywrightError as exc:
            self.close()
            raise NavigationFailure(f"navigation failed: {exc}") from exc
        logger.info("form loaded", extra={"form_url": settings.form_url})

    def reset(self) -> None:
        try:
            self._load_form()
        except PlaywrightError as exc:
            raise SessionError(f"could not load a fresh form: {exc}") from exc

    def fill(self, field: str, value: str) -> None:
        try:
            spec = self.layout.spec_for(field)
        except KeyError:
            raise FieldNotFoundError(field, "<not in form layout>") from None

        page = self._require_page()
        locator = page.locator(spec.locator)
        if locator.count() == 0:
            raise FieldNotFoundError(field, spec.locator)

        try:
            self._handlers[spec.kind](locator, spec, value)
        except PlaywrightError as exc:
            raise FieldWriteError(field, str(exc)) from exc
        page.wait_for_timeout(FIELD_PAUSE_MS)

    def submit(self) -> None:
        page = self._require_page()
        button = page.locator(self.layout.submit_selector)
        if button.count() == 0:
            raise SubmitControlMissing("submit button not found")
        button.first.click()
        logger.debug("form submitted")

    def collect_evidence(self, filled_fields: Sequence[str]) -> SubmissionEvidence:
        page = self._require_page()
        page.wait_for_timeout(self.settings.settle_seconds * 1000)
        try:
            return self._inspect(page, filled_fields)
        except PlaywrightError as exc:
            if _is_teardown(exc):
                logger.warning("page changed during success check, treating it as navigation")
                return SubmissionEvidence(url_changed=True)
            raise SessionError(f"success check failed: {exc}") from exc

    def close(self) -> None:
        if self._browser is not None:
            logger.info("closing browser")
            self._browser.close()
            self._browser = None
        if self._playwright is not None:
            self._playwright.stop()
            self._playwright = None
        self._page = None

    def _require_page(self) -> Page:
        if self._page is None:
            raise SessionError("form session is not open")
        return self._page

    def _load_form(self) -> None:
        page = self._require_page()
        logger.debug("navigating to %s", self.settings.form_url)
        page.goto(self.settings.form_url, wait_until="networkidle")
        page.wait_for_selector(self.layout.submit_selector, timeout=READY_TIMEOUT_MS)

    def _fill_text(self, locator: Locator, spec: FieldSpec, value: str) -> None:
        element = locator.first
        element.fill("")
        element.press_sequentially(value)
        element.dispatch_event("input")
        element.dispatch_event("blur")

    def _fill_select(self, locator: Locator, spec: FieldSpec, value: str) -> None:
        element = locator.first
        options = element.locator("option").evaluate_all(
            "options => options.map(o => ({value: o.value, text: o.text}))"
        )
        choice = choose_option(options, value, spec.fallback_hint)
        if choice is None:
            raise FieldWriteError(spec.name, "select has no options")
        if not choice.exact:
            logger.warning("no matching option for %s: %s, selected fallback: %s", spec.name, value, choice.text)
        element.select_option(value=choice.value)

    def _fill_checkbox(self, locator: Locator, spec: FieldSpec, value: str) -> None:
        locator.first.set_checked(wants_checked(value))

    def _fill_checkbox_group(self, locator: Locator, spec: FieldSpec, value: str) -> None:
        teams = split_teams(value)
        for index in range(locator.count()):
            box = locator.nth(index)
            box.set_checked(matches_team(box.get_attribute("value") or "", teams))

    def _inspect(self, page: Page, filled_fields: Sequence[str]) -> SubmissionEvidence:
        error_texts = tuple(text.strip() for text in page.locator(ERROR_SELECTOR).all_inner_texts() if text.strip())
        submit = page.locator(self.layout.submit_selector)
        if submit.count() == 0:
            submit_state = SubmitControlState.MISSING
        elif submit.first.evaluate("button => button.disabled || button.style.display === 'none'"):
            submit_state = SubmitControlState.DISABLED
        else:
            submit_state = SubmitControlState.ENABLED

        return SubmissionEvidence(
            error_texts=error_texts,
            success_markers=page.locator(SUCCESS_SELECTOR).count(),
            url_changed=form_slug(self.settings.form_url) not in page.url,
            filled_fields_empty=bool(filled_fields) and all(self._is_empty(page, name) for name in filled_fields),
            submit_control=submit_state,
        )

    def _is_empty(self, page: Page, field: str) -> bool:
        spec = self.layout.spec_for(field)
        locator = page.locator(spec.locator)
        if locator.count() == 0:
            return True
        if spec.kind in (FieldKind.CHECKBOX, FieldKind.CHECKBOX_GROUP):
            return bool(locator.evaluate_all("boxes => boxes.every(box => !box.checked)"))
        return locator.first.input_value().strip() == ""
