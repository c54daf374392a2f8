from __future__ import annotations

import asyncio
import logging
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlparse

from playwright.async_api import async_playwright, Browser, BrowserContext, Playwright, Page

from .config import Config
from .supervisor import FaultBarrier, current_barrier

logger = logging.getLogger(__name__)


class EnvironmentCrashedError(RuntimeError):
    """The page renderer died while a job was using it."""


def _browser_args(options: Dict[str, Any]) -> list[str]:
    args: list[str] = [
        "--disable-dev-shm-usage",
        "--no-sandbox",
        "--headless=new",
        # keep renderer light
        "--disable-extensions",
        "--disable-background-networking",
        "--disable-sync",
        "--metrics-recording-only",
        "--mute-audio",
        "--no-default-browser-check",
        "--no-first-run",
        "--disable-default-apps",
        "--disable-gpu",
    ]
    if not options.get("webSecurity", False):
        args.append("--disable-web-security")
    return args


async def _install_image_blocking(context: BrowserContext) -> None:
    async def route_handler(route, request):
        if request.resource_type == "image":
            return await route.abort()
        return await route.continue_()
    await context.route("**/*", route_handler)


async def _close_quietly(what: str, closer, timeout_ms: int) -> None:
    try:
        await asyncio.wait_for(closer(), timeout=timeout_ms / 1000.0)
    except Exception as e:
        logger.warning("Error while closing %s: %s", what, e)


def _slug(url: str) -> str:
    host = urlparse(url).hostname or "page"
    return re.sub(r"[^a-z0-9]+", "-", host.lower()).strip("-") or "page"


# ---------------------------
# Environment
# ---------------------------

class PlaywrightEnvironment:
    """
    One Chromium browser/context/page for one job.

    Options (already merged with the worker defaults):
      url, screen {width,height}, userAgent, snapshot, loadImages, webSecurity
    cfg is the worker's Config; classes plugged in via ENVIRONMENT_CLASS get
    it the same way.

    Nothing is launched in the constructor; prepare() starts the browser and
    opens the URL. tear_down() is idempotent and never raises.
    """

    close_timeout_ms = 5000

    def __init__(self, options: Dict[str, Any], *, cfg: Config) -> None:
        self.options: Dict[str, Any] = dict(options or {})
        self.url: str = str(self.options.get("url") or "")
        if not self.url:
            raise ValueError("Environment requires a 'url' option")
        self._cfg = cfg
        # captured here because Playwright fires events outside the job's task
        self._barrier: Optional[FaultBarrier] = current_barrier()
        self._pw: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._closed = False
        self.snapshots: List[Path] = []

    @property
    def closed(self) -> bool:
        return self._closed

    async def prepare(self) -> Page:
        if self._closed:
            raise RuntimeError("Environment already torn down")
        if self._page is not None:
            return self._page

        cfg = self._cfg
        screen = self.options.get("screen") or {}
        web_security = bool(self.options.get("webSecurity", False))

        self._pw = await async_playwright().start()
        self._browser = await self._pw.chromium.launch(headless=True, args=_browser_args(self.options))
        self._context = await self._browser.new_context(
            user_agent=self.options.get("userAgent") or cfg.user_agent,
            viewport={
                "width": int(screen.get("width", cfg.screen_width)),
                "height": int(screen.get("height", cfg.screen_height)),
            },
            java_script_enabled=True,
            bypass_csp=not web_security,
            ignore_https_errors=not web_security,
        )
        self._context.set_default_timeout(cfg.page_load_timeout_ms)
        self._context.set_default_navigation_timeout(cfg.page_load_timeout_ms)

        if not self.options.get("loadImages", True):
            await _install_image_blocking(self._context)

        page = await self._context.new_page()
        page.on("crash", self._on_crash)
        self._page = page

        logger.debug("Opening %s (UA=%s screen=%s)", self.url, self.options.get("userAgent"), screen)
        await page.goto(self.url, wait_until=cfg.navigation_wait_until)
        if self.options.get("snapshot"):
            await self.snapshot("loaded")
        return page

    def _on_crash(self, *_args: Any) -> None:
        err = EnvironmentCrashedError(f"Page crashed while parsing {self.url}")
        logger.error("%s", err)
        if self._barrier is not None:
            self._barrier.report(err)

    async def snapshot(self, label: str) -> Optional[Path]:
        if self._page is None:
            return None
        out_dir = self._cfg.snapshot_dir
        out_dir.mkdir(parents=True, exist_ok=True)
        path = out_dir / f"{_slug(self.url)}-{label}-{int(time.time() * 1000)}.png"
        try:
            await self._page.screenshot(path=str(path), full_page=True)
        except Exception as e:
            logger.warning("Snapshot failed for %s: %s", self.url, e)
            return None
        self.snapshots.append(path)
        return path

    async def done(self) -> None:
        """Success path: final snapshot (if enabled), then release everything."""
        if self.options.get("snapshot") and not self._closed:
            await self.snapshot("done")
        await self.tear_down()

    async def tear_down(self) -> None:
        if self._closed:
            return
        self._closed = True
        t = self.close_timeout_ms
        if self._page is not None:
            await _close_quietly("page", self._page.close, t)
        if self._context is not None:
            await _close_quietly("context", self._context.close, t)
        if self._browser is not None:
            await _close_quietly("browser", self._browser.close, t)
        if self._pw is not None:
            await _close_quietly("Playwright", self._pw.stop, t)
        self._page = self._context = self._browser = self._pw = None
        logger.debug("Environment for %s torn down", self.url)


# ---------------------------
# Parser
# ---------------------------

_PARAM_RE = re.compile(r"\{\{\s*([A-Za-z0-9_.-]+)\s*\}\}")


def fill_params(value: Optional[str], params: Dict[str, Any]) -> Optional[str]:
    """Replace {{name}} placeholders from rulesParams; unknown names stay."""
    if not value or not params:
        return value
    return _PARAM_RE.sub(lambda m: str(params.get(m.group(1), m.group(0))), value)


def apply_transforms(value: Any, steps: Union[Dict[str, Any], List[Dict[str, Any]], None]) -> Any:
    """
    String post-processing applied to every string leaf of a result.
    Steps: trim, lowercase, uppercase, replace {re, to}, match {re, group}.
    """
    if not steps:
        return value
    if isinstance(steps, dict):
        steps = [steps]
    if isinstance(value, dict):
        return {k: apply_transforms(v, steps) for k, v in value.items()}
    if isinstance(value, list):
        return [apply_transforms(v, steps) for v in value]
    if not isinstance(value, str):
        return value

    for step in steps:
        kind = step.get("type")
        if kind == "trim":
            value = value.strip()
        elif kind == "lowercase":
            value = value.lower()
        elif kind == "uppercase":
            value = value.upper()
        elif kind == "replace":
            value = re.sub(step["re"], step.get("to", ""), value)
        elif kind == "match":
            m = re.search(step["re"], value)
            value = m.group(int(step.get("group", 0))) if m else None
            if value is None:
                return None
        else:
            raise ValueError(f"Unsupported transform type: {kind!r}")
    return value


class SelectorParser:
    """
    Minimal CSS-selector rule evaluator on top of an Environment.

    Rules:
      {"scope": css, "attr"?: name, "multiple"?: bool, "transform"?: [...]}
      {"scope"?: css, "collection": [{"name": ..., <rule>}, ...], "multiple"?: bool}
    Actions (run before parsing):
      {"type": "wait", "timeout": ms} | {"type": "waitForElement", "scope": css}
      {"type": "click", "scope": css} | {"type": "type", "scope": css, "value": str}
    Pagination:
      {"scope": css of the "next" control, "maxPages"?: n}  -> list of page results

    On success the environment is released here; on failure the worker
    tears it down.
    """

    def __init__(self, environment: Any, pagination: Optional[Dict[str, Any]] = None) -> None:
        self._env = environment
        self._pagination = pagination or None

    async def parse(
        self,
        *,
        actions: Any = None,
        rules: Optional[Dict[str, Any]] = None,
        transform: Any = None,
        rules_params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        page = await self._env.prepare()
        params = rules_params or {}

        await self.run_actions(page, actions, params)

        if self._pagination:
            result = await self._parse_pages(page, rules or {}, params)
        else:
            result = await self.parse_rule(page, rules or {}, params)

        if transform:
            result = apply_transforms(result, transform)

        release = getattr(self._env, "done", None)
        if release is not None:
            await release()
        return result

    async def run_actions(self, page: Page, actions: Any, params: Dict[str, Any]) -> None:
        if not actions:
            return
        if isinstance(actions, dict):
            actions = [actions]
        for action in actions:
            kind = action.get("type")
            scope = fill_params(action.get("scope"), params)
            if kind == "wait":
                await asyncio.sleep(float(action.get("timeout", 0)) / 1000.0)
            elif kind == "waitForElement":
                await page.wait_for_selector(scope, timeout=action.get("timeout"))
            elif kind == "click":
                await page.click(scope)
            elif kind == "type":
                await page.fill(scope, fill_params(str(action.get("value", "")), params))
            else:
                raise ValueError(f"Unsupported action type: {kind!r}")

    async def parse_rule(self, root: Any, rule: Dict[str, Any], params: Dict[str, Any]) -> Any:
        scope = fill_params(rule.get("scope"), params)

        if "collection" in rule:
            if rule.get("multiple"):
                nodes = await root.query_selector_all(scope) if scope else [root]
                return [await self._collect(n, rule["collection"], params) for n in nodes]
            node = await root.query_selector(scope) if scope else root
            if node is None:
                return None
            return await self._collect(node, rule["collection"], params)

        if not scope:
            # empty rules: nothing to extract
            return {} if not rule else None

        if rule.get("multiple"):
            nodes = await root.query_selector_all(scope)
            values = [await self._value(n, rule) for n in nodes]
            return apply_transforms(values, rule.get("transform"))

        node = await root.query_selector(scope)
        if node is None:
            return None
        return apply_transforms(await self._value(node, rule), rule.get("transform"))

    async def _collect(self, node: Any, collection: List[Dict[str, Any]], params: Dict[str, Any]) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for sub in collection:
            name = sub.get("name")
            if not name:
                raise ValueError(f"Collection rule without a name: {sub!r}")
            out[name] = await self.parse_rule(node, sub, params)
        return out

    @staticmethod
    async def _value(node: Any, rule: Dict[str, Any]) -> Optional[str]:
        attr = rule.get("attr")
        if attr:
            return await node.get_attribute(attr)
        return await node.text_content()

    async def _parse_pages(self, page: Page, rules: Dict[str, Any], params: Dict[str, Any]) -> List[Any]:
        pagination = self._pagination or {}
        next_scope = fill_params(pagination.get("scope"), params)
        max_pages = max(1, int(pagination.get("maxPages", 5)))
        results: List[Any] = []
        for n in range(max_pages):
            results.append(await self.parse_rule(page, rules, params))
            if not next_scope or n == max_pages - 1:
                break
            nxt = await page.query_selector(next_scope)
            if nxt is None:
                break
            await nxt.click()
            await page.wait_for_load_state()
        return results
