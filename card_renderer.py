"""
PNG export of rendered knowledge cards.

A card's HTML is loaded into an isolated headless Chromium page (the
rendering surface) and the card container is captured at 700x1160 with 2x
supersampling. Stylesheet links whose rules cannot be read are dropped
first so cross-origin CSS never aborts the capture.
"""

import asyncio
import base64
import io
import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Iterable, List, Optional
from urllib.parse import urlsplit

from PIL import Image
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import ElementHandle, Page, async_playwright

from card_schema import CARD_HEIGHT, CARD_WIDTH


logger = logging.getLogger(__name__)

EXPORT_PIXEL_RATIO = 2
CONTAINER_SELECTOR = ".card-container"
FONT_WAIT_TIMEOUT = 5.0

SECURITY_ERROR_MESSAGE = (
    "Export failed because of browser security restrictions (CORS). "
    "Use \"Copy code\" instead, or start over and pick a different style."
)
GENERIC_EXPORT_MESSAGE = "Image export failed. Try copying the code or exporting again."

_UNSAFE_FILENAME_CHARS = re.compile(r'[\\/:*?"<>|]')

_SNAPSHOT_LINKS_JS = """() => Array.from(document.querySelectorAll('link')).map((node) => {
    let readable = true;
    try {
        if (node.sheet) { node.sheet.cssRules; }
    } catch (e) {
        readable = false;
    }
    return {
        tagName: node.tagName,
        rel: node.getAttribute('rel') || '',
        href: node.href || null,
        crossorigin: node.getAttribute('crossorigin'),
        readable: readable,
    };
})"""

_REMOVE_LINKS_JS = """(drop) => {
    const links = Array.from(document.querySelectorAll('link'));
    drop.forEach((i) => links[i].remove());
}"""

_FONTS_READY_JS = "() => document.fonts ? document.fonts.ready.then(() => true) : true"

_NEUTRAL_STYLE_JS = """(el) => {
    el.style.transform = 'none';
    el.style.margin = '0';
    el.style.padding = '0';
}"""


class ExportError(Exception):
    """Card image export failed"""
    pass


class ExportSecurityError(ExportError):
    """Export hit a browser security fault (cross-origin resources)"""
    pass


class StylesheetAccessError(Exception):
    """Reading a stylesheet's rule list was refused"""
    pass


@dataclass
class StylesheetNode:
    """Snapshot of a DOM node offered to the export filter"""
    tag_name: str
    rel: str = ""
    href: Optional[str] = None
    crossorigin: Optional[str] = None
    rules_readable: bool = True

    def read_rules(self) -> None:
        if not self.rules_readable:
            raise StylesheetAccessError(f"cssRules not readable for {self.href}")


@dataclass
class ExportedImage:
    file_name: str
    data: bytes

    @property
    def data_url(self) -> str:
        return "data:image/png;base64," + base64.b64encode(self.data).decode("ascii")


def export_file_name(title: str) -> str:
    """File name for an exported card: filesystem-unsafe characters become '_'"""
    safe = _UNSAFE_FILENAME_CHARS.sub("_", title.strip()) or "card"
    return f"{safe}.png"


def is_cross_origin(href: Optional[str], document_origin: Optional[str]) -> Optional[bool]:
    """
    Compare a resource URL's origin with the document's.

    Returns None when there is nothing to compare.
    """
    if not href:
        return None
    parts = urlsplit(href)
    if parts.scheme in ("data", "blob", "about"):
        return False
    if not parts.scheme:
        # Relative URL
        return False
    if not document_origin or document_origin == "null":
        return True
    return f"{parts.scheme}://{parts.netloc}" != document_origin


def keep_node(node: StylesheetNode, document_origin: Optional[str] = None) -> bool:
    """
    Export filter: False for stylesheet links whose rules cannot be read.

    Only stylesheet links are candidates. A cross-origin one without a
    crossorigin annotation is known to be unreadable and is dropped without
    reading its rules. Every other stylesheet link has its rules read. All
    other nodes pass.
    """
    if node.tag_name.upper() != "LINK":
        return True
    if "stylesheet" not in (node.rel or "").lower().split():
        return True

    if is_cross_origin(node.href, document_origin) and node.crossorigin is None:
        logger.warning("[EXPORT] Skipping cross-origin stylesheet %s", node.href)
        return False

    try:
        node.read_rules()
    except StylesheetAccessError:
        logger.warning("[EXPORT] Skipping unreadable stylesheet %s to avoid SecurityError", node.href)
        return False
    return True


def select_dropped(nodes: Iterable[StylesheetNode], document_origin: Optional[str]) -> List[int]:
    return [i for i, node in enumerate(nodes) if not keep_node(node, document_origin)]


def is_security_fault(error: BaseException) -> bool:
    if isinstance(error, ExportSecurityError):
        return True
    name = getattr(error, "name", None)
    message = getattr(error, "message", None) or str(error)
    return name == "SecurityError" or "SecurityError" in message


def describe_export_error(error: BaseException) -> str:
    """User-facing message for a failed export"""
    if is_security_fault(error):
        return SECURITY_ERROR_MESSAGE
    return GENERIC_EXPORT_MESSAGE


def verify_png(data: bytes) -> None:
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
            logger.info("[EXPORT] Captured %dx%d %s", img.width, img.height, img.format)
    except Exception as e:
        raise ExportError(f"Captured image failed validation: {e}") from e


class RenderingSurface:
    """A headless browser page holding one card's markup"""

    def __init__(self, page: Page):
        self.page = page

    async def load(self, html: str) -> None:
        try:
            await self.page.set_content(html, wait_until="load")
        except PlaywrightError as e:
            raise ExportError(f"Could not load card document: {e.message}") from e

    async def find_container(self) -> ElementHandle:
        try:
            container = await self.page.query_selector(CONTAINER_SELECTOR)
            if container is None:
                container = await self.page.query_selector("body")
        except PlaywrightError as e:
            raise ExportError(f"Could not read card document: {e.message}") from e
        if container is None:
            raise ExportError("Card container not found")
        return container

    async def wait_for_fonts(self, timeout: float = FONT_WAIT_TIMEOUT) -> None:
        try:
            await asyncio.wait_for(self.page.evaluate(_FONTS_READY_JS), timeout)
        except (PlaywrightError, asyncio.TimeoutError) as e:
            logger.warning("[EXPORT] Font detection failed, continuing anyway: %s", e)

    async def drop_unreadable_stylesheets(self) -> int:
        try:
            document_origin = await self.page.evaluate("() => document.location.origin")
            snapshots = await self.page.evaluate(_SNAPSHOT_LINKS_JS)
        except PlaywrightError as e:
            raise ExportError(f"Could not read card document: {e.message}") from e

        nodes = [
            StylesheetNode(
                tag_name=s["tagName"],
                rel=s["rel"],
                href=s["href"],
                crossorigin=s["crossorigin"],
                rules_readable=s["readable"],
            )
            for s in snapshots
        ]
        dropped = select_dropped(nodes, document_origin)
        if dropped:
            await self.page.evaluate(_REMOVE_LINKS_JS, dropped)
        return len(dropped)


@asynccontextmanager
async def open_rendering_surface(html: str) -> AsyncIterator[RenderingSurface]:
    """
    Load ``html`` into a fresh, isolated headless Chromium page.

    Every surface gets its own browser context, so nothing is served from a
    previous export's cache.
    """
    async with async_playwright() as p:
        try:
            browser = await p.chromium.launch(headless=True)
        except PlaywrightError as e:
            raise ExportError(f"Could not start headless browser: {e.message}") from e
        try:
            context = await browser.new_context(
                viewport={"width": CARD_WIDTH, "height": CARD_HEIGHT},
                device_scale_factor=EXPORT_PIXEL_RATIO,
            )
            page = await context.new_page()
            surface = RenderingSurface(page)
            await surface.load(html)
            yield surface
        finally:
            await browser.close()


async def export_card_image(surface: RenderingSurface, title: str) -> ExportedImage:
    """
    Rasterize the card held by ``surface`` to a PNG.

    Args:
        surface: Rendering surface already loaded with the card's markup
        title: Card title, used for the file name

    Returns:
        ExportedImage with the PNG bytes and a sanitized file name

    Raises:
        ExportSecurityError: If capture hit a security fault
        ExportError: If the document or container cannot be read or capture fails
    """
    container = await surface.find_container()
    await surface.wait_for_fonts()

    dropped = await surface.drop_unreadable_stylesheets()
    if dropped:
        logger.info("[EXPORT] Dropped %d unreadable stylesheet(s)", dropped)

    try:
        await container.evaluate(_NEUTRAL_STYLE_JS)
        box = await container.bounding_box()
        if box is None:
            raise ExportError("Card container is not visible")
        data = await surface.page.screenshot(
            type="png",
            clip={"x": box["x"], "y": box["y"], "width": CARD_WIDTH, "height": CARD_HEIGHT},
        )
    except PlaywrightError as e:
        if is_security_fault(e):
            raise ExportSecurityError(e.message) from e
        raise ExportError(f"Rasterization failed: {e.message}") from e

    verify_png(data)
    return ExportedImage(file_name=export_file_name(title), data=data)


async def render_card_png(html: str, title: str) -> ExportedImage:
    """Open a rendering surface for ``html`` and export it in one step"""
    async with open_rendering_surface(html) as surface:
        return await export_card_image(surface, title)
