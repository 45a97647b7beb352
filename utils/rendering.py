import os
from typing import Any, Dict

from jinja2 import Environment, FileSystemLoader, select_autoescape
from playwright.async_api import async_playwright

# Set up Jinja2 environment to load templates from the ``templates``
# directory. Autoescape HTML to prevent injection attacks.
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
TEMPLATE_DIR = os.path.join(BASE_DIR, "templates")
jinja_env = Environment(
    loader=FileSystemLoader(TEMPLATE_DIR),
    autoescape=select_autoescape(["html", "xml"]),
)


def render_template(name: str, /, **context: Any) -> str:
    return jinja_env.get_template(name).render(**context)


def render_report_html(document: Dict[str, Any]) -> str:
    """Render an export document as a printable HTML page."""
    return render_template("meeting_report.html", doc=document)


async def render_pdf_bytes_with_playwright(html: str) -> bytes:
    """
    Render the provided HTML string to a PDF using Playwright (Chromium).
    Returns raw PDF bytes.
    """
    async with async_playwright() as p:
        browser = await p.chromium.launch()
        try:
            page = await browser.new_page()

            # set HTML content and wait for network to settle so webfonts/images load
            await page.set_content(html, wait_until="networkidle")

            pdf_bytes: bytes = await page.pdf(
                format="A4",
                print_background=True,
                margin={"top": "18mm", "right": "14mm", "bottom": "18mm", "left": "14mm"},
            )
        finally:
            await browser.close()
        return pdf_bytes
