import httpx
import pytest

from elab_rag.config import CrawlerConfig
from elab_rag.ingest.crawler import WebCrawler
from elab_rag.ingest.fetcher import PageFetcher

_PAGES = {
    "/": (
        "ELAB platforma",
        "ELAB je platforma za elektronsko učenje Fakulteta organizacionih nauka. "
        "Na platformi se nalaze kursevi, materijali i obaveštenja za studente. "
        "Svaki kurs ima svoju stranicu sa rasporedom i kontaktima nastavnika.",
        ["/ispiti", "/kursevi"],
    ),
    "/ispiti": (
        "Ispiti",
        "Ispitni rokovi su januarski, junski i septembarski. "
        "Ispitni rokovi traju po dve nedelje. "
        "Prijava za ispitne rokove obavlja se preko studentskog servisa.",
        ["/"],
    ),
    "/kursevi": (
        "Kursevi",
        "Platforma nudi kurseve iz programiranja, baza podataka i elektronskog poslovanja. "
        "Upis na kurs je otvoren tokom prve dve nedelje semestra. "
        "Materijali za vežbe dostupni su nakon prijave na platformu.",
        ["/ispiti"],
    ),
}


def _html(title: str, body: str, links: list[str]) -> str:
    anchors = " ".join(f'<a href="{href}">link</a>' for href in links)
    return f"<html><head><title>{title}</title></head><body><main><p>{body}</p>{anchors}</main></body></html>"


def _handler(request: httpx.Request) -> httpx.Response:
    if request.url.host != "elab.fon.bg.ac.rs":
        raise httpx.ConnectError("name resolution failed", request=request)
    page = _PAGES.get(request.url.path)
    if page is None:
        return httpx.Response(404, text="not found")
    return httpx.Response(200, text=_html(*page), headers={"content-type": "text/html; charset=utf-8"})


@pytest.fixture
def crawler_factory():
    client = httpx.Client(transport=httpx.MockTransport(_handler), follow_redirects=True)

    def _factory(config: CrawlerConfig) -> WebCrawler:
        return WebCrawler(config, fetcher=PageFetcher(config, client=client))

    yield _factory
    client.close()
