from __future__ import annotations

import asyncio
from typing import Iterable, List, Optional

import requests
from lxml import html as lxml_html

from core.models import FetchedContent, SourceRef
from core.text import normalize_text

from .fetcher import ContentSource

USER_AGENT = "tabmemo/0.1 (session collector)"


class UrlListSource(ContentSource):
    """Content source over a fixed list of URLs, fetched with plain HTTP GETs."""

    def __init__(
        self,
        urls: Iterable[str],
        *,
        session: Optional[requests.Session] = None,
        request_timeout: float = 10.0,
    ) -> None:
        self.urls = [u.strip() for u in urls if u and u.strip()]
        self.session = session or requests.Session()
        self.request_timeout = request_timeout

    async def list_sources(self) -> List[SourceRef]:
        return [SourceRef(ref=url, identity=url) for url in self.urls]

    def _get(self, url: str) -> FetchedContent:
        response = self.session.get(url, timeout=self.request_timeout, headers={"User-Agent": USER_AGENT})
        response.raise_for_status()
        tree = lxml_html.fromstring(response.text)
        for bad in tree.xpath("//script|//style|//noscript"):
            bad.drop_tree()
        title = normalize_text(" ".join(tree.xpath("//title//text()")))
        body_nodes = tree.xpath("//body")
        text = body_nodes[0].text_content() if body_nodes else tree.text_content()
        return FetchedContent(identity=url, title=title, body=normalize_text(text))

    async def retrieve(self, ref: SourceRef) -> FetchedContent:
        return await asyncio.to_thread(self._get, ref.identity)
