"""
Default parse function and outlink filter.
"""

import re
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin, urlparse, urlunparse
from bs4 import BeautifulSoup, Comment

from .resource import ParsedPage
from ..errors import ParseFailure


SKIP_EXTENSIONS = (
    '.jpg', '.jpeg', '.png', '.gif', '.bmp', '.svg', '.webp',
    '.pdf', '.doc', '.docx', '.xls', '.xlsx', '.ppt', '.pptx',
    '.zip', '.rar', '.tar', '.gz', '.exe', '.dmg', '.iso',
    '.mp3', '.mp4', '.avi', '.mov', '.wmv', '.flv',
    '.css', '.js', '.ico', '.woff', '.woff2', '.ttf', '.eot'
)


class ContentParser:
    """
    Parses HTML into a few metadata fields and the page's links.
    Links are resolved against the page URL with fragments removed; no
    further normalization is applied.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self.whitespace_pattern = re.compile(r'\s+')

    def __call__(self, url: str, raw_content: bytes) -> ParsedPage:
        return self.parse(url, raw_content)

    def parse(self, url: str, raw_content: bytes) -> ParsedPage:
        """
        Parse raw page content.

        Raises:
            ParseFailure: if the content cannot be parsed at all
        """
        try:
            soup = BeautifulSoup(raw_content, 'lxml')
        except Exception as e:
            raise ParseFailure(url, str(e))

        for script in soup(["script", "style", "noscript"]):
            script.decompose()
        for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
            comment.extract()

        fields: Dict[str, Any] = {
            'title': self._extract_title(soup),
            'meta_description': self._extract_description(soup),
            'language': self._extract_language(soup),
            'canonical_url': self._extract_canonical_url(soup, url),
        }
        body = soup.find('body') or soup
        text = self._clean_text(body.get_text(separator=' ', strip=True))
        fields['word_count'] = len(text.split()) if text else 0

        links = self._extract_links(soup, url)
        self.logger.debug(f"Parsed {url}: {fields['word_count']} words, {len(links)} links")
        return ParsedPage(fields=fields, outlinks=tuple(links))

    def _extract_title(self, soup: BeautifulSoup) -> Optional[str]:
        title_tag = soup.find('title')
        return self._clean_text(title_tag.get_text()) if title_tag else None

    def _extract_description(self, soup: BeautifulSoup) -> Optional[str]:
        meta_desc = soup.find('meta', attrs={'name': 'description'}) or \
                   soup.find('meta', attrs={'property': 'og:description'})
        return self._clean_text(meta_desc.get('content', '')) if meta_desc else None

    def _extract_language(self, soup: BeautifulSoup) -> Optional[str]:
        html_tag = soup.find('html')
        if html_tag:
            return html_tag.get('lang') or html_tag.get('xml:lang')
        return None

    def _extract_canonical_url(self, soup: BeautifulSoup, base_url: str) -> Optional[str]:
        canonical = soup.find('link', attrs={'rel': 'canonical'})
        if canonical and canonical.get('href'):
            return urljoin(base_url, canonical['href'])
        return None

    def _extract_links(self, soup: BeautifulSoup, base_url: str) -> List[str]:
        """Extract links in document order, without duplicates."""
        links: List[str] = []
        seen = set()

        for link in soup.find_all('a', href=True):
            href = link['href'].strip()
            if not href or href.startswith('#'):
                continue

            absolute_url = self._strip_fragment(urljoin(base_url, href))
            if absolute_url not in seen:
                seen.add(absolute_url)
                links.append(absolute_url)

        return links

    def _strip_fragment(self, url: str) -> str:
        try:
            parsed = urlparse(url)
        except ValueError:
            return url
        return urlunparse((parsed.scheme, parsed.netloc.lower(), parsed.path,
                           parsed.params, parsed.query, ''))

    def _clean_text(self, text: str) -> str:
        if not text:
            return ""
        return self.whitespace_pattern.sub(' ', text.strip())


class OutlinkFilter:
    """Rejects malformed, off-scope or non-content links."""

    def __init__(self, allowed_domains: Optional[List[str]] = None,
                 blocked_domains: Optional[List[str]] = None):
        self.allowed_domains = set(allowed_domains) if allowed_domains else set()
        self.blocked_domains = set(blocked_domains) if blocked_domains else set()

    def __call__(self, url: str) -> bool:
        return self.is_valid_url(url)

    def is_valid_url(self, url: str) -> bool:
        """Check if URL is valid for crawling."""
        try:
            parsed = urlparse(url)
        except ValueError:
            return False

        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            return False

        domain = parsed.netloc.lower()

        if any(blocked in domain for blocked in self.blocked_domains):
            return False

        if self.allowed_domains and not any(allowed in domain for allowed in self.allowed_domains):
            return False

        return not parsed.path.lower().endswith(SKIP_EXTENSIONS)
