"""
Paginated listing of UAA and Cloud Controller collections.

Both APIs cap the number of resources returned per response. fetch_all()
follows each page's continuation link and merges the pages into one
collection, in page order then within-page order. Items listed twice by the
server (for example during a concurrent modification) are kept twice.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Type, TypeVar
from urllib.parse import urlparse, urlunparse, parse_qsl, urlencode, urljoin

from cf_org_sync.http_client import CloudFoundryAPIError, DecodeError
from cf_org_sync.models import Account, Organization

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAGES = 1000

P = TypeVar('P', bound='Page')


class PaginationLimitError(CloudFoundryAPIError):
    """Raised when a listing returns more pages than the configured bound."""
    pass


class Page(ABC):
    """One decoded page of a listing endpoint."""

    def __init__(self, items: List[Any]):
        self.items = items

    @classmethod
    @abstractmethod
    def decode(cls: Type[P], data: Any) -> P:
        """
        Build a page from a decoded JSON response body.

        Raises:
            DecodeError: If the body does not have the page's shape
        """

    @abstractmethod
    def next_page_link(self, initial_url: str) -> str:
        """Return the URL of the next page, or an empty string on the last page."""

    def merge(self, other: 'Page'):
        """Append the items of another page to this one."""
        self.items.extend(other.items)

    def __len__(self):
        return len(self.items)


def _require_mapping(data: Any, page_name: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise DecodeError(f"{page_name} response is not a JSON object")
    resources = data.get('resources')
    if not isinstance(resources, list):
        raise DecodeError(f"{page_name} response has no resources list")
    return data


class UserListPage(Page):
    """
    Page of the UAA SCIM /Users listing.

    The next page is derived from startIndex (1-based) plus the number of
    resources returned, compared against totalResults.
    """

    def __init__(self, items: List[Account], start_index: int = 1, total_results: int = 0):
        super().__init__(items)
        self.start_index = start_index
        self.total_results = total_results

    @classmethod
    def decode(cls, data: Any) -> 'UserListPage':
        data = _require_mapping(data, 'User list')
        try:
            users = [
                Account(
                    id=resource.get('id', ''),
                    user_name=resource['userName'],
                    origin=resource.get('origin', '')
                )
                for resource in data['resources']
            ]
            start_index = int(data.get('startIndex', 1))
            total_results = int(data.get('totalResults', len(users)))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise DecodeError(f"Malformed user list response: {e}")
        return cls(users, start_index, total_results)

    def next_page_link(self, initial_url: str) -> str:
        if not self.items:
            return ''
        next_index = self.start_index + len(self.items)
        if next_index > self.total_results:
            return ''

        parsed = urlparse(initial_url)
        query = [(k, v) for k, v in parse_qsl(parsed.query) if k != 'startIndex']
        query.append(('startIndex', str(next_index)))
        return urlunparse(parsed._replace(query=urlencode(query)))


class OrganizationListPage(Page):
    """Page of the Cloud Controller v2 /v2/organizations listing, linked by next_url."""

    def __init__(self, items: List[Organization], next_url: str = ''):
        super().__init__(items)
        self.next_url = next_url

    @classmethod
    def decode(cls, data: Any) -> 'OrganizationListPage':
        data = _require_mapping(data, 'Organization list')
        try:
            orgs = [
                Organization(
                    guid=resource['metadata']['guid'],
                    name=resource['entity']['name']
                )
                for resource in data['resources']
            ]
        except (KeyError, TypeError) as e:
            raise DecodeError(f"Malformed organization list response: {e}")
        return cls(orgs, data.get('next_url') or '')

    def next_page_link(self, initial_url: str) -> str:
        if not self.next_url:
            return ''
        return urljoin(initial_url, self.next_url)


def fetch_all(http, token: str, initial_url: str, page_class: Type[P],
              max_pages: int = DEFAULT_MAX_PAGES) -> P:
    """
    Fetch every page of a listing endpoint and merge them into the first page.

    Args:
        http: HTTP client with a get(url, token) method
        token: Bearer token for the listing endpoint
        initial_url: URL of the first page
        page_class: Page subclass used to decode each response
        max_pages: Upper bound on the number of pages requested

    Returns:
        The first page, holding the items of all pages

    Raises:
        TransportError: If any page request fails
        DecodeError: If any page body cannot be decoded
        PaginationLimitError: If the listing exceeds max_pages
    """
    target = page_class.decode(http.get(initial_url, token))
    pages = 1

    next_url = target.next_page_link(initial_url)
    while next_url:
        if pages >= max_pages:
            raise PaginationLimitError(
                f"Listing {initial_url} exceeded {max_pages} pages; stopping at {next_url}"
            )
        logger.debug(f"NextURL: {next_url}")
        page = page_class.decode(http.get(next_url, token))
        pages += 1
        target.merge(page)
        next_url = page.next_page_link(initial_url)

    logger.debug(f"Fetched {len(target)} items from {initial_url} across {pages} pages")
    return target
