"""
Cloud Controller organization management.

This module keeps a run-scoped snapshot of all organizations, resolves them
by name, creates missing ones, and adds users and role grants.
"""

import logging
from typing import List, Optional, Iterable

from cf_org_sync.logging_setup import security_logger
from cf_org_sync.models import Organization, Role, CreateOrgRequest, UsernameRequest
from cf_org_sync.pagination import fetch_all, OrganizationListPage, DEFAULT_MAX_PAGES

logger = logging.getLogger(__name__)


class NotFoundError(Exception):
    """Raised when a looked-up entity does not exist."""
    pass


class OrganizationNotFoundError(NotFoundError):
    """Raised when no organization has the requested name."""
    pass


class OrganizationManager:
    """
    Organization resolver for the Cloud Controller v2 API.

    refresh() takes a snapshot of every organization; find() and exists()
    read that snapshot. The snapshot is loaded on first lookup if refresh()
    has not been called, and is refreshed after every create().
    """

    def __init__(self, http, system_domain: str, token: str,
                 max_pages: int = DEFAULT_MAX_PAGES, dry_run: bool = False):
        """
        Initialize organization manager.

        Args:
            http: CloudFoundryHTTPClient (or compatible) instance
            system_domain: Platform system domain (api.<domain> is the Cloud Controller)
            token: Cloud Controller bearer token
            max_pages: Upper bound on listing pages
            dry_run: Log writes instead of sending them
        """
        self.http = http
        self.api_url = f"https://api.{system_domain}/v2/organizations"
        self.token = token
        self.max_pages = max_pages
        self.dry_run = dry_run
        self.orgs = None

    def refresh(self) -> List[Organization]:
        """Fetch all organizations into the snapshot."""
        page = fetch_all(self.http, self.token, self.api_url, OrganizationListPage, self.max_pages)
        self.orgs = page.items
        logger.debug(f"Fetched {len(self.orgs)} organizations")
        return self.orgs

    def _snapshot(self) -> List[Organization]:
        if self.orgs is None:
            return self.refresh()
        return self.orgs

    def find(self, org_name: str) -> Organization:
        """
        Find an organization by exact (case-sensitive) name.

        Raises:
            OrganizationNotFoundError: If no organization has that name
        """
        for org in self._snapshot():
            if org.name == org_name:
                return org
        raise OrganizationNotFoundError(f"Organization [{org_name}] not found")

    def exists(self, org_name: str) -> bool:
        try:
            self.find(org_name)
            return True
        except OrganizationNotFoundError:
            return False

    def create(self, org_name: str) -> Optional[Organization]:
        """
        Create an organization and resolve it again by name.

        The creation response is not used; the organization is looked up in a
        fresh snapshot. In dry-run mode nothing is sent and None is returned.

        Raises:
            TransportError: If the Cloud Controller rejects the request
                (status_code 409 for a duplicate name)
            OrganizationNotFoundError: If the organization is not listed after creation
        """
        if self.dry_run:
            logger.info(f"[dry-run]: would create org [{org_name}]")
            return None

        self.http.post(self.api_url, self.token, CreateOrgRequest(org_name))
        self.refresh()
        org = self.find(org_name)
        logger.info(f"Created org [{org_name}] with guid {org.guid}")
        return org

    def ensure_orgs(self, org_names: Iterable[str]) -> List[str]:
        """
        Create each listed organization that does not exist yet.

        Returns:
            Names of the organizations created
        """
        org_names = list(org_names)
        if not org_names:
            logger.info("No orgs in config file")
            return []

        self.refresh()
        created = []
        for org_name in org_names:
            if self.exists(org_name):
                logger.info(f"[{org_name}] org already exists")
                continue
            logger.info(f"Creating [{org_name}] org")
            self.create(org_name)
            created.append(org_name)
        return created

    def add_user(self, org: Organization, user_name: str):
        """Add a user as a member of an organization. Adding an existing member is a no-op."""
        logger.info(f"Adding {user_name} to {org.name}")
        self._put(f"{self.api_url}/{org.guid}/users", user_name)

    def grant_role(self, org: Organization, user_name: str, role: Role):
        """Grant a user a role on an organization."""
        logger.info(f"Adding {user_name} to {org.name} with role {role.path}")
        try:
            self._put(f"{self.api_url}/{org.guid}/{role.path}", user_name)
        except Exception:
            security_logger.log_user_operation(f"grant_{role.path}", user_name, org.name, False)
            raise
        security_logger.log_user_operation(f"grant_{role.path}", user_name, org.name, True)

    def _put(self, url: str, user_name: str):
        if self.dry_run:
            logger.info(f"[dry-run]: PUT {url} for [{user_name}]")
            return
        self.http.put(url, self.token, UsernameRequest(user_name))
