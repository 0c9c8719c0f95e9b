"""
UAA account management.

This module lists and creates UAA user accounts and acquires the OAuth
tokens used against the UAA and the Cloud Controller.
"""

import logging
from typing import Dict, List

from cf_org_sync.http_client import DecodeError
from cf_org_sync.logging_setup import security_logger
from cf_org_sync.models import Account, CreateUserRequest
from cf_org_sync.pagination import fetch_all, UserListPage, DEFAULT_MAX_PAGES

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 5000


class ValidationError(Exception):
    """Raised when an account is missing a required field."""
    pass


def uaa_host(system_domain: str) -> str:
    return f"https://uaa.{system_domain}"


def unescape_dn(user_dn: str) -> str:
    """Rewrite LDAP escaped commas (a literal backslash-comma) to plain commas."""
    return user_dn.replace('\\,', ',')


class UAAManager:
    """
    Client for the UAA /Users API.

    Listings are read through the paginated fetcher; account creation is a
    single POST per user.
    """

    def __init__(self, http, system_domain: str, token: str,
                 page_size: int = DEFAULT_PAGE_SIZE,
                 max_pages: int = DEFAULT_MAX_PAGES,
                 dry_run: bool = False):
        """
        Initialize UAA manager.

        Args:
            http: CloudFoundryHTTPClient (or compatible) instance
            system_domain: Platform system domain (uaa.<domain> is the UAA host)
            token: UAA bearer token with scim.read and scim.write
            page_size: Users requested per page
            max_pages: Upper bound on listing pages
            dry_run: Log account creations instead of sending them
        """
        self.http = http
        self.host = uaa_host(system_domain)
        self.token = token
        self.page_size = page_size
        self.max_pages = max_pages
        self.dry_run = dry_run

    def _get_users(self) -> List[Account]:
        logger.debug("Getting users from Cloud Foundry")
        url = f"{self.host}/Users?count={self.page_size}"
        page = fetch_all(self.http, self.token, url, UserListPage, self.max_pages)
        logger.debug(f"Found {len(page.items)} users in the CF instance")
        return page.items

    def list_users(self) -> Dict[str, str]:
        """
        List accounts keyed by lowercased user name.

        Returns:
            Mapping of lowercased user name to account id. When two accounts
            differ only by case, the later one in fetch order wins.
        """
        return {user.user_name.lower(): user.id for user in self._get_users()}

    def users_by_id(self) -> Dict[str, Account]:
        """List full account records keyed by lowercased user name."""
        return {user.user_name.lower(): user for user in self._get_users()}

    def create_external_user(self, user_name: str, email: str, external_id: str, origin: str):
        """
        Create an account backed by an external identity provider.

        Args:
            user_name: Account user name
            email: Primary email address
            external_id: Directory DN; escaped commas are unescaped before submission
            origin: Identity provider tag (for example 'ldap')

        Raises:
            ValidationError: If user_name, email or external_id is empty
            TransportError: If the UAA rejects the request
        """
        if not user_name or not email or not external_id:
            raise ValidationError(
                f"skipping user as missing name[{user_name}], email[{email}] or externalID[{external_id}]"
            )

        if self.dry_run:
            logger.info(f"[dry-run]: successfully added user [{user_name}]")
            return

        payload = CreateUserRequest(
            user_name=user_name,
            email=email,
            origin=origin,
            external_id=unescape_dn(external_id)
        )
        try:
            self.http.post(f"{self.host}/Users", self.token, payload)
        except Exception:
            security_logger.log_user_operation('create_account', user_name, self.host, False)
            raise
        security_logger.log_user_operation('create_account', user_name, self.host, True)
        logger.info(f"successfully added user [{user_name}]")


def _access_token(response, token_kind: str) -> str:
    token = response.get('access_token') if isinstance(response, dict) else None
    if not token:
        raise DecodeError(f"cannot read {token_kind} token: response has no access_token")
    return token


def get_cf_token(http, system_domain: str, user_id: str, password: str) -> str:
    """
    Obtain a Cloud Controller token with the password grant of the 'cf' client.

    Raises:
        TransportError: If the token endpoint rejects the request
        DecodeError: If the response carries no access token
    """
    fields = {
        'grant_type': 'password',
        'response_type': 'token',
        'username': user_id,
        'password': password,
    }
    try:
        response = http.post_form(f"{uaa_host(system_domain)}/oauth/token", fields, 'cf', '')
    except Exception:
        security_logger.log_authentication_attempt('cf', user_id, False)
        raise
    security_logger.log_authentication_attempt('cf', user_id, True)
    return _access_token(response, 'CF')


def get_uaac_token(http, system_domain: str, client_id: str, secret: str) -> str:
    """
    Obtain a UAA token with the client-credentials grant.

    Raises:
        TransportError: If the token endpoint rejects the request
        DecodeError: If the response carries no access token
    """
    fields = {
        'grant_type': 'client_credentials',
        'response_type': 'token',
    }
    try:
        response = http.post_form(f"{uaa_host(system_domain)}/oauth/token", fields, client_id, secret)
    except Exception:
        security_logger.log_authentication_attempt('uaa', client_id, False)
        raise
    security_logger.log_authentication_attempt('uaa', client_id, True)
    return _access_token(response, 'UAAC')
