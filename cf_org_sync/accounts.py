"""
Run-scoped cache of existing UAA accounts.

The cache is built once per run from a full listing and is then only read,
except that accounts created during the run are registered into it.
"""

import logging
from typing import Dict, Optional

from cf_org_sync.models import Account

logger = logging.getLogger(__name__)


class AccountDirectory:
    """Case-insensitive lookup of UAA accounts keyed by lowercased user name."""

    def __init__(self, uaa):
        """
        Args:
            uaa: UAAManager used to list accounts
        """
        self.uaa = uaa
        self._index = None

    @property
    def loaded(self) -> bool:
        return self._index is not None

    def build_index(self) -> Dict[str, Account]:
        """
        Fetch every account and rebuild the index.

        Keys are lowercased user names; if two accounts normalize to the same
        key, the later one in fetch order wins.
        """
        self._index = self.uaa.users_by_id()
        logger.info(f"Loaded {len(self._index)} UAA accounts")
        return self._index

    def ensure_loaded(self) -> Dict[str, Account]:
        """Build the index unless it has already been built in this run."""
        if self._index is None:
            return self.build_index()
        return self._index

    def by_id(self) -> Dict[str, Account]:
        """Full account records keyed by lowercased user name."""
        return dict(self.ensure_loaded())

    def get(self, user_name: str) -> Optional[Account]:
        return self.ensure_loaded().get(user_name.lower())

    def contains(self, user_name: str) -> bool:
        return user_name.lower() in self.ensure_loaded()

    def register(self, account: Account):
        """Record an account created during this run."""
        self.ensure_loaded()[account.user_name.lower()] = account

    def __contains__(self, user_name: str) -> bool:
        return self.contains(user_name)

    def __len__(self):
        return len(self.ensure_loaded())
