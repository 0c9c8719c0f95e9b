"""
Records and request payloads exchanged with LDAP, the UAA and the Cloud Controller.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Any, List


class Role(Enum):
    """Organization roles, valued by their Cloud Controller URL path segment."""

    MANAGER = 'managers'
    AUDITOR = 'auditors'
    BILLING_MANAGER = 'billing_managers'

    @property
    def path(self) -> str:
        return self.value

    @classmethod
    def from_name(cls, name: str) -> 'Role':
        """
        Parse a role from its config name (manager, auditor, billing_manager).

        Raises:
            ValueError: If the name is not a known role
        """
        normalized = name.strip().lower().replace('-', '_')
        try:
            return cls[normalized.upper()]
        except KeyError:
            raise ValueError(f"Unknown organization role: {name}")


@dataclass(frozen=True)
class Organization:
    guid: str
    name: str


@dataclass(frozen=True)
class Account:
    id: str
    user_name: str
    origin: str = ''


@dataclass(frozen=True)
class DirectoryMember:
    user_id: str
    email: str
    user_dn: str


@dataclass(frozen=True)
class RoleBinding:
    """A role on an organization bound to an LDAP group. An empty group_name is a no-op."""

    organization: str
    role: Role
    group_name: str = ''


@dataclass
class OrgConfig:
    """Contents of one orgConfig.yml file."""

    org: str
    manager_group: str = ''
    auditor_group: str = ''
    billing_manager_group: str = ''

    def bindings(self) -> List[RoleBinding]:
        """Role bindings in processing order: manager, auditor, billing manager."""
        return [
            RoleBinding(self.org, Role.MANAGER, self.manager_group),
            RoleBinding(self.org, Role.AUDITOR, self.auditor_group),
            RoleBinding(self.org, Role.BILLING_MANAGER, self.billing_manager_group),
        ]


@dataclass
class CreateUserRequest:
    """Body of POST /Users on the UAA."""

    user_name: str
    email: str
    origin: str
    external_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'userName': self.user_name,
            'emails': [{'value': self.email}],
            'origin': self.origin,
            'externalId': self.external_id,
        }


@dataclass
class UsernameRequest:
    """Body of the organization user and role PUTs."""

    username: str

    def to_dict(self) -> Dict[str, Any]:
        return {'username': self.username}


@dataclass
class CreateOrgRequest:
    name: str

    def to_dict(self) -> Dict[str, Any]:
        return {'name': self.name}

