"""
Reconciliation of one LDAP group onto one organization role.

For every member of the group, the reconciler makes sure a UAA account
exists, that the account is a member of the organization, and that it holds
the bound role. It only adds; nothing is ever revoked. Every platform write
is idempotent, so re-running after a partial failure is safe.
"""

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional

from cf_org_sync.models import Account, DirectoryMember, Organization, Role

logger = logging.getLogger(__name__)


class MemberState(IntEnum):
    UNKNOWN = 0
    ACCOUNT_ENSURED = 1
    ORG_MEMBERSHIP_ENSURED = 2
    ROLE_GRANTED = 3


@dataclass
class MemberOutcome:
    member: DirectoryMember
    state: MemberState = MemberState.UNKNOWN
    account_created: bool = False
    error: Optional[Exception] = None

    @property
    def succeeded(self) -> bool:
        return self.state == MemberState.ROLE_GRANTED


@dataclass
class ReconcileResult:
    organization: str
    role: Role
    group_name: str
    outcomes: List[MemberOutcome] = field(default_factory=list)

    @property
    def skipped(self) -> bool:
        return not self.group_name

    @property
    def accounts_created(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.account_created)

    @property
    def roles_granted(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.succeeded)

    @property
    def failures(self) -> List[MemberOutcome]:
        return [outcome for outcome in self.outcomes if outcome.error is not None]


class GroupReconciler:
    """
    Applies one (organization, role, group) binding.

    With fail_fast (the default) the first member error is raised and later
    members are left for the next run. Without it, each member's error is
    recorded in the result and the remaining members are still processed.
    """

    def __init__(self, directory, accounts, uaa, orgs, origin: str = 'ldap', fail_fast: bool = True):
        """
        Args:
            directory: Directory provider with get_group_members(group_name)
            accounts: AccountDirectory shared across every binding of the run
            uaa: UAAManager used to create missing accounts
            orgs: OrganizationManager used for membership and role grants
            origin: UAA origin (identity provider tag) for created accounts
            fail_fast: Stop at the first member error
        """
        self.directory = directory
        self.accounts = accounts
        self.uaa = uaa
        self.orgs = orgs
        self.origin = origin
        self.fail_fast = fail_fast

    def reconcile(self, organization: Organization, role: Role, group_name: str) -> ReconcileResult:
        """
        Make every member of group_name hold role on organization.

        Returns:
            Per-member outcomes; empty when group_name is empty

        Raises:
            The first error encountered, when fail_fast is set
        """
        result = ReconcileResult(organization.name, role, group_name)
        if not group_name:
            logger.debug(f"No group bound to role {role.path} for org {organization.name}")
            return result

        members = self.directory.get_group_members(group_name)
        self.accounts.ensure_loaded()

        for member in members:
            outcome = MemberOutcome(member)
            result.outcomes.append(outcome)
            try:
                self._reconcile_member(organization, role, outcome)
            except Exception as e:
                outcome.error = e
                if self.fail_fast:
                    logger.error(f"Failed to grant {role.path} on {organization.name} to {member.user_id}: {e}")
                    raise
                logger.warning(f"Failed to grant {role.path} on {organization.name} to {member.user_id}, "
                               f"continuing with remaining members: {e}")

        logger.info(f"Group {group_name} -> {organization.name}/{role.path}: "
                    f"{result.accounts_created} accounts created, {result.roles_granted} roles granted, "
                    f"{len(result.failures)} failures")
        return result

    def _reconcile_member(self, organization: Organization, role: Role, outcome: MemberOutcome):
        member = outcome.member

        if self.accounts.contains(member.user_id):
            logger.info(f"User {member.user_id} already exists")
        else:
            logger.info(f"User {member.user_id} doesn't exist so creating in UAA")
            self.uaa.create_external_user(member.user_id, member.email, member.user_dn, self.origin)
            self.accounts.register(Account(id='', user_name=member.user_id, origin=self.origin))
            outcome.account_created = True
        outcome.state = MemberState.ACCOUNT_ENSURED

        self.orgs.add_user(organization, member.user_id)
        outcome.state = MemberState.ORG_MEMBERSHIP_ENSURED

        self.orgs.grant_role(organization, member.user_id, role)
        outcome.state = MemberState.ROLE_GRANTED
