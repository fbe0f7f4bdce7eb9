"""
Active Directory forest creation and test-object bootstrap.

Bootstrap runs in three steps against the domain controller:

1. one remote query snapshots the OUs, groups, users and the members of the
   groups referenced by the user records;
2. a local plan applies the ensure pattern to every record (all groups
   before all users), skipping objects that already exist;
3. every planned mutation runs inside one remote execution. The first
   failing action aborts the remaining ones.
"""

import copy
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple, Union
from zipfile import BadZipFile

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from powerlab.config import Credential, LabConfig
from powerlab.errors import ConfigurationError
from powerlab.guest_session import SessionFactory, open_guest_session
from powerlab.proxmox_api import ProxmoxClient
from powerlab.vm_manager import VMManager

logger = logging.getLogger(__name__)

GROUPS_SHEET = "Groups"
USERS_SHEET = "Users"

SNAPSHOT_SCRIPT = r"""
Import-Module ActiveDirectory
$ous = @(Get-ADOrganizationalUnit -Filter * | ForEach-Object { $_.Name })
$groups = @(Get-ADGroup -Filter * | ForEach-Object { $_.Name })
$users = @(Get-ADUser -Filter * | ForEach-Object { $_.Name })
$members = @{}
foreach ($group in $PowerLabArgs.Groups) {
    if ($groups -contains $group) {
        $members[$group] = @(Get-ADGroupMember -Identity $group | ForEach-Object { $_.Name })
    }
}
@{ OUs = $ous; Groups = $groups; Users = $users; Members = $members } | ConvertTo-Json -Compress -Depth 4
"""

APPLY_SCRIPT = r"""
Import-Module ActiveDirectory
$domainDn = (Get-ADDomain).DistinguishedName
$applied = 0
foreach ($action in $PowerLabArgs.Actions) {
    $ouPath = "OU=$($action.OU),$domainDn"
    switch ($action.Kind) {
        'ou' { New-ADOrganizationalUnit -Name $action.Name -Path $domainDn }
        'group' { New-ADGroup -Name $action.Name -Path $ouPath -GroupScope $action.GroupType }
        'user' { New-ADUser -Name $action.Name -SamAccountName $action.Name -Path $ouPath }
        'membership' { Add-ADGroupMember -Identity $action.Group -Members $action.Name }
    }
    $applied++
}
@{ Applied = $applied } | ConvertTo-Json -Compress
"""

FOREST_SCRIPT = r"""
if ((Get-CimInstance -ClassName Win32_ComputerSystem).DomainRole -ge 4) {
    @{ Created = $false } | ConvertTo-Json -Compress
    return
}
Install-WindowsFeature -Name AD-Domain-Services -IncludeManagementTools | Out-Null
$password = ConvertTo-SecureString -String $PowerLabArgs.SafeModePassword -AsPlainText -Force
Install-ADDSForest -DomainName $PowerLabArgs.DomainName -SafeModeAdministratorPassword $password -InstallDns -NoRebootOnCompletion -Force | Out-Null
@{ Created = $true } | ConvertTo-Json -Compress
"""


@dataclass
class GroupRecord:
    ou_name: str
    group_name: str
    group_type: str = "Global"


@dataclass
class UserRecord:
    ou_name: str
    user_name: str
    member_of: Optional[str] = None


@dataclass
class BootstrapAction:
    """One directory mutation to run on the domain controller."""

    kind: str
    name: str
    ou: Optional[str] = None
    group: Optional[str] = None
    group_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "Kind": self.kind,
            "Name": self.name,
            "OU": self.ou,
            "Group": self.group,
            "GroupType": self.group_type,
        }


def _as_list(value: Any) -> List[str]:
    # ConvertTo-Json flattens one-element arrays in some PowerShell versions
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def _key(name: str) -> str:
    return name.casefold()


@dataclass
class DirectoryState:
    """Names of existing directory objects; comparisons ignore case like AD does."""

    ous: Set[str] = field(default_factory=set)
    groups: Set[str] = field(default_factory=set)
    users: Set[str] = field(default_factory=set)
    members: Dict[str, Set[str]] = field(default_factory=dict)

    @classmethod
    def from_snapshot(cls, snapshot: Optional[Dict[str, Any]]) -> "DirectoryState":
        snapshot = snapshot or {}
        return cls(
            ous={_key(n) for n in _as_list(snapshot.get("OUs"))},
            groups={_key(n) for n in _as_list(snapshot.get("Groups"))},
            users={_key(n) for n in _as_list(snapshot.get("Users"))},
            members={
                _key(group): {_key(n) for n in _as_list(names)}
                for group, names in (snapshot.get("Members") or {}).items()
            },
        )


def _cell(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _sheet_rows(workbook: Any, sheet_name: str) -> List[Dict[str, Optional[str]]]:
    if sheet_name not in workbook.sheetnames:
        raise ConfigurationError(f"Workbook has no {sheet_name!r} worksheet")
    rows = workbook[sheet_name].iter_rows(values_only=True)
    header = [_cell(h) for h in next(rows, ())]
    records = []
    for row in rows:
        values = [_cell(v) for v in row]
        if not any(values):
            continue
        records.append({name: value for name, value in zip(header, values) if name})
    return records


def read_directory_workbook(path: Union[str, Path]) -> Tuple[List[GroupRecord], List[UserRecord]]:
    """
    Read group and user records from a spreadsheet.

    The ``Groups`` sheet has columns OUName, GroupName, Type; the ``Users``
    sheet has OUName, UserName, MemberOf. Rows are taken as they are.
    """
    try:
        workbook = load_workbook(path, read_only=True, data_only=True)
    except (InvalidFileException, BadZipFile) as e:
        raise ConfigurationError(f"{path} is not a readable .xlsx workbook: {e}") from e
    try:
        groups = [
            GroupRecord(ou_name=row.get("OUName") or "", group_name=row.get("GroupName") or "",
                        group_type=row.get("Type") or "Global")
            for row in _sheet_rows(workbook, GROUPS_SHEET)
        ]
        users = [
            UserRecord(ou_name=row.get("OUName") or "", user_name=row.get("UserName") or "",
                       member_of=row.get("MemberOf"))
            for row in _sheet_rows(workbook, USERS_SHEET)
        ]
    finally:
        workbook.close()
    logger.info(f"Read {len(groups)} groups and {len(users)} users from {path}")
    return groups, users


def plan_bootstrap(
    groups: List[GroupRecord], users: List[UserRecord], state: DirectoryState
) -> List[BootstrapAction]:
    """Return the actions needed to make the directory contain every record."""
    state = copy.deepcopy(state)
    actions: List[BootstrapAction] = []

    def ensure_ou(name: str) -> None:
        if _key(name) in state.ous:
            logger.info(f"OU {name!r} already exists")
            return
        actions.append(BootstrapAction(kind="ou", name=name))
        state.ous.add(_key(name))

    for record in groups:
        ensure_ou(record.ou_name)
        if _key(record.group_name) in state.groups:
            logger.info(f"Group {record.group_name!r} already exists")
            continue
        actions.append(
            BootstrapAction(kind="group", name=record.group_name, ou=record.ou_name, group_type=record.group_type)
        )
        state.groups.add(_key(record.group_name))

    for record in users:
        ensure_ou(record.ou_name)
        if _key(record.user_name) in state.users:
            logger.info(f"User {record.user_name!r} already exists")
        else:
            actions.append(BootstrapAction(kind="user", name=record.user_name, ou=record.ou_name))
            state.users.add(_key(record.user_name))

        if not record.member_of:
            continue
        if _key(record.member_of) not in state.groups:
            logger.warning(f"⚠️  Group {record.member_of!r} for user {record.user_name!r} is not known")
        members = state.members.setdefault(_key(record.member_of), set())
        if _key(record.user_name) in members:
            logger.info(f"User {record.user_name!r} is already a member of {record.member_of!r}")
            continue
        actions.append(BootstrapAction(kind="membership", name=record.user_name, group=record.member_of))
        members.add(_key(record.user_name))

    return actions


class DirectoryBootstrap:
    """Creates the lab forest and its test objects on the domain controller VM."""

    def __init__(
        self,
        client: ProxmoxClient,
        config: LabConfig,
        session_factory: SessionFactory = open_guest_session,
    ):
        self.client = client
        self.config = config
        self.session_factory = session_factory

    def bootstrap(
        self,
        groups: List[GroupRecord],
        users: List[UserRecord],
        credential: Optional[Credential] = None,
    ) -> List[BootstrapAction]:
        """
        Ensure every OU, group, user and membership of the records exists.

        Args:
            groups: Group records, processed before users
            users: User records
            credential: Domain credential for the DC, defaults to the configured one

        Returns:
            The actions that were applied
        """
        credential = credential or self.config.domain_credential
        referenced = sorted({u.member_of for u in users if u.member_of})

        with self.session_factory(self.client, self.config.dc_vm_name, credential, self.config) as session:
            snapshot = session.run_script(SNAPSHOT_SCRIPT, {"Groups": referenced})
            actions = plan_bootstrap(groups, users, DirectoryState.from_snapshot(snapshot))
            if not actions:
                logger.info("✅ Directory already contains every record, nothing to do")
                return []

            logger.info(f"🏗️  Applying {len(actions)} directory changes on {self.config.dc_vm_name}")
            session.run_script(APPLY_SCRIPT, {"Actions": [a.to_dict() for a in actions]})

        logger.info(f"✅ Directory bootstrap complete ({len(actions)} changes)")
        return actions

    def bootstrap_from_workbook(self, path: Union[str, Path], credential: Optional[Credential] = None) -> List[BootstrapAction]:
        groups, users = read_directory_workbook(path)
        return self.bootstrap(groups, users, credential)

    def new_forest(
        self,
        domain_name: Optional[str] = None,
        safe_mode_password: Optional[str] = None,
        credential: Optional[Credential] = None,
    ) -> bool:
        """
        Promote the DC VM to the first domain controller of a new forest.

        Returns:
            True if a forest was created, False if the VM already is a DC
        """
        domain_name = domain_name or self.config.domain_name
        safe_mode_password = safe_mode_password or self.config.safe_mode_password
        if not safe_mode_password:
            raise ConfigurationError("A safe mode administrator password is required to create a forest")
        credential = credential or self.config.guest_credential
        dc_name = self.config.dc_vm_name

        with self.session_factory(self.client, dc_name, credential, self.config) as session:
            result = session.run_script(
                FOREST_SCRIPT, {"DomainName": domain_name, "SafeModePassword": safe_mode_password}
            )

        if not (isinstance(result, dict) and result.get("Created")):
            logger.info(f"✅ {dc_name} is already a domain controller, skipping forest creation")
            return False

        logger.info(f"🌲 Created forest {domain_name} on {dc_name}, rebooting")
        VMManager(self.client, self.config).reboot(dc_name)
        return True
