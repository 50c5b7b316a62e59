import pytest

from guestwarden_host import (
    ADMINISTRATORS_SID,
    HostAccount,
    HostCommandError,
    fncParseSid,
)

MACHINE = "S-1-5-21-1004336348-1177238915-682003330"
GUEST_SID = fncParseSid(f"{MACHINE}-501")
ADMIN_SID = fncParseSid(f"{MACHINE}-500")
ALICE_SID = fncParseSid(f"{MACHINE}-1001")


class FakeHost:
    """In-memory HostPlatform that records every mutating call in order."""

    def __init__(self, accounts=None, groups=None, group_names=None):
        self.accounts = {a.sid: a for a in (accounts or [])}
        self.groups = {sid: list(members) for sid, members in (groups or {}).items()}
        self.group_names = dict(group_names or {ADMINISTRATORS_SID: "BUILTIN\\Administrators"})
        self.calls = []
        self.fail_list_accounts = False
        self.fail_translate = False
        self.fail_members = False
        self.fail_mutations = False

    @property
    def mutations(self):
        return [c for c in self.calls if c[0] in ("set_account_enabled", "remove_group_member")]

    def rename(self, sid, new_name):
        a = self.accounts[sid]
        self.accounts[sid] = HostAccount(sid=a.sid, name=new_name, enabled=a.enabled)

    def list_accounts(self):
        if self.fail_list_accounts:
            raise HostCommandError("Get-LocalUser", 1, "RPC server unavailable")
        return list(self.accounts.values())

    def list_group_member_sids(self, group_sid):
        if self.fail_members:
            raise HostCommandError("Get-LocalGroupMember", 1, "orphaned member")
        return list(self.groups.get(group_sid, []))

    def set_account_enabled(self, sid, enabled):
        self.calls.append(("set_account_enabled", str(sid), enabled))
        if self.fail_mutations:
            raise HostCommandError("Disable-LocalUser" if not enabled else "Enable-LocalUser", 1, "Access is denied.")
        a = self.accounts[sid]
        self.accounts[sid] = HostAccount(sid=a.sid, name=a.name, enabled=enabled)

    def remove_group_member(self, group_sid, member_sid):
        self.calls.append(("remove_group_member", str(group_sid), str(member_sid)))
        if self.fail_mutations:
            raise HostCommandError("Remove-LocalGroupMember", 1, "Access is denied.")
        self.groups[group_sid] = [m for m in self.groups.get(group_sid, []) if m != member_sid]

    def translate_sid(self, sid):
        if self.fail_translate or sid not in self.group_names:
            raise HostCommandError("SecurityIdentifier.Translate", 1, "Some or all identity references could not be translated.")
        return self.group_names[sid]


def make_host(guest_enabled=True, guest_name="Guest", guest_is_admin=False):
    accounts = [
        HostAccount(sid=ADMIN_SID, name="Administrator", enabled=True),
        HostAccount(sid=GUEST_SID, name=guest_name, enabled=guest_enabled),
        HostAccount(sid=ALICE_SID, name="alice", enabled=True),
    ]
    members = [ADMIN_SID, ALICE_SID] + ([GUEST_SID] if guest_is_admin else [])
    return FakeHost(accounts=accounts, groups={ADMINISTRATORS_SID: members})


class Recorder:
    """Stands in for fncPrintMessage."""

    def __init__(self):
        self.lines = []

    def __call__(self, message, msg_type="info"):
        self.lines.append((msg_type, message))

    def text(self, *types):
        return [m for t, m in self.lines if not types or t in types]


@pytest.fixture
def emit():
    return Recorder()
