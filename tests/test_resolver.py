import pytest

from conftest import ADMIN_SID, GUEST_SID, FakeHost, make_host
from guestwarden import (
    AccountNotFound,
    AccountQueryFailure,
    fncIsMember,
    fncResolveAccountBySid,
    fncResolveGroupBySid,
)
from guestwarden_host import ADMINISTRATORS_SID, HostAccount, fncParseSid


def test_resolves_guest_by_rid():
    account = fncResolveAccountBySid(make_host())
    assert account.sid == GUEST_SID
    assert account.name == "Guest"
    assert account.enabled is True


def test_resolves_renamed_or_localized_guest():
    account = fncResolveAccountBySid(make_host(guest_name="Invité", guest_enabled=False))
    assert account.sid == GUEST_SID
    assert account.name == "Invité"
    assert account.enabled is False


def test_rename_between_resolutions_keeps_same_account():
    host = make_host()
    first = fncResolveAccountBySid(host)
    host.rename(GUEST_SID, "visitor")
    second = fncResolveAccountBySid(host)
    assert first.sid == second.sid == GUEST_SID
    assert second.name == "visitor"


def test_never_matches_on_name():
    # an ordinary account called "Guest", and the real one deleted
    impostor = HostAccount(sid=fncParseSid("S-1-5-21-1-2-3-1501"), name="Guest", enabled=True)
    host = FakeHost(accounts=[HostAccount(sid=ADMIN_SID, name="Administrator", enabled=True), impostor])
    with pytest.raises(AccountNotFound):
        fncResolveAccountBySid(host)


def test_ignores_non_local_sids_with_same_rid():
    service = HostAccount(sid=fncParseSid("S-1-5-80-1-2-3-4-501"), name="svc", enabled=True)
    host = FakeHost(accounts=[service])
    with pytest.raises(AccountNotFound):
        fncResolveAccountBySid(host)


def test_enumeration_failure_is_fatal():
    host = make_host()
    host.fail_list_accounts = True
    with pytest.raises(AccountQueryFailure) as exc:
        fncResolveAccountBySid(host)
    assert exc.value.exit_code == 4
    assert "RPC server unavailable" in str(exc.value)


def test_group_name_is_translated():
    host = make_host()
    host.group_names[ADMINISTRATORS_SID] = "VORDEFINIERT\\Administratoren"
    group = fncResolveGroupBySid(host)
    assert group.sid == ADMINISTRATORS_SID
    assert group.name == "Administratoren"
    assert not group.name_is_fallback


def test_group_translation_failure_falls_back():
    host = make_host()
    host.fail_translate = True
    group = fncResolveGroupBySid(host)
    assert group.name == "Administrators"
    assert group.name_is_fallback
    assert group.sid == ADMINISTRATORS_SID


def test_membership_by_sid():
    host = make_host(guest_is_admin=True)
    group = fncResolveGroupBySid(host)
    assert fncIsMember(host, group, GUEST_SID)
    assert not fncIsMember(make_host(), group, GUEST_SID)


def test_membership_query_failure_means_not_a_member(emit):
    host = make_host(guest_is_admin=True)
    host.fail_members = True
    group = fncResolveGroupBySid(host)
    assert fncIsMember(host, group, GUEST_SID, emit=emit) is False
    assert emit.text("warning")
